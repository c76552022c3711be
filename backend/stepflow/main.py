"""Main FastAPI application for the Stepflow backend."""
from fastapi import FastAPI, Request

from stepflow.api.routes.goals import router as goals_router
from stepflow.api.routes.jobs import router as jobs_router
from stepflow.api.routes.steps import router as steps_router
from stepflow.core.config import settings
from stepflow.core.logging import configure_logging
from stepflow.core.middleware import RequestIDMiddleware
from stepflow.observability.client import init_opik
from stepflow.observability.tracing import trace

configure_logging(log_level=settings.log_level)

app = FastAPI(title=settings.app_name, version="0.1.0")
app.add_middleware(RequestIDMiddleware)
app.include_router(goals_router)
app.include_router(steps_router)
app.include_router(jobs_router)


@app.on_event("startup")
async def startup_observability() -> None:
    """Initialize observability backends after the event loop starts."""
    init_opik()


@app.get("/health", tags=["health"], summary="Readiness check")
async def health_check(request: Request) -> dict[str, str]:
    """Return a simple status payload so automation can check the API is up."""
    with trace("http.health_check", metadata={"route": "/health"}, request_id=request.state.request_id):
        return {"status": "ok"}
