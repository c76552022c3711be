"""Per-request and per-run context utilities."""
from __future__ import annotations

from contextlib import contextmanager
from contextvars import ContextVar
from typing import Iterator
from uuid import UUID

request_id_ctx_var: ContextVar[str | None] = ContextVar("request_id", default=None)
goal_id_ctx_var: ContextVar[str | None] = ContextVar("goal_id", default=None)


def get_request_id() -> str | None:
    """Return the current request id if available."""
    return request_id_ctx_var.get()


def get_goal_id() -> str | None:
    """Return the goal currently being generated, if any."""
    return goal_id_ctx_var.get()


@contextmanager
def bind_goal_id(goal_id: UUID | str) -> Iterator[None]:
    """Tag every log line emitted inside the block with the goal id."""
    token = goal_id_ctx_var.set(str(goal_id))
    try:
        yield
    finally:
        goal_id_ctx_var.reset(token)
