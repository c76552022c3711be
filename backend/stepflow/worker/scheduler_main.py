"""Dedicated APScheduler worker process."""
from __future__ import annotations

import logging
import signal
import threading

from apscheduler.schedulers.background import BackgroundScheduler

from stepflow.core.config import settings
from stepflow.core.logging import configure_logging
from stepflow.db.session import SessionLocal
from stepflow.observability.client import init_opik
from stepflow.services.job_runner import run_daily_generation_for_all_goals


logger = logging.getLogger(__name__)

DAILY_JOB_ID = "daily_generation_job"


def main() -> None:
    configure_logging(log_level=settings.log_level)
    init_opik()
    logger.info("Scheduler worker starting (enabled=%s)", settings.scheduler_enabled)

    scheduler = BackgroundScheduler(timezone=settings.scheduler_timezone)

    if settings.scheduler_enabled:
        register_jobs(scheduler)
        scheduler.start()
        if settings.jobs_run_on_startup:
            logger.info("Running daily generation once on startup")
            run_daily_generation_job()
    else:
        logger.warning("Scheduler disabled via config; worker will idle")

    stop_event = threading.Event()

    def shutdown(signum, frame):  # pragma: no cover - signal handler
        logger.info("Scheduler worker shutting down (signal=%s)", signum)
        if scheduler.running:
            scheduler.shutdown(wait=False)
        stop_event.set()

    signal.signal(signal.SIGINT, shutdown)
    signal.signal(signal.SIGTERM, shutdown)

    try:
        stop_event.wait()
    except KeyboardInterrupt:  # pragma: no cover - manual stop
        shutdown(signal.SIGINT, None)


def register_jobs(scheduler: BackgroundScheduler) -> None:
    # Twice a day so each goal gets one check per 12 hour window.
    hours = sorted({settings.daily_job_hour % 24, (settings.daily_job_hour + 12) % 24})
    scheduler.add_job(
        run_daily_generation_job,
        trigger="cron",
        hour=",".join(str(hour) for hour in hours),
        minute=settings.daily_job_minute,
        id=DAILY_JOB_ID,
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )
    logger.info(
        "Registered daily generation job (hours=%s, minute=%02d %s)",
        hours,
        settings.daily_job_minute,
        settings.scheduler_timezone,
    )


def run_daily_generation_job() -> None:
    session = SessionLocal()
    try:
        result = run_daily_generation_for_all_goals(session)
        logger.info(
            "Daily generation job complete: goals=%s, generated=%s, errors=%s",
            result.goals_checked,
            result.occurrences_generated,
            len(result.errors),
        )
    except Exception:  # pragma: no cover - keep the worker alive between runs
        logger.exception("Daily generation job failed")
    finally:
        session.close()


if __name__ == "__main__":  # pragma: no cover - manual launch
    main()
