"""
app/scheduler/jobs.py

APScheduler-based scheduler for catalog synchronization.

Schedule (all times UTC)
--------------------------
  catalog_resume     : every ``SYNC_RESUME_INTERVAL_MINUTES`` (default 5)
  catalog_full_sync  : daily at ``SYNC_DAILY_HOUR``:00 (default 03:00)

The resume job is a no-op when nothing is in progress, so a run that paused
on its time or memory budget is picked up again a few minutes later. A
pending stop request is honoured: scheduled resumes skip until an operator
resumes explicitly or a new full sync starts.

Lifecycle
----------
Call ``build_scheduler()`` once to get a configured ``BackgroundScheduler``.
Start it on app boot; shut it down gracefully on app shutdown.
The scheduler is wired into FastAPI via the ``lifespan`` context in main.py.
"""

from __future__ import annotations

import logging

from apscheduler.schedulers.background import BackgroundScheduler

from app.config import SchedulerSettings, get_scheduler_settings
from app.services.sync_errors import SyncAlreadyRunningError
from app.services.sync_orchestrator import SyncOrchestrator, get_sync_orchestrator

logger = logging.getLogger(__name__)

RESUME_JOB_ID = "catalog_resume"
FULL_SYNC_JOB_ID = "catalog_full_sync"


# ---------------------------------------------------------------------------
# Job: Periodic resume
# ---------------------------------------------------------------------------


def run_catalog_resume(orchestrator: SyncOrchestrator | None = None) -> None:
    """
    Continue the active run, if any, by one invocation.
    """
    orchestrator = orchestrator or get_sync_orchestrator()
    try:
        run = orchestrator.resume()
    except SyncAlreadyRunningError as exc:
        logger.info("Scheduler: catalog_resume skipped, %s", exc)
        return
    except Exception as exc:  # noqa: BLE001
        logger.warning("Scheduler: catalog_resume failed: %s", exc)
        return

    if run is None:
        logger.debug("Scheduler: catalog_resume found nothing to resume")
        return
    logger.info(
        "Scheduler: catalog_resume run_id=%s status=%s stage=%s",
        run.run_id,
        run.status.value,
        run.stage.value,
    )


# ---------------------------------------------------------------------------
# Job: Daily full sync
# ---------------------------------------------------------------------------


def run_catalog_full_sync(orchestrator: SyncOrchestrator | None = None) -> None:
    """
    Start a fresh full sync of the catalog.
    """
    logger.info("Scheduler: catalog_full_sync starting")
    orchestrator = orchestrator or get_sync_orchestrator()
    try:
        run = orchestrator.run_full_sync(sync_type="scheduled")
    except SyncAlreadyRunningError as exc:
        logger.warning("Scheduler: catalog_full_sync skipped, %s", exc)
        return
    except Exception as exc:  # noqa: BLE001
        logger.warning("Scheduler: catalog_full_sync failed: %s", exc)
        return

    logger.info(
        "Scheduler: catalog_full_sync run_id=%s status=%s stage=%s",
        run.run_id,
        run.status.value,
        run.stage.value,
    )


# ---------------------------------------------------------------------------
# Scheduler factory
# ---------------------------------------------------------------------------


def build_scheduler(settings: SchedulerSettings | None = None) -> BackgroundScheduler:
    """
    Build and register all periodic jobs.

    Returns a configured but *not yet started* ``BackgroundScheduler``.
    The caller must call ``.start()`` and ``.shutdown(wait=True)`` at the
    appropriate lifecycle points.
    """
    settings = settings or get_scheduler_settings()
    scheduler = BackgroundScheduler(timezone="UTC")

    scheduler.add_job(
        run_catalog_resume,
        trigger="interval",
        minutes=settings.resume_interval_minutes,
        id=RESUME_JOB_ID,
        name="Catalog sync resume",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )
    scheduler.add_job(
        run_catalog_full_sync,
        trigger="cron",
        hour=settings.daily_full_sync_hour,
        minute=0,
        id=FULL_SYNC_JOB_ID,
        name="Daily catalog full sync",
        replace_existing=True,
        max_instances=1,
        misfire_grace_time=3600,
    )

    return scheduler
