"""
APScheduler jobs for background sync.

Two triggers keep a device in step with its household:
  - auto_sync: interval job every AUTO_SYNC_INTERVAL_MINUTES
  - debounced_sync: one-shot job SYNC_DEBOUNCE_SECONDS after the last local
    write; each new write pushes it back

The scheduler runs inside the same process as the local API (wired in __main__.py).
"""
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from domus.config import get_settings

logger = logging.getLogger(__name__)

AUTO_SYNC_JOB_ID = "auto_sync"
DEBOUNCE_JOB_ID = "debounced_sync"


def build_scheduler(orchestrator) -> AsyncIOScheduler:
    """
    Create and configure the APScheduler.

    Args:
        orchestrator: SyncOrchestrator the jobs run.

    Returns:
        Configured AsyncIOScheduler (not yet started).
    """
    settings = get_settings()
    scheduler = AsyncIOScheduler()

    scheduler.add_job(
        _auto_sync,
        trigger="interval",
        minutes=settings.auto_sync_interval_minutes,
        id=AUTO_SYNC_JOB_ID,
        replace_existing=True,
        kwargs={"orchestrator": orchestrator},
    )

    return scheduler


def request_sync(scheduler: AsyncIOScheduler, orchestrator, delay: Optional[float] = None) -> None:
    """Schedule a sync delay seconds from now, replacing any pending request."""
    if delay is None:
        delay = get_settings().sync_debounce_seconds
    run_at = datetime.now(timezone.utc) + timedelta(seconds=delay)

    if scheduler.get_job(DEBOUNCE_JOB_ID) is not None:
        scheduler.remove_job(DEBOUNCE_JOB_ID)
    scheduler.add_job(
        _auto_sync,
        trigger="date",
        run_date=run_at,
        id=DEBOUNCE_JOB_ID,
        kwargs={"orchestrator": orchestrator},
    )


def watch_local_changes(scheduler: AsyncIOScheduler, orchestrator) -> None:
    """Request a debounced sync after every local write to the record store."""
    orchestrator.store.add_listener(
        lambda kind, record_id: request_sync(scheduler, orchestrator)
    )


async def _auto_sync(orchestrator) -> None:
    """
    Job body: run one sync cycle.

    Failures are logged; the scheduler must stay alive.
    """
    logger.debug("Scheduled sync starting")
    try:
        result = await orchestrator.perform_sync()
    except Exception as exc:
        logger.error("Scheduled sync failed: %s", exc)
        return

    if result.success:
        logger.info("Scheduled sync: pushed=%d pulled=%d", result.pushed, result.pulled)
    else:
        logger.warning("Scheduled sync did not complete: %s", result.error)
