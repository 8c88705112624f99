"""Sync trigger and status routes."""
import logging
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends
from pydantic import BaseModel
from sqlmodel import Session, select

from domus.clock import ensure_utc
from domus.db.engine import get_session
from domus.models.sync import SyncLog
from domus.sync.orchestrator import SyncOrchestrator, build_orchestrator

logger = logging.getLogger(__name__)

router = APIRouter()

_orchestrator: Optional[SyncOrchestrator] = None


def get_orchestrator() -> SyncOrchestrator:
    """FastAPI dependency returning the process-wide orchestrator."""
    global _orchestrator
    if _orchestrator is None:
        _orchestrator = build_orchestrator()
    return _orchestrator


class SyncTriggerRequest(BaseModel):
    force: bool = False  # full resync, ignoring the watermark


class SyncStatusResponse(BaseModel):
    status: str
    started_at: Optional[datetime]
    finished_at: Optional[datetime]
    full_sync: Optional[bool]
    pushed: Optional[int]
    pulled: Optional[int]
    conflicts: Optional[int]
    error_message: Optional[str]
    last_sync_at: Optional[datetime]
    is_syncing: bool
    needs_migration: bool


async def _do_sync(orchestrator: SyncOrchestrator, force: bool = False) -> None:
    """Background task: run one cycle and log the outcome."""
    result = await orchestrator.perform_sync(force_full_sync=force)
    if not result.success:
        logger.warning("Triggered sync did not complete: %s", result.error)


@router.post("/trigger")
async def trigger_sync(
    request: SyncTriggerRequest,
    background_tasks: BackgroundTasks,
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
):
    """
    Trigger an on-demand sync cycle.
    Returns immediately; the cycle runs in background.
    """
    if orchestrator.is_syncing:
        return {"message": "Sync already in progress", "force": request.force}
    background_tasks.add_task(_do_sync, orchestrator, request.force)
    return {"message": "Sync started", "force": request.force}


@router.get("/status", response_model=SyncStatusResponse)
def sync_status(
    session: Session = Depends(get_session),
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
):
    """Return the most recent cycle plus the current watermark."""
    log = session.exec(
        select(SyncLog).order_by(SyncLog.started_at.desc(), SyncLog.id.desc())
    ).first()
    watermark = orchestrator.state.load().watermark
    common = dict(
        last_sync_at=watermark,
        is_syncing=orchestrator.is_syncing,
        needs_migration=orchestrator.gate.needs_migration(),
    )
    if not log:
        return SyncStatusResponse(
            status="never_run",
            started_at=None,
            finished_at=None,
            full_sync=None,
            pushed=None,
            pulled=None,
            conflicts=None,
            error_message=None,
            **common,
        )
    return SyncStatusResponse(
        status=log.status,
        started_at=ensure_utc(log.started_at),
        finished_at=ensure_utc(log.finished_at),
        full_sync=log.full_sync,
        pushed=log.pushed,
        pulled=log.pulled,
        conflicts=log.conflicts,
        error_message=log.error_message,
        **common,
    )
