"""
SyncOrchestrator: runs one sync cycle end to end.

    Idle → Gating → Collecting → Pushing → Pulling → Applying → Committing → Idle
                                      ↘ Error (from any step) ↗

Flow of a cycle:
  1. Refuse if another cycle is running or no session is saved
  2. Create SyncLog (status="running")
  3. Migration gate; a migration turns the cycle into a full resync
  4. Capture the collected-through instant, collect local changes
  5. Push; on success purge the deletion log up to the newest tombstone it carried
  6. Pull everything after the watermark
  7. Apply pulled changes (best effort per record)
  8. Save the collected-through instant as the new watermark
  9. Update SyncLog (status="success" | "error")

Fatal failures (migration, push, pull, cancellation) end the cycle with
SyncResult(success=False); the watermark and the deletion log are left
untouched so the next cycle retries from the same point.
"""
import asyncio
import logging
from datetime import datetime
from typing import Awaitable, Callable, Optional, TypeVar

from sqlmodel import Session, select

from domus.clock import Clock, format_timestamp, utcnow
from domus.config import get_settings
from domus.db.record_store import RecordStore
from domus.models.sync import SyncLog
from domus.sync.applier import REMOTE_WINS, ChangeApplier
from domus.sync.collector import DELETION_LOG_SOURCE, ChangeCollector
from domus.sync.deletion_log import DeletionLog
from domus.sync.migration_gate import MigrationError, MigrationGate
from domus.sync.session import SessionAuth
from domus.sync.state import JsonFileStore, SyncState, SyncStateRepository
from domus.sync.transport import SyncTransport, TransportError
from domus.sync.types import CollectionResult, SyncPhase, SyncProgress, SyncResult, SyncStatus

logger = logging.getLogger(__name__)

ALREADY_RUNNING = "Sync already in progress"
NOT_AUTHENTICATED = "Not authenticated"

T = TypeVar("T")
ProgressCallback = Callable[[SyncProgress], None]


class SyncOrchestrator:
    """Coordinates gate, collector, transport and applier for one household."""

    def __init__(
        self,
        *,
        store: RecordStore,
        transport: SyncTransport,
        state: SyncStateRepository,
        auth: SessionAuth,
        deletion_log: Optional[DeletionLog] = None,
        gate: Optional[MigrationGate] = None,
        collector: Optional[ChangeCollector] = None,
        applier: Optional[ChangeApplier] = None,
        clock: Clock = utcnow,
        conflict_policy: str = REMOTE_WINS,
    ):
        """
        Args:
            store: Local record store (its engine also holds the SyncLog table).
            transport: SyncTransport (or AsyncMock in tests).
            state: Watermark repository.
            auth: Identity collaborator; a cycle needs a saved session.
            clock: Returns the current aware-UTC time.
        """
        self.store = store
        self.engine = store.engine
        self.transport = transport
        self.state = state
        self.auth = auth
        self.clock = clock
        self.deletion_log = deletion_log or store.deletion_log
        self.gate = gate or MigrationGate(self.engine, on_migrated=store.reload)
        self.collector = collector or ChangeCollector(store, self.deletion_log, clock=clock)
        self.applier = applier or ChangeApplier(store, conflict_policy)

        self._lock = asyncio.Lock()
        self._phase = SyncPhase.IDLE
        self._last_error: Optional[str] = None

    # ─── Public API ───────────────────────────────────────────────────────────

    @property
    def is_syncing(self) -> bool:
        return self._lock.locked()

    @property
    def phase(self) -> SyncPhase:
        return self._phase

    async def perform_sync(
        self,
        force_full_sync: bool = False,
        on_progress: Optional[ProgressCallback] = None,
        timeout: Optional[float] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> SyncResult:
        """
        Run one sync cycle.

        Args:
            force_full_sync: Ignore the watermark; push every row and pull everything.
            on_progress: Called with a SyncProgress at each step.
            timeout: Seconds allowed for each of push and pull.
            cancel_event: Setting it aborts the running push or pull.

        Returns:
            SyncResult. Never raises for sync failures.
        """
        if self._lock.locked():
            logger.info("Sync requested while another cycle is running")
            return SyncResult(success=False, error=ALREADY_RUNNING)

        async with self._lock:
            if not self.auth.has_session():
                logger.info("Skipping sync: no household session")
                return SyncResult(success=False, error=NOT_AUTHENTICATED)

            report = _ProgressReporter(on_progress)
            log = None
            try:
                log = self._create_sync_log(full_sync=force_full_sync)
                result = await self._run_cycle(force_full_sync, report, timeout, cancel_event)
            except Exception as exc:
                logger.exception("Sync cycle crashed")
                result = SyncResult(success=False, error=str(exc) or type(exc).__name__)

            if result.success:
                self._phase = SyncPhase.IDLE
                self._last_error = None
                self._finish_sync_log(log, status="success", result=result)
                report("complete", "Sync complete!", percent=100)
            else:
                self._phase = SyncPhase.ERROR
                self._last_error = result.error
                self._finish_sync_log(log, status="error", result=result)
                report("error", result.error or "Sync failed", percent=0)
            return result

    def get_status(self) -> SyncStatus:
        state = self.state.load()
        try:
            pending = len(self.collector.collect(state.watermark))
        except Exception as exc:
            logger.warning("Could not count pending changes: %s", exc)
            pending = 0
        return SyncStatus(
            last_sync_at=state.watermark,
            is_syncing=self.is_syncing,
            phase=self._phase,
            error=self._last_error,
            pending_changes=pending,
            needs_migration=self.gate.needs_migration(),
        )

    def reset_sync_state(self) -> None:
        """Forget the watermark; the next cycle is a full resync."""
        self.state.reset()
        logger.info("Sync state reset; next sync will be a full sync")

    async def is_authenticated(self) -> bool:
        if not self.auth.has_session():
            return False
        return await self.transport.check_session()

    async def aclose(self) -> None:
        await self.transport.aclose()

    # ─── Cycle ────────────────────────────────────────────────────────────────

    async def _run_cycle(
        self,
        force_full_sync: bool,
        report: "_ProgressReporter",
        timeout: Optional[float],
        cancel_event: Optional[asyncio.Event],
    ) -> SyncResult:
        result = SyncResult()

        # Gating
        self._phase = SyncPhase.GATING
        report("migration", "Checking database...", percent=5)
        try:
            if self.gate.ensure_ready():
                logger.info("Schema migrated; running a full sync")
                force_full_sync = True
        except MigrationError as exc:
            result.error = f"Migration failed: {exc}. Please refresh."
            logger.error(result.error)
            return result

        since = None if force_full_sync else self.state.load().watermark
        logger.info(
            "Starting %s sync (since %s)",
            "full" if since is None else "incremental",
            format_timestamp(since) if since else "the beginning",
        )

        # Collecting
        self._phase = SyncPhase.COLLECTING
        report("collecting", "Collecting local changes...", percent=15)
        collected_through = self.clock()
        collection = self.collector.scan(since)
        changes = collection.changes
        report(
            "collecting", "Collecting local changes...",
            current=len(changes), total=len(changes), percent=30,
        )

        # Pushing
        self._phase = SyncPhase.PUSHING
        if changes:
            report("pushing", "Uploading changes...", current=0, total=len(changes), percent=35)

            def on_chunk(done: int, total_chunks: int, pushed: int) -> None:
                report(
                    "pushing", f"Uploading changes ({done}/{total_chunks} chunks)...",
                    current=pushed, total=len(changes),
                    percent=35 + round(done / total_chunks * 15),
                )

            try:
                push = await _guarded(
                    self.transport.push(changes, on_chunk=on_chunk), timeout, cancel_event
                )
            except TransportError as exc:
                result.error = f"Push failed: {exc}"
                logger.error(result.error)
                return result
            if not push.success:
                result.error = f"Push failed: {push.error}"
                logger.error(result.error)
                return result
            result.pushed = push.count
            cutoff = _purge_cutoff(collection, collected_through)
            if cutoff is not None:
                self.deletion_log.purge_up_to(cutoff)
        else:
            report("pushing", "No local changes to upload", current=0, total=0, percent=50)

        # Pulling
        self._phase = SyncPhase.PULLING
        report("pulling", "Downloading updates...", percent=55)

        def on_page(pages: int, records: int) -> None:
            report(
                "pulling", f"Downloaded {records} records (page {pages})...",
                current=records, percent=55 + min(pages * 3, 15),
            )

        try:
            pull = await _guarded(self.transport.pull(since, on_page=on_page), timeout, cancel_event)
        except TransportError as exc:
            result.error = f"Pull failed: {exc}"
            logger.error(result.error)
            return result
        if not pull.success:
            result.error = f"Pull failed: {pull.error}"
            logger.error(result.error)
            return result
        report(
            "pulling", f"Downloaded {len(pull.changes)} updates",
            current=len(pull.changes), total=len(pull.changes), percent=70,
        )

        # Applying
        self._phase = SyncPhase.APPLYING
        if pull.changes:
            report("applying", "Applying changes...", current=0, total=len(pull.changes), percent=75)

            def on_item(done: int, total: int) -> None:
                report(
                    "applying", "Applying changes...",
                    current=done, total=total, percent=75 + round(done / total * 20),
                )

            applied = self.applier.apply(pull.changes, since=since, on_item=on_item)
            result.pulled = applied.applied
            result.conflicts = applied.conflicts
        else:
            report("applying", "No updates to apply", current=0, total=0, percent=95)

        # Committing
        self._phase = SyncPhase.COMMITTING
        if collection.failed_tables:
            logger.warning(
                "Watermark kept at previous value; collection failed for: %s",
                ", ".join(collection.failed_tables),
            )
        else:
            self.state.save(SyncState(watermark=collected_through))

        result.success = True
        logger.info(
            "Sync complete: pushed=%d pulled=%d conflicts=%d",
            result.pushed, result.pulled, result.conflicts,
        )
        return result

    # ─── Internal helpers ─────────────────────────────────────────────────────

    def _create_sync_log(self, *, full_sync: bool) -> SyncLog:
        log = SyncLog(started_at=self.clock(), status="running", full_sync=full_sync)
        with Session(self.engine) as s:
            s.add(log)
            s.commit()
            s.refresh(log)
        return log

    def _finish_sync_log(self, log: Optional[SyncLog], *, status: str, result: SyncResult) -> None:
        if log is None:
            return
        try:
            with Session(self.engine) as s:
                db_log = s.get(SyncLog, log.id)
                db_log.status = status
                db_log.finished_at = self.clock()
                db_log.pushed = result.pushed
                db_log.pulled = result.pulled
                db_log.conflicts = result.conflicts
                db_log.error_message = result.error
                s.add(db_log)
                s.commit()
        except Exception as exc:
            logger.warning("Could not update sync log %s: %s", log.id, exc)


class _ProgressReporter:
    def __init__(self, callback: Optional[ProgressCallback]):
        self.callback = callback

    def __call__(
        self,
        step: str,
        message: str,
        *,
        current: Optional[int] = None,
        total: Optional[int] = None,
        percent: Optional[int] = None,
    ) -> None:
        if self.callback is None:
            return
        try:
            self.callback(SyncProgress(step, message, current, total, percent))
        except Exception:
            logger.exception("Progress callback failed")


def _purge_cutoff(collection: CollectionResult, collected_through: datetime) -> Optional[datetime]:
    """Newest deletion-log instant covered by the pushed tombstones, or None.

    Nothing may be purged when the deletion log could not be read: its
    entries never reached the push.
    """
    if DELETION_LOG_SOURCE in collection.failed_tables:
        logger.warning("Deletion log not read this cycle; keeping all entries")
        return None
    pushed = [c.deleted_at for c in collection.changes if c.is_tombstone]
    if not pushed:
        return None
    return min(max(pushed), collected_through)


async def _guarded(
    operation: Awaitable[T],
    timeout: Optional[float],
    cancel_event: Optional[asyncio.Event],
) -> T:
    """Await operation, giving up after timeout seconds or once cancel_event is set.

    Raises:
        TransportError: if the operation was cancelled or timed out.
    """
    task = asyncio.ensure_future(operation)
    waiters = {task}
    cancel_waiter = None
    if cancel_event is not None:
        cancel_waiter = asyncio.ensure_future(cancel_event.wait())
        waiters.add(cancel_waiter)

    try:
        done, _ = await asyncio.wait(waiters, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
    finally:
        if cancel_waiter is not None:
            cancel_waiter.cancel()

    if task in done:
        return task.result()

    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass
    if cancel_event is not None and cancel_event.is_set():
        raise TransportError("cancelled")
    raise TransportError(f"timed out after {timeout}s")


def build_orchestrator(settings=None, engine=None, client=None, state_store=None) -> SyncOrchestrator:
    """Wire an orchestrator from settings.

    Args:
        engine: Record store engine; defaults to the module singleton.
        client: httpx.AsyncClient for the transport (tests pass one with ASGITransport).
        state_store: KeyValueStore for the watermark; defaults to <state_dir>/sync_state.json.
    """
    from domus.db.engine import get_engine

    settings = settings or get_settings()
    engine = engine if engine is not None else get_engine()
    auth = SessionAuth.from_settings(settings)
    store = RecordStore(engine)
    return SyncOrchestrator(
        store=store,
        transport=SyncTransport.from_settings(settings, auth, client=client),
        state=SyncStateRepository(state_store or JsonFileStore.from_settings(settings)),
        auth=auth,
        conflict_policy=settings.conflict_policy,
    )


def latest_sync_log(engine) -> Optional[SyncLog]:
    with Session(engine) as s:
        return s.exec(select(SyncLog).order_by(SyncLog.started_at.desc(), SyncLog.id.desc())).first()
