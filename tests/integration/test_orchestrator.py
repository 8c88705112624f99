"""
Integration tests for SyncOrchestrator.

Uses a real record store on in-memory SQLite and an AsyncMock transport.
No real network calls are made.
"""
import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from sqlalchemy.exc import OperationalError
from sqlmodel import select

from domus.models.sync import SyncLog
from domus.sync.migration_gate import MigrationError
from domus.sync.orchestrator import ALREADY_RUNNING, NOT_AUTHENTICATED, SyncOrchestrator
from domus.sync.session import SessionAuth
from domus.sync.state import MemoryStore, SyncState, SyncStateRepository
from domus.sync.types import ChangeRecord, PullResult, PushResult, SyncPhase


# ─── Fixtures ─────────────────────────────────────────────────────────────────

@pytest.fixture(name="transport")
def transport_fixture():
    transport = MagicMock()
    transport.push = AsyncMock(side_effect=lambda changes, **kw: PushResult(success=True, count=len(changes)))
    transport.pull = AsyncMock(return_value=PullResult(success=True, changes=[]))
    transport.check_session = AsyncMock(return_value=True)
    transport.aclose = AsyncMock()
    return transport


@pytest.fixture(name="state")
def state_fixture():
    return SyncStateRepository(MemoryStore())


@pytest.fixture(name="orchestrator")
def orchestrator_fixture(store, transport, state, auth, clock):
    return SyncOrchestrator(store=store, transport=transport, state=state, auth=auth, clock=clock)


def _remote_chore(record_id, title, clock):
    return ChangeRecord(
        table="chores", id=record_id,
        data={"id": record_id, "title": title, "updatedAt": clock().isoformat()},
        updated_at=clock(),
    )


async def _hang(*args, **kwargs):
    await asyncio.Event().wait()


# ─── Successful cycles ────────────────────────────────────────────────────────

class TestSuccessfulCycle:
    @pytest.mark.asyncio
    async def test_first_sync_is_full(self, orchestrator, store, transport):
        store.put("chores", {"id": "c1"})
        result = await orchestrator.perform_sync()

        assert result.success
        assert result.pushed == 1
        transport.pull.assert_awaited_once()
        assert transport.pull.await_args.args[0] is None

    @pytest.mark.asyncio
    async def test_watermark_is_collection_start(self, orchestrator, state, clock):
        collected_through = clock()
        await orchestrator.perform_sync()
        assert state.load().watermark == collected_through

    @pytest.mark.asyncio
    async def test_incremental_sync_uses_watermark(self, orchestrator, store, state, transport, clock):
        store.put("chores", {"id": "old"})
        await orchestrator.perform_sync()
        watermark = state.load().watermark

        clock.advance(minutes=1)
        store.put("chores", {"id": "new"})
        await orchestrator.perform_sync()

        pushed = transport.push.await_args_list[-1].args[0]
        assert [c.id for c in pushed] == ["new"]
        assert transport.pull.await_args_list[-1].args[0] == watermark

    @pytest.mark.asyncio
    async def test_pulled_changes_are_applied(self, orchestrator, store, transport, clock):
        transport.pull.return_value = PullResult(
            success=True, changes=[_remote_chore("r1", "From Bob", clock)]
        )
        result = await orchestrator.perform_sync()

        assert result.pulled == 1
        assert store.table("chores").get("r1").data["title"] == "From Bob"

    @pytest.mark.asyncio
    async def test_no_local_changes_skips_push(self, orchestrator, transport):
        result = await orchestrator.perform_sync()
        assert result.success
        transport.push.assert_not_awaited()
        transport.pull.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_push_success_purges_deletion_log(self, orchestrator, store, deletion_log):
        store.put("groceryItems", {"id": "g1"})
        store.remove("groceryItems", "g1")
        await orchestrator.perform_sync()
        assert deletion_log.count() == 0

    @pytest.mark.asyncio
    async def test_deletion_after_collection_survives_purge(
        self, orchestrator, store, deletion_log, transport, clock
    ):
        store.put("groceryItems", {"id": "g1"})
        store.put("groceryItems", {"id": "g2"})
        store.remove("groceryItems", "g1")

        async def push_then_delete(changes, **kwargs):
            clock.advance(seconds=1)
            store.remove("groceryItems", "g2")
            return PushResult(success=True, count=len(changes))

        transport.push.side_effect = push_then_delete
        await orchestrator.perform_sync()

        assert [e.record_id for e in deletion_log.entries_since(None)] == ["g2"]

    @pytest.mark.asyncio
    async def test_watermark_monotonic_across_cycles(self, orchestrator, state, clock):
        marks = []
        for _ in range(3):
            await orchestrator.perform_sync()
            marks.append(state.load().watermark)
            clock.advance(minutes=5)
        assert marks == sorted(marks)
        assert len(set(marks)) == 3

    @pytest.mark.asyncio
    async def test_sync_log_recorded(self, orchestrator, store, test_session):
        store.put("chores", {"id": "c1"})
        await orchestrator.perform_sync()

        log = test_session.exec(select(SyncLog)).one()
        assert log.status == "success"
        assert log.pushed == 1
        assert log.finished_at is not None

    @pytest.mark.asyncio
    async def test_progress_reported(self, orchestrator, store):
        store.put("chores", {"id": "c1"})
        steps = []
        await orchestrator.perform_sync(on_progress=steps.append)

        assert steps[0].step == "migration"
        assert steps[-1].step == "complete"
        assert steps[-1].percent == 100
        percents = [p.percent for p in steps]
        assert percents == sorted(percents)
        assert {"collecting", "pushing", "pulling", "applying"} <= {p.step for p in steps}

    @pytest.mark.asyncio
    async def test_phase_returns_to_idle(self, orchestrator):
        await orchestrator.perform_sync()
        assert orchestrator.phase is SyncPhase.IDLE
        assert not orchestrator.is_syncing


# ─── Failed cycles ────────────────────────────────────────────────────────────

class TestFailedCycle:
    @pytest.mark.asyncio
    async def test_push_failure_keeps_watermark(self, orchestrator, store, state, transport, clock):
        w0 = clock() - timedelta(hours=1)
        state.save(SyncState(watermark=w0))
        store.put("chores", {"id": "c1"})
        transport.push.side_effect = None
        transport.push.return_value = PushResult(success=False, error="HTTP 503: down")

        result = await orchestrator.perform_sync()

        assert result.success is False
        assert result.pushed == 0
        assert result.pulled == 0
        assert result.error == "Push failed: HTTP 503: down"
        assert state.load().watermark == w0
        transport.pull.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_push_failure_keeps_deletion_log(self, orchestrator, store, deletion_log, transport):
        store.put("groceryItems", {"id": "g1"})
        store.remove("groceryItems", "g1")
        transport.push.side_effect = None
        transport.push.return_value = PushResult(success=False, error="offline")

        await orchestrator.perform_sync()

        assert deletion_log.count() == 1

    @pytest.mark.asyncio
    async def test_pull_failure_keeps_watermark(self, orchestrator, state, transport):
        transport.pull.return_value = PullResult(success=False, error="HTTP 500: boom")
        result = await orchestrator.perform_sync()

        assert not result.success
        assert result.error == "Pull failed: HTTP 500: boom"
        assert state.load().never_synced

    @pytest.mark.asyncio
    async def test_failure_recorded_in_sync_log_and_status(self, orchestrator, transport, test_session):
        transport.pull.return_value = PullResult(success=False, error="offline")
        await orchestrator.perform_sync()

        log = test_session.exec(select(SyncLog)).one()
        assert log.status == "error"
        assert log.error_message == "Pull failed: offline"
        assert orchestrator.phase is SyncPhase.ERROR
        assert orchestrator.get_status().error == "Pull failed: offline"

    @pytest.mark.asyncio
    async def test_failed_table_scan_keeps_watermark(self, orchestrator, store, state, clock):
        w0 = clock() - timedelta(hours=1)
        state.save(SyncState(watermark=w0))
        broken = store.table("chores")
        broken.scan = MagicMock(side_effect=RuntimeError("corrupt"))

        result = await orchestrator.perform_sync()

        assert result.success
        assert state.load().watermark == w0

    @pytest.mark.asyncio
    async def test_unexpected_error_becomes_result(self, orchestrator, transport):
        transport.pull.side_effect = RuntimeError("bug")
        result = await orchestrator.perform_sync()
        assert not result.success
        assert result.error == "bug"

    @pytest.mark.asyncio
    async def test_unread_deletion_log_is_kept(self, orchestrator, store, state, deletion_log, transport):
        store.put("groceryItems", {"id": "g1"})
        store.remove("groceryItems", "g1")
        store.put("chores", {"id": "c1"})

        with patch.object(deletion_log, "entries_since", side_effect=RuntimeError("locked")):
            result = await orchestrator.perform_sync()

        assert result.success
        assert [c.id for c in transport.push.await_args.args[0]] == ["c1"]
        assert deletion_log.count() == 1
        assert state.load().never_synced

    @pytest.mark.asyncio
    async def test_sync_log_write_failure_becomes_result(self, orchestrator, transport):
        error = OperationalError("INSERT INTO synclog", {}, Exception("database is locked"))
        with patch.object(orchestrator, "_create_sync_log", side_effect=error):
            result = await orchestrator.perform_sync()

        assert not result.success
        assert "database is locked" in result.error
        transport.pull.assert_not_awaited()
        assert not orchestrator.is_syncing


# ─── Migration gate ───────────────────────────────────────────────────────────

class TestGating:
    @pytest.mark.asyncio
    async def test_migration_failure_aborts_cycle(self, orchestrator, state, transport):
        orchestrator.gate = MagicMock()
        orchestrator.gate.ensure_ready.side_effect = MigrationError("table locked")

        result = await orchestrator.perform_sync()

        assert not result.success
        assert result.error.startswith("Migration failed: table locked")
        transport.push.assert_not_awaited()
        transport.pull.assert_not_awaited()
        assert state.load().never_synced

    @pytest.mark.asyncio
    async def test_unverifiable_schema_aborts_cycle(self, orchestrator, store, state, transport):
        store.put("chores", {"id": "c1"})
        error = OperationalError("PRAGMA user_version", {}, Exception("disk I/O error"))

        with patch("domus.sync.migration_gate.get_schema_version", side_effect=error):
            result = await orchestrator.perform_sync()

        assert not result.success
        assert result.error.startswith("Migration failed: could not verify schema")
        transport.push.assert_not_awaited()
        transport.pull.assert_not_awaited()
        assert state.load().never_synced

    @pytest.mark.asyncio
    async def test_migration_forces_full_sync(self, orchestrator, state, transport, clock):
        state.save(SyncState(watermark=clock() - timedelta(hours=1)))
        orchestrator.gate = MagicMock()
        orchestrator.gate.ensure_ready.return_value = True

        await orchestrator.perform_sync()

        assert transport.pull.await_args.args[0] is None

    @pytest.mark.asyncio
    async def test_force_full_sync_ignores_watermark(self, orchestrator, store, state, transport, clock):
        store.put("chores", {"id": "c1"})
        state.save(SyncState(watermark=clock() + timedelta(hours=1)))

        await orchestrator.perform_sync(force_full_sync=True)

        assert [c.id for c in transport.push.await_args.args[0]] == ["c1"]
        assert transport.pull.await_args.args[0] is None


# ─── Concurrency, auth, cancellation ──────────────────────────────────────────

class TestGuards:
    @pytest.mark.asyncio
    async def test_not_authenticated(self, store, transport, state, tmp_path, clock):
        orchestrator = SyncOrchestrator(
            store=store, transport=transport, state=state,
            auth=SessionAuth(tmp_path / "nobody"), clock=clock,
        )
        result = await orchestrator.perform_sync()
        assert result.success is False
        assert result.error == NOT_AUTHENTICATED
        transport.pull.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_single_flight(self, orchestrator, transport):
        release = asyncio.Event()

        async def slow_pull(*args, **kwargs):
            await release.wait()
            return PullResult(success=True)

        transport.pull.side_effect = slow_pull
        first = asyncio.create_task(orchestrator.perform_sync())
        await asyncio.sleep(0)
        while not transport.pull.await_count:
            await asyncio.sleep(0)

        assert orchestrator.is_syncing
        second = await orchestrator.perform_sync()
        assert second.success is False
        assert second.error == ALREADY_RUNNING

        release.set()
        assert (await first).success

    @pytest.mark.asyncio
    async def test_cancel_event_aborts_push(self, orchestrator, store, state, transport, deletion_log):
        store.put("groceryItems", {"id": "g1"})
        store.remove("groceryItems", "g1")
        store.put("chores", {"id": "c1"})
        transport.push.side_effect = _hang
        cancel = asyncio.Event()

        task = asyncio.create_task(orchestrator.perform_sync(cancel_event=cancel))
        while not transport.push.await_count:
            await asyncio.sleep(0)
        cancel.set()
        result = await task

        assert result.error == "Push failed: cancelled"
        assert state.load().never_synced
        assert deletion_log.count() == 1

    @pytest.mark.asyncio
    async def test_timeout_aborts_pull(self, orchestrator, state, transport):
        transport.pull.side_effect = _hang
        result = await orchestrator.perform_sync(timeout=0.05)

        assert not result.success
        assert result.error.startswith("Pull failed: timed out")
        assert state.load().never_synced
        assert not orchestrator.is_syncing


# ─── Status helpers ───────────────────────────────────────────────────────────

class TestStatus:
    def test_status_before_first_sync(self, orchestrator, store):
        store.put("chores", {"id": "c1"})
        status = orchestrator.get_status()
        assert status.last_sync_at is None
        assert status.pending_changes == 1
        assert status.needs_migration is False
        assert status.is_syncing is False

    @pytest.mark.asyncio
    async def test_pending_changes_after_sync(self, orchestrator, store, clock):
        await orchestrator.perform_sync()
        clock.advance(minutes=1)
        store.put("chores", {"id": "c1"})
        store.put("chores", {"id": "c2"})
        assert orchestrator.get_status().pending_changes == 2

    @pytest.mark.asyncio
    async def test_reset_sync_state(self, orchestrator, state):
        await orchestrator.perform_sync()
        orchestrator.reset_sync_state()
        assert state.load().never_synced

    @pytest.mark.asyncio
    async def test_is_authenticated(self, orchestrator, transport):
        assert await orchestrator.is_authenticated() is True
        transport.check_session.assert_awaited_once()
