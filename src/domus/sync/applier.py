"""
Change applier: merges pulled ChangeRecords into the record store.

Upserts are full replacements keyed by id; tombstones delete (deleting an
absent row is a no-op). Unknown tables are skipped. A failing record is
logged and counted; it never aborts the rest of the batch.

Conflict policies:
    remote_wins  pulled upserts always overwrite. Overwriting a row edited
                 locally since the last sync is counted as a conflict.
    newer_wins   a local row whose modification marker is strictly newer
                 than the incoming one is kept (counted as a conflict).
Tombstones delete under both policies.
"""
import logging
from datetime import datetime
from typing import Callable, List, Optional

from domus.clock import parse_timestamp
from domus.db.record_store import RecordStore, StoredRow, UnknownTableError
from domus.models.records import TableKind
from domus.sync.types import ApplyReport, ChangeRecord

logger = logging.getLogger(__name__)

REMOTE_WINS = "remote_wins"
NEWER_WINS = "newer_wins"
CONFLICT_POLICIES = (REMOTE_WINS, NEWER_WINS)


class ChangeApplier:
    def __init__(self, store: RecordStore, conflict_policy: str = REMOTE_WINS):
        if conflict_policy not in CONFLICT_POLICIES:
            raise ValueError(
                f"Unknown conflict policy {conflict_policy!r}; expected one of {CONFLICT_POLICIES}"
            )
        self.store = store
        self.conflict_policy = conflict_policy

    def apply(
        self,
        changes: List[ChangeRecord],
        since: Optional[datetime] = None,
        on_item: Optional[Callable[[int, int], None]] = None,
    ) -> ApplyReport:
        """
        Apply pulled changes one by one.

        Args:
            changes: Records from SyncTransport.pull().
            since: Watermark of the current cycle; local rows modified after it
                are treated as concurrent edits for conflict counting.
            on_item: Called as on_item(done, total) after each record.

        Returns:
            ApplyReport with applied/skipped/failed/conflict counts.
        """
        report = ApplyReport()

        for done, change in enumerate(changes, start=1):
            self._apply_one(change, since, report)
            if on_item is not None:
                on_item(done, len(changes))

        logger.info(
            "Applied %d/%d remote changes (%d skipped, %d failed, %d conflicts)",
            report.applied, len(changes), report.skipped, report.failed, report.conflicts,
        )
        return report

    def _apply_one(
        self, change: ChangeRecord, since: Optional[datetime], report: ApplyReport
    ) -> None:
        try:
            table = self.store.table(change.table)
        except UnknownTableError:
            logger.debug("Skipping change for untracked table %s", change.table)
            report.skipped += 1
            return

        try:
            if change.is_tombstone:
                table.delete(change.id)
                report.applied += 1
                return

            existing = table.get(change.id)
            if existing is not None:
                if _is_incomplete_user(existing, change):
                    logger.debug("Skipping incomplete remote user %s", change.id)
                    report.skipped += 1
                    return
                if self._keep_local(existing, change):
                    report.conflicts += 1
                    report.skipped += 1
                    return
                if _edited_since(existing, since) and existing.data != change.data:
                    report.conflicts += 1

            data = dict(change.data)
            data["id"] = change.id
            table.upsert(data)
            report.applied += 1

        except Exception as exc:
            logger.warning("Error applying change to %s/%s: %s", change.table, change.id, exc)
            report.failed += 1

    def _keep_local(self, existing: StoredRow, change: ChangeRecord) -> bool:
        if self.conflict_policy != NEWER_WINS:
            return False
        local = existing.modified_at
        return local is not None and local > _incoming_marker(change)


def _incoming_marker(change: ChangeRecord) -> datetime:
    """The writer's own marker if the payload carries one, else the wire updatedAt."""
    return (
        parse_timestamp(change.data.get("updatedAt"))
        or parse_timestamp(change.data.get("createdAt"))
        or change.updated_at
    )


def _edited_since(row: StoredRow, since: Optional[datetime]) -> bool:
    return since is not None and row.modified_at is not None and row.modified_at > since


def _is_incomplete_user(existing: StoredRow, change: ChangeRecord) -> bool:
    # A nameless remote user must not wipe a named local one
    if existing.kind is not TableKind.USERS:
        return False
    return bool(existing.data.get("name")) and not change.data.get("name")
