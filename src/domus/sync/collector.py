"""
Change collector: turns local rows and deletion-log entries into ChangeRecords.

Collection is best-effort per table. A table that fails to scan is logged
and reported in CollectionResult.failed_tables; the other tables are still
collected. No ordering is guaranteed across or within tables.
"""
import logging
from datetime import datetime
from typing import List, Optional

from domus.clock import Clock, utcnow
from domus.db.record_store import RecordStore, StoredRow
from domus.sync.deletion_log import DeletionLog
from domus.sync.types import ChangeRecord, CollectionResult

logger = logging.getLogger(__name__)

DELETION_LOG_SOURCE = "deletionLog"


class ChangeCollector:
    def __init__(self, store: RecordStore, deletion_log: DeletionLog, clock: Clock = utcnow):
        self.store = store
        self.deletion_log = deletion_log
        self.clock = clock

    def collect(self, since: Optional[datetime]) -> List[ChangeRecord]:
        """Every change after since; every row and tombstone when since is None."""
        return self.scan(since).changes

    def scan(self, since: Optional[datetime]) -> CollectionResult:
        result = CollectionResult()

        for table in self.store.tables():
            try:
                rows = table.scan()
            except Exception as exc:
                logger.warning("Error collecting changes from %s: %s", table.kind.value, exc)
                result.failed_tables.append(table.kind.value)
                continue

            for row in rows:
                if since is not None and not _modified_after(row, since):
                    continue
                result.changes.append(self._to_change(row))

        try:
            for entry in self.deletion_log.entries_since(since):
                result.changes.append(
                    ChangeRecord.tombstone(
                        entry.table_name, entry.record_id, entry.household_id, entry.deleted_at
                    )
                )
        except Exception as exc:
            logger.warning("Error collecting deletions: %s", exc)
            result.failed_tables.append(DELETION_LOG_SOURCE)

        logger.debug(
            "Collected %d changes since %s (%d tables failed)",
            len(result.changes),
            since.isoformat() if since else "the beginning",
            len(result.failed_tables),
        )
        return result

    def _to_change(self, row: StoredRow) -> ChangeRecord:
        # Rows without any timestamp are only reachable by a full resync
        return ChangeRecord(
            table=row.kind.value,
            id=row.id,
            data=row.data,
            updated_at=row.modified_at or self.clock(),
            deleted_at=None,
        )


def _modified_after(row: StoredRow, since: datetime) -> bool:
    marker = row.modified_at
    return marker is not None and marker > since
