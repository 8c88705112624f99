"""
Deletion log: append-only ledger of local deletes.

Entries are written by RecordStore.remove() inside the row-delete
transaction, read by the change collector as tombstones, and purged only
after a push that carried them has been acknowledged.
"""
import logging
from datetime import datetime
from typing import List, Optional, Union

from sqlalchemy import delete, func, insert
from sqlmodel import Session, select

from domus.clock import Clock, ensure_utc, utcnow
from domus.models.records import TableKind
from domus.models.sync import DeletionLogEntry

logger = logging.getLogger(__name__)


class DeletionLog:
    def __init__(self, engine, clock: Clock = utcnow):
        self.engine = engine
        self.clock = clock

    def record_deletion(
        self,
        table: Union[str, TableKind],
        record_id: str,
        household_id: Optional[str],
        *,
        conn=None,
    ) -> DeletionLogEntry:
        """Append an entry stamped with the current time.

        Pass the connection that performs the row delete so both writes
        commit together. Without one the entry is committed on its own.
        """
        entry = DeletionLogEntry(
            table_name=table.value if isinstance(table, TableKind) else table,
            record_id=record_id,
            household_id=household_id,
            deleted_at=ensure_utc(self.clock()),
        )
        stmt = insert(DeletionLogEntry.__table__).values(
            table_name=entry.table_name,
            record_id=entry.record_id,
            household_id=entry.household_id,
            deleted_at=entry.deleted_at,
        )
        if conn is not None:
            conn.execute(stmt)
        else:
            with self.engine.begin() as c:
                c.execute(stmt)
        return entry

    def entries_since(self, since: Optional[datetime]) -> List[DeletionLogEntry]:
        """Entries with deleted_at strictly after since (all when since is None)."""
        query = select(DeletionLogEntry)
        if since is not None:
            query = query.where(DeletionLogEntry.deleted_at > ensure_utc(since))
        with Session(self.engine) as s:
            entries = s.exec(query.order_by(DeletionLogEntry.deleted_at)).all()
        for entry in entries:
            entry.deleted_at = ensure_utc(entry.deleted_at)
        return list(entries)

    def purge_up_to(self, cutoff: datetime) -> int:
        """Remove entries with deleted_at <= cutoff.

        Only call once a push containing those tombstones has succeeded.

        Returns:
            Number of entries removed.
        """
        with self.engine.begin() as conn:
            result = conn.execute(
                delete(DeletionLogEntry.__table__).where(
                    DeletionLogEntry.__table__.c.deleted_at <= ensure_utc(cutoff)
                )
            )
        purged = result.rowcount or 0
        if purged:
            logger.debug("Purged %d deletion log entries up to %s", purged, cutoff.isoformat())
        return purged

    def count(self) -> int:
        with Session(self.engine) as s:
            return s.exec(select(func.count()).select_from(DeletionLogEntry)).one()
