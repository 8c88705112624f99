"""
Record store: the generic table interface the app and the sync engine share.

Each TableKind maps to a RecordTable exposing scan/get/upsert/delete.
Every primitive runs in its own short transaction, so the UI can keep
writing while a sync cycle scans or applies.

App code writes through RecordStore.put() and RecordStore.remove();
remove() writes the deletion-log entry in the same transaction as the row
delete, and rolls the delete back if the log write fails.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Union

from pydantic_core import to_jsonable_python
from sqlalchemy import delete, select
from sqlalchemy.dialects.sqlite import insert

from domus.clock import Clock, ensure_utc, format_timestamp, parse_timestamp, utcnow
from domus.models.records import RECORD_TABLES, TableKind
from domus.sync.deletion_log import DeletionLog

logger = logging.getLogger(__name__)


class UnknownTableError(KeyError):
    """Raised when a table name is not part of the tracked-table enumeration."""


@dataclass
class StoredRow:
    kind: TableKind
    id: str
    household_id: Optional[str]
    created_at: Optional[datetime]
    updated_at: Optional[datetime]
    data: Dict[str, Any]

    @property
    def modified_at(self) -> Optional[datetime]:
        """Modification marker: updatedAt, falling back to createdAt."""
        return self.updated_at or self.created_at


def resolve_kind(name: Union[str, TableKind]) -> TableKind:
    """Map a logical table name to its TableKind.

    Raises:
        UnknownTableError: if the name is not a tracked table.
    """
    if isinstance(name, TableKind):
        return name
    try:
        return TableKind(name)
    except ValueError:
        raise UnknownTableError(name) from None


class RecordTable:
    """Row primitives for one tracked table."""

    def __init__(self, kind: TableKind, engine):
        self.kind = kind
        self.engine = engine
        self._table = RECORD_TABLES[kind]

    def scan(self) -> List[StoredRow]:
        with self.engine.connect() as conn:
            rows = conn.execute(select(self._table)).all()
        return [self._to_row(r) for r in rows]

    def get(self, record_id: str) -> Optional[StoredRow]:
        with self.engine.connect() as conn:
            row = conn.execute(
                select(self._table).where(self._table.c.id == record_id)
            ).first()
        return self._to_row(row) if row else None

    def upsert(self, data: Dict[str, Any]) -> None:
        """Insert or fully replace the row keyed by data["id"]."""
        values = self._to_values(data)
        stmt = insert(self._table).values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=[self._table.c.id],
            set_={k: v for k, v in values.items() if k != "id"},
        )
        with self.engine.begin() as conn:
            conn.execute(stmt)

    def delete(self, record_id: str, conn=None) -> bool:
        """Delete a row. Deleting an absent row is not an error.

        Args:
            conn: Optional connection/session to join an outer transaction.

        Returns:
            True if a row was removed.
        """
        stmt = delete(self._table).where(self._table.c.id == record_id)
        if conn is not None:
            return conn.execute(stmt).rowcount > 0
        with self.engine.begin() as c:
            return c.execute(stmt).rowcount > 0

    def count(self) -> int:
        return len(self.scan())

    # ─── Internal helpers ─────────────────────────────────────────────────────

    def _to_values(self, data: Dict[str, Any]) -> Dict[str, Any]:
        record_id = data.get("id")
        if not record_id:
            raise ValueError(f"{self.kind.value}: row has no id")
        payload = to_jsonable_python(data)
        return {
            "id": str(record_id),
            "household_id": payload.get("householdId"),
            "created_at": parse_timestamp(payload.get("createdAt")),
            "updated_at": parse_timestamp(payload.get("updatedAt")),
            "data": payload,
        }

    def _to_row(self, row) -> StoredRow:
        return StoredRow(
            kind=self.kind,
            id=row.id,
            household_id=row.household_id,
            created_at=ensure_utc(row.created_at),
            updated_at=ensure_utc(row.updated_at),
            data=dict(row.data or {}),
        )


class RecordStore:
    """Registry of RecordTables plus the app-facing write API."""

    def __init__(self, engine, deletion_log=None, clock: Clock = utcnow):
        """
        Args:
            engine: SQLAlchemy engine (SQLModel create_engine result).
            deletion_log: DeletionLog used by remove(). Defaults to one on the same engine.
            clock: Returns the current aware-UTC time.
        """
        self.engine = engine
        self.clock = clock
        self.deletion_log = deletion_log or DeletionLog(engine, clock=clock)
        self._listeners: List[Callable[[TableKind, str], None]] = []
        self._tables: Dict[TableKind, RecordTable] = {}
        self.reload()

    def reload(self) -> None:
        """Rebuild the table handles (after a schema migration)."""
        self._tables = {kind: RecordTable(kind, self.engine) for kind in TableKind}

    def table(self, name: Union[str, TableKind]) -> RecordTable:
        return self._tables[resolve_kind(name)]

    def tables(self) -> List[RecordTable]:
        return list(self._tables.values())

    def add_listener(self, callback: Callable[[TableKind, str], None]) -> None:
        """Register a callback invoked as callback(kind, record_id) after each local write."""
        self._listeners.append(callback)

    def put(self, kind: Union[str, TableKind], data: Dict[str, Any]) -> Dict[str, Any]:
        """App write: stamp updatedAt (and createdAt if absent), then upsert.

        Returns:
            The row as stored.
        """
        table = self.table(kind)
        now = format_timestamp(self.clock())
        row = dict(data)
        row.setdefault("createdAt", now)
        row["updatedAt"] = now
        table.upsert(row)
        self._notify(table.kind, str(row["id"]))
        return row

    def remove(self, kind: Union[str, TableKind], record_id: str) -> bool:
        """App delete: remove the row and log the deletion atomically.

        Raises:
            Any exception from the deletion log; the row is left in place.

        Returns:
            True if a row was removed (nothing is logged for absent rows).
        """
        table = self.table(kind)
        existing = table.get(record_id)
        if existing is None:
            return False

        try:
            with self.engine.begin() as conn:
                removed = table.delete(record_id, conn=conn)
                if removed:
                    self.deletion_log.record_deletion(
                        table.kind, record_id, existing.household_id, conn=conn
                    )
        except Exception:
            logger.error("Delete of %s/%s aborted", table.kind.value, record_id)
            raise

        if removed:
            self._notify(table.kind, record_id)
        return removed

    def _notify(self, kind: TableKind, record_id: str) -> None:
        for callback in self._listeners:
            try:
                callback(kind, record_id)
            except Exception:
                logger.exception("Change listener failed for %s/%s", kind.value, record_id)
