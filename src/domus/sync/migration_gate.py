"""
Migration gate: makes sure the local schema matches what the sync protocol
expects before a cycle touches any table.

Schema v1 databases stored auto-increment integer ids and had no
updated_at column; v2 uses "<prefix>_<uuid>" ids and tracks updated_at.
The version lives in SQLite's PRAGMA user_version.
"""
import logging
from typing import Callable, List, Optional

from sqlalchemy import inspect
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import SQLModel

from domus.db.migrations import (
    CURRENT_SCHEMA_VERSION,
    count_legacy_ids,
    get_schema_version,
    missing_record_columns,
    rewrite_legacy_ids,
    run_migrations,
    set_schema_version,
)
from domus.models.records import RECORD_TABLES
from domus.models.sync import DeletionLogEntry, SyncLog
from domus.sync.types import MigrationResult, MigrationStatus

logger = logging.getLogger(__name__)


class MigrationError(RuntimeError):
    """Raised when a required migration could not be completed."""


def _local_tables() -> List:
    # Server-side tables (models/remote.py) share the metadata but are not local state
    return list(RECORD_TABLES.values()) + [DeletionLogEntry.__table__, SyncLog.__table__]


class MigrationGate:
    def __init__(self, engine, on_migrated: Optional[Callable[[], None]] = None):
        """
        Args:
            engine: SQLAlchemy engine of the local record store.
            on_migrated: Called after a successful migration so holders of
                table handles (RecordStore.reload) can re-initialise.
        """
        self.engine = engine
        self.on_migrated = on_migrated

    def check(self) -> MigrationStatus:
        try:
            with self.engine.connect() as conn:
                version = get_schema_version(conn)
                existing = set(inspect(conn).get_table_names())
                missing_tables = [t.name for t in _local_tables() if t.name not in existing]
                missing_columns = missing_record_columns(conn)
                legacy_ids = count_legacy_ids(conn) if version < CURRENT_SCHEMA_VERSION else {}
        except SQLAlchemyError as exc:
            logger.error("Error checking migration status: %s", exc)
            return MigrationStatus(needs_migration=True, error=str(exc))

        return MigrationStatus(
            needs_migration=bool(
                version < CURRENT_SCHEMA_VERSION or missing_tables or missing_columns
            ),
            current_version=version,
            missing_tables=missing_tables,
            missing_columns=missing_columns,
            legacy_ids=legacy_ids,
        )

    def needs_migration(self) -> bool:
        return self.check().needs_migration

    def migrate(self) -> MigrationResult:
        """Bring the local schema to CURRENT_SCHEMA_VERSION.

        Steps: create missing tables, add missing columns, rewrite legacy
        integer ids, stamp the version, re-initialise table handles. The id
        rewrite and the version stamp commit together.
        """
        status = self.check()
        if status.error:
            return MigrationResult(success=False, error=f"could not verify schema: {status.error}")
        if not status.needs_migration:
            logger.debug("No migration needed")
            return MigrationResult(success=True)

        logger.info("Migrating local database from schema v%d", status.current_version)
        try:
            SQLModel.metadata.create_all(self.engine, tables=_local_tables())
            run_migrations(self.engine)
            with self.engine.begin() as conn:
                rewritten = (
                    rewrite_legacy_ids(conn)
                    if status.current_version < CURRENT_SCHEMA_VERSION
                    else {}
                )
                set_schema_version(conn, CURRENT_SCHEMA_VERSION)
        except Exception as exc:
            logger.error("Migration failed: %s", exc)
            return MigrationResult(success=False, error=str(exc))

        if self.on_migrated is not None:
            self.on_migrated()

        tables = set(status.missing_tables) | set(status.missing_columns) | set(rewritten)
        result = MigrationResult(
            success=True,
            records_migrated=sum(rewritten.values()),
            tables_processed=sorted(tables),
        )
        logger.info(
            "Migration complete: %d records rewritten, %d tables touched",
            result.records_migrated, len(result.tables_processed),
        )
        return result

    def ensure_ready(self) -> bool:
        """Migrate if needed.

        Returns:
            True if a migration ran.

        Raises:
            MigrationError: if the schema could not be inspected, or the
                migration was needed and failed.
        """
        status = self.check()
        if status.error:
            raise MigrationError(f"could not verify schema: {status.error}")
        if not status.needs_migration:
            return False
        result = self.migrate()
        if not result.success:
            raise MigrationError(result.error or "unknown migration error")
        return True
