"""
Database migrations for the household record store.

Structural changes use SQLite ALTER TABLE ADD COLUMN and are idempotent:
columns are only added if absent. Data migrations (legacy id rewrite) are
driven by the sync migration gate and recorded in PRAGMA user_version.

run_migrations() is called automatically from init_schema() after
create_all() so both fresh installs and existing DBs gain new columns.
"""
import json
from typing import Dict, List, Set

from sqlalchemy import select, text, update

from domus.clock import generate_id
from domus.models.records import (
    LEGACY_ID_PREFIXES,
    RECORD_TABLES,
    REQUIRED_COLUMNS,
    sql_table_name,
)

# v1: integer ids, no updated_at column. v2: string ids, updated_at tracked.
CURRENT_SCHEMA_VERSION = 2


def run_migrations(engine) -> None:
    """Apply all pending column migrations.

    Safe to call multiple times: checks column existence before altering.
    Supports SQLite only (uses PRAGMA table_info).

    Args:
        engine: SQLAlchemy engine (SQLModel create_engine result).
    """
    with engine.connect() as conn:
        for kind in RECORD_TABLES:
            for column, col_type in REQUIRED_COLUMNS.items():
                _add_column_if_missing(conn, sql_table_name(kind), column, col_type)

        # DeletionLogEntry: household scope for tombstone payloads
        _add_column_if_missing(conn, "deletionlogentry", "household_id", "TEXT")

        conn.commit()


def get_schema_version(conn) -> int:
    return int(conn.execute(text("PRAGMA user_version")).scalar() or 0)


def set_schema_version(conn, version: int) -> None:
    # PRAGMA does not accept bound parameters
    conn.execute(text(f"PRAGMA user_version = {int(version)}"))


def stamp_schema_version(engine, version: int = CURRENT_SCHEMA_VERSION) -> None:
    with engine.connect() as conn:
        set_schema_version(conn, version)
        conn.commit()


def table_columns(conn, table: str) -> Set[str]:
    """Column names of a table; empty set if the table does not exist."""
    result = conn.execute(text(f"PRAGMA table_info({table})"))
    return {row[1] for row in result}


def missing_record_columns(conn) -> Dict[str, List[str]]:
    """Map of existing record tables to the required columns they lack."""
    missing: Dict[str, List[str]] = {}
    for kind in RECORD_TABLES:
        name = sql_table_name(kind)
        existing = table_columns(conn, name)
        if not existing:
            continue
        absent = [c for c in REQUIRED_COLUMNS if c not in existing]
        if absent:
            missing[name] = absent
    return missing


def count_legacy_ids(conn) -> Dict[str, int]:
    """Rows per id-prefixed table whose id is still a bare integer."""
    counts: Dict[str, int] = {}
    for kind in LEGACY_ID_PREFIXES:
        name = sql_table_name(kind)
        if not table_columns(conn, name):
            continue
        n = conn.execute(
            text(f"SELECT COUNT(*) FROM {name} WHERE id != '' AND id NOT GLOB '*[^0-9]*'")
        ).scalar()
        if n:
            counts[kind.value] = int(n)
    return counts


def rewrite_legacy_ids(conn) -> Dict[str, int]:
    """Give every bare-integer id a "<prefix>_<uuid>" id, in place.

    data["id"] is rewritten too. Foreign keys held inside other rows' data
    are left untouched.

    Returns:
        Number of rows rewritten per table value (e.g. {"chores": 3}).
    """
    rewritten: Dict[str, int] = {}
    for kind, prefix in LEGACY_ID_PREFIXES.items():
        table = RECORD_TABLES[kind]
        rows = conn.execute(
            select(table.c.id, table.c.data).where(
                table.c.id != "", ~table.c.id.op("GLOB")("*[^0-9]*")
            )
        ).all()
        for old_id, data in rows:
            new_id = generate_id(prefix)
            payload = dict(json.loads(data) if isinstance(data, str) else (data or {}))
            payload["id"] = new_id
            conn.execute(
                update(table).where(table.c.id == old_id).values(id=new_id, data=payload)
            )
        if rows:
            rewritten[kind.value] = len(rows)
    return rewritten


def _add_column_if_missing(conn, table: str, column: str, col_type: str) -> None:
    """Add a column to a table if it doesn't already exist.

    Args:
        conn: SQLAlchemy connection.
        table: Table name (lowercase, as SQLite stores it).
        column: Column name to add.
        col_type: SQLite type string, e.g. "INTEGER", "REAL", "TEXT".
    """
    existing_columns = table_columns(conn, table)
    if existing_columns and column not in existing_columns:
        conn.execute(text(f"ALTER TABLE {table} ADD COLUMN {column} {col_type}"))
