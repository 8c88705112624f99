"""SQLModel engine singleton and session dependency."""
from typing import Generator

from sqlalchemy import inspect
from sqlmodel import Session, SQLModel, create_engine

from domus.config import get_settings

_engine = None


def get_engine():
    """Return the module-level engine, creating it on first call."""
    global _engine
    if _engine is None:
        settings = get_settings()
        _engine = create_engine(
            settings.database_url,
            connect_args={"check_same_thread": False},  # SQLite only; safe for FastAPI
        )
        init_schema(_engine)
    return _engine


def init_schema(engine) -> None:
    """Create all tables and apply column migrations.

    A brand-new database is stamped with the current schema version so the
    migration gate does not treat it as legacy.
    """
    # Import all models so metadata is populated before create_all
    from domus.models import records, remote, sync  # noqa: F401
    from domus.db.migrations import run_migrations, stamp_schema_version

    fresh = not inspect(engine).get_table_names()
    SQLModel.metadata.create_all(engine)
    run_migrations(engine)
    if fresh:
        stamp_schema_version(engine)


def reset_engine() -> None:
    """Dispose the engine so the next get_engine() reconnects."""
    global _engine
    if _engine is not None:
        _engine.dispose()
    _engine = None


def get_session() -> Generator[Session, None, None]:
    """FastAPI dependency that yields a DB session."""
    with Session(get_engine()) as session:
        yield session
