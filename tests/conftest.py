"""Shared test fixtures."""
from datetime import datetime, timedelta, timezone
from typing import Generator

import pytest
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, create_engine

from domus.db.engine import init_schema
from domus.db.record_store import RecordStore
from domus.sync.deletion_log import DeletionLog
from domus.sync.session import SessionAuth

T0 = datetime(2025, 1, 15, 7, 0, tzinfo=timezone.utc)

FAKE_SESSION = {"token": "tok-device-a", "userId": "usr_alice", "householdId": "hh_1"}


class FakeClock:
    """Manually advanced clock; each call returns the current instant."""

    def __init__(self, start: datetime = T0):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


def make_engine():
    return create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )


@pytest.fixture(name="engine")
def engine_fixture():
    """In-memory SQLite engine with the current schema, stamped v2."""
    engine = make_engine()
    init_schema(engine)
    yield engine
    engine.dispose()


@pytest.fixture(name="test_session")
def test_session_fixture(engine) -> Generator[Session, None, None]:
    with Session(engine) as session:
        yield session


@pytest.fixture(name="clock")
def clock_fixture() -> FakeClock:
    return FakeClock()


@pytest.fixture(name="deletion_log")
def deletion_log_fixture(engine, clock) -> DeletionLog:
    return DeletionLog(engine, clock=clock)


@pytest.fixture(name="store")
def store_fixture(engine, deletion_log, clock) -> RecordStore:
    return RecordStore(engine, deletion_log=deletion_log, clock=clock)


@pytest.fixture(name="auth")
def auth_fixture(tmp_path) -> SessionAuth:
    auth = SessionAuth(tmp_path / "session")
    auth.save(FAKE_SESSION)
    return auth
