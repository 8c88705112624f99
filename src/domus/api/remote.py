"""FastAPI application factory for the reference sync remote."""
from fastapi import FastAPI
from sqlmodel import Session, SQLModel

from domus.api.routes import remote_sync
from domus.clock import Clock, utcnow
from domus.models.remote import RemoteChange, RemoteSession


def create_remote_app(engine, clock: Clock = utcnow) -> FastAPI:
    """Build the remote app on its own engine (separate from any device's record store)."""
    SQLModel.metadata.create_all(
        engine, tables=[RemoteChange.__table__, RemoteSession.__table__]
    )

    app = FastAPI(
        title="Domus Sync Remote",
        description="Reference server for the household push/pull protocol",
        version="0.1.0",
    )
    app.state.engine = engine
    app.state.clock = clock

    app.include_router(remote_sync.router, prefix="/api", tags=["remote"])

    return app


def issue_session(engine, token: str, user_id: str, household_id=None) -> RemoteSession:
    """Register a bearer token (stands in for the external auth service)."""
    with Session(engine) as s:
        remote_session = RemoteSession(token=token, user_id=user_id, household_id=household_id)
        s.merge(remote_session)
        s.commit()
    return remote_session
