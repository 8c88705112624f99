"""FastAPI application factory for the local control API."""
from contextlib import asynccontextmanager

from fastapi import FastAPI

from domus.api.routes import sync as sync_routes


def create_app() -> FastAPI:
    """Build and return the FastAPI app."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        # Close the HTTP client of an orchestrator built for this process
        if sync_routes._orchestrator is not None:
            await sync_routes._orchestrator.aclose()
            sync_routes._orchestrator = None

    app = FastAPI(
        title="Domus Sync",
        description="Local control API for the household sync engine",
        version="0.1.0",
        lifespan=lifespan,
    )

    app.include_router(sync_routes.router, prefix="/sync", tags=["sync"])

    return app


# Module-level app instance for uvicorn
app = create_app()
