"""StudyDB server - FastAPI application."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from .. import __version__
from ..validators import NotFoundError, ValidationError
from .dependencies import get_database
from .routers import experiments, observations, plots, sync

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialize database on startup."""
    db = get_database()
    db.init_db()
    yield


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    app = FastAPI(
        title="StudyDB",
        description="Animal-study records with offline field sync",
        version=__version__,
        lifespan=lifespan,
    )

    # Include routers
    app.include_router(sync.router)
    app.include_router(experiments.router)
    app.include_router(observations.router)
    app.include_router(plots.router)

    @app.exception_handler(ValidationError)
    async def validation_error_handler(request: Request, exc: ValidationError):
        return JSONResponse(status_code=400, content={
            "success": False,
            "error": exc.message,
            "field": exc.field,
        })

    @app.exception_handler(NotFoundError)
    async def not_found_handler(request: Request, exc: NotFoundError):
        return JSONResponse(status_code=404, content={"success": False, "error": str(exc)})

    @app.get("/api/health")
    async def health():
        """Liveness check, also used by field clients to detect connectivity."""
        return {"status": "ok", "version": __version__}

    return app


app = create_app()
