"""FastAPI application factory."""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from kiosk_backend import __version__
from kiosk_backend.database import DbPath
from kiosk_backend.errors import SourceNotFound
from kiosk_backend.scheduler import SyncScheduler
from kiosk_backend.sync_orchestrator import SyncOrchestrator

from .models import ErrorCodes, ErrorResponse
from .routes import events_router, health_router, sources_router, sync_router

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start the sync schedule with the app and stop it on shutdown."""
    scheduler: Optional[SyncScheduler] = app.state.scheduler
    if scheduler is not None:
        scheduler.start()

    yield

    if scheduler is not None:
        scheduler.stop()
    app.state.orchestrator.shutdown(wait=False)


def _error(status_code: int, error: str, code: str, details: list[str]) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(error=error, code=code, details=details).model_dump(),
    )


def create_app(
    orchestrator: SyncOrchestrator,
    db_path: DbPath,
    scheduler: Optional[SyncScheduler] = None,
    cors_origins: Optional[list[str]] = None,
) -> FastAPI:
    """
    Build the API around an already wired orchestrator.

    Args:
        orchestrator: Owns the registry and the event cache used by the routes
        db_path: Database path, probed by /health
        scheduler: Optional background schedule tied to the app lifespan
        cors_origins: Allowed browser origins; CORS is off when empty
    """
    app = FastAPI(
        title="Kiosk Calendar API",
        description="Sync control and read access to the kiosk's cached calendar occurrences",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.orchestrator = orchestrator
    app.state.scheduler = scheduler
    app.state.db_path = db_path

    if cors_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=cors_origins,
            allow_credentials="*" not in cors_origins,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        if isinstance(exc.detail, dict):
            return JSONResponse(status_code=exc.status_code, content=exc.detail)
        code = ErrorCodes.NOT_FOUND if exc.status_code == 404 else ErrorCodes.INVALID_REQUEST
        return _error(exc.status_code, str(exc.detail), code, [])

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        details = [
            f"{'.'.join(str(part) for part in error['loc'])}: {error['msg']}"
            for error in exc.errors()
        ]
        return _error(status.HTTP_400_BAD_REQUEST, "Invalid request", ErrorCodes.VALIDATION_ERROR, details)

    @app.exception_handler(SourceNotFound)
    async def source_not_found_handler(request: Request, exc: SourceNotFound):
        return _error(
            status.HTTP_404_NOT_FOUND,
            "Calendar source not found",
            ErrorCodes.NOT_FOUND,
            [f"No source found with ID: {exc.source_id}"],
        )

    # Global exception handler for unexpected errors
    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        return _error(
            status.HTTP_500_INTERNAL_SERVER_ERROR,
            "Internal server error",
            ErrorCodes.INTERNAL_ERROR,
            [],
        )

    app.include_router(health_router)
    app.include_router(sync_router)
    app.include_router(events_router)
    app.include_router(sources_router)

    return app
