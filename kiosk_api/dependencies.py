"""FastAPI dependencies for the shared backend objects."""

from fastapi import HTTPException, Request, status

from kiosk_backend.event_storage import EventStorageBackend
from kiosk_backend.source_registry import SourceRegistry
from kiosk_backend.sync_orchestrator import SyncOrchestrator

from .models import ErrorCodes


def get_orchestrator(request: Request) -> SyncOrchestrator:
    return request.app.state.orchestrator


def get_registry(request: Request) -> SourceRegistry:
    return request.app.state.orchestrator.registry


def get_storage(request: Request) -> EventStorageBackend:
    return request.app.state.orchestrator.storage


def not_found(error: str, details: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_404_NOT_FOUND,
        detail={"error": error, "code": ErrorCodes.NOT_FOUND, "details": [details]},
    )


def bad_request(error: str, details: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_400_BAD_REQUEST,
        detail={"error": error, "code": ErrorCodes.INVALID_REQUEST, "details": [details]},
    )
