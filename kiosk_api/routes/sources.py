"""Calendar source configuration endpoints."""

import logging
from typing import Annotated

from fastapi import APIRouter, Depends, status

from kiosk_backend.models import CalendarSource
from kiosk_backend.source_registry import SourceRegistry

from ..dependencies import bad_request, get_registry, not_found
from ..models import (
    BatchError,
    DeleteResponse,
    SourceBatchRequest,
    SourceBatchResponse,
    SourceIn,
    SourceOut,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/config/sources", tags=["sources"])


def _get_or_404(registry: SourceRegistry, source_id: str) -> CalendarSource:
    source = registry.get_source(source_id)
    if source is None:
        raise not_found("Calendar source not found", f"No source found with ID: {source_id}")
    return source


@router.get("", response_model=list[SourceOut])
def list_sources(registry: Annotated[SourceRegistry, Depends(get_registry)]):
    """All active sources."""
    return [SourceOut.from_source(source) for source in registry.list_sources()]


@router.post("", response_model=SourceOut, status_code=status.HTTP_201_CREATED)
def create_source(
    payload: SourceIn,
    registry: Annotated[SourceRegistry, Depends(get_registry)],
):
    logger.info("Creating source %s", payload.name)
    try:
        source = registry.create_source(payload.to_registry_data())
    except ValueError as e:
        raise bad_request("Invalid calendar source", str(e))
    return SourceOut.from_source(source)


@router.post("/batch", response_model=SourceBatchResponse)
def batch_sources(
    payload: SourceBatchRequest,
    registry: Annotated[SourceRegistry, Depends(get_registry)],
):
    """Create or update several sources; failures are reported per entry."""
    results = registry.batch_upsert([source.to_registry_data() for source in payload.sources])
    out = [
        BatchError(error=result["error"]) if isinstance(result, dict) else SourceOut.from_source(result)
        for result in results
    ]
    return SourceBatchResponse(success=True, results=out, count=len(out))


@router.get("/{source_id}", response_model=SourceOut)
def get_source(
    source_id: str,
    registry: Annotated[SourceRegistry, Depends(get_registry)],
):
    return SourceOut.from_source(_get_or_404(registry, source_id))


@router.put("/{source_id}", response_model=SourceOut)
def update_source(
    source_id: str,
    payload: SourceIn,
    registry: Annotated[SourceRegistry, Depends(get_registry)],
):
    _get_or_404(registry, source_id)
    try:
        source = registry.update_source(source_id, payload.to_registry_data())
    except ValueError as e:
        raise bad_request("Invalid calendar source", str(e))
    return SourceOut.from_source(source)


@router.delete("/{source_id}", response_model=DeleteResponse)
def delete_source(
    source_id: str,
    registry: Annotated[SourceRegistry, Depends(get_registry)],
):
    """Soft delete: the source is deactivated and its cached events removed."""
    _get_or_404(registry, source_id)
    registry.delete_source(source_id)
    return DeleteResponse(success=True, message="Calendar source deleted successfully")
