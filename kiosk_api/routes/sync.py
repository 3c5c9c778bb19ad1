"""Sync control endpoints: trigger, status and retry reset."""

import logging
from typing import Annotated, Optional

from fastapi import APIRouter, Body, Depends, Query

from kiosk_backend.sync_orchestrator import SyncOrchestrator
from kiosk_backend.sync_state import SyncMetadata

from ..dependencies import get_orchestrator, not_found
from ..models import (
    ResetRetryResponse,
    SyncMetadataOut,
    SyncResultOut,
    SyncTriggerRequest,
    SyncTriggerResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/sync", tags=["sync"])


def _metadata_out(orchestrator: SyncOrchestrator, metadata: SyncMetadata) -> SyncMetadataOut:
    return SyncMetadataOut.model_validate(
        {**metadata.to_dict(), "phase": orchestrator.phase(metadata.source_id).value}
    )


@router.post("/trigger", response_model=SyncTriggerResponse)
def trigger_sync(
    orchestrator: Annotated[SyncOrchestrator, Depends(get_orchestrator)],
    payload: Annotated[Optional[SyncTriggerRequest], Body()] = None,
):
    """Run one sync now, for a single source or for all of them."""
    source_id = payload.source_id if payload else None
    logger.info("Manual sync requested for %s", source_id or "all sources")

    if source_id:
        # SourceNotFound is turned into a 404 by the app
        results = [orchestrator.sync_source(source_id)]
    else:
        results = orchestrator.sync_all_sources()

    return SyncTriggerResponse(
        success=all(result.success for result in results),
        message="Sync completed",
        results=[SyncResultOut.model_validate(result.to_dict()) for result in results],
    )


@router.get("/status", response_model=SyncMetadataOut | list[SyncMetadataOut])
def sync_status(
    orchestrator: Annotated[SyncOrchestrator, Depends(get_orchestrator)],
    source_id: Annotated[Optional[str], Query(alias="sourceId")] = None,
):
    """Sync metadata of one source, or of every source that has synced."""
    if source_id:
        metadata = orchestrator.get_status(source_id)
        if metadata is None:
            raise not_found("Sync metadata not found", f"No metadata found for source: {source_id}")
        return _metadata_out(orchestrator, metadata)
    return [_metadata_out(orchestrator, metadata) for metadata in orchestrator.get_status()]


@router.post("/reset-retry/{source_id}", response_model=ResetRetryResponse)
def reset_retry(
    source_id: str,
    orchestrator: Annotated[SyncOrchestrator, Depends(get_orchestrator)],
):
    metadata = orchestrator.reset_retry(source_id)
    return ResetRetryResponse(
        success=True,
        message="Retry counter reset successfully",
        metadata=_metadata_out(orchestrator, metadata),
    )
