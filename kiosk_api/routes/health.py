"""Health check endpoint."""

import sqlite3
from datetime import datetime, timezone

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from kiosk_backend import __version__, database

from ..models import HealthResponse

router = APIRouter()


@router.get("/health", response_model=HealthResponse)
def health_check(request: Request):
    """
    Health check endpoint for monitoring.

    Returns 200 if the database answers, 503 otherwise.
    """
    timestamp = datetime.now(timezone.utc).isoformat()
    try:
        database.get_schema_version(request.app.state.db_path)
    except sqlite3.Error as e:
        return JSONResponse(
            status_code=503,
            content=HealthResponse(
                status="unhealthy",
                version=__version__,
                timestamp=timestamp,
                database="unavailable",
                error=str(e),
            ).model_dump(),
        )

    return HealthResponse(
        status="healthy",
        version=__version__,
        timestamp=timestamp,
        database="ok",
    )
