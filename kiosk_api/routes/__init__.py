"""API route modules."""

from .events import router as events_router
from .health import router as health_router
from .sources import router as sources_router
from .sync import router as sync_router

__all__ = ["events_router", "health_router", "sources_router", "sync_router"]
