"""HTTP API of the kiosk calendar backend."""

from .main import create_app

__all__ = ["create_app"]
