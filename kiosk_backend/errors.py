"""
Error taxonomy for the kiosk calendar backend.

Retry exhaustion is not an exception: a gated sync attempt is reported
through SyncResult.skipped instead.
"""

from typing import Optional


class KioskError(Exception):
    """Base class for all backend errors."""


class ConfigError(KioskError):
    """Invalid or unusable configuration."""


class SourceNotFound(KioskError):
    """A calendar source does not exist or has been deactivated."""

    def __init__(self, source_id: str):
        super().__init__(f"Source not found: {source_id}")
        self.source_id = source_id


class MalformedCalendarData(KioskError):
    """Raw calendar text could not be parsed into a calendar structure."""


class TransportFailure(KioskError):
    """
    A remote fetch failed.

    Covers connection errors, timeouts and non-2xx responses alike.
    """

    def __init__(self, url: str, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.url = url
        self.status = status
