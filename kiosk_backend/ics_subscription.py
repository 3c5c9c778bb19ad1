"""
ICS feed fetching for read-only calendar subscriptions.

Just fetches raw VCALENDAR text. Parsing and recurrence expansion are
handled by the OccurrenceMaterializer.
"""

import logging
from typing import Optional

import requests

from .errors import TransportFailure


logger = logging.getLogger(__name__)

USER_AGENT = "Kiosk-Calendar/1.0"
DEFAULT_TIMEOUT = 45


def normalize_feed_url(url: str) -> str:
    """Rewrite webcal:// subscription links to https://."""
    if url.lower().startswith("webcal://"):
        return "https://" + url[len("webcal://"):]
    return url


def fetch_ics(
    url: str,
    auth: Optional[tuple[str, str]] = None,
    timeout: float = DEFAULT_TIMEOUT,
    session: Optional[requests.Session] = None,
) -> str:
    """
    Fetch an ICS feed.

    Args:
        url: Feed URL (http, https or webcal)
        auth: (username, password) for HTTP Basic auth, or None for public feeds
        timeout: Request timeout in seconds
        session: Optional requests session to reuse connections

    Returns:
        Raw VCALENDAR text.

    Raises:
        TransportFailure: on connection errors, timeouts and non-2xx responses.
    """
    feed_url = normalize_feed_url(url)
    http = session or requests
    try:
        response = http.get(
            feed_url,
            timeout=timeout,
            auth=auth,
            headers={
                'User-Agent': USER_AGENT,
                'Accept': 'text/calendar'
            }
        )
        response.raise_for_status()
    except requests.HTTPError as e:
        status = e.response.status_code if e.response is not None else None
        raise TransportFailure(feed_url, f"HTTP {status}: {e}", status=status) from e
    except requests.Timeout as e:
        raise TransportFailure(feed_url, f"Timed out after {timeout}s: {e}") from e
    except requests.RequestException as e:
        raise TransportFailure(feed_url, f"Network error: {e}") from e

    # Ensure proper UTF-8 decoding
    response.encoding = 'utf-8'
    logger.debug("Fetched %d bytes from %s", len(response.content), feed_url)
    return response.text
