"""
Sync metadata and its retry/backoff state machine.

SyncMetadata records are immutable; every transition returns a new record,
so the backoff and reset rules can be exercised without a database.
"""

from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from enum import Enum
from typing import Optional

from .timezone_utils import isoformat_z


class SyncStatus(Enum):
    """Outcome of the last sync attempt for a source."""
    NEVER = "never"
    SUCCESS = "success"
    ERROR = "error"


class SyncPhase(Enum):
    """Where a source stands between sync attempts."""
    IDLE = "idle"          # eligible, nothing outstanding
    SYNCING = "syncing"    # an attempt is in flight
    BACKOFF = "backoff"    # failed recently; still eligible, retry scheduled
    FAILED = "failed"      # retries exhausted; gated until next_retry_time


RETRY_LIMIT_EXCEEDED = "Retry limit exceeded"


@dataclass(frozen=True)
class BackoffPolicy:
    """Retry limit and delay schedule for failed syncs."""
    max_retries: int = 3
    backoff_minutes: tuple[int, ...] = (1, 5, 15)

    def delay(self, retry_count: int) -> timedelta:
        """Delay before the next retry after the given number of failures."""
        schedule = self.backoff_minutes or (0,)
        index = min(max(retry_count - 1, 0), len(schedule) - 1)
        return timedelta(minutes=schedule[index])


DEFAULT_POLICY = BackoffPolicy()


@dataclass(frozen=True)
class SyncMetadata:
    """Per-source record of the last sync result and retry state."""
    source_id: str
    last_sync_time: Optional[datetime] = None
    last_sync_status: SyncStatus = SyncStatus.NEVER
    last_error: Optional[str] = None
    retry_count: int = 0
    next_retry_time: Optional[datetime] = None
    # Carried forward for a future incremental sync; not used today
    sync_token: Optional[str] = None
    ctag: Optional[str] = None

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "sourceId": self.source_id,
            "lastSyncTime": isoformat_z(self.last_sync_time),
            "lastSyncStatus": self.last_sync_status.value,
            "lastError": self.last_error,
            "retryCount": self.retry_count,
            "nextRetryTime": isoformat_z(self.next_retry_time),
            "syncToken": self.sync_token,
            "ctag": self.ctag,
        }


def new_metadata(source_id: str) -> SyncMetadata:
    return SyncMetadata(source_id=source_id)


def is_gated(
    metadata: Optional[SyncMetadata],
    now: datetime,
    policy: BackoffPolicy = DEFAULT_POLICY,
) -> bool:
    """True while retries are exhausted and the cooldown has not elapsed."""
    if metadata is None:
        return False
    return (
        metadata.retry_count >= policy.max_retries
        and metadata.next_retry_time is not None
        and now < metadata.next_retry_time
    )


def should_attempt(
    metadata: Optional[SyncMetadata],
    now: datetime,
    policy: BackoffPolicy = DEFAULT_POLICY,
) -> bool:
    """Backoff gate: whether a sync may touch the network right now."""
    return not is_gated(metadata, now, policy)


def phase_of(
    metadata: Optional[SyncMetadata],
    now: datetime,
    policy: BackoffPolicy = DEFAULT_POLICY,
    in_flight: bool = False,
) -> SyncPhase:
    """Classify a metadata record into a SyncPhase."""
    if in_flight:
        return SyncPhase.SYNCING
    if metadata is None or metadata.retry_count == 0:
        return SyncPhase.IDLE
    if is_gated(metadata, now, policy):
        return SyncPhase.FAILED
    if metadata.next_retry_time is not None and now < metadata.next_retry_time:
        return SyncPhase.BACKOFF
    return SyncPhase.IDLE


def record_success(metadata: SyncMetadata, now: datetime) -> SyncMetadata:
    """Transition after a fully successful sync."""
    return replace(
        metadata,
        last_sync_time=now,
        last_sync_status=SyncStatus.SUCCESS,
        last_error=None,
        retry_count=0,
        next_retry_time=None,
    )


def record_failure(
    metadata: SyncMetadata,
    error: str,
    now: datetime,
    policy: BackoffPolicy = DEFAULT_POLICY,
) -> SyncMetadata:
    """
    Transition after a failed sync.

    The retry count grows by one and the next retry is scheduled from the
    backoff table, indexed by min(retry_count - 1, len(table) - 1).
    last_sync_time keeps pointing at the last success.
    """
    retry_count = metadata.retry_count + 1
    return replace(
        metadata,
        last_sync_status=SyncStatus.ERROR,
        last_error=error,
        retry_count=retry_count,
        next_retry_time=now + policy.delay(retry_count),
    )


def reset_retry(metadata: SyncMetadata) -> SyncMetadata:
    """Operator reset: make the source eligible again without a successful sync."""
    return replace(metadata, retry_count=0, next_retry_time=None, last_error=None)
