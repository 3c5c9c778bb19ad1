"""
Network Worker - runs blocking fetches in background threads.

Uses ThreadPoolExecutor so several sources can be fetched at once.
Completion is reported through optional callbacks, invoked on the
worker thread that ran the operation.
"""

import logging
from concurrent.futures import Future, ThreadPoolExecutor
from threading import Lock
from typing import Any, Callable, Optional


logger = logging.getLogger(__name__)

FinishedCallback = Callable[[str, Any], None]
ErrorCallback = Callable[[str, BaseException], None]


class NetworkWorker:
    """
    Runs network operations in background threads.

    Operations are tracked by id until they complete.
    """

    def __init__(
        self,
        max_workers: int = 3,
        on_finished: Optional[FinishedCallback] = None,
        on_error: Optional[ErrorCallback] = None,
    ):
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="network")
        self._pending: dict[str, Future] = {}
        self._lock = Lock()
        self.on_finished = on_finished
        self.on_error = on_error

    def submit(self, operation_id: str, func: Callable, *args, **kwargs) -> Future:
        """
        Submit a blocking operation to run in a background thread.

        Args:
            operation_id: Name under which the operation is tracked, e.g. "sync:<source_id>"
            func: Blocking callable, typically a per-source sync
            *args, **kwargs: Passed through to func

        Returns:
            The Future of the operation.
        """
        future = self._executor.submit(func, *args, **kwargs)
        with self._lock:
            self._pending[operation_id] = future
        future.add_done_callback(lambda f: self._on_done(operation_id, f))
        return future

    def _on_done(self, operation_id: str, future: Future) -> None:
        """Untrack the operation and report its outcome."""
        with self._lock:
            if self._pending.get(operation_id) is future:
                del self._pending[operation_id]

        if future.cancelled():
            logger.debug("Operation '%s' was cancelled", operation_id)
            return

        error = future.exception()
        if error is None:
            if self.on_finished:
                self.on_finished(operation_id, future.result())
            return

        logger.error(
            "Operation '%s' failed: %s: %s", operation_id, type(error).__name__, error,
            exc_info=(type(error), error, error.__traceback__),
        )
        if self.on_error:
            self.on_error(operation_id, error)

    def is_pending(self, operation_id: str) -> bool:
        """Check if an operation is still pending."""
        with self._lock:
            return operation_id in self._pending

    def cancel(self, operation_id: str) -> bool:
        """
        Attempt to cancel a pending operation.

        Returns True if cancelled, False if already running or completed.
        """
        with self._lock:
            future = self._pending.get(operation_id)
        if future:
            return future.cancel()
        return False

    def shutdown(self, wait: bool = True) -> None:
        """Stop the pool; without wait, queued operations are cancelled."""
        self._executor.shutdown(wait=wait, cancel_futures=not wait)
