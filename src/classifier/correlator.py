"""Correlation of outgoing requests with out-of-order responses.

Maps correlation id → pending future with a per-request deadline. An id in
the pending map corresponds to exactly one unresolved caller; resolving,
rejecting or timing out removes it exactly once.

Thread-safety: NOT thread-safe. Use from a single event loop.
"""

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from src.classifier.errors import ClassificationTimeoutError
from src.common.types import CorrelationID

logger = logging.getLogger(__name__)


@dataclass
class PendingRequest:
    """One in-flight request awaiting its response."""

    request_id: CorrelationID
    future: asyncio.Future[Any]
    deadline: float  # event loop time
    timeout_handle: asyncio.TimerHandle


class RequestCorrelator:
    """Pending-request map with deadlines."""

    def __init__(self) -> None:
        self._pending: dict[CorrelationID, PendingRequest] = {}

    def register(self, request_id: CorrelationID, timeout_s: float) -> asyncio.Future[Any]:
        """Register a pending request.

        Args:
            request_id: Correlation id (must not already be pending)
            timeout_s: Seconds until the request is rejected with
                ClassificationTimeoutError

        Returns:
            Future resolved by :meth:`resolve` or rejected by timeout/reject

        Raises:
            ValueError: If ``request_id`` is already pending
        """
        if request_id in self._pending:
            raise ValueError(f"Duplicate correlation id: {request_id}")

        loop = asyncio.get_running_loop()
        future: asyncio.Future[Any] = loop.create_future()
        handle = loop.call_later(timeout_s, self._expire, request_id)
        pending = PendingRequest(
            request_id=request_id,
            future=future,
            deadline=loop.time() + timeout_s,
            timeout_handle=handle,
        )
        self._pending[request_id] = pending

        # Caller gave up (e.g. task cancelled): forget the entry
        future.add_done_callback(lambda f: self._forget_cancelled(request_id, f))
        return future

    def resolve(self, request_id: CorrelationID, value: Any) -> bool:
        """Resolve a pending request with ``value``.

        Returns:
            False if the id is unknown (never registered, expired or done)
        """
        pending = self._pop(request_id)
        if pending is None:
            return False
        pending.future.set_result(value)
        return True

    def reject(self, request_id: CorrelationID, exc: BaseException) -> bool:
        """Reject a pending request with ``exc``.

        Returns:
            False if the id is unknown
        """
        pending = self._pop(request_id)
        if pending is None:
            return False
        pending.future.set_exception(exc)
        return True

    def reject_all(self, make_error: Callable[[], BaseException]) -> int:
        """Reject every pending request.

        Args:
            make_error: Called once per request so that no two futures share
                an exception instance (and its traceback)

        Returns:
            Number of requests rejected
        """
        request_ids = list(self._pending)
        for request_id in request_ids:
            self.reject(request_id, make_error())
        return len(request_ids)

    def discard(self, request_id: CorrelationID) -> None:
        """Drop a pending entry without completing its future."""
        pending = self._pop(request_id)
        if pending is not None and not pending.future.done():
            pending.future.cancel()

    def deadline(self, request_id: CorrelationID) -> float | None:
        """Event-loop deadline of a pending request, if pending."""
        pending = self._pending.get(request_id)
        return pending.deadline if pending else None

    def _pop(self, request_id: CorrelationID) -> PendingRequest | None:
        pending = self._pending.pop(request_id, None)
        if pending is None:
            return None
        pending.timeout_handle.cancel()
        if pending.future.done():
            return None
        return pending

    def _expire(self, request_id: CorrelationID) -> None:
        if self.reject(request_id, ClassificationTimeoutError("Classifier request timed out")):
            logger.warning("Classifier request timed out", extra={"request_id": request_id})

    def _forget_cancelled(self, request_id: CorrelationID, future: asyncio.Future[Any]) -> None:
        if future.cancelled():
            pending = self._pending.get(request_id)
            if pending is not None and pending.future is future:
                self._pop(request_id)

    def __contains__(self, request_id: object) -> bool:
        return request_id in self._pending

    def __len__(self) -> int:
        return len(self._pending)
