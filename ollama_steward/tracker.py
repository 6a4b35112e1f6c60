"""
Request/cancellation tracking.

Maps an opaque request id to a CancelToken so a later "cancel" message can
stop exactly one in-flight operation. Cancellation is cooperative: the
token is checked at safe points (before each stream line, before each
batch flush) and awaited by the generation client to abort network I/O.
"""

import asyncio
import logging
from typing import Callable, Optional

logger = logging.getLogger(__name__)


class CancelToken:
    """One-shot cancellation flag with an awaitable signal."""

    def __init__(self, request_id: Optional[str] = None):
        self.request_id = request_id
        self._event = asyncio.Event()
        self._callbacks: list[Callable[[], None]] = []

    def cancel(self) -> bool:
        """Set the flag. Returns False if it was already set."""
        if self._event.is_set():
            return False
        self._event.set()
        for callback in self._callbacks:
            try:
                callback()
            except Exception as e:
                logger.warning(f"Cancel callback for {self.request_id} failed: {e}")
        self._callbacks.clear()
        return True

    def is_cancelled(self) -> bool:
        return self._event.is_set()

    async def wait(self) -> None:
        """Block until the token is cancelled."""
        await self._event.wait()

    def add_callback(self, callback: Callable[[], None]) -> None:
        """Run callback on cancel (immediately if already cancelled)."""
        if self._event.is_set():
            callback()
        else:
            self._callbacks.append(callback)

    def __repr__(self) -> str:
        state = "cancelled" if self.is_cancelled() else "live"
        return f"CancelToken({self.request_id!r}, {state})"


class RequestTracker:
    """
    Registry of live requests, at most one per id.

    Explicit state: a token is live from create_request() until it is
    completed, aborted or replaced by a new request with the same id.
    """

    def __init__(self):
        self._pending: dict[str, CancelToken] = {}

    def create_request(self, request_id: str) -> CancelToken:
        """
        Register a new request, cancelling any live request with the same id.

        Returns:
            The new request's CancelToken
        """
        previous = self._pending.pop(request_id, None)
        if previous is not None:
            logger.info(f"Request {request_id} superseded, cancelling previous")
            previous.cancel()
        token = CancelToken(request_id)
        self._pending[request_id] = token
        return token

    def abort_request(self, request_id: str) -> bool:
        """
        Cancel the live request with this id.

        Returns:
            True if a live request was cancelled; False for unknown or
            already-aborted ids (never raises)
        """
        token = self._pending.pop(request_id, None)
        if token is None:
            return False
        return token.cancel()

    def abort_all(self) -> int:
        """Cancel every live request. Returns how many were cancelled."""
        tokens = list(self._pending.values())
        self._pending.clear()
        return sum(1 for token in tokens if token.cancel())

    def complete(self, request_id: str, token: CancelToken) -> None:
        """Drop the entry if it still belongs to token (a replacement is kept)."""
        if self._pending.get(request_id) is token:
            del self._pending[request_id]

    def get(self, request_id: str) -> Optional[CancelToken]:
        return self._pending.get(request_id)

    def is_active(self, request_id: str) -> bool:
        return request_id in self._pending

    @property
    def active_ids(self) -> list[str]:
        return list(self._pending)

    def __len__(self) -> int:
        return len(self._pending)
