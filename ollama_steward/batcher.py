"""
Stream chunk batcher.

Coalesces per-token text deltas into at most one consumer update per tick
so a UI is not redrawn once per network packet. Batching only coalesces;
it never reorders.
"""

import asyncio
import inspect
import logging
from collections import deque
from typing import Awaitable, Callable, Optional, Union

from ollama_steward.config import (
    BATCH_CLOSE_ATTEMPTS,
    BATCH_INTERVAL_SECONDS,
    BATCH_MAX_CHUNKS,
    MAX_RESPONSE_CHARS,
    RESPONSE_TRUNCATED_NOTICE,
)
from ollama_steward.errors import DeliveryFailed
from ollama_steward.tracker import CancelToken

logger = logging.getLogger(__name__)

Deliver = Callable[[str], Union[None, Awaitable[None]]]


async def call_consumer(deliver: Deliver, text: str) -> None:
    """Invoke a sync or async consumer callback."""
    result = deliver(text)
    if inspect.isawaitable(result):
        await result


class ChunkBatcher:
    """
    Timer-driven queue between a stream and its consumer.

    Every `interval` seconds up to `max_chunks` queued chunks are joined and
    delivered in one call. An empty queue doubles the wait until data
    arrives. A failed delivery puts the batch back at the front of the
    queue for the next tick. Closing retries a rejected batch on the same
    cadence, a bounded number of times, then raises DeliveryFailed.

    The accumulated text (what the consumer actually received) is capped
    at `max_chars`; past the cap, further text is dropped and one
    truncation notice is delivered.
    """

    def __init__(
        self,
        deliver: Deliver,
        *,
        interval: float = BATCH_INTERVAL_SECONDS,
        max_chunks: int = BATCH_MAX_CHUNKS,
        max_chars: int = MAX_RESPONSE_CHARS,
        close_attempts: int = BATCH_CLOSE_ATTEMPTS,
        token: Optional[CancelToken] = None,
    ):
        self._deliver = deliver
        self.interval = interval
        self.max_chunks = max_chunks
        self.max_chars = max_chars
        self.close_attempts = close_attempts
        self._token = token
        # (text, is_status) pairs
        self._queue: deque[tuple[str, bool]] = deque()
        self._text = ""
        self._truncated = False
        self._closed = False
        self._task: Optional[asyncio.Task] = None
        self.delivery_count = 0
        self.delivery_failures = 0

    # ─────────────────────────────────────────────────────────────────
    # PRODUCER SIDE
    # ─────────────────────────────────────────────────────────────────

    def start(self) -> None:
        """Arm the flush timer. Idempotent."""
        if self._task is None and not self._closed:
            self._task = asyncio.create_task(self._run())

    def push(self, text: str, status: bool = False) -> None:
        """
        Queue a text delta. Ignored once closed or cancelled.

        Model text is also dropped once the response is truncated; status
        chunks (timeout notices, error lines) still get through so the
        consumer always sees how the stream ended.
        """
        if not text or self._closed:
            return
        if self._truncated and not status:
            return
        if self._token is not None and self._token.is_cancelled():
            return
        self._queue.append((text, status))

    @property
    def pending(self) -> int:
        return len(self._queue)

    @property
    def full_text(self) -> str:
        return self._text

    @property
    def truncated(self) -> bool:
        return self._truncated

    @property
    def closed(self) -> bool:
        return self._closed

    def next_delay(self) -> float:
        """Wait before the next tick: the cadence, doubled while idle."""
        return self.interval if self._queue else self.interval * 2

    # ─────────────────────────────────────────────────────────────────
    # CONSUMER SIDE
    # ─────────────────────────────────────────────────────────────────

    async def flush_once(self) -> bool:
        """
        Deliver one batch.

        Returns:
            True if a batch was delivered; False if the queue was empty,
            the token was cancelled, or delivery failed (batch requeued)
        """
        if self._token is not None and self._token.is_cancelled():
            self.cancel()
            return False
        if not self._queue:
            return False

        count = min(self.max_chunks, len(self._queue))
        batch = [self._queue.popleft() for _ in range(count)]
        text = "".join(chunk for chunk, _ in batch)
        try:
            await call_consumer(self._deliver, text)
        except Exception as e:
            self._queue.extendleft(reversed(batch))
            self.delivery_failures += 1
            logger.warning(f"Chunk delivery failed, requeued {count} chunk(s): {e}")
            return False

        self.delivery_count += 1
        self._record(text)
        return True

    async def flush(self) -> None:
        """Deliver everything queued, stopping at the first failed delivery."""
        while self._queue:
            if not await self.flush_once():
                break

    async def drain(self) -> None:
        """
        Deliver everything queued, retrying failed batches on the cadence.

        Raises:
            DeliveryFailed: the same batch failed `close_attempts` times in
                a row; the undelivered text is dropped
        """
        failures = 0
        while self._queue and not self._closed:
            if await self.flush_once():
                failures = 0
                continue
            if self._closed:
                break
            failures += 1
            if failures >= self.close_attempts:
                lost = sum(len(chunk) for chunk, _ in self._queue)
                self._closed = True
                self._queue.clear()
                logger.error(f"Dropping {lost} undelivered character(s) after {failures} failed deliveries")
                raise DeliveryFailed(lost, failures)
            await asyncio.sleep(self.interval)

    async def aclose(self, flush: bool = True) -> None:
        """
        Stop the timer, optionally drain the queue, and refuse further pushes.

        Raises:
            DeliveryFailed: draining gave up on text the consumer kept rejecting
        """
        await self._stop_timer()
        try:
            if flush and not self._closed:
                await self.drain()
        finally:
            self._closed = True
            self._queue.clear()

    def cancel(self) -> None:
        """Tear down immediately: timer cancelled, queue cleared, nothing delivered."""
        self._closed = True
        self._queue.clear()
        if self._task is not None and not self._task.done():
            self._task.cancel()

    async def _stop_timer(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        if task is asyncio.current_task():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _run(self) -> None:
        while not self._closed:
            await asyncio.sleep(self.next_delay())
            await self.flush_once()

    def _record(self, text: str) -> None:
        if self._truncated:
            return
        self._text += text
        if len(self._text) > self.max_chars:
            logger.warning(f"Response exceeded {self.max_chars} characters, truncating")
            self._text = self._text[: self.max_chars] + RESPONSE_TRUNCATED_NOTICE
            self._truncated = True
            statuses = [entry for entry in self._queue if entry[1]]
            self._queue.clear()
            self._queue.append((RESPONSE_TRUNCATED_NOTICE, True))
            self._queue.extend(statuses)
