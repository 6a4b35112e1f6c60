"""Tests for ollama_steward.batcher module."""

import asyncio

import pytest


class Consumer:
    """Records delivered batches; can be told to fail."""

    def __init__(self, failures: int = 0):
        self.batches = []
        self.failures = failures

    def __call__(self, text: str) -> None:
        if self.failures:
            self.failures -= 1
            raise ConnectionError("consumer channel closed")
        self.batches.append(text)


class TestChunkBatcher:
    """Tests for ChunkBatcher."""

    @pytest.mark.asyncio
    async def test_order_preserved(self):
        """Test a, b, c pushed in order arrive concatenated in order."""
        from ollama_steward.batcher import ChunkBatcher

        consumer = Consumer()
        batcher = ChunkBatcher(consumer, interval=0.01)
        batcher.start()
        for chunk in ("a", "b", "c"):
            batcher.push(chunk)
        await asyncio.sleep(0.05)
        await batcher.aclose()

        assert "".join(consumer.batches) == "abc"
        assert batcher.full_text == "abc"

    @pytest.mark.asyncio
    async def test_batch_size_limit(self):
        """Test one tick delivers at most five chunks."""
        from ollama_steward.batcher import ChunkBatcher

        consumer = Consumer()
        batcher = ChunkBatcher(consumer)
        for i in range(7):
            batcher.push(str(i))

        assert await batcher.flush_once() is True
        assert consumer.batches == ["01234"]
        assert batcher.pending == 2

    @pytest.mark.asyncio
    async def test_empty_tick_delivers_nothing(self):
        """Test an empty queue emits no update."""
        from ollama_steward.batcher import ChunkBatcher

        consumer = Consumer()
        batcher = ChunkBatcher(consumer)

        assert await batcher.flush_once() is False
        assert consumer.batches == []

    def test_idle_backoff_doubles_interval(self):
        """Test the next tick waits twice as long while idle."""
        from ollama_steward.batcher import ChunkBatcher

        batcher = ChunkBatcher(Consumer(), interval=0.1)
        assert batcher.next_delay() == pytest.approx(0.2)
        batcher.push("x")
        assert batcher.next_delay() == pytest.approx(0.1)

    @pytest.mark.asyncio
    async def test_failed_delivery_requeued_at_front(self):
        """Test a failed batch is retried before newer chunks."""
        from ollama_steward.batcher import ChunkBatcher

        consumer = Consumer(failures=1)
        batcher = ChunkBatcher(consumer)
        batcher.push("a")
        batcher.push("b")

        assert await batcher.flush_once() is False
        batcher.push("c")
        assert await batcher.flush_once() is True

        assert consumer.batches == ["abc"]
        assert batcher.delivery_failures == 1
        assert batcher.full_text == "abc"

    @pytest.mark.asyncio
    async def test_async_consumer(self):
        """Test coroutine consumers are awaited."""
        from ollama_steward.batcher import ChunkBatcher

        received = []

        async def deliver(text: str) -> None:
            received.append(text)

        batcher = ChunkBatcher(deliver)
        batcher.push("hello")
        await batcher.flush()
        assert received == ["hello"]

    @pytest.mark.asyncio
    async def test_truncation_notice_once(self):
        """Test text beyond the cap is dropped with one notice."""
        from ollama_steward.batcher import ChunkBatcher
        from ollama_steward.config import RESPONSE_TRUNCATED_NOTICE

        consumer = Consumer()
        batcher = ChunkBatcher(consumer, max_chars=10)
        batcher.push("0123456789AB")
        await batcher.flush()
        batcher.push("more")
        await batcher.flush()

        assert batcher.truncated
        assert batcher.full_text == "0123456789" + RESPONSE_TRUNCATED_NOTICE
        assert consumer.batches == ["0123456789AB", RESPONSE_TRUNCATED_NOTICE]

    @pytest.mark.asyncio
    async def test_cancelled_token_tears_down(self):
        """Test a cancelled token stops delivery and clears the queue."""
        from ollama_steward.batcher import ChunkBatcher
        from ollama_steward.tracker import CancelToken

        consumer = Consumer()
        token = CancelToken("r1")
        batcher = ChunkBatcher(consumer, token=token)
        batcher.push("a")
        token.cancel()

        assert await batcher.flush_once() is False
        assert batcher.closed
        assert batcher.pending == 0
        assert consumer.batches == []

    @pytest.mark.asyncio
    async def test_cancel_stops_timer(self):
        """Test cancel() stops the flush timer and ignores later pushes."""
        from ollama_steward.batcher import ChunkBatcher

        consumer = Consumer()
        batcher = ChunkBatcher(consumer, interval=0.01)
        batcher.start()
        batcher.cancel()
        batcher.push("late")
        await asyncio.sleep(0.05)

        assert consumer.batches == []

    @pytest.mark.asyncio
    async def test_close_retries_rejected_batch(self):
        """Test closing retries a batch the consumer rejected once."""
        from ollama_steward.batcher import ChunkBatcher

        consumer = Consumer(failures=1)
        batcher = ChunkBatcher(consumer, interval=0.01)
        batcher.push("a")
        batcher.push("b")

        await batcher.aclose()

        assert consumer.batches == ["ab"]
        assert batcher.full_text == "ab"
        assert batcher.closed

    @pytest.mark.asyncio
    async def test_close_gives_up_loudly(self):
        """Test closing raises DeliveryFailed instead of silently dropping text."""
        from ollama_steward.batcher import ChunkBatcher
        from ollama_steward.errors import DeliveryFailed

        consumer = Consumer(failures=100)
        batcher = ChunkBatcher(consumer, interval=0.01, close_attempts=3)
        batcher.push("abc")

        with pytest.raises(DeliveryFailed) as exc_info:
            await batcher.aclose()

        assert exc_info.value.lost_chars == 3
        assert exc_info.value.attempts == 3
        assert batcher.closed
        assert batcher.pending == 0

    @pytest.mark.asyncio
    async def test_status_chunk_delivered_after_truncation(self):
        """Test model text is dropped past the cap but status chunks still arrive."""
        from ollama_steward.batcher import ChunkBatcher
        from ollama_steward.config import RESPONSE_TRUNCATED_NOTICE

        consumer = Consumer()
        batcher = ChunkBatcher(consumer, max_chars=10)
        batcher.push("0123456789AB")
        await batcher.flush()
        batcher.push("more")
        batcher.push("\n\n_Error: model crashed_", status=True)
        await batcher.aclose()

        assert consumer.batches == ["0123456789AB", RESPONSE_TRUNCATED_NOTICE + "\n\n_Error: model crashed_"]

    @pytest.mark.asyncio
    async def test_queued_status_chunk_survives_truncation(self):
        """Test truncation keeps status chunks already waiting in the queue."""
        from ollama_steward.batcher import ChunkBatcher
        from ollama_steward.config import RESPONSE_TRUNCATED_NOTICE

        consumer = Consumer()
        batcher = ChunkBatcher(consumer, max_chars=10, max_chunks=1)
        batcher.push("0123456789AB")
        batcher.push("tail")
        batcher.push("_Timed out_", status=True)
        await batcher.aclose()

        assert consumer.batches == ["0123456789AB", RESPONSE_TRUNCATED_NOTICE, "_Timed out_"]
