"""
Generation client: one-shot and streamed completions.

Both paths run the availability orchestrator first and fail fast with its
reason. The streamed path forwards text deltas through a ChunkBatcher and
races the stream against a soft warning timer, a hard timeout and the
request's CancelToken.
"""

import asyncio
import logging
from typing import Optional

import httpx
from pydantic import ValidationError

from ollama_steward.availability import AvailabilityOrchestrator
from ollama_steward.batcher import ChunkBatcher, Deliver, call_consumer
from ollama_steward.config import (
    BATCH_INTERVAL_SECONDS,
    GENERATE_TIMEOUT_SECONDS,
    HARD_TIMEOUT_CAP_SECONDS,
    HARD_TIMEOUT_NOTICE,
    MAX_PROMPT_LENGTH,
    SOFT_TIMEOUT_NOTICE,
    SOFT_WARNING_CAP_SECONDS,
    SOFT_WARNING_RATIO,
    STREAM_CONNECT_TIMEOUT_SECONDS,
    THINKING_STATUS,
    ClientConfig,
)
from ollama_steward.errors import (
    DeliveryFailed,
    MalformedResponse,
    ModelNotFound,
    OllamaError,
    ServerError,
    ServerUnavailable,
    format_error,
)
from ollama_steward.schema import (
    AvailabilityResult,
    GenerationOptions,
    GenerationRequest,
    StreamChunk,
)
from ollama_steward.tracker import CancelToken, RequestTracker
from ollama_steward.transport import Transport

logger = logging.getLogger(__name__)


def truncation_marker(limit: int = MAX_PROMPT_LENGTH) -> str:
    return f"\n\n... [content truncated to {limit} characters for performance] ..."


def truncate_prompt(prompt: str, limit: int = MAX_PROMPT_LENGTH) -> str:
    """
    Keep the first `limit` characters of an oversized prompt.

    The fixed marker is appended so the model (and the operator) can tell
    the prompt was cut. Prompts within the limit are returned unchanged.
    """
    if len(prompt) <= limit:
        return prompt
    logger.info(f"Truncating prompt from {len(prompt)} to {limit} characters")
    return prompt[:limit] + truncation_marker(limit)


def error_chunk(exc: BaseException, timeout_seconds: Optional[float] = None) -> str:
    """In-band terminal failure chunk for a stream consumer."""
    return f"\n\n_Error: {format_error(exc, timeout_seconds)}_"


class GenerationClient:
    """
    Runs completions against the server once availability is established.

    Args:
        config: Client settings (default model, timeout, sampling)
        transport: HTTP access to the server
        availability: Orchestrator consulted before every request
        tracker: Registry used when a request_id is given
        batch_interval: Batcher cadence in seconds
        hard_timeout: Override for the stream's hard timeout in seconds
        soft_warning: Override for the soft warning delay in seconds
    """

    def __init__(
        self,
        config: ClientConfig,
        transport: Transport,
        availability: AvailabilityOrchestrator,
        tracker: Optional[RequestTracker] = None,
        batch_interval: float = BATCH_INTERVAL_SECONDS,
        hard_timeout: Optional[float] = None,
        soft_warning: Optional[float] = None,
    ):
        self.config = config
        self.transport = transport
        self.availability = availability
        self.tracker = tracker or RequestTracker()
        self.batch_interval = batch_interval
        self._hard_timeout = hard_timeout
        self._soft_warning = soft_warning

    @property
    def hard_timeout(self) -> float:
        if self._hard_timeout is not None:
            return self._hard_timeout
        return min(HARD_TIMEOUT_CAP_SECONDS, float(self.config.request_timeout_seconds))

    @property
    def soft_warning_delay(self) -> float:
        if self._soft_warning is not None:
            return self._soft_warning
        return min(SOFT_WARNING_CAP_SECONDS, self.config.request_timeout_seconds * SOFT_WARNING_RATIO)

    def default_options(self) -> GenerationOptions:
        return GenerationOptions(max_tokens=self.config.max_tokens, temperature=self.config.temperature)

    def _resolve_model(self, model: Optional[str]) -> str:
        model = model or self.config.default_model
        if not model:
            raise ValueError("No model specified and no default model configured")
        return model

    @staticmethod
    def _require(result: AvailabilityResult, model: str) -> None:
        if not result.ok:
            raise ServerUnavailable(result)
        if result.model_present is False:
            raise ModelNotFound(model)

    # ─────────────────────────────────────────────────────────────────
    # ONE-SHOT
    # ─────────────────────────────────────────────────────────────────

    async def generate_once(
        self,
        model: Optional[str],
        prompt: str,
        options: Optional[GenerationOptions] = None,
    ) -> str:
        """
        Non-streaming completion with a 30s timeout.

        Returns:
            The full response text

        Raises:
            ServerUnavailable: availability check failed
            ModelNotFound: model not installed (or server answered 404)
            ConnectionTimeout, ConnectionRefused, ServerError, MalformedResponse
        """
        model = self._resolve_model(model)
        self._require(await self.availability.ensure_available(model), model)

        request = GenerationRequest(
            model=model,
            prompt=prompt,
            stream=False,
            options=options or self.default_options(),
        )
        logger.debug(f"POST /api/generate (stream=False) model={model}")
        try:
            data = await self.transport.post_json(
                "/api/generate", request.to_payload(), timeout=GENERATE_TIMEOUT_SECONDS
            )
        except ServerError as e:
            if e.status_code == 404:
                raise ModelNotFound(model) from e
            raise

        if not isinstance(data, dict) or not isinstance(data.get("response"), str):
            raise MalformedResponse("Invalid response from Ollama API (missing response field)")
        return data["response"]

    # ─────────────────────────────────────────────────────────────────
    # STREAMING
    # ─────────────────────────────────────────────────────────────────

    async def generate_stream(
        self,
        model: Optional[str],
        prompt: str,
        on_chunk: Deliver,
        options: Optional[GenerationOptions] = None,
        request_id: Optional[str] = None,
        token: Optional[CancelToken] = None,
    ) -> str:
        """
        Streamed completion delivered to on_chunk in batches.

        A request_id registers the request with the tracker (cancelling any
        live request with the same id). Cancellation ends the call silently
        and returns whatever text was delivered before it.

        Returns:
            The accumulated response text as delivered to on_chunk

        Raises:
            ServerUnavailable, ModelNotFound, UnexpectedFailure or a
            TransportError, each after an `_Error: ..._` chunk has been
            delivered
            DeliveryFailed: on_chunk kept rejecting received text at the
            end of the stream
        """
        model = self._resolve_model(model)
        if token is None:
            token = self.tracker.create_request(request_id) if request_id else CancelToken()

        try:
            await self._announce(on_chunk, THINKING_STATUS)
            try:
                self._require(await self.availability.ensure_available(model), model)
            except OllamaError as e:
                logger.warning(f"Generation for {model} not started: {e}")
                await self._announce(on_chunk, error_chunk(e))
                raise

            if token.is_cancelled():
                logger.info(f"Request {token.request_id} cancelled before streaming began")
                return ""

            request = GenerationRequest(
                model=model,
                prompt=truncate_prompt(prompt),
                stream=True,
                options=options or self.default_options(),
            )
            batcher = ChunkBatcher(on_chunk, interval=self.batch_interval, token=token)
            batcher.start()
            return await self._run_stream(request, token, batcher)
        finally:
            if request_id:
                self.tracker.complete(request_id, token)

    async def _run_stream(self, request: GenerationRequest, token: CancelToken, batcher: ChunkBatcher) -> str:
        consumer = asyncio.create_task(self._consume(request, token, batcher))
        cancel_wait = asyncio.create_task(token.wait())
        loop = asyncio.get_running_loop()
        soft_timer = loop.call_later(self.soft_warning_delay, self._warn_soft_timeout, batcher)

        try:
            done, _ = await asyncio.wait(
                {consumer, cancel_wait},
                timeout=self.hard_timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )
        except asyncio.CancelledError:
            consumer.cancel()
            batcher.cancel()
            raise
        finally:
            soft_timer.cancel()
            cancel_wait.cancel()

        if token.is_cancelled():
            await _cancel_task(consumer)
            batcher.cancel()
            logger.info(f"Request {token.request_id} cancelled")
            return batcher.full_text

        if consumer not in done:
            await _cancel_task(consumer)
            logger.warning(f"Stream for {request.model} exceeded {self.hard_timeout:g}s, aborting")
            batcher.push(HARD_TIMEOUT_NOTICE, status=True)
            await batcher.aclose(flush=True)
            return batcher.full_text

        exc = consumer.exception()
        if exc is None:
            await batcher.aclose(flush=True)
            logger.debug(f"Stream for {request.model} complete ({len(batcher.full_text)} chars)")
            return batcher.full_text

        if isinstance(exc, ServerError) and exc.status_code == 404:
            exc = ModelNotFound(request.model)
        logger.error(f"Streaming error for {request.model}: {exc}")
        batcher.push(error_chunk(exc, self.config.request_timeout_seconds), status=True)
        try:
            await batcher.aclose(flush=True)
        except DeliveryFailed as lost:
            logger.error(f"Error chunk for {request.model} not delivered: {lost}")
        raise exc

    async def _consume(self, request: GenerationRequest, token: CancelToken, batcher: ChunkBatcher) -> None:
        timeout = httpx.Timeout(STREAM_CONNECT_TIMEOUT_SECONDS, read=None)
        async for data in self.transport.stream_ndjson(
            "/api/generate", request.to_payload(), timeout=timeout, token=token
        ):
            if token.is_cancelled():
                return
            try:
                chunk = StreamChunk.model_validate(data)
            except ValidationError as e:
                logger.warning(f"Skipping invalid stream chunk: {e}")
                continue
            if chunk.error:
                raise ServerError(500, chunk.error)
            if chunk.response_text:
                batcher.push(chunk.response_text)
            if chunk.done:
                logger.debug(f"Stream done (reason={chunk.done_reason})")
                return

    def _warn_soft_timeout(self, batcher: ChunkBatcher) -> None:
        if batcher.closed:
            return
        logger.warning(f"Stream has run {self.soft_warning_delay:g}s, approaching the timeout")
        batcher.push(SOFT_TIMEOUT_NOTICE)

    @staticmethod
    async def _announce(on_chunk: Deliver, text: str) -> None:
        try:
            await call_consumer(on_chunk, text)
        except Exception as e:
            logger.warning(f"Consumer rejected status chunk: {e}")


async def _cancel_task(task: asyncio.Task) -> None:
    task.cancel()
    await asyncio.gather(task, return_exceptions=True)
