"""
Health monitor: is the server responsive, and does it have the model?

Probes GET /api/tags with exponential backoff + jitter (tenacity), caches
every outcome (failures included) for 30s, and reports a missing model as
healthy-but-missing rather than as an error.
"""

import asyncio
import logging
import random
import time
from typing import Awaitable, Callable, Optional

from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
)
from tenacity.wait import wait_base

from ollama_steward.cache import Clock, TtlCache
from ollama_steward.config import (
    CACHE_TTL_SECONDS,
    HEALTH_PROBE_TIMEOUT_SECONDS,
    HEALTH_RETRY_BASE_DELAY_SECONDS,
    HEALTH_RETRY_COUNT,
    HEALTH_RETRY_JITTER,
    HEALTH_RETRY_MAX_DELAY_SECONDS,
)
from ollama_steward.errors import (
    MalformedResponse,
    ServerError,
    ServerUnreachable,
    TransportError,
)
from ollama_steward.schema import HealthReport, HealthStatus, ServerModel
from ollama_steward.transport import Transport

logger = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[None]]


# ─────────────────────────────────────────────────────────────────────
# BACKOFF
# ─────────────────────────────────────────────────────────────────────

def backoff_delay(
    attempt: int,
    base: float = HEALTH_RETRY_BASE_DELAY_SECONDS,
    cap: float = HEALTH_RETRY_MAX_DELAY_SECONDS,
    jitter: float = HEALTH_RETRY_JITTER,
    rand: Callable[[], float] = random.random,
) -> float:
    """
    Delay before retrying after the given (1-based) failed attempt.

    delay = min(base * 2^(attempt-1) * (1 + jitter * rand()), cap)
    """
    return min(base * (2 ** (attempt - 1)) * (1 + jitter * rand()), cap)


class wait_backoff_jitter(wait_base):
    """Tenacity wait strategy applying backoff_delay() to the failed attempt."""

    def __init__(
        self,
        base: float = HEALTH_RETRY_BASE_DELAY_SECONDS,
        cap: float = HEALTH_RETRY_MAX_DELAY_SECONDS,
        jitter: float = HEALTH_RETRY_JITTER,
    ):
        self.base = base
        self.cap = cap
        self.jitter = jitter

    def __call__(self, retry_state) -> float:
        return backoff_delay(retry_state.attempt_number, self.base, self.cap, self.jitter)


# ─────────────────────────────────────────────────────────────────────
# HEALTH MONITOR
# ─────────────────────────────────────────────────────────────────────

def parse_tags(data) -> list[ServerModel]:
    """Parse a /api/tags body into ServerModel snapshots."""
    if not isinstance(data, dict) or not isinstance(data.get("models"), list):
        raise MalformedResponse("Invalid response from Ollama API (missing models list)")
    models = []
    for entry in data["models"]:
        if isinstance(entry, dict) and entry.get("name"):
            models.append(ServerModel.model_validate(entry))
    return models


def has_model(models: list[ServerModel], name: str) -> bool:
    """Match a model name, treating an untagged name as ':latest'."""
    candidates = {name} if ":" in name else {name, f"{name}:latest"}
    return any(m.name in candidates for m in models)


class HealthMonitor:
    """
    Health checks against one server, with a per-instance TTL cache.

    Cache keys are the requested model name (None for "no model"). The
    check holds the cache lock across the probe so concurrent callers share
    one probe instead of issuing duplicates.
    """

    def __init__(
        self,
        transport: Transport,
        ttl_seconds: float = CACHE_TTL_SECONDS,
        probe_timeout: float = HEALTH_PROBE_TIMEOUT_SECONDS,
        clock: Clock = time.monotonic,
        sleep: Sleep = asyncio.sleep,
    ):
        self._transport = transport
        self._probe_timeout = probe_timeout
        self._sleep = sleep
        self._health_cache: TtlCache[tuple[HealthReport, Optional[TransportError]]] = TtlCache(ttl_seconds, clock)
        self._models_cache: TtlCache[list[ServerModel]] = TtlCache(ttl_seconds, clock)
        self.probe_count = 0

    async def check_health(
        self,
        model: Optional[str] = None,
        *,
        retry: bool = True,
        retry_count: int = HEALTH_RETRY_COUNT,
        retry_delay: float = HEALTH_RETRY_BASE_DELAY_SECONDS,
        bypass_cache: bool = False,
    ) -> HealthReport:
        """
        Check server health, optionally verifying a model is installed.

        Args:
            model: Model name to look for in the listing
            retry: Retry failed probes with backoff
            retry_count: Additional attempts after the first
            retry_delay: Backoff base delay in seconds
            bypass_cache: Ignore (but still refresh) the cached outcome

        Returns:
            HealthReport (HEALTHY; model_present set when model given)

        Raises:
            ServerUnreachable: all attempts failed (also raised for a cached
                failure within the TTL window)
        """
        async with self._health_cache.lock:
            if not bypass_cache:
                cached = self._health_cache.get(model)
                if cached is not None:
                    report, error = cached
                    logger.debug(f"Using cached server health status for model={model!r}: {report.status.value}")
                    if error is not None:
                        raise ServerUnreachable(error, cached=True)
                    return report

            attempts = retry_count + 1 if retry else 1
            try:
                models = await self._fetch_tags(attempts, retry_delay)
            except TransportError as e:
                status = HealthStatus.ERROR if isinstance(e, MalformedResponse) else HealthStatus.UNHEALTHY
                report = HealthReport(status=status, checked_model=model, error=str(e))
                self._health_cache.put((report, e), model)
                logger.warning(f"Server health check failed after {attempts} attempt(s): {e}")
                raise ServerUnreachable(e) from e

            self._models_cache.put(models)
            report = HealthReport(status=HealthStatus.HEALTHY, checked_model=model, models=models)
            if model is not None:
                report.model_present = has_model(models, model)
                if report.model_present:
                    logger.info(f"Server is healthy and model '{model}' is available")
                else:
                    logger.info(f"Server is healthy but model '{model}' not found")
            else:
                logger.debug("Server is healthy (no specific model check requested)")
            self._health_cache.put((report, None), model)
            return report

    async def list_models(
        self,
        *,
        bypass_cache: bool = False,
        retry_count: int = HEALTH_RETRY_COUNT,
    ) -> list[ServerModel]:
        """
        Installed models, served from the 30s model-list cache when fresh.

        Raises:
            ServerUnreachable: listing failed after retries
        """
        async with self._models_cache.lock:
            if not bypass_cache:
                cached = self._models_cache.get()
                if cached is not None:
                    logger.debug(f"Using cached model list ({len(cached)} models)")
                    return list(cached)
            try:
                models = await self._fetch_tags(retry_count + 1, HEALTH_RETRY_BASE_DELAY_SECONDS)
            except TransportError as e:
                raise ServerUnreachable(e) from e
            self._models_cache.put(models)
            logger.debug(f"Retrieved {len(models)} models from server")
            return list(models)

    def invalidate(self) -> None:
        """Forget cached health and model-list entries."""
        self._health_cache.clear()
        self._models_cache.clear()

    async def _fetch_tags(self, attempts: int, retry_delay: float) -> list[ServerModel]:
        retrying = AsyncRetrying(
            stop=stop_after_attempt(attempts),
            wait=wait_backoff_jitter(base=retry_delay),
            retry=retry_if_exception_type(TransportError),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            sleep=self._sleep,
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                self.probe_count += 1
                data = await self._transport.get_json("/api/tags", timeout=self._probe_timeout)
                return parse_tags(data)
        raise ServerError(0, "health check produced no attempts")  # pragma: no cover
