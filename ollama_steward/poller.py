"""
Adaptive status poller.

Re-checks server health on a timer whose interval grows while the status
is stable and shrinks when it changes, so a steady server is rarely
probed and a transition is noticed quickly.
"""

import asyncio
import inspect
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Optional, Union

from ollama_steward.config import (
    POLL_ERROR_INTERVAL_SECONDS,
    POLL_GROWTH_FACTOR,
    POLL_MAX_INTERVAL_SECONDS,
    POLL_MIN_INTERVAL_SECONDS,
    POLL_STABILITY_THRESHOLD,
)
from ollama_steward.errors import ServerUnreachable
from ollama_steward.health import HealthMonitor, has_model

logger = logging.getLogger(__name__)


class ServerStatus(str, Enum):
    UNKNOWN = "unknown"
    RUNNING = "running"
    NOT_RUNNING = "not_running"
    ERROR = "error"


class PollPhase(str, Enum):
    CHECKING = "checking"
    STABLE_HEALTHY = "stable-healthy"
    STABLE_UNHEALTHY = "stable-unhealthy"
    ERROR = "error"


@dataclass
class PollingState:
    """Mutable poller state; written only by its owning poller."""
    interval_seconds: float = POLL_MIN_INTERVAL_SECONDS
    last_status: ServerStatus = ServerStatus.UNKNOWN
    consecutive_same_status_count: int = 0


@dataclass(frozen=True)
class StatusUpdate:
    """What a status indicator needs after one poll."""
    status: ServerStatus
    phase: PollPhase
    interval_seconds: float
    model_count: Optional[int] = None
    default_model_present: Optional[bool] = None


StatusCallback = Callable[[StatusUpdate], Union[None, Awaitable[None]]]


class AdaptiveStatusPoller:
    """
    Periodic health check with stability-driven interval.

    Args:
        health: Monitor to poll (cache honored, never bypassed)
        on_status_change: Called with a StatusUpdate whenever the status changes
        default_model: Model whose presence is reported in updates
        enabled: False performs one check on start() and arms no timer
    """

    def __init__(
        self,
        health: HealthMonitor,
        on_status_change: Optional[StatusCallback] = None,
        default_model: Optional[str] = None,
        enabled: bool = True,
        min_interval: float = POLL_MIN_INTERVAL_SECONDS,
        max_interval: float = POLL_MAX_INTERVAL_SECONDS,
        error_interval: float = POLL_ERROR_INTERVAL_SECONDS,
    ):
        self.health = health
        self.on_status_change = on_status_change
        self.default_model = default_model
        self.enabled = enabled
        self.min_interval = min_interval
        self.max_interval = max_interval
        self.error_interval = error_interval
        self.state = PollingState(interval_seconds=min_interval)
        self.last_update: Optional[StatusUpdate] = None
        self._task: Optional[asyncio.Task] = None
        self._wake = asyncio.Event()

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def apply_status(self, status: ServerStatus) -> float:
        """
        Fold one classification into the polling state.

        Returns:
            The interval to wait before the next poll
        """
        state = self.state
        if status == ServerStatus.ERROR:
            state.consecutive_same_status_count = (
                state.consecutive_same_status_count + 1 if status == state.last_status else 1
            )
            state.interval_seconds = self.error_interval
        elif status == state.last_status:
            state.consecutive_same_status_count += 1
            if state.consecutive_same_status_count >= POLL_STABILITY_THRESHOLD:
                state.interval_seconds = min(state.interval_seconds * POLL_GROWTH_FACTOR, self.max_interval)
                state.consecutive_same_status_count = POLL_STABILITY_THRESHOLD
        else:
            state.consecutive_same_status_count = 1
            state.interval_seconds = max(state.interval_seconds / 2, self.min_interval)
        state.last_status = status
        return state.interval_seconds

    def phase(self) -> PollPhase:
        state = self.state
        if state.last_status == ServerStatus.ERROR:
            return PollPhase.ERROR
        if state.consecutive_same_status_count < POLL_STABILITY_THRESHOLD:
            return PollPhase.CHECKING
        if state.last_status == ServerStatus.RUNNING:
            return PollPhase.STABLE_HEALTHY
        return PollPhase.STABLE_UNHEALTHY

    async def poll_once(self) -> StatusUpdate:
        """Check health once, update the interval, and notify on a change."""
        previous = self.state.last_status
        model_count = None
        default_present = None
        try:
            report = await self.health.check_health(self.default_model)
            status = ServerStatus.RUNNING
            model_count = len(report.models)
            if self.default_model:
                default_present = has_model(report.models, self.default_model)
        except ServerUnreachable as e:
            logger.debug(f"Status poll: server not running ({e})")
            status = ServerStatus.NOT_RUNNING
        except Exception as e:
            logger.warning(f"Status poll failed: {e}")
            status = ServerStatus.ERROR

        interval = self.apply_status(status)
        update = StatusUpdate(
            status=status,
            phase=self.phase(),
            interval_seconds=interval,
            model_count=model_count,
            default_model_present=default_present,
        )
        self.last_update = update
        if status != previous:
            logger.info(f"Ollama status changed: {previous.value} -> {status.value} (next check in {interval:g}s)")
            await self._notify(update)
        return update

    async def start(self) -> StatusUpdate:
        """Run an immediate check and, if enabled, arm the polling loop."""
        update = await self.poll_once()
        if self.enabled and not self.running:
            self._task = asyncio.create_task(self._run())
        return update

    def poke(self) -> None:
        """Check now instead of waiting out the current interval."""
        self._wake.set()

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _run(self) -> None:
        while True:
            # re-armed each pass with the interval the last poll produced
            try:
                await asyncio.wait_for(self._wake.wait(), timeout=self.state.interval_seconds)
            except asyncio.TimeoutError:
                pass
            self._wake.clear()
            await self.poll_once()

    async def _notify(self, update: StatusUpdate) -> None:
        if self.on_status_change is None:
            return
        try:
            result = self.on_status_change(update)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            logger.warning(f"Status change callback failed: {e}")
