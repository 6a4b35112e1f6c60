"""
OllamaClient - wires the components for one configuration.

Every component instance (caches, tracker, supervisor, pollers) is owned
by exactly one client. A configuration change builds a new client via
reconfigure(); the old one is disposed first.
"""

import logging
from typing import List, Optional

from ollama_steward.availability import AvailabilityOrchestrator
from ollama_steward.batcher import Deliver
from ollama_steward.config import ClientConfig, load_config_from_env
from ollama_steward.generation import GenerationClient
from ollama_steward.health import HealthMonitor
from ollama_steward.library import ModelLibrary, ProgressCallback
from ollama_steward.poller import AdaptiveStatusPoller, StatusCallback
from ollama_steward.schema import (
    AvailabilityResult,
    GenerationOptions,
    HealthReport,
    PullProgress,
    ServerModel,
)
from ollama_steward.supervisor import DiagnosticSink, ProcessSupervisor
from ollama_steward.tracker import CancelToken, RequestTracker
from ollama_steward.transport import Transport

logger = logging.getLogger(__name__)


class OllamaClient:
    """
    Facade over the client core for one server.

    Args:
        config: Settings; defaults to load_config_from_env()
        sink: Receives the spawned server's output lines
    """

    def __init__(self, config: Optional[ClientConfig] = None, sink: Optional[DiagnosticSink] = None):
        self.config = config or load_config_from_env()
        self.sink = sink
        self.transport = Transport(self.config.base_url)
        self.health = HealthMonitor(self.transport)
        self.supervisor = ProcessSupervisor(
            self.transport,
            binary=self.config.server_binary,
            sink=sink,
            log_dir=self.config.server_log_dir,
        )
        self.availability = AvailabilityOrchestrator(self.config, self.health, self.supervisor)
        self.tracker = RequestTracker()
        self.generation = GenerationClient(self.config, self.transport, self.availability, self.tracker)
        self.library = ModelLibrary(self.config, self.transport, self.health)
        self._pollers: List[AdaptiveStatusPoller] = []
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    # ─────────────────────────────────────────────────────────────────
    # OPERATIONS
    # ─────────────────────────────────────────────────────────────────

    async def check_health(self, model: Optional[str] = None, bypass_cache: bool = False) -> HealthReport:
        return await self.health.check_health(model, bypass_cache=bypass_cache)

    async def ensure_available(self, model: Optional[str] = None) -> AvailabilityResult:
        result = await self.availability.ensure_available(model or self.config.default_model)
        self._refresh_pollers(result)
        return result

    async def start_server(self, model: Optional[str] = None) -> AvailabilityResult:
        result = await self.availability.start_server(model)
        self._refresh_pollers(result)
        return result

    async def list_models(self, bypass_cache: bool = False) -> List[ServerModel]:
        return await self.library.list_models(bypass_cache=bypass_cache)

    async def generate_once(
        self,
        prompt: str,
        model: Optional[str] = None,
        options: Optional[GenerationOptions] = None,
    ) -> str:
        return await self.generation.generate_once(model, prompt, options)

    async def generate_stream(
        self,
        prompt: str,
        on_chunk: Deliver,
        model: Optional[str] = None,
        options: Optional[GenerationOptions] = None,
        request_id: Optional[str] = None,
    ) -> str:
        return await self.generation.generate_stream(
            model, prompt, on_chunk, options=options, request_id=request_id
        )

    def abort_request(self, request_id: str) -> bool:
        return self.tracker.abort_request(request_id)

    async def pull_model(
        self,
        name: str,
        on_progress: Optional[ProgressCallback] = None,
        token: Optional[CancelToken] = None,
    ) -> Optional[PullProgress]:
        return await self.library.pull_model(name, on_progress, token)

    def _refresh_pollers(self, result: AvailabilityResult) -> None:
        # re-check now rather than at the next interval
        if result.started_server:
            for poller in self._pollers:
                poller.poke()

    def create_poller(self, on_status_change: Optional[StatusCallback] = None) -> AdaptiveStatusPoller:
        """New status poller owned (and stopped) by this client."""
        poller = AdaptiveStatusPoller(
            self.health,
            on_status_change=on_status_change,
            default_model=self.config.default_model,
            enabled=self.config.status_poll_enabled,
        )
        self._pollers.append(poller)
        return poller

    # ─────────────────────────────────────────────────────────────────
    # LIFECYCLE
    # ─────────────────────────────────────────────────────────────────

    async def aclose(self) -> None:
        """
        Dispose of this client: abort live requests, stop pollers, clear
        caches and stop forwarding server output. A server this client
        spawned keeps running.
        """
        if self._closed:
            return
        self._closed = True
        aborted = self.tracker.abort_all()
        if aborted:
            logger.info(f"Aborted {aborted} live request(s)")
        for poller in self._pollers:
            await poller.stop()
        self._pollers.clear()
        self.health.invalidate()
        await self.supervisor.dispose()

    async def reconfigure(self, config: ClientConfig) -> "OllamaClient":
        """Dispose of this client and return one built for config."""
        logger.info(f"Reconfiguring client for {config.base_url}")
        await self.aclose()
        return OllamaClient(config, sink=self.sink)

    async def __aenter__(self) -> "OllamaClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()
