"""
Availability orchestrator: make the server usable, or say why it isn't.

Linear escalation, each step short-circuiting on success:
health check -> binary discovery -> spawn + verify -> decision token.
No user interaction happens here; the caller presents the decision.
"""

import logging
import sys
from typing import Optional

from ollama_steward.config import ClientConfig
from ollama_steward.errors import (
    NotInstalled,
    OllamaError,
    ProcessSpawnFailed,
    ServerUnreachable,
    UnexpectedFailure,
)
from ollama_steward.health import HealthMonitor
from ollama_steward.schema import AvailabilityReason, AvailabilityResult, InstallHint
from ollama_steward.supervisor import ProcessSupervisor

logger = logging.getLogger(__name__)


def install_instructions(platform: str = sys.platform) -> InstallHint:
    """Download page for the Ollama server on this OS."""
    if platform == "darwin":
        return InstallHint(title="Download Ollama for macOS", url="https://ollama.com/download/mac")
    if platform == "win32":
        return InstallHint(title="Download Ollama for Windows", url="https://ollama.com/download/windows")
    return InstallHint(title="Install Ollama for Linux", url="https://ollama.com/download/linux")


class AvailabilityOrchestrator:
    """Escalates from a cached health check to starting the server."""

    def __init__(self, config: ClientConfig, health: HealthMonitor, supervisor: ProcessSupervisor):
        self.config = config
        self.health = health
        self.supervisor = supervisor

    async def ensure_available(self, model: Optional[str] = None) -> AvailabilityResult:
        """
        Make sure the server answers, starting it when allowed.

        Args:
            model: Model to look for once the server is healthy

        Returns:
            AvailabilityResult; ok=False carries a reason for the caller

        Raises:
            UnexpectedFailure: anything outside the known failure modes
        """
        try:
            return await self._escalate(model)
        except OllamaError:
            raise
        except Exception as e:
            logger.exception(f"Unexpected failure while ensuring availability: {e}")
            raise UnexpectedFailure(str(e)) from e

    async def start_server(self, model: Optional[str] = None) -> AvailabilityResult:
        """
        Start the server on the operator's request, ignoring auto_start_server.

        Used after ensure_available() returned AutoStartDisabled.
        """
        try:
            return await self._start_and_recheck(model)
        except OllamaError:
            raise
        except Exception as e:
            logger.exception(f"Unexpected failure while starting server: {e}")
            raise UnexpectedFailure(str(e)) from e

    async def _escalate(self, model: Optional[str]) -> AvailabilityResult:
        try:
            report = await self.health.check_health(model, bypass_cache=self.config.force_recheck)
            return AvailabilityResult(ok=True, model_present=report.model_present)
        except ServerUnreachable as e:
            if not e.is_connection_failure:
                logger.warning(f"Server reachable but unhealthy: {e}")
                return AvailabilityResult(
                    ok=False,
                    reason=AvailabilityReason.SERVER_ERROR,
                    detail=str(e.last_error) if e.last_error else None,
                )
            logger.info("Ollama server not reachable, checking local installation")

        if self.supervisor.find_binary() is None:
            logger.warning("Ollama server not running and binary not found")
            return AvailabilityResult(
                ok=False,
                reason=AvailabilityReason.NOT_INSTALLED,
                install_hint=install_instructions(),
            )

        if not self.config.auto_start_server:
            logger.info("Ollama is installed but not running; auto-start disabled")
            return AvailabilityResult(ok=False, reason=AvailabilityReason.AUTO_START_DISABLED)

        return await self._start_and_recheck(model)

    async def _start_and_recheck(self, model: Optional[str]) -> AvailabilityResult:
        try:
            started = await self.supervisor.ensure_process_running()
        except NotInstalled as e:
            return AvailabilityResult(
                ok=False,
                reason=AvailabilityReason.NOT_INSTALLED,
                detail=str(e),
                install_hint=install_instructions(),
            )
        except ProcessSpawnFailed as e:
            logger.error(f"Ollama server could not be spawned: {e}")
            return AvailabilityResult(ok=False, reason=AvailabilityReason.SPAWN_FAILED, detail=str(e))

        if not started:
            return AvailabilityResult(ok=False, reason=AvailabilityReason.START_UNVERIFIED)

        try:
            report = await self.health.check_health(model, retry=False, bypass_cache=True)
        except ServerUnreachable as e:
            logger.warning(f"Server started but health re-check failed: {e}")
            return AvailabilityResult(ok=False, reason=AvailabilityReason.START_UNVERIFIED, detail=str(e))

        return AvailabilityResult(ok=True, model_present=report.model_present, started_server=True)
