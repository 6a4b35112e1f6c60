"""
Model library: listing, selection and pulling of server-side models.
"""

import asyncio
import inspect
import logging
from typing import Awaitable, Callable, List, Optional, Union

import httpx
from pydantic import ValidationError

from ollama_steward.config import PULL_TIMEOUT_SECONDS, ClientConfig
from ollama_steward.errors import Cancelled, ConnectionTimeout, ModelNotFound, ServerError
from ollama_steward.health import HealthMonitor
from ollama_steward.schema import PullProgress, ServerModel
from ollama_steward.tracker import CancelToken
from ollama_steward.transport import Transport

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[PullProgress], Union[None, Awaitable[None]]]

# Suggested pulls when no model is installed: (name, description)
RECOMMENDED_MODELS: List[tuple[str, str]] = [
    ("deepseek-coder-v2:latest", "DeepSeek Coder V2 - Optimized for code tasks (4.2GB)"),
    ("gemma:7b", "Google Gemma 7B model - 4.8GB"),
    ("llama3:8b", "Meta Llama 3 8B model - 4.7GB"),
    ("mistral:7b", "Mistral 7B model - 4.1GB"),
    ("phi3:mini", "Microsoft Phi-3 mini - 1.7GB"),
]

CODE_MODEL_MARKERS = ("code", "starcoder", "codellama")


def is_code_model(name: str) -> bool:
    lowered = name.lower()
    return any(marker in lowered for marker in CODE_MODEL_MARKERS)


class ModelLibrary:
    """Model operations for one server, sharing the health monitor's list cache."""

    def __init__(self, config: ClientConfig, transport: Transport, health: HealthMonitor):
        self.config = config
        self.transport = transport
        self.health = health

    async def list_models(self, bypass_cache: bool = False) -> List[ServerModel]:
        return await self.health.list_models(bypass_cache=bypass_cache)

    async def code_models(self) -> List[ServerModel]:
        """Installed models whose names suggest code specialisation."""
        return [m for m in await self.list_models() if is_code_model(m.name)]

    async def resolve_model(self, prefer_code: bool = False) -> Optional[str]:
        """
        Pick a model without asking the operator.

        Order: configured default, then the first code model (when
        prefer_code), then the first installed model.
        """
        if self.config.default_model:
            return self.config.default_model
        models = await self.list_models()
        if prefer_code:
            for model in models:
                if is_code_model(model.name):
                    logger.info(f"Using code-optimized model: {model.name}")
                    return model.name
        if models:
            return models[0].name
        return None

    async def pull_model(
        self,
        name: str,
        on_progress: Optional[ProgressCallback] = None,
        token: Optional[CancelToken] = None,
        timeout: float = PULL_TIMEOUT_SECONDS,
    ) -> Optional[PullProgress]:
        """
        Download a model, reporting each progress event.

        Args:
            name: Model to pull, e.g. "llama3:8b"
            on_progress: Called with every parsed PullProgress event
            token: Stops the download when cancelled
            timeout: Overall limit in seconds (default 30 minutes)

        Returns:
            The last progress event (stage "success" on completion), or
            None if nothing was received before cancellation

        Raises:
            ModelNotFound: the registry has no such model (404)
            ConnectionTimeout: the download exceeded the timeout
            ServerError, ConnectionRefused
        """
        logger.info(f"Pulling model {name}")
        seen: List[PullProgress] = []
        try:
            await asyncio.wait_for(self._pull_until_cancelled(name, on_progress, token, seen), timeout=timeout)
        except Cancelled:
            logger.info(f"Pull of {name} cancelled")
            return seen[-1] if seen else None
        except asyncio.TimeoutError as e:
            raise ConnectionTimeout(f"Model download exceeded {timeout:g}s") from e
        except ServerError as e:
            if e.status_code == 404:
                raise ModelNotFound(name) from e
            raise

        last = seen[-1] if seen else None
        if last is not None and last.stage == "success":
            logger.info(f"Model {name} pulled successfully")
            self.health.invalidate()
        return last

    async def _pull_until_cancelled(
        self,
        name: str,
        on_progress: Optional[ProgressCallback],
        token: Optional[CancelToken],
        seen: List[PullProgress],
    ) -> None:
        """Run the pull, abandoning it as soon as the token fires even mid-read."""
        if token is None:
            await self._pull(name, on_progress, None, seen)
            return

        pull = asyncio.create_task(self._pull(name, on_progress, token, seen))
        cancel_wait = asyncio.create_task(token.wait())
        try:
            await asyncio.wait({pull, cancel_wait}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            cancel_wait.cancel()
            if not pull.done():
                pull.cancel()
            await asyncio.gather(pull, cancel_wait, return_exceptions=True)

        if token.is_cancelled():
            raise Cancelled(f"Pull of {name} cancelled")
        pull.result()

    async def _pull(
        self,
        name: str,
        on_progress: Optional[ProgressCallback],
        token: Optional[CancelToken],
        seen: List[PullProgress],
    ) -> None:
        payload = {"name": name, "stream": True}
        timeout = httpx.Timeout(30.0, read=None)
        async for data in self.transport.stream_ndjson("/api/pull", payload, timeout=timeout, token=token):
            if data.get("error"):
                raise ServerError(500, str(data["error"]))
            try:
                progress = PullProgress.model_validate(data)
            except ValidationError as e:
                logger.warning(f"Skipping invalid pull progress event: {e}")
                continue
            seen.append(progress)
            logger.debug(f"Pull {name}: {progress.status} {progress.percent or ''}")
            if on_progress is not None:
                result = on_progress(progress)
                if inspect.isawaitable(result):
                    await result
