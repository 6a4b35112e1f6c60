"""
Pydantic models for the Ollama wire protocol and client-side state.

These are the values that flow between components: model listings,
health reports, generation requests, parsed stream chunks, pull progress
and availability decisions.
"""

import re
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from ollama_steward.config import (
    DEFAULT_MAX_TOKENS,
    DEFAULT_REPEAT_PENALTY,
    DEFAULT_TEMPERATURE,
    DEFAULT_TOP_K,
    DEFAULT_TOP_P,
    NUM_PREDICT_CEILING,
)

_FRACTION_RE = re.compile(r"(\.\d+)")


# ─────────────────────────────────────────────────────────────────────
# SERVER STATE
# ─────────────────────────────────────────────────────────────────────

class ServerModel(BaseModel):
    """
    One installed model as listed by GET /api/tags.

    Immutable snapshot; the list is refreshed wholesale, never patched.
    """
    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    name: str
    size_bytes: int = Field(default=0, alias="size")
    modified_at: Optional[datetime] = None

    @field_validator("modified_at", mode="before")
    @classmethod
    def _trim_nanoseconds(cls, value: Any) -> Any:
        # Ollama emits nanosecond timestamps; datetime holds microseconds
        if isinstance(value, str):
            return _FRACTION_RE.sub(lambda m: m.group(1)[:7], value)
        return value

    @property
    def size_gb(self) -> float:
        return self.size_bytes / (1024 ** 3)


class HealthStatus(str, Enum):
    """Outcome of a health probe."""
    UNKNOWN = "unknown"
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"
    ERROR = "error"


class HealthReport(BaseModel):
    """
    Result of HealthMonitor.check_health().

    model_present is None when no model was requested. A healthy server
    that lacks the requested model is HEALTHY with model_present=False.
    """
    status: HealthStatus = HealthStatus.UNKNOWN
    checked_model: Optional[str] = None
    model_present: Optional[bool] = None
    models: List[ServerModel] = Field(default_factory=list)
    error: Optional[str] = None

    @property
    def is_healthy(self) -> bool:
        return self.status == HealthStatus.HEALTHY


# ─────────────────────────────────────────────────────────────────────
# GENERATION
# ─────────────────────────────────────────────────────────────────────

class GenerationOptions(BaseModel):
    """Per-request sampling options, serialized into the `options` field."""
    max_tokens: int = DEFAULT_MAX_TOKENS
    temperature: float = DEFAULT_TEMPERATURE
    top_k: int = DEFAULT_TOP_K
    top_p: float = DEFAULT_TOP_P
    repeat_penalty: float = DEFAULT_REPEAT_PENALTY

    def to_ollama(self) -> Dict[str, Any]:
        """Convert to Ollama's option names (num_predict capped at 4096)."""
        return {
            "num_predict": min(self.max_tokens, NUM_PREDICT_CEILING),
            "temperature": self.temperature,
            "top_k": self.top_k,
            "top_p": self.top_p,
            "repeat_penalty": self.repeat_penalty,
        }


class GenerationRequest(BaseModel):
    """
    Body of POST /api/generate.

    Built by the caller; the prompt is expected to be truncated already
    (see generation.truncate_prompt).
    """
    model: str
    prompt: str
    stream: bool = True
    options: Optional[GenerationOptions] = None

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "model": self.model,
            "prompt": self.prompt,
            "stream": self.stream,
        }
        if self.options is not None:
            payload["options"] = self.options.to_ollama()
        return payload


class StreamChunk(BaseModel):
    """One parsed NDJSON line of a streaming /api/generate response."""
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    response_text: Optional[str] = Field(default=None, alias="response")
    done: bool = False
    error: Optional[str] = None
    done_reason: Optional[str] = None


# ─────────────────────────────────────────────────────────────────────
# MODEL PULL
# ─────────────────────────────────────────────────────────────────────

class PullProgress(BaseModel):
    """One progress event of POST /api/pull."""
    model_config = ConfigDict(extra="ignore")

    status: str = ""
    digest: Optional[str] = None
    completed: Optional[int] = None
    total: Optional[int] = None

    @property
    def percent(self) -> Optional[int]:
        if not self.total or self.completed is None:
            return None
        return round(self.completed / self.total * 100)

    @property
    def stage(self) -> str:
        """Coarse installation stage derived from the status text."""
        status = self.status.lower()
        for stage in ("verifying", "unpacking", "loading", "success"):
            if stage in status:
                return stage
        if "writing" in status or "removing" in status:
            return "finalizing"
        return "downloading"


# ─────────────────────────────────────────────────────────────────────
# AVAILABILITY
# ─────────────────────────────────────────────────────────────────────

class AvailabilityReason(str, Enum):
    """Decision token returned when the server cannot be made available."""
    NOT_INSTALLED = "NotInstalled"
    AUTO_START_DISABLED = "AutoStartDisabled"
    SPAWN_FAILED = "ProcessSpawnFailed"
    START_UNVERIFIED = "StartUnverified"
    SERVER_ERROR = "ServerError"


class InstallHint(BaseModel):
    """Where the operator can download the server."""
    title: str
    url: str


class AvailabilityResult(BaseModel):
    """Outcome of AvailabilityOrchestrator.ensure_available()."""
    ok: bool
    reason: Optional[AvailabilityReason] = None
    detail: Optional[str] = None
    model_present: Optional[bool] = None
    started_server: bool = False
    install_hint: Optional[InstallHint] = None

    @property
    def message(self) -> str:
        """Operator-facing summary of a failed result."""
        if self.ok:
            return ""
        messages = {
            AvailabilityReason.NOT_INSTALLED: "Ollama is not installed. Please install Ollama to continue.",
            AvailabilityReason.AUTO_START_DISABLED: "Ollama is installed but not running. Start it now?",
            AvailabilityReason.SPAWN_FAILED: "Failed to start the Ollama server process.",
            AvailabilityReason.START_UNVERIFIED: (
                "Failed to verify that the Ollama server started. "
                "It might need more time or there could be an issue."
            ),
            AvailabilityReason.SERVER_ERROR: "Ollama server is reachable but not responding correctly.",
        }
        text = messages.get(self.reason, "Ollama is unavailable.")
        if self.detail:
            text = f"{text} ({self.detail})"
        return text
