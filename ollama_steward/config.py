"""
Configuration constants and Pydantic models for ollama-steward.
"""

import os
from typing import Optional

from pydantic import BaseModel, Field


# ─────────────────────────────────────────────────────────────────────
# DEFAULTS - User-configurable via environment / ClientConfig
# ─────────────────────────────────────────────────────────────────────

DEFAULT_API_URL: str = "http://localhost:11434"
DEFAULT_TEMPERATURE: float = 0.7
DEFAULT_TIMEOUT_SECONDS: int = 300  # 5 minutes
MIN_TIMEOUT_SECONDS: int = 15
DEFAULT_MAX_TOKENS: int = 4096


# ─────────────────────────────────────────────────────────────────────
# INTERNAL CONSTANTS - Not exposed to callers
# ─────────────────────────────────────────────────────────────────────

# Health / model-list cache
CACHE_TTL_SECONDS: float = 30.0

# Health probe retry policy
HEALTH_RETRY_COUNT: int = 2
HEALTH_RETRY_BASE_DELAY_SECONDS: float = 1.5
HEALTH_RETRY_MAX_DELAY_SECONDS: float = 10.0
HEALTH_RETRY_JITTER: float = 0.1
HEALTH_PROBE_TIMEOUT_SECONDS: float = 5.0

# Process supervisor verification: 2s, 3s, 4s, 5s, 6s
VERIFY_DELAYS_SECONDS: tuple[float, ...] = (2.0, 3.0, 4.0, 5.0, 6.0)
VERIFY_PROBE_TIMEOUT_SECONDS: float = 10.0

# Spawned server output: append-only files that outlive this process
SERVER_STDOUT_LOG: str = "serve-stdout.log"
SERVER_STDERR_LOG: str = "serve-stderr.log"
LOG_TAIL_INTERVAL_SECONDS: float = 0.25

# Generation
GENERATE_TIMEOUT_SECONDS: float = 30.0
STREAM_CONNECT_TIMEOUT_SECONDS: float = 30.0
SOFT_WARNING_RATIO: float = 0.8
SOFT_WARNING_CAP_SECONDS: float = 960.0   # 16 minutes
HARD_TIMEOUT_CAP_SECONDS: float = 1200.0  # 20 minutes
MAX_PROMPT_LENGTH: int = 8000
NUM_PREDICT_CEILING: int = 4096
DEFAULT_TOP_K: int = 40
DEFAULT_TOP_P: float = 0.9
DEFAULT_REPEAT_PENALTY: float = 1.1

# Stream chunk batching
BATCH_INTERVAL_SECONDS: float = 0.1
BATCH_MAX_CHUNKS: int = 5
MAX_RESPONSE_CHARS: int = 100_000
BATCH_CLOSE_ATTEMPTS: int = 5

# Adaptive status polling
POLL_MIN_INTERVAL_SECONDS: float = 5.0
POLL_MAX_INTERVAL_SECONDS: float = 300.0
POLL_ERROR_INTERVAL_SECONDS: float = 30.0
POLL_GROWTH_FACTOR: float = 1.5
POLL_STABILITY_THRESHOLD: int = 3

# Model pull
PULL_TIMEOUT_SECONDS: float = 1800.0  # 30 minutes


# ─────────────────────────────────────────────────────────────────────
# IN-BAND STATUS MESSAGES
# ─────────────────────────────────────────────────────────────────────

THINKING_STATUS: str = "_Thinking..._"
SOFT_TIMEOUT_NOTICE: str = (
    "\n\n_Note: Response is approaching the maximum allowed length. "
    "If cut off, try increasing the timeout in settings._"
)
HARD_TIMEOUT_NOTICE: str = (
    "\n\n_Maximum streaming time exceeded. The model may be generating too much "
    "content. You can increase the request timeout (OLLAMA_REQUEST_TIMEOUT)._"
)
RESPONSE_TRUNCATED_NOTICE: str = "\n\n[Response truncated due to size...]"


# ─────────────────────────────────────────────────────────────────────
# ENVIRONMENT LOADING
# ─────────────────────────────────────────────────────────────────────

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off"}


def _get_bool(key: str, default: bool) -> bool:
    value = os.environ.get(key)
    if value is None:
        return default
    lowered = value.strip().lower()
    if lowered in _TRUE_VALUES:
        return True
    if lowered in _FALSE_VALUES:
        return False
    return default


def get_api_url() -> str:
    """
    Get the Ollama API base URL from environment or default.

    Set OLLAMA_API_URL in .env (default: http://localhost:11434).
    """
    value = os.environ.get("OLLAMA_API_URL", "").strip()
    return value.rstrip("/") if value else DEFAULT_API_URL


def get_default_model() -> Optional[str]:
    """Get OLLAMA_DEFAULT_MODEL, or None when unset/blank."""
    value = os.environ.get("OLLAMA_DEFAULT_MODEL", "").strip()
    return value or None


def get_request_timeout() -> int:
    """
    Get the streaming request timeout in seconds.

    Set OLLAMA_REQUEST_TIMEOUT in .env (default: 300, minimum: 15).
    """
    try:
        value = int(os.environ.get("OLLAMA_REQUEST_TIMEOUT", str(DEFAULT_TIMEOUT_SECONDS)))
    except ValueError:
        return DEFAULT_TIMEOUT_SECONDS
    return max(value, MIN_TIMEOUT_SECONDS)


def get_temperature() -> float:
    """
    Get sampling temperature.

    Set OLLAMA_TEMPERATURE in .env (default: 0.7).
    """
    try:
        return float(os.environ.get("OLLAMA_TEMPERATURE", str(DEFAULT_TEMPERATURE)))
    except ValueError:
        return DEFAULT_TEMPERATURE


def get_max_tokens() -> int:
    """
    Get maximum response tokens.

    Set OLLAMA_MAX_TOKENS in .env (default: 4096).
    """
    try:
        return int(os.environ.get("OLLAMA_MAX_TOKENS", str(DEFAULT_MAX_TOKENS)))
    except ValueError:
        return DEFAULT_MAX_TOKENS


def get_server_binary() -> Optional[str]:
    """Get an explicit path to the ollama binary (OLLAMA_BINARY), if set."""
    value = os.environ.get("OLLAMA_BINARY", "").strip()
    return value or None


def get_server_log_dir() -> Optional[str]:
    """Directory for the spawned server's output files (OLLAMA_STEWARD_LOG_DIR)."""
    value = os.environ.get("OLLAMA_STEWARD_LOG_DIR", "").strip()
    return value or None


# ─────────────────────────────────────────────────────────────────────
# DATA MODELS
# ─────────────────────────────────────────────────────────────────────

class ClientConfig(BaseModel):
    """Settings consumed by the client core. Owned by the caller."""
    api_url: str = DEFAULT_API_URL
    default_model: Optional[str] = None
    request_timeout_seconds: int = Field(default=DEFAULT_TIMEOUT_SECONDS, ge=MIN_TIMEOUT_SECONDS)
    temperature: float = Field(default=DEFAULT_TEMPERATURE, ge=0.0, le=2.0)
    max_tokens: int = Field(default=DEFAULT_MAX_TOKENS, gt=0)
    auto_start_server: bool = True
    force_recheck: bool = False
    status_poll_enabled: bool = True
    server_binary: Optional[str] = None
    server_log_dir: Optional[str] = None

    @property
    def base_url(self) -> str:
        return self.api_url.rstrip("/")


def load_config_from_env() -> ClientConfig:
    """
    Build a ClientConfig from OLLAMA_* environment variables.

    Call load_dotenv() first if settings live in a .env file.
    """
    return ClientConfig(
        api_url=get_api_url(),
        default_model=get_default_model(),
        request_timeout_seconds=get_request_timeout(),
        temperature=get_temperature(),
        max_tokens=get_max_tokens(),
        auto_start_server=_get_bool("OLLAMA_AUTO_START", True),
        force_recheck=_get_bool("OLLAMA_FORCE_RECHECK", False),
        status_poll_enabled=_get_bool("OLLAMA_STATUS_POLLING", True),
        server_binary=get_server_binary(),
        server_log_dir=get_server_log_dir(),
    )
