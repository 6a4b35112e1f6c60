"""
Error taxonomy for the Ollama client core.

Transient network errors (TransportError subclasses) are retried by the
health monitor or surfaced to the caller with a retry affordance.
NotInstalled / ProcessSpawnFailed are terminal for the call. Cancelled is
never surfaced as a failure to a stream consumer.
"""

from typing import TYPE_CHECKING, Optional

import httpx

if TYPE_CHECKING:
    from ollama_steward.schema import AvailabilityResult


class OllamaError(Exception):
    """Base class for all ollama-steward errors."""
    pass


# ─────────────────────────────────────────────────────────────────────
# TRANSPORT ERRORS
# ─────────────────────────────────────────────────────────────────────

class TransportError(OllamaError):
    """Network-level failure talking to the inference server."""
    pass


class ConnectionRefused(TransportError):
    """Server refused the connection or the host is unreachable."""
    pass


class ConnectionTimeout(TransportError):
    """Connect or read timed out."""
    pass


class ServerError(TransportError):
    """Server answered with an HTTP error status."""

    def __init__(self, status_code: int, message: str = ""):
        self.status_code = status_code
        self.message = message
        detail = f": {message}" if message else ""
        super().__init__(f"HTTP {status_code}{detail}")


class MalformedResponse(TransportError):
    """Response body could not be decoded or is missing required fields."""
    pass


# ─────────────────────────────────────────────────────────────────────
# DOMAIN ERRORS
# ─────────────────────────────────────────────────────────────────────

class ModelNotFound(OllamaError):
    """Requested model is not installed on the server."""

    def __init__(self, model: str):
        self.model = model
        super().__init__(f"Model '{model}' not found. Pull it first (ollama pull {model}).")


class ServerUnreachable(OllamaError):
    """Health check failed after exhausting retries."""

    def __init__(self, last_error: Optional[BaseException] = None, cached: bool = False):
        self.last_error = last_error
        self.cached = cached
        reason = str(last_error) if last_error else "no response"
        super().__init__(f"Ollama server unreachable: {reason}")

    @property
    def is_connection_failure(self) -> bool:
        """True when the last failure was refused/unreachable/timeout, not an HTTP error."""
        return isinstance(self.last_error, (ConnectionRefused, ConnectionTimeout))


class NotInstalled(OllamaError):
    """Server binary could not be found on this machine."""
    pass


class ProcessSpawnFailed(OllamaError):
    """Server binary exists but the process could not be started."""
    pass


class Cancelled(OllamaError):
    """Operation was cancelled through its CancelToken."""
    pass


class UnexpectedFailure(OllamaError):
    """Unclassified failure that escaped a component boundary."""
    pass


class DeliveryFailed(OllamaError):
    """The stream consumer kept rejecting text that was already received."""

    def __init__(self, lost_chars: int, attempts: int):
        self.lost_chars = lost_chars
        self.attempts = attempts
        super().__init__(f"Consumer rejected {lost_chars} character(s) of response after {attempts} attempt(s)")


class ServerUnavailable(OllamaError):
    """ensure_available() failed; carries the structured decision."""

    def __init__(self, result: "AvailabilityResult"):
        self.result = result
        super().__init__(result.message or f"Ollama unavailable: {result.reason}")


# ─────────────────────────────────────────────────────────────────────
# HELPERS
# ─────────────────────────────────────────────────────────────────────

def parse_server_error(response: httpx.Response) -> str:
    """Extract a user-friendly error message from an Ollama error response."""
    try:
        data = response.json()
        # Ollama returns {"error": "..."}
        if isinstance(data, dict):
            error = data.get("error")
            if isinstance(error, str) and error:
                return error
            if isinstance(error, dict) and error.get("message"):
                return error["message"]
        return response.text[:200]
    except Exception:
        return response.text[:200]


def classify_httpx_error(exc: httpx.HTTPError) -> TransportError:
    """Map an httpx exception onto the transport taxonomy."""
    if isinstance(exc, httpx.TimeoutException):
        return ConnectionTimeout(str(exc) or "timed out")
    if isinstance(exc, httpx.ConnectError):
        return ConnectionRefused(str(exc) or "connection refused")
    if isinstance(exc, httpx.DecodingError):
        return MalformedResponse(str(exc))
    return ConnectionRefused(str(exc) or exc.__class__.__name__)


def format_error(exc: BaseException, timeout_seconds: Optional[float] = None) -> str:
    """
    Format an error into an operator-facing message.

    Args:
        exc: Any exception raised by the client core
        timeout_seconds: Request timeout, quoted in timeout messages

    Returns:
        Single-line message suitable for an `_Error: ..._` chunk
    """
    if isinstance(exc, ConnectionTimeout):
        if timeout_seconds:
            return (
                f"Request timed out after {timeout_seconds:g}s. "
                "The model might be busy or the server overloaded."
            )
        return "Request timed out. The server might be busy or overloaded."
    if isinstance(exc, ConnectionRefused):
        return "Connection refused. Make sure Ollama server is running."
    if isinstance(exc, ServerError):
        if exc.status_code == 500:
            return f"Server error (Status: 500). Ollama might be having trouble with this request. {exc.message}".rstrip()
        return f"Server error (Status: {exc.status_code}). Try using a different model."
    if isinstance(exc, MalformedResponse):
        return f"Invalid response from Ollama API: {exc}"
    if isinstance(exc, Cancelled):
        return "Request was canceled."
    if isinstance(exc, OllamaError):
        return str(exc)
    return f"Unknown error: {exc}"
