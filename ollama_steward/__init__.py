"""
Resilient client and process supervisor for a local Ollama server.

OllamaClient wires the components; each can also be used on its own.
"""

from .client import OllamaClient
from .config import ClientConfig, load_config_from_env
from .errors import OllamaError

__all__ = ["OllamaClient", "ClientConfig", "load_config_from_env", "OllamaError"]
