"""Shared test fixtures for ollama-steward tests."""

import json

import pytest


# ─────────────────────────────────────────────────────────────────────
# MOCK DATA
# ─────────────────────────────────────────────────────────────────────

MOCK_API_URL = "http://127.0.0.1:11434"

MOCK_MODEL = "llama3:8b"
MOCK_CODE_MODEL = "codellama:7b"
MOCK_MISSING_MODEL = "mistral:7b"

MOCK_TAGS_RESPONSE = {
    "models": [
        {
            "name": MOCK_MODEL,
            "size": 4_661_224_676,
            "modified_at": "2024-05-01T10:00:00.123456789-07:00",
            "digest": "365c0bd3c000",
        },
        {
            "name": MOCK_CODE_MODEL,
            "size": 3_825_819_519,
            "modified_at": "2024-04-20T08:30:00Z",
            "digest": "8fdf8f752f6e",
        },
    ]
}

MOCK_STREAM_LINES = [
    {"model": MOCK_MODEL, "response": "The", "done": False},
    {"model": MOCK_MODEL, "response": " capital", "done": False},
    {"model": MOCK_MODEL, "response": " is", "done": False},
    {"model": MOCK_MODEL, "response": " Paris.", "done": False},
    {"model": MOCK_MODEL, "response": "", "done": True, "done_reason": "stop"},
]

MOCK_PULL_LINES = [
    {"status": "pulling manifest"},
    {"status": "pulling 6a0746a1ec1a", "digest": "sha256:6a07", "total": 1000, "completed": 250},
    {"status": "pulling 6a0746a1ec1a", "digest": "sha256:6a07", "total": 1000, "completed": 1000},
    {"status": "verifying sha256 digest"},
    {"status": "writing manifest"},
    {"status": "success"},
]


def ndjson(lines) -> bytes:
    """Encode dicts (or raw strings) as an NDJSON body."""
    parts = [line if isinstance(line, str) else json.dumps(line) for line in lines]
    return ("\n".join(parts) + "\n").encode()


async def no_sleep(_delay: float) -> None:
    """Drop-in for asyncio.sleep in retry/verification loops."""
    return None


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


# ─────────────────────────────────────────────────────────────────────
# FIXTURES - Configuration
# ─────────────────────────────────────────────────────────────────────

@pytest.fixture
def config():
    """ClientConfig pointing at the mock server."""
    from ollama_steward.config import ClientConfig

    return ClientConfig(api_url=MOCK_API_URL, default_model=MOCK_MODEL)


@pytest.fixture
def clock():
    """Manually advanced clock for TTL tests."""
    return FakeClock()


@pytest.fixture
def clean_env(monkeypatch):
    """Remove OLLAMA_* variables so defaults apply."""
    for key in (
        "OLLAMA_API_URL",
        "OLLAMA_DEFAULT_MODEL",
        "OLLAMA_REQUEST_TIMEOUT",
        "OLLAMA_TEMPERATURE",
        "OLLAMA_MAX_TOKENS",
        "OLLAMA_AUTO_START",
        "OLLAMA_FORCE_RECHECK",
        "OLLAMA_STATUS_POLLING",
        "OLLAMA_BINARY",
        "OLLAMA_STEWARD_LOG_DIR",
    ):
        monkeypatch.delenv(key, raising=False)
    return monkeypatch


# ─────────────────────────────────────────────────────────────────────
# FIXTURES - Components
# ─────────────────────────────────────────────────────────────────────

@pytest.fixture
def transport():
    from ollama_steward.transport import Transport

    return Transport(MOCK_API_URL)


@pytest.fixture
def health(transport, clock):
    """HealthMonitor with a fake clock and no real sleeping."""
    from ollama_steward.health import HealthMonitor

    return HealthMonitor(transport, clock=clock, sleep=no_sleep)
