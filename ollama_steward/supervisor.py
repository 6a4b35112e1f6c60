"""
Process supervisor for a locally installed Ollama server.

Finds the `ollama` binary, spawns `ollama serve` detached from this
process, and verifies startup by polling /api/tags with growing waits.

The server writes stdout/stderr to append-mode files rather than pipes, so
nothing it writes depends on this process staying alive to read it. While
the supervisor lives, those files are tailed line by line into a
diagnostic sink.

The supervisor does not await the server's exit: once spawned the server
outlives the caller. Concurrent ensure_process_running() calls share one
in-flight start instead of spawning twice.
"""

import asyncio
import logging
import os
import shutil
import subprocess
import sys
from pathlib import Path
from typing import Awaitable, Callable, Optional, Sequence

from ollama_steward.config import (
    LOG_TAIL_INTERVAL_SECONDS,
    SERVER_STDERR_LOG,
    SERVER_STDOUT_LOG,
    VERIFY_DELAYS_SECONDS,
    VERIFY_PROBE_TIMEOUT_SECONDS,
)
from ollama_steward.errors import NotInstalled, ProcessSpawnFailed, TransportError
from ollama_steward.transport import Transport

logger = logging.getLogger(__name__)
server_logger = logging.getLogger("ollama_steward.server")

DiagnosticSink = Callable[[str], None]
Sleep = Callable[[float], Awaitable[None]]


# ─────────────────────────────────────────────────────────────────────
# BINARY DISCOVERY
# ─────────────────────────────────────────────────────────────────────

def _windows_candidates() -> list[Path]:
    program_files = os.environ.get("ProgramFiles", r"C:\Program Files")
    candidates = [Path(program_files) / "Ollama" / "ollama.exe"]
    local_app_data = os.environ.get("LOCALAPPDATA")
    if local_app_data:
        candidates.append(Path(local_app_data) / "Programs" / "Ollama" / "ollama.exe")
    return candidates


def _unix_candidates() -> list[Path]:
    home = Path.home()
    return [
        Path("/usr/local/bin/ollama"),
        Path("/usr/bin/ollama"),
        Path("/opt/ollama/ollama"),
        Path("/opt/homebrew/bin/ollama"),
        Path("/Applications/Ollama.app/Contents/Resources/ollama"),
        home / "ollama" / "ollama",
        home / ".ollama" / "ollama",
    ]


def find_server_binary(explicit: Optional[str] = None, platform: str = sys.platform) -> Optional[Path]:
    """
    Locate the ollama executable.

    Windows checks the well-known install directories. Other platforms
    search PATH first, then common installation paths.

    Args:
        explicit: Configured binary path; used only if it exists
        platform: sys.platform value (overridable for tests)

    Returns:
        Path to the binary, or None if not installed
    """
    if explicit:
        path = Path(explicit).expanduser()
        if path.is_file():
            return path
        logger.warning(f"Configured ollama binary not found: {explicit}")
        return None

    if platform == "win32":
        candidates = _windows_candidates()
    else:
        on_path = shutil.which("ollama")
        if on_path:
            return Path(on_path)
        candidates = _unix_candidates()

    for candidate in candidates:
        if candidate.is_file():
            logger.debug(f"Found ollama binary at {candidate}")
            return candidate
    return None


# ─────────────────────────────────────────────────────────────────────
# PROCESS HANDLE
# ─────────────────────────────────────────────────────────────────────

def default_log_dir() -> Path:
    """Where a spawned server's output files go unless configured."""
    return Path.home() / ".ollama" / "steward"


class ServerProcess:
    """
    Handle on a spawned `ollama serve` process and its log forwarding.

    The child runs in its own session/process group with stdout/stderr
    redirected to files, so it survives this process exiting. Forwarding
    tails those files from where they ended at spawn time.

    Args:
        process: The started child
        sink: Receives each forwarded line, prefixed with its stream label
        logs: (label, path, offset) for each output file to tail
        poll_interval: Wait between reads once a file is at EOF
    """

    def __init__(
        self,
        process: subprocess.Popen,
        sink: Optional[DiagnosticSink] = None,
        logs: Sequence[tuple[str, Path, int]] = (),
        poll_interval: float = LOG_TAIL_INTERVAL_SECONDS,
    ):
        self._process = process
        self._sink = sink
        self._poll_interval = poll_interval
        self.log_paths = [path for _, path, _ in logs]
        self._forwarders: list[asyncio.Task] = [
            asyncio.create_task(self._follow(label, path, offset)) for label, path, offset in logs
        ]

    @classmethod
    async def spawn(
        cls,
        binary: Path,
        args: Sequence[str] = ("serve",),
        sink: Optional[DiagnosticSink] = None,
        log_dir: Optional[Path] = None,
    ) -> "ServerProcess":
        """
        Start the server detached, with stdout/stderr appended to files.

        Raises:
            ProcessSpawnFailed: the log directory or the binary could not be used
        """
        kwargs: dict = {}
        if sys.platform == "win32":
            kwargs["creationflags"] = (
                getattr(subprocess, "CREATE_NEW_PROCESS_GROUP", 0)
                | getattr(subprocess, "CREATE_NO_WINDOW", 0)
            )
        else:
            kwargs["start_new_session"] = True

        log_dir = Path(log_dir) if log_dir else default_log_dir()
        logger.info(f"Starting Ollama server: {binary} {' '.join(args)} (output in {log_dir})")
        handles = []
        logs = []
        try:
            log_dir.mkdir(parents=True, exist_ok=True)
            for label, filename in (("STDOUT", SERVER_STDOUT_LOG), ("STDERR", SERVER_STDERR_LOG)):
                path = log_dir / filename
                handle = open(path, "ab")
                handles.append(handle)
                logs.append((label, path, handle.tell()))
            process = subprocess.Popen(
                [str(binary), *args],
                stdin=subprocess.DEVNULL,
                stdout=handles[0],
                stderr=handles[1],
                close_fds=True,
                **kwargs,
            )
        except OSError as e:
            raise ProcessSpawnFailed(f"Failed to start Ollama process: {e}") from e
        finally:
            # the child holds its own descriptors
            for handle in handles:
                handle.close()
        return cls(process, sink, logs)

    @property
    def pid(self) -> int:
        return self._process.pid

    @property
    def returncode(self) -> Optional[int]:
        return self._process.poll()

    def is_alive(self) -> bool:
        return self._process.poll() is None

    def terminate(self) -> None:
        """Ask the server to exit. No-op if it already has."""
        if self.is_alive():
            logger.info(f"Terminating Ollama server (pid={self.pid})")
            self._process.terminate()

    async def stop_forwarding(self) -> None:
        """Stop relaying output; the process itself keeps running and logging."""
        for task in self._forwarders:
            task.cancel()
        await asyncio.gather(*self._forwarders, return_exceptions=True)
        self._forwarders.clear()

    async def _follow(self, label: str, path: Path, offset: int) -> None:
        partial = b""
        with open(path, "rb") as log:
            log.seek(offset)
            while True:
                raw = log.readline()
                if not raw:
                    if not self.is_alive():
                        break
                    await asyncio.sleep(self._poll_interval)
                    continue
                partial += raw
                if partial.endswith(b"\n"):
                    self._emit(label, partial)
                    partial = b""
        if partial:
            self._emit(label, partial)

    def _emit(self, label: str, raw: bytes) -> None:
        text = raw.decode("utf-8", errors="replace").rstrip()
        if not text:
            return
        server_logger.debug(f"[{label}] {text}")
        if self._sink is not None:
            try:
                self._sink(f"[{label}] {text}")
            except Exception as e:
                logger.warning(f"Diagnostic sink failed: {e}")


Spawner = Callable[
    [Path, Sequence[str], Optional[DiagnosticSink], Optional[Path]],
    Awaitable[ServerProcess],
]


# ─────────────────────────────────────────────────────────────────────
# SUPERVISOR
# ─────────────────────────────────────────────────────────────────────

class ProcessSupervisor:
    """
    Starts the local server when it is installed but not running.

    Explicit state: the last spawned ServerProcess and the in-flight
    start task. A second caller arriving while a start is being verified
    awaits the same task.
    """

    def __init__(
        self,
        transport: Transport,
        binary: Optional[str] = None,
        sink: Optional[DiagnosticSink] = None,
        log_dir: Optional[str] = None,
        verify_delays: Sequence[float] = VERIFY_DELAYS_SECONDS,
        verify_timeout: float = VERIFY_PROBE_TIMEOUT_SECONDS,
        sleep: Sleep = asyncio.sleep,
        spawner: Spawner = ServerProcess.spawn,
    ):
        self._transport = transport
        self._binary = binary
        self._sink = sink
        self.log_dir = Path(log_dir).expanduser() if log_dir else None
        self.verify_delays = tuple(verify_delays)
        self._verify_timeout = verify_timeout
        self._sleep = sleep
        self._spawner = spawner
        self._process: Optional[ServerProcess] = None
        self._inflight: Optional[asyncio.Future] = None
        self.spawn_count = 0

    def find_binary(self) -> Optional[Path]:
        return find_server_binary(self._binary)

    def is_installed(self) -> bool:
        return self.find_binary() is not None

    @property
    def process(self) -> Optional[ServerProcess]:
        return self._process

    @property
    def is_starting(self) -> bool:
        return self._inflight is not None and not self._inflight.done()

    async def ensure_process_running(self) -> bool:
        """
        Spawn the server if needed and wait for it to answer.

        Returns:
            True once /api/tags answers 200; False if verification gave up
            (the process is left running, it may still be starting)

        Raises:
            NotInstalled: no ollama binary was found
            ProcessSpawnFailed: the binary could not be executed
        """
        if self.is_starting:
            logger.info("Ollama server start already in progress, waiting on it")
        else:
            self._inflight = asyncio.ensure_future(self._start_and_verify())
        return await asyncio.shield(self._inflight)

    async def _start_and_verify(self) -> bool:
        if self._process is not None and self._process.is_alive():
            logger.info(f"Ollama server already spawned (pid={self._process.pid}), verifying")
            return await self.verify_started()

        binary = self.find_binary()
        if binary is None:
            raise NotInstalled("Ollama binary not found in PATH or common install locations")

        self._process = await self._spawner(binary, ("serve",), self._sink, self.log_dir)
        self.spawn_count += 1
        return await self.verify_started()

    async def verify_started(self) -> bool:
        """Poll the server with growing waits (2s, 3s, 4s, 5s, 6s)."""
        total = len(self.verify_delays)
        for attempt, delay in enumerate(self.verify_delays, start=1):
            logger.info(f"Waiting {delay:g}s before checking server status (attempt {attempt}/{total})")
            await self._sleep(delay)
            try:
                status = await self._transport.probe("/api/tags", timeout=self._verify_timeout)
                if status == 200:
                    logger.info(f"Ollama server started successfully after {attempt} attempt(s)")
                    return True
                logger.warning(f"Ollama server returned status {status} on attempt {attempt}")
            except TransportError as e:
                logger.debug(f"Ollama server not ready on attempt {attempt}: {e}")

            if self._process is not None and not self._process.is_alive():
                logger.error(f"Ollama server process exited with code {self._process.returncode}")
                return False

        logger.warning(
            "Failed to verify if Ollama server started. It might need more time or there could be an issue."
        )
        return False

    async def stop(self) -> None:
        """Terminate the server this supervisor spawned, if any."""
        if self._process is not None:
            self._process.terminate()
            await self._process.stop_forwarding()
            self._process = None

    async def dispose(self) -> None:
        """Stop log forwarding without killing the detached server."""
        if self._inflight is not None and not self._inflight.done():
            self._inflight.cancel()
        if self._process is not None:
            await self._process.stop_forwarding()
