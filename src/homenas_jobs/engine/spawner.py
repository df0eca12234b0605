"""Process spawning capability injected into the runner."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Sequence
from typing import Protocol

from homenas_jobs.engine.errors import ProcessSpawnError, SignalDeliveryError

logger = logging.getLogger(__name__)


class OutputStream(Protocol):
    async def read(self, n: int = -1) -> bytes:
        """Return up to ``n`` bytes, ``b""`` at EOF."""


class ProcessHandle(Protocol):
    """The slice of a child process the runner depends on."""

    pid: int
    stdout: OutputStream | None
    stderr: OutputStream | None

    @property
    def returncode(self) -> int | None: ...

    async def wait(self) -> int:
        """Wait for exit and return the exit code (negative for signals)."""

    def terminate(self) -> None:
        """Send SIGTERM; raise SignalDeliveryError when the process is gone."""

    def kill(self) -> None:
        """Send SIGKILL; raise SignalDeliveryError when the process is gone."""


class ProcessSpawner(Protocol):
    async def spawn(self, argv: Sequence[str]) -> ProcessHandle:
        """Start ``argv`` with piped stdout/stderr or raise ProcessSpawnError."""


class SubprocessHandle:
    """``asyncio.subprocess.Process`` adapter with signal errors normalized."""

    def __init__(self, process: asyncio.subprocess.Process) -> None:
        self._process = process
        self.pid = process.pid
        self.stdout = process.stdout
        self.stderr = process.stderr

    @property
    def returncode(self) -> int | None:
        return self._process.returncode

    async def wait(self) -> int:
        return await self._process.wait()

    def terminate(self) -> None:
        self._signal("SIGTERM", self._process.terminate)

    def kill(self) -> None:
        self._signal("SIGKILL", self._process.kill)

    def _signal(self, name: str, send) -> None:
        try:
            send()
        except ProcessLookupError as error:
            raise SignalDeliveryError(f"{name} to pid {self.pid} failed: process is gone") from error
        except OSError as error:
            raise SignalDeliveryError(f"{name} to pid {self.pid} failed: {error}") from error


class AsyncioProcessSpawner:
    """Spawns external tools with ``asyncio.create_subprocess_exec`` (argv only)."""

    async def spawn(self, argv: Sequence[str]) -> ProcessHandle:
        if not argv:
            raise ProcessSpawnError("Refusing to spawn an empty command")
        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as error:
            raise ProcessSpawnError(f"Command not found: {argv[0]}") from error
        except PermissionError as error:
            raise ProcessSpawnError(f"Permission denied executing {argv[0]}") from error
        except OSError as error:
            raise ProcessSpawnError(f"Failed to start {argv[0]}: {error}") from error
        logger.debug("Spawned pid=%s: %s", process.pid, argv[0])
        return SubprocessHandle(process)
