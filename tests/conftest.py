"""Shared test fixtures."""

from __future__ import annotations

import asyncio
from collections.abc import Sequence
from pathlib import Path

import pytest

from homenas_jobs.config import Settings, reset_logging
from homenas_jobs.engine.errors import ProcessSpawnError, SignalDeliveryError
from homenas_jobs.engine.models import JobKind, JobSpec
from homenas_jobs.engine.services import JobEngine, build_engine


class FakeStream:
    """Output pipe fed by the test; ``b""`` once closed."""

    def __init__(self) -> None:
        self._chunks: asyncio.Queue[bytes | None] = asyncio.Queue()
        self._closed = False

    def feed(self, chunk: bytes) -> None:
        self._chunks.put_nowait(chunk)

    def close(self) -> None:
        self._chunks.put_nowait(None)

    async def read(self, n: int = -1) -> bytes:
        if self._closed:
            return b""
        chunk = await self._chunks.get()
        if chunk is None:
            self._closed = True
            return b""
        return chunk


class FakeProcess:
    def __init__(self, pid: int, *, ignore_terminate: bool = False) -> None:
        self.pid = pid
        self.stdout = FakeStream()
        self.stderr = FakeStream()
        self.returncode: int | None = None
        self.ignore_terminate = ignore_terminate
        self.signals: list[str] = []
        self._exited = asyncio.Event()

    def finish(self, code: int) -> None:
        if self.returncode is not None:
            return
        self.returncode = code
        self.stdout.close()
        self.stderr.close()
        self._exited.set()

    async def wait(self) -> int:
        await self._exited.wait()
        return self.returncode

    def terminate(self) -> None:
        if self.returncode is not None:
            raise SignalDeliveryError(f"SIGTERM to pid {self.pid} failed: process is gone")
        self.signals.append("SIGTERM")
        if not self.ignore_terminate:
            self.finish(-15)

    def kill(self) -> None:
        if self.returncode is not None:
            raise SignalDeliveryError(f"SIGKILL to pid {self.pid} failed: process is gone")
        self.signals.append("SIGKILL")
        self.finish(-9)


class FakeSpawner:
    """Deterministic spawner; processes stay alive until the test finishes them."""

    def __init__(self) -> None:
        self.calls: list[list[str]] = []
        self.processes: list[FakeProcess] = []
        self.error: str | None = None
        self.exit_code: int | None = None
        self.output: tuple[bytes, ...] = ()
        self.ignore_terminate = False

    async def spawn(self, argv: Sequence[str]) -> FakeProcess:
        self.calls.append(list(argv))
        if self.error is not None:
            raise ProcessSpawnError(self.error)
        process = FakeProcess(4000 + len(self.processes), ignore_terminate=self.ignore_terminate)
        self.processes.append(process)
        for chunk in self.output:
            process.stdout.feed(chunk)
        if self.exit_code is not None:
            process.finish(self.exit_code)
        return process


@pytest.fixture(autouse=True)
def _detach_cli_log_handlers():
    yield
    reset_logging()


@pytest.fixture()
def allowed_root(tmp_path: Path) -> Path:
    root = tmp_path / "mnt"
    (root / "data").mkdir(parents=True)
    (root / "backups").mkdir()
    return root


@pytest.fixture()
def settings(tmp_path: Path, allowed_root: Path) -> Settings:
    return Settings(data_path=tmp_path / "config" / "data.json", allowed_root=allowed_root)


@pytest.fixture()
def spawner() -> FakeSpawner:
    return FakeSpawner()


@pytest.fixture()
def engine(settings: Settings, spawner: FakeSpawner) -> JobEngine:
    return build_engine(settings, spawner=spawner)


@pytest.fixture()
def mirror_spec(allowed_root: Path) -> JobSpec:
    return JobSpec(
        name="Photos",
        source=str(allowed_root / "data"),
        destination=str(allowed_root / "backups" / "photos"),
        kind=JobKind.LOCAL_MIRROR.value,
    )
