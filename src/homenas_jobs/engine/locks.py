"""Host-wide advisory locks so separate engine processes never run one job twice.

Every ``homenas-jobs`` invocation (cron ticks, ``recover`` at boot, manual runs)
builds its own in-memory running table. The per-job lock file is what those
processes share: whoever holds it owns the job's live process.
"""

from __future__ import annotations

import fcntl
import logging
import re
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import IO

logger = logging.getLogger(__name__)

_UNSAFE_NAME = re.compile(r"[^A-Za-z0-9_-]")


def job_locks_dir(data_path: Path) -> Path:
    """Lock directory kept beside the config document it protects."""

    return data_path.parent / f".{data_path.name}.locks"


class JobLocks:
    """Non-blocking ``flock`` per job id; handles stay open while the lock is held."""

    def __init__(self, directory: Path) -> None:
        self.directory = directory
        self._handles: dict[str, IO[str]] = {}

    def acquire(self, job_id: str) -> bool:
        """Take the job's lock; ``False`` when another process holds it."""

        if job_id in self._handles:
            return False
        handle = self._open(job_id)
        try:
            fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            handle.close()
            return False
        except OSError:
            handle.close()
            raise
        self._handles[job_id] = handle
        return True

    def release(self, job_id: str) -> None:
        handle = self._handles.pop(job_id, None)
        if handle is None:
            return
        try:
            fcntl.flock(handle.fileno(), fcntl.LOCK_UN)
        except OSError as error:
            logger.warning("Failed to release lock for job=%s: %s", job_id, error)
        finally:
            handle.close()

    def held(self, job_id: str) -> bool:
        return job_id in self._handles

    def held_elsewhere(self, job_id: str) -> bool:
        """True when some other process currently owns the job."""

        if job_id in self._handles or not self.path_for(job_id).exists():
            return False
        handle = self._open(job_id)
        try:
            fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            return True
        else:
            fcntl.flock(handle.fileno(), fcntl.LOCK_UN)
            return False
        finally:
            handle.close()

    def path_for(self, job_id: str) -> Path:
        return self.directory / f"{_UNSAFE_NAME.sub('_', job_id)}.lock"

    def _open(self, job_id: str) -> IO[str]:
        self.directory.mkdir(parents=True, exist_ok=True, mode=0o700)
        return self.path_for(job_id).open("a", encoding="utf-8")


@contextmanager
def exclusive_file_lock(path: Path) -> Iterator[None]:
    """Blocking ``flock`` on ``path`` for the duration of the block."""

    path.parent.mkdir(parents=True, exist_ok=True, mode=0o700)
    with path.open("a", encoding="utf-8") as handle:
        fcntl.flock(handle.fileno(), fcntl.LOCK_EX)
        try:
            yield
        finally:
            fcntl.flock(handle.fileno(), fcntl.LOCK_UN)
