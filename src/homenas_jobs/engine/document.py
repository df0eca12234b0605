"""Whole-document JSON persistence for the dashboard configuration file."""

from __future__ import annotations

import json
import logging
import os
import tempfile
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from homenas_jobs.engine.locks import exclusive_file_lock

logger = logging.getLogger(__name__)

JOBS_KEY = "backups"


class ConfigDocument:
    """Reads the full JSON document and rewrites it atomically.

    Job records live under ``JOBS_KEY``; every other top-level key belongs to
    other dashboard features and is written back untouched.
    """

    def __init__(self, path: Path) -> None:
        self.path = path
        self.lock_path = path.parent / f".{path.name}.lock"

    @contextmanager
    def locked(self) -> Iterator[None]:
        """Hold the document lock shared by every engine process on the host."""

        with exclusive_file_lock(self.lock_path):
            yield

    def read(self) -> dict[str, Any]:
        """Load the document, returning an empty skeleton when it does not exist yet."""

        if not self.path.exists():
            return {JOBS_KEY: []}
        payload = json.loads(self.path.read_text("utf-8"))
        if not isinstance(payload, dict):
            raise TypeError(f"Expected JSON object in {self.path}")
        if not isinstance(payload.get(JOBS_KEY), list):
            payload[JOBS_KEY] = []
        return payload

    def write(self, payload: dict[str, Any]) -> None:
        """Persist via temp file + rename so readers never observe a partial document."""

        self.path.parent.mkdir(parents=True, exist_ok=True, mode=0o700)
        handle, temp_name = tempfile.mkstemp(
            prefix=f".{self.path.name}.",
            suffix=".tmp",
            dir=self.path.parent,
        )
        try:
            with os.fdopen(handle, "w", encoding="utf-8") as stream:
                json.dump(payload, stream, ensure_ascii=False, indent=2)
                stream.flush()
                os.fsync(stream.fileno())
            os.replace(temp_name, self.path)
        except BaseException:
            Path(temp_name).unlink(missing_ok=True)
            raise
        logger.debug("Wrote %s", self.path)
