"""Retention policy: history truncation and archive rotation on disk."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import TypeVar

logger = logging.getLogger(__name__)

ARCHIVE_PREFIX = "backup-"
ARCHIVE_SUFFIX = ".tar.gz"

T = TypeVar("T")


def prune_history(history: list[T], keep_last: int) -> list[T]:
    """Keep the first ``keep_last`` entries of a newest-first history."""

    if keep_last < 1:
        raise ValueError(f"keep_last must be >= 1, got {keep_last}")
    return history[:keep_last]


def archive_name(timestamp: str) -> str:
    return f"{ARCHIVE_PREFIX}{timestamp}{ARCHIVE_SUFFIX}"


def list_archives(destination: Path) -> list[Path]:
    """Archives produced by local-archive jobs, newest first.

    Names embed a sortable UTC timestamp, so lexical order is chronological.
    """

    if not destination.is_dir():
        return []
    archives = [
        path
        for path in destination.iterdir()
        if path.is_file()
        and path.name.startswith(ARCHIVE_PREFIX)
        and path.name.endswith(ARCHIVE_SUFFIX)
    ]
    return sorted(archives, key=lambda path: path.name, reverse=True)


def prune_archives(destination: Path, keep_last: int) -> list[Path]:
    """Delete archives beyond ``keep_last``; returns the paths actually removed."""

    removed: list[Path] = []
    for path in prune_overflow(list_archives(destination), keep_last):
        try:
            path.unlink()
        except OSError as error:
            logger.warning("Retention: failed to remove %s: %s", path, error)
            continue
        logger.info("Retention: removed old archive %s", path.name)
        removed.append(path)
    return removed


def prune_overflow(items: list[T], keep_last: int) -> list[T]:
    """Complement of :func:`prune_history`: the entries that fall off."""

    if keep_last < 1:
        raise ValueError(f"keep_last must be >= 1, got {keep_last}")
    return items[keep_last:]
