"""argv construction for the external transfer tools.

Commands are always argument vectors handed to ``exec``; no shell ever parses
them, so job fields cannot inject extra commands. Exclude patterns travel as a
single ``--exclude=<pattern>`` token and locations are absolute paths or
``remote:path`` specs, so neither can be mistaken for an option.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

from homenas_jobs.config import ToolSettings
from homenas_jobs.engine.models import Job, JobKind
from homenas_jobs.engine.paths import is_remote_spec
from homenas_jobs.engine.retention import archive_name

RSYNC_FLAGS: tuple[str, ...] = ("-avz", "--delete")
RCLONE_FLAGS: tuple[str, ...] = ("--progress", "--stats-one-line")
_RCLONE_MODES = {
    JobKind.REMOTE_COPY: "copy",
    JobKind.REMOTE_SYNC: "sync",
    JobKind.REMOTE_MOVE: "move",
}


@dataclass(slots=True)
class Invocation:
    """Process to spawn plus filesystem preparation it depends on."""

    argv: list[str]
    ensure_dir: Path | None = None
    archive: str | None = None


def build_command(job: Job, tools: ToolSettings, *, now: datetime) -> Invocation:
    """Build the backup invocation for ``job``."""

    excludes = [f"--exclude={pattern}" for pattern in job.excludes]

    if job.kind == JobKind.LOCAL_MIRROR:
        source = job.source if job.source.endswith("/") else f"{job.source}/"
        return Invocation(
            argv=[tools.rsync_bin, *RSYNC_FLAGS, *excludes, source, job.destination],
            ensure_dir=Path(job.destination),
        )

    if job.kind == JobKind.LOCAL_ARCHIVE:
        archive = archive_name(now.strftime("%Y-%m-%dT%H-%M-%S-%fZ"))
        archive_path = Path(job.destination) / archive
        return Invocation(
            argv=[tools.tar_bin, *excludes, "-czf", str(archive_path), "-C", job.source, "."],
            ensure_dir=Path(job.destination),
            archive=archive,
        )

    mode = _RCLONE_MODES[job.kind]
    argv = [tools.rclone_bin, mode, job.source, job.destination, *RCLONE_FLAGS, *excludes]
    if job.kind == JobKind.REMOTE_SYNC and job.delete_extraneous:
        argv.append("--delete-during")
    ensure_dir = None if is_remote_spec(job.destination) else Path(job.destination)
    return Invocation(argv=argv, ensure_dir=ensure_dir)


def build_restore_command(job: Job, archive_path: Path, tools: ToolSettings) -> Invocation:
    """Extract a local-archive backup back into the job's source directory."""

    return Invocation(
        argv=[tools.tar_bin, "-xzf", str(archive_path), "-C", job.source],
        ensure_dir=Path(job.source),
        archive=archive_path.name,
    )
