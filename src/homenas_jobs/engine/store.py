"""Durable job definitions and bounded execution history."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, TypeVar
from uuid import uuid4

from homenas_jobs.engine.document import JOBS_KEY, ConfigDocument
from homenas_jobs.engine.errors import ConcurrencyConflict, NotFoundError, ValidationError
from homenas_jobs.engine.models import (
    DEFAULT_CRON,
    ExecutionStatus,
    HistoryEntry,
    Job,
    JobKind,
    JobPatch,
    JobSpec,
    LastResult,
    Retention,
    Schedule,
    utc_now,
)
from homenas_jobs.engine.paths import PathValidator, is_remote_spec
from homenas_jobs.engine.retention import prune_history
from homenas_jobs.engine.schedule import expand_schedule, is_valid_cron

logger = logging.getLogger(__name__)

MAX_NAME_CHARS = 128
MAX_EXCLUDE_CHARS = 512

R = TypeVar("R")


@dataclass(slots=True)
class _ValidatedFields:
    name: str
    source: str
    destination: str
    kind: JobKind
    cron: str
    keep_last: int
    excludes: list[str]


class JobStore:
    """Job persistence facade over the shared JSON config document.

    Every mutation is one read-modify-write of the whole document, serialized by
    ``_lock`` so the engine is the document's single writer.
    """

    def __init__(
        self,
        document: ConfigDocument,
        validator: PathValidator,
        *,
        is_running: Callable[[str], bool] = lambda _job_id: False,
        default_keep_last: int = 10,
    ) -> None:
        self.document = document
        self.validator = validator
        self.is_running = is_running
        self.default_keep_last = default_keep_last
        self._lock = asyncio.Lock()

    # -- queries --------------------------------------------------------------

    async def list_jobs(self) -> list[Job]:
        payload = await asyncio.to_thread(self.document.read)
        return _parse_jobs(payload)

    async def get_job(self, job_id: str) -> Job:
        for job in await self.list_jobs():
            if job.id == job_id:
                return job
        raise NotFoundError(job_id)

    async def get_history(self, job_id: str) -> list[HistoryEntry]:
        return (await self.get_job(job_id)).history

    async def find_running_entries(self) -> list[tuple[Job, HistoryEntry]]:
        """Entries still marked running, i.e. left behind by a host that died mid-run."""

        found: list[tuple[Job, HistoryEntry]] = []
        for job in await self.list_jobs():
            found.extend(
                (job, entry)
                for entry in job.history
                if entry.status == ExecutionStatus.RUNNING
            )
        return found

    # -- job definitions ------------------------------------------------------

    async def create_job(self, spec: JobSpec) -> Job:
        """Validate and persist a new job; nothing is written when validation fails."""

        fields = self._validate(
            name=spec.name,
            source=spec.source,
            destination=spec.destination,
            kind=spec.kind,
            cron=spec.schedule_cron if spec.schedule_cron is not None else DEFAULT_CRON,
            keep_last=spec.keep_last if spec.keep_last is not None else self.default_keep_last,
            excludes=spec.excludes,
        )
        job = Job(
            id=uuid4().hex[:12],
            name=fields.name,
            source=fields.source,
            destination=fields.destination,
            kind=fields.kind,
            schedule=Schedule(enabled=bool(spec.schedule_enabled), cron=fields.cron),
            excludes=fields.excludes,
            retention=Retention(keep_last=fields.keep_last),
            delete_extraneous=bool(spec.delete_extraneous) and fields.kind == JobKind.REMOTE_SYNC,
        )

        def _append(jobs: list[Job]) -> Job:
            jobs.append(job)
            return job

        created = await self._mutate(_append)
        logger.info("Backup job created: id=%s name=%s kind=%s", job.id, job.name, job.kind.value)
        return created

    async def update_job(self, job_id: str, patch: JobPatch) -> Job:
        def _apply(jobs: list[Job]) -> Job:
            job = _find(jobs, job_id)
            if self.is_running(job_id):
                raise ConcurrencyConflict(job_id, "Cannot update a running job")
            fields = self._validate(
                name=patch.name if patch.name is not None else job.name,
                source=patch.source if patch.source is not None else job.source,
                destination=(
                    patch.destination if patch.destination is not None else job.destination
                ),
                kind=patch.kind if patch.kind is not None else job.kind.value,
                cron=patch.schedule_cron if patch.schedule_cron is not None else job.schedule.cron,
                keep_last=patch.keep_last if patch.keep_last is not None else job.retention.keep_last,
                excludes=patch.excludes if patch.excludes is not None else job.excludes,
            )
            job.name = fields.name
            job.source = fields.source
            job.destination = fields.destination
            job.kind = fields.kind
            job.schedule.cron = fields.cron
            if patch.schedule_enabled is not None:
                job.schedule.enabled = bool(patch.schedule_enabled)
            job.excludes = fields.excludes
            job.retention.keep_last = fields.keep_last
            if patch.delete_extraneous is not None:
                job.delete_extraneous = bool(patch.delete_extraneous)
            if job.kind != JobKind.REMOTE_SYNC:
                job.delete_extraneous = False
            job.updated_at = utc_now()
            return job

        updated = await self._mutate(_apply)
        logger.info("Backup job updated: id=%s name=%s", updated.id, updated.name)
        return updated

    async def delete_job(self, job_id: str) -> None:
        def _remove(jobs: list[Job]) -> Job:
            job = _find(jobs, job_id)
            if self.is_running(job_id):
                raise ConcurrencyConflict(job_id, "Cannot delete a running job; stop it first")
            jobs.remove(job)
            return job

        removed = await self._mutate(_remove)
        logger.info("Backup job deleted: id=%s name=%s", removed.id, removed.name)

    # -- execution history ----------------------------------------------------

    async def start_execution(self, job_id: str, entry: HistoryEntry) -> bool:
        """Persist a ``running`` marker at the head of the history."""

        def _insert(jobs: list[Job]) -> bool:
            job = _find_optional(jobs, job_id)
            if job is None:
                return False
            job.history.insert(0, entry)
            return True

        recorded = await self._mutate(_insert)
        if not recorded:
            logger.warning("Job %s vanished before execution %s was recorded", job_id, entry.id)
        return recorded

    async def add_history(self, job_id: str, entry: HistoryEntry) -> bool:
        """Finalize an execution: head insert, prune, refresh last-run fields.

        Returns ``False`` when the job was deleted while its process was running.
        """

        def _finalize(jobs: list[Job]) -> bool:
            job = _find_optional(jobs, job_id)
            if job is None:
                return False
            history = [item for item in job.history if item.id != entry.id]
            history.insert(0, entry)
            job.history = _prune_keeping_running(history, job.retention.keep_last)
            _refresh_last_result(job)
            return True

        recorded = await self._mutate(_finalize)
        if not recorded:
            logger.warning(
                "Dropping history for execution %s: job %s no longer exists",
                entry.id,
                job_id,
            )
        return recorded

    async def mark_resumed(self, job_id: str, entry_id: str, resumed_as: str) -> HistoryEntry:
        def _mark(jobs: list[Job]) -> HistoryEntry:
            entry = _find_entry(_find(jobs, job_id), entry_id)
            entry.status = ExecutionStatus.RESUMED
            entry.resumed_as = resumed_as
            entry.finished_at = utc_now()
            return entry

        return await self._mutate(_mark)

    async def mark_failed(self, job_id: str, entry_id: str, error: str) -> HistoryEntry:
        def _mark(jobs: list[Job]) -> HistoryEntry:
            job = _find(jobs, job_id)
            entry = _find_entry(job, entry_id)
            entry.status = ExecutionStatus.FAILED
            entry.success = False
            entry.error = error
            entry.resumed_as = None
            entry.finished_at = utc_now()
            _refresh_last_result(job)
            return entry

        return await self._mutate(_mark)

    # -- internals ------------------------------------------------------------

    async def _mutate(self, apply: Callable[[list[Job]], R]) -> R:
        async with self._lock:
            return await asyncio.to_thread(self._read_modify_write, apply)

    def _read_modify_write(self, apply: Callable[[list[Job]], R]) -> R:
        # Other engine processes rewrite the same document; the file lock keeps
        # their read-modify-write cycles from interleaving with ours.
        with self.document.locked():
            payload = self.document.read()
            jobs = _parse_jobs(payload)
            result = apply(jobs)
            payload[JOBS_KEY] = [job.to_dict() for job in jobs]
            self.document.write(payload)
        return result

    def _validate(  # noqa: PLR0913
        self,
        *,
        name: Any,
        source: Any,
        destination: Any,
        kind: Any,
        cron: Any,
        keep_last: Any,
        excludes: Any,
    ) -> _ValidatedFields:
        if not isinstance(name, str) or not name.strip():
            raise ValidationError("Job name is required")
        if len(name.strip()) > MAX_NAME_CHARS:
            raise ValidationError(f"Job name must be at most {MAX_NAME_CHARS} characters")

        try:
            job_kind = JobKind(kind)
        except ValueError as error:
            allowed = ", ".join(item.value for item in JobKind)
            raise ValidationError(f"Kind must be one of: {allowed}") from error

        if not source or not destination:
            raise ValidationError("Source and destination paths are required")
        allowed_root = self.validator.allowed_root
        if not self.validator.validate_location(source, allow_remote=job_kind.is_remote):
            raise ValidationError(
                f"Source path must be within {allowed_root}"
                + (" or a valid remote:path" if job_kind.is_remote else ""),
            )
        if not self.validator.validate_location(destination, allow_remote=job_kind.is_remote):
            raise ValidationError(
                f"Destination path must be within {allowed_root}"
                + (" or a valid remote:path" if job_kind.is_remote else ""),
            )
        if job_kind.is_remote and not (is_remote_spec(source) or is_remote_spec(destination)):
            raise ValidationError("Remote jobs need a remote:path source or destination")

        if not isinstance(cron, str) or not is_valid_cron(expand_schedule(cron)):
            raise ValidationError(f"Invalid cron expression: {cron!r}")

        if isinstance(keep_last, bool) or not isinstance(keep_last, int) or keep_last < 1:
            raise ValidationError("Retention keepLast must be a positive integer")

        if not isinstance(excludes, list):
            raise ValidationError("Excludes must be a list of patterns")
        for pattern in excludes:
            if not isinstance(pattern, str) or not pattern.strip():
                raise ValidationError("Exclude patterns must be non-empty strings")
            if any(char in pattern for char in ("\x00", "\n", "\r")):
                raise ValidationError(f"Exclude pattern contains control characters: {pattern!r}")
            if len(pattern) > MAX_EXCLUDE_CHARS:
                raise ValidationError(
                    f"Exclude pattern must be at most {MAX_EXCLUDE_CHARS} characters",
                )

        return _ValidatedFields(
            name=name.strip(),
            source=self._normalize(source),
            destination=self._normalize(destination),
            kind=job_kind,
            cron=expand_schedule(cron),
            keep_last=keep_last,
            excludes=list(excludes),
        )

    def _normalize(self, location: str) -> str:
        if is_remote_spec(location):
            return location
        return str(self.validator.resolve(location))


def _parse_jobs(payload: dict[str, Any]) -> list[Job]:
    return [Job.from_dict(item) for item in payload.get(JOBS_KEY) or []]


def _find_optional(jobs: list[Job], job_id: str) -> Job | None:
    for job in jobs:
        if job.id == job_id:
            return job
    return None


def _find(jobs: list[Job], job_id: str) -> Job:
    job = _find_optional(jobs, job_id)
    if job is None:
        raise NotFoundError(job_id)
    return job


def _find_entry(job: Job, entry_id: str) -> HistoryEntry:
    entry = job.find_entry(entry_id)
    if entry is None:
        raise NotFoundError(job.id, f"History entry {entry_id} not found for job {job.id}")
    return entry


def _prune_keeping_running(history: list[HistoryEntry], keep_last: int) -> list[HistoryEntry]:
    """Apply retention to finished entries only.

    A ``running`` marker may belong to an execution that is still alive (a job
    re-run after ``stop`` while the old process winds down), and it is the only
    record a crash recovery pass can find, so it is never pruned.
    """

    kept_ids = {
        item.id
        for item in prune_history(
            [item for item in history if item.status != ExecutionStatus.RUNNING],
            keep_last,
        )
    }
    return [
        item
        for item in history
        if item.status == ExecutionStatus.RUNNING or item.id in kept_ids
    ]


def _refresh_last_result(job: Job) -> None:
    latest = job.latest_terminal()
    if latest is None:
        job.last_run = None
        job.last_result = LastResult.NONE
        return
    job.last_run = latest.finished_at or latest.started_at
    job.last_result = LastResult.SUCCESS if latest.success else LastResult.FAILED
