"""Startup recovery of executions a crashed host left marked ``running``."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from uuid import uuid4

from homenas_jobs.engine.errors import JobEngineError, RecoveryValidationError
from homenas_jobs.engine.models import HistoryEntry, Job, Operation
from homenas_jobs.engine.paths import PathValidator
from homenas_jobs.engine.runner import JobRunner, RunHandle
from homenas_jobs.engine.store import JobStore

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class ResumedExecution:
    job_id: str
    interrupted_id: str
    execution_id: str


@dataclass(slots=True)
class FailedRecovery:
    job_id: str
    entry_id: str
    reason: str


@dataclass(slots=True)
class RecoverySummary:
    """What a recovery pass did, entry by entry."""

    resumed: list[ResumedExecution] = field(default_factory=list)
    failed: list[FailedRecovery] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    handles: list[RunHandle] = field(default_factory=list)

    @property
    def scanned(self) -> int:
        return len(self.resumed) + len(self.failed) + len(self.errors) + len(self.skipped)


class RecoveryManager:
    """Relaunches interrupted backups once, linked through ``resumed_from``/``resumed_as``.

    Each interrupted entry is handled independently: one failure is logged and
    collected in the summary, and the pass moves on to the next entry.
    """

    def __init__(self, *, store: JobStore, runner: JobRunner, validator: PathValidator) -> None:
        self.store = store
        self.runner = runner
        self.validator = validator

    async def recover(self) -> RecoverySummary:
        summary = RecoverySummary()
        resumed_jobs: set[str] = set()

        for job, entry in await self.store.find_running_entries():
            if self.runner.is_supervising(entry.id):
                continue
            try:
                await self._recover_entry(job, entry, resumed_jobs, summary)
            except Exception as error:
                logger.exception("Recovery of job=%s entry=%s failed", job.id, entry.id)
                summary.errors.append(f"{job.id}/{entry.id}: {error}")

        if summary.scanned:
            logger.info(
                "Recovery finished: resumed=%s failed=%s errors=%s skipped=%s",
                len(summary.resumed),
                len(summary.failed),
                len(summary.errors),
                len(summary.skipped),
            )
        return summary

    async def _recover_entry(
        self,
        job: Job,
        entry: HistoryEntry,
        resumed_jobs: set[str],
        summary: RecoverySummary,
    ) -> None:
        if self.runner.table.held_elsewhere(job.id):
            # The owning process finalizes its own entry; older leftovers of
            # this job wait for a pass that finds the job idle.
            summary.skipped.append(f"{job.id}/{entry.id}")
            logger.info("Skipping job=%s entry=%s: running in another process", job.id, entry.id)
            return

        try:
            self._check_resumable(job, entry, resumed_jobs)
        except RecoveryValidationError as error:
            await self.store.mark_failed(job.id, entry.id, str(error))
            summary.failed.append(FailedRecovery(job.id, entry.id, str(error)))
            logger.warning("Not resuming job=%s entry=%s: %s", job.id, entry.id, error)
            return

        execution_id = uuid4().hex
        await self.store.mark_resumed(job.id, entry.id, execution_id)
        resumed_jobs.add(job.id)
        try:
            handle = await self.runner.run(job.id, execution_id=execution_id, resumed_from=entry.id)
        except JobEngineError as error:
            reason = f"Interrupted; relaunch failed: {error}"
            await self.store.mark_failed(job.id, entry.id, reason)
            summary.failed.append(FailedRecovery(job.id, entry.id, reason))
            logger.warning("Could not resume job=%s entry=%s: %s", job.id, entry.id, error)
            return
        summary.resumed.append(ResumedExecution(job.id, entry.id, execution_id))
        summary.handles.append(handle)
        logger.info("Resumed job=%s: %s -> %s", job.id, entry.id, execution_id)

    def _check_resumable(self, job: Job, entry: HistoryEntry, resumed_jobs: set[str]) -> None:
        if entry.operation == Operation.RESTORE:
            raise RecoveryValidationError("Interrupted restore was not resumed")
        if job.id in resumed_jobs or self.runner.is_running(job.id):
            raise RecoveryValidationError("Superseded by a newer execution of this job")
        locations = (
            ("source", job.source, job.kind),
            ("destination", job.destination, job.kind),
            ("recorded source", entry.source, entry.kind),
            ("recorded destination", entry.destination, entry.kind),
        )
        for label, location, kind in locations:
            if not self.validator.validate_location(location, allow_remote=kind.is_remote):
                raise RecoveryValidationError(
                    f"Interrupted; {label} path is no longer valid: {location}",
                )
