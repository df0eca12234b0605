"""Controllers for job engine CLI commands."""

from __future__ import annotations

import asyncio
import logging
import shlex
import signal
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

from homenas_jobs.config import Settings
from homenas_jobs.engine.models import HistoryEntry, Job, JobPatch, JobSpec, JobState
from homenas_jobs.engine.runner import RunHandle
from homenas_jobs.engine.schedule import render_crontab
from homenas_jobs.engine.services import JobEngine, build_engine

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class JobsListCommand:
    """CLI input for job listing."""

    data_path: Path | None


@dataclass(slots=True)
class JobRefCommand:
    """CLI input for commands addressing one job (show, delete, status)."""

    data_path: Path | None
    job_id: str


@dataclass(slots=True)
class JobCreateCommand:
    """CLI input for job creation."""

    data_path: Path | None
    name: str
    source: str
    destination: str
    kind: str
    schedule: str | None
    schedule_enabled: bool
    excludes: tuple[str, ...]
    keep_last: int | None
    delete_extraneous: bool


@dataclass(slots=True)
class JobUpdateCommand:
    """CLI input for partial job update; ``None`` keeps the stored value."""

    data_path: Path | None
    job_id: str
    name: str | None = None
    source: str | None = None
    destination: str | None = None
    kind: str | None = None
    schedule: str | None = None
    schedule_enabled: bool | None = None
    excludes: tuple[str, ...] | None = None
    keep_last: int | None = None
    delete_extraneous: bool | None = None


@dataclass(slots=True)
class JobRunCommand:
    """CLI input for a foreground run."""

    data_path: Path | None
    job_id: str
    show_output: bool = True


@dataclass(slots=True)
class JobRestoreCommand:
    """CLI input for archive restore."""

    data_path: Path | None
    job_id: str
    archive: str
    show_output: bool = True


@dataclass(slots=True)
class JobHistoryCommand:
    """CLI input for history listing."""

    data_path: Path | None
    job_id: str
    limit: int


@dataclass(slots=True)
class RecoverCommand:
    """CLI input for the startup recovery pass."""

    data_path: Path | None


@dataclass(slots=True)
class CrontabCommand:
    """CLI input for crontab block rendering."""

    data_path: Path | None
    executable: str
    recover_at_boot: bool


@dataclass(slots=True)
class JobRunResult:
    """Execution report to render in CLI."""

    lines: list[str]
    success: bool


class JobsCliController:
    """Coordinates job definition, execution and inspection CLI operations."""

    def list_jobs(self, command: JobsListCommand) -> list[str]:
        engine = _engine(command.data_path)
        jobs = asyncio.run(engine.store.list_jobs())
        lines = [f"Jobs: {len(jobs)}"]
        lines.extend(f"  {_job_summary(job)}" for job in jobs)
        return lines

    def show_job(self, command: JobRefCommand) -> list[str]:
        engine = _engine(command.data_path)
        job = asyncio.run(engine.store.get_job(command.job_id))
        return _job_details(job)

    def create_job(self, command: JobCreateCommand) -> list[str]:
        engine = _engine(command.data_path)
        job = asyncio.run(
            engine.store.create_job(
                JobSpec(
                    name=command.name,
                    source=command.source,
                    destination=command.destination,
                    kind=command.kind,
                    schedule_cron=command.schedule,
                    schedule_enabled=command.schedule_enabled,
                    excludes=list(command.excludes),
                    keep_last=command.keep_last,
                    delete_extraneous=command.delete_extraneous,
                ),
            ),
        )
        return [f"Job created: id={job.id} name={job.name} kind={job.kind.value}"]

    def update_job(self, command: JobUpdateCommand) -> list[str]:
        engine = _engine(command.data_path)
        job = asyncio.run(
            engine.store.update_job(
                command.job_id,
                JobPatch(
                    name=command.name,
                    source=command.source,
                    destination=command.destination,
                    kind=command.kind,
                    schedule_cron=command.schedule,
                    schedule_enabled=command.schedule_enabled,
                    excludes=list(command.excludes) if command.excludes is not None else None,
                    keep_last=command.keep_last,
                    delete_extraneous=command.delete_extraneous,
                ),
            ),
        )
        return [f"Job updated: id={job.id}", *_job_details(job)[1:]]

    def delete_job(self, command: JobRefCommand) -> list[str]:
        engine = _engine(command.data_path)
        asyncio.run(engine.store.delete_job(command.job_id))
        return [f"Job deleted: id={command.job_id}"]

    def run_job(self, command: JobRunCommand) -> JobRunResult:
        engine = _engine(command.data_path)
        entry = asyncio.run(
            _run_in_foreground(engine, lambda: engine.runner.run(command.job_id)),
        )
        return _run_result(entry, show_output=command.show_output)

    def restore(self, command: JobRestoreCommand) -> JobRunResult:
        engine = _engine(command.data_path)
        entry = asyncio.run(
            _run_in_foreground(
                engine,
                lambda: engine.runner.restore(command.job_id, command.archive),
            ),
        )
        return _run_result(entry, show_output=command.show_output)

    def status(self, command: JobRefCommand) -> list[str]:
        engine = _engine(command.data_path)
        status = asyncio.run(engine.runner.get_status(command.job_id))
        lines = [
            f"Job: {status.job_id} ({status.name})",
            f"State: {status.state.value}",
            f"Last result: {status.last_result.value}",
            f"Last run: {_fmt(status.last_run)}",
        ]
        if status.state == JobState.RUNNING:
            lines.append(f"Execution: {status.execution_id} pid={status.pid}")
            lines.append(f"Started: {_fmt(status.started_at)}")
            lines.extend(status.output.splitlines())
        return lines

    def history(self, command: JobHistoryCommand) -> list[str]:
        engine = _engine(command.data_path)
        entries = asyncio.run(engine.runner.get_history(command.job_id))
        shown = entries[: command.limit]
        lines = [f"History: {len(shown)} of {len(entries)}"]
        lines.extend(f"  {_entry_summary(entry)}" for entry in shown)
        return lines

    def recover(self, command: RecoverCommand) -> JobRunResult:
        engine = _engine(command.data_path)

        async def _recover() -> tuple[list[str], bool]:
            summary = await engine.recovery.recover()
            lines = [
                "Recovery summary: "
                f"resumed={len(summary.resumed)} failed={len(summary.failed)} "
                f"errors={len(summary.errors)} skipped={len(summary.skipped)}",
            ]
            lines.extend(
                f"  not resumed {item.job_id}/{item.entry_id}: {item.reason}"
                for item in summary.failed
            )
            lines.extend(f"  error {message}" for message in summary.errors)
            lines.extend(f"  skipped {item}: running in another process" for item in summary.skipped)
            success = not summary.errors
            for handle in summary.handles:
                entry = await handle.wait()
                success = success and entry.success
                lines.append(f"  resumed {handle.job_id}: {_entry_summary(entry)}")
            await engine.runner.drain()
            return lines, success

        lines, success = asyncio.run(_recover())
        return JobRunResult(lines=lines, success=success)

    def crontab(self, command: CrontabCommand) -> list[str]:
        engine = _engine(command.data_path)
        jobs = asyncio.run(engine.store.list_jobs())
        lines: list[str] = []
        if command.data_path is not None:
            lines.append(f"HOMENAS_DATA_PATH={shlex.quote(str(command.data_path))}")
        lines.extend(
            render_crontab(
                jobs,
                shlex.split(command.executable),
                recover_at_boot=command.recover_at_boot,
            ),
        )
        return lines


def _engine(data_path: Path | None) -> JobEngine:
    return build_engine(Settings.from_env(data_path=data_path))


async def _run_in_foreground(
    engine: JobEngine,
    start: Callable[[], Awaitable[RunHandle]],
) -> HistoryEntry:
    """Start an execution and wait for it; SIGINT/SIGTERM stop it instead of orphaning it."""

    handle = await start()
    loop = asyncio.get_running_loop()
    installed: list[signal.Signals] = []
    for signum in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(signum, engine.runner.stop, handle.job_id)
        except (NotImplementedError, RuntimeError, ValueError):
            logger.debug("Signal handler for %s not installed", signum.name)
            continue
        installed.append(signum)
    try:
        return await handle.wait()
    finally:
        for signum in installed:
            loop.remove_signal_handler(signum)
        await engine.runner.drain()


def _run_result(entry: HistoryEntry, *, show_output: bool) -> JobRunResult:
    lines = [f"Execution finished: {_entry_summary(entry)}"]
    if show_output and entry.output_tail:
        lines.append("Output (tail):")
        lines.extend(entry.output_tail.splitlines())
    return JobRunResult(lines=lines, success=entry.success)


def _fmt(value: datetime | None) -> str:
    return value.isoformat() if value is not None else "-"


def _job_summary(job: Job) -> str:
    schedule = job.schedule.cron if job.schedule.enabled else "manual"
    return (
        f"{job.id} name={job.name} kind={job.kind.value} schedule={schedule} "
        f"last_result={job.last_result.value} last_run={_fmt(job.last_run)}"
    )


def _job_details(job: Job) -> list[str]:
    return [
        f"Job: {job.id}",
        f"Name: {job.name}",
        f"Kind: {job.kind.value}",
        f"Source: {job.source}",
        f"Destination: {job.destination}",
        f"Schedule: {job.schedule.cron} ({'enabled' if job.schedule.enabled else 'disabled'})",
        f"Excludes: {', '.join(job.excludes) or '-'}",
        f"Keep last: {job.retention.keep_last}",
        f"Delete extraneous: {'yes' if job.delete_extraneous else 'no'}",
        f"Last result: {job.last_result.value}",
        f"Last run: {_fmt(job.last_run)}",
        f"History entries: {len(job.history)}",
    ]


def _entry_summary(entry: HistoryEntry) -> str:
    parts = [
        entry.id,
        f"operation={entry.operation.value}",
        f"status={entry.status.value}",
        f"started={_fmt(entry.started_at)}",
        f"finished={_fmt(entry.finished_at)}",
        f"exit_code={entry.exit_code if entry.exit_code is not None else '-'}",
    ]
    if entry.archive:
        parts.append(f"archive={entry.archive}")
    if entry.resumed_from:
        parts.append(f"resumed_from={entry.resumed_from}")
    if entry.resumed_as:
        parts.append(f"resumed_as={entry.resumed_as}")
    if entry.error:
        parts.append(f"error={entry.error}")
    return " ".join(parts)
