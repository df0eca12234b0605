"""Engine assembly: one store, one runner and one recovery manager per process."""

from __future__ import annotations

from dataclasses import dataclass

from homenas_jobs.config import Settings
from homenas_jobs.engine.document import ConfigDocument
from homenas_jobs.engine.locks import JobLocks, job_locks_dir
from homenas_jobs.engine.paths import PathValidator
from homenas_jobs.engine.recovery import RecoveryManager
from homenas_jobs.engine.runner import JobRunner, RunningJobTable
from homenas_jobs.engine.spawner import AsyncioProcessSpawner, ProcessSpawner
from homenas_jobs.engine.store import JobStore


@dataclass(slots=True)
class JobEngine:
    """Wired engine components sharing a single running-job table."""

    settings: Settings
    validator: PathValidator
    store: JobStore
    runner: JobRunner
    recovery: RecoveryManager


def build_engine(settings: Settings, *, spawner: ProcessSpawner | None = None) -> JobEngine:
    """Create engine components from settings.

    The store consults the runner's table before update/delete, so both must be
    built around the same ``RunningJobTable`` instance. The table's lock files
    sit beside the document, which is what other engine processes check.
    """

    settings.validate()
    validator = PathValidator(settings.allowed_root)
    table = RunningJobTable(JobLocks(job_locks_dir(settings.data_path)))
    store = JobStore(
        ConfigDocument(settings.data_path),
        validator,
        is_running=table.is_claimed,
        default_keep_last=settings.default_keep_last,
    )
    runner = JobRunner(
        store=store,
        table=table,
        spawner=spawner or AsyncioProcessSpawner(),
        tools=settings.tools,
        live_buffer_bytes=settings.runner.live_buffer_bytes,
        history_tail_bytes=settings.runner.history_tail_bytes,
        stop_kill_after_seconds=settings.runner.stop_kill_after_seconds,
        max_runtime_seconds=settings.runner.max_runtime_seconds,
    )
    recovery = RecoveryManager(store=store, runner=runner, validator=validator)
    return JobEngine(
        settings=settings,
        validator=validator,
        store=store,
        runner=runner,
        recovery=recovery,
    )
