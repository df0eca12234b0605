"""Job runner: single-instance process supervision and history finalization."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass, field, replace
from datetime import datetime
from pathlib import Path
from uuid import uuid4

from homenas_jobs.config import ToolSettings
from homenas_jobs.engine.commands import Invocation, build_command, build_restore_command
from homenas_jobs.engine.errors import (
    ConcurrencyConflict,
    NotFoundError,
    ProcessSpawnError,
    SignalDeliveryError,
    ValidationError,
)
from homenas_jobs.engine.locks import JobLocks
from homenas_jobs.engine.models import (
    ExecutionStatus,
    HistoryEntry,
    Job,
    JobKind,
    JobState,
    JobStatus,
    LastResult,
    Operation,
    StopResult,
    utc_now,
)
from homenas_jobs.engine.retention import prune_archives
from homenas_jobs.engine.spawner import (
    AsyncioProcessSpawner,
    OutputStream,
    ProcessHandle,
    ProcessSpawner,
)
from homenas_jobs.engine.store import JobStore

logger = logging.getLogger(__name__)

READ_CHUNK_BYTES = 4_096


class RollingBuffer:
    """Byte buffer that keeps only the newest ``capacity`` bytes."""

    def __init__(self, capacity: int) -> None:
        if capacity <= 0:
            raise ValueError("capacity must be > 0")
        self.capacity = capacity
        self._data = bytearray()

    def append(self, chunk: bytes) -> None:
        if len(chunk) >= self.capacity:
            self._data[:] = chunk[-self.capacity :]
            return
        self._data.extend(chunk)
        overflow = len(self._data) - self.capacity
        if overflow > 0:
            del self._data[:overflow]

    def text(self) -> str:
        return self._data.decode("utf-8", errors="replace")

    def __len__(self) -> int:
        return len(self._data)


@dataclass(slots=True)
class RunningJobRecord:
    """In-memory marker that a job currently owns a live process."""

    job_id: str
    execution_id: str
    started_at: datetime
    live: RollingBuffer
    tail: RollingBuffer
    process: ProcessHandle | None = None
    stop_requested: bool = False
    timed_out: bool = False

    @property
    def pid(self) -> int | None:
        return self.process.pid if self.process is not None else None


class RunningJobTable:
    """Job id -> live record. Methods never await, so each call is atomic on the loop.

    With ``locks`` the table also takes the job's host-wide lock on claim, so a
    job already running in another engine process is refused as well.
    """

    def __init__(self, locks: JobLocks | None = None) -> None:
        self.locks = locks
        self._records: dict[str, RunningJobRecord] = {}

    def claim(self, record: RunningJobRecord) -> None:
        """Check-and-insert in one uninterrupted step."""

        if record.job_id in self._records:
            raise ConcurrencyConflict(record.job_id, "Job is already running")
        if self.locks is not None and not self.locks.acquire(record.job_id):
            raise ConcurrencyConflict(record.job_id, "Job is already running in another process")
        self._records[record.job_id] = record

    def release(self, job_id: str, record: RunningJobRecord) -> bool:
        """Remove ``record`` if it still owns the slot; a newer run's record is left alone."""

        if self._records.get(job_id) is not record:
            return False
        del self._records[job_id]
        if self.locks is not None:
            self.locks.release(job_id)
        return True

    def held_elsewhere(self, job_id: str) -> bool:
        if self.locks is None or job_id in self._records:
            return False
        return self.locks.held_elsewhere(job_id)

    def is_claimed(self, job_id: str) -> bool:
        """Running here or in another engine process."""

        return job_id in self._records or self.held_elsewhere(job_id)

    def get(self, job_id: str) -> RunningJobRecord | None:
        return self._records.get(job_id)

    def job_ids(self) -> list[str]:
        return list(self._records)

    def __contains__(self, job_id: object) -> bool:
        return job_id in self._records

    def __len__(self) -> int:
        return len(self._records)


@dataclass(slots=True)
class RunHandle:
    """Handle to one execution; ``wait()`` resolves to its final history entry."""

    job_id: str
    execution_id: str
    started_at: datetime
    pid: int | None
    _future: asyncio.Future[HistoryEntry] = field(repr=False)

    async def wait(self) -> HistoryEntry:
        return await asyncio.shield(self._future)

    def done(self) -> bool:
        return self._future.done()


class JobRunner:
    """Launches, tracks and finalizes job executions on the running event loop."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        store: JobStore,
        table: RunningJobTable | None = None,
        spawner: ProcessSpawner | None = None,
        tools: ToolSettings | None = None,
        command_builder: Callable[[Job, ToolSettings, datetime], Invocation] | None = None,
        live_buffer_bytes: int = 10_240,
        history_tail_bytes: int = 5_120,
        stop_kill_after_seconds: float | None = None,
        max_runtime_seconds: float | None = None,
    ) -> None:
        self.store = store
        self.table = table if table is not None else RunningJobTable()
        self.spawner = spawner or AsyncioProcessSpawner()
        self.tools = tools or ToolSettings()
        self.command_builder = command_builder or _default_command_builder
        self.live_buffer_bytes = live_buffer_bytes
        self.history_tail_bytes = history_tail_bytes
        self.stop_kill_after_seconds = stop_kill_after_seconds
        self.max_runtime_seconds = max_runtime_seconds
        self._supervisors: set[asyncio.Task[HistoryEntry]] = set()
        self._background: set[asyncio.Task[None]] = set()
        self._executions: set[str] = set()

    # -- queries --------------------------------------------------------------

    def is_running(self, job_id: str) -> bool:
        return job_id in self.table

    def running_job_ids(self) -> list[str]:
        return self.table.job_ids()

    def is_supervising(self, execution_id: str) -> bool:
        """True until the execution has been finalized, even after ``stop`` freed its slot."""

        return execution_id in self._executions

    async def get_status(self, job_id: str) -> JobStatus:
        job = await self.store.get_job(job_id)
        record = self.table.get(job_id)
        if record is not None:
            return JobStatus(
                job_id=job.id,
                name=job.name,
                state=JobState.RUNNING,
                execution_id=record.execution_id,
                pid=record.pid,
                started_at=record.started_at,
                output=record.live.text(),
                last_run=job.last_run,
                last_result=job.last_result,
            )
        state = JobState.IDLE if job.last_result == LastResult.NONE else JobState.TERMINAL
        return JobStatus(
            job_id=job.id,
            name=job.name,
            state=state,
            last_run=job.last_run,
            last_result=job.last_result,
        )

    async def get_history(self, job_id: str) -> list[HistoryEntry]:
        return await self.store.get_history(job_id)

    # -- commands -------------------------------------------------------------

    async def run(
        self,
        job_id: str,
        *,
        execution_id: str | None = None,
        resumed_from: str | None = None,
    ) -> RunHandle:
        """Start the job's backup process.

        Raises NotFoundError for unknown jobs and ConcurrencyConflict when the job
        already has a live process. Anything that goes wrong after that point is
        recorded in history rather than raised.
        """

        job = await self.store.get_job(job_id)
        return await self._launch(
            job,
            lambda: self.command_builder(job, self.tools, utc_now()),
            operation=Operation.BACKUP,
            execution_id=execution_id,
            resumed_from=resumed_from,
        )

    async def restore(self, job_id: str, archive: str) -> RunHandle:
        """Extract one archive of a local-archive job back into its source."""

        job = await self.store.get_job(job_id)
        if job.kind != JobKind.LOCAL_ARCHIVE:
            raise ValidationError("Restore is only supported for local-archive jobs")
        if not archive or Path(archive).name != archive or archive in {".", ".."}:
            raise ValidationError("Invalid archive filename")
        archive_path = Path(job.destination) / archive
        validator = self.store.validator
        if not validator.validate(str(archive_path)) or not validator.validate(job.source):
            raise ValidationError(f"Restore paths must be within {validator.allowed_root}")
        if not await asyncio.to_thread(archive_path.is_file):
            raise NotFoundError(job_id, f"Archive file not found: {archive}")

        return await self._launch(
            job,
            lambda: build_restore_command(job, archive_path, self.tools),
            operation=Operation.RESTORE,
        )

    def stop(self, job_id: str) -> StopResult:
        """Signal the job's process and clear its record without waiting for exit."""

        record = self.table.get(job_id)
        if record is None:
            return StopResult.NOT_RUNNING

        record.stop_requested = True
        if record.process is not None:
            self._terminate(record)
            if self.stop_kill_after_seconds is not None:
                self._track_background(self._kill_after(record, self.stop_kill_after_seconds))
        self.table.release(job_id, record)
        logger.info("Stop requested: job=%s execution=%s", job_id, record.execution_id)
        return StopResult.STOPPED

    async def drain(self) -> None:
        """Wait until every supervised execution has been finalized."""

        while self._supervisors:
            await asyncio.gather(*list(self._supervisors), return_exceptions=True)

    # -- launch ---------------------------------------------------------------

    async def _launch(
        self,
        job: Job,
        build: Callable[[], Invocation],
        *,
        operation: Operation,
        execution_id: str | None = None,
        resumed_from: str | None = None,
    ) -> RunHandle:
        record = RunningJobRecord(
            job_id=job.id,
            execution_id=execution_id or uuid4().hex,
            started_at=utc_now(),
            live=RollingBuffer(self.live_buffer_bytes),
            tail=RollingBuffer(self.history_tail_bytes),
        )
        self.table.claim(record)
        self._executions.add(record.execution_id)

        entry = HistoryEntry(
            id=record.execution_id,
            status=ExecutionStatus.RUNNING,
            started_at=record.started_at,
            source=job.source,
            destination=job.destination,
            kind=job.kind,
            operation=operation,
            resumed_from=resumed_from,
        )
        spawned = False
        spawn_error: Exception | None = None
        try:
            invocation = build()
            entry.archive = invocation.archive
            if invocation.ensure_dir is not None:
                await asyncio.to_thread(invocation.ensure_dir.mkdir, parents=True, exist_ok=True)
            record.process = await self.spawner.spawn(invocation.argv)
            spawned = True
        except (ProcessSpawnError, OSError) as error:
            spawn_error = error
        finally:
            if not spawned:
                self.table.release(job.id, record)

        if spawn_error is not None:
            logger.error(
                "Failed to start job=%s execution=%s: %s",
                job.id,
                record.execution_id,
                spawn_error,
            )
            failed = _finalize_entry(entry, exit_code=None, error=str(spawn_error), output="")
            await self._record_history(job.id, failed)
            self._executions.discard(record.execution_id)
            future: asyncio.Future[HistoryEntry] = asyncio.get_running_loop().create_future()
            future.set_result(failed)
            return RunHandle(job.id, record.execution_id, record.started_at, None, future)

        process = record.process
        if record.stop_requested:
            self._terminate(record)
        logger.info(
            "Started job=%s execution=%s pid=%s operation=%s%s",
            job.id,
            record.execution_id,
            process.pid,
            operation.value,
            f" resumed_from={resumed_from}" if resumed_from else "",
        )
        try:
            await self.store.start_execution(job.id, entry)
        except Exception:
            logger.exception("Could not persist running marker for execution %s", entry.id)

        task = asyncio.create_task(
            self._supervise(job.id, record, entry),
            name=f"job-{job.id}-{record.execution_id}",
        )
        self._supervisors.add(task)
        task.add_done_callback(self._supervisors.discard)
        task.add_done_callback(lambda _task: self._executions.discard(record.execution_id))
        return RunHandle(job.id, record.execution_id, record.started_at, process.pid, task)

    # -- supervision ----------------------------------------------------------

    async def _supervise(
        self,
        job_id: str,
        record: RunningJobRecord,
        entry: HistoryEntry,
    ) -> HistoryEntry:
        process = record.process
        exit_code: int | None = None
        error: str | None = None
        pumps = [
            asyncio.create_task(self._pump(stream, record))
            for stream in (process.stdout, process.stderr)
            if stream is not None
        ]
        try:
            exit_code = await self._wait_for_exit(record)
            await asyncio.gather(*pumps)
        except Exception as exc:
            logger.exception("Process error for job=%s execution=%s", job_id, entry.id)
            error = f"Process error: {exc}"
            exit_code = process.returncode
        finally:
            for pump in pumps:
                pump.cancel()
            self.table.release(job_id, record)

        if error is None and exit_code != 0:
            if record.timed_out:
                error = f"Exceeded max runtime of {self.max_runtime_seconds:g}s"
            elif record.stop_requested:
                error = "Stopped by request"

        final = _finalize_entry(entry, exit_code=exit_code, error=error, output=record.tail.text())
        logger.info(
            "Finished job=%s execution=%s status=%s exit_code=%s",
            job_id,
            entry.id,
            final.status.value,
            exit_code,
        )
        recorded = await self._record_history(job_id, final)
        if recorded and final.success and entry.operation == Operation.BACKUP:
            await self._rotate_archives(job_id, entry)
        return final

    async def _pump(self, stream: OutputStream, record: RunningJobRecord) -> None:
        while chunk := await stream.read(READ_CHUNK_BYTES):
            record.live.append(chunk)
            record.tail.append(chunk)

    async def _wait_for_exit(self, record: RunningJobRecord) -> int:
        process = record.process
        if self.max_runtime_seconds is None:
            return await process.wait()
        try:
            return await asyncio.wait_for(process.wait(), timeout=self.max_runtime_seconds)
        except TimeoutError:
            logger.warning(
                "Job %s exceeded max runtime of %ss, terminating pid=%s",
                record.job_id,
                self.max_runtime_seconds,
                process.pid,
            )
            record.timed_out = True
            self._terminate(record)
            if self.stop_kill_after_seconds is not None:
                self._track_background(self._kill_after(record, self.stop_kill_after_seconds))
            return await process.wait()

    def _terminate(self, record: RunningJobRecord) -> None:
        try:
            record.process.terminate()
        except SignalDeliveryError as error:
            logger.warning("Signal delivery failed for job=%s: %s", record.job_id, error)

    async def _kill_after(self, record: RunningJobRecord, delay: float) -> None:
        await asyncio.sleep(delay)
        if record.process is None or record.process.returncode is not None:
            return
        logger.warning("Job %s ignored SIGTERM, sending SIGKILL to pid=%s", record.job_id, record.pid)
        try:
            record.process.kill()
        except SignalDeliveryError as error:
            logger.warning("Signal delivery failed for job=%s: %s", record.job_id, error)

    def _track_background(self, coroutine) -> None:
        task = asyncio.create_task(coroutine)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    # -- finalize -------------------------------------------------------------

    async def _record_history(self, job_id: str, entry: HistoryEntry) -> bool:
        try:
            return await self.store.add_history(job_id, entry)
        except Exception:
            logger.exception("Failed to record history for job=%s execution=%s", job_id, entry.id)
            return False

    async def _rotate_archives(self, job_id: str, entry: HistoryEntry) -> None:
        if entry.kind != JobKind.LOCAL_ARCHIVE:
            return
        try:
            job = await self.store.get_job(job_id)
            await asyncio.to_thread(
                prune_archives,
                Path(job.destination),
                job.retention.keep_last,
            )
        except Exception:
            logger.exception("Archive rotation failed for job=%s", job_id)


def _default_command_builder(job: Job, tools: ToolSettings, now: datetime) -> Invocation:
    return build_command(job, tools, now=now)


def _finalize_entry(
    entry: HistoryEntry,
    *,
    exit_code: int | None,
    error: str | None,
    output: str,
) -> HistoryEntry:
    success = exit_code == 0 and error is None
    if not success and error is None:
        if exit_code is None:
            error = "Process ended without an exit code"
        elif exit_code < 0:
            error = f"Terminated by signal {-exit_code}"
    return replace(
        entry,
        status=ExecutionStatus.SUCCESS if success else ExecutionStatus.FAILED,
        finished_at=utc_now(),
        success=success,
        exit_code=exit_code,
        output_tail=output,
        error=error,
    )
