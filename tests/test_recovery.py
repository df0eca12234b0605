from __future__ import annotations

import json
from dataclasses import replace
from datetime import timedelta
from pathlib import Path

import allure
import pytest

from homenas_jobs.engine.document import JOBS_KEY
from homenas_jobs.engine.errors import ConcurrencyConflict, NotFoundError
from homenas_jobs.engine.models import (
    ExecutionStatus,
    HistoryEntry,
    Job,
    JobKind,
    JobSpec,
    Operation,
    utc_now,
)
from homenas_jobs.engine.services import JobEngine, build_engine

pytestmark = [
    allure.epic("Job Engine"),
    allure.feature("Crash Recovery"),
]


def _interrupted(job: Job, entry_id: str, *, operation: Operation = Operation.BACKUP) -> HistoryEntry:
    return HistoryEntry(
        id=entry_id,
        status=ExecutionStatus.RUNNING,
        started_at=utc_now() - timedelta(hours=1),
        source=job.source,
        destination=job.destination,
        kind=job.kind,
        operation=operation,
    )


@pytest.mark.asyncio
async def test_interrupted_backup_is_resumed_once(
    engine: JobEngine,
    mirror_spec: JobSpec,
    spawner,
) -> None:
    job = await engine.store.create_job(mirror_spec)
    await engine.store.start_execution(job.id, _interrupted(job, "crashed"))
    spawner.exit_code = 0

    summary = await engine.recovery.recover()
    [handle] = summary.handles
    resumed_entry = await handle.wait()

    assert len(spawner.calls) == 1
    assert [(item.job_id, item.interrupted_id) for item in summary.resumed] == [(job.id, "crashed")]
    assert summary.failed == []
    assert summary.errors == []

    history = await engine.store.get_history(job.id)
    original = next(entry for entry in history if entry.id == "crashed")
    assert original.status == ExecutionStatus.RESUMED
    assert original.resumed_as == handle.execution_id
    assert history[0].id == handle.execution_id
    assert history[0].resumed_from == "crashed"
    assert resumed_entry.status == ExecutionStatus.SUCCESS

    second = await engine.recovery.recover()
    assert second.resumed == []
    assert len(spawner.calls) == 1


@pytest.mark.asyncio
async def test_interrupted_restore_is_marked_failed(
    engine: JobEngine,
    mirror_spec: JobSpec,
    spawner,
) -> None:
    job = await engine.store.create_job(replace(mirror_spec, kind=JobKind.LOCAL_ARCHIVE.value))
    await engine.store.start_execution(
        job.id,
        _interrupted(job, "restore-1", operation=Operation.RESTORE),
    )

    summary = await engine.recovery.recover()

    assert spawner.calls == []
    assert [item.entry_id for item in summary.failed] == ["restore-1"]
    [entry] = await engine.store.get_history(job.id)
    assert entry.status == ExecutionStatus.FAILED
    assert "restore" in entry.error


@pytest.mark.asyncio
async def test_entry_with_invalid_paths_is_failed_without_relaunch(
    engine: JobEngine,
    mirror_spec: JobSpec,
    settings,
    spawner,
) -> None:
    job = await engine.store.create_job(mirror_spec)
    await engine.store.start_execution(job.id, _interrupted(job, "stale"))
    payload = json.loads(settings.data_path.read_text("utf-8"))
    payload[JOBS_KEY][0]["source"] = "/etc"
    settings.data_path.write_text(json.dumps(payload), "utf-8")

    summary = await engine.recovery.recover()

    assert spawner.calls == []
    assert summary.resumed == []
    [failed] = summary.failed
    assert "source path is no longer valid" in failed.reason
    [entry] = await engine.store.get_history(job.id)
    assert entry.status == ExecutionStatus.FAILED


@pytest.mark.asyncio
async def test_only_newest_interrupted_entry_per_job_is_resumed(
    engine: JobEngine,
    mirror_spec: JobSpec,
    spawner,
) -> None:
    job = await engine.store.create_job(mirror_spec)
    await engine.store.start_execution(job.id, _interrupted(job, "older"))
    await engine.store.start_execution(job.id, _interrupted(job, "newer"))
    spawner.exit_code = 0

    summary = await engine.recovery.recover()
    for handle in summary.handles:
        await handle.wait()

    assert [item.interrupted_id for item in summary.resumed] == ["newer"]
    assert [item.entry_id for item in summary.failed] == ["older"]
    assert len(spawner.calls) == 1


@pytest.mark.asyncio
async def test_failure_on_one_entry_does_not_stop_the_pass(
    engine: JobEngine,
    allowed_root: Path,
    mirror_spec: JobSpec,
    spawner,
    monkeypatch,
) -> None:
    broken = await engine.store.create_job(mirror_spec)
    healthy = await engine.store.create_job(
        replace(mirror_spec, name="Music", destination=str(allowed_root / "backups" / "music")),
    )
    await engine.store.start_execution(broken.id, _interrupted(broken, "b-1"))
    await engine.store.start_execution(healthy.id, _interrupted(healthy, "h-1"))
    spawner.exit_code = 0

    original_mark_resumed = engine.store.mark_resumed

    async def _flaky_mark_resumed(job_id: str, entry_id: str, resumed_as: str):
        if job_id == broken.id:
            raise NotFoundError(job_id, "document changed underneath")
        return await original_mark_resumed(job_id, entry_id, resumed_as)

    monkeypatch.setattr(engine.store, "mark_resumed", _flaky_mark_resumed)

    summary = await engine.recovery.recover()
    for handle in summary.handles:
        await handle.wait()

    assert [item.job_id for item in summary.resumed] == [healthy.id]
    assert summary.errors == [f"{broken.id}/b-1: document changed underneath"]


@pytest.mark.asyncio
async def test_entry_owned_by_another_engine_is_left_alone(
    engine: JobEngine,
    settings,
    mirror_spec: JobSpec,
    spawner,
) -> None:
    owner = build_engine(settings, spawner=spawner)
    job = await engine.store.create_job(mirror_spec)
    handle = await owner.runner.run(job.id)

    summary = await engine.recovery.recover()

    assert summary.resumed == []
    assert summary.failed == []
    assert summary.skipped == [f"{job.id}/{handle.execution_id}"]
    assert len(spawner.calls) == 1
    [entry] = await engine.store.get_history(job.id)
    assert entry.status == ExecutionStatus.RUNNING

    spawner.processes[0].finish(0)
    await handle.wait()
    [entry] = await engine.store.get_history(job.id)
    assert entry.status == ExecutionStatus.SUCCESS
    assert entry.resumed_as is None


@pytest.mark.asyncio
async def test_stopped_execution_still_winding_down_is_not_resumed(
    engine: JobEngine,
    mirror_spec: JobSpec,
    spawner,
) -> None:
    spawner.ignore_terminate = True
    job = await engine.store.create_job(mirror_spec)
    handle = await engine.runner.run(job.id)
    engine.runner.stop(job.id)

    summary = await engine.recovery.recover()

    assert summary.scanned == 0
    assert len(spawner.calls) == 1

    spawner.processes[0].finish(-15)
    entry = await handle.wait()
    assert entry.error == "Stopped by request"


@pytest.mark.asyncio
async def test_failed_relaunch_rolls_back_resumed_marker(
    engine: JobEngine,
    mirror_spec: JobSpec,
    spawner,
    monkeypatch,
) -> None:
    job = await engine.store.create_job(mirror_spec)
    await engine.store.start_execution(job.id, _interrupted(job, "crashed"))

    async def _claimed_meanwhile(job_id: str, **_kwargs):
        raise ConcurrencyConflict(job_id, "Job is already running in another process")

    monkeypatch.setattr(engine.runner, "run", _claimed_meanwhile)

    summary = await engine.recovery.recover()

    assert summary.resumed == []
    assert summary.errors == []
    [failed] = summary.failed
    assert "relaunch failed" in failed.reason
    [entry] = await engine.store.get_history(job.id)
    assert entry.status == ExecutionStatus.FAILED
    assert entry.resumed_as is None
    assert spawner.calls == []
