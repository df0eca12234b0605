from __future__ import annotations

import json
from dataclasses import replace
from datetime import timedelta
from pathlib import Path

import allure
import pytest

from homenas_jobs.engine.document import JOBS_KEY
from homenas_jobs.engine.errors import ConflictError, NotFoundError, ValidationError
from homenas_jobs.engine.models import (
    ExecutionStatus,
    HistoryEntry,
    JobKind,
    JobPatch,
    JobSpec,
    LastResult,
    utc_now,
)
from homenas_jobs.engine.services import JobEngine, build_engine

pytestmark = [
    allure.epic("Job Engine"),
    allure.feature("Job Store"),
]


def _entry(entry_id: str, *, status: ExecutionStatus, offset: int = 0) -> HistoryEntry:
    started = utc_now() + timedelta(seconds=offset)
    terminal = status in (ExecutionStatus.SUCCESS, ExecutionStatus.FAILED)
    return HistoryEntry(
        id=entry_id,
        status=status,
        started_at=started,
        finished_at=started + timedelta(seconds=1) if terminal else None,
        success=status == ExecutionStatus.SUCCESS,
        exit_code=0 if status == ExecutionStatus.SUCCESS else (1 if terminal else None),
        source="/mnt/data",
        destination="/mnt/backups",
        kind=JobKind.LOCAL_MIRROR,
    )


@pytest.mark.asyncio
async def test_create_job_persists_camel_case_document(
    engine: JobEngine,
    mirror_spec: JobSpec,
    settings,
) -> None:
    job = await engine.store.create_job(replace(mirror_spec, excludes=["*.tmp"], keep_last=3))

    payload = json.loads(settings.data_path.read_text("utf-8"))
    [stored] = payload[JOBS_KEY]
    assert stored["id"] == job.id
    assert stored["retention"] == {"keepLast": 3}
    assert stored["schedule"] == {"enabled": False, "cron": "0 2 * * *"}
    assert stored["excludes"] == ["*.tmp"]
    assert stored["lastResult"] == "none"
    assert stored["history"] == []
    assert job.last_result == LastResult.NONE
    assert await engine.store.get_job(job.id) == job


@pytest.mark.asyncio
async def test_source_outside_root_is_rejected_and_nothing_persisted(
    engine: JobEngine,
    mirror_spec: JobSpec,
    settings,
) -> None:
    with pytest.raises(ValidationError, match="Source path must be within"):
        await engine.store.create_job(replace(mirror_spec, source="/etc"))

    assert not settings.data_path.exists()
    assert await engine.store.list_jobs() == []


@pytest.mark.parametrize(
    ("changes", "message"),
    [
        ({"name": "  "}, "name is required"),
        ({"kind": "ftp-push"}, "Kind must be one of"),
        ({"schedule_cron": "every day"}, "Invalid cron expression"),
        ({"keep_last": 0}, "keepLast must be a positive integer"),
        ({"excludes": ["ok", ""]}, "non-empty strings"),
        ({"excludes": ["bad\npattern"]}, "control characters"),
        ({"destination": "gdrive:backups"}, "Destination path must be within"),
    ],
)
@pytest.mark.asyncio
async def test_create_job_validation_errors(
    engine: JobEngine,
    mirror_spec: JobSpec,
    changes: dict,
    message: str,
) -> None:
    with pytest.raises(ValidationError, match=message):
        await engine.store.create_job(replace(mirror_spec, **changes))


@pytest.mark.asyncio
async def test_remote_job_accepts_remote_destination_and_preset(
    engine: JobEngine,
    allowed_root: Path,
) -> None:
    job = await engine.store.create_job(
        JobSpec(
            name="Offsite",
            source=str(allowed_root / "data"),
            destination="b2:nas-offsite",
            kind="remote-sync",
            schedule_cron="weekly",
            delete_extraneous=True,
        ),
    )

    assert job.kind == JobKind.REMOTE_SYNC
    assert job.destination == "b2:nas-offsite"
    assert job.schedule.cron == "0 3 * * 0"
    assert job.delete_extraneous is True


@pytest.mark.asyncio
async def test_remote_job_needs_a_remote_side(engine: JobEngine, allowed_root: Path) -> None:
    with pytest.raises(ValidationError, match="remote:path"):
        await engine.store.create_job(
            JobSpec(
                name="Offsite",
                source=str(allowed_root / "data"),
                destination=str(allowed_root / "backups"),
                kind="remote-copy",
            ),
        )


@pytest.mark.asyncio
async def test_delete_extraneous_only_applies_to_remote_sync(
    engine: JobEngine,
    mirror_spec: JobSpec,
) -> None:
    job = await engine.store.create_job(replace(mirror_spec, delete_extraneous=True))

    assert job.delete_extraneous is False


@pytest.mark.asyncio
async def test_update_job_merges_patch_and_revalidates(
    engine: JobEngine,
    mirror_spec: JobSpec,
) -> None:
    job = await engine.store.create_job(mirror_spec)

    updated = await engine.store.update_job(
        job.id,
        JobPatch(name="Photos nightly", schedule_enabled=True, schedule_cron="daily"),
    )

    assert updated.name == "Photos nightly"
    assert updated.source == job.source
    assert updated.schedule.enabled is True
    assert updated.schedule.cron == "0 3 * * *"
    assert updated.updated_at is not None

    with pytest.raises(ValidationError):
        await engine.store.update_job(job.id, JobPatch(destination="/tmp/elsewhere"))
    assert (await engine.store.get_job(job.id)).destination == job.destination


@pytest.mark.asyncio
async def test_unknown_job_raises_not_found(engine: JobEngine) -> None:
    with pytest.raises(NotFoundError, match="missing"):
        await engine.store.get_job("missing")
    with pytest.raises(NotFoundError):
        await engine.store.update_job("missing", JobPatch(name="x"))
    with pytest.raises(NotFoundError):
        await engine.store.delete_job("missing")


@pytest.mark.asyncio
async def test_history_is_bounded_newest_first(engine: JobEngine, mirror_spec: JobSpec) -> None:
    job = await engine.store.create_job(replace(mirror_spec, keep_last=3))

    for index in range(5):
        status = ExecutionStatus.SUCCESS if index % 2 == 0 else ExecutionStatus.FAILED
        assert await engine.store.add_history(job.id, _entry(f"run-{index}", status=status))

    history = await engine.store.get_history(job.id)
    assert [entry.id for entry in history] == ["run-4", "run-3", "run-2"]
    stored = await engine.store.get_job(job.id)
    assert stored.last_result == LastResult.SUCCESS
    assert stored.last_run == history[0].finished_at


@pytest.mark.asyncio
async def test_add_history_replaces_running_marker(
    engine: JobEngine,
    mirror_spec: JobSpec,
) -> None:
    job = await engine.store.create_job(mirror_spec)
    await engine.store.add_history(job.id, _entry("old", status=ExecutionStatus.SUCCESS))
    running = _entry("exec-1", status=ExecutionStatus.RUNNING, offset=5)

    await engine.store.start_execution(job.id, running)
    assert [(job_, entry.id) for job_, entry in await engine.store.find_running_entries()] == [
        (await engine.store.get_job(job.id), "exec-1"),
    ]

    failed = replace(
        running,
        status=ExecutionStatus.FAILED,
        finished_at=utc_now(),
        exit_code=23,
        error="partial transfer",
    )
    await engine.store.add_history(job.id, failed)

    history = await engine.store.get_history(job.id)
    assert [entry.id for entry in history] == ["exec-1", "old"]
    assert history[0].status == ExecutionStatus.FAILED
    assert (await engine.store.get_job(job.id)).last_result == LastResult.FAILED
    assert await engine.store.find_running_entries() == []


@pytest.mark.asyncio
async def test_add_history_for_deleted_job_is_dropped(engine: JobEngine) -> None:
    assert not await engine.store.add_history(
        "gone",
        _entry("exec", status=ExecutionStatus.SUCCESS),
    )


@pytest.mark.asyncio
async def test_mark_resumed_and_mark_failed(engine: JobEngine, mirror_spec: JobSpec) -> None:
    job = await engine.store.create_job(mirror_spec)
    await engine.store.start_execution(job.id, _entry("a", status=ExecutionStatus.RUNNING))
    await engine.store.start_execution(job.id, _entry("b", status=ExecutionStatus.RUNNING))

    resumed = await engine.store.mark_resumed(job.id, "a", "a-2")
    failed = await engine.store.mark_failed(job.id, "b", "Interrupted")

    assert resumed.status == ExecutionStatus.RESUMED
    assert resumed.resumed_as == "a-2"
    assert failed.status == ExecutionStatus.FAILED
    assert failed.error == "Interrupted"
    stored = await engine.store.get_job(job.id)
    assert stored.last_result == LastResult.FAILED
    with pytest.raises(NotFoundError, match="History entry"):
        await engine.store.mark_failed(job.id, "nope", "x")


@pytest.mark.asyncio
async def test_update_and_delete_conflict_while_running(
    engine: JobEngine,
    mirror_spec: JobSpec,
    spawner,
) -> None:
    job = await engine.store.create_job(mirror_spec)
    handle = await engine.runner.run(job.id)
    record = engine.runner.table.get(job.id)

    with pytest.raises(ConflictError, match="delete a running job"):
        await engine.store.delete_job(job.id)
    with pytest.raises(ConflictError, match="update a running job"):
        await engine.store.update_job(job.id, JobPatch(name="renamed"))

    assert (await engine.store.get_job(job.id)).name == job.name
    assert engine.runner.table.get(job.id) is record

    spawner.processes[0].finish(0)
    await handle.wait()
    await engine.store.delete_job(job.id)
    assert await engine.store.list_jobs() == []


@pytest.mark.asyncio
async def test_retention_never_prunes_running_markers(
    engine: JobEngine,
    mirror_spec: JobSpec,
) -> None:
    job = await engine.store.create_job(replace(mirror_spec, keep_last=1))
    await engine.store.start_execution(job.id, _entry("live", status=ExecutionStatus.RUNNING))

    for index in range(3):
        await engine.store.add_history(
            job.id,
            _entry(f"done-{index}", status=ExecutionStatus.SUCCESS, offset=index),
        )

    history = await engine.store.get_history(job.id)
    assert [entry.id for entry in history] == ["done-2", "live"]
    assert [entry.id for _job, entry in await engine.store.find_running_entries()] == ["live"]


@pytest.mark.asyncio
async def test_rerun_after_stop_keeps_its_marker_when_old_process_exits(
    engine: JobEngine,
    mirror_spec: JobSpec,
    spawner,
) -> None:
    spawner.ignore_terminate = True
    job = await engine.store.create_job(replace(mirror_spec, keep_last=1))
    first = await engine.runner.run(job.id)
    engine.runner.stop(job.id)
    second = await engine.runner.run(job.id)

    spawner.processes[0].finish(-15)
    await first.wait()

    assert engine.runner.is_running(job.id)
    history = await engine.store.get_history(job.id)
    assert [(entry.id, entry.status) for entry in history] == [
        (first.execution_id, ExecutionStatus.FAILED),
        (second.execution_id, ExecutionStatus.RUNNING),
    ]

    spawner.processes[1].finish(0)
    await second.wait()
    history = await engine.store.get_history(job.id)
    assert [entry.id for entry in history] == [second.execution_id]


@pytest.mark.asyncio
async def test_update_and_delete_conflict_while_running_in_another_engine(
    engine: JobEngine,
    settings,
    mirror_spec: JobSpec,
    spawner,
) -> None:
    other = build_engine(settings, spawner=spawner)
    job = await engine.store.create_job(mirror_spec)
    handle = await other.runner.run(job.id)

    with pytest.raises(ConflictError, match="delete a running job"):
        await engine.store.delete_job(job.id)
    with pytest.raises(ConflictError, match="update a running job"):
        await engine.store.update_job(job.id, JobPatch(name="renamed"))

    spawner.processes[0].finish(0)
    await handle.wait()
    await engine.store.delete_job(job.id)
    assert await engine.store.list_jobs() == []
