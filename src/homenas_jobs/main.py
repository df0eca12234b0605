"""CLI entrypoint for homenas-jobs."""

from collections.abc import Callable
from pathlib import Path
from typing import TypeVar

import rich_click as click

from homenas_jobs import __version__
from homenas_jobs.config import LoggingSettings, configure_logging
from homenas_jobs.engine.controllers import (
    CrontabCommand,
    JobCreateCommand,
    JobHistoryCommand,
    JobRefCommand,
    JobRestoreCommand,
    JobRunCommand,
    JobsCliController,
    JobsListCommand,
    JobUpdateCommand,
    RecoverCommand,
)
from homenas_jobs.engine.errors import JobEngineError
from homenas_jobs.engine.models import JobKind

click.rich_click.USE_MARKDOWN = True
JOBS_CONTROLLER = JobsCliController()

C = TypeVar("C")
R = TypeVar("R")

_KIND_CHOICE = click.Choice([kind.value for kind in JobKind])
_DATA_PATH_OPTION = click.option(
    "--data-path",
    type=click.Path(path_type=Path),
    default=None,
    help="JSON config document (defaults to HOMENAS_DATA_PATH).",
)


@click.group()
@click.version_option(version=__version__, prog_name="homenas-jobs")
def homenas_jobs() -> None:
    """Backup job engine for a home NAS."""

    try:
        configure_logging(LoggingSettings.from_env())
    except ValueError as error:
        raise click.ClickException(str(error)) from error


@homenas_jobs.group()
def jobs() -> None:
    """Job definition commands."""


@jobs.command("list")
@_DATA_PATH_OPTION
def jobs_list(data_path: Path | None) -> None:
    """List configured backup jobs."""

    _emit_lines(_call(JOBS_CONTROLLER.list_jobs, JobsListCommand(data_path=data_path)))


@jobs.command("show")
@_DATA_PATH_OPTION
@click.argument("job_id")
def jobs_show(data_path: Path | None, job_id: str) -> None:
    """Show one job definition."""

    _emit_lines(_call(JOBS_CONTROLLER.show_job, JobRefCommand(data_path=data_path, job_id=job_id)))


@jobs.command("create")
@_DATA_PATH_OPTION
@click.option("--name", required=True, help="Display name.")
@click.option("--source", required=True, help="Absolute path or remote:path.")
@click.option("--destination", required=True, help="Absolute path or remote:path.")
@click.option("--kind", type=_KIND_CHOICE, default=JobKind.LOCAL_MIRROR.value, show_default=True)
@click.option(
    "--schedule",
    default=None,
    help="Cron expression or preset (hourly, daily, weekly, monthly).",
)
@click.option(
    "--schedule-enabled/--schedule-disabled",
    default=False,
    show_default=True,
    help="Whether the crontab block includes this job.",
)
@click.option(
    "--exclude",
    "excludes",
    multiple=True,
    help="Exclude pattern passed to the transfer tool. Can be repeated.",
)
@click.option("--keep-last", type=click.IntRange(min=1), default=None, help="History entries kept.")
@click.option(
    "--delete-extraneous",
    is_flag=True,
    default=False,
    help="remote-sync only: delete extraneous files at the destination during transfer.",
)
def jobs_create(  # noqa: PLR0913
    data_path: Path | None,
    name: str,
    source: str,
    destination: str,
    kind: str,
    schedule: str | None,
    schedule_enabled: bool,
    excludes: tuple[str, ...],
    keep_last: int | None,
    delete_extraneous: bool,
) -> None:
    """Create a backup job."""

    _emit_lines(
        _call(
            JOBS_CONTROLLER.create_job,
            JobCreateCommand(
                data_path=data_path,
                name=name,
                source=source,
                destination=destination,
                kind=kind,
                schedule=schedule,
                schedule_enabled=schedule_enabled,
                excludes=excludes,
                keep_last=keep_last,
                delete_extraneous=delete_extraneous,
            ),
        ),
    )


@jobs.command("update")
@_DATA_PATH_OPTION
@click.argument("job_id")
@click.option("--name", default=None)
@click.option("--source", default=None)
@click.option("--destination", default=None)
@click.option("--kind", type=_KIND_CHOICE, default=None)
@click.option("--schedule", default=None, help="Cron expression or preset.")
@click.option("--schedule-enabled/--schedule-disabled", default=None)
@click.option(
    "--exclude",
    "excludes",
    multiple=True,
    help="Replaces the stored exclude list. Can be repeated.",
)
@click.option("--clear-excludes", is_flag=True, default=False, help="Remove all excludes.")
@click.option("--keep-last", type=click.IntRange(min=1), default=None)
@click.option("--delete-extraneous/--keep-extraneous", default=None)
def jobs_update(  # noqa: PLR0913
    data_path: Path | None,
    job_id: str,
    name: str | None,
    source: str | None,
    destination: str | None,
    kind: str | None,
    schedule: str | None,
    schedule_enabled: bool | None,
    excludes: tuple[str, ...],
    clear_excludes: bool,
    keep_last: int | None,
    delete_extraneous: bool | None,
) -> None:
    """Update fields of a job that is not running."""

    if clear_excludes and excludes:
        raise click.UsageError("--exclude and --clear-excludes are mutually exclusive.")
    patched_excludes: tuple[str, ...] | None = excludes or None
    if clear_excludes:
        patched_excludes = ()
    _emit_lines(
        _call(
            JOBS_CONTROLLER.update_job,
            JobUpdateCommand(
                data_path=data_path,
                job_id=job_id,
                name=name,
                source=source,
                destination=destination,
                kind=kind,
                schedule=schedule,
                schedule_enabled=schedule_enabled,
                excludes=patched_excludes,
                keep_last=keep_last,
                delete_extraneous=delete_extraneous,
            ),
        ),
    )


@jobs.command("delete")
@_DATA_PATH_OPTION
@click.argument("job_id")
def jobs_delete(data_path: Path | None, job_id: str) -> None:
    """Delete a job that is not running."""

    _emit_lines(
        _call(JOBS_CONTROLLER.delete_job, JobRefCommand(data_path=data_path, job_id=job_id)),
    )


@homenas_jobs.command("run")
@_DATA_PATH_OPTION
@click.argument("job_id")
@click.option(
    "--output/--no-output",
    "show_output",
    default=True,
    show_default=True,
    help="Print the captured output tail when the run finishes.",
)
def run_job(data_path: Path | None, job_id: str, show_output: bool) -> None:
    """Run a job in the foreground; Ctrl+C stops it."""

    result = _call(
        JOBS_CONTROLLER.run_job,
        JobRunCommand(data_path=data_path, job_id=job_id, show_output=show_output),
    )
    _emit_lines(result.lines)
    if not result.success:
        raise click.ClickException("Backup run failed.")


@homenas_jobs.command("restore")
@_DATA_PATH_OPTION
@click.argument("job_id")
@click.argument("archive")
@click.option("--output/--no-output", "show_output", default=True, show_default=True)
def restore(data_path: Path | None, job_id: str, archive: str, show_output: bool) -> None:
    """Extract ARCHIVE of a local-archive job back into its source."""

    result = _call(
        JOBS_CONTROLLER.restore,
        JobRestoreCommand(
            data_path=data_path,
            job_id=job_id,
            archive=archive,
            show_output=show_output,
        ),
    )
    _emit_lines(result.lines)
    if not result.success:
        raise click.ClickException("Restore failed.")


@homenas_jobs.command("status")
@_DATA_PATH_OPTION
@click.argument("job_id")
def status(data_path: Path | None, job_id: str) -> None:
    """Show live or last-known state of a job."""

    _emit_lines(_call(JOBS_CONTROLLER.status, JobRefCommand(data_path=data_path, job_id=job_id)))


@homenas_jobs.command("history")
@_DATA_PATH_OPTION
@click.argument("job_id")
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=1000),
    default=20,
    show_default=True,
    help="How many newest entries to print.",
)
def history(data_path: Path | None, job_id: str, limit: int) -> None:
    """Show execution history, newest first."""

    _emit_lines(
        _call(
            JOBS_CONTROLLER.history,
            JobHistoryCommand(data_path=data_path, job_id=job_id, limit=limit),
        ),
    )


@homenas_jobs.command("recover")
@_DATA_PATH_OPTION
def recover(data_path: Path | None) -> None:
    """Resume executions left `running` by a crash and wait for them."""

    result = _call(JOBS_CONTROLLER.recover, RecoverCommand(data_path=data_path))
    _emit_lines(result.lines)
    if not result.success:
        raise click.ClickException("Recovery finished with errors.")


@homenas_jobs.command("crontab")
@_DATA_PATH_OPTION
@click.option(
    "--executable",
    default="homenas-jobs",
    show_default=True,
    help="Command prefix invoked by cron.",
)
@click.option(
    "--recover-at-boot/--no-recover-at-boot",
    default=True,
    show_default=True,
    help="Add an @reboot line running the recovery pass.",
)
def crontab(data_path: Path | None, executable: str, recover_at_boot: bool) -> None:
    """Print the crontab block for enabled job schedules."""

    _emit_lines(
        _call(
            JOBS_CONTROLLER.crontab,
            CrontabCommand(
                data_path=data_path,
                executable=executable,
                recover_at_boot=recover_at_boot,
            ),
        ),
    )


def _call(handler: Callable[[C], R], command: C) -> R:
    try:
        return handler(command)
    except (JobEngineError, ValueError) as error:
        raise click.ClickException(str(error)) from error


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    homenas_jobs()
