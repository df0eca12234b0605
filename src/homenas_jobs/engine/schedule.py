"""Cron expression checks and crontab rendering for the external trigger."""

from __future__ import annotations

import re
import shlex
from collections.abc import Iterable, Sequence

from homenas_jobs.engine.models import Job

SCHEDULE_PRESETS: dict[str, str] = {
    "hourly": "0 * * * *",
    "daily": "0 3 * * *",
    "weekly": "0 3 * * 0",
    "monthly": "0 3 1 * *",
}

_FIELD = r"(\*|[0-9,\-/]+|\*/[0-9]+)"
_CRON = re.compile(rf"^{_FIELD}\s+{_FIELD}\s+{_FIELD}\s+{_FIELD}\s+{_FIELD}$")
_FIELD_RANGES: tuple[tuple[int, int], ...] = ((0, 59), (0, 23), (1, 31), (1, 12), (0, 7))

CRONTAB_MARKER = "# homenas-jobs:"


def expand_schedule(value: str) -> str:
    """Map a preset name to its cron expression; other values pass through trimmed."""

    stripped = value.strip()
    return SCHEDULE_PRESETS.get(stripped.lower(), stripped)


def is_valid_cron(expression: str) -> bool:
    """Five numeric cron fields, each within its calendar range."""

    if not isinstance(expression, str):
        return False
    if _CRON.match(expression.strip()) is None:
        return False
    fields = expression.split()
    return all(
        _field_in_range(token, low, high)
        for token, (low, high) in zip(fields, _FIELD_RANGES, strict=True)
    )


def _field_in_range(token: str, low: int, high: int) -> bool:
    for part in token.split(","):
        base, _, step = part.partition("/")
        if step and (not step.isdigit() or int(step) == 0):
            return False
        if base == "*":
            continue
        bounds = base.split("-")
        if len(bounds) > 2 or not all(bound.isdigit() for bound in bounds):  # noqa: PLR2004
            return False
        numbers = [int(bound) for bound in bounds]
        if any(number < low or number > high for number in numbers):
            return False
        if len(numbers) == 2 and numbers[0] > numbers[1]:  # noqa: PLR2004
            return False
    return True


def render_crontab(
    jobs: Iterable[Job],
    command_prefix: Sequence[str],
    *,
    recover_at_boot: bool = False,
) -> list[str]:
    """Crontab lines that trigger ``<command_prefix> run <job_id>`` per enabled schedule.

    With ``recover_at_boot`` an ``@reboot`` line runs the recovery pass first.
    """

    lines: list[str] = []
    if recover_at_boot:
        lines.append(f"{CRONTAB_MARKER} recovery")
        lines.append(f"@reboot {shlex.join([*command_prefix, 'recover'])}")
    for job in jobs:
        if not job.schedule.enabled or not is_valid_cron(job.schedule.cron):
            continue
        name = re.sub(r"[^A-Za-z0-9 _-]", "", job.name)
        lines.append(f"{CRONTAB_MARKER} {name} (ID: {job.id})")
        lines.append(f"{job.schedule.cron} {shlex.join([*command_prefix, 'run', job.id])}")
    return lines
