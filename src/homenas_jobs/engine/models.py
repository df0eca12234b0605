"""Domain models for backup jobs and their execution history."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

DEFAULT_CRON = "0 2 * * *"


class JobKind(str, Enum):
    """Data-movement operation performed by a job."""

    LOCAL_MIRROR = "local-mirror"
    LOCAL_ARCHIVE = "local-archive"
    REMOTE_COPY = "remote-copy"
    REMOTE_SYNC = "remote-sync"
    REMOTE_MOVE = "remote-move"

    @property
    def is_remote(self) -> bool:
        return self in REMOTE_KINDS


REMOTE_KINDS = frozenset({JobKind.REMOTE_COPY, JobKind.REMOTE_SYNC, JobKind.REMOTE_MOVE})


class LastResult(str, Enum):
    """Outcome of the newest finalized execution."""

    NONE = "none"
    SUCCESS = "success"
    FAILED = "failed"


class ExecutionStatus(str, Enum):
    """Persisted lifecycle of one history entry."""

    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"
    RESUMED = "resumed"


class Operation(str, Enum):
    BACKUP = "backup"
    RESTORE = "restore"


class JobState(str, Enum):
    """Live state reported by status queries."""

    IDLE = "idle"
    RUNNING = "running"
    TERMINAL = "terminal"


class StopResult(str, Enum):
    STOPPED = "stopped"
    NOT_RUNNING = "not_running"


def utc_now() -> datetime:
    """Current UTC timestamp."""

    return datetime.now(tz=UTC)


def from_iso(value: str) -> datetime:
    """Parse ISO datetime and ensure timezone-aware UTC fallback."""

    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=UTC)
    return parsed


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _parse_optional(value: Any) -> datetime | None:
    if not value:
        return None
    return from_iso(str(value))


@dataclass(slots=True)
class Schedule:
    """Cron schedule consumed by the external trigger."""

    enabled: bool = False
    cron: str = DEFAULT_CRON


@dataclass(slots=True)
class Retention:
    keep_last: int = 10


@dataclass(slots=True)
class HistoryEntry:
    """One recorded execution of a job."""

    id: str
    status: ExecutionStatus
    started_at: datetime
    source: str
    destination: str
    kind: JobKind
    operation: Operation = Operation.BACKUP
    finished_at: datetime | None = None
    success: bool = False
    exit_code: int | None = None
    output_tail: str = ""
    error: str | None = None
    archive: str | None = None
    resumed_from: str | None = None
    resumed_as: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in (ExecutionStatus.SUCCESS, ExecutionStatus.FAILED)

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "id": self.id,
            "status": self.status.value,
            "operation": self.operation.value,
            "startedAt": _iso(self.started_at),
            "finishedAt": _iso(self.finished_at),
            "success": self.success,
            "exitCode": self.exit_code,
            "outputTail": self.output_tail,
            "error": self.error,
            "source": self.source,
            "destination": self.destination,
            "kind": self.kind.value,
        }
        if self.archive is not None:
            payload["archive"] = self.archive
        if self.resumed_from is not None:
            payload["resumedFrom"] = self.resumed_from
        if self.resumed_as is not None:
            payload["resumedAs"] = self.resumed_as
        return payload

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> HistoryEntry:
        return cls(
            id=str(payload["id"]),
            status=ExecutionStatus(payload["status"]),
            operation=Operation(payload.get("operation", Operation.BACKUP.value)),
            started_at=from_iso(str(payload["startedAt"])),
            finished_at=_parse_optional(payload.get("finishedAt")),
            success=bool(payload.get("success", False)),
            exit_code=payload.get("exitCode"),
            output_tail=str(payload.get("outputTail") or ""),
            error=payload.get("error"),
            source=str(payload.get("source", "")),
            destination=str(payload.get("destination", "")),
            kind=JobKind(payload["kind"]),
            archive=payload.get("archive"),
            resumed_from=payload.get("resumedFrom"),
            resumed_as=payload.get("resumedAs"),
        )


@dataclass(slots=True)
class Job:
    """Persisted definition of a recurring or on-demand data-movement operation."""

    id: str
    name: str
    source: str
    destination: str
    kind: JobKind
    schedule: Schedule = field(default_factory=Schedule)
    excludes: list[str] = field(default_factory=list)
    retention: Retention = field(default_factory=Retention)
    delete_extraneous: bool = False
    history: list[HistoryEntry] = field(default_factory=list)
    last_run: datetime | None = None
    last_result: LastResult = LastResult.NONE
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime | None = None

    def find_entry(self, entry_id: str) -> HistoryEntry | None:
        for entry in self.history:
            if entry.id == entry_id:
                return entry
        return None

    def latest_terminal(self) -> HistoryEntry | None:
        for entry in self.history:
            if entry.is_terminal:
                return entry
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "source": self.source,
            "destination": self.destination,
            "kind": self.kind.value,
            "schedule": {"enabled": self.schedule.enabled, "cron": self.schedule.cron},
            "excludes": list(self.excludes),
            "retention": {"keepLast": self.retention.keep_last},
            "deleteExtraneous": self.delete_extraneous,
            "history": [entry.to_dict() for entry in self.history],
            "lastRun": _iso(self.last_run),
            "lastResult": self.last_result.value,
            "createdAt": _iso(self.created_at),
            "updatedAt": _iso(self.updated_at),
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> Job:
        schedule = payload.get("schedule") or {}
        retention = payload.get("retention") or {}
        return cls(
            id=str(payload["id"]),
            name=str(payload["name"]),
            source=str(payload["source"]),
            destination=str(payload["destination"]),
            kind=JobKind(payload["kind"]),
            schedule=Schedule(
                enabled=bool(schedule.get("enabled", False)),
                cron=str(schedule.get("cron") or DEFAULT_CRON),
            ),
            excludes=[str(item) for item in payload.get("excludes") or []],
            retention=Retention(keep_last=int(retention.get("keepLast", 10))),
            delete_extraneous=bool(payload.get("deleteExtraneous", False)),
            history=[HistoryEntry.from_dict(item) for item in payload.get("history") or []],
            last_run=_parse_optional(payload.get("lastRun")),
            last_result=LastResult(payload.get("lastResult") or LastResult.NONE.value),
            created_at=_parse_optional(payload.get("createdAt")) or utc_now(),
            updated_at=_parse_optional(payload.get("updatedAt")),
        )


@dataclass(slots=True)
class JobSpec:
    """Input payload for creating a job."""

    name: str
    source: str
    destination: str
    kind: str
    schedule_cron: str | None = None
    schedule_enabled: bool = False
    excludes: list[str] = field(default_factory=list)
    keep_last: int | None = None
    delete_extraneous: bool = False


@dataclass(slots=True)
class JobPatch:
    """Partial update; ``None`` leaves a field unchanged."""

    name: str | None = None
    source: str | None = None
    destination: str | None = None
    kind: str | None = None
    schedule_cron: str | None = None
    schedule_enabled: bool | None = None
    excludes: list[str] | None = None
    keep_last: int | None = None
    delete_extraneous: bool | None = None


@dataclass(slots=True)
class JobStatus:
    """Status view combining the live table and persisted outcome."""

    job_id: str
    name: str
    state: JobState
    execution_id: str | None = None
    pid: int | None = None
    started_at: datetime | None = None
    output: str = ""
    last_run: datetime | None = None
    last_result: LastResult = LastResult.NONE
