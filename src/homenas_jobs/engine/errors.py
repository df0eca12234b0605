"""Caller-visible error taxonomy for the job engine."""

from __future__ import annotations


class JobEngineError(Exception):
    """Base class for errors surfaced synchronously to engine callers."""


class ValidationError(JobEngineError, ValueError):
    """Rejected input: bad path, kind, cron, retention or exclude pattern."""


class NotFoundError(JobEngineError, LookupError):
    """Unknown job id."""

    def __init__(self, job_id: str, message: str | None = None) -> None:
        super().__init__(message or f"Backup job not found: {job_id}")
        self.job_id = job_id


class ConcurrencyConflict(JobEngineError):
    """Operation refused because the job currently has a live process."""

    def __init__(self, job_id: str, message: str) -> None:
        super().__init__(message)
        self.job_id = job_id


ConflictError = ConcurrencyConflict


class ProcessSpawnError(JobEngineError):
    """External tool could not be started.

    Raised by spawners and caught at the spawn boundary in the runner, where it
    becomes a failed history entry.
    """


class SignalDeliveryError(JobEngineError):
    """Termination signal could not be delivered to a tracked process."""


class RecoveryValidationError(JobEngineError):
    """A persisted execution can no longer be trusted after restart."""
