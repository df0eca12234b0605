"""Runtime configuration for the job engine."""

from __future__ import annotations

import logging
import os
import sys
from dataclasses import dataclass, field
from logging.handlers import RotatingFileHandler
from pathlib import Path

_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


@dataclass(slots=True)
class ToolSettings:
    """External transfer tool executables."""

    rsync_bin: str = "rsync"
    tar_bin: str = "tar"
    rclone_bin: str = "rclone"


@dataclass(slots=True)
class RunnerSettings:
    """Process supervision settings."""

    live_buffer_bytes: int = 10_240
    history_tail_bytes: int = 5_120
    stop_kill_after_seconds: float | None = None
    max_runtime_seconds: float | None = None


@dataclass(slots=True)
class LoggingSettings:
    """Log level and optional rotating log file."""

    level: str = "INFO"
    log_file: Path | None = None
    max_bytes: int = 5_000 * 1024
    backup_count: int = 5

    @classmethod
    def from_env(cls) -> LoggingSettings:
        log_file = os.getenv("HOMENAS_LOG_FILE", "").strip()
        level = os.getenv("HOMENAS_LOG_LEVEL", "INFO").strip().upper()
        if logging.getLevelName(level) == f"Level {level}":
            raise ValueError(f"Unknown HOMENAS_LOG_LEVEL: {level!r}")
        return cls(level=level, log_file=Path(log_file) if log_file else None)


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    data_path: Path = Path("config/data.json")
    allowed_root: Path = Path("/mnt")
    default_keep_last: int = 10
    tools: ToolSettings = field(default_factory=ToolSettings)
    runner: RunnerSettings = field(default_factory=RunnerSettings)
    log: LoggingSettings = field(default_factory=LoggingSettings)

    @classmethod
    def from_env(cls, data_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for a NAS install."""

        return cls(
            data_path=data_path or Path(os.getenv("HOMENAS_DATA_PATH", "config/data.json")),
            allowed_root=Path(os.getenv("HOMENAS_ALLOWED_ROOT", "/mnt")),
            default_keep_last=int(os.getenv("HOMENAS_DEFAULT_KEEP_LAST", "10")),
            tools=ToolSettings(
                rsync_bin=os.getenv("HOMENAS_RSYNC_BIN", "rsync"),
                tar_bin=os.getenv("HOMENAS_TAR_BIN", "tar"),
                rclone_bin=os.getenv("HOMENAS_RCLONE_BIN", "rclone"),
            ),
            runner=RunnerSettings(
                live_buffer_bytes=int(os.getenv("HOMENAS_LIVE_BUFFER_BYTES", "10240")),
                history_tail_bytes=int(os.getenv("HOMENAS_HISTORY_TAIL_BYTES", "5120")),
                stop_kill_after_seconds=_env_optional_float("HOMENAS_STOP_KILL_AFTER_SECONDS"),
                max_runtime_seconds=_env_optional_float("HOMENAS_MAX_RUNTIME_SECONDS"),
            ),
            log=LoggingSettings.from_env(),
        )

    def validate(self) -> None:
        """Raise configuration error for values the engine cannot work with."""

        if not self.allowed_root.is_absolute():
            raise ValueError("HOMENAS_ALLOWED_ROOT must be an absolute path.")
        if self.allowed_root == Path(self.allowed_root.anchor):
            raise ValueError("HOMENAS_ALLOWED_ROOT must not be the filesystem root.")
        if self.default_keep_last <= 0:
            raise ValueError("HOMENAS_DEFAULT_KEEP_LAST must be a positive integer.")
        if self.runner.live_buffer_bytes <= 0:
            raise ValueError("HOMENAS_LIVE_BUFFER_BYTES must be > 0.")
        if self.runner.history_tail_bytes <= 0:
            raise ValueError("HOMENAS_HISTORY_TAIL_BYTES must be > 0.")
        if self.runner.stop_kill_after_seconds is not None and (
            self.runner.stop_kill_after_seconds <= 0
        ):
            raise ValueError("HOMENAS_STOP_KILL_AFTER_SECONDS must be > 0 when set.")
        if self.runner.max_runtime_seconds is not None and self.runner.max_runtime_seconds <= 0:
            raise ValueError("HOMENAS_MAX_RUNTIME_SECONDS must be > 0 when set.")
        if logging.getLevelName(self.log.level) == f"Level {self.log.level}":
            raise ValueError(f"Unknown HOMENAS_LOG_LEVEL: {self.log.level!r}")


def configure_logging(settings: LoggingSettings) -> logging.Logger:
    """Attach stream (and optional rotating file) handlers to the package logger."""

    package_logger = logging.getLogger("homenas_jobs")
    package_logger.setLevel(getattr(logging, settings.level, logging.INFO))
    reset_logging(package_logger)

    formatter = logging.Formatter(_LOG_FORMAT)
    stream_handler = logging.StreamHandler(sys.stderr)
    stream_handler.setFormatter(formatter)
    package_logger.addHandler(stream_handler)

    if settings.log_file is not None:
        settings.log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            settings.log_file,
            maxBytes=settings.max_bytes,
            backupCount=settings.backup_count,
            encoding="utf-8",
        )
        file_handler.setFormatter(formatter)
        package_logger.addHandler(file_handler)

    return package_logger


def reset_logging(package_logger: logging.Logger | None = None) -> None:
    """Detach and close handlers installed by :func:`configure_logging`."""

    package_logger = package_logger or logging.getLogger("homenas_jobs")
    for handler in list(package_logger.handlers):
        package_logger.removeHandler(handler)
        handler.close()


def _env_optional_float(name: str) -> float | None:
    raw = os.getenv(name, "").strip()
    if not raw:
        return None
    try:
        return float(raw)
    except ValueError as error:
        raise ValueError(f"Invalid {name} value: {raw!r}") from error
