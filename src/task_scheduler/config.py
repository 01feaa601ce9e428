"""Runtime configuration for the task store, dispatcher and CLI."""

from __future__ import annotations

import os
import socket
from dataclasses import dataclass, field
from pathlib import Path

from task_scheduler.models import DEFAULT_TIMEOUT_SECONDS, MAX_TIMEOUT_SECONDS


@dataclass(slots=True)
class StorageSettings:
    """SQLite persistence settings."""

    db_path: Path = Path(".task_scheduler.db")
    sqlite_busy_timeout_ms: int = 5_000


@dataclass(slots=True)
class DispatcherSettings:
    """Worker loop settings."""

    worker_id: str = field(default_factory=lambda: f"{socket.gethostname()}:{os.getpid()}")
    poll_interval_seconds: float = 2.0
    max_idle_polls: int = 1
    reap_dead_processes: bool = True


@dataclass(slots=True)
class ExecutionSettings:
    """Process execution settings."""

    commands_root: Path = Path("commands")
    default_timeout_seconds: int = DEFAULT_TIMEOUT_SECONDS
    auto_dispatch: bool = True


@dataclass(slots=True)
class Settings:
    """Application settings grouped by concern."""

    storage: StorageSettings = field(default_factory=StorageSettings)
    dispatcher: DispatcherSettings = field(default_factory=DispatcherSettings)
    execution: ExecutionSettings = field(default_factory=ExecutionSettings)

    @property
    def db_path(self) -> Path:
        return self.storage.db_path

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with defaults for local development."""

        worker_id = os.getenv("TASK_SCHEDULER_WORKER_ID", "").strip()
        return cls(
            storage=StorageSettings(
                db_path=db_path
                or Path(os.getenv("TASK_SCHEDULER_DB_PATH", ".task_scheduler.db")),
                sqlite_busy_timeout_ms=int(
                    os.getenv("TASK_SCHEDULER_SQLITE_BUSY_TIMEOUT_MS", "5000"),
                ),
            ),
            dispatcher=DispatcherSettings(
                worker_id=worker_id or f"{socket.gethostname()}:{os.getpid()}",
                poll_interval_seconds=float(
                    os.getenv("TASK_SCHEDULER_POLL_INTERVAL_SECONDS", "2.0"),
                ),
                max_idle_polls=int(os.getenv("TASK_SCHEDULER_MAX_IDLE_POLLS", "1")),
                reap_dead_processes=_env_bool(
                    "TASK_SCHEDULER_REAP_DEAD_PROCESSES",
                    default=True,
                ),
            ),
            execution=ExecutionSettings(
                commands_root=Path(os.getenv("TASK_SCHEDULER_COMMANDS_ROOT", "commands")),
                default_timeout_seconds=int(
                    os.getenv(
                        "TASK_SCHEDULER_DEFAULT_TIMEOUT_SECONDS",
                        str(DEFAULT_TIMEOUT_SECONDS),
                    ),
                ),
                auto_dispatch=_env_bool("TASK_SCHEDULER_AUTO_DISPATCH", default=True),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error for out-of-range values."""

        if self.storage.sqlite_busy_timeout_ms <= 0:
            raise ValueError("TASK_SCHEDULER_SQLITE_BUSY_TIMEOUT_MS must be > 0.")
        if self.dispatcher.poll_interval_seconds < 0:
            raise ValueError("TASK_SCHEDULER_POLL_INTERVAL_SECONDS must be >= 0.")
        if self.dispatcher.max_idle_polls < 1:
            raise ValueError("TASK_SCHEDULER_MAX_IDLE_POLLS must be >= 1.")
        if not self.dispatcher.worker_id:
            raise ValueError("TASK_SCHEDULER_WORKER_ID must not be empty.")
        timeout = self.execution.default_timeout_seconds
        if not 0 <= timeout <= MAX_TIMEOUT_SECONDS:
            raise ValueError(
                "TASK_SCHEDULER_DEFAULT_TIMEOUT_SECONDS must be between "
                f"0 and {MAX_TIMEOUT_SECONDS}, got {timeout}.",
            )


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
