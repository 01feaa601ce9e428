"""Detached dispatcher process spawning."""

from __future__ import annotations

import logging
import subprocess
import sys
from pathlib import Path

logger = logging.getLogger(__name__)


class SubprocessWorkerSpawner:
    """Start ``task-scheduler worker --loop`` as a detached process.

    The guard against double starts is per instance: a second ``spawn()`` on
    the same spawner is a no-op while its own worker is still running. Each
    CLI ``submit`` builds a fresh spawner, so every such call starts a worker;
    running several is safe because claims are atomic.
    """

    def __init__(self, db_path: Path, *, max_idle_polls: int = 1) -> None:
        self.db_path = db_path
        self.max_idle_polls = max_idle_polls
        self._process: subprocess.Popen[bytes] | None = None

    def spawn(self) -> int | None:
        if self._process is not None and self._process.poll() is None:
            logger.debug("Worker pid %s is still running, not spawning", self._process.pid)
            return None

        argv = [
            sys.executable,
            "-m",
            "task_scheduler.main",
            "worker",
            "--loop",
            "--db-path",
            str(self.db_path),
            "--max-idle-polls",
            str(self.max_idle_polls),
        ]
        self._process = subprocess.Popen(  # noqa: S603
            argv,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            start_new_session=True,
        )
        logger.info("Auto starting task worker in background as pid %s", self._process.pid)
        return self._process.pid
