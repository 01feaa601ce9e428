"""Subprocess-based execution of task commands."""

from __future__ import annotations

import json
import logging
import os
import subprocess
import sys
import tempfile
import time
from pathlib import Path
from typing import IO, Any

from task_scheduler.backend.base import ExecutionRequest, ExecutionResult, ExecutionStatus
from task_scheduler.backend.processes import terminate_process
from task_scheduler.errors import ExecutionError

logger = logging.getLogger(__name__)

TIMEOUT_EXIT_CODE = 124


class SubprocessExecutor:
    """Run task commands from a commands root directory.

    ``command`` is a relative path below ``commands_root``; ``foo/bar`` runs
    ``<root>/foo/bar`` or, when that does not exist, ``<root>/foo/bar.py`` with
    the current interpreter. The task payload is written to stdin as JSON.
    """

    def __init__(self, commands_root: Path, *, poll_interval_seconds: float = 0.1) -> None:
        self.commands_root = commands_root
        self.poll_interval_seconds = poll_interval_seconds
        self._detached: list[subprocess.Popen[bytes]] = []

    def execute(self, request: ExecutionRequest) -> ExecutionResult:
        argv = self.resolve_argv(request.command)
        env = _build_env(request)
        with (
            tempfile.TemporaryFile() as stdin_handle,
            tempfile.TemporaryFile() as stdout_handle,
            tempfile.TemporaryFile() as stderr_handle,
        ):
            _write_payload(stdin_handle, request.payload)
            try:
                process = subprocess.Popen(  # noqa: S603
                    argv,
                    env=env,
                    stdin=stdin_handle,
                    stdout=stdout_handle,
                    stderr=stderr_handle,
                    cwd=self.commands_root,
                )
            except FileNotFoundError as error:
                raise ExecutionError(
                    f"Task command not found: {request.command}",
                    transient=False,
                ) from error
            except OSError as error:
                raise ExecutionError(
                    f"Task command failed to start: {error}",
                    transient=True,
                ) from error

            exit_code, timed_out = self._wait(process, request)
            stdout = _read_all(stdout_handle)
            stderr = _read_all(stderr_handle)

        if timed_out:
            status = ExecutionStatus.TIMEOUT
        elif exit_code == 0:
            status = ExecutionStatus.SUCCESS
        else:
            status = ExecutionStatus.FAILURE
        return ExecutionResult(
            exit_status=status,
            output=parse_output(stdout),
            exit_code=exit_code,
            process_id=process.pid,
            stderr=stderr,
        )

    def start_detached(self, request: ExecutionRequest) -> int:
        argv = self.resolve_argv(request.command)
        env = _build_env(request)
        self._collect_detached()
        with tempfile.TemporaryFile() as stdin_handle:
            _write_payload(stdin_handle, request.payload)
            try:
                process = subprocess.Popen(  # noqa: S603
                    argv,
                    env=env,
                    stdin=stdin_handle,
                    stdout=subprocess.DEVNULL,
                    stderr=subprocess.DEVNULL,
                    cwd=self.commands_root,
                    start_new_session=True,
                )
            except FileNotFoundError as error:
                raise ExecutionError(
                    f"Task command not found: {request.command}",
                    transient=False,
                ) from error
            except OSError as error:
                raise ExecutionError(
                    f"Task command failed to start: {error}",
                    transient=True,
                ) from error
        self._detached.append(process)
        logger.info("Started detached task %s as pid %s", request.task_id, process.pid)
        return process.pid

    def resolve_argv(self, command: str) -> list[str]:
        """Map a task command onto an argv below the commands root."""

        root = self.commands_root.resolve()
        target = (root / command).resolve()
        if not target.is_relative_to(root) or target == root:
            raise ExecutionError(
                f"Task command escapes the commands root: {command}",
                transient=False,
            )
        if target.is_file():
            if target.suffix == ".py":
                return [sys.executable, str(target)]
            return [str(target)]
        script = target.with_name(f"{target.name}.py")
        if script.is_file():
            return [sys.executable, str(script)]
        raise ExecutionError(f"Task command not found: {command}", transient=False)

    def _wait(
        self,
        process: subprocess.Popen[bytes],
        request: ExecutionRequest,
    ) -> tuple[int, bool]:
        start_monotonic = time.monotonic()
        while True:
            returncode = process.poll()
            if returncode is not None:
                return returncode, False

            elapsed = time.monotonic() - start_monotonic
            if request.timeout_seconds > 0 and elapsed >= request.timeout_seconds:
                logger.warning(
                    "Task %s exceeded %ss, terminating pid %s",
                    request.task_id,
                    request.timeout_seconds,
                    process.pid,
                )
                terminate_process(process)
                return TIMEOUT_EXIT_CODE, True

            time.sleep(self.poll_interval_seconds)

    def _collect_detached(self) -> None:
        self._detached = [process for process in self._detached if process.poll() is None]


def parse_output(stdout: str) -> Any:
    """Return JSON-decoded stdout when possible, else the stripped text."""

    text = stdout.strip()
    if not text:
        return None
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        return text


def _build_env(request: ExecutionRequest) -> dict[str, str]:
    env = os.environ.copy()
    env["TASK_SCHEDULER_TASK_ID"] = str(request.task_id)
    env["TASK_SCHEDULER_METHOD"] = request.method.value
    env["TASK_SCHEDULER_VERBOSE"] = "1" if request.verbose else "0"
    env.update(request.environment)
    return env


def _write_payload(handle: IO[bytes], payload: Any) -> None:
    if payload is not None:
        handle.write(json.dumps(payload, ensure_ascii=False).encode("utf-8"))
    handle.flush()
    handle.seek(0)


def _read_all(handle: IO[bytes]) -> str:
    handle.seek(0)
    return handle.read().decode("utf-8", errors="replace")
