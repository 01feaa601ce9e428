"""CLI entrypoint for task-scheduler."""

import logging
from collections.abc import Callable
from pathlib import Path

import rich_click as click

from task_scheduler import __version__
from task_scheduler.controllers import (
    ListTasksCommand,
    ReportCommand,
    SubmitCommand,
    TaskCliController,
    TaskRefCommand,
    WorkerCommand,
)
from task_scheduler.errors import TaskSchedulerError
from task_scheduler.logging_setup import setup_logging
from task_scheduler.models import MAX_TIMEOUT_SECONDS, TaskMethod, TaskStatus

click.rich_click.USE_MARKDOWN = True
CONTROLLER = TaskCliController()

STATUS_CHOICES = [status.value for status in TaskStatus]
REPORT_STATUS_CHOICES = [
    TaskStatus.COMPLETED.value,
    TaskStatus.FAILED.value,
    TaskStatus.TIMEOUT.value,
]

db_path_option = click.option(
    "--db-path",
    type=click.Path(path_type=Path),
    default=None,
    help="SQLite DB path. Defaults to TASK_SCHEDULER_DB_PATH.",
)
task_id_option = click.option("--task-id", type=int, required=True, help="Task id.")


@click.group()
@click.version_option(version=__version__, prog_name="task-scheduler")
@click.option("--verbose", "-v", is_flag=True, default=False, help="Show debug logs.")
@click.option("--quiet", "-q", is_flag=True, default=False, help="Only show errors.")
def task_scheduler(verbose: bool, quiet: bool) -> None:
    """Persistent hierarchical task queue."""

    level = logging.INFO
    if verbose:
        level = logging.DEBUG
    elif quiet:
        level = logging.ERROR
    setup_logging(level=level)


@task_scheduler.command("submit")
@db_path_option
@click.option("--command", "command_name", required=True, help="Command below the commands root.")
@click.option(
    "--method",
    type=click.Choice([method.value for method in TaskMethod], case_sensitive=False),
    default=TaskMethod.NORMAL.value,
    show_default=True,
    help="Execution strategy.",
)
@click.option(
    "--timeout",
    "timeout_seconds",
    type=click.IntRange(min=0),
    default=None,
    help=f"Execution bound in seconds, 0 means unbounded (max {MAX_TIMEOUT_SECONDS}).",
)
@click.option("--parent-id", type=int, default=None, help="Parent task id.")
@click.option(
    "--parallel",
    is_flag=True,
    default=False,
    help="Allow running alongside a background parent instead of waiting for it.",
)
@click.option("--not-before", default=None, help="ISO-8601 timestamp before which it never runs.")
@click.option("--data", default=None, help="JSON payload passed to the command on stdin.")
@click.option("--description", default=None, help="Human readable description.")
@click.option("--verbose-task", "verbose", is_flag=True, default=False, help="Verbose task run.")
@click.option(
    "--auto-dispatch/--no-auto-dispatch",
    default=None,
    help="Start a background worker after submit. Defaults to TASK_SCHEDULER_AUTO_DISPATCH.",
)
def submit(  # noqa: PLR0913
    db_path: Path | None,
    command_name: str,
    method: str,
    timeout_seconds: int | None,
    parent_id: int | None,
    parallel: bool,
    not_before: str | None,
    data: str | None,
    description: str | None,
    verbose: bool,
    auto_dispatch: bool | None,
) -> None:
    """Validate and enqueue a task."""

    _run(
        lambda: CONTROLLER.submit(
            SubmitCommand(
                db_path=db_path,
                command=command_name,
                method=method,
                timeout_seconds=timeout_seconds,
                parent_id=parent_id,
                parallel=parallel,
                not_before=not_before,
                data=data,
                description=description,
                verbose=verbose,
                auto_dispatch=auto_dispatch,
            ),
        ),
    )


@task_scheduler.command("worker")
@db_path_option
@click.option(
    "--once/--loop",
    default=True,
    show_default=True,
    help="Run one claim-execute cycle or loop until idle.",
)
@click.option(
    "--max-tasks",
    type=click.IntRange(min=1),
    default=None,
    help="Optional cap for processed tasks in loop mode.",
)
@click.option(
    "--max-idle-polls",
    type=click.IntRange(min=1),
    default=None,
    help="Consecutive empty polls before the loop exits.",
)
@click.option("--min-id", type=int, default=None, help="Only claim tasks with a larger id.")
def worker(
    db_path: Path | None,
    once: bool,
    max_tasks: int | None,
    max_idle_polls: int | None,
    min_id: int | None,
) -> None:
    """Run the task dispatcher."""

    _run(
        lambda: CONTROLLER.run_worker(
            WorkerCommand(
                db_path=db_path,
                once=once,
                max_tasks=max_tasks,
                max_idle_polls=max_idle_polls,
                min_id=min_id,
            ),
        ),
    )


@task_scheduler.command("tasks")
@db_path_option
@click.option(
    "--status",
    type=click.Choice(STATUS_CHOICES, case_sensitive=False),
    default=None,
    help="Optional status filter.",
)
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=500),
    default=50,
    show_default=True,
    help="Max tasks to print.",
)
def tasks(db_path: Path | None, status: str | None, limit: int) -> None:
    """List tasks, newest first."""

    _run(
        lambda: CONTROLLER.list_tasks(
            ListTasksCommand(db_path=db_path, status=status, limit=limit),
        ),
    )


@task_scheduler.command("inspect")
@db_path_option
@task_id_option
def inspect(db_path: Path | None, task_id: int) -> None:
    """Inspect one task with event history."""

    _run(lambda: CONTROLLER.inspect_task(TaskRefCommand(db_path=db_path, task_id=task_id)))


@task_scheduler.command("status")
@db_path_option
@task_id_option
def status(db_path: Path | None, task_id: int) -> None:
    """Print the current status of a task."""

    _run(lambda: CONTROLLER.status(TaskRefCommand(db_path=db_path, task_id=task_id)))


@task_scheduler.command("reset")
@db_path_option
@task_id_option
def reset(db_path: Path | None, task_id: int) -> None:
    """Re-queue a task and its descendants, clearing results."""

    _run(lambda: CONTROLLER.reset(TaskRefCommand(db_path=db_path, task_id=task_id)))


@task_scheduler.command("abort")
@db_path_option
@task_id_option
def abort(db_path: Path | None, task_id: int) -> None:
    """Abort a task and its descendants."""

    _run(lambda: CONTROLLER.abort(TaskRefCommand(db_path=db_path, task_id=task_id)))


@task_scheduler.command("fail")
@db_path_option
@task_id_option
def fail(db_path: Path | None, task_id: int) -> None:
    """Mark a task and its descendants failed."""

    _run(lambda: CONTROLLER.fail(TaskRefCommand(db_path=db_path, task_id=task_id)))


@task_scheduler.command("delete")
@db_path_option
@task_id_option
def delete(db_path: Path | None, task_id: int) -> None:
    """Soft-delete a task and its descendants."""

    _run(lambda: CONTROLLER.delete(TaskRefCommand(db_path=db_path, task_id=task_id)))


@task_scheduler.command("report")
@db_path_option
@click.option(
    "--task-id",
    type=int,
    envvar="TASK_SCHEDULER_TASK_ID",
    required=True,
    help="Task id. Defaults to TASK_SCHEDULER_TASK_ID.",
)
@click.option(
    "--claim-token",
    envvar="TASK_SCHEDULER_CLAIM_TOKEN",
    required=True,
    help="Claim token handed to the process. Defaults to TASK_SCHEDULER_CLAIM_TOKEN.",
)
@click.option(
    "--status",
    "status_value",
    type=click.Choice(REPORT_STATUS_CHOICES, case_sensitive=False),
    default=TaskStatus.COMPLETED.value,
    show_default=True,
    help="Terminal status to record.",
)
@click.option("--results", default=None, help="JSON results to store.")
def report(
    db_path: Path | None,
    task_id: int,
    claim_token: str,
    status_value: str,
    results: str | None,
) -> None:
    """Record the outcome of a background task from its own process."""

    _run(
        lambda: CONTROLLER.report(
            ReportCommand(
                db_path=db_path,
                task_id=task_id,
                claim_token=claim_token,
                status=status_value,
                results=results,
            ),
        ),
    )


@task_scheduler.command("check-pid")
@db_path_option
@task_id_option
def check_pid(db_path: Path | None, task_id: int) -> None:
    """Check whether the process recorded for a task is still running."""

    _run(lambda: CONTROLLER.check_pid(TaskRefCommand(db_path=db_path, task_id=task_id)))


def _run(call: Callable[[], list[str]]) -> None:
    try:
        lines = call()
    except (TaskSchedulerError, ValueError) as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    task_scheduler()
