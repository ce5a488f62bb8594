"""CLI entrypoint for forge."""

import logging
from collections.abc import Callable
from datetime import datetime
from pathlib import Path
from typing import TypeVar

import rich_click as click

from forge_engine import __version__
from forge_engine.controllers import (
    CommandResult,
    JobCancelCommand,
    JobCliController,
    JobCreateCommand,
    JobListCommand,
    JobRunCommand,
    JobRunsCommand,
    JobShowCommand,
    TriggerAddCommand,
    TriggerCliController,
    TriggerListCommand,
    TriggerMutateCommand,
    TriggerTickCommand,
    WorkflowCliController,
    WorkflowInspectCommand,
    WorkflowLedgerCommand,
    WorkflowResumeCommand,
    WorkflowRunCommand,
    WorkflowValidateCommand,
)
from forge_engine.config import Settings
from forge_engine.errors import ForgeError
from forge_engine.timeutil import from_rfc3339

click.rich_click.USE_MARKDOWN = True
JOB_CONTROLLER = JobCliController()
TRIGGER_CONTROLLER = TriggerCliController()
WORKFLOW_CONTROLLER = WorkflowCliController()

T = TypeVar("T")
R = TypeVar("R")

_DATA_DIR_OPTION = click.option(
    "--data-dir",
    type=click.Path(path_type=Path),
    default=None,
    help="Data directory (defaults to FORGE_DATA_DIR or ~/.local/share/forge).",
)
_JSON_OPTION = click.option("--json", "as_json", is_flag=True, help="Print JSON.")
_INPUT_OPTION = click.option(
    "--input",
    "inputs",
    multiple=True,
    metavar="KEY=VALUE",
    help="Run input. Can be repeated.",
)
_REPO_OPTION = click.option(
    "--repo",
    "repo_workdir",
    type=click.Path(path_type=Path, file_okay=False),
    default=None,
    help="Repository working directory for steps (defaults to the current directory).",
)


@click.group()
@click.version_option(version=__version__, prog_name="forge")
@click.option("-v", "--verbose", is_flag=True, help="Log at DEBUG level.")
def forge(verbose: bool) -> None:
    """Jobs, cron triggers and workflow runs."""

    try:
        settings = Settings.from_env()
    except ValueError as error:
        raise click.ClickException(str(error)) from error
    level = logging.DEBUG if verbose else settings.logging_level
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")


@forge.group()
def job() -> None:
    """Job definitions and run history."""


@job.command("ls")
@_DATA_DIR_OPTION
@_JSON_OPTION
def job_ls(data_dir: Path | None, as_json: bool) -> None:
    """List jobs."""

    _emit_lines(_call(JOB_CONTROLLER.list_jobs, JobListCommand(data_dir=data_dir, as_json=as_json)))


@job.command("show")
@click.argument("name")
@_DATA_DIR_OPTION
@click.option(
    "--limit",
    type=click.IntRange(min=0),
    default=5,
    show_default=True,
    help="Recent runs to show (0 for all).",
)
@_JSON_OPTION
def job_show(name: str, data_dir: Path | None, limit: int, as_json: bool) -> None:
    """Show a job with its triggers and recent runs."""

    _emit_lines(
        _call(
            JOB_CONTROLLER.show_job,
            JobShowCommand(name=name, data_dir=data_dir, limit=limit, as_json=as_json),
        ),
    )


@job.command("create")
@click.argument("name")
@click.option("--workflow", required=True, help="Workflow name or .toml path.")
@_DATA_DIR_OPTION
def job_create(name: str, workflow: str, data_dir: Path | None) -> None:
    """Create a job pointing at a workflow."""

    _emit_lines(
        _call(
            JOB_CONTROLLER.create_job,
            JobCreateCommand(name=name, workflow=workflow, data_dir=data_dir),
        ),
    )


@job.command("run")
@click.argument("name")
@_DATA_DIR_OPTION
@_INPUT_OPTION
@_REPO_OPTION
@click.option(
    "--record-only",
    is_flag=True,
    help="Only append a `recorded` run without executing the workflow.",
)
def job_run(
    name: str,
    data_dir: Path | None,
    inputs: tuple[str, ...],
    repo_workdir: Path | None,
    record_only: bool,
) -> None:
    """Run a job's workflow now."""

    _emit_result(
        _call(
            JOB_CONTROLLER.run_job,
            JobRunCommand(
                name=name,
                data_dir=data_dir,
                inputs=_parse_inputs(inputs),
                record_only=record_only,
                repo_workdir=repo_workdir,
            ),
        ),
        failure_message=f"Job {name} failed.",
    )


@job.command("runs")
@click.argument("name")
@_DATA_DIR_OPTION
@click.option(
    "--limit",
    type=click.IntRange(min=0),
    default=20,
    show_default=True,
    help="Max runs to show (0 for all).",
)
@_JSON_OPTION
def job_runs(name: str, data_dir: Path | None, limit: int, as_json: bool) -> None:
    """List a job's runs, newest first."""

    _emit_lines(
        _call(
            JOB_CONTROLLER.list_runs,
            JobRunsCommand(name=name, data_dir=data_dir, limit=limit, as_json=as_json),
        ),
    )


@job.command("cancel")
@click.argument("run_id")
@_DATA_DIR_OPTION
def job_cancel(run_id: str, data_dir: Path | None) -> None:
    """Cancel a job run that is not terminal yet."""

    _emit_lines(
        _call(JOB_CONTROLLER.cancel_run, JobCancelCommand(run_id=run_id, data_dir=data_dir)),
    )


@forge.group()
def trigger() -> None:
    """Cron and webhook triggers."""


@trigger.command("ls")
@_DATA_DIR_OPTION
@_JSON_OPTION
def trigger_ls(data_dir: Path | None, as_json: bool) -> None:
    """List triggers."""

    _emit_lines(
        _call(
            TRIGGER_CONTROLLER.list_triggers,
            TriggerListCommand(data_dir=data_dir, as_json=as_json),
        ),
    )


@trigger.command("add")
@click.argument("job_name")
@click.option("--cron", default=None, help='Five-field cron expression, for example "1 0 * * *".')
@click.option("--webhook", "webhook_path", default=None, help="Webhook path starting with `/`.")
@_DATA_DIR_OPTION
def trigger_add(
    job_name: str,
    cron: str | None,
    webhook_path: str | None,
    data_dir: Path | None,
) -> None:
    """Add a cron or webhook trigger for a job."""

    _emit_lines(
        _call(
            TRIGGER_CONTROLLER.add_trigger,
            TriggerAddCommand(
                job_name=job_name,
                cron=cron,
                webhook_path=webhook_path,
                data_dir=data_dir,
            ),
        ),
    )


@trigger.command("rm")
@click.argument("trigger_id")
@_DATA_DIR_OPTION
def trigger_rm(trigger_id: str, data_dir: Path | None) -> None:
    """Remove a trigger."""

    _emit_lines(
        _call(
            TRIGGER_CONTROLLER.remove_trigger,
            TriggerMutateCommand(trigger_id=trigger_id, data_dir=data_dir),
        ),
    )


@trigger.command("enable")
@click.argument("trigger_id")
@_DATA_DIR_OPTION
def trigger_enable(trigger_id: str, data_dir: Path | None) -> None:
    """Enable a trigger; cron triggers are rescheduled from now."""

    command = TriggerMutateCommand(trigger_id=trigger_id, data_dir=data_dir)
    _emit_lines(_call(lambda cmd: TRIGGER_CONTROLLER.set_enabled(cmd, enabled=True), command))


@trigger.command("disable")
@click.argument("trigger_id")
@_DATA_DIR_OPTION
def trigger_disable(trigger_id: str, data_dir: Path | None) -> None:
    """Disable a trigger."""

    command = TriggerMutateCommand(trigger_id=trigger_id, data_dir=data_dir)
    _emit_lines(_call(lambda cmd: TRIGGER_CONTROLLER.set_enabled(cmd, enabled=False), command))


@trigger.command("tick")
@_DATA_DIR_OPTION
@click.option(
    "--now",
    "now_text",
    default=None,
    help="Evaluate triggers at this RFC3339 timestamp instead of the current time.",
)
def trigger_tick(data_dir: Path | None, now_text: str | None) -> None:
    """Fire every due cron trigger once.

    Run it from an external scheduler (for example a system cron entry
    every minute). Two ticks must never overlap on the same data directory.
    """

    now = _parse_now(now_text)
    _emit_lines(
        _call(TRIGGER_CONTROLLER.tick, TriggerTickCommand(data_dir=data_dir, now=now)),
    )


@forge.group()
def workflow() -> None:
    """Workflow files and runs."""


@workflow.command("validate")
@click.argument("path", type=click.Path(path_type=Path, dir_okay=False))
def workflow_validate(path: Path) -> None:
    """Check a workflow file for errors."""

    _emit_result(
        _call(WORKFLOW_CONTROLLER.validate, WorkflowValidateCommand(path=path)),
        failure_message="Workflow is invalid.",
    )


@workflow.command("run")
@click.argument("path", type=click.Path(path_type=Path, dir_okay=False))
@_DATA_DIR_OPTION
@_REPO_OPTION
@_INPUT_OPTION
@click.option("--ledger", is_flag=True, help="Append a summary to the repository's run ledger.")
def workflow_run(
    path: Path,
    data_dir: Path | None,
    repo_workdir: Path | None,
    inputs: tuple[str, ...],
    ledger: bool,
) -> None:
    """Run a workflow file."""

    _emit_result(
        _call(
            WORKFLOW_CONTROLLER.run,
            WorkflowRunCommand(
                path=path,
                data_dir=data_dir,
                repo_workdir=repo_workdir,
                inputs=_parse_inputs(inputs),
                ledger=ledger,
            ),
        ),
        failure_message="Workflow run failed.",
    )


@workflow.command("resume")
@click.argument("run_id")
@click.option(
    "--file",
    "path",
    type=click.Path(path_type=Path, dir_okay=False),
    default=None,
    help="Workflow file (defaults to the run's recorded source).",
)
@_DATA_DIR_OPTION
@_REPO_OPTION
def workflow_resume(
    run_id: str,
    path: Path | None,
    data_dir: Path | None,
    repo_workdir: Path | None,
) -> None:
    """Resume an interrupted workflow run."""

    _emit_result(
        _call(
            WORKFLOW_CONTROLLER.resume,
            WorkflowResumeCommand(
                run_id=run_id,
                path=path,
                data_dir=data_dir,
                repo_workdir=repo_workdir,
            ),
        ),
        failure_message="Workflow run failed.",
    )


@workflow.command("show")
@click.argument("run_id", required=False)
@_DATA_DIR_OPTION
@_JSON_OPTION
def workflow_show(run_id: str | None, data_dir: Path | None, as_json: bool) -> None:
    """Show one workflow run, or list all runs."""

    _emit_lines(
        _call(
            WORKFLOW_CONTROLLER.show,
            WorkflowInspectCommand(run_id=run_id, data_dir=data_dir, as_json=as_json),
        ),
    )


@workflow.command("logs")
@click.argument("run_id")
@click.option("--step", "step_id", default=None, help="Only this step's log.")
@_DATA_DIR_OPTION
def workflow_logs(run_id: str, step_id: str | None, data_dir: Path | None) -> None:
    """Print step logs of a workflow run."""

    _emit_lines(
        _call(
            WORKFLOW_CONTROLLER.logs,
            WorkflowInspectCommand(run_id=run_id, step_id=step_id, data_dir=data_dir),
        ),
    )


@workflow.command("ledger")
@click.argument("run_id")
@click.option(
    "--repo-root",
    type=click.Path(path_type=Path, file_okay=False),
    default=Path(),
    show_default=True,
    help="Repository whose `.forge/ledgers` receives the entry.",
)
@_DATA_DIR_OPTION
def workflow_ledger(run_id: str, repo_root: Path, data_dir: Path | None) -> None:
    """Append a run summary to the repository's workflow ledger."""

    _emit_lines(
        _call(
            WORKFLOW_CONTROLLER.ledger,
            WorkflowLedgerCommand(run_id=run_id, repo_root=repo_root, data_dir=data_dir),
        ),
    )


def _call(handler: Callable[[T], R], command: T) -> R:
    try:
        return handler(command)
    except (ForgeError, ValueError) as error:
        raise click.ClickException(str(error)) from error


def _parse_inputs(raw_inputs: tuple[str, ...]) -> dict[str, str]:
    inputs: dict[str, str] = {}
    for raw in raw_inputs:
        key, sep, value = raw.partition("=")
        if not sep or not key.strip():
            raise click.BadParameter(f"expected KEY=VALUE, got {raw!r}", param_hint="--input")
        inputs[key.strip()] = value
    return inputs


def _parse_now(now_text: str | None) -> datetime | None:
    if now_text is None:
        return None
    try:
        return from_rfc3339(now_text)
    except ValueError as error:
        raise click.BadParameter(f"invalid timestamp {now_text!r}", param_hint="--now") from error


def _emit_result(result: CommandResult, *, failure_message: str) -> None:
    _emit_lines(result.lines)
    if not result.success:
        raise click.ClickException(failure_message)


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    forge()
