"""Controllers for job, trigger and workflow CLI commands."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any

from forge_engine.config import Settings
from forge_engine.errors import ValidationError
from forge_engine.scheduler.models import JobRunRecord, run_status_is_terminal
from forge_engine.scheduler.store import JobStore
from forge_engine.timeutil import from_rfc3339
from forge_engine.workflow.definition import (
    load_workflow,
    resolve_workflow_path,
    validate_workflow,
)
from forge_engine.workflow.models import WorkflowRunRecord
from forge_engine.workflow.run_store import WorkflowRunStore, append_workflow_ledger_entry
from forge_engine.workflow.runner import WorkflowRunner, run_job


@dataclass(slots=True)
class JobListCommand:
    data_dir: Path | None = None
    as_json: bool = False


@dataclass(slots=True)
class JobShowCommand:
    name: str
    data_dir: Path | None = None
    limit: int = 5
    as_json: bool = False


@dataclass(slots=True)
class JobCreateCommand:
    name: str
    workflow: str
    data_dir: Path | None = None


@dataclass(slots=True)
class JobRunCommand:
    name: str
    data_dir: Path | None = None
    inputs: dict[str, str] = field(default_factory=dict)
    record_only: bool = False
    repo_workdir: Path | None = None


@dataclass(slots=True)
class JobRunsCommand:
    name: str
    data_dir: Path | None = None
    limit: int = 0
    as_json: bool = False


@dataclass(slots=True)
class JobCancelCommand:
    run_id: str
    data_dir: Path | None = None


@dataclass(slots=True)
class TriggerListCommand:
    data_dir: Path | None = None
    as_json: bool = False


@dataclass(slots=True)
class TriggerAddCommand:
    job_name: str
    cron: str | None = None
    webhook_path: str | None = None
    data_dir: Path | None = None


@dataclass(slots=True)
class TriggerMutateCommand:
    trigger_id: str
    data_dir: Path | None = None


@dataclass(slots=True)
class TriggerTickCommand:
    data_dir: Path | None = None
    now: datetime | None = None


@dataclass(slots=True)
class WorkflowValidateCommand:
    path: Path


@dataclass(slots=True)
class WorkflowRunCommand:
    path: Path
    data_dir: Path | None = None
    repo_workdir: Path | None = None
    inputs: dict[str, str] = field(default_factory=dict)
    ledger: bool = False


@dataclass(slots=True)
class WorkflowResumeCommand:
    run_id: str
    path: Path | None = None
    data_dir: Path | None = None
    repo_workdir: Path | None = None


@dataclass(slots=True)
class WorkflowInspectCommand:
    run_id: str | None = None
    data_dir: Path | None = None
    step_id: str | None = None
    as_json: bool = False


@dataclass(slots=True)
class WorkflowLedgerCommand:
    run_id: str
    repo_root: Path
    data_dir: Path | None = None


@dataclass(slots=True)
class CommandResult:
    """Printable lines plus whether the command's operation succeeded."""

    lines: list[str]
    success: bool = True


class JobCliController:
    """Job definitions and their run history."""

    def list_jobs(self, command: JobListCommand) -> list[str]:
        store = _job_store(_settings(command.data_dir))
        jobs = store.list_jobs()
        if command.as_json:
            return [_dump([job.to_dict() for job in jobs])]
        lines = [f"Jobs: {len(jobs)}"]
        lines.extend(
            f"  {job.name} workflow={job.workflow} created_at={job.created_at}" for job in jobs
        )
        return lines

    def show_job(self, command: JobShowCommand) -> list[str]:
        store = _job_store(_settings(command.data_dir))
        job = store.require_job(command.name)
        runs = store.list_runs(job.name, limit=command.limit)
        triggers = [trigger for trigger in store.list_triggers() if trigger.job_name == job.name]
        if command.as_json:
            return [
                _dump(
                    {
                        "job": job.to_dict(),
                        "recent_runs": [run.to_dict() for run in runs],
                        "triggers": [trigger.to_dict() for trigger in triggers],
                    },
                ),
            ]
        lines = [
            f"Job: {job.name}",
            f"Workflow: {job.workflow}",
            f"Created: {job.created_at}",
            f"Triggers: {len(triggers)}",
        ]
        lines.extend(
            f"  {trigger.trigger_id} {trigger.trigger_type} {trigger.cron} "
            f"enabled={str(trigger.enabled).lower()} next_fire_at={trigger.next_fire_at or '-'}"
            for trigger in triggers
        )
        lines.append(f"Recent runs: {len(runs)}")
        lines.extend(_run_line(run) for run in runs)
        return lines

    def create_job(self, command: JobCreateCommand) -> list[str]:
        store = _job_store(_settings(command.data_dir))
        job = store.create_job(command.name, command.workflow)
        return [f"Job created: {job.name} (workflow={job.workflow})"]

    def run_job(self, command: JobRunCommand) -> CommandResult:
        """Execute the job's workflow, or only record a run with ``record_only``."""

        settings = _settings(command.data_dir)
        store = _job_store(settings)
        if command.record_only:
            run = store.record_run(command.name, trigger="manual", inputs=command.inputs)
            return CommandResult([f"Run recorded: {run.run_id} job={run.job_name}"])

        runner = _runner(settings, command.repo_workdir)
        workflows_dir = settings.resolved_workflows_dir
        record, outcome = run_job(
            store,
            runner,
            command.name,
            lambda name: load_workflow(resolve_workflow_path(workflows_dir, name)),
            inputs=command.inputs,
        )
        lines = [
            f"Run: {record.run_id} job={record.job_name} status={record.status}",
            *_workflow_run_lines(outcome.run),
        ]
        return CommandResult(lines, success=outcome.success)

    def list_runs(self, command: JobRunsCommand) -> list[str]:
        store = _job_store(_settings(command.data_dir))
        runs = store.list_runs(command.name, limit=command.limit)
        if command.as_json:
            return [_dump([run.to_dict() for run in runs])]
        return [f"Runs: {len(runs)}", *(_run_line(run) for run in runs)]

    def cancel_run(self, command: JobCancelCommand) -> list[str]:
        store = _job_store(_settings(command.data_dir))
        existing = store.find_run(command.run_id)
        if existing is not None and run_status_is_terminal(existing.status):
            raise ValidationError(
                f"run {existing.run_id} already terminal (status={existing.status})",
            )
        run = store.cancel_run(command.run_id)
        return [f"Run canceled: {run.run_id} job={run.job_name}"]


class TriggerCliController:
    """Cron and webhook triggers."""

    def list_triggers(self, command: TriggerListCommand) -> list[str]:
        store = _job_store(_settings(command.data_dir))
        triggers = store.list_triggers()
        if command.as_json:
            return [_dump([trigger.to_dict() for trigger in triggers])]
        lines = [f"Triggers: {len(triggers)}"]
        lines.extend(
            f"  {trigger.trigger_id} job={trigger.job_name} type={trigger.trigger_type} "
            f"spec={trigger.cron} enabled={str(trigger.enabled).lower()} "
            f"next_fire_at={trigger.next_fire_at or '-'}"
            for trigger in triggers
        )
        return lines

    def add_trigger(self, command: TriggerAddCommand) -> list[str]:
        if (command.cron is None) == (command.webhook_path is None):
            raise ValidationError("exactly one of cron or webhook path is required")
        store = _job_store(_settings(command.data_dir))
        if command.cron is not None:
            trigger = store.create_cron_trigger(command.job_name, command.cron)
            return [
                f"Trigger created: {trigger.trigger_id} job={trigger.job_name} "
                f"cron={trigger.cron} next_fire_at={trigger.next_fire_at}",
            ]
        trigger = store.create_webhook_trigger(command.job_name, command.webhook_path or "")
        return [
            f"Trigger created: {trigger.trigger_id} job={trigger.job_name} "
            f"webhook={trigger.cron}",
        ]

    def remove_trigger(self, command: TriggerMutateCommand) -> list[str]:
        store = _job_store(_settings(command.data_dir))
        removed = store.remove_trigger(command.trigger_id)
        if removed is None:
            return [f"Trigger not found: {command.trigger_id}"]
        return [f"Trigger removed: {removed.trigger_id}"]

    def set_enabled(self, command: TriggerMutateCommand, *, enabled: bool) -> list[str]:
        store = _job_store(_settings(command.data_dir))
        trigger = store.set_trigger_enabled(command.trigger_id, enabled)
        state = "enabled" if enabled else "disabled"
        return [f"Trigger {state}: {trigger.trigger_id} next_fire_at={trigger.next_fire_at or '-'}"]

    def tick(self, command: TriggerTickCommand) -> list[str]:
        store = _job_store(_settings(command.data_dir))
        fired = store.tick_cron_triggers(command.now)
        return [f"Fired: {len(fired)}", *(_run_line(run) for run in fired)]


class WorkflowCliController:
    """Workflow validation, execution and run inspection."""

    def validate(self, command: WorkflowValidateCommand) -> CommandResult:
        definition = load_workflow(command.path)
        problems = validate_workflow(definition)
        if problems:
            return CommandResult(
                [f"Workflow invalid: {definition.name or command.path}"]
                + [f"  {problem}" for problem in problems],
                success=False,
            )
        return CommandResult(
            [f"Workflow valid: {definition.name} ({len(definition.steps)} steps)"],
        )

    def run(self, command: WorkflowRunCommand) -> CommandResult:
        settings = _settings(command.data_dir)
        definition = load_workflow(command.path)
        runner = _runner(settings, command.repo_workdir)
        outcome = runner.run(definition, command.inputs)
        lines = _workflow_run_lines(outcome.run)
        if command.ledger:
            ledger = append_workflow_ledger_entry(
                runner.store,
                outcome.run.id,
                runner.resolve_repo_workdir(definition),
            )
            lines.append(f"Ledger: {ledger}")
        return CommandResult(lines, success=outcome.success)

    def resume(self, command: WorkflowResumeCommand) -> CommandResult:
        settings = _settings(command.data_dir)
        runner = _runner(settings, command.repo_workdir)
        run = runner.store.get_run(command.run_id)
        path = command.path or Path(run.workflow_source)
        if not str(path).strip() or str(path) == ".":
            raise ValidationError(f"workflow run {run.id} has no workflow source; pass a path")
        outcome = runner.resume(run.id, load_workflow(path))
        return CommandResult(_workflow_run_lines(outcome.run), success=outcome.success)

    def show(self, command: WorkflowInspectCommand) -> list[str]:
        store = WorkflowRunStore(_settings(command.data_dir).resolved_workflow_runs_dir)
        if command.run_id is None:
            runs = store.list_runs()
            if command.as_json:
                return [_dump([run.to_dict() for run in runs])]
            return [
                f"Workflow runs: {len(runs)}",
                *(
                    f"  {run.id} workflow={run.workflow_name} status={run.status.value} "
                    f"started_at={run.started_at}"
                    for run in runs
                ),
            ]
        run = store.get_run(command.run_id)
        if command.as_json:
            return [_dump(run.to_dict())]
        return _workflow_run_lines(run)

    def logs(self, command: WorkflowInspectCommand) -> list[str]:
        if command.run_id is None:
            raise ValidationError("workflow run id is required")
        store = WorkflowRunStore(_settings(command.data_dir).resolved_workflow_runs_dir)
        run = store.get_run(command.run_id)
        step_ids = [command.step_id] if command.step_id else [step.step_id for step in run.steps]
        lines: list[str] = []
        for step_id in step_ids:
            lines.append(f"== {step_id} ==")
            lines.extend(store.read_step_log(run.id, step_id).splitlines())
        return lines

    def ledger(self, command: WorkflowLedgerCommand) -> list[str]:
        store = WorkflowRunStore(_settings(command.data_dir).resolved_workflow_runs_dir)
        path = append_workflow_ledger_entry(store, command.run_id, command.repo_root)
        return [f"Ledger updated: {path}"]


def _settings(data_dir: Path | None) -> Settings:
    settings = Settings.from_env(data_dir=data_dir)
    settings.validate()
    return settings


def _job_store(settings: Settings) -> JobStore:
    return JobStore(
        settings.resolved_jobs_dir,
        cron_lookahead_minutes=settings.scheduler.cron_lookahead_minutes,
    )


def _runner(settings: Settings, repo_workdir: Path | None) -> WorkflowRunner:
    return WorkflowRunner(
        WorkflowRunStore(settings.resolved_workflow_runs_dir),
        repo_workdir or Path(os.getcwd()),
    )


def _run_line(run: JobRunRecord) -> str:
    return (
        f"  {run.run_id} job={run.job_name} status={run.status} trigger={run.trigger} "
        f"started_at={run.started_at} finished_at={run.finished_at or '-'}"
    )


def _workflow_run_lines(run: WorkflowRunRecord) -> list[str]:
    lines = [
        f"Workflow run: {run.id}",
        f"Workflow: {run.workflow_name}",
        f"Status: {run.status.value}",
        f"Started: {run.started_at}",
        f"Finished: {run.finished_at or '-'}",
        f"Steps: {len(run.steps)}",
    ]
    for step in run.steps:
        lines.append(
            f"  {step.step_id} status={step.status.value} "
            f"duration={_duration_text(step.started_at, step.finished_at)} log={step.log_file}",
        )
    return lines


def _duration_text(started_at: str | None, finished_at: str | None) -> str:
    if started_at is None or finished_at is None:
        return "-"
    seconds = (from_rfc3339(finished_at) - from_rfc3339(started_at)).total_seconds()
    return f"{seconds:.2f}s"


def _dump(payload: Any) -> str:
    return json.dumps(payload, ensure_ascii=False, indent=2)
