"""Drives a workflow definition through the engine, executors and run store."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

from forge_engine.errors import ExecutionError, ForgeError, ValidationError
from forge_engine.executors.agent import (
    AgentStepRequest,
    execute_agent_step,
    format_agent_step_log_lines,
)
from forge_engine.executors.base import StepExecutionResult, capture_base_env
from forge_engine.executors.bash import (
    BashStepRequest,
    append_bash_step_logs,
    execute_bash_step,
)
from forge_engine.executors.harness import ExecutionPlanner, build_execution_plan
from forge_engine.executors.loop import (
    LoopStepRequest,
    LoopStopStatus,
    execute_loop_step,
    format_loop_step_log_lines,
)
from forge_engine.executors.stop import TasksOpenProvider, loop_stop_condition
from forge_engine.scheduler.models import JobRunRecord
from forge_engine.scheduler.store import JobStore, new_job_run_id
from forge_engine.timeutil import now_rfc3339, to_rfc3339, utc_now
from forge_engine.workflow.definition import (
    StepType,
    WorkflowDefinition,
    WorkflowStepDefinition,
    validate_workflow,
)
from forge_engine.workflow.engine import (
    EngineStepStatus,
    WorkflowEngineRun,
    execute_sequential_workflow,
)
from forge_engine.workflow.models import WorkflowRunRecord, WorkflowRunStatus, WorkflowStepStatus
from forge_engine.workflow.run_store import WorkflowRunStore

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class WorkflowRunOutcome:
    run: WorkflowRunRecord
    engine: WorkflowEngineRun

    @property
    def success(self) -> bool:
        return self.run.status is WorkflowRunStatus.SUCCESS


class WorkflowRunner:
    """Runs and resumes workflows, persisting every step transition."""

    def __init__(
        self,
        store: WorkflowRunStore,
        repo_workdir: Path,
        planner: ExecutionPlanner = build_execution_plan,
        base_env: list[str] | None = None,
        tasks_open_provider: TasksOpenProvider | None = None,
    ) -> None:
        self.store = store
        self.repo_workdir = repo_workdir
        self.planner = planner
        self.base_env = base_env
        self.tasks_open_provider = tasks_open_provider

    def run(
        self,
        definition: WorkflowDefinition,
        inputs: dict[str, str] | None = None,
    ) -> WorkflowRunOutcome:
        _require_valid(definition)
        record = self.store.create_run(
            definition.name,
            definition.source,
            [step.id for step in definition.steps],
        )
        logger.info("Running workflow %s as %s", definition.name, record.id)
        return self._drive(record.id, definition, inputs or {}, finished={})

    def resume(
        self,
        run_id: str,
        definition: WorkflowDefinition,
        inputs: dict[str, str] | None = None,
    ) -> WorkflowRunOutcome:
        """Continue an interrupted run, executing only its non-terminal steps.

        Steps that already succeeded count as satisfied dependencies. Steps
        left ``running`` by a crashed process are executed again.
        """

        _require_valid(definition)
        state = self.store.load_resume_state(run_id)
        run = state.run
        if run.status.is_terminal:
            raise ValidationError(f"workflow run {run.id} is already {run.status.value}")
        for step in run.steps:
            if definition.step(step.step_id) is None:
                raise ValidationError(
                    f"workflow {definition.name!r} has no step {step.step_id!r} "
                    f"recorded in run {run.id}",
                )
        for definition_step in definition.steps:
            if run.step(definition_step.id) is None:
                raise ValidationError(
                    f"workflow run {run.id} has no step {definition_step.id!r} "
                    f"declared in workflow {definition.name!r}",
                )

        for step in run.steps:
            if step.status is WorkflowStepStatus.RUNNING:
                self.store.append_step_log(
                    run.id,
                    step.step_id,
                    f"{now_rfc3339()} step={step.step_id} resumed after interruption",
                )
        finished = {
            step.step_id: step.status for step in run.steps if step.status.is_terminal
        }
        logger.info(
            "Resuming workflow run %s with %d remaining step(s)",
            run.id,
            len(state.remaining_step_ids),
        )
        return self._drive(run.id, definition, inputs or {}, finished=finished)

    def _drive(
        self,
        run_id: str,
        definition: WorkflowDefinition,
        inputs: dict[str, str],
        *,
        finished: dict[str, WorkflowStepStatus],
    ) -> WorkflowRunOutcome:
        repo_workdir = self.resolve_repo_workdir(definition)

        def execute(step_id: str) -> None:
            previous = finished.get(step_id)
            if previous is WorkflowStepStatus.SUCCESS:
                return
            if previous is not None:
                raise ExecutionError(f"step {step_id} previously ended {previous.value}")

            step = definition.step(step_id)
            if step is None:
                raise ValidationError(f"workflow does not contain step {step_id!r}")
            self.store.update_step_status(run_id, step_id, WorkflowStepStatus.RUNNING)
            try:
                self._execute_step(run_id, step, repo_workdir, inputs)
            except ForgeError as error:
                self.store.append_step_log(run_id, step_id, f"error: {error}")
                self.store.update_step_status(run_id, step_id, WorkflowStepStatus.FAILED)
                raise
            self.store.update_step_status(run_id, step_id, WorkflowStepStatus.SUCCESS)

        engine = execute_sequential_workflow(definition.engine_steps(), execute)

        for record in engine.steps:
            if record.step_id in finished:
                continue
            if record.status is EngineStepStatus.SKIPPED:
                self.store.update_step_status(run_id, record.step_id, WorkflowStepStatus.SKIPPED)
            elif record.status is EngineStepStatus.FAILED:
                current = self.store.get_run(run_id).step(record.step_id)
                if current is not None and not current.status.is_terminal:
                    self.store.append_step_log(run_id, record.step_id, f"error: {record.error}")
                    self.store.update_step_status(
                        run_id,
                        record.step_id,
                        WorkflowStepStatus.FAILED,
                    )

        status = WorkflowRunStatus.SUCCESS if engine.success else WorkflowRunStatus.FAILED
        run = self.store.update_run_status(run_id, status)
        return WorkflowRunOutcome(run=run, engine=engine)

    def _execute_step(
        self,
        run_id: str,
        step: WorkflowStepDefinition,
        repo_workdir: Path,
        inputs: dict[str, str],
    ) -> None:
        input_env = {f"FORGE_INPUT_{key.upper()}": value for key, value in inputs.items()}
        step_type = step.step_type

        if step_type is StepType.BASH:
            result = execute_bash_step(
                BashStepRequest(
                    step_id=step.id,
                    cmd=step.cmd,
                    repo_workdir=repo_workdir,
                    workdir=step.workdir,
                    extra_env={**input_env, **step.env},
                ),
            )
            append_bash_step_logs(self.store, run_id, result)
            self._finish_subprocess_step(run_id, step.id, result)
            return

        if step_type is StepType.AGENT:
            request = self._agent_request(step, repo_workdir, input_env)
            result = execute_agent_step(request, self.planner)
            for line in format_agent_step_log_lines(result):
                self.store.append_step_log(run_id, step.id, line)
            self._finish_subprocess_step(run_id, step.id, result)
            return

        if step_type is StepType.LOOP:
            loop = execute_loop_step(
                LoopStepRequest(
                    step_id=step.id,
                    iteration_request=self._agent_request(step, repo_workdir, input_env),
                    max_iterations=step.max_iterations,
                ),
                loop_stop_condition(step.stop, repo_workdir, self.tasks_open_provider),
                self.planner,
            )
            for line in format_loop_step_log_lines(loop):
                self.store.append_step_log(run_id, step.id, line)
            self.store.update_step_outputs(
                run_id,
                step.id,
                {
                    "iterations": str(loop.iterations),
                    "stop_status": loop.stop_status.value,
                    "last_exit_code": str(loop.last_exit_code),
                },
            )
            if loop.stop_status is LoopStopStatus.ITERATION_FAILED:
                raise ExecutionError(f"loop step {step.id} stopped: {loop.stop_reason}")
            return

        raise ValidationError(f"step {step.id!r} has unknown type {step.type!r}")

    def _finish_subprocess_step(
        self,
        run_id: str,
        step_id: str,
        result: StepExecutionResult,
    ) -> None:
        self.store.update_step_outputs(run_id, step_id, {"exit_code": str(result.exit_code)})
        if not result.success:
            raise ExecutionError(f"exit status {result.exit_code}")

    def _agent_request(
        self,
        step: WorkflowStepDefinition,
        repo_workdir: Path,
        input_env: dict[str, str],
    ) -> AgentStepRequest:
        if step.profile is None:
            raise ValidationError(f"step {step.id!r} requires a profile")
        prompt_path = ""
        prompt_content = step.prompt
        if step.prompt_path:
            path = Path(step.prompt_path)
            if not path.is_absolute():
                path = repo_workdir / path
            prompt_path = str(path)
            if not prompt_content:
                try:
                    prompt_content = path.read_text("utf-8")
                except OSError as error:
                    raise ValidationError(
                        f"step {step.id!r} prompt_path {path} is not readable: {error}",
                    ) from error
        base_env = list(self.base_env) if self.base_env is not None else capture_base_env()
        base_env.extend(f"{key}={value}" for key, value in input_env.items())
        return AgentStepRequest(
            step_id=step.id,
            prompt_content=prompt_content,
            prompt_path=prompt_path,
            profile=step.profile,
            workdir=repo_workdir,
            base_env=base_env,
        )

    def resolve_repo_workdir(self, definition: WorkflowDefinition) -> Path:
        if not definition.repo_root:
            return self.repo_workdir
        root = Path(definition.repo_root).expanduser()
        return root if root.is_absolute() else self.repo_workdir / root


WorkflowLoader = Callable[[str], WorkflowDefinition]


def run_job(  # noqa: PLR0913
    job_store: JobStore,
    runner: WorkflowRunner,
    job_name: str,
    workflow_loader: WorkflowLoader,
    *,
    trigger: str = "manual",
    inputs: dict[str, str] | None = None,
) -> tuple[JobRunRecord, WorkflowRunOutcome]:
    """Execute a job's workflow and append the outcome to the job's run log."""

    job = job_store.require_job(job_name)
    definition = workflow_loader(job.workflow)
    started_at = utc_now()
    outcome = runner.run(definition, inputs)
    record = JobRunRecord(
        run_id=new_job_run_id(),
        job_name=job.name,
        status="success" if outcome.success else "failed",
        trigger=trigger.strip() or "manual",
        started_at=to_rfc3339(started_at),
        finished_at=now_rfc3339(),
        inputs=dict(inputs or {}),
        outputs={"workflow_run_id": outcome.run.id},
    )
    job_store.append_run(record)
    logger.info("Job %s run %s finished %s", job.name, record.run_id, record.status)
    return record, outcome


def _require_valid(definition: WorkflowDefinition) -> None:
    problems = validate_workflow(definition)
    if problems:
        raise ValidationError(
            f"invalid workflow {definition.name or definition.source!r}: " + "; ".join(problems),
        )
