"""Agent harness step executor."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path

from forge_engine.errors import ExecutionError, ForgeError
from forge_engine.executors.base import (
    StepExecutionResult,
    capture_base_env,
    combine_output,
    decode_stream,
    duration_ms,
    env_pairs_to_dict,
    exit_code_of,
    indented_block,
    run_bash,
)
from forge_engine.executors.harness import ExecutionPlanner, ProfileSpec, build_execution_plan
from forge_engine.timeutil import to_rfc3339, utc_now

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class AgentStepRequest:
    """Inputs for one agent invocation."""

    step_id: str
    prompt_content: str
    profile: ProfileSpec
    workdir: Path
    prompt_path: str = ""
    base_env: list[str] = field(default_factory=capture_base_env)


def execute_agent_step(
    request: AgentStepRequest,
    planner: ExecutionPlanner = build_execution_plan,
) -> StepExecutionResult:
    """Plan and run one agent command under a fully replaced environment.

    A planner failure raises ``ExecutionError`` before anything is spawned.
    A non-zero exit code is reported through ``success`` rather than raised.
    """

    started_at = utc_now()
    logs = [f"{to_rfc3339(started_at)} step={request.step_id} started"]

    try:
        plan = planner(
            request.profile,
            request.prompt_path,
            request.prompt_content,
            request.base_env,
        )
    except (ForgeError, ValueError) as error:
        raise ExecutionError(
            f"build agent execution plan for step {request.step_id}: {error}",
        ) from error
    logs.append(f"{to_rfc3339(utc_now())} step={request.step_id} command={plan.command}")
    logger.debug("Agent step %s command: %s", request.step_id, plan.command)

    completed = run_bash(
        plan.command,
        cwd=request.workdir,
        env=env_pairs_to_dict(plan.env),
        stdin=plan.stdin,
        step_id=request.step_id,
        action="spawn agent step",
    )

    finished_at = utc_now()
    exit_code = exit_code_of(completed.returncode)
    stdout = decode_stream(completed.stdout)
    stderr = decode_stream(completed.stderr)
    logs.append(
        f"{to_rfc3339(finished_at)} step={request.step_id} completed exit_code={exit_code}",
    )
    if completed.returncode != 0:
        logger.warning("Agent step %s exited with %s", request.step_id, exit_code)

    return StepExecutionResult(
        step_id=request.step_id,
        command=plan.command,
        exit_code=exit_code,
        success=completed.returncode == 0,
        stdout=stdout,
        stderr=stderr,
        output=combine_output(stdout, stderr),
        started_at=started_at,
        finished_at=finished_at,
        duration_ms=duration_ms(started_at, finished_at),
        logs=logs,
    )


def format_agent_step_log_lines(result: StepExecutionResult) -> list[str]:
    return [
        *result.logs,
        *indented_block("stdout", result.stdout),
        *indented_block("stderr", result.stderr),
    ]

