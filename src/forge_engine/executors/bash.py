"""Bash command step executor."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING

from forge_engine.errors import ValidationError
from forge_engine.executors.base import (
    StepExecutionResult,
    combine_output,
    decode_stream,
    duration_ms,
    exit_code_of,
    indented_block,
    run_bash,
)
from forge_engine.timeutil import to_rfc3339, utc_now

if TYPE_CHECKING:
    from forge_engine.workflow.run_store import WorkflowRunStore

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class BashStepRequest:
    """Inputs for one bash step; ``workdir`` is relative to ``repo_workdir`` unless absolute."""

    step_id: str
    cmd: str
    repo_workdir: Path | str
    workdir: str = ""
    extra_env: dict[str, str] = field(default_factory=dict)


@dataclass(slots=True)
class BashStepExecutionResult(StepExecutionResult):
    resolved_workdir: Path = Path()


def execute_bash_step(request: BashStepRequest) -> BashStepExecutionResult:
    step_id = request.step_id.strip()
    if not step_id:
        raise ValidationError("bash step id is required")
    cmd = request.cmd.strip()
    if not cmd:
        raise ValidationError(f"bash step {step_id} command is required")

    workdir = resolve_bash_workdir(request.repo_workdir, request.workdir)
    if not workdir.exists():
        raise ValidationError(f"bash step {step_id} workdir {workdir} does not exist")
    if not workdir.is_dir():
        raise ValidationError(f"bash step {step_id} workdir {workdir} is not a directory")

    started_at = utc_now()
    logs = [
        f"{to_rfc3339(started_at)} step={step_id} type=bash started",
        f"step={step_id} cmd={cmd}",
        f"step={step_id} workdir={workdir}",
    ]
    logger.debug("Bash step %s in %s: %s", step_id, workdir, cmd)

    env = None
    if request.extra_env:
        env = os.environ.copy()
        env.update(request.extra_env)

    completed = run_bash(
        cmd,
        cwd=workdir,
        env=env,
        stdin=None,
        step_id=step_id,
        action="execute bash step",
    )

    finished_at = utc_now()
    exit_code = exit_code_of(completed.returncode)
    stdout = decode_stream(completed.stdout)
    stderr = decode_stream(completed.stderr)
    logs.append(f"{to_rfc3339(finished_at)} step={step_id} completed exit_code={exit_code}")
    if completed.returncode != 0:
        logger.warning("Bash step %s exited with %s", step_id, exit_code)

    return BashStepExecutionResult(
        step_id=step_id,
        command=cmd,
        exit_code=exit_code,
        success=completed.returncode == 0,
        stdout=stdout,
        stderr=stderr,
        output=combine_output(stdout, stderr),
        started_at=started_at,
        finished_at=finished_at,
        duration_ms=duration_ms(started_at, finished_at),
        logs=logs,
        resolved_workdir=workdir,
    )


def resolve_bash_workdir(repo_workdir: Path | str, raw_workdir: str) -> Path:
    if not str(repo_workdir).strip():
        raise ValidationError("repo workdir is required")
    repo_workdir = Path(repo_workdir)
    trimmed = raw_workdir.strip()
    if not trimmed:
        return repo_workdir
    workdir = Path(trimmed)
    if workdir.is_absolute():
        return workdir
    return repo_workdir / workdir


def format_bash_step_log_lines(result: StepExecutionResult) -> list[str]:
    """Structured log trail followed by indented ``stdout:`` and ``stderr:`` blocks."""

    return [
        *result.logs,
        *indented_block("stdout", result.stdout),
        *indented_block("stderr", result.stderr),
    ]


def append_bash_step_logs(
    store: WorkflowRunStore,
    run_id: str,
    result: StepExecutionResult,
    *,
    step_id: str | None = None,
) -> None:
    for line in format_bash_step_log_lines(result):
        store.append_step_log(run_id, step_id or result.step_id, line)
