"""Bounded repetition of an agent step with a pluggable stop decision."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Protocol

from forge_engine.errors import ExecutionError, ForgeError, ValidationError
from forge_engine.executors.agent import AgentStepRequest, execute_agent_step
from forge_engine.executors.base import StepExecutionResult, indented_block
from forge_engine.executors.harness import ExecutionPlanner, build_execution_plan
from forge_engine.timeutil import to_rfc3339, utc_now

logger = logging.getLogger(__name__)


class LoopStopStatus(str, Enum):
    STOP_CONDITION_MET = "stop_condition_met"
    MAX_ITERATIONS_REACHED = "max_iterations_reached"
    ITERATION_FAILED = "iteration_failed"


@dataclass(slots=True)
class LoopStopEvaluation:
    should_stop: bool
    reason: str = ""


class StopCondition(Protocol):
    """Decides after each successful iteration whether the loop is done."""

    def __call__(self, iteration: int, result: StepExecutionResult) -> LoopStopEvaluation: ...


def never_stop(iteration: int, result: StepExecutionResult) -> LoopStopEvaluation:
    return LoopStopEvaluation(should_stop=False)


@dataclass(slots=True)
class LoopStepRequest:
    step_id: str
    iteration_request: AgentStepRequest
    max_iterations: int


@dataclass(slots=True)
class LoopStepExecutionResult:
    step_id: str
    iterations: int
    stop_status: LoopStopStatus
    stop_reason: str
    started_at: datetime
    finished_at: datetime
    last_exit_code: int
    logs: list[str] = field(default_factory=list)
    iteration_results: list[StepExecutionResult] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.stop_status is not LoopStopStatus.ITERATION_FAILED


def execute_loop_step(
    request: LoopStepRequest,
    stop_condition: StopCondition = never_stop,
    planner: ExecutionPlanner = build_execution_plan,
) -> LoopStepExecutionResult:
    """Run ``request.iteration_request`` up to ``max_iterations`` times.

    Iteration ``n`` runs under step id ``<step_id>#<n>``. A failed iteration
    ends the loop before ``stop_condition`` is consulted, so a failure always
    wins over a stop decision.
    """

    if request.max_iterations <= 0:
        raise ValidationError("max_iterations must be greater than 0")

    started_at = utc_now()
    logs = [
        f"{to_rfc3339(started_at)} step={request.step_id} loop_started "
        f"max_iterations={request.max_iterations}",
    ]
    results: list[StepExecutionResult] = []
    last_exit_code = 0

    def finish(
        iteration: int,
        status: LoopStopStatus,
        reason: str,
    ) -> LoopStepExecutionResult:
        finished_at = utc_now()
        line = (
            f"{to_rfc3339(finished_at)} step={request.step_id} "
            f"stop_status={status.value} iterations={iteration}"
        )
        logs.append(f"{line} reason={reason}" if reason else line)
        logger.info("Loop step %s stopped: %s", request.step_id, status.value)
        return LoopStepExecutionResult(
            step_id=request.step_id,
            iterations=iteration,
            stop_status=status,
            stop_reason=reason,
            started_at=started_at,
            finished_at=finished_at,
            last_exit_code=last_exit_code,
            logs=logs,
            iteration_results=results,
        )

    for iteration in range(1, request.max_iterations + 1):
        logs.append(
            f"{to_rfc3339(utc_now())} step={request.step_id} iteration={iteration} started",
        )
        iteration_request = replace(
            request.iteration_request,
            step_id=f"{request.step_id}#{iteration}",
        )
        try:
            result = execute_agent_step(iteration_request, planner)
        except ForgeError as error:
            raise ExecutionError(
                f"execute loop step {request.step_id} iteration {iteration}: {error}",
            ) from error
        last_exit_code = result.exit_code
        results.append(result)
        logs.append(
            f"{to_rfc3339(utc_now())} step={request.step_id} iteration={iteration} "
            f"completed exit_code={result.exit_code}",
        )

        if not result.success:
            return finish(
                iteration,
                LoopStopStatus.ITERATION_FAILED,
                f"iteration {iteration} failed",
            )

        evaluation = stop_condition(iteration, result)
        if evaluation.should_stop:
            reason = evaluation.reason.strip() or "stop condition matched"
            return finish(iteration, LoopStopStatus.STOP_CONDITION_MET, reason)

    return finish(
        request.max_iterations,
        LoopStopStatus.MAX_ITERATIONS_REACHED,
        f"max iterations {request.max_iterations} reached",
    )


def format_loop_step_log_lines(result: LoopStepExecutionResult) -> list[str]:
    lines = list(result.logs)
    for iteration_result in result.iteration_results:
        lines.extend(indented_block(f"{iteration_result.step_id} stdout", iteration_result.stdout))
        lines.extend(indented_block(f"{iteration_result.step_id} stderr", iteration_result.stderr))
    return lines
