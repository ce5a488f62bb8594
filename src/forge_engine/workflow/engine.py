"""Dependency ordering and sequential execution of workflow steps."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Protocol

from forge_engine.errors import ValidationError
from forge_engine.timeutil import utc_now

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class WorkflowEngineStep:
    id: str
    depends_on: tuple[str, ...] = ()


class EngineStepStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass(slots=True)
class WorkflowEngineStepRecord:
    step_id: str
    status: EngineStepStatus = EngineStepStatus.PENDING
    error: str | None = None


@dataclass(slots=True)
class WorkflowEngineRun:
    started_at: datetime
    finished_at: datetime
    ordered_step_ids: list[str]
    steps: list[WorkflowEngineStepRecord] = field(default_factory=list)

    def step(self, step_id: str) -> WorkflowEngineStepRecord | None:
        for record in self.steps:
            if record.step_id == step_id:
                return record
        return None

    @property
    def success(self) -> bool:
        return all(record.status is EngineStepStatus.SUCCESS for record in self.steps)


class StepExecutor(Protocol):
    """Runs one step by id; raising any exception marks the step failed."""

    def __call__(self, step_id: str) -> None: ...


def workflow_step_order(steps: list[WorkflowEngineStep]) -> list[str]:
    """Topological order of ``steps``; ready steps run in declaration order."""

    index_of: dict[str, int] = {}
    for index, step in enumerate(steps):
        step_id = step.id.strip()
        if not step_id:
            raise ValidationError(f"step id at index {index} is empty")
        if step_id in index_of:
            raise ValidationError(f"duplicate step id {step_id!r}")
        index_of[step_id] = index

    in_degree = [0] * len(steps)
    dependents: list[list[int]] = [[] for _ in steps]
    for index, step in enumerate(steps):
        for dependency in step.depends_on:
            dep_index = index_of.get(dependency.strip())
            if dep_index is None:
                raise ValidationError(
                    f"step {step.id.strip()!r} has unknown dependency {dependency.strip()!r}",
                )
            in_degree[index] += 1
            dependents[dep_index].append(index)

    ready = [index for index, degree in enumerate(in_degree) if degree == 0]
    order: list[str] = []
    while ready:
        ready.sort()
        current = ready.pop(0)
        order.append(steps[current].id.strip())
        for dependent in dependents[current]:
            in_degree[dependent] -= 1
            if in_degree[dependent] == 0:
                ready.append(dependent)

    if len(order) != len(steps):
        raise ValidationError("cycle detected in workflow steps")
    return order


def execute_sequential_workflow(
    steps: list[WorkflowEngineStep],
    execute_step: StepExecutor,
) -> WorkflowEngineRun:
    """Run steps one at a time in dependency order.

    The first failure skips every step that has not started yet, whether or
    not it depends on the failed one. A step whose dependencies did not all
    succeed is skipped as well.
    """

    order = workflow_step_order(steps)
    depends_on = {step.id.strip(): [dep.strip() for dep in step.depends_on] for step in steps}
    records = {step_id: WorkflowEngineStepRecord(step_id=step_id) for step_id in order}
    started_at = utc_now()
    stop_remaining = False

    for step_id in order:
        record = records[step_id]
        if stop_remaining or any(
            records[dependency].status is not EngineStepStatus.SUCCESS
            for dependency in depends_on[step_id]
        ):
            record.status = EngineStepStatus.SKIPPED
            continue

        record.status = EngineStepStatus.RUNNING
        try:
            execute_step(step_id)
        except Exception as error:  # noqa: BLE001
            record.status = EngineStepStatus.FAILED
            record.error = str(error)
            stop_remaining = True
            logger.warning("Workflow step %s failed: %s", step_id, error)
        else:
            record.status = EngineStepStatus.SUCCESS

    return WorkflowEngineRun(
        started_at=started_at,
        finished_at=utc_now(),
        ordered_step_ids=order,
        steps=[records[step_id] for step_id in order],
    )
