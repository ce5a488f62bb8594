from __future__ import annotations

import allure
import pytest

from forge_engine.errors import ValidationError
from forge_engine.workflow.engine import (
    EngineStepStatus,
    WorkflowEngineStep,
    execute_sequential_workflow,
    workflow_step_order,
)

pytestmark = [
    allure.epic("Workflows"),
    allure.feature("DAG Engine"),
]


def _steps(*specs: tuple[str, tuple[str, ...]]) -> list[WorkflowEngineStep]:
    return [WorkflowEngineStep(id=step_id, depends_on=deps) for step_id, deps in specs]


def test_order_breaks_ties_by_declaration() -> None:
    steps = _steps(("a", ()), ("c", ("a",)), ("b", ("a",)), ("d", ("b", "c")))

    assert workflow_step_order(steps) == ["a", "c", "b", "d"]


def test_order_is_stable_for_independent_steps() -> None:
    steps = _steps(("z", ()), ("y", ()), ("x", ("z",)))

    assert workflow_step_order(steps) == ["z", "y", "x"]


def test_order_reports_unknown_dependency() -> None:
    with pytest.raises(ValidationError, match="step 'b' has unknown dependency 'ghost'"):
        workflow_step_order(_steps(("a", ()), ("b", ("ghost",))))


def test_order_rejects_cycles_without_partial_result() -> None:
    with pytest.raises(ValidationError, match="cycle detected"):
        workflow_step_order(_steps(("a", ("c",)), ("b", ("a",)), ("c", ("b",))))


@pytest.mark.parametrize(
    ("steps", "message"),
    [
        (_steps(("a", ()), ("", ())), "step id at index 1 is empty"),
        (_steps(("a", ()), ("a", ())), "duplicate step id"),
    ],
)
def test_order_validates_ids(steps: list[WorkflowEngineStep], message: str) -> None:
    with pytest.raises(ValidationError, match=message):
        workflow_step_order(steps)


def test_failure_skips_downstream_chain() -> None:
    called: list[str] = []

    def execute(step_id: str) -> None:
        called.append(step_id)
        if step_id == "b":
            raise RuntimeError("b exploded")

    run = execute_sequential_workflow(_steps(("a", ()), ("b", ("a",)), ("c", ("b",))), execute)

    assert called == ["a", "b"]
    assert [(record.step_id, record.status) for record in run.steps] == [
        ("a", EngineStepStatus.SUCCESS),
        ("b", EngineStepStatus.FAILED),
        ("c", EngineStepStatus.SKIPPED),
    ]
    failed = run.step("b")
    assert failed is not None
    assert failed.error == "b exploded"
    assert run.success is False
    assert run.finished_at >= run.started_at


def test_first_failure_skips_unrelated_remaining_steps() -> None:
    called: list[str] = []

    def execute(step_id: str) -> None:
        called.append(step_id)
        if step_id == "a":
            raise RuntimeError("boom")

    run = execute_sequential_workflow(_steps(("a", ()), ("independent", ())), execute)

    assert called == ["a"]
    independent = run.step("independent")
    assert independent is not None
    assert independent.status is EngineStepStatus.SKIPPED


def test_all_success_runs_every_step_in_order() -> None:
    called: list[str] = []
    steps = _steps(("a", ()), ("c", ("a",)), ("b", ("a",)), ("d", ("b", "c")))

    run = execute_sequential_workflow(steps, called.append)

    assert called == ["a", "c", "b", "d"]
    assert run.ordered_step_ids == ["a", "c", "b", "d"]
    assert run.success is True


def test_invalid_graph_raises_before_executing() -> None:
    called: list[str] = []

    with pytest.raises(ValidationError):
        execute_sequential_workflow(_steps(("a", ("a",)),), called.append)
    assert called == []
