"""Domain models for persisted workflow runs."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class WorkflowRunStatus(str, Enum):
    """Run lifecycle states."""

    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"
    CANCELED = "canceled"

    @property
    def is_terminal(self) -> bool:
        return self is not WorkflowRunStatus.RUNNING


class WorkflowStepStatus(str, Enum):
    """Per-step lifecycle states."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELED = "canceled"

    @property
    def is_terminal(self) -> bool:
        return self not in (WorkflowStepStatus.PENDING, WorkflowStepStatus.RUNNING)


@dataclass(slots=True)
class WorkflowStepRun:
    """Status and log location of one step inside a run."""

    step_id: str
    status: WorkflowStepStatus
    log_file: str
    started_at: str | None = None
    finished_at: str | None = None
    outputs: dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "step_id": self.step_id,
            "status": self.status.value,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
        }
        if self.outputs:
            payload["outputs"] = dict(sorted(self.outputs.items()))
        payload["log_file"] = self.log_file
        return payload

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> WorkflowStepRun:
        outputs = raw.get("outputs") or {}
        if not isinstance(outputs, dict):
            raise TypeError("step outputs must be an object")
        return cls(
            step_id=_require_str(raw, "step_id"),
            status=WorkflowStepStatus(_require_str(raw, "status")),
            log_file=_require_str(raw, "log_file"),
            started_at=_optional_str(raw, "started_at"),
            finished_at=_optional_str(raw, "finished_at"),
            outputs={str(key): str(value) for key, value in outputs.items()},
        )


@dataclass(slots=True)
class WorkflowRunRecord:
    """Whole-record contents of ``<run_id>/run.json``."""

    id: str
    workflow_name: str
    workflow_source: str
    status: WorkflowRunStatus
    started_at: str
    updated_at: str
    finished_at: str | None = None
    steps: list[WorkflowStepRun] = field(default_factory=list)

    def step(self, step_id: str) -> WorkflowStepRun | None:
        for entry in self.steps:
            if entry.step_id == step_id:
                return entry
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "workflow_name": self.workflow_name,
            "workflow_source": self.workflow_source,
            "status": self.status.value,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "updated_at": self.updated_at,
            "steps": [step.to_dict() for step in self.steps],
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> WorkflowRunRecord:
        raw_steps = raw.get("steps", [])
        if not isinstance(raw_steps, list):
            raise TypeError("workflow run steps must be an array")
        steps = []
        for item in raw_steps:
            if not isinstance(item, dict):
                raise TypeError("workflow run step must be an object")
            steps.append(WorkflowStepRun.from_dict(item))
        return cls(
            id=_require_str(raw, "id"),
            workflow_name=_require_str(raw, "workflow_name"),
            workflow_source=_require_str(raw, "workflow_source"),
            status=WorkflowRunStatus(_require_str(raw, "status")),
            started_at=_require_str(raw, "started_at"),
            finished_at=_optional_str(raw, "finished_at"),
            updated_at=_require_str(raw, "updated_at"),
            steps=steps,
        )


@dataclass(slots=True)
class WorkflowResumeState:
    """A run plus the ordered ids of its steps that are not terminal yet."""

    run: WorkflowRunRecord
    remaining_step_ids: list[str]


def _require_str(raw: dict[str, Any], key: str) -> str:
    value = raw.get(key)
    if not isinstance(value, str):
        raise TypeError(f"{key} must be a string")
    return value


def _optional_str(raw: dict[str, Any], key: str) -> str | None:
    value = raw.get(key)
    if value is not None and not isinstance(value, str):
        raise TypeError(f"{key} must be a string when provided")
    return value
