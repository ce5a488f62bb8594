"""Persisted records for jobs, job runs and triggers."""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any

TERMINAL_RUN_STATUSES = frozenset({"success", "failed", "canceled", "recorded"})


class TriggerType(str, Enum):
    """Trigger kinds stored in ``CronTriggerRecord.trigger_type``."""

    CRON = "cron"
    WEBHOOK = "webhook"


def run_status_is_terminal(status: str) -> bool:
    return status in TERMINAL_RUN_STATUSES


@dataclass(slots=True)
class JobDefinition:
    """Named job pointing at a workflow."""

    name: str
    workflow: str
    created_at: str
    updated_at: str

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> JobDefinition:
        return cls(
            name=_require_str(raw, "name"),
            workflow=_require_str(raw, "workflow"),
            created_at=_require_str(raw, "created_at"),
            updated_at=_require_str(raw, "updated_at"),
        )


@dataclass(slots=True)
class JobRunRecord:
    """One line of a job's append-only run log."""

    run_id: str
    job_name: str
    status: str
    trigger: str
    started_at: str
    finished_at: str | None = None
    inputs: dict[str, str] = field(default_factory=dict)
    outputs: dict[str, str] = field(default_factory=dict)

    @property
    def is_terminal(self) -> bool:
        return run_status_is_terminal(self.status)

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "job_name": self.job_name,
            "status": self.status,
            "trigger": self.trigger,
            "inputs": dict(sorted(self.inputs.items())),
            "outputs": dict(sorted(self.outputs.items())),
            "started_at": self.started_at,
            "finished_at": self.finished_at,
        }

    def to_json_line(self) -> str:
        return json.dumps(self.to_dict(), ensure_ascii=False, separators=(",", ":"))

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> JobRunRecord:
        finished_at = raw.get("finished_at")
        if finished_at is not None and not isinstance(finished_at, str):
            raise TypeError("job run finished_at must be a string when provided")
        return cls(
            run_id=_require_str(raw, "run_id"),
            job_name=_require_str(raw, "job_name"),
            status=_require_str(raw, "status"),
            trigger=_require_str(raw, "trigger"),
            started_at=_require_str(raw, "started_at"),
            finished_at=finished_at,
            inputs=_string_map(raw, "inputs"),
            outputs=_string_map(raw, "outputs"),
        )


@dataclass(slots=True)
class CronTriggerRecord:
    """Cron or webhook trigger; ``cron`` holds the webhook path for webhooks."""

    trigger_id: str
    job_name: str
    cron: str
    next_fire_at: str
    enabled: bool
    created_at: str
    updated_at: str
    trigger_type: str = TriggerType.CRON.value

    @property
    def is_cron(self) -> bool:
        return self.trigger_type == TriggerType.CRON.value

    def to_dict(self) -> dict[str, Any]:
        return {
            "trigger_id": self.trigger_id,
            "trigger_type": self.trigger_type,
            "job_name": self.job_name,
            "cron": self.cron,
            "next_fire_at": self.next_fire_at,
            "enabled": self.enabled,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> CronTriggerRecord:
        enabled = raw.get("enabled")
        if not isinstance(enabled, bool):
            raise TypeError("trigger enabled must be a boolean")
        trigger_type = raw.get("trigger_type", TriggerType.CRON.value)
        if not isinstance(trigger_type, str):
            raise TypeError("trigger trigger_type must be a string")
        return cls(
            trigger_id=_require_str(raw, "trigger_id"),
            trigger_type=trigger_type,
            job_name=_require_str(raw, "job_name"),
            cron=_require_str(raw, "cron"),
            next_fire_at=_require_str(raw, "next_fire_at"),
            enabled=enabled,
            created_at=_require_str(raw, "created_at"),
            updated_at=_require_str(raw, "updated_at"),
        )


def _require_str(raw: dict[str, Any], key: str) -> str:
    value = raw.get(key)
    if not isinstance(value, str):
        raise TypeError(f"{key} must be a string")
    return value


def _string_map(raw: dict[str, Any], key: str) -> dict[str, str]:
    value = raw.get(key, {})
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise TypeError(f"{key} must be an object")
    out: dict[str, str] = {}
    for item_key, item_value in value.items():
        if not isinstance(item_value, str):
            raise TypeError(f"{key}.{item_key} must be a string")
        out[str(item_key)] = item_value
    return out
