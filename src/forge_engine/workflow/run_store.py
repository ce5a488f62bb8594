"""Filesystem persistence for workflow runs and their step logs.

Layout::

    <root>/<run_id>/run.json             whole WorkflowRunRecord, rewritten per mutation
    <root>/<run_id>/logs/NNN_<step>.log  plain-text step log

Every mutation reads the full record, changes it in memory and rewrites
``run.json``. Only one process may mutate a given run at a time.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime
from pathlib import Path
from uuid import uuid4

from forge_engine.errors import NotFoundError, StorageError, ValidationError
from forge_engine.timeutil import from_rfc3339, now_rfc3339
from forge_engine.workflow.models import (
    WorkflowResumeState,
    WorkflowRunRecord,
    WorkflowRunStatus,
    WorkflowStepRun,
    WorkflowStepStatus,
)

logger = logging.getLogger(__name__)

LEDGER_HEADER = "# Workflow Run Ledger\n\n"


class WorkflowRunStore:
    """Creates and mutates run directories under ``root_dir``."""

    def __init__(self, root_dir: Path) -> None:
        self.root_dir = root_dir

    def create_run(
        self,
        workflow_name: str,
        workflow_source: str,
        step_ids: list[str],
    ) -> WorkflowRunRecord:
        workflow_name = workflow_name.strip()
        if not workflow_name:
            raise ValidationError("workflow name is required")

        steps: list[WorkflowStepRun] = []
        seen: set[str] = set()
        for index, step_id in enumerate(step_ids):
            trimmed = step_id.strip()
            if not trimmed:
                raise ValidationError(f"step id at index {index} is empty")
            if trimmed in seen:
                raise ValidationError(f"duplicate step id {trimmed!r}")
            seen.add(trimmed)
            steps.append(
                WorkflowStepRun(
                    step_id=trimmed,
                    status=WorkflowStepStatus.PENDING,
                    log_file=step_log_file_name(index, trimmed),
                ),
            )

        now = now_rfc3339()
        record = WorkflowRunRecord(
            id=f"wfr_{uuid4().hex}",
            workflow_name=workflow_name,
            workflow_source=workflow_source,
            status=WorkflowRunStatus.RUNNING,
            started_at=now,
            updated_at=now,
            steps=steps,
        )
        _ensure_dir(self._run_dir(record.id) / "logs")
        self.write_run(record)
        logger.info("Created workflow run %s for %s", record.id, record.workflow_name)
        return record

    def get_run(self, run_id: str) -> WorkflowRunRecord:
        path = self._run_dir(run_id) / "run.json"
        try:
            raw = path.read_text("utf-8")
        except FileNotFoundError as error:
            raise NotFoundError(f"workflow run {run_id!r} not found") from error
        except UnicodeDecodeError as error:
            raise StorageError(f"decode workflow run {path}: {error}") from error
        except OSError as error:
            raise StorageError(f"read workflow run {path}: {error}") from error
        try:
            payload = json.loads(raw)
            if not isinstance(payload, dict):
                raise TypeError("expected JSON object")
            return WorkflowRunRecord.from_dict(payload)
        except (json.JSONDecodeError, TypeError, ValueError) as error:
            raise StorageError(f"decode workflow run {path}: {error}") from error

    def write_run(self, run: WorkflowRunRecord) -> None:
        run_dir = self._run_dir(run.id)
        _ensure_dir(run_dir)
        path = run_dir / "run.json"
        try:
            path.write_text(json.dumps(run.to_dict(), ensure_ascii=False, indent=2), "utf-8")
        except OSError as error:
            raise StorageError(f"write workflow run {path}: {error}") from error

    def list_runs(self) -> list[WorkflowRunRecord]:
        """All runs under the root, newest first."""

        try:
            entries = sorted(self.root_dir.iterdir())
        except FileNotFoundError:
            return []
        except OSError as error:
            raise StorageError(f"read workflow runs directory {self.root_dir}: {error}") from error
        runs = [self.get_run(entry.name) for entry in entries if (entry / "run.json").is_file()]
        runs.sort(key=lambda run: (run.started_at, run.id), reverse=True)
        return runs

    def update_run_status(self, run_id: str, status: WorkflowRunStatus) -> WorkflowRunRecord:
        run = self.get_run(run_id)
        status = WorkflowRunStatus(status)
        if run.status.is_terminal and not status.is_terminal:
            raise ValidationError(
                f"workflow run {run_id} is already {run.status.value}; cannot move to "
                f"{status.value}",
            )
        now = now_rfc3339()
        run.status = status
        if status.is_terminal and run.finished_at is None:
            run.finished_at = now
        run.updated_at = now
        self.write_run(run)
        logger.info("Workflow run %s status=%s", run_id, status.value)
        return run

    def update_step_status(
        self,
        run_id: str,
        step_id: str,
        status: WorkflowStepStatus,
    ) -> WorkflowRunRecord:
        run = self.get_run(run_id)
        step = _require_step(run, step_id)
        status = WorkflowStepStatus(status)
        if step.status.is_terminal and not status.is_terminal:
            raise ValidationError(
                f"workflow run {run_id} step {step.step_id!r} is already "
                f"{step.status.value}; cannot move to {status.value}",
            )

        now = now_rfc3339()
        if status is WorkflowStepStatus.RUNNING and step.started_at is None:
            step.started_at = now
        if status.is_terminal:
            step.finished_at = now
        step.status = status
        run.updated_at = now
        self.write_run(run)
        logger.debug("Workflow run %s step %s status=%s", run_id, step.step_id, status.value)
        return run

    def update_step_outputs(
        self,
        run_id: str,
        step_id: str,
        outputs: dict[str, str],
    ) -> WorkflowRunRecord:
        run = self.get_run(run_id)
        step = _require_step(run, step_id)
        step.outputs.update({str(key): str(value) for key, value in outputs.items()})
        run.updated_at = now_rfc3339()
        self.write_run(run)
        return run

    def append_step_log(self, run_id: str, step_id: str, line: str) -> None:
        run = self.get_run(run_id)
        step = _require_step(run, step_id)
        path = self._step_log_path(run_id, step.log_file)
        _ensure_dir(path.parent)
        text = line if line.endswith("\n") else f"{line}\n"
        try:
            with path.open("a", encoding="utf-8") as handle:
                handle.write(text)
        except OSError as error:
            raise StorageError(f"write workflow run log {path}: {error}") from error

    def read_step_log(self, run_id: str, step_id: str) -> str:
        run = self.get_run(run_id)
        step = _require_step(run, step_id)
        path = self._step_log_path(run_id, step.log_file)
        try:
            return path.read_text("utf-8")
        except FileNotFoundError:
            return ""
        except UnicodeDecodeError as error:
            raise StorageError(f"decode workflow run log {path}: {error}") from error
        except OSError as error:
            raise StorageError(f"read workflow run log {path}: {error}") from error

    def load_resume_state(self, run_id: str) -> WorkflowResumeState:
        run = self.get_run(run_id)
        remaining = [step.step_id for step in run.steps if not step.status.is_terminal]
        return WorkflowResumeState(run=run, remaining_step_ids=remaining)

    def _run_dir(self, run_id: str) -> Path:
        return self.root_dir / _validate_segment(run_id, "run id")

    def _step_log_path(self, run_id: str, log_file: str) -> Path:
        return self._run_dir(run_id) / "logs" / _validate_segment(log_file, "log file")


def step_log_file_name(index: int, step_id: str) -> str:
    """Deterministic ``NNN_<sanitized-id>.log`` name for the step at ``index``."""

    return f"{index + 1:03d}_{sanitize_segment(step_id)}.log"


def sanitize_segment(value: str) -> str:
    """Replace anything outside ``[A-Za-z0-9_-]`` with ``_``."""

    out = "".join(
        ch if ch.isascii() and (ch.isalnum() or ch in "-_") else "_" for ch in value
    ).strip("_")
    return out or "step"


def append_workflow_ledger_entry(
    store: WorkflowRunStore,
    run_id: str,
    repo_root: Path,
) -> Path:
    """Append a Markdown summary of a run to the repository's workflow ledger."""

    run = store.get_run(run_id)
    if not str(repo_root).strip():
        raise ValidationError("repo root is required")

    ledgers_dir = repo_root / ".forge" / "ledgers"
    _ensure_dir(ledgers_dir)
    ledger_path = ledgers_dir / f"workflow-{sanitize_segment(run.workflow_name)}.md"
    write_header = not ledger_path.exists() or ledger_path.stat().st_size == 0

    lines = [
        "## Workflow Run",
        f"- recorded_at: {now_rfc3339()}",
        f"- run_id: {run.id}",
        f"- workflow_name: {run.workflow_name}",
    ]
    if run.workflow_source.strip():
        lines.append(f"- workflow_source: {run.workflow_source}")
    lines.extend(
        [
            f"- status: {run.status.value}",
            f"- started_at: {run.started_at}",
            f"- finished_at: {run.finished_at or '-'}",
            f"- step_count: {len(run.steps)}",
            "- steps:",
        ],
    )
    for step in run.steps:
        error = _last_error_line(store.read_step_log(run.id, step.step_id))
        suffix = f" error={error}" if error else ""
        lines.append(
            f"  - {step.step_id} status={step.status.value} "
            f"duration_ms={_step_duration_ms(step)}{suffix}",
        )

    try:
        with ledger_path.open("a", encoding="utf-8") as handle:
            if write_header:
                handle.write(LEDGER_HEADER)
            handle.write("\n".join(lines))
            handle.write("\n\n")
    except OSError as error:
        raise StorageError(f"write workflow ledger {ledger_path}: {error}") from error
    return ledger_path


def _require_step(run: WorkflowRunRecord, step_id: str) -> WorkflowStepRun:
    trimmed = step_id.strip()
    if not trimmed:
        raise ValidationError("step id is required")
    step = run.step(trimmed)
    if step is None:
        raise NotFoundError(f"workflow run {run.id} does not contain step {trimmed!r}")
    return step


def _validate_segment(value: str, label: str) -> str:
    trimmed = value.strip()
    if not trimmed:
        raise ValidationError(f"{label} is required")
    if "/" in trimmed or "\\" in trimmed or ".." in trimmed:
        raise ValidationError(f"invalid {label}: {value!r}")
    return trimmed


def _ensure_dir(path: Path) -> None:
    try:
        path.mkdir(parents=True, exist_ok=True)
    except OSError as error:
        raise StorageError(f"create directory {path}: {error}") from error


def _step_duration_ms(step: WorkflowStepRun) -> str:
    if step.started_at is None or step.finished_at is None:
        return "-"
    try:
        started: datetime = from_rfc3339(step.started_at)
        finished: datetime = from_rfc3339(step.finished_at)
    except ValueError:
        return "-"
    return str(max(0, int((finished - started).total_seconds() * 1000)))


def _last_error_line(log: str) -> str:
    for line in reversed(log.splitlines()):
        stripped = line.strip()
        if stripped.startswith("error:"):
            return stripped.removeprefix("error:").strip()
    return ""
