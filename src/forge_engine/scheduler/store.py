"""Filesystem persistence for job definitions, run history and triggers.

Layout under the store root::

    definitions/<name>.json      pretty JSON JobDefinition
    runs/<name>.jsonl            one JobRunRecord per line, appended
    triggers/<trigger_id>.json   pretty JSON CronTriggerRecord

Every mutation is a whole-file read-mutate-write without locking. Callers must
guarantee a single writer per root (one scheduler process, ticks never
overlapping).
"""

from __future__ import annotations

import json
import logging
from collections.abc import Callable
from datetime import datetime
from pathlib import Path
from typing import Any, TypeVar
from uuid import uuid4

from forge_engine.errors import (
    NotFoundError,
    ReferentialError,
    StorageError,
    ValidationError,
)
from forge_engine.scheduler.cron import LOOKAHEAD_MINUTES, CronSchedule, parse_cron_schedule
from forge_engine.scheduler.models import (
    CronTriggerRecord,
    JobDefinition,
    JobRunRecord,
    TriggerType,
)
from forge_engine.timeutil import from_rfc3339, now_rfc3339, to_rfc3339, to_utc, utc_now

logger = logging.getLogger(__name__)

T = TypeVar("T")


def normalize_job_name(value: str) -> str:
    """Lowercase and validate a job name as ``[a-z0-9_-]+``."""

    normalized = value.strip().lower()
    if not normalized:
        raise ValidationError("job name is required")
    if any(not (ch.isascii() and (ch.isalnum() or ch in "-_")) for ch in normalized):
        raise ValidationError(f"invalid job name: {value}")
    return normalized


class JobStore:
    """Job, run-history and trigger persistence rooted at one directory."""

    def __init__(self, root: Path, *, cron_lookahead_minutes: int = LOOKAHEAD_MINUTES) -> None:
        self.root = root
        self.cron_lookahead_minutes = cron_lookahead_minutes

    @property
    def definitions_dir(self) -> Path:
        return self.root / "definitions"

    @property
    def runs_dir(self) -> Path:
        return self.root / "runs"

    @property
    def triggers_dir(self) -> Path:
        return self.root / "triggers"

    # Jobs

    def create_job(
        self,
        name: str,
        workflow: str,
        now: datetime | str | None = None,
    ) -> JobDefinition:
        normalized_name = normalize_job_name(name)
        workflow = workflow.strip()
        if not workflow:
            raise ValidationError("workflow name is required")

        self._ensure_dirs()
        path = self._definition_path(normalized_name)
        if path.is_file():
            raise ValidationError(f"job already exists: {normalized_name}")

        stamp = _stamp(now)
        definition = JobDefinition(
            name=normalized_name,
            workflow=workflow,
            created_at=stamp,
            updated_at=stamp,
        )
        _write_json(path, definition.to_dict(), label="job definition")
        logger.info("Created job %s (workflow=%s)", definition.name, definition.workflow)
        return definition

    def list_jobs(self) -> list[JobDefinition]:
        jobs = _read_json_dir(self.definitions_dir, JobDefinition.from_dict, label="job definition")
        jobs.sort(key=lambda job: job.name)
        return jobs

    def get_job(self, name: str) -> JobDefinition | None:
        path = self._definition_path(normalize_job_name(name))
        payload = _read_json_file(path, label="job definition")
        if payload is None:
            return None
        return _decode(JobDefinition.from_dict, payload, path, label="job definition")

    def require_job(self, name: str) -> JobDefinition:
        job = self.get_job(name)
        if job is None:
            raise NotFoundError(f"job not found: {normalize_job_name(name)}")
        return job

    # Runs

    def record_run(
        self,
        name: str,
        trigger: str = "manual",
        inputs: dict[str, str] | None = None,
    ) -> JobRunRecord:
        """Append a ``recorded`` run for an existing job."""

        job = self.require_job(name)
        now = now_rfc3339()
        run = JobRunRecord(
            run_id=new_job_run_id(),
            job_name=job.name,
            status="recorded",
            trigger=trigger.strip(),
            inputs=dict(inputs or {}),
            started_at=now,
            finished_at=now,
        )
        self.append_run(run)
        return run

    def append_run(self, run: JobRunRecord) -> None:
        self._ensure_dirs()
        path = self._run_log_path(run.job_name)
        try:
            with path.open("a", encoding="utf-8") as handle:
                handle.write(run.to_json_line())
                handle.write("\n")
        except OSError as error:
            raise StorageError(f"write run log {path}: {error}") from error

    def list_runs(self, name: str, limit: int = 0) -> list[JobRunRecord]:
        """Runs newest first; ``limit == 0`` returns all of them."""

        path = self._run_log_path(normalize_job_name(name))
        runs = [record for _, record in _read_run_log(path)]
        runs.sort(key=lambda run: (run.started_at, run.run_id), reverse=True)
        if limit > 0:
            return runs[:limit]
        return runs

    def find_run(self, run_id: str) -> JobRunRecord | None:
        run_id = run_id.strip()
        for path in _sorted_files(self.runs_dir, ".jsonl"):
            for _, record in _read_run_log(path):
                if record.run_id == run_id:
                    return record
        return None

    def cancel_run(self, run_id: str, now: datetime | str | None = None) -> JobRunRecord:
        """Mark one run ``canceled``; other lines of its log stay byte-identical."""

        run_id = run_id.strip()
        if not run_id:
            raise ValidationError("run id is required")

        finished_at = _stamp(now)
        for path in _sorted_files(self.runs_dir, ".jsonl"):
            lines: list[str] = []
            canceled: JobRunRecord | None = None
            for raw_line, record in _read_run_log(path):
                if record.run_id == run_id:
                    record.status = "canceled"
                    record.finished_at = finished_at
                    canceled = record
                    lines.append(record.to_json_line())
                else:
                    lines.append(raw_line)
            if canceled is None:
                continue
            try:
                path.write_text("".join(f"{line}\n" for line in lines), "utf-8")
            except OSError as error:
                raise StorageError(f"write run log {path}: {error}") from error
            logger.info("Canceled run %s for job %s", canceled.run_id, canceled.job_name)
            return canceled

        raise NotFoundError(f"run not found: {run_id}")

    # Triggers

    def create_cron_trigger(
        self,
        job_name: str,
        cron: str,
        now: datetime | None = None,
    ) -> CronTriggerRecord:
        job = self.require_job(job_name)
        expression = cron.strip()
        if not expression:
            raise ValidationError("cron expression is required")
        moment = to_utc(now or utc_now())
        schedule = parse_cron_schedule(expression)
        next_fire = self._next_fire(schedule, moment, f"cron {cron!r}")

        self._ensure_dirs()
        record = CronTriggerRecord(
            trigger_id=new_trigger_id(),
            trigger_type=TriggerType.CRON.value,
            job_name=job.name,
            cron=expression,
            next_fire_at=to_rfc3339(next_fire),
            enabled=True,
            created_at=to_rfc3339(moment),
            updated_at=to_rfc3339(moment),
        )
        self._write_trigger(record)
        logger.info(
            "Created cron trigger %s for job %s (next_fire_at=%s)",
            record.trigger_id,
            record.job_name,
            record.next_fire_at,
        )
        return record

    def create_webhook_trigger(
        self,
        job_name: str,
        webhook_path: str,
        now: datetime | None = None,
    ) -> CronTriggerRecord:
        job = self.require_job(job_name)
        path = webhook_path.strip()
        if not path:
            raise ValidationError("webhook path is required")
        if not path.startswith("/"):
            raise ValidationError(f"invalid webhook path {path!r}: expected leading '/'")

        moment = to_rfc3339(now or utc_now())
        self._ensure_dirs()
        record = CronTriggerRecord(
            trigger_id=new_trigger_id(),
            trigger_type=TriggerType.WEBHOOK.value,
            job_name=job.name,
            cron=path,
            next_fire_at="",
            enabled=True,
            created_at=moment,
            updated_at=moment,
        )
        self._write_trigger(record)
        logger.info("Created webhook trigger %s for job %s", record.trigger_id, record.job_name)
        return record

    def list_triggers(self) -> list[CronTriggerRecord]:
        triggers = _read_json_dir(self.triggers_dir, CronTriggerRecord.from_dict, label="trigger")
        triggers.sort(key=lambda trigger: trigger.trigger_id)
        return triggers

    def get_trigger(self, trigger_id: str) -> CronTriggerRecord | None:
        path = self._trigger_path(_require_trigger_id(trigger_id))
        payload = _read_json_file(path, label="trigger")
        if payload is None:
            return None
        return _decode(CronTriggerRecord.from_dict, payload, path, label="trigger")

    def remove_trigger(self, trigger_id: str) -> CronTriggerRecord | None:
        record = self.get_trigger(trigger_id)
        if record is None:
            return None
        path = self._trigger_path(record.trigger_id)
        try:
            path.unlink()
        except OSError as error:
            raise StorageError(f"remove trigger {path}: {error}") from error
        logger.info("Removed trigger %s", record.trigger_id)
        return record

    def set_trigger_enabled(
        self,
        trigger_id: str,
        enabled: bool,
        now: datetime | None = None,
    ) -> CronTriggerRecord:
        """Enable or disable a trigger; re-enabling reschedules from ``now``."""

        record = self.get_trigger(trigger_id)
        if record is None:
            raise NotFoundError(f"trigger not found: {trigger_id.strip()}")
        moment = to_utc(now or utc_now())
        if enabled and not record.enabled and record.is_cron:
            schedule = parse_cron_schedule(record.cron)
            record.next_fire_at = to_rfc3339(
                self._next_fire(schedule, moment, f"trigger {record.trigger_id}"),
            )
        record.enabled = enabled
        record.updated_at = to_rfc3339(moment)
        self._write_trigger(record)
        return record

    def tick_cron_triggers(self, now: datetime | None = None) -> list[JobRunRecord]:
        """Fire every enabled cron trigger that is due at ``now``.

        A trigger whose job no longer exists aborts the tick with
        ``ReferentialError``; runs fired earlier in the same tick stay recorded.
        """

        moment = to_utc(now or utc_now())
        moment_text = to_rfc3339(moment)
        fired: list[JobRunRecord] = []

        for trigger in self.list_triggers():
            if not trigger.enabled or not trigger.is_cron:
                continue
            try:
                next_fire = from_rfc3339(trigger.next_fire_at)
            except ValueError as error:
                raise StorageError(
                    f"parse trigger {trigger.trigger_id} next_fire_at "
                    f"{trigger.next_fire_at!r}: {error}",
                ) from error
            if next_fire > moment:
                continue

            if self.get_job(trigger.job_name) is None:
                raise ReferentialError(
                    f"trigger {trigger.trigger_id} references missing job {trigger.job_name}",
                )

            run = JobRunRecord(
                run_id=new_job_run_id(),
                job_name=trigger.job_name,
                status="recorded",
                trigger=f"cron:{trigger.cron}",
                started_at=moment_text,
                finished_at=moment_text,
            )
            self.append_run(run)
            fired.append(run)

            schedule = parse_cron_schedule(trigger.cron)
            trigger.next_fire_at = to_rfc3339(
                self._next_fire(schedule, moment, f"trigger {trigger.trigger_id}"),
            )
            trigger.updated_at = moment_text
            self._write_trigger(trigger)
            logger.info(
                "Fired trigger %s for job %s run=%s next_fire_at=%s",
                trigger.trigger_id,
                trigger.job_name,
                run.run_id,
                trigger.next_fire_at,
            )

        return fired

    def _next_fire(self, schedule: CronSchedule, moment: datetime, subject: str) -> datetime:
        next_fire = schedule.next_fire_after(
            moment,
            lookahead_minutes=self.cron_lookahead_minutes,
        )
        if next_fire is None:
            raise ValidationError(f"unable to compute next fire time for {subject}")
        return next_fire

    def _ensure_dirs(self) -> None:
        for directory in (self.definitions_dir, self.runs_dir, self.triggers_dir):
            try:
                directory.mkdir(parents=True, exist_ok=True)
            except OSError as error:
                raise StorageError(f"create directory {directory}: {error}") from error

    def _definition_path(self, name: str) -> Path:
        return self.definitions_dir / f"{name}.json"

    def _run_log_path(self, name: str) -> Path:
        return self.runs_dir / f"{name}.jsonl"

    def _trigger_path(self, trigger_id: str) -> Path:
        return self.triggers_dir / f"{trigger_id}.json"

    def _write_trigger(self, record: CronTriggerRecord) -> None:
        _write_json(self._trigger_path(record.trigger_id), record.to_dict(), label="trigger")


def new_job_run_id() -> str:
    return f"jobrun-{uuid4().hex}"


def new_trigger_id() -> str:
    return f"trg_{uuid4().hex}"


def _stamp(now: datetime | str | None) -> str:
    if now is None:
        return now_rfc3339()
    if isinstance(now, datetime):
        return to_rfc3339(now)
    return now


def _require_trigger_id(trigger_id: str) -> str:
    trimmed = trigger_id.strip()
    if not trimmed:
        raise ValidationError("trigger id is required")
    if "/" in trimmed or "\\" in trimmed or ".." in trimmed:
        raise ValidationError(f"invalid trigger id: {trigger_id!r}")
    return trimmed


def _write_json(path: Path, payload: dict[str, Any], *, label: str) -> None:
    try:
        path.write_text(json.dumps(payload, ensure_ascii=False, indent=2), "utf-8")
    except OSError as error:
        raise StorageError(f"write {label} {path}: {error}") from error


def _read_json_file(path: Path, *, label: str) -> dict[str, Any] | None:
    try:
        raw = path.read_text("utf-8")
    except FileNotFoundError:
        return None
    except UnicodeDecodeError as error:
        raise StorageError(f"decode {label} {path}: {error}") from error
    except OSError as error:
        raise StorageError(f"read {label} {path}: {error}") from error
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError as error:
        raise StorageError(f"decode {label} {path}: {error}") from error
    if not isinstance(payload, dict):
        raise StorageError(f"decode {label} {path}: expected JSON object")
    return payload


def _read_json_dir(
    directory: Path,
    factory: Callable[[dict[str, Any]], T],
    *,
    label: str,
) -> list[T]:
    records: list[T] = []
    for path in _sorted_files(directory, ".json"):
        payload = _read_json_file(path, label=label)
        if payload is None:
            continue
        records.append(_decode(factory, payload, path, label=label))
    return records


def _decode(
    factory: Callable[[dict[str, Any]], T],
    payload: dict[str, Any],
    path: Path,
    *,
    label: str,
) -> T:
    try:
        return factory(payload)
    except (TypeError, ValueError) as error:
        raise StorageError(f"decode {label} {path}: {error}") from error


def _sorted_files(directory: Path, suffix: str) -> list[Path]:
    try:
        entries = list(directory.iterdir())
    except FileNotFoundError:
        return []
    except OSError as error:
        raise StorageError(f"read directory {directory}: {error}") from error
    return sorted(
        path for path in entries if path.is_file() and path.suffix.lower() == suffix
    )


def _read_run_log(path: Path) -> list[tuple[str, JobRunRecord]]:
    try:
        raw = path.read_text("utf-8")
    except FileNotFoundError:
        return []
    except UnicodeDecodeError as error:
        raise StorageError(f"decode run log {path}: {error}") from error
    except OSError as error:
        raise StorageError(f"read run log {path}: {error}") from error

    entries: list[tuple[str, JobRunRecord]] = []
    for line in raw.splitlines():
        if not line.strip():
            continue
        try:
            payload = json.loads(line)
            if not isinstance(payload, dict):
                raise TypeError("expected JSON object")
            record = JobRunRecord.from_dict(payload)
        except (json.JSONDecodeError, TypeError, ValueError) as error:
            raise StorageError(f"decode run log {path}: {error}") from error
        entries.append((line, record))
    return entries
