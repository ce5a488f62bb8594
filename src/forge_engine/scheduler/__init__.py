"""Cron evaluation and job/run/trigger persistence."""

from forge_engine.scheduler.cron import CronField, CronSchedule, parse_cron_schedule
from forge_engine.scheduler.models import (
    CronTriggerRecord,
    JobDefinition,
    JobRunRecord,
    TriggerType,
    run_status_is_terminal,
)
from forge_engine.scheduler.store import JobStore, normalize_job_name

__all__ = [
    "CronField",
    "CronSchedule",
    "CronTriggerRecord",
    "JobDefinition",
    "JobRunRecord",
    "JobStore",
    "TriggerType",
    "normalize_job_name",
    "parse_cron_schedule",
    "run_status_is_terminal",
]
