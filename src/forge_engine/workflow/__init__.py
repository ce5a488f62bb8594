"""Workflow definitions, DAG execution and persisted run state."""

from forge_engine.workflow.definition import (
    WorkflowDefinition,
    WorkflowStepDefinition,
    load_workflow,
    parse_workflow_toml,
    validate_workflow,
)
from forge_engine.workflow.engine import (
    EngineStepStatus,
    StepExecutor,
    WorkflowEngineRun,
    WorkflowEngineStep,
    WorkflowEngineStepRecord,
    execute_sequential_workflow,
    workflow_step_order,
)
from forge_engine.workflow.models import (
    WorkflowResumeState,
    WorkflowRunRecord,
    WorkflowRunStatus,
    WorkflowStepRun,
    WorkflowStepStatus,
)
from forge_engine.workflow.run_store import WorkflowRunStore, append_workflow_ledger_entry
from forge_engine.workflow.runner import WorkflowRunner, WorkflowRunOutcome, run_job

__all__ = [
    "EngineStepStatus",
    "StepExecutor",
    "WorkflowDefinition",
    "WorkflowEngineRun",
    "WorkflowEngineStep",
    "WorkflowEngineStepRecord",
    "WorkflowResumeState",
    "WorkflowRunOutcome",
    "WorkflowRunRecord",
    "WorkflowRunStatus",
    "WorkflowRunStore",
    "WorkflowRunner",
    "WorkflowStepDefinition",
    "WorkflowStepRun",
    "WorkflowStepStatus",
    "append_workflow_ledger_entry",
    "execute_sequential_workflow",
    "load_workflow",
    "parse_workflow_toml",
    "run_job",
    "validate_workflow",
    "workflow_step_order",
]
