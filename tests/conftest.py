"""Shared test fixtures."""

from __future__ import annotations

from pathlib import Path

import pytest

from forge_engine.scheduler.store import JobStore
from forge_engine.workflow.run_store import WorkflowRunStore


@pytest.fixture()
def job_store(tmp_path: Path) -> JobStore:
    return JobStore(tmp_path / "jobs")


@pytest.fixture()
def run_store(tmp_path: Path) -> WorkflowRunStore:
    return WorkflowRunStore(tmp_path / "workflow-runs")


@pytest.fixture()
def repo_dir(tmp_path: Path) -> Path:
    repo = tmp_path / "repo"
    repo.mkdir()
    return repo


@pytest.fixture()
def forge_env(monkeypatch, tmp_path: Path) -> Path:
    """Point every FORGE_* directory at a temporary data dir."""

    data_dir = tmp_path / "data"
    monkeypatch.setenv("FORGE_DATA_DIR", str(data_dir))
    for name in ("FORGE_JOBS_DIR", "FORGE_WORKFLOW_RUNS_DIR", "FORGE_WORKFLOWS_DIR"):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.delenv("FORGE_LOG_LEVEL", raising=False)
    monkeypatch.delenv("FORGE_CRON_LOOKAHEAD_DAYS", raising=False)
    return data_dir

