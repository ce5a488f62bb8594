from __future__ import annotations

import json
import logging
from pathlib import Path

import allure
from click.testing import CliRunner

from forge_engine.main import forge

pytestmark = [
    allure.epic("CLI"),
    allure.feature("Job, Trigger and Workflow Commands"),
]

CHAIN = """
name = "chain"

[[steps]]
id = "build"
type = "bash"
cmd = "echo built"

[[steps]]
id = "test"
type = "bash"
depends_on = ["build"]
cmd = "echo tested"
"""


def _write_workflow(directory: Path, name: str = "chain", text: str = CHAIN) -> Path:
    directory.mkdir(parents=True, exist_ok=True)
    path = directory / f"{name}.toml"
    path.write_text(text, "utf-8")
    return path


def test_job_create_list_and_show(forge_env: Path) -> None:
    runner = CliRunner()

    created = runner.invoke(forge, ["job", "create", "Nightly", "--workflow", "chain"])
    listed = runner.invoke(forge, ["job", "ls"])
    shown = runner.invoke(forge, ["job", "show", "nightly", "--json"])

    assert created.exit_code == 0, created.output
    assert "Job created: nightly (workflow=chain)" in created.output
    assert listed.exit_code == 0, listed.output
    assert "Jobs: 1" in listed.output
    assert "  nightly workflow=chain" in listed.output
    payload = json.loads(shown.output)
    assert payload["job"]["name"] == "nightly"
    assert payload["recent_runs"] == []
    assert (forge_env / "jobs" / "definitions" / "nightly.json").exists()


def test_duplicate_job_is_an_error(forge_env: Path) -> None:
    runner = CliRunner()
    runner.invoke(forge, ["job", "create", "nightly", "--workflow", "chain"])

    result = runner.invoke(forge, ["job", "create", "nightly", "--workflow", "chain"])

    assert result.exit_code == 1
    assert "job already exists" in result.output


def test_record_only_run_cannot_be_canceled(forge_env: Path) -> None:
    runner = CliRunner()
    runner.invoke(forge, ["job", "create", "nightly", "--workflow", "chain"])

    recorded = runner.invoke(
        forge,
        ["job", "run", "nightly", "--record-only", "--input", "env=prod"],
    )
    runs = runner.invoke(forge, ["job", "runs", "nightly", "--json"])
    run_id = json.loads(runs.output)[0]["run_id"]
    canceled = runner.invoke(forge, ["job", "cancel", run_id])

    assert recorded.exit_code == 0, recorded.output
    assert "Run recorded: jobrun-" in recorded.output
    assert json.loads(runs.output)[0]["inputs"] == {"env": "prod"}
    assert canceled.exit_code == 1
    assert "terminal" in canceled.output


def test_malformed_input_is_a_usage_error(forge_env: Path) -> None:
    runner = CliRunner()
    runner.invoke(forge, ["job", "create", "nightly", "--workflow", "chain"])

    result = runner.invoke(forge, ["job", "run", "nightly", "--record-only", "--input", "oops"])

    assert result.exit_code == 2


def test_job_run_executes_workflow(forge_env: Path, repo_dir: Path) -> None:
    _write_workflow(forge_env / "workflows")
    runner = CliRunner()
    runner.invoke(forge, ["job", "create", "nightly", "--workflow", "chain"])

    result = runner.invoke(forge, ["job", "run", "nightly", "--repo", str(repo_dir)])

    assert result.exit_code == 0, result.output
    assert "job=nightly status=success" in result.output
    assert "Status: success" in result.output
    assert "  build status=success" in result.output


def test_job_run_reports_failed_workflow(forge_env: Path, repo_dir: Path) -> None:
    _write_workflow(forge_env / "workflows", text=CHAIN.replace("echo tested", "exit 5"))
    runner = CliRunner()
    runner.invoke(forge, ["job", "create", "nightly", "--workflow", "chain"])

    result = runner.invoke(forge, ["job", "run", "nightly", "--repo", str(repo_dir)])

    assert result.exit_code == 1
    assert "status=failed" in result.output
    assert "Job nightly failed." in result.output


def test_trigger_add_tick_and_disable(forge_env: Path) -> None:
    runner = CliRunner()
    runner.invoke(forge, ["job", "create", "nightly", "--workflow", "chain"])

    added = runner.invoke(forge, ["trigger", "add", "nightly", "--cron", "1 0 * * *"])
    listed = runner.invoke(forge, ["trigger", "ls", "--json"])
    trigger_id = json.loads(listed.output)[0]["trigger_id"]
    first = runner.invoke(forge, ["trigger", "tick", "--now", "2099-01-01T00:00:00+00:00"])
    second = runner.invoke(forge, ["trigger", "tick", "--now", "2099-01-01T00:00:00+00:00"])
    disabled = runner.invoke(forge, ["trigger", "disable", trigger_id])
    removed = runner.invoke(forge, ["trigger", "rm", trigger_id])

    assert added.exit_code == 0, added.output
    assert "cron=1 0 * * *" in added.output
    assert first.exit_code == 0, first.output
    assert "Fired: 1" in first.output
    assert "trigger=cron:1 0 * * *" in first.output
    assert "Fired: 0" in second.output
    assert f"Trigger disabled: {trigger_id}" in disabled.output
    assert f"Trigger removed: {trigger_id}" in removed.output


def test_trigger_add_requires_exactly_one_kind(forge_env: Path) -> None:
    runner = CliRunner()
    runner.invoke(forge, ["job", "create", "nightly", "--workflow", "chain"])

    neither = runner.invoke(forge, ["trigger", "add", "nightly"])
    bad_cron = runner.invoke(forge, ["trigger", "add", "nightly", "--cron", "61 * * * *"])

    assert neither.exit_code == 1
    assert "exactly one of cron or webhook" in neither.output
    assert bad_cron.exit_code == 1


def test_tick_rejects_bad_timestamp(forge_env: Path) -> None:
    result = CliRunner().invoke(forge, ["trigger", "tick", "--now", "yesterday"])

    assert result.exit_code == 2


def test_workflow_validate(tmp_path: Path, forge_env: Path) -> None:
    runner = CliRunner()
    valid = _write_workflow(tmp_path / "flows")
    invalid = _write_workflow(
        tmp_path / "flows",
        name="broken",
        text='name = "broken"\n[[steps]]\nid = "a"\ntype = "bash"\n',
    )

    ok = runner.invoke(forge, ["workflow", "validate", str(valid)])
    bad = runner.invoke(forge, ["workflow", "validate", str(invalid)])

    assert ok.exit_code == 0, ok.output
    assert "Workflow valid: chain (2 steps)" in ok.output
    assert bad.exit_code == 1
    assert "step 'a' requires cmd" in bad.output


def test_workflow_run_show_logs_and_ledger(
    tmp_path: Path,
    forge_env: Path,
    repo_dir: Path,
) -> None:
    runner = CliRunner()
    path = _write_workflow(tmp_path / "flows")

    ran = runner.invoke(forge, ["workflow", "run", str(path), "--repo", str(repo_dir), "--ledger"])
    listed = runner.invoke(forge, ["workflow", "show", "--json"])
    run_id = json.loads(listed.output)[0]["id"]
    shown = runner.invoke(forge, ["workflow", "show", run_id])
    logs = runner.invoke(forge, ["workflow", "logs", run_id, "--step", "test"])

    assert ran.exit_code == 0, ran.output
    assert "Status: success" in ran.output
    assert (repo_dir / ".forge" / "ledgers" / "workflow-chain.md").exists()
    assert f"Workflow run: {run_id}" in shown.output
    assert "== test ==" in logs.output
    assert "  tested" in logs.output
    assert "== build ==" not in logs.output


def test_unknown_workflow_run_is_an_error(forge_env: Path) -> None:
    result = CliRunner().invoke(forge, ["workflow", "show", "wfr_missing"])

    assert result.exit_code == 1
    assert "not found" in result.output


def test_log_level_comes_from_settings(forge_env: Path, monkeypatch) -> None:
    levels: list[int] = []
    monkeypatch.setattr(
        "forge_engine.main.logging.basicConfig",
        lambda **kwargs: levels.append(kwargs["level"]),
    )
    monkeypatch.setenv("FORGE_LOG_LEVEL", " info ")
    runner = CliRunner()

    quiet = runner.invoke(forge, ["job", "ls"])
    verbose = runner.invoke(forge, ["-v", "job", "ls"])
    monkeypatch.setenv("FORGE_LOG_LEVEL", "chatty")
    unknown = runner.invoke(forge, ["job", "ls"])

    assert quiet.exit_code == 0, quiet.output
    assert verbose.exit_code == 0, verbose.output
    assert unknown.exit_code == 1
    assert "Invalid FORGE_LOG_LEVEL" in unknown.output
    assert levels == [logging.INFO, logging.DEBUG, logging.WARNING]


def test_invalid_settings_fail_before_any_command(forge_env: Path, monkeypatch) -> None:
    monkeypatch.setenv("FORGE_CRON_LOOKAHEAD_DAYS", "soon")

    result = CliRunner().invoke(forge, ["job", "ls"])

    assert result.exit_code == 1
    assert "FORGE_CRON_LOOKAHEAD_DAYS" in result.output
