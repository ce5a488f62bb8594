from __future__ import annotations

import os
from pathlib import Path

import allure
import pytest

from forge_engine.errors import ExecutionError, ValidationError
from forge_engine.executors import (
    AgentStepRequest,
    BashStepRequest,
    LoopStepRequest,
    LoopStopEvaluation,
    LoopStopStatus,
    StepExecutionResult,
    append_bash_step_logs,
    combine_output,
    execute_agent_step,
    execute_bash_step,
    execute_loop_step,
    format_bash_step_log_lines,
    format_loop_step_log_lines,
)
from forge_engine.executors.base import env_pairs_to_dict, exit_code_of
from forge_engine.executors.harness import HarnessKind, ProfileSpec, PromptMode
from forge_engine.workflow.run_store import WorkflowRunStore

pytestmark = [
    allure.epic("Executors"),
    allure.feature("Step Execution"),
]

COUNTER_CMD = 'n=$(cat count 2>/dev/null || echo 0); n=$((n+1)); echo "$n" > count; echo "iter $n"'


def _agent_request(
    workdir: Path,
    command: str,
    *,
    mode: PromptMode = PromptMode.ENV,
    prompt: str = "hello",
) -> AgentStepRequest:
    return AgentStepRequest(
        step_id="agent",
        prompt_content=prompt,
        profile=ProfileSpec(harness=HarnessKind.OTHER, command_template=command, prompt_mode=mode),
        workdir=workdir,
        base_env=[f"PATH={os.environ.get('PATH', '/usr/bin:/bin')}"],
    )


def test_combine_output_joins_non_empty_streams() -> None:
    assert combine_output("out", "err") == "out\nerr"
    assert combine_output("", "err") == "err"
    assert combine_output("out", "") == "out"


def test_env_pairs_later_entries_win() -> None:
    assert env_pairs_to_dict(["A=1", "B=x=y", "A=2", "broken", "=nokey"]) == {
        "A": "2",
        "B": "x=y",
    }


def test_signal_exit_codes_map_to_minus_one() -> None:
    assert exit_code_of(-9) == -1
    assert exit_code_of(None) == -1
    assert exit_code_of(4) == 4


def test_bash_step_captures_streams(repo_dir: Path) -> None:
    result = execute_bash_step(
        BashStepRequest(step_id="build", cmd="echo out; echo err >&2", repo_workdir=repo_dir),
    )

    assert result.success is True
    assert result.exit_code == 0
    assert result.stdout == "out\n"
    assert result.stderr == "err\n"
    assert result.output == "out\n\nerr\n"
    assert result.resolved_workdir == repo_dir
    assert result.logs[0].endswith("step=build type=bash started")
    assert result.logs[1] == "step=build cmd=echo out; echo err >&2"
    assert result.logs[-1].endswith("step=build completed exit_code=0")


def test_bash_step_runs_in_relative_workdir_with_extra_env(repo_dir: Path) -> None:
    (repo_dir / "sub").mkdir()

    result = execute_bash_step(
        BashStepRequest(
            step_id="pwd",
            cmd='basename "$PWD"; echo "$GREETING"',
            repo_workdir=repo_dir,
            workdir="sub",
            extra_env={"GREETING": "hi"},
        ),
    )

    assert result.stdout == "sub\nhi\n"
    assert result.resolved_workdir == repo_dir / "sub"


def test_bash_step_nonzero_exit_is_reported_not_raised(repo_dir: Path) -> None:
    result = execute_bash_step(BashStepRequest(step_id="fail", cmd="exit 7", repo_workdir=repo_dir))

    assert result.success is False
    assert result.exit_code == 7


def test_bash_step_rejects_missing_and_file_workdirs(repo_dir: Path) -> None:
    (repo_dir / "file.txt").write_text("x", "utf-8")

    with pytest.raises(ValidationError, match="does not exist"):
        execute_bash_step(
            BashStepRequest(step_id="s", cmd="true", repo_workdir=repo_dir, workdir="missing"),
        )
    with pytest.raises(ValidationError, match="is not a directory"):
        execute_bash_step(
            BashStepRequest(step_id="s", cmd="true", repo_workdir=repo_dir, workdir="file.txt"),
        )


@pytest.mark.parametrize(
    ("step_id", "cmd", "repo", "message"),
    [
        (" ", "true", "/tmp", "bash step id is required"),
        ("s", "  ", "/tmp", "bash step s command is required"),
        ("s", "true", "", "repo workdir is required"),
    ],
)
def test_bash_step_rejects_blank_inputs(step_id: str, cmd: str, repo: str, message: str) -> None:
    with pytest.raises(ValidationError, match=message):
        execute_bash_step(BashStepRequest(step_id=step_id, cmd=cmd, repo_workdir=repo))


def test_bash_logs_are_appended_to_run(repo_dir: Path, run_store: WorkflowRunStore) -> None:
    run = run_store.create_run("deploy", "", ["build"])
    result = execute_bash_step(
        BashStepRequest(step_id="build", cmd="printf 'a\\nb\\n'", repo_workdir=repo_dir),
    )

    append_bash_step_logs(run_store, run.id, result)

    lines = format_bash_step_log_lines(result)
    assert lines[-3:] == ["stdout:", "  a", "  b"]
    assert run_store.read_step_log(run.id, "build") == "\n".join(lines) + "\n"


def test_agent_step_replaces_environment(repo_dir: Path, monkeypatch) -> None:
    monkeypatch.setenv("FORGE_TEST_LEAK", "leaked")
    request = _agent_request(repo_dir, 'echo "${FORGE_TEST_LEAK:-unset} $FORGE_PROMPT_CONTENT"')

    result = execute_agent_step(request)

    assert result.success is True
    assert result.stdout == "unset hello\n"
    assert result.logs[0].endswith("step=agent started")
    assert result.logs[1].endswith('step=agent command=echo "${FORGE_TEST_LEAK:-unset} '
                                   '$FORGE_PROMPT_CONTENT"')
    assert result.logs[2].endswith("step=agent completed exit_code=0")


def test_agent_step_stdin_mode(repo_dir: Path) -> None:
    result = execute_agent_step(_agent_request(repo_dir, "cat", mode=PromptMode.STDIN))

    assert result.stdout == "hello"


def test_agent_step_nonzero_exit(repo_dir: Path) -> None:
    result = execute_agent_step(_agent_request(repo_dir, "echo nope >&2; exit 2"))

    assert result.success is False
    assert result.exit_code == 2
    assert result.stderr == "nope\n"


def test_agent_planner_failure_is_execution_error(repo_dir: Path) -> None:
    request = _agent_request(repo_dir, "   ")

    with pytest.raises(ExecutionError, match="build agent execution plan for step agent"):
        execute_agent_step(request)


def test_loop_failed_iteration_wins_over_stop_condition(repo_dir: Path) -> None:
    calls: list[int] = []

    def stop(iteration: int, result: StepExecutionResult) -> LoopStopEvaluation:
        calls.append(iteration)
        return LoopStopEvaluation(should_stop=True, reason="done")

    result = execute_loop_step(
        LoopStepRequest(
            step_id="fix",
            iteration_request=_agent_request(repo_dir, "exit 3"),
            max_iterations=4,
        ),
        stop,
    )

    assert result.iterations == 1
    assert result.stop_status is LoopStopStatus.ITERATION_FAILED
    assert result.stop_reason == "iteration 1 failed"
    assert result.last_exit_code == 3
    assert result.success is False
    assert calls == []


def test_loop_stops_when_condition_matches(repo_dir: Path) -> None:
    def stop(iteration: int, result: StepExecutionResult) -> LoopStopEvaluation:
        return LoopStopEvaluation(should_stop="iter 2" in result.output)

    result = execute_loop_step(
        LoopStepRequest(
            step_id="fix",
            iteration_request=_agent_request(repo_dir, COUNTER_CMD),
            max_iterations=5,
        ),
        stop,
    )

    assert result.iterations == 2
    assert result.stop_status is LoopStopStatus.STOP_CONDITION_MET
    assert result.stop_reason == "stop condition matched"
    assert [item.step_id for item in result.iteration_results] == ["fix#1", "fix#2"]
    assert result.logs[-1].endswith(
        "step=fix stop_status=stop_condition_met iterations=2 reason=stop condition matched",
    )


def test_loop_reaches_max_iterations(repo_dir: Path) -> None:
    result = execute_loop_step(
        LoopStepRequest(
            step_id="fix",
            iteration_request=_agent_request(repo_dir, COUNTER_CMD),
            max_iterations=3,
        ),
    )

    assert result.iterations == 3
    assert result.stop_status is LoopStopStatus.MAX_ITERATIONS_REACHED
    assert result.stop_reason == "max iterations 3 reached"
    assert result.success is True
    assert (repo_dir / "count").read_text("utf-8").strip() == "3"
    lines = format_loop_step_log_lines(result)
    assert "fix#3 stdout:" in lines
    assert "  iter 3" in lines


@pytest.mark.parametrize("max_iterations", [0, -1])
def test_loop_rejects_non_positive_max_iterations(repo_dir: Path, max_iterations: int) -> None:
    with pytest.raises(ValidationError, match="max_iterations must be greater than 0"):
        execute_loop_step(
            LoopStepRequest(
                step_id="fix",
                iteration_request=_agent_request(repo_dir, "true"),
                max_iterations=max_iterations,
            ),
        )


def test_loop_wraps_planner_failures(repo_dir: Path) -> None:
    with pytest.raises(ExecutionError, match="execute loop step fix iteration 1"):
        execute_loop_step(
            LoopStepRequest(
                step_id="fix",
                iteration_request=_agent_request(repo_dir, ""),
                max_iterations=2,
            ),
        )
