from __future__ import annotations

import allure
import pytest

from forge_engine.errors import ValidationError
from forge_engine.executors.harness import (
    HarnessKind,
    ProfileSpec,
    PromptMode,
    build_execution_plan,
)

pytestmark = [
    allure.epic("Executors"),
    allure.feature("Harness Planning"),
]

BASE_ENV = ["PATH=/usr/bin", "HOME=/home/dev"]


def test_env_mode_exports_prompt_after_base_env() -> None:
    profile = ProfileSpec(harness=HarnessKind.CLAUDE, command_template="claude -p")

    plan = build_execution_plan(profile, "", "fix the bug", BASE_ENV)

    assert plan.command == "claude -p"
    assert plan.env == [*BASE_ENV, "FORGE_PROMPT_CONTENT=fix the bug"]
    assert plan.stdin is None


def test_stdin_mode_pipes_prompt() -> None:
    profile = ProfileSpec(
        harness=HarnessKind.CODEX,
        command_template="codex exec -",
        prompt_mode=PromptMode.STDIN,
    )

    plan = build_execution_plan(profile, "", "write tests", BASE_ENV)

    assert plan.stdin == "write tests"
    assert not any(entry.startswith("FORGE_PROMPT_CONTENT=") for entry in plan.env)


def test_path_mode_substitutes_prompt_placeholder() -> None:
    profile = ProfileSpec(
        harness=HarnessKind.OTHER,
        command_template="agent --prompt-file {prompt}",
        prompt_mode=PromptMode.PATH,
        extra_args=["--yes", "--quiet"],
    )

    plan = build_execution_plan(profile, "/tmp/prompt.md", "ignored", BASE_ENV)

    assert plan.command == "agent --prompt-file /tmp/prompt.md --yes --quiet"
    assert plan.stdin is None


def test_path_mode_requires_prompt_path() -> None:
    profile = ProfileSpec(
        harness=HarnessKind.OTHER,
        command_template="agent {prompt}",
        prompt_mode=PromptMode.PATH,
    )

    with pytest.raises(ValidationError, match="prompt path is required for path mode"):
        build_execution_plan(profile, "", "text", BASE_ENV)


@pytest.mark.parametrize("template", ["", "   "])
def test_blank_command_template_is_rejected(template: str) -> None:
    profile = ProfileSpec(harness=HarnessKind.OTHER, command_template=template)

    with pytest.raises(ValidationError, match="command template is required"):
        build_execution_plan(profile, "", "text", BASE_ENV)


@pytest.mark.parametrize(
    ("harness", "expected"),
    [
        (HarnessKind.CLAUDE, ["CLAUDE_CONFIG_DIR=/auth"]),
        (HarnessKind.CODEX, ["CODEX_HOME=/auth"]),
        (HarnessKind.OPENCODE, ["OPENCODE_CONFIG_DIR=/auth", "XDG_DATA_HOME=/auth"]),
        (HarnessKind.PI, ["HOME=/auth", "PI_CODING_AGENT_DIR=/auth"]),
        (HarnessKind.DROID, ["HOME=/auth"]),
        (HarnessKind.OTHER, ["HOME=/auth"]),
    ],
)
def test_auth_home_sets_harness_specific_variables(
    harness: HarnessKind,
    expected: list[str],
) -> None:
    profile = ProfileSpec(
        harness=harness,
        command_template="run",
        prompt_mode=PromptMode.STDIN,
        auth_home="/auth",
    )

    plan = build_execution_plan(profile, "", "text", BASE_ENV)

    assert plan.env == [*BASE_ENV, *expected]


def test_profile_env_is_applied_last() -> None:
    profile = ProfileSpec(
        harness=HarnessKind.OTHER,
        command_template="run",
        env={"FORGE_PROMPT_CONTENT": "override", "MODEL": "large"},
    )

    plan = build_execution_plan(profile, "", "text", BASE_ENV)

    assert plan.env[-2:] == ["FORGE_PROMPT_CONTENT=override", "MODEL=large"]


def test_profile_from_dict_parses_known_fields() -> None:
    profile = ProfileSpec.from_dict(
        {
            "harness": "Claude",
            "command": "claude -p",
            "prompt_mode": "STDIN",
            "extra_args": ["--verbose"],
            "env": {"RETRIES": 3},
        },
    )

    assert profile.harness is HarnessKind.CLAUDE
    assert profile.command_template == "claude -p"
    assert profile.prompt_mode is PromptMode.STDIN
    assert profile.extra_args == ["--verbose"]
    assert profile.env == {"RETRIES": "3"}


def test_unknown_harness_falls_back_to_other() -> None:
    assert HarnessKind.parse("gemini") is HarnessKind.OTHER


@pytest.mark.parametrize(
    ("raw", "message"),
    [
        ({"command_template": "x", "prompt_mode": "socket"}, "unsupported prompt_mode"),
        ({"command_template": "x", "extra_args": "--yes"}, "extra_args"),
        ({"command_template": "x", "env": ["A=1"]}, "env must be a table"),
        ({"command_template": 5}, "command_template must be a string"),
    ],
)
def test_profile_from_dict_rejects_bad_shapes(raw: dict, message: str) -> None:
    with pytest.raises(ValidationError, match=message):
        ProfileSpec.from_dict(raw)
