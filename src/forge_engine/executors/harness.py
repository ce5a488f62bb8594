"""Turns an agent profile plus a prompt into a runnable command plan."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Protocol

from forge_engine.errors import ValidationError


class PromptMode(str, Enum):
    """How the prompt reaches the harness process."""

    ENV = "env"
    STDIN = "stdin"
    PATH = "path"


class HarnessKind(str, Enum):
    CLAUDE = "claude"
    CODEX = "codex"
    OPENCODE = "opencode"
    PI = "pi"
    DROID = "droid"
    OTHER = "other"

    @classmethod
    def parse(cls, raw: str) -> HarnessKind:
        try:
            return cls(raw.strip().lower())
        except ValueError:
            return cls.OTHER


@dataclass(slots=True)
class ProfileSpec:
    """Agent harness profile used to build a command."""

    harness: HarnessKind
    command_template: str
    prompt_mode: PromptMode = PromptMode.ENV
    extra_args: list[str] = field(default_factory=list)
    auth_home: str = ""
    env: dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> ProfileSpec:
        command_template = raw.get("command_template", raw.get("command", ""))
        if not isinstance(command_template, str):
            raise ValidationError("profile command_template must be a string")
        harness = raw.get("harness", HarnessKind.OTHER.value)
        if not isinstance(harness, str):
            raise ValidationError("profile harness must be a string")
        prompt_mode = raw.get("prompt_mode", PromptMode.ENV.value)
        try:
            mode = PromptMode(str(prompt_mode).strip().lower())
        except ValueError as error:
            raise ValidationError(f"unsupported prompt_mode: {prompt_mode}") from error
        extra_args = raw.get("extra_args", [])
        if not isinstance(extra_args, list) or not all(isinstance(a, str) for a in extra_args):
            raise ValidationError("profile extra_args must be a list of strings")
        env = raw.get("env", {})
        if not isinstance(env, dict):
            raise ValidationError("profile env must be a table")
        auth_home = raw.get("auth_home", "")
        if not isinstance(auth_home, str):
            raise ValidationError("profile auth_home must be a string")
        return cls(
            harness=HarnessKind.parse(harness),
            command_template=command_template,
            prompt_mode=mode,
            extra_args=list(extra_args),
            auth_home=auth_home,
            env={str(key): str(value) for key, value in env.items()},
        )


@dataclass(slots=True)
class ExecutionPlan:
    """Shell command, full environment and optional stdin payload."""

    command: str
    env: list[str]
    stdin: str | None = None


class ExecutionPlanner(Protocol):
    """Builds an execution plan; raises when the profile cannot be planned."""

    def __call__(
        self,
        profile: ProfileSpec,
        prompt_path: str,
        prompt_content: str,
        base_env: list[str],
    ) -> ExecutionPlan: ...


_AUTH_HOME_VARS: dict[HarnessKind, tuple[str, ...]] = {
    HarnessKind.CODEX: ("CODEX_HOME",),
    HarnessKind.OPENCODE: ("OPENCODE_CONFIG_DIR", "XDG_DATA_HOME"),
    HarnessKind.PI: ("PI_CODING_AGENT_DIR",),
    HarnessKind.CLAUDE: ("CLAUDE_CONFIG_DIR",),
}

_OWN_CONFIG_DIR_HARNESSES = frozenset({HarnessKind.CLAUDE, HarnessKind.CODEX, HarnessKind.OPENCODE})


def build_execution_plan(
    profile: ProfileSpec,
    prompt_path: str,
    prompt_content: str,
    base_env: list[str],
) -> ExecutionPlan:
    command = profile.command_template.strip()
    if not command:
        raise ValidationError("command template is required")
    if profile.extra_args:
        command = f"{command} {' '.join(profile.extra_args)}"

    if profile.prompt_mode is PromptMode.PATH:
        if not prompt_path:
            raise ValidationError("prompt path is required for path mode")
        command = command.replace("{prompt}", prompt_path)

    env = list(base_env)
    if profile.auth_home:
        if profile.harness not in _OWN_CONFIG_DIR_HARNESSES:
            env.append(f"HOME={profile.auth_home}")
        env.extend(
            f"{name}={profile.auth_home}" for name in _AUTH_HOME_VARS.get(profile.harness, ())
        )
    if profile.prompt_mode is PromptMode.ENV:
        env.append(f"FORGE_PROMPT_CONTENT={prompt_content}")
    env.extend(f"{key}={value}" for key, value in profile.env.items())

    stdin = prompt_content if profile.prompt_mode is PromptMode.STDIN else None
    return ExecutionPlan(command=command, env=env, stdin=stdin)
