"""TOML workflow definitions.

A workflow file looks like::

    name = "nightly"
    description = "Build and summarize"

    [[steps]]
    id = "build"
    type = "bash"
    cmd = "make"

    [[steps]]
    id = "review"
    type = "agent"
    depends_on = ["build"]
    prompt = "Review the build output"

    [steps.profile]
    harness = "claude"
    command_template = "claude -p \\"$FORGE_PROMPT_CONTENT\\""
"""

from __future__ import annotations

import tomllib
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

from forge_engine.errors import NotFoundError, StorageError, ValidationError
from forge_engine.executors.harness import ProfileSpec
from forge_engine.executors.stop import LoopStopSpec, StopLlmSpec, StopToolSpec
from forge_engine.workflow.engine import WorkflowEngineStep, workflow_step_order


class StepType(str, Enum):
    BASH = "bash"
    AGENT = "agent"
    LOOP = "loop"


@dataclass(slots=True)
class WorkflowStepDefinition:
    id: str
    type: str
    depends_on: list[str] = field(default_factory=list)
    cmd: str = ""
    workdir: str = ""
    env: dict[str, str] = field(default_factory=dict)
    prompt: str = ""
    prompt_path: str = ""
    max_iterations: int = 0
    stop: LoopStopSpec | None = None
    profile: ProfileSpec | None = None

    @property
    def step_type(self) -> StepType | None:
        try:
            return StepType(self.type)
        except ValueError:
            return None


@dataclass(slots=True)
class WorkflowDefinition:
    name: str
    source: str
    description: str = ""
    repo_root: str = ""
    steps: list[WorkflowStepDefinition] = field(default_factory=list)

    def step(self, step_id: str) -> WorkflowStepDefinition | None:
        for step in self.steps:
            if step.id == step_id:
                return step
        return None

    def engine_steps(self) -> list[WorkflowEngineStep]:
        return [
            WorkflowEngineStep(id=step.id, depends_on=tuple(step.depends_on))
            for step in self.steps
        ]


def load_workflow(path: Path) -> WorkflowDefinition:
    try:
        text = path.read_text("utf-8")
    except FileNotFoundError as error:
        raise NotFoundError(f"workflow file not found: {path}") from error
    except UnicodeDecodeError as error:
        raise StorageError(f"decode workflow {path}: {error}") from error
    except OSError as error:
        raise StorageError(f"read workflow {path}: {error}") from error
    return parse_workflow_toml(text, source=str(path))


def parse_workflow_toml(text: str, source: str = "") -> WorkflowDefinition:
    try:
        raw = tomllib.loads(text)
    except tomllib.TOMLDecodeError as error:
        raise ValidationError(f"parse workflow {source or '<inline>'}: {error}") from error

    raw_steps = raw.get("steps", [])
    if not isinstance(raw_steps, list):
        raise ValidationError("workflow steps must be an array of tables")
    steps = []
    for index, item in enumerate(raw_steps):
        if not isinstance(item, dict):
            raise ValidationError(f"workflow step at index {index} must be a table")
        steps.append(_parse_step(item, index))

    return WorkflowDefinition(
        name=_str_field(raw, "name", "workflow").strip(),
        source=source,
        description=_str_field(raw, "description", "workflow"),
        repo_root=_str_field(raw, "repo_root", "workflow"),
        steps=steps,
    )


def validate_workflow(definition: WorkflowDefinition) -> list[str]:
    """Every problem found in ``definition``; an empty list means it is runnable."""

    errors: list[str] = []
    if not definition.name:
        errors.append("workflow name is required")
    if not definition.steps:
        errors.append("workflow must declare at least one step")

    seen: set[str] = set()
    for index, step in enumerate(definition.steps):
        label = f"step {step.id!r}" if step.id else f"step at index {index}"
        if not step.id:
            errors.append(f"step id at index {index} is empty")
        elif step.id in seen:
            errors.append(f"duplicate step id {step.id!r}")
        seen.add(step.id)

        step_type = step.step_type
        if step_type is None:
            errors.append(f"{label} has unknown type {step.type!r}")
        elif step_type is StepType.BASH:
            if not step.cmd.strip():
                errors.append(f"{label} requires cmd")
        else:
            if not step.prompt and not step.prompt_path:
                errors.append(f"{label} requires prompt or prompt_path")
            if step.profile is None:
                errors.append(f"{label} requires a profile")
            elif not step.profile.command_template.strip():
                errors.append(f"{label} profile command_template is required")
            if step_type is StepType.LOOP and step.max_iterations <= 0:
                errors.append(f"{label} max_iterations must be greater than 0")
            if step_type is StepType.LOOP and step.stop is not None:
                errors.extend(f"{label} {problem}" for problem in step.stop.problems())

    if not errors:
        try:
            workflow_step_order(definition.engine_steps())
        except ValidationError as error:
            errors.append(str(error))
    else:
        known = {step.id for step in definition.steps}
        for step in definition.steps:
            errors.extend(
                f"step {step.id!r} has unknown dependency {dependency!r}"
                for dependency in step.depends_on
                if dependency not in known
            )
    return errors


def _parse_step(raw: dict[str, Any], index: int) -> WorkflowStepDefinition:
    label = f"workflow step at index {index}"
    depends_on = raw.get("depends_on", [])
    if not isinstance(depends_on, list) or not all(isinstance(dep, str) for dep in depends_on):
        raise ValidationError(f"{label} depends_on must be a list of strings")
    env = raw.get("env", {})
    if not isinstance(env, dict):
        raise ValidationError(f"{label} env must be a table")
    max_iterations = raw.get("max_iterations", 0)
    if not isinstance(max_iterations, int) or isinstance(max_iterations, bool):
        raise ValidationError(f"{label} max_iterations must be an integer")
    profile_raw = raw.get("profile")
    if profile_raw is not None and not isinstance(profile_raw, dict):
        raise ValidationError(f"{label} profile must be a table")

    return WorkflowStepDefinition(
        id=_str_field(raw, "id", label).strip(),
        type=_str_field(raw, "type", label).strip().lower(),
        depends_on=[dep.strip() for dep in depends_on],
        cmd=_str_field(raw, "cmd", label),
        workdir=_str_field(raw, "workdir", label),
        env={str(key): str(value) for key, value in env.items()},
        prompt=_str_field(raw, "prompt", label),
        prompt_path=_str_field(raw, "prompt_path", label),
        max_iterations=max_iterations,
        stop=_parse_stop(raw.get("stop"), label),
        profile=ProfileSpec.from_dict(profile_raw) if profile_raw is not None else None,
    )


def _parse_stop(raw: Any, label: str) -> LoopStopSpec | None:
    if raw is None:
        return None
    if not isinstance(raw, dict):
        raise ValidationError(f"{label} stop must be a table")
    stop_label = f"{label} stop"

    tool = None
    tool_raw = raw.get("tool")
    if tool_raw is not None:
        if not isinstance(tool_raw, dict):
            raise ValidationError(f"{stop_label} tool must be a table")
        args = tool_raw.get("args", [])
        if not isinstance(args, list) or not all(isinstance(arg, str) for arg in args):
            raise ValidationError(f"{stop_label} tool args must be a list of strings")
        tool = StopToolSpec(name=_str_field(tool_raw, "name", f"{stop_label} tool"), args=args)

    llm = None
    llm_raw = raw.get("llm")
    if llm_raw is not None:
        if not isinstance(llm_raw, dict):
            raise ValidationError(f"{stop_label} llm must be a table")
        llm = StopLlmSpec(
            rubric=_str_field(llm_raw, "rubric", f"{stop_label} llm"),
            pass_if=_str_field(llm_raw, "pass_if", f"{stop_label} llm"),
        )

    return LoopStopSpec(expr=_str_field(raw, "expr", stop_label), tool=tool, llm=llm)


def _str_field(raw: dict[str, Any], key: str, label: str) -> str:
    value = raw.get(key, "")
    if not isinstance(value, str):
        raise ValidationError(f"{label} {key} must be a string")
    return value


def resolve_workflow_path(workflows_dir: Path, name: str) -> Path:
    """Map a job's workflow reference to a file.

    Paths ending in ``.toml`` are used as given (relative ones against
    ``workflows_dir``); bare names resolve to ``<workflows_dir>/<name>.toml``.
    """

    reference = name.strip()
    if not reference:
        raise ValidationError("workflow name is required")
    candidate = Path(reference)
    if candidate.suffix == ".toml":
        return candidate if candidate.is_absolute() else workflows_dir / candidate
    return workflows_dir / f"{reference}.toml"
