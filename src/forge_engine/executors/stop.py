"""Loop stop rules: ``count(tasks.open)`` expressions and external stop tools.

A stop tool is run in the loop's workdir after each successful iteration. Its
first output token decides (``true``/``yes``/``stop`` or ``false``/``no``/
``continue``); when it prints nothing recognisable, exit status 0 means stop.
"""

from __future__ import annotations

import logging
import operator
import re
import subprocess
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from forge_engine.errors import ExecutionError, ValidationError
from forge_engine.executors.base import StepExecutionResult
from forge_engine.executors.loop import LoopStopEvaluation, StopCondition, never_stop

logger = logging.getLogger(__name__)

DEFAULT_STOP_TOOL_TIMEOUT = 30.0

_STOP_EXPR_RE = re.compile(
    r"^\s*count\(\s*tasks\.open\s*\)\s*(==|!=|>=|<=|>|<)\s*(-?\d+)\s*$",
    re.IGNORECASE,
)
_COMPARISONS: dict[str, Callable[[int, int], bool]] = {
    "==": operator.eq,
    "!=": operator.ne,
    ">=": operator.ge,
    "<=": operator.le,
    ">": operator.gt,
    "<": operator.lt,
}
_TRUE_TOKENS = frozenset({"1", "true", "yes", "y", "stop"})
_FALSE_TOKENS = frozenset({"0", "false", "no", "n", "continue"})

TasksOpenProvider = Callable[[], int]


@dataclass(slots=True)
class StopToolSpec:
    name: str
    args: list[str] = field(default_factory=list)

    @property
    def command(self) -> str:
        name = self.name.strip()
        return " ".join([name, *self.args]) if self.args else name


@dataclass(slots=True)
class StopLlmSpec:
    rubric: str = ""
    pass_if: str = ""


@dataclass(slots=True)
class LoopStopSpec:
    """The ``[steps.stop]`` table of a loop step."""

    expr: str = ""
    tool: StopToolSpec | None = None
    llm: StopLlmSpec | None = None
    tool_timeout: float = DEFAULT_STOP_TOOL_TIMEOUT

    def problems(self) -> list[str]:
        if not self.expr.strip() and self.tool is None and self.llm is None:
            return ["stop condition requires expr, tool, or llm"]
        problems: list[str] = []
        if self.expr.strip():
            try:
                parse_stop_expr(self.expr)
            except ValidationError as error:
                problems.append(f"stop.expr: {error}")
        if self.tool is not None and not self.tool.name.strip():
            problems.append("requires stop.tool.name")
        if self.llm is not None and not self.llm.rubric.strip() and not self.llm.pass_if.strip():
            problems.append("stop.llm requires rubric or pass_if")
        return problems


class StopToolDecisionSource(str, Enum):
    OUTPUT = "output"
    EXIT_STATUS = "exit_status"


@dataclass(slots=True)
class StopToolRunResult:
    command: str
    exit_code: int
    stdout: str
    stderr: str
    should_stop: bool
    decision_source: StopToolDecisionSource


@dataclass(frozen=True, slots=True)
class StopExpr:
    op: str
    value: int

    def matches(self, tasks_open: int) -> bool:
        return _COMPARISONS[self.op](tasks_open, self.value)


def parse_stop_expr(expr: str) -> StopExpr:
    if not expr.strip():
        raise ValidationError("stop expression is required")
    match = _STOP_EXPR_RE.match(expr)
    if match is None:
        raise ValidationError(f"unsupported stop expression: {expr!r}")
    return StopExpr(op=match.group(1), value=int(match.group(2)))


def parse_stop_tool_bool(text: str) -> bool | None:
    tokens = text.split(maxsplit=1)
    if not tokens:
        return None
    token = tokens[0].lower()
    if token in _TRUE_TOKENS:
        return True
    if token in _FALSE_TOKENS:
        return False
    return None


def run_stop_tool(
    workdir: Path,
    tool: StopToolSpec,
    timeout: float = DEFAULT_STOP_TOOL_TIMEOUT,
) -> StopToolRunResult:
    """Run ``tool`` directly (no shell) and decide whether the loop should stop."""

    name = tool.name.strip()
    if not name:
        raise ValidationError("stop tool name is required")
    command = tool.command

    try:
        completed = subprocess.run(  # noqa: S603
            [name, *tool.args],
            cwd=workdir,
            stdin=subprocess.DEVNULL,
            capture_output=True,
            timeout=timeout if timeout > 0 else None,
            check=False,
        )
    except subprocess.TimeoutExpired as error:
        raise ExecutionError(
            f"stop tool {command!r} timed out after {int(timeout * 1000)}ms",
        ) from error
    except OSError as error:
        raise ExecutionError(f"spawn stop tool {command!r}: {error}") from error

    stdout = completed.stdout.decode("utf-8", errors="replace")
    stderr = completed.stderr.decode("utf-8", errors="replace")
    decision = parse_stop_tool_bool(stdout)
    if decision is None:
        decision = parse_stop_tool_bool(stderr)
    if decision is None:
        should_stop = completed.returncode == 0
        source = StopToolDecisionSource.EXIT_STATUS
    else:
        should_stop = decision
        source = StopToolDecisionSource.OUTPUT

    return StopToolRunResult(
        command=command,
        exit_code=completed.returncode,
        stdout=stdout,
        stderr=stderr,
        should_stop=should_stop,
        decision_source=source,
    )


def evaluate_loop_stop(
    stop: LoopStopSpec,
    workdir: Path,
    tasks_open_provider: TasksOpenProvider | None = None,
) -> LoopStopEvaluation:
    """Check ``stop.expr`` first, then ``stop.tool``; the first match stops the loop."""

    if stop.llm is not None:
        raise ExecutionError("stop.llm is not supported yet")

    expr = stop.expr.strip()
    if expr:
        if tasks_open_provider is None:
            raise ExecutionError(
                "resolve count(tasks.open) for stop.expr: no task source configured",
            )
        try:
            tasks_open = tasks_open_provider()
        except Exception as error:  # noqa: BLE001
            raise ExecutionError(
                f"resolve count(tasks.open) for stop.expr: {error}",
            ) from error
        try:
            matched = parse_stop_expr(expr).matches(tasks_open)
        except ValidationError as error:
            raise ExecutionError(f"evaluate stop.expr {expr!r}: {error}") from error
        if matched:
            return LoopStopEvaluation(
                should_stop=True,
                reason=f"stop.expr matched: {expr} (tasks_open={tasks_open})",
            )

    if stop.tool is not None:
        timeout = stop.tool_timeout if stop.tool_timeout > 0 else DEFAULT_STOP_TOOL_TIMEOUT
        try:
            result = run_stop_tool(workdir, stop.tool, timeout)
        except (ExecutionError, ValidationError) as error:
            raise ExecutionError(f"evaluate stop.tool {stop.tool.command}: {error}") from error
        logger.debug(
            "Stop tool %s exit_code=%d should_stop=%s via %s",
            result.command,
            result.exit_code,
            result.should_stop,
            result.decision_source.value,
        )
        if result.should_stop:
            return LoopStopEvaluation(
                should_stop=True,
                reason=(
                    f"stop.tool matched via {result.decision_source.value}: "
                    f"{result.command} (exit_code={result.exit_code})"
                ),
            )

    return LoopStopEvaluation(should_stop=False)


def loop_stop_condition(
    stop: LoopStopSpec | None,
    workdir: Path,
    tasks_open_provider: TasksOpenProvider | None = None,
) -> StopCondition:
    """Adapt ``stop`` to the executor's per-iteration ``StopCondition``."""

    if stop is None:
        return never_stop

    def _condition(iteration: int, result: StepExecutionResult) -> LoopStopEvaluation:
        return evaluate_loop_stop(stop, workdir, tasks_open_provider)

    return _condition
