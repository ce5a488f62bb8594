"""Subprocess step executors: bash commands, agent harness calls and loops."""

from forge_engine.executors.agent import (
    AgentStepRequest,
    execute_agent_step,
    format_agent_step_log_lines,
)
from forge_engine.executors.base import StepExecutionResult, capture_base_env, combine_output
from forge_engine.executors.bash import (
    BashStepExecutionResult,
    BashStepRequest,
    append_bash_step_logs,
    execute_bash_step,
    format_bash_step_log_lines,
)
from forge_engine.executors.harness import (
    ExecutionPlan,
    ExecutionPlanner,
    HarnessKind,
    ProfileSpec,
    PromptMode,
    build_execution_plan,
)
from forge_engine.executors.loop import (
    LoopStepExecutionResult,
    LoopStepRequest,
    LoopStopEvaluation,
    LoopStopStatus,
    StopCondition,
    execute_loop_step,
    format_loop_step_log_lines,
)
from forge_engine.executors.stop import (
    LoopStopSpec,
    StopLlmSpec,
    StopToolSpec,
    evaluate_loop_stop,
    loop_stop_condition,
    run_stop_tool,
)

__all__ = [
    "AgentStepRequest",
    "BashStepExecutionResult",
    "BashStepRequest",
    "ExecutionPlan",
    "ExecutionPlanner",
    "HarnessKind",
    "LoopStepExecutionResult",
    "LoopStepRequest",
    "LoopStopEvaluation",
    "LoopStopSpec",
    "LoopStopStatus",
    "ProfileSpec",
    "PromptMode",
    "StepExecutionResult",
    "StopCondition",
    "StopLlmSpec",
    "StopToolSpec",
    "append_bash_step_logs",
    "build_execution_plan",
    "capture_base_env",
    "combine_output",
    "evaluate_loop_stop",
    "execute_agent_step",
    "execute_bash_step",
    "execute_loop_step",
    "format_agent_step_log_lines",
    "format_bash_step_log_lines",
    "format_loop_step_log_lines",
    "loop_stop_condition",
    "run_stop_tool",
]
