"""Shared pieces for subprocess-backed step executors."""

from __future__ import annotations

import os
import subprocess
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path

from forge_engine.errors import ExecutionError


@dataclass(slots=True)
class StepExecutionResult:
    """Captured outcome of one subprocess step."""

    step_id: str
    command: str
    exit_code: int
    success: bool
    stdout: str
    stderr: str
    output: str
    started_at: datetime
    finished_at: datetime
    duration_ms: int
    logs: list[str] = field(default_factory=list)


def combine_output(stdout: str, stderr: str) -> str:
    if not stdout:
        return stderr
    if not stderr:
        return stdout
    return f"{stdout}\n{stderr}"


def capture_base_env() -> list[str]:
    """Snapshot of the current process environment as ``KEY=VALUE`` entries."""

    return [f"{key}={value}" for key, value in os.environ.items()]


def env_pairs_to_dict(pairs: list[str]) -> dict[str, str]:
    """Fold ``KEY=VALUE`` entries into a mapping; later entries win."""

    env: dict[str, str] = {}
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if sep and key:
            env[key] = value
    return env


def duration_ms(started_at: datetime, finished_at: datetime) -> int:
    return int((finished_at - started_at).total_seconds() * 1000)


def run_bash(  # noqa: PLR0913
    command: str,
    *,
    cwd: Path,
    env: dict[str, str] | None,
    stdin: str | None,
    step_id: str,
    action: str,
) -> subprocess.CompletedProcess[bytes]:
    """Run ``bash -c command`` to completion, capturing both streams."""

    try:
        return subprocess.run(  # noqa: S603
            ["bash", "-c", command],  # noqa: S607
            cwd=cwd,
            env=env,
            input=stdin.encode("utf-8") if stdin is not None else None,
            stdin=subprocess.DEVNULL if stdin is None else None,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            check=False,
        )
    except OSError as error:
        raise ExecutionError(f"{action} {step_id} in {cwd}: {error}") from error


def decode_stream(raw: bytes | None) -> str:
    if not raw:
        return ""
    return raw.decode("utf-8", errors="replace")


def exit_code_of(returncode: int | None) -> int:
    """Negative codes (signal deaths) and unknown codes map to ``-1``."""

    if returncode is None or returncode < 0:
        return -1
    return returncode


def indented_block(label: str, text: str) -> list[str]:
    """``label:`` header followed by each line of ``text`` indented two spaces."""

    if not text:
        return []
    return [f"{label}:", *(f"  {line}" for line in text.splitlines())]
