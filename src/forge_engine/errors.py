"""Exception hierarchy shared by stores, executors and the workflow engine."""

from __future__ import annotations


class ForgeError(RuntimeError):
    """Base error for engine operations; the message carries the detail."""


class ValidationError(ForgeError, ValueError):
    """Input rejected before any side effect."""


class NotFoundError(ForgeError, LookupError):
    """Referenced job, run, step or trigger does not exist."""


class StorageError(ForgeError):
    """Filesystem read/write/decode failure, message includes the path."""


class ReferentialError(ForgeError):
    """Persisted record points at something that no longer exists."""


class ExecutionError(ForgeError):
    """Step could not be planned, spawned or awaited."""
