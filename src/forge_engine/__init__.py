"""Scheduling and execution engine for agent orchestration jobs and workflows."""

__version__ = "0.1.0"
