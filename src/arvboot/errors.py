#!/usr/bin/env python3
"""
Exception hierarchy for arvboot.

Everything raised on purpose derives from BootError, except
InvalidEnvironmentEntry, which marks a programming error.
"""

from __future__ import annotations


class BootError(Exception):
    """Base class for boot failures."""


class ConfigError(BootError):
    """Malformed or incomplete cluster configuration."""


class ResourceError(BootError):
    """Port, workspace or storage directory could not be provisioned."""


class SecretGenerationError(BootError):
    """The random source is unavailable."""


class GraphError(BootError):
    """Dependency cycle or reference to an unknown task."""


class ContextCancelled(BootError):
    """The shared context was cancelled. Not an application failure."""

    def __init__(self, message: str = "context canceled") -> None:
        super().__init__(message)


class ProgramError(BootError):
    """An external program could not start or exited non-zero."""

    def __init__(self, cmdline: list[str], message: str, returncode: int | None = None) -> None:
        self.cmdline = list(cmdline)
        self.returncode = returncode
        super().__init__(f"{self.cmdline}: error: {message}")


class TaskFailedError(BootError):
    """First task failure of a run, tagged with the task name."""

    def __init__(self, task: str, cause: BaseException) -> None:
        self.task = task
        self.cause = cause
        super().__init__(f"task {task} failed: {cause}")


class InvalidEnvironmentEntry(AssertionError):
    """An environment entry without a KEY= part reached a child process."""
