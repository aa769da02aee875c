"""Base shell adapter primitives."""

from __future__ import annotations

import abc
import logging
import re
import time
from dataclasses import dataclass

LOGGER = logging.getLogger(__name__)

_SECRET_PATTERNS = [
    re.compile(pattern, re.IGNORECASE)
    for pattern in (
        r"(--?(?:password|token|secret|api[-_]?key)\s+)([^\s]+)",
        r"((?:password|token|secret|api[-_]?key)\s*=\s*)([^\s]+)",
    )
]


@dataclass(slots=True)
class CommandResult:
    """Result of a command execution."""

    command: str
    shell: str
    returncode: int
    stdout: str
    stderr: str
    timed_out: bool = False
    duration_seconds: float = 0.0


@dataclass(slots=True)
class BackgroundLaunch:
    """Outcome of starting a detached command and watching it briefly."""

    command: str
    pid: int
    running: bool
    returncode: int | None = None
    stdout: str = ""
    stderr: str = ""


class ShellAdapter(abc.ABC):
    """Abstract adapter for shell-specific command execution."""

    @property
    @abc.abstractmethod
    def name(self) -> str:
        """Friendly shell adapter name."""

    @abc.abstractmethod
    def execute(
        self,
        command: str,
        *,
        cwd: str | None = None,
        timeout: float | None = None,
    ) -> CommandResult:
        """Execute a shell command and return a normalized result.

        On timeout the process group is terminated and whatever output was
        captured is returned with ``timed_out`` set.
        """

    @abc.abstractmethod
    def spawn_background(
        self,
        command: str,
        *,
        cwd: str | None = None,
        grace_seconds: float = 1.0,
    ) -> BackgroundLaunch:
        """Start ``command`` detached and report whether it survived the grace period."""

    def log_request(self, command: str, *, timeout: float | None, background: bool = False) -> None:
        LOGGER.info(
            "command_request",
            extra={
                "shell": self.name,
                "command": self._sanitize_command(command),
                "timeout": timeout,
                "background": background,
            },
        )

    def log_result(self, result: CommandResult) -> None:
        LOGGER.info(
            "command_result",
            extra={
                "shell": result.shell,
                "returncode": result.returncode,
                "timed_out": result.timed_out,
                "duration_seconds": round(result.duration_seconds, 4),
                "stdout_length": len(result.stdout),
                "stderr_length": len(result.stderr),
            },
        )

    @staticmethod
    def monotonic_now() -> float:
        return time.monotonic()

    def _sanitize_command(self, command: str) -> str:
        sanitized = command
        for pattern in _SECRET_PATTERNS:
            sanitized = pattern.sub(r"\1***", sanitized)
        return sanitized
