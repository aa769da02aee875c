"""Exception types raised by the plan engine."""

from __future__ import annotations


class TeraError(Exception):
    """Base class for all engine errors."""


class PlanParseError(TeraError):
    """Model output contained no recognisable action or status."""

    def __init__(self, message: str, *, text: str = "") -> None:
        self.text = text[:200]
        super().__init__(f"{message}: {self.text!r}" if self.text else message)


class ValidationError(TeraError):
    """An action is missing required fields after repair."""

    def __init__(self, kind: str, missing: list[str]) -> None:
        self.kind = kind
        self.missing = list(missing)
        super().__init__(f"Action {kind} is missing required field(s): {', '.join(missing)}")


class ExecutionError(TeraError):
    """An action failed while touching the filesystem or running a command."""

    def __init__(
        self,
        message: str,
        *,
        command: str | None = None,
        returncode: int | None = None,
        stdout: str = "",
        stderr: str = "",
    ) -> None:
        self.command = command
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr
        super().__init__(message)


class UnsupportedActionError(ExecutionError):
    def __init__(self, kind: str) -> None:
        self.kind = kind
        super().__init__(f"Unsupported action: {kind}")


class PatchError(ExecutionError):
    """No change in a patch batch could be applied."""

    def __init__(self, message: str, *, failures: list[str] | None = None) -> None:
        self.failures = list(failures or [])
        detail = message
        if self.failures:
            detail = f"{message}\n" + "\n".join(f"- {item}" for item in self.failures)
        super().__init__(detail)


class RecoveryExhausted(TeraError):
    def __init__(self, attempts: int, last_error: str) -> None:
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(
            f"Recovery attempts exhausted after {attempts} failure(s); last error: {last_error}"
        )


class LoopGuardTripped(TeraError):
    """A loop guard stopped the run."""

    def __init__(self, guard: str, message: str) -> None:
        self.guard = guard
        super().__init__(message)


class ModelRequestError(TeraError):
    """The model endpoint could not produce a response."""
