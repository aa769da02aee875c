"""Dispatch of validated actions to filesystem and shell operations."""

from __future__ import annotations

import logging
import os
from collections.abc import Callable
from pathlib import Path

from tera.agent.errors import ExecutionError, UnsupportedActionError
from tera.agent.models import Action
from tera.agent.patch import apply_patch, create_backup, split_lines
from tera.agent.repair import validate
from tera.shell import ShellAdapter

LOGGER = logging.getLogger(__name__)

NotifyUser = Callable[[str, str], None]

BACKGROUND_GRACE_SECONDS = 1.0
ANALYZE_MAX_CHARS = 20000
MESSAGE_TYPES = {"info", "success", "warning", "error", "complete", "tip"}


def _log_notification(message: str, message_type: str) -> None:
    LOGGER.info("user_notification", extra={"message_type": message_type, "text": message})


class ActionExecutor:
    """Runs one action at a time relative to ``working_directory``.

    ``current_step`` counts the non-discovery actions executed so far and is
    only used for progress reporting.
    """

    def __init__(
        self,
        *,
        shell: ShellAdapter,
        working_directory: str | Path | None = None,
        notify: NotifyUser | None = None,
        command_timeout_ms: int | None = None,
    ) -> None:
        self.shell = shell
        self.working_directory = Path(working_directory or os.getcwd())
        self.notify = notify or _log_notification
        self.command_timeout_ms = command_timeout_ms
        self.current_step = 0
        self.total_steps = 0
        self._handlers: dict[str, Callable[[Action], str]] = {
            "create_file": self._create_file,
            "modify_file": self._modify_file,
            "patch_file": self._patch_file,
            "run_command": self._run_command,
            "create_directory": self._create_directory,
            "list_directory": self._list_directory,
            "read_file_lines": self._read_file_lines,
            "analyze_file": self._analyze_file,
            "inform_user": self._inform_user,
            "chat": self._chat,
        }

    def begin_plan(self, actions: list[Action]) -> None:
        self.current_step = 0
        self.total_steps = sum(1 for action in actions if not action.is_discovery)

    def execute(self, action: Action) -> str:
        if not action.is_supported:
            raise UnsupportedActionError(action.kind)
        handler = self._handlers[action.kind]
        validate(action)
        if not action.is_discovery:
            self.current_step += 1
        LOGGER.debug(
            "action_started",
            extra={
                "kind": action.kind,
                "step": self.current_step,
                "total_steps": self.total_steps,
                "description": action.description,
            },
        )
        return handler(action)

    def resolve(self, value: object) -> Path:
        path = Path(str(value)).expanduser()
        if not path.is_absolute():
            path = self.working_directory / path
        return path

    def _create_file(self, action: Action) -> str:
        path = self.resolve(action.params["path"])
        content = action.text_param("content") or ""
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(content, encoding="utf-8")
        except OSError as exc:
            raise ExecutionError(f"Could not create {path}: {exc}") from exc
        return f"Created file: {path} ({len(content)} characters)"

    def _modify_file(self, action: Action) -> str:
        path = self.resolve(action.params["path"])
        if not path.is_file():
            raise ExecutionError(f"File not found: {path}")
        content = action.text_param("content") or ""
        backup = create_backup(path)
        try:
            path.write_text(content, encoding="utf-8")
        except OSError as exc:
            raise ExecutionError(f"Could not write {path}: {exc}") from exc
        return f"Modified file: {path} (backup: {backup.name})"

    def _patch_file(self, action: Action) -> str:
        path = self.resolve(action.params["path"])
        changes = action.params["changes"]
        if not isinstance(changes, list):
            raise ExecutionError(f"Invalid changes for {path}: expected a list")
        result = apply_patch(path, changes)
        summary = (
            f"Patched {path}: {result.changes_applied}/{result.total_changes} change(s) applied, "
            f"{result.original_line_count} -> {result.final_line_count} lines"
        )
        if result.failures:
            summary += "\nSkipped:\n" + "\n".join(f"- {item}" for item in result.failures)
        return summary

    def _run_command(self, action: Action) -> str:
        command = str(action.params["command"]).strip()
        cwd = str(self.resolve(action.params.get("cwd") or "."))
        if command.endswith("&"):
            return self._run_background(command, cwd)

        timeout_ms = action.params.get("timeout", self.command_timeout_ms)
        timeout = None
        if isinstance(timeout_ms, (int, float)) and not isinstance(timeout_ms, bool):
            timeout = timeout_ms / 1000 if timeout_ms > 0 else None

        result = self.shell.execute(command, cwd=cwd, timeout=timeout)
        if result.timed_out:
            return (
                f"Command stopped after {timeout:.1f}s timeout: {command}\n"
                f"stdout:\n{result.stdout}\nstderr:\n{result.stderr}"
            )
        if result.returncode != 0:
            raise ExecutionError(
                _format_failure(command, result.returncode, result.stdout, result.stderr),
                command=command,
                returncode=result.returncode,
                stdout=result.stdout,
                stderr=result.stderr,
            )
        output = result.stdout.strip()
        return f"$ {command}\n{output}" if output else f"$ {command}\n(no output)"

    def _run_background(self, command: str, cwd: str) -> str:
        launch = self.shell.spawn_background(
            command, cwd=cwd, grace_seconds=BACKGROUND_GRACE_SECONDS
        )
        if not launch.running and launch.returncode not in (0, None):
            raise ExecutionError(
                _format_failure(launch.command, launch.returncode, launch.stdout, launch.stderr),
                command=launch.command,
                returncode=launch.returncode,
                stdout=launch.stdout,
                stderr=launch.stderr,
            )
        state = "running in background" if launch.running else "finished during startup"
        lines = [f"Started: {launch.command} (PID {launch.pid}, {state})"]
        if launch.stdout.strip():
            lines.append(f"Initial output:\n{launch.stdout.strip()}")
        return "\n".join(lines)

    def _create_directory(self, action: Action) -> str:
        path = self.resolve(action.params["path"])
        try:
            path.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise ExecutionError(f"Could not create directory {path}: {exc}") from exc
        return f"Created directory: {path}"

    def _list_directory(self, action: Action) -> str:
        path = self.resolve(action.params.get("path") or ".")
        try:
            entries = sorted(entry.name for entry in path.iterdir())
        except OSError as exc:
            raise ExecutionError(f"Could not list {path}: {exc}") from exc
        return "\n".join(entries)

    def _read_file_lines(self, action: Action) -> str:
        path = self.resolve(action.params["path"])
        start = _as_line_number(action.params["start_line"], "start_line")
        end = _as_line_number(action.params["end_line"], "end_line")
        if start < 1:
            raise ExecutionError(f"start_line must be >= 1 (got {start})")
        if end < start:
            raise ExecutionError(f"end_line ({end}) must be >= start_line ({start})")

        lines, _ = split_lines(_read_text(path))
        if start > len(lines):
            raise ExecutionError(
                f"start_line {start} is past the end of {path} ({len(lines)} lines)"
            )
        end = min(end, len(lines))
        numbered = [f"{number:>4}: {lines[number - 1]}" for number in range(start, end + 1)]
        header = f"{path} (lines {start}-{end} of {len(lines)})"
        return "\n".join([header, *numbered])

    def _analyze_file(self, action: Action) -> str:
        path = self.resolve(action.params["path"])
        content = _read_text(path)
        line_count = len(split_lines(content)[0])
        if len(content) > ANALYZE_MAX_CHARS:
            content = f"{content[:ANALYZE_MAX_CHARS]}\n... (truncated)"
        return f"{path} ({line_count} lines)\n{content}"

    def _inform_user(self, action: Action) -> str:
        message = str(action.params["message"])
        message_type = str(action.params.get("type", "info")).lower()
        if message_type not in MESSAGE_TYPES:
            message_type = "info"
        self.notify(message, message_type)
        return f"User informed ({message_type}): {message}"

    def _chat(self, action: Action) -> str:
        response = str(action.params["response"])
        self.notify(response, "chat")
        return f"Replied to user: {response}"


def _format_failure(command: str, returncode: int | None, stdout: str, stderr: str) -> str:
    return (
        f"Command failed with exit code {returncode}: {command}\n"
        f"stdout:\n{stdout.strip()}\n"
        f"stderr:\n{stderr.strip()}"
    )


def _as_line_number(value: object, name: str) -> int:
    if isinstance(value, bool):
        raise ExecutionError(f"{name} must be an integer")
    try:
        return int(value)  # type: ignore[call-overload]
    except (TypeError, ValueError) as exc:
        raise ExecutionError(f"{name} must be an integer (got {value!r})") from exc


def _read_text(path: Path) -> str:
    if not path.is_file():
        raise ExecutionError(f"File not found: {path}")
    try:
        return path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as exc:
        raise ExecutionError(f"Could not read {path}: {exc}") from exc
