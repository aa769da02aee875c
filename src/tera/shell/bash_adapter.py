"""Bash shell adapter implementation."""

from __future__ import annotations

import locale
import os
import shutil
import signal
import subprocess
import tempfile
from typing import IO

from .base import BackgroundLaunch, CommandResult, ShellAdapter

TERMINATE_GRACE_SECONDS = 5.0


class BashAdapter(ShellAdapter):
    """Adapter for command execution via ``bash``/``sh``."""

    def __init__(self, executable: str | None = None, *, fallback_to_sh: bool = True) -> None:
        self.executable = executable or _default_executable(fallback_to_sh=fallback_to_sh)

    @property
    def name(self) -> str:
        return "bash"

    def execute(
        self,
        command: str,
        *,
        cwd: str | None = None,
        timeout: float | None = None,
    ) -> CommandResult:
        self.log_request(command, timeout=timeout)
        started = self.monotonic_now()
        try:
            process = subprocess.Popen(
                [self.executable, "-lc", command],
                cwd=cwd,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                start_new_session=True,
            )
        except OSError as exc:
            result = CommandResult(
                command=command,
                shell=self.name,
                returncode=127,
                stdout="",
                stderr=str(exc),
                duration_seconds=self.monotonic_now() - started,
            )
            self.log_result(result)
            return result

        try:
            stdout, stderr = process.communicate(timeout=timeout)
            result = CommandResult(
                command=command,
                shell=self.name,
                returncode=process.returncode,
                stdout=_normalize_output(stdout),
                stderr=_normalize_output(stderr),
                duration_seconds=self.monotonic_now() - started,
            )
        except subprocess.TimeoutExpired:
            stdout, stderr = _terminate(process)
            result = CommandResult(
                command=command,
                shell=self.name,
                returncode=124,
                stdout=_normalize_output(stdout),
                stderr=_normalize_output(stderr),
                timed_out=True,
                duration_seconds=self.monotonic_now() - started,
            )

        self.log_result(result)
        return result

    def spawn_background(
        self,
        command: str,
        *,
        cwd: str | None = None,
        grace_seconds: float = 1.0,
    ) -> BackgroundLaunch:
        foreground = command.rstrip().rstrip("&").rstrip()
        self.log_request(foreground, timeout=grace_seconds, background=True)
        with tempfile.TemporaryFile() as out, tempfile.TemporaryFile() as err:
            try:
                process = subprocess.Popen(
                    [self.executable, "-lc", foreground],
                    cwd=cwd,
                    stdin=subprocess.DEVNULL,
                    stdout=out,
                    stderr=err,
                    start_new_session=True,
                )
            except OSError as exc:
                return BackgroundLaunch(
                    command=foreground, pid=0, running=False, returncode=127, stderr=str(exc)
                )
            try:
                returncode: int | None = process.wait(timeout=grace_seconds)
            except subprocess.TimeoutExpired:
                returncode = None
            return BackgroundLaunch(
                command=foreground,
                pid=process.pid,
                running=returncode is None,
                returncode=returncode,
                stdout=_read_spool(out),
                stderr=_read_spool(err),
            )


def _terminate(process: subprocess.Popen[bytes]) -> tuple[bytes, bytes]:
    _signal_group(process, signal.SIGTERM)
    try:
        return process.communicate(timeout=TERMINATE_GRACE_SECONDS)
    except subprocess.TimeoutExpired:
        _signal_group(process, signal.SIGKILL)
        return process.communicate()


def _signal_group(process: subprocess.Popen[bytes], signum: int) -> None:
    try:
        os.killpg(process.pid, signum)
    except (ProcessLookupError, PermissionError):
        process.send_signal(signum)


def _read_spool(handle: IO[bytes]) -> str:
    handle.flush()
    handle.seek(0)
    return _normalize_output(handle.read())


def _default_executable(*, fallback_to_sh: bool) -> str:
    if shutil.which("bash"):
        return "bash"
    if fallback_to_sh and shutil.which("sh"):
        return "sh"
    return "bash"


def _normalize_output(payload: bytes | str | None) -> str:
    if payload is None:
        return ""
    if isinstance(payload, str):
        return payload

    for encoding in ("utf-8", "utf-8-sig", "utf-16", locale.getpreferredencoding(False), "cp1252"):
        try:
            return payload.decode(encoding)
        except (LookupError, UnicodeDecodeError):
            continue
    return payload.decode("utf-8", errors="replace")
