"""Shell adapter implementations."""

from .base import BackgroundLaunch, CommandResult, ShellAdapter
from .bash_adapter import BashAdapter


def create_shell_adapter(shell_name: str) -> ShellAdapter:
    normalized = shell_name.strip().lower()
    if normalized in {"bash", "sh", "shell"}:
        return BashAdapter(executable="sh" if normalized == "sh" else None)
    msg = f"Unsupported shell adapter: {shell_name}"
    raise ValueError(msg)


__all__ = [
    "BackgroundLaunch",
    "BashAdapter",
    "CommandResult",
    "ShellAdapter",
    "create_shell_adapter",
]
