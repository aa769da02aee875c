"""Command-line interface for tera."""

from __future__ import annotations

import argparse
import logging
from pathlib import Path
from typing import cast

from .agent.context import AgentContext, RunOptions
from .agent.loop import run_agent
from .agent.models import KNOWN_KINDS, RecoveryChoice, RunResult
from .config import AppConfig, parse_kind_list
from .llm.client import LLMClient
from .memory import EpisodeMemory, MemoryStore, NullMemory
from .shell import create_shell_adapter

LOGGER = logging.getLogger(__name__)

MESSAGE_PREFIXES = {
    "info": "[info]",
    "success": "[ok]",
    "warning": "[warning]",
    "error": "[error]",
    "complete": "[done]",
    "tip": "[tip]",
    "chat": "[tera]",
}


class CLIArgs(argparse.Namespace):
    task: str | None
    working_directory: str | None
    auto: bool
    auto_approve: str | None
    fast: bool
    max_plans: int | None
    verbose: bool


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="tera", description="Plan and run file and shell actions for a task"
    )
    parser.add_argument(
        "--cwd",
        dest="working_directory",
        help=(
            "Directory the actions run in. "
            "Takes precedence over config/env cwd values."
        ),
    )
    parser.add_argument(
        "--auto",
        action="store_true",
        help="Run every action without confirmation and retry failures automatically",
    )
    parser.add_argument(
        "--auto-approve",
        metavar="KINDS",
        help=f"Comma-separated action kinds that never ask ({', '.join(sorted(KNOWN_KINDS))})",
    )
    parser.add_argument("--fast", action="store_true", help="Skip the pause between actions")
    parser.add_argument("--max-plans", type=int, help="Stop after this many plans")
    parser.add_argument("--verbose", action="store_true", help="Log debug details to stderr")
    parser.add_argument("task", nargs="?", help="Task to carry out")
    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = cast(CLIArgs, parser.parse_args(argv))
    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.WARNING)
    config = AppConfig.from_env()

    task = args.task or input("Task: ").strip()
    if not task:
        print("No task provided.")
        return 1

    configured_working_directory = (
        args.working_directory if args.working_directory is not None else config.working_directory
    )
    working_directory: str | None = None
    if configured_working_directory is not None:
        resolved_working_directory = Path(configured_working_directory).expanduser().resolve()
        if not resolved_working_directory.exists() or not resolved_working_directory.is_dir():
            print(f"Invalid configured cwd directory: {configured_working_directory}")
            return 1
        working_directory = str(resolved_working_directory)

    options = RunOptions.from_config(config)
    options.working_directory = working_directory
    if args.auto:
        options.auto = True
    if args.auto_approve:
        options.auto_approve_kinds = frozenset(parse_kind_list(args.auto_approve))
    if args.fast:
        options.fast = True
    if args.max_plans is not None and args.max_plans > 0:
        options.max_plans = args.max_plans

    memory: MemoryStore = (
        EpisodeMemory(config.memory_dir) if config.memory_enabled else NullMemory()
    )
    client = LLMClient(
        api_key=config.api_key,
        model=config.model,
        system_prompt=config.system_prompt,
        reasoning_effort=config.reasoning_effort,
        api_url=config.api_url,
    )
    adapter = create_shell_adapter(config.shell)
    LOGGER.debug("shell_adapter_selected", extra={"shell": adapter.name})

    result = run_agent(
        task,
        options,
        client=client,
        shell=adapter,
        context=AgentContext(config=config, memory=memory),
        log_dir=config.log_dir,
        confirm=_confirm_action,
        choose_recovery_action=_choose_recovery_action,
        notify=_render_message,
    )
    print(render_result(result))
    return 0 if result.success else 1


def render_result(result: RunResult) -> str:
    labels = {
        "completed": "Task completed",
        "aborted": "Run aborted",
        "recovery_exhausted": "Run stopped: recovery attempts exhausted",
    }
    lines = [
        f"=== {labels.get(result.outcome, result.outcome)} ===",
        f"steps completed: {result.completed_steps}",
        f"plans executed: {result.total_plans}",
        f"elapsed: {result.elapsed_seconds:.1f}s",
    ]
    if result.guard:
        lines.append(f"guard: {result.guard}")
    if result.reason:
        lines.append(f"reason: {result.reason}")
    return "\n".join(lines)


def _confirm_action(prompt: str) -> bool:
    choice = input(f"Run {prompt}? [y/N]: ").strip().lower()
    return choice in {"y", "yes"}


def _choose_recovery_action(error_message: str) -> RecoveryChoice:
    print("\n=== ACTION FAILED ===")
    print(error_message)
    print("=====================")
    choice = input("[r]etry with a corrected plan, [s]kip or [a]bort? [r/s/A]: ")
    choice = choice.strip().lower()
    if choice in {"r", "retry"}:
        instructions = input("Instructions for the corrected plan (optional): ").strip()
        return RecoveryChoice(action="retry", instructions=instructions or None)
    if choice in {"s", "skip"}:
        return RecoveryChoice(action="skip")
    return RecoveryChoice(action="abort")


def _render_message(message: str, message_type: str) -> None:
    print(f"{MESSAGE_PREFIXES.get(message_type, '[info]')} {message}")


if __name__ == "__main__":
    raise SystemExit(main())
