"""Plan, execute and evaluate until the model declares the task complete."""

from __future__ import annotations

import json
import logging
import os
import time
from collections import Counter
from collections.abc import Callable
from datetime import datetime, timezone
from pathlib import Path
from typing import Protocol

from tera.agent.context import AgentContext, RunOptions
from tera.agent.errors import (
    ExecutionError,
    LoopGuardTripped,
    ModelRequestError,
    PlanParseError,
    RecoveryExhausted,
    TeraError,
    ValidationError,
)
from tera.agent.executor import ActionExecutor, NotifyUser
from tera.agent.models import Action, ActionOutcome, Plan, PlanExecution, RunOutcome, RunResult
from tera.agent.parser import obtain_plan
from tera.agent.recovery import ChooseRecoveryAction, CorrectedPlanSource, RecoveryManager
from tera.agent.repair import repair
from tera.shell import ShellAdapter

LOGGER = logging.getLogger(__name__)

ConfirmAction = Callable[[str], bool]

GUARD_WINDOW = 3
ACTION_REPEAT_THRESHOLD = 3
PACING_SECONDS = 0.3
KEY_PROJECT_FILES = (
    "README.md",
    "pyproject.toml",
    "setup.py",
    "requirements.txt",
    "package.json",
    "Makefile",
    ".gitignore",
)


class PlanningClient(CorrectedPlanSource, Protocol):
    def generate_plan(self, task: str, discovery_context: str | None = None) -> str: ...

    def evaluate(
        self,
        task: str,
        execution_results: list[PlanExecution],
        previous_plans: list[Plan],
    ) -> str: ...


class _RunStopped(TeraError):
    """Ends the run early: user declined, or recovery chose to abort."""


def check_error_repetition(executions: list[PlanExecution], window: int = GUARD_WINDOW) -> None:
    """Trip when the same error text shows up twice within the last ``window`` plans."""
    errors = Counter(
        outcome.error
        for execution in executions[-window:]
        for outcome in execution.results
        if outcome.error
    )
    for error, count in errors.items():
        if count >= 2:
            raise LoopGuardTripped(
                "error_repetition",
                f"Same error repeated {count} times in the last {window} plans: {error[:200]}",
            )


def check_action_repetition(
    executions: list[PlanExecution],
    window: int = GUARD_WINDOW,
    threshold: int = ACTION_REPEAT_THRESHOLD,
) -> None:
    """Trip when one action signature runs ``threshold`` times within the last ``window`` plans."""
    keys = Counter(
        key
        for execution in executions[-window:]
        for outcome in execution.results
        if (key := action_key(outcome)) is not None
    )
    for key, count in keys.items():
        if count >= threshold:
            raise LoopGuardTripped(
                "action_repetition",
                f"Action {key} repeated {count} times in the last {window} plans",
            )


def action_key(outcome: ActionOutcome) -> str | None:
    action = outcome.action
    if action.is_communication:
        return None
    target = action.params.get("path") or action.params.get("command") or ""
    start = action.params.get("start_line", "")
    end = action.params.get("end_line", "")
    return f"{action.kind}:{target}:{start}:{end}"


class AgentLoop:
    """Drives plans through repair, execution and recovery, then asks for evaluation."""

    def __init__(
        self,
        *,
        client: PlanningClient,
        shell: ShellAdapter,
        log_dir: str | Path,
        options: RunOptions | None = None,
        context: AgentContext | None = None,
        confirm: ConfirmAction | None = None,
        choose_recovery_action: ChooseRecoveryAction | None = None,
        notify: NotifyUser | None = None,
        command_timeout_ms: int | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.client = client
        self.shell = shell
        self.log_dir = Path(log_dir)
        self.options = options or RunOptions()
        self.context = context or AgentContext()
        self.confirm = confirm
        self.sleep = sleep
        self.working_directory = self.options.working_directory or os.getcwd()
        self.executor = ActionExecutor(
            shell=shell,
            working_directory=self.working_directory,
            notify=notify,
            command_timeout_ms=command_timeout_ms,
        )
        self.recovery = RecoveryManager(
            client=client,
            auto=self.options.auto,
            choose_recovery_action=choose_recovery_action,
            max_attempts=self.options.max_recovery_attempts,
            sleep=sleep,
        )
        self._completed: list[str] = []
        self._errors: list[str] = []

    def run(self, task: str) -> RunResult:
        started = time.monotonic()
        self._completed = []
        self._errors = []
        executions: list[PlanExecution] = []
        previous_plans: list[Plan] = []

        def finish(
            outcome: RunOutcome, reason: str | None = None, guard: str | None = None
        ) -> RunResult:
            return self._finish(
                task,
                outcome=outcome,
                executions=executions,
                started=started,
                reason=reason,
                guard=guard,
            )

        try:
            plan = obtain_plan(
                lambda: self.client.generate_plan(task, self._discovery_context(task)),
                sleep=self.sleep,
            )
        except (ModelRequestError, PlanParseError) as exc:
            return finish("aborted", f"Could not obtain an initial plan: {exc}")

        plan_number = 1
        while True:
            execution = PlanExecution(
                plan_number=plan_number,
                execution_time=datetime.now(timezone.utc).isoformat(),
                plan=plan,
            )
            executions.append(execution)
            try:
                self._execute_plan(task, execution)
            except RecoveryExhausted as exc:
                return finish("recovery_exhausted", str(exc), guard="recovery_ceiling")
            except _RunStopped as exc:
                return finish("aborted", str(exc))

            executed_plan = execution.plan or plan
            if executed_plan.status == "complete":
                return finish("completed", "Model marked the task complete")

            try:
                check_error_repetition(executions)
                check_action_repetition(executions)
            except LoopGuardTripped as exc:
                LOGGER.warning("loop_guard_tripped", extra={"guard": exc.guard, "reason": str(exc)})
                return finish("aborted", str(exc), guard=exc.guard)

            previous_plans.append(executed_plan)
            try:
                plan = obtain_plan(
                    lambda: self.client.evaluate(task, executions, previous_plans),
                    sleep=self.sleep,
                )
            except (ModelRequestError, PlanParseError) as exc:
                return finish("aborted", f"Evaluation failed: {exc}")

            if not plan.actions:
                return finish("completed", "No further actions proposed")

            plan_number += 1
            if plan_number > self.options.max_plans:
                LOGGER.warning(
                    "loop_guard_tripped",
                    extra={"guard": "plan_ceiling", "max_plans": self.options.max_plans},
                )
                return finish(
                    "aborted",
                    f"Plan limit of {self.options.max_plans} reached; likely an infinite loop",
                    guard="plan_ceiling",
                )

    def _execute_plan(self, task: str, execution: PlanExecution) -> None:
        plan_number = execution.plan_number
        current = execution.plan or Plan()
        self.executor.begin_plan(current.actions)
        index = 0
        while index < len(current.actions):
            action = current.actions[index]
            repair(action, task)
            self._approve(action)

            try:
                result = self.executor.execute(action)
            except (ExecutionError, ValidationError) as exc:
                action.status = "failed"
                action.error = str(exc)
                outcome = ActionOutcome(action=action, success=False, error=str(exc))
                execution.results.append(outcome)
                self._errors.append(str(exc))
                self._append_log(task, plan_number, outcome)

                decision = self.recovery.handle(
                    task=task,
                    plan=current,
                    failed_action=action,
                    completed_steps=list(self._completed),
                    error=exc,
                )
                if decision.action == "retry" and decision.corrected_plan is not None:
                    current = decision.corrected_plan
                    execution.plan = current
                    self.executor.begin_plan(current.actions)
                    index = 0
                    continue
                if decision.action == "skip":
                    action.status = "skipped"
                    outcome.skipped = True
                    index += 1
                    continue
                raise _RunStopped(decision.reason or "Run aborted after a failed action") from exc

            action.status = "completed"
            action.result = result
            outcome = ActionOutcome(action=action, success=True, result=result)
            execution.results.append(outcome)
            if not action.is_discovery:
                self._completed.append(action.description)
            self.recovery.record_success()
            LOGGER.info(
                "action_executed",
                extra={
                    "kind": action.kind,
                    "plan_number": plan_number,
                    "step": self.executor.current_step,
                },
            )
            self._append_log(task, plan_number, outcome)

            index += 1
            if not self.options.fast and index < len(current.actions):
                self.sleep(PACING_SECONDS)

    def _approve(self, action: Action) -> None:
        if not self.options.requires_confirmation(action):
            return
        if self.confirm is None:
            raise _RunStopped(f"No confirmation available for {action.kind}; run cancelled")
        if not self.confirm(f"{action.kind}: {action.description}"):
            raise _RunStopped(f"User declined {action.kind}: {action.description}")

    def _discovery_context(self, task: str) -> str:
        root = Path(self.working_directory)
        try:
            entries = sorted(entry.name for entry in root.iterdir())
        except OSError as exc:
            entries = [f"(could not list directory: {exc})"]
        present = [name for name in KEY_PROJECT_FILES if (root / name).exists()]
        lines = [
            f"Working directory: {root}",
            "Top-level entries:",
            *(f"- {name}" for name in entries[:50]),
        ]
        if len(entries) > 50:
            lines.append(f"- ... ({len(entries) - 50} more)")
        lines.append(f"Key project files: {', '.join(present) if present else 'none'}")
        memory_context = self.context.memory.context_for(task)
        if memory_context:
            lines.extend(["", memory_context])
        return "\n".join(lines)

    def _finish(
        self,
        task: str,
        *,
        outcome: RunOutcome,
        executions: list[PlanExecution],
        started: float,
        reason: str | None,
        guard: str | None,
    ) -> RunResult:
        result = RunResult(
            success=outcome == "completed",
            outcome=outcome,
            completed_steps=len(self._completed),
            total_plans=len(executions),
            elapsed_seconds=time.monotonic() - started,
            reason=reason,
            guard=guard,
            executions=executions,
        )
        LOGGER.info(
            "run_finished",
            extra={
                "outcome": result.outcome,
                "completed_steps": result.completed_steps,
                "total_plans": result.total_plans,
                "guard": guard,
            },
        )
        self._write_log_entry(
            {
                "event": "run_finished",
                "task": task,
                "outcome": result.outcome,
                "success": result.success,
                "completed_steps": result.completed_steps,
                "total_plans": result.total_plans,
                "elapsed_seconds": round(result.elapsed_seconds, 4),
                "reason": reason,
                "guard": guard,
            }
        )
        try:
            self.context.memory.record(
                task, success=result.success, actions=list(self._completed), errors=self._errors
            )
        except OSError as exc:
            LOGGER.warning("memory_write_failed", extra={"error": str(exc)})
        return result

    def _append_log(self, task: str, plan_number: int, outcome: ActionOutcome) -> None:
        action = outcome.action
        self._write_log_entry(
            {
                "event": "action",
                "task": task,
                "plan_number": plan_number,
                "step": self.executor.current_step,
                "kind": action.kind,
                "description": action.description,
                "success": outcome.success,
                "result": _excerpt(outcome.result),
                "error": _excerpt(outcome.error),
            }
        )

    def _write_log_entry(self, fields: dict[str, object]) -> None:
        self.log_dir.mkdir(parents=True, exist_ok=True)
        day_file = self.log_dir / f"session-{datetime.now(timezone.utc).date().isoformat()}.log"
        entry = {
            "log_version": 1,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "model": getattr(self.client, "model", None),
            "shell": getattr(self.shell, "name", self.shell.__class__.__name__),
            "working_directory": self.working_directory,
            **fields,
        }
        with day_file.open("a", encoding="utf-8") as handle:
            handle.write(json.dumps(entry, ensure_ascii=False) + "\n")


def run_agent(
    task: str,
    options: RunOptions | None = None,
    *,
    client: PlanningClient,
    shell: ShellAdapter,
    context: AgentContext | None = None,
    log_dir: str | Path | None = None,
    confirm: ConfirmAction | None = None,
    choose_recovery_action: ChooseRecoveryAction | None = None,
    notify: NotifyUser | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> RunResult:
    """Run ``task`` to a terminal state and report what happened."""
    context = context or AgentContext()
    config = context.config
    loop = AgentLoop(
        client=client,
        shell=shell,
        log_dir=log_dir or (config.log_dir if config else "logs"),
        options=options,
        context=context,
        confirm=confirm,
        choose_recovery_action=choose_recovery_action,
        notify=notify,
        command_timeout_ms=config.command_timeout_ms if config else None,
        sleep=sleep,
    )
    return loop.run(task)


def _excerpt(value: str | None, limit: int = 500) -> str | None:
    if value is None:
        return None
    return value if len(value) <= limit else f"{value[:limit]}..."
