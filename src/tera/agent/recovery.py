"""Failure classification and the retry/skip/abort decision for failed actions."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from enum import Enum
from typing import Protocol

from tera.agent.errors import ModelRequestError, PlanParseError, RecoveryExhausted
from tera.agent.models import Action, Plan, RecoveryChoice, RecoveryDecision
from tera.agent.parser import PARSE_ATTEMPTS, PARSE_BACKOFF_SECONDS, obtain_plan, render_plan

LOGGER = logging.getLogger(__name__)

ChooseRecoveryAction = Callable[[str], RecoveryChoice]

DEFAULT_MAX_ATTEMPTS = 3


class ErrorCategory(Enum):
    """Coarse error kinds, used for display and as context for the model."""

    MISSING_COMMAND = "missing_command"
    PERMISSION = "permission"
    MISSING_FILE = "missing_file"
    SYNTAX = "syntax"
    NETWORK = "network"
    UNKNOWN = "unknown"


# Checked in order; the first category with a matching marker wins.
ERROR_MARKERS: list[tuple[ErrorCategory, tuple[str, ...]]] = [
    (
        ErrorCategory.MISSING_COMMAND,
        ("command not found", "is not recognized as", "not installed", "modulenotfounderror"),
    ),
    (
        ErrorCategory.PERMISSION,
        ("permission denied", "access denied", "operation not permitted", "eacces"),
    ),
    (
        ErrorCategory.MISSING_FILE,
        ("no such file", "file not found", "does not exist", "cannot access", "enoent"),
    ),
    (
        ErrorCategory.SYNTAX,
        ("syntax error", "syntaxerror", "unexpected token", "parse error", "invalid syntax"),
    ),
    (
        ErrorCategory.NETWORK,
        (
            "connection refused",
            "network is unreachable",
            "could not resolve host",
            "temporary failure in name resolution",
            "timed out",
            "econnrefused",
        ),
    ),
]


def classify_error(message: str) -> ErrorCategory:
    lowered = message.lower()
    for category, markers in ERROR_MARKERS:
        if any(marker in lowered for marker in markers):
            return category
    return ErrorCategory.UNKNOWN


class CorrectedPlanSource(Protocol):
    def generate_corrected_plan(
        self,
        task: str,
        prior_plan: str,
        completed_steps: list[str],
        error_message: str,
        classification: str,
        instructions: str | None = None,
    ) -> str: ...


class RecoveryManager:
    """Decides what happens after an action fails.

    Every handled failure counts as one attempt. Reaching ``max_attempts``
    consecutive failures raises :class:`RecoveryExhausted` whatever decision
    was requested; any successful action resets the count.
    """

    def __init__(
        self,
        *,
        client: CorrectedPlanSource,
        auto: bool,
        choose_recovery_action: ChooseRecoveryAction | None = None,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        parse_attempts: int = PARSE_ATTEMPTS,
        backoff_seconds: float = PARSE_BACKOFF_SECONDS,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.client = client
        self.auto = auto
        self.choose_recovery_action = choose_recovery_action
        self.max_attempts = max_attempts
        self.parse_attempts = parse_attempts
        self.backoff_seconds = backoff_seconds
        self.sleep = sleep
        self.attempts = 0

    def record_success(self) -> None:
        if self.attempts:
            LOGGER.debug("recovery_counter_reset", extra={"attempts": self.attempts})
        self.attempts = 0

    def handle(
        self,
        *,
        task: str,
        plan: Plan,
        failed_action: Action,
        completed_steps: list[str],
        error: Exception,
    ) -> RecoveryDecision:
        message = str(error)
        category = classify_error(message)
        self.attempts += 1
        LOGGER.warning(
            "action_failed",
            extra={
                "kind": failed_action.kind,
                "category": category.value,
                "attempt": self.attempts,
                "max_attempts": self.max_attempts,
                "error": message[:240],
            },
        )
        if self.attempts >= self.max_attempts:
            raise RecoveryExhausted(self.attempts, message)

        choice = self._choose(message)
        LOGGER.info(
            "recovery_decision",
            extra={"decision": choice.action, "category": category.value, "auto": self.auto},
        )
        if choice.action != "retry":
            return RecoveryDecision(action=choice.action, category=category.value, reason=message)

        try:
            corrected = obtain_plan(
                lambda: self.client.generate_corrected_plan(
                    task,
                    render_plan(plan),
                    completed_steps,
                    message,
                    category.value,
                    choice.instructions,
                ),
                attempts=self.parse_attempts,
                backoff_seconds=self.backoff_seconds,
                sleep=self.sleep,
            )
        except (ModelRequestError, PlanParseError) as exc:
            LOGGER.error("corrected_plan_unavailable", extra={"error": str(exc)})
            return RecoveryDecision(
                action="abort",
                category=category.value,
                reason=f"Could not obtain a corrected plan: {exc}",
            )
        return RecoveryDecision(
            action="retry", corrected_plan=corrected, category=category.value, reason=message
        )

    def _choose(self, message: str) -> RecoveryChoice:
        if self.auto:
            return RecoveryChoice(action="retry")
        if self.choose_recovery_action is None:
            return RecoveryChoice(action="abort")
        return self.choose_recovery_action(message)
