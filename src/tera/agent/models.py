"""Data models shared by the plan parser, executor and plan loop."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Literal

ActionKind = Literal[
    "create_file",
    "modify_file",
    "patch_file",
    "run_command",
    "create_directory",
    "list_directory",
    "read_file_lines",
    "analyze_file",
    "inform_user",
    "chat",
]
ActionStatus = Literal["pending", "completed", "skipped", "failed"]
PlanStatus = Literal["continue", "complete"]
RunOutcome = Literal["completed", "aborted", "recovery_exhausted"]
RecoveryAction = Literal["retry", "skip", "abort"]

KNOWN_KINDS: frozenset[str] = frozenset(
    {
        "create_file",
        "modify_file",
        "patch_file",
        "run_command",
        "create_directory",
        "list_directory",
        "read_file_lines",
        "analyze_file",
        "inform_user",
        "chat",
    }
)
DISCOVERY_KINDS: frozenset[str] = frozenset({"list_directory", "read_file_lines", "analyze_file"})
COMMUNICATION_KINDS: frozenset[str] = frozenset({"inform_user", "chat"})

REQUIRED_PARAMS: dict[str, tuple[str, ...]] = {
    "create_file": ("path",),
    "modify_file": ("path", "content"),
    "patch_file": ("path", "changes"),
    "run_command": ("command",),
    "create_directory": ("path",),
    "list_directory": (),
    "read_file_lines": ("path", "start_line", "end_line"),
    "analyze_file": ("path",),
    "inform_user": ("message",),
    "chat": ("response",),
}


@dataclass(slots=True)
class Action:
    """A single model-proposed operation.

    ``params`` holds the kind-specific fields exactly as parsed, so it may be
    partial until the action has been repaired and validated.
    """

    kind: str
    description: str = ""
    params: dict[str, object] = field(default_factory=dict)
    status: ActionStatus = "pending"
    result: str | None = None
    error: str | None = None

    @property
    def is_supported(self) -> bool:
        return self.kind in KNOWN_KINDS

    @property
    def is_discovery(self) -> bool:
        return self.kind in DISCOVERY_KINDS

    @property
    def is_communication(self) -> bool:
        return self.kind in COMMUNICATION_KINDS

    def text_param(self, name: str) -> str | None:
        value = self.params.get(name)
        if value is None:
            return None
        return value if isinstance(value, str) else str(value)

    def missing_params(self) -> list[str]:
        missing: list[str] = []
        for name in REQUIRED_PARAMS.get(self.kind, ()):
            value = self.params.get(name)
            if value is None or (isinstance(value, str) and not value.strip()):
                missing.append(name)
            elif isinstance(value, list) and not value:
                missing.append(name)
        return missing


@dataclass(slots=True)
class Plan:
    """Ordered actions plus the model's commentary and continuation status."""

    actions: list[Action] = field(default_factory=list)
    status: PlanStatus = "continue"
    analysis: str | None = None
    strategy: str | None = None
    reasoning: str | None = None


@dataclass(slots=True)
class ActionResponse:
    """Single-action answer used when the model is driven one step at a time."""

    status: PlanStatus = "continue"
    next_action: Action | None = None
    summary: str | None = None


@dataclass(slots=True)
class ActionOutcome:
    """Result of executing (or skipping) one action."""

    action: Action
    success: bool
    result: str | None = None
    error: str | None = None
    skipped: bool = False


@dataclass(slots=True)
class PlanExecution:
    """Everything that happened while one plan ran."""

    plan_number: int
    execution_time: str
    results: list[ActionOutcome] = field(default_factory=list)
    plan: Plan | None = None


@dataclass(slots=True)
class RecoveryChoice:
    """Answer collected from the user after an action failed."""

    action: RecoveryAction
    instructions: str | None = None


@dataclass(slots=True)
class RecoveryDecision:
    """What the loop should do with a failed action."""

    action: RecoveryAction
    corrected_plan: Plan | None = None
    category: str = "unknown"
    reason: str | None = None


@dataclass(slots=True)
class RunResult:
    """Terminal report returned by a run."""

    success: bool
    outcome: RunOutcome
    completed_steps: int
    total_plans: int
    elapsed_seconds: float
    reason: str | None = None
    guard: str | None = None
    executions: list[PlanExecution] = field(default_factory=list)
