"""Per-run handles and options passed explicitly through the engine."""

from __future__ import annotations

from dataclasses import dataclass, field

from tera.agent.models import DISCOVERY_KINDS, Action
from tera.config import AppConfig
from tera.memory import MemoryStore, NullMemory


@dataclass(slots=True)
class RunOptions:
    """Caller-facing switches for a single run."""

    auto: bool = False
    auto_approve_kinds: frozenset[str] = field(default_factory=frozenset)
    fast: bool = False
    max_plans: int = 10
    max_recovery_attempts: int = 3
    working_directory: str | None = None

    def requires_confirmation(self, action: Action) -> bool:
        if self.auto or action.kind in DISCOVERY_KINDS:
            return False
        return action.kind not in self.auto_approve_kinds

    @classmethod
    def from_config(cls, config: AppConfig) -> RunOptions:
        return cls(
            auto=config.auto,
            auto_approve_kinds=frozenset(config.auto_approve),
            fast=config.fast,
            max_plans=config.max_plans,
            max_recovery_attempts=config.max_recovery_attempts,
            working_directory=config.working_directory,
        )


@dataclass(slots=True)
class AgentContext:
    """Handles a run needs beyond the model and the shell."""

    config: AppConfig | None = None
    memory: MemoryStore = field(default_factory=NullMemory)
