"""Append-only episode memory shared across runs."""

from __future__ import annotations

import json
import logging
import re
from collections import Counter
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Protocol

LOGGER = logging.getLogger(__name__)

EPISODES_FILE = "episodes.jsonl"
MAX_EPISODES = 100
_WORD_PATTERN = re.compile(r"[a-zA-Z0-9_.-]{4,}")


@dataclass(slots=True)
class Episode:
    task: str
    success: bool
    timestamp: str
    actions: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)


class MemoryStore(Protocol):
    def record(
        self, task: str, *, success: bool, actions: list[str], errors: list[str]
    ) -> None: ...

    def context_for(self, task: str) -> str | None: ...


class NullMemory:
    """Memory store used when persistence is disabled."""

    def record(self, task: str, *, success: bool, actions: list[str], errors: list[str]) -> None:
        return None

    def context_for(self, task: str) -> str | None:
        return None


class EpisodeMemory:
    """Stores one JSON line per finished run and recalls runs with similar tasks."""

    def __init__(self, directory: str | Path) -> None:
        self.directory = Path(directory)
        self.path = self.directory / EPISODES_FILE

    def record(self, task: str, *, success: bool, actions: list[str], errors: list[str]) -> None:
        episode = Episode(
            task=task,
            success=success,
            timestamp=datetime.now(timezone.utc).isoformat(),
            actions=actions[:50],
            errors=[error[:240] for error in errors[:20]],
        )
        self.directory.mkdir(parents=True, exist_ok=True)
        with self.path.open("a", encoding="utf-8") as handle:
            handle.write(json.dumps(asdict(episode), ensure_ascii=False) + "\n")

    def episodes(self) -> list[Episode]:
        """Most recent first, capped at ``MAX_EPISODES``."""
        if not self.path.is_file():
            return []
        loaded: list[Episode] = []
        with self.path.open("r", encoding="utf-8") as handle:
            for line in handle:
                line = line.strip()
                if not line:
                    continue
                try:
                    raw = json.loads(line)
                except json.JSONDecodeError:
                    LOGGER.warning("memory_line_skipped", extra={"path": str(self.path)})
                    continue
                if isinstance(raw, dict) and isinstance(raw.get("task"), str):
                    loaded.append(
                        Episode(
                            task=raw["task"],
                            success=bool(raw.get("success", False)),
                            timestamp=str(raw.get("timestamp", "")),
                            actions=[str(item) for item in raw.get("actions", [])],
                            errors=[str(item) for item in raw.get("errors", [])],
                        )
                    )
        loaded.reverse()
        return loaded[:MAX_EPISODES]

    def similar(self, task: str, limit: int = 3) -> list[Episode]:
        keywords = _keywords(task)
        if not keywords:
            return []
        matches = [episode for episode in self.episodes() if keywords & _keywords(episode.task)]
        return matches[:limit]

    def recurring_errors(self, task: str) -> list[tuple[str, int]]:
        similar = self.similar(task, limit=10)
        counts = Counter(error for episode in similar for error in episode.errors)
        return [(error, count) for error, count in counts.most_common() if count >= 2]

    def context_for(self, task: str) -> str | None:
        similar = self.similar(task)
        recurring = self.recurring_errors(task)
        if not similar and not recurring:
            return None
        lines = ["Previous runs on similar tasks:"]
        for episode in similar:
            outcome = "succeeded" if episode.success else "failed"
            lines.append(f"- {episode.task!r} {outcome} ({len(episode.actions)} action(s))")
        for error, count in recurring:
            lines.append(f"- recurring error ({count}x): {error}")
        return "\n".join(lines)


def _keywords(text: str) -> set[str]:
    return {word.lower() for word in _WORD_PATTERN.findall(text)}
