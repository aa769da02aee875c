"""Line-indexed patching of text files."""

from __future__ import annotations

import logging
import re
import shutil
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path

from tera.agent.errors import ExecutionError, PatchError

LOGGER = logging.getLogger(__name__)

CHANGE_ACTIONS = ("add", "replace", "delete", "insert_after", "insert_before")


@dataclass(slots=True)
class PatchChange:
    """One line-addressed edit. ``line`` is 1-based; ``None`` means search the file."""

    action: str
    line: int | None = None
    old: str | None = None
    new: str | None = None
    content: str | None = None

    @classmethod
    def from_params(cls, raw: Mapping[str, object] | PatchChange) -> PatchChange:
        if isinstance(raw, PatchChange):
            return raw
        line = raw.get("line")
        if isinstance(line, str) and line.strip().lstrip("-").isdigit():
            line = int(line.strip())
        return cls(
            action=str(raw.get("action", "replace")).strip().lower(),
            line=line if isinstance(line, int) and not isinstance(line, bool) else None,
            old=_optional_text(raw.get("old")),
            new=_optional_text(raw.get("new")),
            content=_optional_text(raw.get("content")),
        )

    @property
    def payload(self) -> str | None:
        return self.content if self.content is not None else self.new


@dataclass(slots=True)
class ChangeDetail:
    change: PatchChange
    applied: bool
    reason: str | None = None
    method: str | None = None


@dataclass(slots=True)
class PatchResult:
    changes_applied: int
    total_changes: int
    final_line_count: int
    original_line_count: int
    backup_path: str | None = None
    details: list[ChangeDetail] = field(default_factory=list)

    @property
    def failures(self) -> list[str]:
        return [_describe_failure(detail) for detail in self.details if not detail.applied]


def apply_patch(
    path: str | Path, changes: Iterable[Mapping[str, object] | PatchChange]
) -> PatchResult:
    """Apply ``changes`` to the file at ``path``.

    Changes are applied from the bottom of the file upwards so that each
    change's line number still refers to the original file. Changes that
    cannot be located are reported, not fatal; the file is only written when
    at least one change applied, after a timestamped backup is taken.
    """
    target = Path(path)
    if not target.is_file():
        raise ExecutionError(f"File not found: {target}")
    try:
        original = target.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as exc:
        raise ExecutionError(f"Could not read {target}: {exc}") from exc

    parsed = [PatchChange.from_params(change) for change in changes]
    lines, trailing_newline = split_lines(original)
    updated, details = apply_changes_to_lines(lines, parsed)
    applied = sum(1 for detail in details if detail.applied)
    patched = join_lines(updated, trailing_newline)

    result = PatchResult(
        changes_applied=applied,
        total_changes=len(parsed),
        final_line_count=len(split_lines(patched)[0]),
        original_line_count=len(lines),
        details=details,
    )
    if applied == 0:
        LOGGER.warning(
            "patch_not_applied",
            extra={"path": str(target), "total_changes": len(parsed)},
        )
        raise PatchError(
            f"No change could be applied to {target} (0/{len(parsed)})",
            failures=result.failures,
        )

    result.backup_path = str(create_backup(target))
    try:
        target.write_text(patched, encoding="utf-8")
    except OSError as exc:
        raise ExecutionError(f"Could not write {target}: {exc}") from exc

    LOGGER.info(
        "patch_applied",
        extra={
            "path": str(target),
            "changes_applied": applied,
            "total_changes": len(parsed),
            "final_line_count": result.final_line_count,
        },
    )
    return result


def apply_changes_to_lines(
    lines: list[str], changes: Iterable[PatchChange]
) -> tuple[list[str], list[ChangeDetail]]:
    """Pure core of :func:`apply_patch`; returns the new lines and per-change details."""
    working = list(lines)
    ordered = sorted(
        changes,
        key=lambda change: change.line if change.line is not None else 0,
        reverse=True,
    )
    details = [_apply_change(working, change) for change in ordered]
    return working, details


def split_lines(text: str) -> tuple[list[str], bool]:
    """Split ``text`` into lines and report whether it ended with a newline.

    The final newline terminates the last line rather than starting a new
    empty one, so ``"a\\nb\\n"`` has two lines and ``""`` has none.
    """
    trailing_newline = text.endswith("\n")
    body = text[:-1] if trailing_newline else text
    if not body and not trailing_newline:
        return [], False
    return body.split("\n"), trailing_newline


def join_lines(lines: list[str], trailing_newline: bool) -> str:
    text = "\n".join(lines)
    if trailing_newline and lines:
        text += "\n"
    return text


def create_backup(path: Path) -> Path:
    stamp = datetime.now().strftime("%Y%m%dT%H%M%S%f")
    backup = path.with_name(f"{path.name}.backup-{stamp}")
    try:
        shutil.copy2(path, backup)
    except OSError as exc:
        raise ExecutionError(f"Could not back up {path}: {exc}") from exc
    return backup


def smart_replace(line: str, old: str, new: str) -> tuple[str, str] | None:
    """Replace ``old`` inside ``line`` with progressively looser matching.

    Returns the rewritten line and the name of the matching strategy, or
    ``None`` when ``old`` cannot be found in ``line``.
    """
    if old and old in line:
        return line.replace(old, new, 1), "exact"

    stripped_old = old.strip()
    if stripped_old and stripped_old in line:
        return line.replace(stripped_old, new.strip(), 1), "inclusion"

    indent = line[: len(line) - len(line.lstrip())]
    if stripped_old and line.strip() == stripped_old:
        return indent + new.strip(), "trim"

    normalized_line = " ".join(line.split())
    normalized_old = " ".join(old.split())
    if normalized_old and normalized_line == normalized_old:
        return indent + new.strip(), "normalized"

    if not stripped_old and not line.strip():
        return new, "blank"

    # Only the matched span is rewritten; spacing elsewhere on the line is kept.
    tokens = old.split()
    if tokens:
        match = re.search(r"\s+".join(re.escape(token) for token in tokens), line)
        if match is not None:
            replaced = line[: match.start()] + new.strip() + line[match.end() :]
            return replaced, "normalized_inclusion"
    return None


def _apply_change(lines: list[str], change: PatchChange) -> ChangeDetail:
    action = change.action
    if action not in CHANGE_ACTIONS:
        return ChangeDetail(change, False, f"unknown change action {action!r}")
    line = change.line
    in_range = line is not None and 1 <= line <= len(lines)

    if action == "add":
        payload = change.payload
        if payload is None:
            return ChangeDetail(change, False, "no content to add")
        if line is not None and 1 <= line <= len(lines) + 1:
            lines[line - 1 : line - 1] = payload.split("\n")
            return ChangeDetail(change, True, method="insert")
        lines.extend(payload.split("\n"))
        return ChangeDetail(change, True, method="append")

    if action in {"insert_after", "insert_before"}:
        payload = change.payload
        if payload is None:
            return ChangeDetail(change, False, "no content to insert")
        if not in_range:
            return ChangeDetail(change, False, f"line {line} is outside 1..{len(lines)}")
        index = line if action == "insert_after" else line - 1
        lines[index:index] = payload.split("\n")
        return ChangeDetail(change, True, method=action)

    if action == "delete":
        if not in_range:
            return ChangeDetail(change, False, f"line {line} is outside 1..{len(lines)}")
        if change.old is not None and smart_replace(lines[line - 1], change.old, "") is None:
            return ChangeDetail(change, False, f"line {line} does not contain the expected text")
        del lines[line - 1]
        return ChangeDetail(change, True, method="delete")

    return _apply_replace(lines, change)


def _apply_replace(lines: list[str], change: PatchChange) -> ChangeDetail:
    line = change.line
    if line is None:
        if not change.old or change.new is None:
            return ChangeDetail(change, False, "global replace needs both old and new text")
        for index, current in enumerate(lines):
            replaced = smart_replace(current, change.old, change.new)
            if replaced is not None:
                lines[index] = replaced[0]
                return ChangeDetail(change, True, method=f"global_{replaced[1]}")
        return ChangeDetail(change, False, "text to replace was not found in the file")

    if not 1 <= line <= len(lines):
        return ChangeDetail(change, False, f"line {line} is outside 1..{len(lines)}")

    if change.old is not None and change.new is not None:
        old_lines = change.old.split("\n")
        if len(old_lines) > 1:
            window = lines[line - 1 : line - 1 + len(old_lines)]
            if [item.strip() for item in window] == [item.strip() for item in old_lines]:
                lines[line - 1 : line - 1 + len(old_lines)] = change.new.split("\n")
                return ChangeDetail(change, True, method="block")
            return ChangeDetail(change, False, f"lines from {line} do not match the expected block")
        replaced = smart_replace(lines[line - 1], change.old, change.new)
        if replaced is None:
            return ChangeDetail(change, False, f"line {line} does not contain the expected text")
        lines[line - 1] = replaced[0]
        return ChangeDetail(change, True, method=replaced[1])

    payload = change.payload
    if payload is None:
        return ChangeDetail(change, False, "no replacement text")
    lines[line - 1] = payload
    return ChangeDetail(change, True, method="whole_line")


def _optional_text(value: object) -> str | None:
    if value is None:
        return None
    return value if isinstance(value, str) else str(value)


def _describe_failure(detail: ChangeDetail) -> str:
    change = detail.change
    where = f"line {change.line}" if change.line is not None else "anywhere"
    return f"{change.action} at {where}: {detail.reason}"
