"""Tolerant parser for the tagged plan format returned by the model."""

from __future__ import annotations

import logging
import re
import time
from collections.abc import Callable, Iterator

from tera.agent.errors import PlanParseError
from tera.agent.models import Action, ActionResponse, Plan, PlanStatus

LOGGER = logging.getLogger(__name__)

REASONING_PLACEHOLDER = "No structured answer found in model reasoning."
PARSE_ATTEMPTS = 3
PARSE_BACKOFF_SECONDS = 0.5

_BLOCK_TAGS = ("tools", "tool", "action")
_BLOCK_PATTERN = re.compile(
    r"<(tools|tool|action)\s+name\s*=\s*([\"'])(.*?)\2[^>]*>(.*?)</\1\s*>",
    re.DOTALL | re.IGNORECASE,
)
_FENCE_PATTERN = re.compile(r"^\s*```[\w-]*\s*$", re.MULTILINE)
_MISSING_BRACKET_PATTERN = re.compile(r"(^|\n)([ \t]*)(tools\s+name\s*=)", re.IGNORECASE)
_STATUS_PATTERN = re.compile(r"<status>\s*([a-zA-Z_]+)\s*</status>", re.IGNORECASE)
_PARAM_PATTERN = re.compile(
    r"<param\s+name\s*=\s*([\"'])([^\"'<>]+)\1\s+value\s*=\s*([\"'])(.*?)\3[^>]*?/?>",
    re.DOTALL,
)
_BROKEN_PARAM_PATTERN = re.compile(r"<param\s+name\s*=\s*\"([^\"]+)\"\s*=\s*\"([^\"]*)\"[^>]*?/?>")
_ELEMENT_PARAM_PATTERN = re.compile(
    r"<param\s+name\s*=\s*([\"'])([^\"'<>]+)\1\s*>(.*?)</param>", re.DOTALL
)
_CHANGES_PATTERN = re.compile(r"<changes>(.*?)</changes>", re.DOTALL)
_CHANGE_PATTERN = re.compile(r"<change\b([^>]*?)(?:/>|>(.*?)</change>)", re.DOTALL)
_ATTRIBUTE_PATTERN = re.compile(r"([a-zA-Z_]+)\s*=\s*([\"'])(.*?)\2", re.DOTALL)
_INT_PATTERN = re.compile(r"^-?\d+$")
_FLOAT_PATTERN = re.compile(r"^-?\d*\.\d+$")

_TEXT_CHILDREN = ("command", "query", "message", "response", "description")
_CONTENT_CHILDREN = ("content",)
_SECTION_TAGS = ("analysis", "strategy", "reasoning")

_THINK_CLOSED_PATTERN = re.compile(r"<think>(.*?)</think>(.*)", re.DOTALL | re.IGNORECASE)
_THINK_OPEN_PATTERN = re.compile(r"<think>(.*)", re.DOTALL | re.IGNORECASE)
_REASONING_EXTRACTORS = [
    re.compile(r"(?:message|commit|title|titre)[\s:]*[\"']([^\"']+)[\"']", re.IGNORECASE),
    re.compile(r"(?:^|\n)\s*[\"']([^\"'\n]{10,80})[\"']\s*(?:\n|$)"),
    re.compile(
        r"(?:recommends?|suggests?|proposes?|recommande|sugg[eè]re|propose)[\s:]+"
        r"[\"']?([^\"'\n]{10,80})[\"']?",
        re.IGNORECASE,
    ),
    re.compile(r"(?:^|\n)\s*([a-z]+(?:\([^)]+\))?:\s*[^.\n]{10,80})\s*(?:\n|$)", re.IGNORECASE),
    re.compile(r"(?:final|result|r[ée]sultat|conclusion)[\s:]+(.{10,80}?)(?:\n|$)", re.IGNORECASE),
]


def strip_reasoning(text: str) -> str:
    """Drop a ``<think>`` preamble and return the usable answer.

    When the model produced nothing after its reasoning, a short line is
    salvaged from the reasoning itself. This never raises.
    """
    closed = _THINK_CLOSED_PATTERN.search(text)
    if closed:
        thinking, remainder = closed.group(1), closed.group(2).strip()
        if remainder:
            return remainder
    else:
        opened = _THINK_OPEN_PATTERN.search(text)
        if not opened:
            return text
        thinking = opened.group(1)

    thinking = thinking.strip()
    for pattern in _REASONING_EXTRACTORS:
        match = pattern.search(thinking)
        if match and match.group(1).strip():
            extracted = match.group(1).strip()
            LOGGER.warning(
                "reasoning_fallback_used",
                extra={"strategy": "pattern", "extracted": extracted},
            )
            return extracted

    lines = [line.strip() for line in thinking.splitlines() if line.strip()]
    if lines and 10 < len(lines[-1]) < 100:
        LOGGER.warning(
            "reasoning_fallback_used",
            extra={"strategy": "last_line", "extracted": lines[-1]},
        )
        return lines[-1]

    LOGGER.warning("reasoning_fallback_used", extra={"strategy": "placeholder"})
    return REASONING_PLACEHOLDER


def parse_plan(text: str) -> Plan:
    """Parse a full plan: optional commentary, action blocks and a status."""
    cleaned = _normalize(strip_reasoning(text or ""))
    actions = [_parse_block(kind, body) for kind, body in _iter_blocks(cleaned)]
    status = _parse_status(cleaned)
    if not actions and status is None:
        raise PlanParseError("No action or status found in model output", text=text or "")

    return Plan(
        actions=actions,
        status=status or "continue",
        analysis=_section(cleaned, "analysis"),
        strategy=_section(cleaned, "strategy"),
        reasoning=_section(cleaned, "reasoning"),
    )


def parse_action_response(text: str) -> ActionResponse:
    """Parse a single-action answer (at most one action block, a status and a summary)."""
    cleaned = _normalize(strip_reasoning(text or ""))
    blocks = list(_iter_blocks(cleaned))
    status = _parse_status(cleaned)
    summary = _section(cleaned, "summary")
    if not blocks and status is None and summary is None:
        raise PlanParseError("No action, status or summary found in model output", text=text or "")

    next_action = _parse_block(*blocks[0]) if blocks else None
    return ActionResponse(status=status or "continue", next_action=next_action, summary=summary)


def render_plan(plan: Plan) -> str:
    """Render a plan back into the tagged format understood by the model."""
    parts: list[str] = []
    for tag in _SECTION_TAGS:
        value = getattr(plan, tag)
        if value:
            parts.append(f"<{tag}>{value}</{tag}>")
    for action in plan.actions:
        parts.append(_render_action(action))
    parts.append(f"<status>{plan.status}</status>")
    return "\n".join(parts)


def _render_action(action: Action) -> str:
    lines = [f'<tools name="{action.kind}">']
    if action.description:
        lines.append(f"  <description>{action.description}</description>")
    for name, value in action.params.items():
        if name == "changes" and isinstance(value, list):
            lines.append("  <changes>")
            for change in value:
                if not isinstance(change, dict):
                    continue
                attributes = " ".join(
                    f'{key}="{change[key]}"' for key in ("action", "line") if key in change
                )
                body = "".join(
                    f"<{key}>{change[key]}</{key}>"
                    for key in ("old", "new", "content")
                    if key in change
                )
                lines.append(f"    <change {attributes}>{body}</change>")
            lines.append("  </changes>")
        elif name in _CONTENT_CHILDREN or name in ("command", "message", "response"):
            lines.append(f"  <{name}>{value}</{name}>")
        else:
            rendered = str(value).lower() if isinstance(value, bool) else value
            lines.append(f'  <param name="{name}" value="{rendered}" />')
    lines.append("</tools>")
    return "\n".join(lines)


def _normalize(text: str) -> str:
    cleaned = _FENCE_PATTERN.sub("", text).strip()
    for quote in ('"', "'"):
        if len(cleaned) >= 2 and cleaned.startswith(quote) and cleaned.endswith(quote):
            cleaned = cleaned[1:-1].strip()
    cleaned = _MISSING_BRACKET_PATTERN.sub(r"\1\2<\3", cleaned)

    if "<arg_value>" in cleaned:
        cleaned = re.sub(
            r'(<param\s+name="[^"]+")\s*<arg_value>.*$', r'\1 value="" />', cleaned, flags=re.M
        )
        cleaned = re.sub(r'value="[^"]*<arg_value>.*$', 'value="" />', cleaned, flags=re.M)
        cleaned = re.sub(r"<arg_value>.*$", '"/>', cleaned, flags=re.M)

    lowered = cleaned.lower()
    for tag in _BLOCK_TAGS:
        opened = len(re.findall(rf"<{tag}\s+name\s*=", lowered))
        closed = lowered.count(f"</{tag}>")
        if opened > closed:
            cleaned = f"{cleaned}\n</{tag}>"
            break
    return cleaned


def _iter_blocks(text: str) -> Iterator[tuple[str, str]]:
    for match in _BLOCK_PATTERN.finditer(text):
        yield match.group(3).strip().lower(), match.group(4)


def _parse_status(text: str) -> PlanStatus | None:
    match = _STATUS_PATTERN.search(text)
    if not match:
        return None
    value = match.group(1).strip().lower()
    if value in {"complete", "completed", "done"}:
        return "complete"
    return "continue"


def _section(text: str, tag: str) -> str | None:
    match = re.search(rf"<{tag}>(.*?)</{tag}>", text, re.DOTALL | re.IGNORECASE)
    if not match:
        return None
    value = match.group(1).strip()
    return value or None


def _parse_block(kind: str, body: str) -> Action:
    params: dict[str, object] = {}

    changes_match = _CHANGES_PATTERN.search(body)
    outer = body
    if changes_match:
        params["changes"] = _parse_changes(changes_match.group(1))
        outer = body[: changes_match.start()] + body[changes_match.end() :]

    for match in _PARAM_PATTERN.finditer(outer):
        params[match.group(2)] = _coerce(match.group(4))
    for match in _BROKEN_PARAM_PATTERN.finditer(outer):
        params.setdefault(match.group(1), _coerce(match.group(2)))
    for match in _ELEMENT_PARAM_PATTERN.finditer(outer):
        params.setdefault(match.group(2), _coerce(match.group(3).strip()))

    for tag in _TEXT_CHILDREN:
        value = _child(outer, tag)
        if value is not None:
            params[tag] = value.strip()
    for tag in _CONTENT_CHILDREN:
        value = _child(outer, tag)
        if value is not None:
            params[tag] = _trim_block(value)

    if "command" not in params and isinstance(params.get("query"), str):
        params["command"] = params["query"]

    description = params.pop("description", None)
    if not isinstance(description, str) or not description.strip():
        description = _describe(kind, params)
    return Action(kind=kind, description=description.strip(), params=params)


def _parse_changes(block: str) -> list[dict[str, object]]:
    changes: list[dict[str, object]] = []
    for match in _CHANGE_PATTERN.finditer(block):
        change: dict[str, object] = {}
        for attribute in _ATTRIBUTE_PATTERN.finditer(match.group(1)):
            name = attribute.group(1).lower()
            change[name] = _coerce(attribute.group(3)) if name == "line" else attribute.group(3)
        inner = match.group(2) or ""
        for tag in ("old", "new", "content"):
            value = _child(inner, tag)
            if value is not None:
                change[tag] = value
        changes.append(change)
    return changes


def _child(body: str, tag: str) -> str | None:
    match = re.search(rf"<{tag}>(.*?)</{tag}>", body, re.DOTALL)
    return match.group(1) if match else None


def _trim_block(value: str) -> str:
    if value.startswith("\n"):
        value = value[1:]
    stripped = value.rstrip(" \t")
    if stripped.endswith("\n"):
        value = stripped[:-1]
    return value


def _coerce(value: str) -> object:
    if value == "true":
        return True
    if value == "false":
        return False
    if _INT_PATTERN.match(value):
        return int(value)
    if _FLOAT_PATTERN.match(value):
        return float(value)
    return value


def _describe(kind: str, params: dict[str, object]) -> str:
    target = params.get("path") or params.get("command") or params.get("message")
    if isinstance(target, str) and target.strip():
        return f"{kind} {target.strip().splitlines()[0][:80]}"
    return kind


def obtain_plan(
    generate: Callable[[], str],
    *,
    attempts: int = PARSE_ATTEMPTS,
    backoff_seconds: float = PARSE_BACKOFF_SECONDS,
    sleep: Callable[[float], None] = time.sleep,
) -> Plan:
    """Call ``generate`` until its output parses, up to ``attempts`` times.

    Only parse failures are retried; errors raised by ``generate`` itself
    propagate. The last :class:`PlanParseError` is re-raised when every
    attempt fails.
    """
    delay = backoff_seconds
    for attempt in range(1, attempts + 1):
        text = generate()
        try:
            return parse_plan(text)
        except PlanParseError as exc:
            LOGGER.warning(
                "plan_parse_retry",
                extra={"attempt": attempt, "attempts": attempts, "excerpt": exc.text},
            )
            if attempt == attempts:
                raise
            sleep(delay)
            delay *= 2
    msg = "attempts must be at least 1"
    raise ValueError(msg)
