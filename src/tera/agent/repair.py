"""Normalisation of partially specified actions before they run."""

from __future__ import annotations

import logging
import re
from pathlib import PurePosixPath

from tera.agent.errors import ValidationError
from tera.agent.models import Action

LOGGER = logging.getLogger(__name__)

_FILE_PATTERN = re.compile(
    r"\b(?:file|fichier)\s+(?:(?:named|called|nomm[ée])\s+)?[`\"']?([a-zA-Z0-9._/-]+)",
    re.IGNORECASE,
)
_DIRECTORY_PATTERN = re.compile(
    r"\b(?:directory|folder|dossier|r[ée]pertoire)\s+(?:(?:named|called|nomm[ée])\s+)?"
    r"[`\"']?([a-zA-Z0-9._/-]+)",
    re.IGNORECASE,
)
_COMMAND_PATTERNS = [
    re.compile(r"\b(?:command|commande)\s*:?\s*\"([^\"]+)\"", re.IGNORECASE),
    re.compile(r"\b(?:command|commande)\s*:?\s*'([^']+)'", re.IGNORECASE),
    re.compile(r"`([^`]+)`"),
]
_EMPTY_PATTERN = re.compile(r"\b(?:empty|blank|vide)\b", re.IGNORECASE)
_STOPWORDS = {"a", "an", "the", "for", "to", "with", "that", "in", "on", "of", "and", "le", "la"}

_KEYWORD_FILES = (
    ("readme", "README.md"),
    ("requirements", "requirements.txt"),
    ("gitignore", ".gitignore"),
    ("setup", "setup.py"),
)

WELL_KNOWN_CONTENT = {
    "readme.md": "# Project\n\n## Description\n\nDescribe the project here.\n\n"
    "## Installation\n\n```bash\npip install -r requirements.txt\n```\n",
    "requirements.txt": "# Python dependencies\n# Add one requirement per line\n",
    ".gitignore": "# Python\n__pycache__/\n*.py[cod]\n*.egg-info/\nbuild/\ndist/\n\n"
    "# Virtual environments\nvenv/\n.venv/\n\n# Editors\n.vscode/\n.idea/\n\n"
    "# OS\n.DS_Store\nThumbs.db\n",
    "setup.py": "from setuptools import find_packages, setup\n\nsetup(\n"
    '    name="project",\n    version="0.1.0",\n    packages=find_packages(),\n'
    "    install_requires=[],\n)\n",
}

DISCOVERY_WINDOW = 100


def repair(action: Action, task_context: str | None = None) -> Action:
    """Fill gaps in ``action`` from its description; returns the same object.

    Running it twice gives the same result as running it once.
    """
    source = action.description or task_context or ""
    params = action.params

    if action.kind == "create_file":
        path_inferred = False
        if not _has_text(params.get("path")):
            path = _extract_path(source)
            if path:
                params["path"] = path
                path_inferred = True
        if "content" not in params or params["content"] is None:
            path = params.get("path")
            if isinstance(path, str) and path:
                params["content"] = _default_content(path, source, path_inferred=path_inferred)
    elif action.kind in {"modify_file", "analyze_file"}:
        _fill_path(params, source)
    elif action.kind == "patch_file":
        _fill_path(params, source)
        if _has_text(params.get("path")) and not _effective_changes(params.get("changes")):
            _convert_to_discovery(action)
    elif action.kind == "read_file_lines":
        _fill_path(params, source)
        start = _as_int(params.get("start_line"))
        params["start_line"] = start if start is not None and start >= 1 else 1
        end = _as_int(params.get("end_line"))
        if end is None:
            end = params["start_line"] + DISCOVERY_WINDOW - 1
        params["end_line"] = end
    elif action.kind == "create_directory":
        if not _has_text(params.get("path")):
            match = _DIRECTORY_PATTERN.search(source)
            if match and match.group(1).lower() not in _STOPWORDS:
                params["path"] = match.group(1)
    elif action.kind == "list_directory":
        if not _has_text(params.get("path")):
            params["path"] = "."
    elif action.kind == "run_command":
        if not _has_text(params.get("command")):
            command = _extract_command(action.description)
            if command:
                params["command"] = command
        if not _has_text(params.get("cwd")):
            params["cwd"] = "."
    elif action.kind == "inform_user":
        if not _has_text(params.get("message")) and action.description:
            params["message"] = action.description
    elif action.kind == "chat":
        if not _has_text(params.get("response")):
            fallback = params.get("message") or action.description
            if fallback:
                params["response"] = fallback
    return action


def validate(action: Action) -> None:
    missing = action.missing_params()
    if missing:
        raise ValidationError(action.kind, missing)


def _has_text(value: object) -> bool:
    return isinstance(value, str) and bool(value.strip())


def _as_int(value: object) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value)
    if isinstance(value, str):
        try:
            return int(value.strip())
        except ValueError:
            return None
    return None


def _extract_path(text: str) -> str | None:
    match = _FILE_PATTERN.search(text)
    if match and match.group(1).lower() not in _STOPWORDS:
        return match.group(1).rstrip(".")
    lowered = text.lower()
    for keyword, filename in _KEYWORD_FILES:
        if keyword in lowered:
            return filename
    return None


def _fill_path(params: dict[str, object], source: str) -> None:
    if _has_text(params.get("path")):
        return
    path = _extract_path(source)
    if path:
        params["path"] = path


def _extract_command(text: str) -> str | None:
    for pattern in _COMMAND_PATTERNS:
        match = pattern.search(text)
        if match and match.group(1).strip():
            return match.group(1).strip()
    return None


def _default_content(path: str, description: str, *, path_inferred: bool) -> str:
    if _EMPTY_PATTERN.search(description):
        return ""
    known = WELL_KNOWN_CONTENT.get(PurePosixPath(path).name.lower())
    if known is not None:
        LOGGER.info("action_repaired", extra={"field": "content", "source": "well_known"})
        return known
    if path_inferred:
        LOGGER.info("action_repaired", extra={"field": "content", "source": "placeholder"})
        return f"# Generated file\n# Description: {description}\n"
    return ""


def _effective_changes(changes: object) -> list[dict[str, object]]:
    if not isinstance(changes, list):
        return []
    effective: list[dict[str, object]] = []
    for change in changes:
        if not isinstance(change, dict):
            continue
        if change.get("action") == "delete":
            effective.append(change)
            continue
        old, new, content = change.get("old"), change.get("new"), change.get("content")
        if content is None and new is None:
            continue
        if content is None and old is not None and old == new:
            continue
        effective.append(change)
    return effective


def _convert_to_discovery(action: Action) -> None:
    path = action.params["path"]
    LOGGER.info("action_repaired", extra={"field": "changes", "source": "discovery", "path": path})
    action.kind = "read_file_lines"
    action.params = {"path": path, "start_line": 1, "end_line": DISCOVERY_WINDOW}
    action.description = f"Re-read {path} before patching (no effective changes proposed)"
