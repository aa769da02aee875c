"""Environment-backed application configuration."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass
from pathlib import Path

from tera.agent.models import KNOWN_KINDS

DEFAULT_SYSTEM_PROMPT = " ".join(
    [
        "You are tera, an agent that completes software tasks on the user's machine",
        "by proposing a plan of file and shell actions.",
        "Answer only with the tagged plan format described in the request.",
    ]
)


def _to_bool(value: str | None, default: bool = False) -> bool:
    """Convert common env var truthy/falsy values into booleans."""
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return default


@dataclass(slots=True)
class AppConfig:
    """Runtime settings loaded from environment variables and the config file."""

    api_key: str | None
    model: str
    reasoning_effort: str | None
    api_url: str
    log_dir: str
    system_prompt: str
    shell: str
    max_plans: int
    max_recovery_attempts: int
    auto: bool
    auto_approve: tuple[str, ...]
    fast: bool
    working_directory: str | None
    memory_enabled: bool
    memory_dir: str
    command_timeout_ms: int | None

    @classmethod
    def from_env(cls) -> AppConfig:
        file_config = _load_preferred_file_config()
        openai_from_file = file_config.get("openai")
        openai_config = openai_from_file if isinstance(openai_from_file, dict) else {}
        models_from_file = file_config.get("models")
        model_config = models_from_file if isinstance(models_from_file, dict) else {}

        selected_model = os.getenv("TERA_MODEL") or str(
            file_config.get("default_model", "gpt-5.2")
        )
        selected_model_entry = model_config.get(selected_model)
        selected_model_config = (
            selected_model_entry if isinstance(selected_model_entry, dict) else {}
        )
        log_dir = (
            os.getenv("TERA_LOG_DIR") or _to_optional_string(file_config.get("log_dir")) or "logs"
        )

        return cls(
            api_key=(
                os.getenv("TERA_OPENAI_API_KEY")
                or os.getenv("TERA_API_KEY")
                or _to_optional_string(openai_config.get("api_key"))
                or _to_optional_string(file_config.get("api_key"))
            ),
            model=selected_model,
            reasoning_effort=(
                os.getenv("TERA_REASONING_EFFORT")
                or _to_optional_string(selected_model_config.get("reasoning_effort"))
                or _default_reasoning_effort(selected_model)
            ),
            api_url=(
                os.getenv("TERA_API_URL")
                or _to_optional_string(openai_config.get("api_url"))
                or "https://api.openai.com/v1/responses"
            ),
            log_dir=log_dir,
            system_prompt=(
                os.getenv("TERA_SYSTEM_PROMPT")
                or _to_optional_string(file_config.get("system_prompt"))
                or DEFAULT_SYSTEM_PROMPT
            ),
            shell=(
                os.getenv("TERA_SHELL") or _to_optional_string(file_config.get("shell")) or "bash"
            ),
            max_plans=_to_positive_int(
                os.getenv("TERA_MAX_PLANS") or file_config.get("max_plans"),
                default=10,
            ),
            max_recovery_attempts=_to_positive_int(
                os.getenv("TERA_MAX_RECOVERY_ATTEMPTS")
                or file_config.get("max_recovery_attempts"),
                default=3,
            ),
            auto=_to_bool(
                os.getenv("TERA_AUTO"),
                default=bool(file_config.get("auto", False)),
            ),
            auto_approve=parse_kind_list(
                os.getenv("TERA_AUTO_APPROVE") or file_config.get("auto_approve")
            ),
            fast=_to_bool(
                os.getenv("TERA_FAST"),
                default=bool(file_config.get("fast", False)),
            ),
            working_directory=(
                os.getenv("TERA_CWD") or _to_optional_string(file_config.get("cwd"))
            ),
            memory_enabled=_to_bool(
                os.getenv("TERA_MEMORY_ENABLED"),
                default=bool(file_config.get("memory_enabled", True)),
            ),
            memory_dir=(
                os.getenv("TERA_MEMORY_DIR")
                or _to_optional_string(file_config.get("memory_dir"))
                or str(Path(log_dir) / "memory")
            ),
            command_timeout_ms=_to_optional_positive_int(
                os.getenv("TERA_COMMAND_TIMEOUT_MS") or file_config.get("command_timeout_ms")
            ),
        )


def _to_optional_string(value: object) -> str | None:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def parse_kind_list(value: object) -> tuple[str, ...]:
    """Accept ``"create_file,list_directory"`` or a JSON list; unknown kinds are dropped."""
    if isinstance(value, str):
        items = value.split(",")
    elif isinstance(value, list):
        items = [item for item in value if isinstance(item, str)]
    else:
        return ()
    kinds = [item.strip().lower() for item in items if item.strip()]
    return tuple(kind for kind in dict.fromkeys(kinds) if kind in KNOWN_KINDS)


def _load_file_config(path_value: str) -> dict[str, object]:
    path = Path(path_value)
    if not path.exists() or not path.is_file():
        return {}
    try:
        with path.open("r", encoding="utf-8") as fh:
            parsed = json.load(fh)
    except (OSError, json.JSONDecodeError):
        return {}
    if isinstance(parsed, dict):
        return parsed
    return {}


def _load_preferred_file_config() -> dict[str, object]:
    explicit_path = os.getenv("TERA_CONFIG_FILE")
    if explicit_path:
        return _load_file_config(explicit_path)

    shared_config = _load_file_config("tera.config.json")
    local_override = _load_file_config("tera.config.local.json")
    return _merge_dicts(shared_config, local_override)


def _merge_dicts(base: dict[str, object], override: dict[str, object]) -> dict[str, object]:
    merged: dict[str, object] = dict(base)
    for key, value in override.items():
        base_value = merged.get(key)
        if isinstance(base_value, dict) and isinstance(value, dict):
            merged[key] = _merge_dicts(base_value, value)
        else:
            merged[key] = value
    return merged


def _default_reasoning_effort(model: str) -> str | None:
    """Provide practical defaults for reasoning-capable model families."""
    normalized = model.strip().lower()
    if normalized.startswith("gpt-5") or normalized.startswith("o"):
        return "medium"
    return None


def _to_positive_int(value: object, *, default: int) -> int:
    parsed = _to_optional_positive_int(value)
    return default if parsed is None else parsed


def _to_optional_positive_int(value: object) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value if value > 0 else None
    if isinstance(value, str):
        try:
            parsed = int(value.strip())
        except ValueError:
            return None
        return parsed if parsed > 0 else None
    return None
