import json

from tera.config import AppConfig, parse_kind_list

TERA_ENV_VARS = (
    "TERA_MODEL",
    "TERA_OPENAI_API_KEY",
    "TERA_API_KEY",
    "TERA_REASONING_EFFORT",
    "TERA_API_URL",
    "TERA_SYSTEM_PROMPT",
    "TERA_LOG_DIR",
    "TERA_SHELL",
    "TERA_MAX_PLANS",
    "TERA_MAX_RECOVERY_ATTEMPTS",
    "TERA_AUTO",
    "TERA_AUTO_APPROVE",
    "TERA_FAST",
    "TERA_CWD",
    "TERA_MEMORY_ENABLED",
    "TERA_MEMORY_DIR",
    "TERA_COMMAND_TIMEOUT_MS",
)


def _isolate(monkeypatch, config_path) -> None:
    for name in TERA_ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("TERA_CONFIG_FILE", str(config_path))


def test_app_config_loads_values_from_file(tmp_path, monkeypatch) -> None:
    config_path = tmp_path / "tera.config.json"
    config_path.write_text(
        json.dumps(
            {
                "openai": {"api_key": "test-key", "api_url": "https://example.test/v1/responses"},
                "default_model": "gpt-5.2-codex",
                "models": {"gpt-5.2-codex": {"reasoning_effort": "low"}},
                "log_dir": "test-logs",
                "max_plans": 4,
                "auto_approve": ["create_file", "list_directory"],
                "command_timeout_ms": 30000,
            }
        ),
        encoding="utf-8",
    )
    _isolate(monkeypatch, config_path)

    config = AppConfig.from_env()

    assert config.api_key == "test-key"
    assert config.api_url == "https://example.test/v1/responses"
    assert config.model == "gpt-5.2-codex"
    assert config.reasoning_effort == "low"
    assert config.log_dir == "test-logs"
    assert config.memory_dir == "test-logs/memory"
    assert config.max_plans == 4
    assert config.auto_approve == ("create_file", "list_directory")
    assert config.command_timeout_ms == 30000


def test_defaults_when_nothing_is_configured(tmp_path, monkeypatch) -> None:
    _isolate(monkeypatch, tmp_path / "missing.json")

    config = AppConfig.from_env()

    assert config.model == "gpt-5.2"
    assert config.reasoning_effort == "medium"
    assert config.shell == "bash"
    assert config.max_plans == 10
    assert config.max_recovery_attempts == 3
    assert config.auto is False
    assert config.fast is False
    assert config.auto_approve == ()
    assert config.memory_enabled is True
    assert config.command_timeout_ms is None


def test_env_overrides_file_values(tmp_path, monkeypatch) -> None:
    config_path = tmp_path / "tera.config.json"
    config_path.write_text(
        json.dumps({"max_plans": 4, "auto": False, "shell": "sh", "cwd": "/from/file"}),
        encoding="utf-8",
    )
    _isolate(monkeypatch, config_path)
    monkeypatch.setenv("TERA_MAX_PLANS", "7")
    monkeypatch.setenv("TERA_AUTO", "yes")
    monkeypatch.setenv("TERA_AUTO_APPROVE", "run_command, chat")
    monkeypatch.setenv("TERA_CWD", "/from/env")
    monkeypatch.setenv("TERA_API_KEY", "env-key")

    config = AppConfig.from_env()

    assert config.max_plans == 7
    assert config.auto is True
    assert config.auto_approve == ("run_command", "chat")
    assert config.working_directory == "/from/env"
    assert config.shell == "sh"
    assert config.api_key == "env-key"


def test_invalid_numbers_fall_back_to_defaults(tmp_path, monkeypatch) -> None:
    _isolate(monkeypatch, tmp_path / "missing.json")
    monkeypatch.setenv("TERA_MAX_PLANS", "lots")
    monkeypatch.setenv("TERA_COMMAND_TIMEOUT_MS", "-5")

    config = AppConfig.from_env()

    assert config.max_plans == 10
    assert config.command_timeout_ms is None


def test_local_config_overrides_shared_config(tmp_path, monkeypatch) -> None:
    (tmp_path / "tera.config.json").write_text(
        json.dumps({"openai": {"api_key": "shared", "api_url": "https://shared.test"}}),
        encoding="utf-8",
    )
    (tmp_path / "tera.config.local.json").write_text(
        json.dumps({"openai": {"api_key": "local"}}),
        encoding="utf-8",
    )
    for name in TERA_ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.delenv("TERA_CONFIG_FILE", raising=False)
    monkeypatch.chdir(tmp_path)

    config = AppConfig.from_env()

    assert config.api_key == "local"
    assert config.api_url == "https://shared.test"


def test_parse_kind_list_drops_unknown_and_duplicates() -> None:
    assert parse_kind_list("create_file, BOGUS, Create_File,chat") == ("create_file", "chat")
    assert parse_kind_list(["read_file_lines", 3]) == ("read_file_lines",)
    assert parse_kind_list(None) == ()
