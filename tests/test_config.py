"""Tests for configuration loading."""

import pytest

from projectize.config import ConfigError, LoggingConfig, ProjectizeConfig

REQUIRED = {
    "SLACK_BOT_TOKEN": "xoxb-test",
    "SLACK_APP_TOKEN": "xapp-test",
    "LLM_API_KEY": "sk-test",
}

OPTIONAL = (
    "MOTION_API_KEY",
    "MOTION_WORKSPACE_ID",
    "SLACK_BOT_USER_ID",
    "STORE_BACKEND",
    "STORE_PATH",
    "SWEEP_INTERVAL_SECONDS",
    "LOG_FORMAT",
)


@pytest.fixture
def env(monkeypatch):
    for name in (*REQUIRED, *OPTIONAL):
        monkeypatch.delenv(name, raising=False)
    return monkeypatch


def test_defaults(env):
    config = ProjectizeConfig.from_env()
    assert config.store.backend == "json"
    assert config.store.path == "./data"
    assert config.destination.base_url == "https://api.usemotion.com/v1"
    assert config.sweep.interval_seconds == 300
    assert config.sweep.batch_size == 5
    assert config.health_port == 3000


def test_reads_environment(env):
    env.setenv("STORE_BACKEND", "SQLite")
    env.setenv("STORE_PATH", "/var/lib/projectize")
    env.setenv("SWEEP_INTERVAL_SECONDS", "60")
    env.setenv("MOTION_WORKSPACE_ID", "W1")

    config = ProjectizeConfig.from_env()
    assert config.store.backend == "sqlite"
    assert config.store.path == "/var/lib/projectize"
    assert config.sweep.interval_seconds == 60
    assert config.destination.workspace_id == "W1"


def test_validate_reports_missing_tokens(env):
    errors = ProjectizeConfig.from_env().validate()
    assert "SLACK_BOT_TOKEN is required" in errors
    assert "LLM_API_KEY is required" in errors
    assert len(errors) == 3


def test_validate_unknown_backend(env):
    for name, value in REQUIRED.items():
        env.setenv(name, value)
    env.setenv("STORE_BACKEND", "postgres")
    assert ProjectizeConfig.from_env().validate() == [
        "STORE_BACKEND must be 'json' or 'sqlite', got 'postgres'"
    ]


def test_require_valid(env):
    with pytest.raises(ConfigError) as excinfo:
        ProjectizeConfig.from_env().require_valid()
    assert len(excinfo.value.errors) == 3

    for name, value in REQUIRED.items():
        env.setenv(name, value)
    ProjectizeConfig.from_env().require_valid()


def test_warnings(env):
    warnings = ProjectizeConfig.from_env().warnings()
    assert len(warnings) == 3
    env.setenv("MOTION_API_KEY", "key")
    env.setenv("MOTION_WORKSPACE_ID", "W1")
    env.setenv("SLACK_BOT_USER_ID", "UBOT")
    assert ProjectizeConfig.from_env().warnings() == []


def test_logging_format(env):
    assert not LoggingConfig().json_output
    env.setenv("LOG_FORMAT", "JSON")
    assert LoggingConfig().json_output
