"""Tests for environment configuration."""

from pathlib import Path

import pytest

from opensprint.config import DEFAULT_AGENT_COMMAND, Config


def test_defaults(monkeypatch):
    for name in ("OPENSPRINT_AGENT_COMMAND", "OPENSPRINT_MAX_AGENTS", "OPENSPRINT_LOG_LEVEL"):
        monkeypatch.delenv(name, raising=False)
    config = Config.from_env()
    assert config.agent_command == DEFAULT_AGENT_COMMAND.split()
    assert config.max_agents == 1
    assert config.inactivity_timeout == 300.0
    assert config.kill_grace == 30.0
    assert config.log_level == "INFO"


def test_from_env(monkeypatch):
    monkeypatch.setenv("OPENSPRINT_DB_PATH", "/tmp/os.db")
    monkeypatch.setenv("OPENSPRINT_AGENT_COMMAND", "my-agent --flag 'two words'")
    monkeypatch.setenv("OPENSPRINT_MAX_AGENTS", "1")
    monkeypatch.setenv("OPENSPRINT_INACTIVITY_TIMEOUT", "42")
    monkeypatch.setenv("OPENSPRINT_KILL_GRACE", "7")
    monkeypatch.setenv("OPENSPRINT_LOG_LEVEL", "debug")
    config = Config.from_env()
    assert config.db_path == Path("/tmp/os.db")
    assert config.agent_command == ["my-agent", "--flag", "two words"]
    assert config.max_agents == 1
    assert config.inactivity_timeout == 42.0
    assert config.kill_grace == 7.0
    assert config.log_level == "DEBUG"


@pytest.mark.parametrize("value", ["0", "2"])
def test_max_agents_must_be_one(monkeypatch, value):
    monkeypatch.setenv("OPENSPRINT_MAX_AGENTS", value)
    with pytest.raises(ValueError, match="OPENSPRINT_MAX_AGENTS must be 1"):
        Config.from_env()
