"""Configuration loading from environment variables."""

import os
import shlex
from dataclasses import dataclass, field
from pathlib import Path

DEFAULT_AGENT_COMMAND = "claude --output-format text --permission-mode acceptEdits -p"


@dataclass
class Config:
    db_path: Path = field(default_factory=lambda: Path.home() / ".opensprint" / "opensprint.db")
    repo_path: Path = field(default_factory=lambda: Path.cwd())
    slack_bot_token: str | None = None
    agent_output_dir: str = ".opensprint/sessions"
    agent_command: list[str] = field(default_factory=lambda: shlex.split(DEFAULT_AGENT_COMMAND))
    agent_model: str = "sonnet"
    agent_identity: str = "opensprint-coder"
    max_agents: int = 1
    poll_interval: float = 5.0
    inactivity_timeout: float = 300.0
    kill_grace: float = 30.0
    orphan_check_interval: float = 300.0
    git_lock_retries: int = 10
    git_lock_delay: float = 0.5
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Config":
        config = cls()

        if db := os.environ.get("OPENSPRINT_DB_PATH"):
            config.db_path = Path(db)

        if repo := os.environ.get("OPENSPRINT_REPO_PATH"):
            config.repo_path = Path(repo)

        config.slack_bot_token = os.environ.get("SLACK_BOT_TOKEN")

        if out_dir := os.environ.get("OPENSPRINT_AGENT_OUTPUT_DIR"):
            config.agent_output_dir = out_dir

        if command := os.environ.get("OPENSPRINT_AGENT_COMMAND"):
            config.agent_command = shlex.split(command)

        if model := os.environ.get("OPENSPRINT_AGENT_MODEL"):
            config.agent_model = model

        if identity := os.environ.get("OPENSPRINT_AGENT_IDENTITY"):
            config.agent_identity = identity

        if max_agents := os.environ.get("OPENSPRINT_MAX_AGENTS"):
            config.max_agents = int(max_agents)
            if config.max_agents != 1:
                raise ValueError(
                    f"OPENSPRINT_MAX_AGENTS must be 1 while agents share one working tree, got {max_agents}"
                )

        if poll := os.environ.get("OPENSPRINT_POLL_INTERVAL"):
            config.poll_interval = float(poll)

        if timeout := os.environ.get("OPENSPRINT_INACTIVITY_TIMEOUT"):
            config.inactivity_timeout = float(timeout)

        if grace := os.environ.get("OPENSPRINT_KILL_GRACE"):
            config.kill_grace = float(grace)

        if orphan_interval := os.environ.get("OPENSPRINT_ORPHAN_INTERVAL"):
            config.orphan_check_interval = float(orphan_interval)

        if retries := os.environ.get("OPENSPRINT_GIT_LOCK_RETRIES"):
            config.git_lock_retries = int(retries)

        if delay := os.environ.get("OPENSPRINT_GIT_LOCK_DELAY"):
            config.git_lock_delay = float(delay)

        if level := os.environ.get("OPENSPRINT_LOG_LEVEL"):
            config.log_level = level.upper()

        return config


def get_config() -> Config:
    return Config.from_env()
