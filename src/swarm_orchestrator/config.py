"""Configuration loading from environment variables."""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path


@dataclass
class Config:
    db_path: Path = field(default_factory=lambda: Path.home() / ".swarm_orchestrator" / "swarm.db")
    repo_path: Path = field(default_factory=lambda: Path.cwd())
    slack_bot_token: str | None = None
    worktree_dir: str = ".worktrees"
    output_dir: str = ".swarm_outputs"
    snapshot_dir: str = ".swarm_snapshots"
    agent_command: str = "claude"
    agent_model: str = "sonnet"
    agent_max_turns: int = 25
    permission_mode: str = "acceptEdits"
    max_concurrent_tasks: int = 3
    poll_interval: float = 5.0
    worker_timeout: float = 3600.0
    max_task_retries: int = 3
    decay_interval: float = 3600.0
    default_max_tokens: int | None = None
    default_max_cost: float | None = None
    tx_max_attempts: int = 5
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Config":
        config = cls()

        if db := os.environ.get("SWARM_DB_PATH"):
            config.db_path = Path(db)

        if repo := os.environ.get("SWARM_REPO_PATH"):
            config.repo_path = Path(repo)

        config.slack_bot_token = os.environ.get("SLACK_BOT_TOKEN")

        if wt_dir := os.environ.get("SWARM_WORKTREE_DIR"):
            config.worktree_dir = wt_dir

        if out_dir := os.environ.get("SWARM_OUTPUT_DIR"):
            config.output_dir = out_dir

        if snap_dir := os.environ.get("SWARM_SNAPSHOT_DIR"):
            config.snapshot_dir = snap_dir

        if command := os.environ.get("SWARM_AGENT_COMMAND"):
            config.agent_command = command

        if model := os.environ.get("SWARM_AGENT_MODEL"):
            config.agent_model = model

        if turns := os.environ.get("SWARM_AGENT_MAX_TURNS"):
            config.agent_max_turns = int(turns)

        if mode := os.environ.get("SWARM_PERMISSION_MODE"):
            config.permission_mode = mode

        if concurrency := os.environ.get("SWARM_MAX_CONCURRENT_TASKS"):
            config.max_concurrent_tasks = int(concurrency)

        if interval := os.environ.get("SWARM_POLL_INTERVAL"):
            config.poll_interval = float(interval)

        if timeout := os.environ.get("SWARM_WORKER_TIMEOUT"):
            config.worker_timeout = float(timeout)

        if retries := os.environ.get("SWARM_MAX_TASK_RETRIES"):
            config.max_task_retries = int(retries)

        if decay := os.environ.get("SWARM_DECAY_INTERVAL"):
            config.decay_interval = float(decay)

        if tokens := os.environ.get("SWARM_MAX_TOKENS"):
            config.default_max_tokens = int(tokens)

        if cost := os.environ.get("SWARM_MAX_COST"):
            config.default_max_cost = float(cost)

        if attempts := os.environ.get("SWARM_TX_MAX_ATTEMPTS"):
            config.tx_max_attempts = int(attempts)

        if level := os.environ.get("SWARM_LOG_LEVEL"):
            config.log_level = level.upper()

        return config

    def resolve(self, relative: str) -> Path:
        """Resolve an output directory against the repo path unless absolute."""
        path = Path(relative)
        if path.is_absolute():
            return path
        return self.repo_path / path


def get_config() -> Config:
    return Config.from_env()


def configure_logging(level: str = "INFO"):
    """Configure root logging for command-line entry points."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)-8s %(name)s: %(message)s",
    )
