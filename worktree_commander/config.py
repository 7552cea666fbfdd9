"""Configuration object and YAML loader."""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

import yaml

logger = logging.getLogger(__name__)

DEFAULT_HOME = Path("~/.worktree-commander")


@dataclass
class ServerConfig:
    host: str = "127.0.0.1"
    port: int = 8430


@dataclass
class Config:
    """Runtime settings.

    YAML layout (every key optional)::

        server: {host, port}
        paths: {worktrees_dir, state_file, log_file}
        executor: {max_concurrent_commands, command_timeout, max_retries, git_timeout}
        cache: {content_ttl_ms, diff_ttl_ms, capture_lines}
        monitor: {poll_interval, max_poll_failures}
        sessions: {default_program, branch_prefix}
        logging: {level}
    """
    max_concurrent_commands: int = 16
    command_timeout: float = 5.0
    max_retries: int = 3
    git_timeout: float = 30.0
    content_cache_ttl_ms: int = 50
    diff_cache_ttl_ms: int = 500
    capture_lines: int = 1000
    poll_interval: float = 0.5
    max_poll_failures: int = 3
    default_program: str = "claude"
    branch_prefix: str = ""
    worktrees_dir: str = str(DEFAULT_HOME / "worktrees")
    state_file: str = str(DEFAULT_HOME / "state.json")
    log_level: str = "INFO"
    log_file: Optional[str] = None
    server: ServerConfig = field(default_factory=ServerConfig)

    def __post_init__(self):
        if self.max_concurrent_commands < 1:
            raise ValueError("max_concurrent_commands must be at least 1")
        if self.git_timeout <= 0:
            raise ValueError("git_timeout must be positive")
        if self.poll_interval <= 0:
            raise ValueError("poll_interval must be positive")
        if self.max_poll_failures < 1:
            raise ValueError("max_poll_failures must be at least 1")
        self.worktrees_dir = str(Path(self.worktrees_dir).expanduser())
        self.state_file = str(Path(self.state_file).expanduser())

    @classmethod
    def from_dict(cls, data: dict) -> "Config":
        """Build a Config from the nested YAML sections."""
        data = data or {}
        server = data.get("server", {})
        paths = data.get("paths", {})
        executor = data.get("executor", {})
        cache = data.get("cache", {})
        monitor = data.get("monitor", {})
        sessions = data.get("sessions", {})
        logging_config = data.get("logging", {})
        defaults = cls.__dataclass_fields__

        def pick(section: dict, key: str, name: str):
            return section.get(key, defaults[name].default)

        return cls(
            max_concurrent_commands=int(pick(executor, "max_concurrent_commands", "max_concurrent_commands")),
            command_timeout=float(pick(executor, "command_timeout", "command_timeout")),
            max_retries=int(pick(executor, "max_retries", "max_retries")),
            git_timeout=float(pick(executor, "git_timeout", "git_timeout")),
            content_cache_ttl_ms=int(pick(cache, "content_ttl_ms", "content_cache_ttl_ms")),
            diff_cache_ttl_ms=int(pick(cache, "diff_ttl_ms", "diff_cache_ttl_ms")),
            capture_lines=int(pick(cache, "capture_lines", "capture_lines")),
            poll_interval=float(pick(monitor, "poll_interval", "poll_interval")),
            max_poll_failures=int(pick(monitor, "max_poll_failures", "max_poll_failures")),
            default_program=pick(sessions, "default_program", "default_program"),
            branch_prefix=pick(sessions, "branch_prefix", "branch_prefix"),
            worktrees_dir=pick(paths, "worktrees_dir", "worktrees_dir"),
            state_file=pick(paths, "state_file", "state_file"),
            log_file=paths.get("log_file"),
            log_level=str(logging_config.get("level", "INFO")).upper(),
            server=ServerConfig(
                host=server.get("host", ServerConfig.host),
                port=int(server.get("port", ServerConfig.port)),
            ),
        )


def load_config(config_path: str = "config.yaml") -> Config:
    """Load configuration from YAML file."""
    path = Path(config_path).expanduser()

    if not path.exists():
        logger.warning(f"Config file not found: {config_path}, using defaults")
        return Config()

    with open(path) as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError(f"Config file {config_path} must contain a mapping")
    return Config.from_dict(data)
