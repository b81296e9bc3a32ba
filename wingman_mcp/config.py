"""Runtime configuration: environment variables overridden by command-line flags."""

import os
from dataclasses import dataclass, field
from importlib.metadata import PackageNotFoundError, version as dist_version
from typing import Optional

from .backends import BACKENDS, DEFAULT_COMMAND_TIMEOUT, DEFAULT_SESSION

DIST_NAME = "wingman-mcp"

ENV_TERMINAL = "WINGMAN_TERMINAL"
ENV_SESSION = "WINGMAN_SESSION"
ENV_WINDOW = "WINGMAN_WINDOW"
ENV_COMMAND_TIMEOUT = "WINGMAN_COMMAND_TIMEOUT"
ENV_LOG_LEVEL = "WINGMAN_LOG_LEVEL"
ENV_BUILD_COMMIT = "WINGMAN_BUILD_COMMIT"
ENV_BUILD_DATE = "WINGMAN_BUILD_DATE"


class ConfigError(ValueError):
    pass


@dataclass(frozen=True)
class BuildInfo:
    """Version metadata reported in serverInfo and by --version."""
    version: str = "dev"
    commit: str = "none"
    date: str = "unknown"

    @classmethod
    def detect(cls, environ: Optional[dict[str, str]] = None) -> "BuildInfo":
        env = os.environ if environ is None else environ
        try:
            installed = dist_version(DIST_NAME)
        except PackageNotFoundError:
            installed = "dev"
        return cls(
            version=installed,
            commit=env.get(ENV_BUILD_COMMIT, "none"),
            date=env.get(ENV_BUILD_DATE, "unknown"),
        )


@dataclass
class ServerConfig:
    terminal: str = "tmux"
    session: str = DEFAULT_SESSION
    window: str = ""
    command_timeout: float = DEFAULT_COMMAND_TIMEOUT
    log_level: str = "INFO"
    build: BuildInfo = field(default_factory=BuildInfo)

    def validate(self) -> "ServerConfig":
        if self.terminal not in BACKENDS:
            raise ConfigError(
                f"Invalid terminal type: {self.terminal}. Must be 'tmux' or 'screen'"
            )
        if self.command_timeout <= 0:
            raise ConfigError(f"command timeout must be positive, got {self.command_timeout}")
        if not self.session:
            self.session = DEFAULT_SESSION
        return self

    @classmethod
    def from_env(cls, environ: Optional[dict[str, str]] = None) -> "ServerConfig":
        env = os.environ if environ is None else environ
        raw_timeout = env.get(ENV_COMMAND_TIMEOUT, "").strip()
        try:
            timeout = float(raw_timeout) if raw_timeout else DEFAULT_COMMAND_TIMEOUT
        except ValueError:
            raise ConfigError(f"{ENV_COMMAND_TIMEOUT} must be a number, got {raw_timeout!r}") from None
        return cls(
            terminal=env.get(ENV_TERMINAL, "tmux").strip() or "tmux",
            session=env.get(ENV_SESSION, DEFAULT_SESSION).strip() or DEFAULT_SESSION,
            window=env.get(ENV_WINDOW, "").strip(),
            command_timeout=timeout,
            log_level=env.get(ENV_LOG_LEVEL, "INFO").strip().upper() or "INFO",
            build=BuildInfo.detect(env),
        )
