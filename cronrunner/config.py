"""
Runner configuration.

Settings come from (highest priority first):
1. Command-line options (applied by the CLI via RunnerConfig.override)
2. Environment variables (CRONRUNNER_*)
3. A .env file, loaded with python-dotenv
4. Defaults
"""

import os
from dataclasses import dataclass, replace
from typing import List, Optional

from dotenv import find_dotenv, load_dotenv

ENV_SHUTDOWN_TIMEOUT = "CRONRUNNER_SHUTDOWN_TIMEOUT"
ENV_LOG_LEVEL = "CRONRUNNER_LOG_LEVEL"
ENV_LOG_FORMAT = "CRONRUNNER_LOG_FORMAT"
ENV_LOG_FILE = "CRONRUNNER_LOG_FILE"

LOG_FORMATS = ("json", "text")
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


class ConfigError(ValueError):
    """Raised when a configuration value cannot be interpreted."""
    pass


def parse_timeout(value: Optional[str]) -> Optional[float]:
    """
    Parse a shutdown timeout in seconds.

    Unset, empty or "none" means wait forever (None).

    Raises:
        ConfigError: If the value is not a non-negative number
    """
    if value is None:
        return None
    value = value.strip()
    if not value or value.lower() == "none":
        return None
    try:
        timeout = float(value)
    except ValueError as e:
        raise ConfigError(f"invalid shutdown timeout '{value}'") from e
    if timeout < 0:
        raise ConfigError(f"shutdown timeout must not be negative, got {value}")
    return timeout


@dataclass(frozen=True)
class RunnerConfig:
    """Runtime settings for the cron runner."""
    shutdown_timeout: Optional[float] = None  # seconds, None waits forever
    log_level: str = "INFO"
    log_format: str = "json"
    log_file: Optional[str] = None

    @classmethod
    def from_env(cls, load_env_file: bool = True) -> 'RunnerConfig':
        """
        Build configuration from environment variables.

        Args:
            load_env_file: Load a .env file from the working directory or a parent first
                (existing variables win)

        Raises:
            ConfigError: If a variable holds an invalid value
        """
        if load_env_file:
            load_dotenv(find_dotenv(usecwd=True))

        return cls(
            shutdown_timeout=parse_timeout(os.environ.get(ENV_SHUTDOWN_TIMEOUT)),
            log_level=os.environ.get(ENV_LOG_LEVEL, "INFO").upper(),
            log_format=os.environ.get(ENV_LOG_FORMAT, "json").lower(),
            log_file=os.environ.get(ENV_LOG_FILE) or None,
        )

    def override(self, **kwargs) -> 'RunnerConfig':
        """Return a copy with every non-None keyword applied."""
        changes = {k: v for k, v in kwargs.items() if v is not None}
        return replace(self, **changes)

    def validate(self) -> List[str]:
        """
        Validate configuration.

        Returns:
            List of validation errors (empty if valid)
        """
        errors = []

        if self.shutdown_timeout is not None and self.shutdown_timeout < 0:
            errors.append("'shutdown_timeout' must not be negative")

        if self.log_level not in LOG_LEVELS:
            errors.append(
                f"'log_level' must be one of {', '.join(LOG_LEVELS)}, got '{self.log_level}'"
            )

        if self.log_format not in LOG_FORMATS:
            errors.append(
                f"'log_format' must be one of {', '.join(LOG_FORMATS)}, got '{self.log_format}'"
            )

        return errors
