"""Configuration for Unix integration.

Loaded from a YAML file (``AGOR_UNIX_CONFIG`` or /etc/agor/unix.yaml).
Missing files fall back to defaults. Example::

    unix:
      enabled: true
      mode: strict
      home_base: /home
      default_shell: /bin/bash
      command_timeout: 30
      elevation: [sudo, -n]
      helper_command: [agor-unix-admin]
      lock_dir: /var/lib/agor/locks
"""

from __future__ import annotations

import logging
import os
from pathlib import Path

import yaml
from pydantic import BaseModel, Field, field_validator

from agor_unix.core.models import UnixUserMode
from agor_unix.core.validation import is_absolute_path

logger = logging.getLogger(__name__)

CONFIG_ENV_VAR = "AGOR_UNIX_CONFIG"
DEFAULT_CONFIG_PATH = Path("/etc/agor/unix.yaml")

DEFAULT_HOME_BASE = "/home"
DEFAULT_SHELL = "/bin/bash"


class ConfigError(Exception):
    """Configuration file is unreadable or invalid."""

    pass


class UnixConfig(BaseModel):
    """Settings shared by the service and the privileged helper."""

    enabled: bool = True
    mode: UnixUserMode = UnixUserMode.SIMPLE
    home_base: str = DEFAULT_HOME_BASE
    default_shell: str = DEFAULT_SHELL
    # Seconds before a subprocess is killed
    command_timeout: float = 30.0
    # Prefix used to cross the privilege boundary
    elevation: list[str] = Field(default_factory=lambda: ["sudo", "-n"])
    # The privileged helper entry point (must be whitelisted in sudoers)
    helper_command: list[str] = Field(default_factory=lambda: ["agor-unix-admin"])
    # Directory for cross-process lock files; None keeps locks in-process
    lock_dir: Path | None = None
    max_output_bytes: int = 1024 * 1024

    @field_validator("home_base", "default_shell")
    @classmethod
    def _must_be_absolute(cls, value: str) -> str:
        if not is_absolute_path(value):
            raise ValueError(f"must be an absolute path: {value!r}")
        return value.rstrip("/") or "/"

    @field_validator("command_timeout")
    @classmethod
    def _positive_timeout(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("command_timeout must be positive")
        return value

    @field_validator("helper_command")
    @classmethod
    def _non_empty_helper(cls, value: list[str]) -> list[str]:
        if not value:
            raise ValueError("helper_command must not be empty")
        return value


def load_config(path: Path | str | None = None) -> UnixConfig:
    """Load configuration from YAML.

    Resolution order: explicit path, ``AGOR_UNIX_CONFIG``, the system
    default. A missing file yields defaults; a malformed one raises.
    """
    if path is None:
        env_path = os.environ.get(CONFIG_ENV_VAR)
        path = Path(env_path) if env_path else DEFAULT_CONFIG_PATH
    config_path = Path(path)

    if not config_path.exists():
        logger.debug(f"No config at {config_path}; using defaults")
        return UnixConfig()

    try:
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        raise ConfigError(f"Cannot read config {config_path}: {e}") from e

    if not isinstance(data, dict):
        raise ConfigError(
            f"Invalid config {config_path}: expected a mapping, got {type(data).__name__}"
        )

    section = data.get("unix", data)
    try:
        return UnixConfig(**section)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Invalid config {config_path}: {e}") from e
