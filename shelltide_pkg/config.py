"""User configuration management for shelltide.

This module loads and saves ~/.shelltide/config.yaml (or
$SHELLTIDE_HOME/config.yaml). The file holds the environment alias registry,
the default source environment, platform credentials, and tuning knobs.
The engine only sees two things from it: DatabaseRef resolution and the
default source environment.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml

from .constants import CONFIG_FILENAME, get_home_dir
from .errors import ConfigError, EnvironmentNotFound
from .models import DatabaseRef, ResolvedDatabase


SETTABLE_KEYS: dict[str, str] = {
    "default.source_env": "Reference/source environment for migrate and status",
    "platform_url": "Base URL of the change-management platform",
    "access_token": "Bearer token for the platform API",
    "sql_dialect": "Engine sent with each sheet (MYSQL, POSTGRES, ...)",
    "http_timeout": "Seconds per HTTP request",
    "lock_timeout": "Seconds to wait for the local store lock",
    "rollout_poll_interval": "Seconds between rollout polls",
    "rollout_timeout": "Seconds to wait for a rollout to finish",
    "rollout_not_started_timeout": "Seconds a rollout may stay NOT_STARTED",
    "log_path": "Log file location",
    "debug_logging": "Enable DEBUG logs",
    "no_color": "Disable colored output",
}
"""Keys accepted by ``config get`` / ``config set`` with their descriptions."""

_INT_KEYS = {"http_timeout"}
_FLOAT_KEYS = {"lock_timeout", "rollout_poll_interval", "rollout_timeout", "rollout_not_started_timeout"}
_BOOL_KEYS = {"debug_logging", "no_color"}


@dataclass
class Environment:
    """A local alias for a (project, instance) pair on the platform."""

    project: str
    instance: str


@dataclass
class ShelltideConfig:
    """User configuration for the shelltide application.

    All tuning settings are optional and fall back to the defaults in
    constants.py when unset.
    """

    default_source_env: Optional[str] = None
    """Environment whose done issues are the source and the status reference."""

    environments: dict[str, Environment] = field(default_factory=dict)
    """Alias registry: name -> Environment."""

    # Platform
    platform_url: Optional[str] = None
    access_token: Optional[str] = None
    sql_dialect: Optional[str] = None
    http_timeout: Optional[int] = None

    # Local store
    lock_timeout: Optional[float] = None

    # Rollout polling
    rollout_poll_interval: Optional[float] = None
    rollout_timeout: Optional[float] = None
    rollout_not_started_timeout: Optional[float] = None

    # Logging / display
    log_path: Optional[str] = None
    debug_logging: bool = False
    no_color: bool = False

    # ========== ConfigStore interface ==========

    def get_environment(self, name: str) -> Environment:
        """Look up an environment alias.

        Raises:
            EnvironmentNotFound: If the alias is not configured.
        """
        env = self.environments.get(name)
        if env is None:
            raise EnvironmentNotFound(name)
        return env

    def resolve(self, ref: DatabaseRef) -> ResolvedDatabase:
        """Resolve a DatabaseRef to its (project, instance, database) triple."""
        env = self.get_environment(ref.environment)
        return ResolvedDatabase(project=env.project, instance=env.instance, database=ref.database)

    def require_default_source_env(self) -> str:
        """Return the default source environment name.

        Raises:
            ConfigError: If unset or pointing at a removed environment.
        """
        name = self.default_source_env
        if not name:
            raise ConfigError(
                "default.source_env not set. Please run: "
                "shelltide config set default.source_env <env-name>"
            )
        if name not in self.environments:
            raise ConfigError(
                f"Default source environment '{name}' not found. Please set a valid source "
                "environment: shelltide config set default.source_env <env-name>"
            )
        return name

    # ========== Key access for the config CLI ==========

    def get_value(self, key: str) -> Any:
        if key not in SETTABLE_KEYS:
            raise ConfigError(f"Unknown configuration key '{key}'")
        if key == "default.source_env":
            return self.default_source_env
        return getattr(self, key)

    def set_value(self, key: str, raw: str) -> Any:
        """Convert and assign a string value for ``key``.

        Returns:
            The typed value that was stored.

        Raises:
            ConfigError: Unknown key, bad number, or unknown environment.
        """
        if key not in SETTABLE_KEYS:
            raise ConfigError(f"Unknown configuration key '{key}'")

        if key == "default.source_env":
            if raw not in self.environments:
                raise EnvironmentNotFound(raw)
            self.default_source_env = raw
            return raw

        try:
            if key in _INT_KEYS:
                value: Any = int(raw)
            elif key in _FLOAT_KEYS:
                value = float(raw)
            elif key in _BOOL_KEYS:
                value = raw.strip().lower() in ("true", "1", "yes", "on")
            elif key == "sql_dialect":
                value = raw.strip().upper()
            else:
                value = raw
        except ValueError as e:
            raise ConfigError(f"Invalid value for {key}: {e}") from e

        setattr(self, key, value)
        return value


def get_config_path() -> Path:
    """Get the path to the user's config file."""
    return get_home_dir() / CONFIG_FILENAME


def _from_dict(data: dict[str, Any]) -> ShelltideConfig:
    raw_envs = data.get("environments") or {}
    if not isinstance(raw_envs, dict):
        raise ConfigError("'environments' must be a mapping of name -> {project, instance}")

    environments: dict[str, Environment] = {}
    for name, env in raw_envs.items():
        if not isinstance(env, dict) or "project" not in env or "instance" not in env:
            raise ConfigError(f"Environment '{name}' must define 'project' and 'instance'")
        environments[str(name)] = Environment(project=str(env["project"]), instance=str(env["instance"]))

    return ShelltideConfig(
        default_source_env=data.get("default_source_env"),
        environments=environments,
        platform_url=data.get("platform_url"),
        access_token=data.get("access_token"),
        sql_dialect=data.get("sql_dialect"),
        http_timeout=data.get("http_timeout"),
        lock_timeout=data.get("lock_timeout"),
        rollout_poll_interval=data.get("rollout_poll_interval"),
        rollout_timeout=data.get("rollout_timeout"),
        rollout_not_started_timeout=data.get("rollout_not_started_timeout"),
        log_path=data.get("log_path"),
        debug_logging=data.get("debug_logging", False),
        no_color=data.get("no_color", False),
    )


def _to_dict(config: ShelltideConfig) -> dict[str, Any]:
    data = {
        "default_source_env": config.default_source_env,
        "environments": {
            name: {"project": env.project, "instance": env.instance}
            for name, env in sorted(config.environments.items())
        },
        "platform_url": config.platform_url,
        "access_token": config.access_token,
        "sql_dialect": config.sql_dialect,
        "http_timeout": config.http_timeout,
        "lock_timeout": config.lock_timeout,
        "rollout_poll_interval": config.rollout_poll_interval,
        "rollout_timeout": config.rollout_timeout,
        "rollout_not_started_timeout": config.rollout_not_started_timeout,
        "log_path": config.log_path,
        "debug_logging": config.debug_logging,
        "no_color": config.no_color,
    }
    # Drop unset values for cleaner YAML
    return {k: v for k, v in data.items() if v is not None}


def load_config(apply_env: bool = True) -> ShelltideConfig:
    """Load configuration, creating a default file if none exists.

    Args:
        apply_env: Let SHELLTIDE_URL and SHELLTIDE_ACCESS_TOKEN override the
            stored credentials. Pass False when the config will be saved back.

    Raises:
        ConfigError: If the file exists but cannot be read or parsed.
    """
    config_path = get_config_path()

    if not config_path.exists():
        # Logger may not be initialized yet; stay quiet
        create_example_config()

    try:
        with open(config_path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except FileNotFoundError:
        data = None
    except (OSError, yaml.YAMLError) as e:
        raise ConfigError(f"Failed to parse config file at {config_path}: {e}") from e

    if data is None:
        config = ShelltideConfig()
    elif not isinstance(data, dict):
        raise ConfigError(f"Failed to parse config file at {config_path}: expected a mapping")
    else:
        config = _from_dict(data)

    if apply_env:
        config.platform_url = os.environ.get("SHELLTIDE_URL") or config.platform_url
        config.access_token = os.environ.get("SHELLTIDE_ACCESS_TOKEN") or config.access_token
    return config


def save_config(config: ShelltideConfig) -> bool:
    """Save configuration to config.yaml.

    Returns:
        True if successful, False otherwise
    """
    config_path = get_config_path()

    try:
        config_path.parent.mkdir(parents=True, exist_ok=True)
        with open(config_path, "w", encoding="utf-8") as f:
            yaml.safe_dump(_to_dict(config), f, default_flow_style=False, sort_keys=False)
        return True
    except OSError:
        return False


def create_example_config() -> bool:
    """Write a config file with default values.

    Returns:
        True if successful, False otherwise
    """
    return save_config(ShelltideConfig())
