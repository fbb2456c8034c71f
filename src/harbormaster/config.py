"""Configuration management for Harbormaster.

This module defines the configuration schema using Pydantic settings,
supporting TOML files, environment variables, and programmatic overrides.

Configuration loading priority (highest to lowest):
1. Constructor arguments (load_config passes the TOML file values here)
2. Environment variables (HARBORMASTER_* prefix)
3. Default values defined in this module

Example TOML configuration:
    [health]
    base_url = "http://localhost:8080"
    max_attempts = 30

    [monitor]
    duration_minutes = 15

Example environment variable override:
    HARBORMASTER_HEALTH__MAX_ATTEMPTS=5
    HARBORMASTER_MONITOR__ENABLED=false
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

import tomli
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class LoggingConfig(BaseSettings):
    """Logging configuration.

    Attributes:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        format: Log format (json or console)
        file: Optional log file path (None for stderr only)
        rotation_size_mb: Log file rotation size in megabytes
        retention_count: Number of rotated log files to keep
    """

    model_config = SettingsConfigDict(
        env_prefix="HARBORMASTER_LOGGING__",
        extra="forbid",
    )

    level: str = Field(default="INFO")
    format: str = Field(default="console")
    file: Path | None = Field(default=None)
    rotation_size_mb: int = Field(default=50, ge=1, le=1000)
    retention_count: int = Field(default=10, ge=1, le=100)

    @field_validator("level")
    @classmethod
    def validate_level(cls, v: str) -> str:
        """Validate log level is recognized."""
        valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        v_upper = v.upper()
        if v_upper not in valid_levels:
            raise ValueError(f"Invalid log level: {v}. Must be one of {valid_levels}")
        return v_upper

    @field_validator("format")
    @classmethod
    def validate_format(cls, v: str) -> str:
        """Validate log format is recognized."""
        valid_formats = {"json", "console"}
        v_lower = v.lower()
        if v_lower not in valid_formats:
            raise ValueError(f"Invalid log format: {v}. Must be one of {valid_formats}")
        return v_lower


class DockerConfig(BaseSettings):
    """Container runtime configuration.

    Attributes:
        registry: Registry host used for login before pulling
        username: Registry username (login is skipped when unset)
        password: Registry password or token
        rootless: Prefer the rootless Docker socket
        stop_timeout_seconds: Grace period before a stopped container is killed
        restart_policy: Restart policy applied to started containers
        data_mount: Path inside the container where the data directory is mounted
        container_env: Environment passed to every started container
    """

    model_config = SettingsConfigDict(
        env_prefix="HARBORMASTER_DOCKER__",
        extra="forbid",
    )

    registry: str = Field(default="ghcr.io")
    username: str | None = Field(default=None)
    password: str | None = Field(default=None, repr=False)
    rootless: bool = Field(default=False)
    stop_timeout_seconds: int = Field(default=10, ge=0, le=600)
    restart_policy: str = Field(default="unless-stopped")
    data_mount: str = Field(default="/app/data")
    container_env: dict[str, str] = Field(
        default_factory=lambda: {"HOSTNAME": "0.0.0.0", "PORT": "8080"}
    )

    @field_validator("restart_policy")
    @classmethod
    def validate_restart_policy(cls, v: str) -> str:
        """Validate the restart policy is one Docker accepts."""
        valid_policies = {"no", "always", "unless-stopped", "on-failure"}
        if v not in valid_policies:
            raise ValueError(f"Invalid restart policy: {v}. Must be one of {valid_policies}")
        return v


class HealthConfig(BaseSettings):
    """Health verification configuration.

    Attributes:
        base_url: Base URL of the deployed service
        endpoint: Liveness endpoint path
        max_attempts: Probes before the candidate is declared unhealthy
        interval_seconds: Wait between failed probes
        request_timeout_seconds: Timeout for a single probe
        startup_grace_seconds: Wait after starting a candidate before the first probe
    """

    model_config = SettingsConfigDict(
        env_prefix="HARBORMASTER_HEALTH__",
        extra="forbid",
    )

    base_url: str = Field(default="http://localhost:8080")
    endpoint: str = Field(default="/health")
    max_attempts: int = Field(default=30, ge=1, le=1000)
    interval_seconds: float = Field(default=2.0, ge=0.0, le=600.0)
    request_timeout_seconds: float = Field(default=5.0, gt=0.0, le=120.0)
    startup_grace_seconds: float = Field(default=10.0, ge=0.0, le=600.0)


class MonitorConfig(BaseSettings):
    """Extended post-deployment monitoring configuration.

    Attributes:
        enabled: Run the monitoring window after a successful verification
        duration_minutes: Length of the monitoring window
        interval_seconds: Wait between monitoring probes
        max_consecutive_failures: Consecutive failed probes that fail the deployment
    """

    model_config = SettingsConfigDict(
        env_prefix="HARBORMASTER_MONITOR__",
        extra="forbid",
    )

    enabled: bool = Field(default=True)
    duration_minutes: float = Field(default=5.0, ge=0.0, le=1440.0)
    interval_seconds: float = Field(default=30.0, gt=0.0, le=3600.0)
    max_consecutive_failures: int = Field(default=3, ge=1, le=100)


class BackupConfig(BaseSettings):
    """Data backup configuration.

    Attributes:
        data_file: Name of the persistent data file under <deploy_path>/data
        retention_count: Number of snapshots kept after each backup
    """

    model_config = SettingsConfigDict(
        env_prefix="HARBORMASTER_BACKUP__",
        extra="forbid",
    )

    data_file: str = Field(default="db.sqlite")
    retention_count: int = Field(default=10, ge=1, le=1000)

    @field_validator("data_file")
    @classmethod
    def validate_data_file(cls, v: str) -> str:
        """Validate the data file is a bare file name."""
        if not v or "/" in v or v in {".", ".."}:
            raise ValueError(f"data_file must be a plain file name, got: {v!r}")
        return v


class HarbormasterConfig(BaseSettings):
    """Root configuration for Harbormaster.

    Aggregates all subsystem configurations. Configuration can be loaded from:
    1. TOML files (using load_config function)
    2. Environment variables (HARBORMASTER_* prefix)
    3. Direct instantiation with keyword arguments

    Environment variable format for nested config:
        HARBORMASTER_<SECTION>__<KEY>=value

    Example:
        HARBORMASTER_DOCKER__REGISTRY="registry.example.com"
        HARBORMASTER_BACKUP__RETENTION_COUNT=20
    """

    model_config = SettingsConfigDict(
        env_prefix="HARBORMASTER_",
        env_nested_delimiter="__",
        extra="forbid",
    )

    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    docker: DockerConfig = Field(default_factory=DockerConfig)
    health: HealthConfig = Field(default_factory=HealthConfig)
    monitor: MonitorConfig = Field(default_factory=MonitorConfig)
    backup: BackupConfig = Field(default_factory=BackupConfig)


def load_config(config_path: Path | None = None) -> HarbormasterConfig:
    """Load configuration from a TOML file, with environment variables for unset keys.

    Configuration search order (first found is used):
    1. config_path if explicitly provided
    2. ./harbormaster.toml (current directory)
    3. ~/.config/harbormaster/config.toml (user config directory)

    Args:
        config_path: Explicit path to TOML config file. If None, searches
                    default locations.

    Returns:
        HarbormasterConfig: Fully resolved configuration instance.

    Raises:
        FileNotFoundError: If config_path is explicitly provided but doesn't exist.
        ValueError: If TOML file contains invalid configuration.
    """
    toml_data: dict[str, Any] = {}

    if config_path is not None:
        if not config_path.exists():
            raise FileNotFoundError(f"Config file not found: {config_path}")
        selected_path = config_path
    else:
        search_paths = [
            Path.cwd() / "harbormaster.toml",
            Path.home() / ".config" / "harbormaster" / "config.toml",
        ]
        selected_path = None
        for path in search_paths:
            if path.exists():
                selected_path = path
                break

    if selected_path is not None:
        with open(selected_path, "rb") as f:
            toml_data = tomli.load(f)

    # Environment variables fill in whatever the TOML file leaves unset
    try:
        return HarbormasterConfig(**toml_data)
    except Exception as e:
        if selected_path:
            raise ValueError(
                f"Invalid configuration in {selected_path}: {e}"
            ) from e
        else:
            raise ValueError(f"Invalid configuration: {e}") from e
