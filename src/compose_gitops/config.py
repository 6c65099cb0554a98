# ABOUTME: Configuration management for the compose-gitops reconciler
# ABOUTME: Reads GITOPS_* environment variables into typed, validated settings

"""
Configuration management using pydantic-settings.

=============================================================================
WHAT IS THIS FILE?
=============================================================================

This module holds every tunable of the reconciler. It:

1. READS environment variables (GITOPS_DATA_DIR, GITOPS_ENCRYPTION_KEY, ...)
2. VALIDATES them (positive timeouts, known log levels)
3. PROVIDES typed access to settings for the app context and the services

=============================================================================
ARCHITECTURE: ONE ROOT, THREE NESTED GROUPS
=============================================================================

ServerSettings
    data_dir, log_level, json_logs, encryption_key, audit_log
    git:      GitSettings      timeout and retry policy for git calls
    compose:  ComposeSettings  compose binary, stream buffer, kill grace
    watcher:  WatcherSettings  poll interval, status sync, on/off switch

Nested groups are plain BaseModels so they are populated through the root's
nested delimiter rather than through their own prefixes.

=============================================================================
ENVIRONMENT VARIABLE MAPPING
=============================================================================

    GITOPS_DATA_DIR                        -> root data directory
    GITOPS_LOG_LEVEL                       -> DEBUG / INFO / WARNING / ERROR / CRITICAL
    GITOPS_JSON_LOGS                       -> JSON log lines instead of console output
    GITOPS_ENCRYPTION_KEY                  -> Fernet key(s), comma separated, newest first
    GITOPS_AUDIT_LOG                       -> path of the JSON-lines audit file
    GITOPS_GIT__TIMEOUT_SECONDS            -> bound for every git call (default 300)
    GITOPS_GIT__RETRY_ATTEMPTS             -> attempts for fetch-type calls (default 3)
    GITOPS_COMPOSE__BINARY                 -> container CLI (default "docker")
    GITOPS_COMPOSE__STREAM_BUFFER          -> bounded stream size (default 100)
    GITOPS_COMPOSE__KILL_GRACE_SECONDS     -> SIGTERM to SIGKILL delay (default 10)
    GITOPS_WATCHER__ENABLED                -> run the drift loop (default true)
    GITOPS_WATCHER__POLL_INTERVAL_SECONDS  -> seconds between sweeps (default 300)
    GITOPS_WATCHER__SYNC_STATUS            -> reconcile status with compose ps (default true)
"""

from __future__ import annotations

import os
from pathlib import Path  # noqa: TC003 - Required at runtime for Pydantic
from typing import Annotated

from pydantic import BaseModel, Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_DATA_DIR = "/opt/compose-gitops/data"


# =============================================================================
# NESTED GROUPS
# =============================================================================


class GitSettings(BaseModel):
    """Policy applied to every git invocation."""

    timeout_seconds: float = Field(
        default=300,
        description="Upper bound for a single clone, fetch, pull or ls-remote",
    )
    retry_attempts: int = Field(
        default=3,
        description="Attempts for fetch-type calls on transient network errors",
    )

    @field_validator("timeout_seconds", "retry_attempts")
    @classmethod
    def must_be_positive(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("must be positive")
        return v


class ComposeSettings(BaseModel):
    """How the compose tool is invoked."""

    binary: str = Field(default="docker", description="Container CLI providing 'compose'")
    stream_buffer: int = Field(default=100, description="Messages buffered per output stream")
    kill_grace_seconds: float = Field(
        default=10,
        description="Delay between SIGTERM and SIGKILL when a command is cancelled",
    )

    @field_validator("stream_buffer", "kill_grace_seconds")
    @classmethod
    def must_be_positive(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("must be positive")
        return v

    @field_validator("binary")
    @classmethod
    def binary_not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("compose binary must not be empty")
        return v.strip()


class WatcherSettings(BaseModel):
    """Drift-detection loop."""

    enabled: bool = True
    poll_interval_seconds: float = Field(default=300, description="Seconds between sweeps")
    sync_status: bool = Field(
        default=True,
        description="Reconcile stored project status with 'compose ps' on every sweep",
    )

    @field_validator("poll_interval_seconds")
    @classmethod
    def must_be_positive(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("must be positive")
        return v


# =============================================================================
# ROOT SETTINGS
# =============================================================================


class ServerSettings(BaseSettings):
    """
    Top-level configuration.

    USAGE:
    ------
        settings = load_settings()
        settings.workspace_dir        # where project checkouts live
        settings.git.timeout_seconds  # nested group
    """

    model_config = SettingsConfigDict(
        env_prefix="GITOPS_",
        env_nested_delimiter="__",
        extra="ignore",
    )

    data_dir: Path = Field(
        default=Path(DEFAULT_DATA_DIR),
        description="Root directory for project checkouts and temp files",
    )

    log_level: Annotated[str, Field(pattern=r"^(DEBUG|INFO|WARNING|ERROR|CRITICAL)$")] = Field(
        default="INFO",
        description="Logging level",
    )

    json_logs: bool = Field(default=False, description="Emit JSON log lines")

    encryption_key: SecretStr = Field(
        default=SecretStr(""),
        description="Fernet key(s) for stored git credentials, comma separated",
    )
    # Generate one with: python -c "from compose_gitops.services.vault import generate_key; print(generate_key())"

    audit_log: Path | None = Field(
        default=None,
        description="Path to the audit log file; audit entries go to the logger when unset",
    )

    git: GitSettings = Field(default_factory=GitSettings)
    compose: ComposeSettings = Field(default_factory=ComposeSettings)
    watcher: WatcherSettings = Field(default_factory=WatcherSettings)

    @field_validator("log_level", mode="before")
    @classmethod
    def normalize_level(cls, v: object) -> object:
        return v.upper() if isinstance(v, str) else v

    @property
    def workspace_dir(self) -> Path:
        """Parent directory of every <project-id>-<slug> working directory."""
        return self.data_dir / "projects"

    @property
    def tmp_dir(self) -> Path:
        return self.data_dir / "tmp"


def load_settings() -> ServerSettings:
    """
    Load settings from the environment.

    If GITOPS_ENV_FILE is set, variables are also read from that file.

    Raises:
        pydantic.ValidationError: If configuration is invalid.
    """
    return ServerSettings(
        _env_file=os.environ.get("GITOPS_ENV_FILE"),
    )
