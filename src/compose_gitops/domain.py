# ABOUTME: Core domain types for compose-gitops: projects, deployments, Git auth
# ABOUTME: Status enums, the HTTP/SSH auth union, and the deployment state machine

"""
Domain model for the reconciler.

=============================================================================
ENTITIES
=============================================================================

Project
    A Git repository containing one or more compose files, checked out under
    its own working directory. Tracks the commit currently deployed
    (local_commit) and the last commit seen on the remote (remote_commit).

Deployment
    One attempt at bringing a project up at a given commit. Starts as
    IN_PROGRESS and ends as either COMPLETED or FAILED. Terminal deployments
    are immutable.

=============================================================================
GIT AUTHENTICATION AS A SUM TYPE
=============================================================================

A project authenticates with exactly one of:

    HTTPAuth(username, password)      e.g. username="token" for GitHub PATs
    SSHAuth(private_key, user="git")  passwordless PEM key

or with nothing at all (public repository). The type alias GitAuth is the
union of the two models discriminated by their "kind" literal, so "both set"
is not representable and type checkers can narrow with isinstance().
"""

from __future__ import annotations

import re
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from pathlib import Path
from typing import Annotated, Literal

from pydantic import BaseModel, Field, SecretStr

from compose_gitops.errors import DeploymentStateError, GitAuthenticationError, ValidationError

GIT_DIR_NAME = "git"


def utcnow() -> datetime:
    return datetime.now(UTC)


# =============================================================================
# STATUS ENUMS
# =============================================================================


class ProjectStatus(StrEnum):
    RUNNING = "running"
    STOPPED = "stopped"
    ERROR = "error"
    UNKNOWN = "unknown"


class DeploymentStatus(StrEnum):
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self is not DeploymentStatus.IN_PROGRESS


# =============================================================================
# GIT AUTHENTICATION
# =============================================================================


class HTTPAuth(BaseModel):
    """HTTP basic authentication (tokens, passwords)."""

    model_config = {"frozen": True}

    kind: Literal["http"] = "http"
    username: str = ""
    password: SecretStr = SecretStr("")

    def to_payload(self) -> dict[str, str]:
        return {"username": self.username, "password": self.password.get_secret_value()}


class SSHAuth(BaseModel):
    """Passwordless SSH key authentication."""

    model_config = {"frozen": True}

    kind: Literal["ssh"] = "ssh"
    private_key: SecretStr = SecretStr("")
    user: str = "git"

    def to_payload(self) -> dict[str, str]:
        return {"private_key": self.private_key.get_secret_value(), "user": self.user}


GitAuth = Annotated[HTTPAuth | SSHAuth, Field(discriminator="kind")]


# =============================================================================
# PROJECT
# =============================================================================


def slugify(value: str) -> str:
    """Lowercase, dash-separated form of a name, safe for paths and compose project names."""
    value = re.sub(r"[^a-z0-9]+", "-", value.lower())
    return value.strip("-") or "project"


def parse_variables(variables: list[str]) -> dict[str, str]:
    """
    Turn ordered KEY=VALUE strings into a mapping.

    Blank lines and '#' comments are skipped; later keys win.
    """
    env: dict[str, str] = {}
    for raw in variables:
        line = raw.strip()
        if not line or line.startswith("#"):
            continue
        key, sep, value = line.partition("=")
        key = key.strip()
        if not sep or not key:
            raise ValidationError(f"invalid variable {raw!r}: expected KEY=VALUE")
        env[key] = value
    return env


@dataclass
class Project:
    name: str
    git_url: str
    compose_files: list[str]
    git_branch: str = ""
    git_auth: GitAuth | None = None
    working_dir: Path | None = None
    compose_override: str | None = None
    variables: list[str] = field(default_factory=list)
    status: ProjectStatus = ProjectStatus.STOPPED
    local_commit: str | None = None
    remote_commit: str | None = None
    auto_deploy_enabled: bool = True
    id: uuid.UUID = field(default_factory=uuid.uuid4)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    # Set when stored credentials exist but could not be decrypted
    credentials_unreadable: bool = False

    @property
    def git_dir(self) -> Path:
        if self.working_dir is None or str(self.working_dir) == "":
            raise ValidationError(f"working directory is not set for project {self.name}")
        return Path(self.working_dir) / GIT_DIR_NAME

    @property
    def compose_project_name(self) -> str:
        return slugify(self.name)

    def directory_name(self) -> str:
        return f"{self.id}-{slugify(self.name)}"

    def validate(self) -> None:
        if not self.name.strip():
            raise ValidationError("name is required")
        if not self.git_url.strip():
            raise ValidationError("git URL is required")
        if not self.compose_files or any(not f.strip() for f in self.compose_files):
            raise ValidationError("compose files are required")
        if self.git_auth is not None and not isinstance(self.git_auth, HTTPAuth | SSHAuth):
            raise ValidationError("git auth must be HTTP or SSH credentials")
        parse_variables(self.variables)

    def environment(self) -> dict[str, str]:
        return parse_variables(self.variables)

    def require_readable_credentials(self, operation: str) -> None:
        """Refuse to talk to the remote anonymously when stored credentials were unreadable."""
        if self.credentials_unreadable and self.git_auth is None:
            raise GitAuthenticationError(
                operation, "stored credentials could not be decrypted; re-enter them"
            )


def deleted_directory_path(working_dir: Path) -> Path:
    """Where a removed project's directory is moved to."""
    working_dir = Path(working_dir)
    return working_dir.parent / f"deleted-{working_dir.name}"


# =============================================================================
# DEPLOYMENT
# =============================================================================


@dataclass
class Deployment:
    project_id: uuid.UUID
    commit_hash: str
    status: DeploymentStatus = DeploymentStatus.IN_PROGRESS
    stdout: str = ""
    stderr: str = ""
    id: uuid.UUID = field(default_factory=uuid.uuid4)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def complete(self, stdout: str = "", stderr: str = "") -> None:
        self._finish(DeploymentStatus.COMPLETED, stdout, stderr)

    def fail(self, stdout: str = "", stderr: str = "", error: BaseException | None = None) -> None:
        if error is not None:
            stderr = f"{stderr}\n" if stderr else ""
            stderr += f"ERROR: {error}"
        self._finish(DeploymentStatus.FAILED, stdout, stderr)

    def _finish(self, status: DeploymentStatus, stdout: str, stderr: str) -> None:
        if self.status.is_terminal:
            raise DeploymentStateError(
                f"deployment {self.id} is already {self.status.value}; cannot move to {status.value}"
            )
        self.status = status
        self.stdout = stdout
        self.stderr = stderr
        self.updated_at = utcnow()
