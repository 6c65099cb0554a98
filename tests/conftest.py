# ABOUTME: Pytest fixtures and configuration for compose-gitops tests
# ABOUTME: Provides settings, stores, mocked services, a fake compose binary and local git remotes

import shutil
import stat
import uuid
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import git
import pytest
from cryptography.fernet import Fernet
from pydantic import SecretStr
from tenacity import wait_none

from compose_gitops.config import ComposeSettings, GitSettings, ServerSettings, WatcherSettings
from compose_gitops.domain import HTTPAuth, Project, ProjectStatus
from compose_gitops.repositories import InMemoryDeploymentRepository, InMemoryProjectRepository
from compose_gitops.services.compose import CommandResult, ComposeExecutor, ComposeProject
from compose_gitops.services.git_sync import GitSynchronizer
from compose_gitops.services.orchestrator import DeploymentOrchestrator
from compose_gitops.services.vault import CredentialVault
from compose_gitops.utils.logging import AuditLogger

COMMIT_1 = "1" * 40
COMMIT_2 = "2" * 40


@pytest.fixture
def encryption_key() -> str:
    """Create a fresh Fernet key."""
    return Fernet.generate_key().decode()


@pytest.fixture
def vault(encryption_key: str) -> CredentialVault:
    return CredentialVault(encryption_key)


@pytest.fixture
def server_settings(tmp_path: Path, encryption_key: str) -> ServerSettings:
    """Create settings rooted in a temporary data directory."""
    return ServerSettings(
        data_dir=tmp_path / "data",
        encryption_key=SecretStr(encryption_key),
        git=GitSettings(timeout_seconds=30, retry_attempts=2),
        compose=ComposeSettings(kill_grace_seconds=2),
        watcher=WatcherSettings(poll_interval_seconds=0.05, sync_status=False),
    )


@pytest.fixture
def sample_project(tmp_path: Path) -> Project:
    """Create a registered-looking project with a working directory."""
    working_dir = tmp_path / "data" / "projects" / "blog"
    (working_dir / "git").mkdir(parents=True)
    return Project(
        name="Blog",
        git_url="https://git.example.com/acme/blog.git",
        git_branch="main",
        compose_files=["docker-compose.yml"],
        git_auth=HTTPAuth(username="token", password=SecretStr("s3cret")),
        working_dir=working_dir,
        variables=["APP_ENV=production"],
        status=ProjectStatus.STOPPED,
        local_commit=COMMIT_1,
        remote_commit=COMMIT_1,
    )


@pytest.fixture
def project_repository(vault: CredentialVault) -> InMemoryProjectRepository:
    return InMemoryProjectRepository(vault)


@pytest.fixture
def deployment_repository() -> InMemoryDeploymentRepository:
    return InMemoryDeploymentRepository()


@pytest.fixture
def mock_git() -> AsyncMock:
    """Create a mock GitSynchronizer whose checkout sits at COMMIT_1."""
    git_sync = AsyncMock(spec=GitSynchronizer)
    git_sync.clone.side_effect = lambda url, branch, auth, dest: branch or "main"
    git_sync.pull.return_value = False
    git_sync.fetch.return_value = None
    git_sync.get_latest_commit.return_value = COMMIT_1
    git_sync.get_remote_latest_commit.return_value = COMMIT_1
    git_sync.get_default_branch.return_value = "main"
    return git_sync


@pytest.fixture
def mock_compose_project() -> AsyncMock:
    """Create a mock ComposeProject with successful commands."""
    compose_project = AsyncMock(spec=ComposeProject)
    compose_project.up.return_value = CommandResult(["docker", "compose", "up"], 0, "started", "")
    compose_project.down.return_value = CommandResult(["docker", "compose", "down"], 0, "", "")
    compose_project.logs.return_value = CommandResult(["docker", "compose", "logs"], 0, "web | ok", "")
    compose_project.config.return_value = CommandResult(
        ["docker", "compose", "config"], 0, "services: {}\n", ""
    )
    return compose_project


@pytest.fixture
def mock_compose(mock_compose_project: AsyncMock) -> MagicMock:
    """Create a mock ComposeExecutor handing out mock_compose_project."""
    executor = MagicMock(spec=ComposeExecutor)
    executor.project.return_value = mock_compose_project
    return executor


@pytest.fixture
def audit_logger() -> MagicMock:
    return MagicMock(spec=AuditLogger)


@pytest.fixture
def orchestrator(
    project_repository: InMemoryProjectRepository,
    deployment_repository: InMemoryDeploymentRepository,
    mock_git: AsyncMock,
    mock_compose: MagicMock,
    audit_logger: MagicMock,
    tmp_path: Path,
) -> DeploymentOrchestrator:
    return DeploymentOrchestrator(
        project_repository,
        deployment_repository,
        mock_git,
        mock_compose,
        workspace_dir=tmp_path / "data" / "projects",
        audit=audit_logger,
    )


# Subprocess and git fixtures

FAKE_COMPOSE_SCRIPT = """#!/bin/sh
# Stand-in for the container CLI, driven by FAKE_COMPOSE_* variables
if [ -n "$FAKE_COMPOSE_LOG" ]; then printf '%s\\n' "$*" >> "$FAKE_COMPOSE_LOG"; fi
if [ -n "$FAKE_COMPOSE_STDIN_COPY" ]; then cat > "$FAKE_COMPOSE_STDIN_COPY"; fi
if [ -n "$FAKE_COMPOSE_CHILD_PIDFILE" ]; then sleep 60 & echo $! > "$FAKE_COMPOSE_CHILD_PIDFILE"; fi
if [ -n "$FAKE_COMPOSE_PIDFILE" ]; then echo $$ > "$FAKE_COMPOSE_PIDFILE"; fi
case " $* " in
  *" ps "*) printf '%s\\n' "$FAKE_COMPOSE_PS"; exit 0 ;;
esac
if [ -n "$FAKE_COMPOSE_LONG_LINE" ]; then head -c "$FAKE_COMPOSE_LONG_LINE" /dev/zero | tr "\\000" x; echo; fi
i=0
while [ "$i" -lt "${FAKE_COMPOSE_STDOUT_LINES:-0}" ]; do
  echo "out $i"
  i=$((i + 1))
done
if [ -n "$FAKE_COMPOSE_STDERR" ]; then printf '%s\\n' "$FAKE_COMPOSE_STDERR" >&2; fi
if [ -n "$FAKE_COMPOSE_SLEEP" ]; then sleep "$FAKE_COMPOSE_SLEEP"; fi
exit "${FAKE_COMPOSE_EXIT:-0}"
"""


@pytest.fixture
def fake_compose_binary(tmp_path: Path) -> Path:
    """Write an executable fake compose CLI."""
    script = tmp_path / "bin" / "docker"
    script.parent.mkdir(parents=True, exist_ok=True)
    script.write_text(FAKE_COMPOSE_SCRIPT)
    script.chmod(script.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return script


@pytest.fixture
def fake_compose_settings(fake_compose_binary: Path) -> ComposeSettings:
    return ComposeSettings(binary=str(fake_compose_binary), stream_buffer=100, kill_grace_seconds=2)


class RemoteRepo:
    """A bare repository plus a work clone used to push commits to it."""

    def __init__(self, root: Path, branch: str = "main") -> None:
        self.branch = branch
        self.bare_path = root / "remote.git"
        git.Repo.init(self.bare_path, bare=True, initial_branch=branch)
        self.work = git.Repo.init(root / "author", initial_branch=branch)
        with self.work.config_writer() as cw:
            cw.set_value("user", "name", "Test Author")
            cw.set_value("user", "email", "author@example.com")
            cw.set_value("commit", "gpgsign", "false")
        self.work.create_remote("origin", str(self.bare_path))

    @property
    def url(self) -> str:
        return str(self.bare_path)

    def commit(self, files: dict[str, str], message: str) -> str:
        """Write files, commit, push, and return the new commit hash."""
        for name, content in files.items():
            path = Path(self.work.working_tree_dir) / name
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(content)
        self.work.git.add(A=True)
        self.work.git.commit("-m", message)
        self.work.git.push("origin", f"HEAD:refs/heads/{self.branch}", force=True)
        return self.work.head.commit.hexsha


requires_git = pytest.mark.skipif(shutil.which("git") is None, reason="git binary not available")


@pytest.fixture
def git_remote(tmp_path: Path) -> RemoteRepo:
    """Create a local bare remote with one commit on main."""
    remote = RemoteRepo(tmp_path / "remote")
    remote.commit({"docker-compose.yml": "services:\n  web:\n    image: nginx\n"}, "c1")
    return remote


@pytest.fixture
def git_sync(tmp_path: Path) -> GitSynchronizer:
    """Create a real GitSynchronizer without retry delays."""
    return GitSynchronizer(
        GitSettings(timeout_seconds=30, retry_attempts=2),
        tmp_dir=tmp_path / "tmp",
        retry_wait=wait_none(),
    )


@pytest.fixture
def new_project_id() -> uuid.UUID:
    return uuid.uuid4()
