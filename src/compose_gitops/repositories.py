# ABOUTME: Persistence contracts for projects and deployments plus in-memory implementations
# ABOUTME: Git credentials are stored only in encrypted form through the CredentialVault

"""Persistence boundary.

The reconciler depends only on the two protocols below; a database-backed
store can replace the in-memory implementations without touching services.
Repositories hand out copies, so mutating a returned Project has no effect
until update() is called.
"""

from __future__ import annotations

import copy
import uuid
from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol

import structlog

from compose_gitops.domain import Deployment, Project, utcnow
from compose_gitops.errors import DecryptionError, NotFoundError, ValidationError

if TYPE_CHECKING:
    from compose_gitops.services.vault import CredentialVault

logger = structlog.get_logger(__name__)


class ProjectRepository(Protocol):
    async def find_by_id(self, project_id: uuid.UUID) -> Project: ...

    async def find_by_name(self, name: str) -> Project | None: ...

    async def create(self, project: Project) -> None: ...

    async def update(self, project: Project) -> None: ...

    async def delete(self, project_id: uuid.UUID) -> None: ...

    async def list(self) -> list[Project]: ...


class DeploymentRepository(Protocol):
    async def create(self, deployment: Deployment) -> None: ...

    async def update(self, deployment: Deployment) -> None: ...

    async def find_by_id(self, deployment_id: uuid.UUID) -> Deployment: ...

    async def list_by_project_id(self, project_id: uuid.UUID) -> list[Deployment]: ...


@dataclass
class _StoredProject:
    project: Project
    auth_type: str | None
    auth_ciphertext: str | None


class InMemoryProjectRepository:
    """Project store keeping credentials encrypted at rest."""

    def __init__(self, vault: CredentialVault) -> None:
        self._vault = vault
        self._rows: dict[uuid.UUID, _StoredProject] = {}

    async def find_by_id(self, project_id: uuid.UUID) -> Project:
        row = self._rows.get(project_id)
        if row is None:
            raise NotFoundError("project", project_id)
        return self._hydrate(row)

    async def find_by_name(self, name: str) -> Project | None:
        for row in self._rows.values():
            if row.project.name == name:
                return self._hydrate(row)
        return None

    async def create(self, project: Project) -> None:
        if project.id in self._rows:
            raise ValidationError(f"project {project.id} already exists")
        if any(row.project.name == project.name for row in self._rows.values()):
            raise ValidationError(f"project with name '{project.name}' already exists")
        self._rows[project.id] = self._dehydrate(project, previous=None)
        logger.debug("Project stored", project=project.name, project_id=str(project.id))

    async def update(self, project: Project) -> None:
        previous = self._rows.get(project.id)
        if previous is None:
            raise NotFoundError("project", project.id)
        if any(
            row.project.name == project.name and pid != project.id
            for pid, row in self._rows.items()
        ):
            raise ValidationError(f"project with name '{project.name}' already exists")
        project.updated_at = utcnow()
        self._rows[project.id] = self._dehydrate(project, previous=previous)

    async def delete(self, project_id: uuid.UUID) -> None:
        if self._rows.pop(project_id, None) is None:
            raise NotFoundError("project", project_id)

    async def list(self) -> list[Project]:
        rows = sorted(self._rows.values(), key=lambda r: r.project.created_at)
        return [self._hydrate(row) for row in rows]

    def stored_credentials(self, project_id: uuid.UUID) -> tuple[str | None, str | None]:
        """The (auth_type, ciphertext) pair as persisted."""
        row = self._rows.get(project_id)
        if row is None:
            raise NotFoundError("project", project_id)
        return row.auth_type, row.auth_ciphertext

    def _dehydrate(self, project: Project, previous: _StoredProject | None) -> _StoredProject:
        stored = copy.deepcopy(project)
        stored.git_auth = None
        stored.credentials_unreadable = False
        if project.git_auth is None and project.credentials_unreadable and previous is not None:
            # Keep what we could not read rather than silently wiping it
            return _StoredProject(stored, previous.auth_type, previous.auth_ciphertext)
        auth_type, ciphertext = self._vault.encrypt(project.git_auth)
        return _StoredProject(stored, auth_type, ciphertext)

    def _hydrate(self, row: _StoredProject) -> Project:
        project = copy.deepcopy(row.project)
        try:
            project.git_auth = self._vault.decrypt(row.auth_type, row.auth_ciphertext)
        except DecryptionError as e:
            logger.warning(
                "Stored git credentials could not be decrypted",
                project=project.name,
                project_id=str(project.id),
                error=str(e),
            )
            project.git_auth = None
            project.credentials_unreadable = True
        return project


class InMemoryDeploymentRepository:
    def __init__(self) -> None:
        self._rows: dict[uuid.UUID, Deployment] = {}

    async def create(self, deployment: Deployment) -> None:
        if deployment.id in self._rows:
            raise ValidationError(f"deployment {deployment.id} already exists")
        self._rows[deployment.id] = copy.deepcopy(deployment)

    async def update(self, deployment: Deployment) -> None:
        if deployment.id not in self._rows:
            raise NotFoundError("deployment", deployment.id)
        self._rows[deployment.id] = copy.deepcopy(deployment)

    async def find_by_id(self, deployment_id: uuid.UUID) -> Deployment:
        row = self._rows.get(deployment_id)
        if row is None:
            raise NotFoundError("deployment", deployment_id)
        return copy.deepcopy(row)

    async def list_by_project_id(self, project_id: uuid.UUID) -> list[Deployment]:
        """Newest first."""
        rows = [d for d in self._rows.values() if d.project_id == project_id]
        rows.sort(key=lambda d: d.created_at, reverse=True)
        return [copy.deepcopy(d) for d in rows]
