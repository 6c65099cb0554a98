# ABOUTME: Deployment lifecycle: register, deploy, stop and remove compose projects
# ABOUTME: Records every deploy attempt as a Deployment and keeps Project state in step

"""
Deployment orchestration.

=============================================================================
DEPLOY FLOW
=============================================================================

    load project --> [pull] --> resolve HEAD --> Deployment(in_progress)
        --> compose up --no-start --> compose up
            |                              |
            | any failure                  | success
            v                              v
    Deployment(failed)              Deployment(completed)
    stdout/stderr + "ERROR: ..."    Project: running, local/remote commit
    project status untouched
    error re-raised

Failures that happen before the Deployment record exists (pull, commit
resolution) are still recorded, against the last commit the project knew.
Cancellation is recorded as a failure too, then propagates.

=============================================================================
CONCURRENCY
=============================================================================

deploy, stop and remove of one project are serialized by a per-project
asyncio.Lock. remove calls the unlocked stop internally because the lock is
not re-entrant.

=============================================================================
STREAMS
=============================================================================

When a caller passes an OutputStream it receives compose output plus info /
success / error progress messages, and the stream is closed when the
operation ends, whichever way it ends.
"""

from __future__ import annotations

import asyncio
import shutil
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING

import structlog

from compose_gitops.domain import (
    Deployment,
    Project,
    ProjectStatus,
    deleted_directory_path,
    utcnow,
)
from compose_gitops.errors import ProcessError, ValidationError
from compose_gitops.services.compose import ComposeProjectStatus
from compose_gitops.services.streaming import MessageType
from compose_gitops.utils.logging import bind_operation
from compose_gitops.utils.safety import ProjectLocks

if TYPE_CHECKING:
    from compose_gitops.repositories import DeploymentRepository, ProjectRepository
    from compose_gitops.services.compose import CommandResult, ComposeExecutor, ComposeStatus
    from compose_gitops.services.git_sync import GitSynchronizer
    from compose_gitops.services.streaming import OutputStream
    from compose_gitops.utils.logging import AuditLogger

logger = structlog.get_logger(__name__)

UNKNOWN_COMMIT = "unknown"

COMPOSE_TO_PROJECT_STATUS = {
    ComposeProjectStatus.RUNNING: ProjectStatus.RUNNING,
    ComposeProjectStatus.STOPPED: ProjectStatus.STOPPED,
    ComposeProjectStatus.FAILED: ProjectStatus.ERROR,
    ComposeProjectStatus.UNKNOWN: ProjectStatus.UNKNOWN,
}


@dataclass
class _Capture:
    """Output accumulated across the compose commands of one operation."""

    stdout: list[str] = field(default_factory=list)
    stderr: list[str] = field(default_factory=list)

    def add(self, stdout: str, stderr: str) -> None:
        if stdout:
            self.stdout.append(stdout.rstrip("\n"))
        if stderr:
            self.stderr.append(stderr.rstrip("\n"))

    def add_result(self, result: CommandResult) -> None:
        self.add(result.stdout, result.stderr)

    def text(self) -> tuple[str, str]:
        return "\n".join(self.stdout), "\n".join(self.stderr)


def _short(commit: str | None) -> str:
    if not commit or commit == UNKNOWN_COMMIT:
        return UNKNOWN_COMMIT
    return commit[:8]


class DeploymentOrchestrator:
    """Owns project and deployment state transitions."""

    def __init__(
        self,
        projects: ProjectRepository,
        deployments: DeploymentRepository,
        git: GitSynchronizer,
        compose: ComposeExecutor,
        workspace_dir: Path,
        audit: AuditLogger | None = None,
        locks: ProjectLocks | None = None,
    ) -> None:
        self._projects = projects
        self._deployments = deployments
        self._git = git
        self._compose = compose
        self._workspace_dir = Path(workspace_dir)
        self._audit = audit
        self._locks = locks or ProjectLocks()

    # =========================================================================
    # REGISTRATION
    # =========================================================================

    async def create_project(self, project: Project) -> Project:
        """
        Register a project: validate, clone, then persist.

        The working directory is <workspace>/<id>-<slug>/ and the checkout
        lives in its git/ subdirectory. It is removed again if the clone or
        the persistence step fails.
        """
        project.validate()
        if await self._projects.find_by_name(project.name) is not None:
            raise ValidationError(f"project with name '{project.name}' already exists")

        project.working_dir = self._workspace_dir / project.directory_name()
        log = logger.bind(project=project.name, project_id=str(project.id))

        try:
            project.git_branch = await self._git.clone(
                project.git_url, project.git_branch, project.git_auth, project.git_dir
            )
            project.local_commit = await self._git.get_latest_commit(project.git_dir)
            project.status = ProjectStatus.STOPPED
            await self._projects.create(project)
        except Exception as e:
            log.error("Project registration failed", error=str(e))
            await asyncio.to_thread(shutil.rmtree, project.working_dir, ignore_errors=True)
            raise

        log.info("Project registered", branch=project.git_branch, commit=_short(project.local_commit))
        self._audit_success("create_project", project.name, {"commit": project.local_commit})
        return project

    async def update_project(self, project: Project) -> Project:
        project.validate()
        if project.git_auth is not None:
            project.credentials_unreadable = False
        await self._projects.update(project)
        logger.info("Project updated", project=project.name, project_id=str(project.id))
        return project

    # =========================================================================
    # DEPLOY
    # =========================================================================

    async def deploy(
        self,
        project_id: uuid.UUID,
        pull: bool = True,
        stream: OutputStream | None = None,
        pipe: bool = False,
    ) -> Deployment:
        """
        Deploy the project at its current (optionally freshly pulled) commit.

        Args:
            project_id: Project to deploy
            pull: Fetch and hard-reset to the remote branch first
            stream: Receives compose output and progress messages; closed at the end
            pipe: Let compose write straight to our stdout/stderr (ignored with stream)

        Returns:
            The completed Deployment.

        Raises:
            NotFoundError: Unknown project
            GitError, ProcessError: The deploy failed; a failed Deployment was recorded
        """
        try:
            async with self._locks.get(project_id):
                with bind_operation("deploy", project_id=str(project_id)):
                    return await self._deploy_locked(project_id, pull, stream, pipe)
        finally:
            if stream is not None:
                stream.close()

    async def _deploy_locked(
        self,
        project_id: uuid.UUID,
        pull: bool,
        stream: OutputStream | None,
        pipe: bool,
    ) -> Deployment:
        project = await self._projects.find_by_id(project_id)
        log = logger.bind(project=project.name)
        capture = _Capture()
        deployment: Deployment | None = None

        try:
            git_dir = project.git_dir
            if pull:
                self._notify(stream, MessageType.INFO, "Pulling latest changes from Git...", capture)
                project.require_readable_credentials("pull")
                before = project.local_commit or UNKNOWN_COMMIT
                await self._git.pull(project.git_branch, project.git_auth, git_dir)
                after = await self._git.get_latest_commit(git_dir)
                self._notify(
                    stream,
                    MessageType.SUCCESS,
                    f"Git pull completed successfully (from {_short(before)} to {_short(after)})",
                    capture,
                )

            commit = await self._git.get_latest_commit(git_dir)
            deployment = Deployment(project_id=project.id, commit_hash=commit)
            await self._deployments.create(deployment)
            log.info("Deployment started", deployment_id=str(deployment.id), commit=_short(commit))

            self._notify(stream, MessageType.INFO, "Starting Docker Compose deployment...", capture)
            compose = self._compose.project(project)
            for start_services in (False, True):
                result = await compose.up(start_services, stream=stream, pipe=pipe and stream is None)
                capture.add_result(result)

        except (Exception, asyncio.CancelledError) as e:
            await self._record_failure(project, deployment, capture, e, stream)
            raise

        stdout, stderr = capture.text()
        deployment.complete(stdout, stderr)
        await self._deployments.update(deployment)

        project.status = ProjectStatus.RUNNING
        project.local_commit = commit
        project.remote_commit = commit
        await self._projects.update(project)

        self._notify(stream, MessageType.SUCCESS, "Docker Compose deployment completed successfully")
        log.info("Deployment completed", deployment_id=str(deployment.id), commit=_short(commit))
        self._audit_success(
            "deploy", project.name, {"commit": commit, "deployment_id": str(deployment.id)}
        )
        return deployment

    async def _record_failure(
        self,
        project: Project,
        deployment: Deployment | None,
        capture: _Capture,
        error: BaseException,
        stream: OutputStream | None,
    ) -> None:
        if isinstance(error, ProcessError):
            capture.add(error.stdout, error.stderr)
        if isinstance(error, asyncio.CancelledError):
            error = RuntimeError("deployment cancelled")

        self._notify(stream, MessageType.ERROR, f"Deployment failed: {error}")
        stdout, stderr = capture.text()

        try:
            if deployment is None:
                deployment = Deployment(
                    project_id=project.id, commit_hash=project.local_commit or UNKNOWN_COMMIT
                )
                await self._deployments.create(deployment)
            deployment.fail(stdout, stderr, error=error)
            await self._deployments.update(deployment)
        except Exception as record_error:
            logger.error(
                "Failed to record failed deployment",
                project=project.name,
                error=str(record_error),
            )

        logger.error(
            "Deployment failed",
            project=project.name,
            deployment_id=str(deployment.id) if deployment else None,
            error=str(error),
        )
        self._audit_error(
            "deploy",
            project.name,
            str(error),
            {"commit": deployment.commit_hash if deployment else None},
        )

    # =========================================================================
    # STOP / REMOVE
    # =========================================================================

    async def stop(
        self,
        project_id: uuid.UUID,
        remove_volumes: bool = False,
        stream: OutputStream | None = None,
        pipe: bool = False,
    ) -> None:
        """compose down, then mark the project stopped."""
        try:
            async with self._locks.get(project_id):
                with bind_operation("stop", project_id=str(project_id)):
                    project = await self._projects.find_by_id(project_id)
                    await self._stop_locked(project, remove_volumes, stream, pipe)
        finally:
            if stream is not None:
                stream.close()

    async def _stop_locked(
        self,
        project: Project,
        remove_volumes: bool,
        stream: OutputStream | None,
        pipe: bool,
    ) -> None:
        self._notify(stream, MessageType.INFO, "Stopping Docker Compose project...")
        try:
            compose = self._compose.project(project)
            await compose.down(remove_volumes, stream=stream, pipe=pipe and stream is None)
        except Exception as e:
            self._notify(stream, MessageType.ERROR, f"Stop failed: {e}")
            logger.error("Stop failed", project=project.name, error=str(e))
            self._audit_error("stop", project.name, str(e))
            raise

        project.status = ProjectStatus.STOPPED
        await self._projects.update(project)
        self._notify(stream, MessageType.SUCCESS, "Docker Compose project stopped successfully")
        logger.info("Project stopped", project=project.name, remove_volumes=remove_volumes)
        self._audit_success("stop", project.name, {"remove_volumes": remove_volumes})

    async def remove(self, project_id: uuid.UUID, remove_volumes: bool = False) -> None:
        """
        Stop the project, move its working directory aside and delete the record.

        Nothing is moved or deleted when stopping fails. The directory is
        renamed to deleted-<name> rather than removed because containers may
        have left root-owned files in bind mounts.
        """
        async with self._locks.get(project_id):
            with bind_operation("remove", project_id=str(project_id)):
                project = await self._projects.find_by_id(project_id)
                await self._stop_locked(project, remove_volumes, None, False)
                if project.working_dir is not None:
                    await asyncio.to_thread(self._move_aside, project)
                await self._projects.delete(project_id)
                logger.info("Project removed", project=project.name)
                self._audit_success("remove", project.name, {"remove_volumes": remove_volumes})
        self._locks.discard(project_id)

    @staticmethod
    def _move_aside(project: Project) -> None:
        assert project.working_dir is not None
        source = Path(project.working_dir)
        if not source.exists():
            return
        target = deleted_directory_path(source)
        if target.exists():
            target = target.with_name(f"{target.name}-{utcnow():%Y%m%d%H%M%S}")
        try:
            source.rename(target)
        except OSError as e:
            logger.warning(
                "Failed to rename project directory, continuing with deletion",
                project=project.name,
                source=str(source),
                target=str(target),
                error=str(e),
            )
        else:
            logger.info("Project directory moved aside", source=str(source), target=str(target))

    # =========================================================================
    # READ SIDE
    # =========================================================================

    def open_stream(self) -> OutputStream:
        """Stream to pass to deploy, stop or stream_logs, sized from the compose settings."""
        return self._compose.open_stream()

    async def get_project(self, project_id: uuid.UUID) -> Project:
        return await self._projects.find_by_id(project_id)

    async def list_projects(self) -> list[Project]:
        return await self._projects.list()

    async def list_deployments(self, project_id: uuid.UUID) -> list[Deployment]:
        await self._projects.find_by_id(project_id)
        return await self._deployments.list_by_project_id(project_id)

    async def get_status(self, project_id: uuid.UUID) -> ComposeStatus:
        project = await self._projects.find_by_id(project_id)
        return await self._compose.project(project).status()

    async def get_logs(self, project_id: uuid.UUID) -> str:
        project = await self._projects.find_by_id(project_id)
        result = await self._compose.project(project).logs()
        return result.output

    async def stream_logs(self, project_id: uuid.UUID, stream: OutputStream) -> None:
        """Follow logs into stream until compose exits or the task is cancelled."""
        try:
            project = await self._projects.find_by_id(project_id)
            await self._compose.project(project).follow_logs(stream)
        finally:
            stream.close()

    async def pipe_logs(self, project_id: uuid.UUID) -> None:
        project = await self._projects.find_by_id(project_id)
        await self._compose.project(project).pipe_logs()

    async def get_config(self, project_id: uuid.UUID) -> str:
        """The fully resolved compose configuration."""
        project = await self._projects.find_by_id(project_id)
        result = await self._compose.project(project).config()
        return result.stdout

    # =========================================================================
    # WATCHER HOOKS
    # =========================================================================

    async def mark_error(self, project_id: uuid.UUID, error: BaseException | str) -> None:
        project = await self._projects.find_by_id(project_id)
        if project.status is not ProjectStatus.ERROR:
            project.status = ProjectStatus.ERROR
            await self._projects.update(project)
        logger.warning("Project marked as errored", project=project.name, error=str(error))

    async def record_remote_commit(self, project_id: uuid.UUID, commit: str) -> Project:
        project = await self._projects.find_by_id(project_id)
        if project.remote_commit != commit:
            project.remote_commit = commit
            await self._projects.update(project)
        return project

    async def refresh_status(self, project_id: uuid.UUID) -> ProjectStatus:
        """
        Align the stored status with what 'compose ps' reports.

        Skipped while a deploy, stop or remove of the project holds its lock.
        """
        project = await self._projects.find_by_id(project_id)
        if self._locks.locked(project_id):
            return project.status
        status = await self._compose.project(project).status()
        observed = COMPOSE_TO_PROJECT_STATUS[status.status]
        if observed is not project.status:
            logger.info(
                "Project status changed",
                project=project.name,
                stored=project.status.value,
                observed=observed.value,
            )
            project.status = observed
            await self._projects.update(project)
        return observed

    # =========================================================================
    # HELPERS
    # =========================================================================

    @staticmethod
    def _notify(
        stream: OutputStream | None,
        kind: MessageType,
        content: str,
        capture: _Capture | None = None,
    ) -> None:
        if stream is not None:
            stream.try_send(kind, content)
        if capture is not None:
            capture.add(content, "")

    def _audit_success(
        self, action: str, target: str, details: dict[str, object] | None = None
    ) -> None:
        if self._audit is not None:
            self._audit.log_success(action, target, details)

    def _audit_error(
        self, action: str, target: str, error: str, details: dict[str, object] | None = None
    ) -> None:
        if self._audit is not None:
            self._audit.log_error(action, target, error, details)
