# ABOUTME: Periodic drift detection between deployed commits and remote branch tips
# ABOUTME: Fetches every auto-deploy project and triggers a deploy when it has drifted

"""
Drift-detection loop.

One asyncio task runs Watcher.run(): an immediate sweep, then one sweep per
poll interval until the task is cancelled or stop() is called.

A sweep walks every project:

1. (optional) align the stored status with ``compose ps``
2. for auto-deploy projects: fetch, read origin/<branch>, record it as the
   remote commit
3. deploy with pull when the deployed commit differs from the remote commit,
   or when the project is in neither the running nor the stopped state

Projects are handled one after another, so a sweep deploys each drifting
project exactly once. A failure in one project is logged, the project is
marked as errored, and the sweep moves on.
"""

from __future__ import annotations

import asyncio
import uuid
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

import structlog

from compose_gitops.config import WatcherSettings
from compose_gitops.domain import ProjectStatus
from compose_gitops.utils.logging import bind_operation

if TYPE_CHECKING:
    from compose_gitops.domain import Project
    from compose_gitops.services.git_sync import GitSynchronizer
    from compose_gitops.services.orchestrator import DeploymentOrchestrator
    from compose_gitops.utils.logging import AuditLogger

logger = structlog.get_logger(__name__)


@dataclass
class SweepResult:
    """What one sweep did."""

    checked: list[uuid.UUID] = field(default_factory=list)
    deployed: list[uuid.UUID] = field(default_factory=list)
    failed: dict[uuid.UUID, str] = field(default_factory=dict)
    skipped: list[uuid.UUID] = field(default_factory=list)


class Watcher:
    def __init__(
        self,
        orchestrator: DeploymentOrchestrator,
        git: GitSynchronizer,
        settings: WatcherSettings | None = None,
        audit: AuditLogger | None = None,
    ) -> None:
        self._orchestrator = orchestrator
        self._git = git
        self._settings = settings or WatcherSettings()
        self._audit = audit
        self._stop = asyncio.Event()

    async def run(self) -> None:
        """Sweep now, then every poll interval, until stopped or cancelled."""
        self._stop.clear()
        interval = self._settings.poll_interval_seconds
        logger.info("Watcher starting", poll_interval=interval)
        while True:
            try:
                await self.sweep()
            except Exception as e:
                logger.error("Watcher sweep failed", error=str(e))

            try:
                await asyncio.wait_for(self._stop.wait(), timeout=interval)
            except TimeoutError:
                continue
            logger.info("Watcher stopped")
            return

    def stop(self) -> None:
        self._stop.set()

    async def sweep(self) -> SweepResult:
        result = SweepResult()
        with bind_operation("sweep"):
            projects = await self._orchestrator.list_projects()
            logger.debug("Starting project check cycle", projects=len(projects))

            for project in projects:
                if self._settings.sync_status:
                    await self._sync_status(project)

                if not project.auto_deploy_enabled:
                    result.skipped.append(project.id)
                    continue

                result.checked.append(project.id)
                try:
                    if await self._check_project(project):
                        result.deployed.append(project.id)
                except Exception as e:
                    result.failed[project.id] = str(e)
                    await self._handle_failure(project, e)

            logger.info(
                "Project check cycle completed",
                total=len(projects),
                checked=len(result.checked),
                deployed=len(result.deployed),
                failed=len(result.failed),
            )
        return result

    async def _sync_status(self, project: Project) -> None:
        try:
            project.status = await self._orchestrator.refresh_status(project.id)
        except Exception as e:
            logger.warning("Failed to sync project status", project=project.name, error=str(e))

    async def _check_project(self, project: Project) -> bool:
        """Fetch, compare, deploy if needed. Returns True when a deploy ran."""
        log = logger.bind(project=project.name, project_id=str(project.id))
        project.require_readable_credentials("fetch")
        git_dir = project.git_dir

        await self._git.fetch(project.git_branch, project.git_auth, git_dir)
        remote = await self._git.get_remote_latest_commit(git_dir, project.git_branch)
        project = await self._orchestrator.record_remote_commit(project.id, remote)

        drifted = project.local_commit != remote
        # Anything other than running or stopped (error, unknown) is retried
        unsettled = project.status not in (ProjectStatus.RUNNING, ProjectStatus.STOPPED)
        log.info(
            "Git check completed",
            local_commit=project.local_commit,
            remote_commit=remote,
            has_updates=drifted,
        )
        if not (drifted or unsettled):
            return False

        reason = "new commit detected" if drifted else f"project in {project.status.value} state"
        log.info("Triggering automatic deployment", reason=reason, target_commit=remote[:8])
        deployment = await self._orchestrator.deploy(project.id, pull=True)
        if self._audit is not None:
            self._audit.log_success(
                "auto_deploy",
                project.name,
                {"reason": reason, "commit": deployment.commit_hash},
            )
        return True

    async def _handle_failure(self, project: Project, error: Exception) -> None:
        logger.error(
            "Failed to check project",
            project=project.name,
            project_id=str(project.id),
            error=str(error),
        )
        if self._audit is not None:
            self._audit.log_error("auto_deploy", project.name, str(error))
        try:
            await self._orchestrator.mark_error(project.id, error)
        except Exception as e:
            logger.error("Failed to mark project as errored", project=project.name, error=str(e))
