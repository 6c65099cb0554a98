# ABOUTME: Application wiring and main entry point for the compose-gitops reconciler
# ABOUTME: Builds the service graph from settings and runs the watcher until signalled

"""compose-gitops - GitOps reconciliation for Docker Compose."""

from __future__ import annotations

import asyncio
import signal
import sys
from dataclasses import dataclass

import structlog

from compose_gitops.config import ServerSettings, load_settings
from compose_gitops.errors import ValidationError
from compose_gitops.repositories import (
    DeploymentRepository,
    InMemoryDeploymentRepository,
    InMemoryProjectRepository,
    ProjectRepository,
)
from compose_gitops.services.compose import ComposeExecutor
from compose_gitops.services.git_sync import GitSynchronizer
from compose_gitops.services.orchestrator import DeploymentOrchestrator
from compose_gitops.services.vault import CredentialVault
from compose_gitops.services.watcher import Watcher
from compose_gitops.utils.logging import AuditLogger, configure_logging

logger = structlog.get_logger(__name__)


@dataclass
class AppContext:
    """Everything a front end (web handlers, CLI) needs, built once at startup."""

    settings: ServerSettings
    vault: CredentialVault
    projects: ProjectRepository
    deployments: DeploymentRepository
    git: GitSynchronizer
    compose: ComposeExecutor
    orchestrator: DeploymentOrchestrator
    watcher: Watcher
    audit: AuditLogger


def build_app_context(
    settings: ServerSettings,
    projects: ProjectRepository | None = None,
    deployments: DeploymentRepository | None = None,
) -> AppContext:
    """
    Wire the services together.

    Args:
        settings: Loaded settings; encryption_key must be set
        projects: Project store (in-memory, encrypting through the vault, if None)
        deployments: Deployment store (in-memory if None)

    Raises:
        ValidationError: Missing or malformed encryption key
    """
    key = settings.encryption_key.get_secret_value()
    if not key:
        raise ValidationError("GITOPS_ENCRYPTION_KEY is required")
    vault = CredentialVault(key)

    settings.workspace_dir.mkdir(parents=True, exist_ok=True)
    settings.tmp_dir.mkdir(parents=True, exist_ok=True)

    audit = AuditLogger(settings.audit_log)
    projects = projects if projects is not None else InMemoryProjectRepository(vault)
    deployments = deployments if deployments is not None else InMemoryDeploymentRepository()
    git = GitSynchronizer(settings.git, tmp_dir=settings.tmp_dir)
    compose = ComposeExecutor(settings.compose)
    orchestrator = DeploymentOrchestrator(
        projects,
        deployments,
        git,
        compose,
        workspace_dir=settings.workspace_dir,
        audit=audit,
    )
    watcher = Watcher(orchestrator, git, settings.watcher, audit=audit)

    logger.info(
        "Application context built",
        data_dir=str(settings.data_dir),
        compose_binary=settings.compose.binary,
        watcher_enabled=settings.watcher.enabled,
    )
    return AppContext(
        settings=settings,
        vault=vault,
        projects=projects,
        deployments=deployments,
        git=git,
        compose=compose,
        orchestrator=orchestrator,
        watcher=watcher,
        audit=audit,
    )


async def serve(context: AppContext) -> None:
    """Run the watcher until SIGINT / SIGTERM."""
    loop = asyncio.get_running_loop()
    stopped = asyncio.Event()

    def request_stop() -> None:
        logger.info("Shutdown requested")
        context.watcher.stop()
        stopped.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, request_stop)

    try:
        if context.settings.watcher.enabled:
            await context.watcher.run()
        else:
            logger.info("Watcher disabled, waiting for shutdown")
            await stopped.wait()
    finally:
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.remove_signal_handler(sig)


def main() -> None:
    """Run the compose-gitops reconciler."""
    configure_logging(level="INFO")
    try:
        settings = load_settings()
        configure_logging(level=settings.log_level, json_output=settings.json_logs)
        logger.info("compose-gitops starting")
        context = build_app_context(settings)
        asyncio.run(serve(context))
    except KeyboardInterrupt:
        logger.info("Interrupted")
        sys.exit(0)
    except Exception as e:
        logger.error("Reconciler error", error=str(e))
        sys.exit(1)
    logger.info("compose-gitops stopped")


if __name__ == "__main__":
    main()
