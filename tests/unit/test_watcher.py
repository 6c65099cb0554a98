# ABOUTME: Unit tests for the drift-detection watcher
# ABOUTME: Tests per-project drift handling, error isolation, status sync and the run loop

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest
from conftest import COMMIT_1, COMMIT_2

from compose_gitops.config import WatcherSettings
from compose_gitops.domain import Deployment, DeploymentStatus, Project, ProjectStatus
from compose_gitops.errors import GitError, ProcessError
from compose_gitops.services.compose import ComposeProjectStatus, ComposeStatus
from compose_gitops.services.orchestrator import DeploymentOrchestrator
from compose_gitops.services.watcher import Watcher


def make_project(name: str, tmp_path, **overrides) -> Project:
    fields = {
        "name": name,
        "git_url": f"https://git.example.com/{name}.git",
        "git_branch": "main",
        "compose_files": ["docker-compose.yml"],
        "working_dir": tmp_path / name,
        "local_commit": COMMIT_1,
        "remote_commit": COMMIT_1,
    }
    fields.update(overrides)
    return Project(**fields)


@pytest.fixture
def watcher(orchestrator: DeploymentOrchestrator, mock_git: AsyncMock, audit_logger: MagicMock) -> Watcher:
    return Watcher(
        orchestrator,
        mock_git,
        WatcherSettings(poll_interval_seconds=0.01, sync_status=False),
        audit=audit_logger,
    )


@pytest.mark.unit
class TestSweep:
    """Tests for a single sweep."""

    @pytest.mark.asyncio
    async def test_no_drift_no_deploy(self, watcher: Watcher, project_repository, tmp_path, mock_compose_project):
        """Test projects at the remote tip are left alone."""
        project = make_project("blog", tmp_path)
        await project_repository.create(project)

        result = await watcher.sweep()

        assert result.checked == [project.id]
        assert result.deployed == []
        mock_compose_project.up.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_drift_deploys_once(
        self,
        watcher: Watcher,
        project_repository,
        deployment_repository,
        mock_git: AsyncMock,
        tmp_path,
        audit_logger: MagicMock,
    ):
        """Test a drifting project is deployed exactly once and recorded."""
        project = make_project("blog", tmp_path)
        await project_repository.create(project)
        mock_git.get_remote_latest_commit.return_value = COMMIT_2
        mock_git.get_latest_commit.return_value = COMMIT_2

        result = await watcher.sweep()

        assert result.deployed == [project.id]
        mock_git.pull.assert_awaited_once()
        [deployment] = await deployment_repository.list_by_project_id(project.id)
        assert deployment.status is DeploymentStatus.COMPLETED
        assert deployment.commit_hash == COMMIT_2

        stored = await project_repository.find_by_id(project.id)
        assert stored.local_commit == COMMIT_2
        assert stored.status is ProjectStatus.RUNNING
        audit_logger.log_success.assert_any_call(
            "auto_deploy", "blog", {"reason": "new commit detected", "commit": COMMIT_2}
        )

        # Converged: the next sweep does nothing
        second = await watcher.sweep()
        assert second.deployed == []
        assert mock_git.pull.await_count == 1

    @pytest.mark.asyncio
    async def test_auto_deploy_disabled_skipped(
        self, watcher: Watcher, project_repository, mock_git: AsyncMock, tmp_path
    ):
        """Test auto-deploy disabled projects are skipped entirely."""
        project = make_project("manual", tmp_path, auto_deploy_enabled=False)
        await project_repository.create(project)
        mock_git.get_remote_latest_commit.return_value = COMMIT_2

        result = await watcher.sweep()

        assert result.skipped == [project.id]
        assert result.checked == []
        mock_git.fetch.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_stopped_projects_are_checked(
        self, watcher: Watcher, project_repository, mock_git: AsyncMock, tmp_path
    ):
        """Test a stopped project with drift is deployed."""
        project = make_project("stopped", tmp_path, status=ProjectStatus.STOPPED)
        await project_repository.create(project)
        mock_git.get_remote_latest_commit.return_value = COMMIT_2

        result = await watcher.sweep()

        assert result.deployed == [project.id]

    @pytest.mark.asyncio
    async def test_errored_project_redeployed_without_drift(
        self, watcher: Watcher, project_repository, tmp_path, audit_logger: MagicMock
    ):
        """Test a project in the error state is retried on the next sweep."""
        project = make_project("flaky", tmp_path, status=ProjectStatus.ERROR)
        await project_repository.create(project)

        result = await watcher.sweep()

        assert result.deployed == [project.id]
        assert (await project_repository.find_by_id(project.id)).status is ProjectStatus.RUNNING
        audit_logger.log_success.assert_any_call(
            "auto_deploy", "flaky", {"reason": "project in error state", "commit": COMMIT_1}
        )

    @pytest.mark.asyncio
    async def test_unknown_project_redeployed_without_drift(
        self, watcher: Watcher, project_repository, tmp_path, audit_logger: MagicMock
    ):
        """Test a project whose state is unknown is redeployed like an errored one."""
        project = make_project("jobs", tmp_path, status=ProjectStatus.UNKNOWN)
        await project_repository.create(project)

        result = await watcher.sweep()

        assert result.deployed == [project.id]
        assert (await project_repository.find_by_id(project.id)).status is ProjectStatus.RUNNING
        audit_logger.log_success.assert_any_call(
            "auto_deploy", "jobs", {"reason": "project in unknown state", "commit": COMMIT_1}
        )

    @pytest.mark.asyncio
    async def test_running_project_without_drift_left_alone(
        self, watcher: Watcher, project_repository, tmp_path, mock_compose_project
    ):
        """Test a running project at the remote tip is not redeployed."""
        project = make_project("steady", tmp_path, status=ProjectStatus.RUNNING)
        await project_repository.create(project)

        result = await watcher.sweep()

        assert result.deployed == []
        mock_compose_project.up.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_failure_is_isolated(
        self,
        watcher: Watcher,
        project_repository,
        deployment_repository,
        mock_git: AsyncMock,
        mock_compose_project: AsyncMock,
        tmp_path,
    ):
        """Test one failing project does not stop the others."""
        bad = make_project("bad", tmp_path)
        good = make_project("good", tmp_path)
        await project_repository.create(bad)
        await project_repository.create(good)
        mock_git.get_remote_latest_commit.return_value = COMMIT_2

        calls = 0

        async def up(*args, **kwargs):
            nonlocal calls
            calls += 1
            if calls <= 1:
                raise ProcessError(["docker", "compose", "up"], 1, stderr="boom")
            return MagicMock(stdout="", stderr="")

        mock_compose_project.up.side_effect = up

        result = await watcher.sweep()

        assert set(result.checked) == {bad.id, good.id}
        assert len(result.failed) == 1
        assert len(result.deployed) == 1
        failed_id = next(iter(result.failed))
        assert (await project_repository.find_by_id(failed_id)).status is ProjectStatus.ERROR
        [failed_deployment] = await deployment_repository.list_by_project_id(failed_id)
        assert failed_deployment.status is DeploymentStatus.FAILED

    @pytest.mark.asyncio
    async def test_fetch_failure_marks_error(
        self, watcher: Watcher, project_repository, mock_git: AsyncMock, tmp_path, audit_logger: MagicMock
    ):
        """Test a failed fetch marks the project as errored and is audited."""
        project = make_project("offline", tmp_path)
        await project_repository.create(project)
        mock_git.fetch.side_effect = GitError("fetch", "could not resolve host", transient=True)

        result = await watcher.sweep()

        assert project.id in result.failed
        assert (await project_repository.find_by_id(project.id)).status is ProjectStatus.ERROR
        audit_logger.log_error.assert_called_with(
            "auto_deploy", "offline", "git fetch failed: could not resolve host"
        )

    @pytest.mark.asyncio
    async def test_sync_status(
        self,
        orchestrator: DeploymentOrchestrator,
        mock_git: AsyncMock,
        project_repository,
        mock_compose_project: AsyncMock,
        tmp_path,
    ):
        """Test stored statuses are aligned with compose ps when enabled."""
        project = make_project("blog", tmp_path, status=ProjectStatus.RUNNING, auto_deploy_enabled=False)
        await project_repository.create(project)
        mock_compose_project.status.return_value = ComposeStatus(ComposeProjectStatus.STOPPED)
        watcher = Watcher(orchestrator, mock_git, WatcherSettings(sync_status=True))

        await watcher.sweep()

        assert (await project_repository.find_by_id(project.id)).status is ProjectStatus.STOPPED

    @pytest.mark.asyncio
    async def test_sync_status_failure_does_not_stop_sweep(
        self,
        orchestrator: DeploymentOrchestrator,
        mock_git: AsyncMock,
        project_repository,
        mock_compose_project: AsyncMock,
        tmp_path,
    ):
        """Test a failing compose ps only logs a warning."""
        project = make_project("blog", tmp_path)
        await project_repository.create(project)
        mock_compose_project.status.side_effect = ProcessError(["docker", "compose", "ps"], 1)
        watcher = Watcher(orchestrator, mock_git, WatcherSettings(sync_status=True))

        result = await watcher.sweep()

        assert result.checked == [project.id]
        assert result.failed == {}


@pytest.mark.unit
class TestRunLoop:
    """Tests for Watcher.run."""

    @pytest.mark.asyncio
    async def test_runs_until_stopped(self, watcher: Watcher):
        """Test the loop sweeps repeatedly and returns after stop()."""
        sweeps = 0

        async def sweep():
            nonlocal sweeps
            sweeps += 1
            if sweeps == 3:
                watcher.stop()

        watcher.sweep = sweep

        await asyncio.wait_for(watcher.run(), timeout=2)

        assert sweeps == 3

    @pytest.mark.asyncio
    async def test_sweep_errors_do_not_end_loop(self, watcher: Watcher):
        """Test an exception from a sweep is logged and the loop continues."""
        sweeps = 0

        async def sweep():
            nonlocal sweeps
            sweeps += 1
            if sweeps == 1:
                raise RuntimeError("store unavailable")
            watcher.stop()

        watcher.sweep = sweep

        await asyncio.wait_for(watcher.run(), timeout=2)

        assert sweeps == 2

    @pytest.mark.asyncio
    async def test_cancellation(self, watcher: Watcher):
        """Test cancelling the task ends the loop."""
        watcher.sweep = AsyncMock(return_value=None)
        task = asyncio.create_task(watcher.run())
        await asyncio.sleep(0.05)

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task


@pytest.mark.unit
class TestDeploymentRecordShape:
    """Tests for what the watcher leaves in the history."""

    @pytest.mark.asyncio
    async def test_history_newest_first(self, watcher: Watcher, project_repository, deployment_repository, mock_git, tmp_path):
        """Test two drift events produce two deployments, newest first."""
        project = make_project("blog", tmp_path)
        await project_repository.create(project)

        mock_git.get_remote_latest_commit.return_value = COMMIT_2
        mock_git.get_latest_commit.return_value = COMMIT_2
        await watcher.sweep()

        commit_3 = "3" * 40
        mock_git.get_remote_latest_commit.return_value = commit_3
        mock_git.get_latest_commit.return_value = commit_3
        await watcher.sweep()

        history: list[Deployment] = await deployment_repository.list_by_project_id(project.id)
        assert [d.commit_hash for d in history] == [commit_3, COMMIT_2]
