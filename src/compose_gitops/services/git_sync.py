# ABOUTME: Git synchronization for project checkouts using GitPython
# ABOUTME: Clone, fetch, hard-reset pull, commit lookup, default branch and auth probing

"""
Git operations for project checkouts.

=============================================================================
WHAT IS THIS FILE?
=============================================================================

GitSynchronizer wraps the git binary through GitPython. Every public method
is a coroutine; the blocking GitPython call runs in a worker thread via
asyncio.to_thread and is bounded by kill_after_timeout, so a hung remote
cannot stall the event loop or the watcher forever.

=============================================================================
CREDENTIALS
=============================================================================

Credentials never appear in argv, in the remote URL, or in .git/config:

HTTPAuth
    Sent as a one-shot ``http.extraHeader`` (Basic auth) injected through the
    GIT_CONFIG_COUNT / GIT_CONFIG_KEY_n / GIT_CONFIG_VALUE_n environment
    variables of the single git process that needs it.

SSHAuth
    The key is written to a 0600 temporary file that lives only for the
    duration of one git call and is referenced through GIT_SSH_COMMAND.

For every call credential helpers are disabled and terminal prompts are
turned off, so a missing credential fails fast instead of hanging or
picking up something cached on the host.

=============================================================================
FAILURES
=============================================================================

    GitAuthenticationError   rejected or missing credentials, never retried
    GitError(transient=True) network trouble; fetch-type calls retry with
                             exponential backoff (tenacity)
    GitError                 everything else

Error text is masked before it reaches logs or exception messages.
"""

from __future__ import annotations

import asyncio
import base64
import os
import shlex
import tempfile
from contextlib import contextmanager
from pathlib import Path
from typing import TYPE_CHECKING, Any

import git
import structlog
from git.exc import GitCommandError, InvalidGitRepositoryError, NoSuchPathError
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from compose_gitops.config import GitSettings
from compose_gitops.domain import GitAuth, HTTPAuth, SSHAuth
from compose_gitops.errors import GitAuthenticationError, GitError
from compose_gitops.utils.safety import mask_secrets

if TYPE_CHECKING:
    from collections.abc import Callable, Iterator

    from tenacity.wait import wait_base

logger = structlog.get_logger(__name__)

# Substrings of git's stderr, lowercased
AUTH_FAILURE_MARKERS = (
    "authentication failed",
    "could not read username",
    "could not read password",
    "terminal prompts disabled",
    "invalid username or password",
    "permission denied (publickey",
    "host key verification failed",
    "the requested url returned error: 401",
    "the requested url returned error: 403",
    "access denied",
)

TRANSIENT_MARKERS = (
    "could not resolve host",
    "temporary failure in name resolution",
    "connection timed out",
    "connection refused",
    "connection reset",
    "operation timed out",
    "timeout",
    "early eof",
    "the remote end hung up unexpectedly",
    "rpc failed",
    "the requested url returned error: 429",
    "the requested url returned error: 500",
    "the requested url returned error: 502",
    "the requested url returned error: 503",
    "the requested url returned error: 504",
)


def _is_transient(exc: BaseException) -> bool:
    return isinstance(exc, GitError) and exc.transient


def _log_retry(state: RetryCallState) -> None:
    exc = state.outcome.exception() if state.outcome else None
    logger.warning("Retrying git operation", attempt=state.attempt_number, error=str(exc))


def basic_auth_header(auth: HTTPAuth) -> str:
    raw = f"{auth.username}:{auth.password.get_secret_value()}".encode()
    return "Authorization: Basic " + base64.b64encode(raw).decode()


class GitSynchronizer:
    """Git operations on project checkouts."""

    def __init__(
        self,
        settings: GitSettings | None = None,
        tmp_dir: Path | None = None,
        retry_wait: wait_base | None = None,
    ) -> None:
        """
        Args:
            settings: Timeout and retry policy
            tmp_dir: Where short-lived SSH key files are created (system temp if None)
            retry_wait: tenacity wait strategy between retries of fetch-type calls
        """
        self._settings = settings or GitSettings()
        self._tmp_dir = tmp_dir
        self._retry_wait = retry_wait or wait_exponential(multiplier=1, min=1, max=10)

    # =========================================================================
    # PUBLIC API
    # =========================================================================

    async def clone(self, url: str, branch: str, auth: GitAuth | None, dest_dir: Path) -> str:
        """
        Single-branch clone of url into dest_dir.

        An empty branch is resolved to the remote's default branch first.

        Returns:
            The branch that was cloned.
        """
        if not branch:
            branch = await self.get_default_branch(url, auth)
        log = logger.bind(url=mask_secrets(url), branch=branch, dest=str(dest_dir))
        log.info("Cloning repository")
        await asyncio.to_thread(self._clone_sync, url, branch, auth, Path(dest_dir))
        log.info("Repository cloned")
        return branch

    async def pull(self, branch: str, auth: GitAuth | None, directory: Path) -> bool:
        """
        Bring the checkout to the tip of origin/<branch>.

        Fetches, then hard-resets the worktree so force-pushes are followed.
        Untracked files are left alone.

        Returns:
            True if HEAD moved, False if the checkout was already up to date.
        """
        await self.fetch(branch, auth, directory)
        return await asyncio.to_thread(self._reset_sync, branch, Path(directory))

    async def fetch(self, branch: str, auth: GitAuth | None, directory: Path) -> None:
        """Update refs/remotes/origin/<branch> without touching the worktree."""
        await self._retrying(self._fetch_sync, branch, auth, Path(directory))

    async def get_latest_commit(self, directory: Path) -> str:
        return await asyncio.to_thread(self._rev_parse_sync, Path(directory), "HEAD", "get commit")

    async def get_remote_latest_commit(self, directory: Path, branch: str) -> str:
        return await asyncio.to_thread(
            self._rev_parse_sync,
            Path(directory),
            f"refs/remotes/origin/{branch}",
            "get remote commit",
        )

    async def get_default_branch(self, url: str, auth: GitAuth | None) -> str:
        branch = await self._retrying(self._default_branch_sync, url, auth)
        logger.info("Resolved default branch", url=mask_secrets(url), branch=branch)
        return branch

    async def test_authentication(self, url: str, auth: GitAuth | None) -> None:
        """
        Check that url is reachable with auth using a read-only ls-remote.

        Creates no local state and never consults credential helpers.

        Raises:
            GitAuthenticationError: Credentials rejected or required
            GitError: Any other failure
        """
        log = logger.bind(url=mask_secrets(url))
        log.info("Testing git authentication")
        await asyncio.to_thread(self._ls_remote_sync, url, auth, ("--heads",), "ls-remote")
        log.info("Git authentication test successful")

    # =========================================================================
    # BLOCKING IMPLEMENTATIONS (run in worker threads)
    # =========================================================================

    def _clone_sync(self, url: str, branch: str, auth: GitAuth | None, dest: Path) -> None:
        dest.parent.mkdir(parents=True, exist_ok=True)
        with self._auth_env(auth) as env:
            self._run(
                "clone",
                auth,
                git.Git().clone,
                "--single-branch",
                "--branch",
                branch,
                "--",
                url,
                str(dest),
                env=env,
            )

    def _fetch_sync(self, branch: str, auth: GitAuth | None, directory: Path) -> None:
        repo = self._open(directory, "fetch")
        refspec = f"+refs/heads/{branch}:refs/remotes/origin/{branch}"
        with self._auth_env(auth) as env:
            self._run("fetch", auth, repo.git.fetch, "origin", refspec, env=env)
        logger.debug("Fetched", branch=branch, directory=str(directory))

    def _reset_sync(self, branch: str, directory: Path) -> bool:
        repo = self._open(directory, "pull")
        target = f"refs/remotes/origin/{branch}"
        head = self._rev_parse_sync(directory, "HEAD", "pull")
        remote = self._rev_parse_sync(directory, target, "pull")
        if head == remote:
            logger.debug("Repository already up to date", branch=branch, directory=str(directory))
            return False
        self._run("pull", None, repo.git.reset, "--hard", target)
        logger.info(
            "Repository updated", branch=branch, old_commit=head[:8], new_commit=remote[:8]
        )
        return True

    def _rev_parse_sync(self, directory: Path, rev: str, operation: str) -> str:
        repo = self._open(directory, operation)
        out = self._run(operation, None, repo.git.rev_parse, "--verify", f"{rev}^{{commit}}")
        return out.strip()

    def _default_branch_sync(self, url: str, auth: GitAuth | None) -> str:
        out = self._ls_remote_sync(url, auth, ("--symref", "--", url, "HEAD"), "default branch")
        head_hash = ""
        for line in out.splitlines():
            if line.startswith("ref: ") and line.endswith("\tHEAD"):
                target = line[len("ref: ") :].split("\t", 1)[0]
                if target.startswith("refs/heads/"):
                    return target.removeprefix("refs/heads/")
            elif line.endswith("\tHEAD"):
                head_hash = line.split("\t", 1)[0]

        # Dumb transports do not advertise the symref; match HEAD's hash instead
        if head_hash:
            refs = self._ls_remote_sync(url, auth, ("--heads", "--", url), "default branch")
            branches = {}
            for line in refs.splitlines():
                sha, _, ref = line.partition("\t")
                if sha == head_hash and ref.startswith("refs/heads/"):
                    branches[ref.removeprefix("refs/heads/")] = sha
            for preferred in ("main", "master"):
                if preferred in branches:
                    return preferred
            if branches:
                return sorted(branches)[0]

        raise GitError("default branch", "could not determine default branch of remote")

    def _ls_remote_sync(
        self, url: str, auth: GitAuth | None, args: tuple[str, ...], operation: str
    ) -> str:
        if "--" not in args:
            args = (*args, "--", url)
        with self._auth_env(auth) as env:
            return self._run(operation, auth, git.Git().ls_remote, *args, env=env)

    # =========================================================================
    # HELPERS
    # =========================================================================

    async def _retrying(self, fn: Callable[..., Any], *args: Any) -> Any:
        async for attempt in AsyncRetrying(
            retry=retry_if_exception(_is_transient),
            stop=stop_after_attempt(self._settings.retry_attempts),
            wait=self._retry_wait,
            before_sleep=_log_retry,
            reraise=True,
        ):
            with attempt:
                result = await asyncio.to_thread(fn, *args)
        return result

    def _open(self, directory: Path, operation: str) -> git.Repo:
        try:
            return git.Repo(directory)
        except (InvalidGitRepositoryError, NoSuchPathError) as e:
            raise GitError(operation, f"not a git checkout: {directory}") from e

    def _run(self, operation: str, auth: GitAuth | None, command: Callable[..., str], *args: str, **kwargs: Any) -> str:
        try:
            return command(*args, kill_after_timeout=self._settings.timeout_seconds, **kwargs)
        except GitCommandError as e:
            raise self._classify(operation, e, auth) from None

    def _classify(self, operation: str, err: GitCommandError, auth: GitAuth | None) -> GitError:
        secrets: list[str] = []
        if isinstance(auth, HTTPAuth):
            secrets = [auth.password.get_secret_value(), basic_auth_header(auth)]
        stderr = err.stderr if isinstance(err.stderr, str) else str(err.stderr or "")
        message = mask_secrets(stderr.strip() or str(err), *secrets)
        for prefix in ("stderr: ", "'"):
            message = message.removeprefix(prefix)
        message = message.rstrip("'").strip()
        text = message.lower()

        log = logger.bind(operation=operation, status=err.status)
        if any(marker in text for marker in AUTH_FAILURE_MARKERS):
            log.warning("Git authentication failed", error=message)
            return GitAuthenticationError(operation, message)
        transient = any(marker in text for marker in TRANSIENT_MARKERS)
        log.error("Git command failed", error=message, transient=transient)
        return GitError(operation, message, transient=transient)

    @contextmanager
    def _auth_env(self, auth: GitAuth | None) -> Iterator[dict[str, str]]:
        """Environment for one git process carrying auth, plus the key file for SSH."""
        config = [("credential.helper", "")]
        env = {"GIT_TERMINAL_PROMPT": "0", "GCM_INTERACTIVE": "never"}
        key_path: str | None = None

        if isinstance(auth, HTTPAuth):
            config.append(("http.extraHeader", basic_auth_header(auth)))
        elif isinstance(auth, SSHAuth):
            key_path = self._write_key(auth)
            env["GIT_SSH_COMMAND"] = " ".join(
                [
                    "ssh",
                    "-i",
                    shlex.quote(key_path),
                    "-o",
                    "IdentitiesOnly=yes",
                    "-o",
                    "BatchMode=yes",
                    "-o",
                    "StrictHostKeyChecking=accept-new",
                    "-o",
                    shlex.quote(f"User={auth.user or 'git'}"),
                ]
            )

        env["GIT_CONFIG_COUNT"] = str(len(config))
        for i, (key, value) in enumerate(config):
            env[f"GIT_CONFIG_KEY_{i}"] = key
            env[f"GIT_CONFIG_VALUE_{i}"] = value

        try:
            yield env
        finally:
            if key_path is not None:
                Path(key_path).unlink(missing_ok=True)

    def _write_key(self, auth: SSHAuth) -> str:
        key = auth.private_key.get_secret_value()
        if not key.strip():
            raise GitAuthenticationError("ssh", "SSH private key is empty")
        if self._tmp_dir is not None:
            self._tmp_dir.mkdir(parents=True, exist_ok=True)
        fd, path = tempfile.mkstemp(prefix="ssh-key-", dir=self._tmp_dir)
        try:
            os.fchmod(fd, 0o600)
            os.write(fd, key.rstrip("\n").encode() + b"\n")
        finally:
            os.close(fd)
        return path
