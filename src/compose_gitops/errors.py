# ABOUTME: Exception taxonomy for the compose-gitops reconciler
# ABOUTME: Validation, not-found, Git, process, decryption and state-machine errors

"""
Exception taxonomy shared by every service in the reconciler.

=============================================================================
HOW ERRORS FLOW
=============================================================================

    GitSynchronizer / ComposeExecutor
        raise GitError / ProcessError with context attached
                |
                v
    DeploymentOrchestrator
        turns a failed deploy into a FAILED Deployment record, then re-raises
                |
                v
    Watcher
        catches per project, logs, marks the project as errored, moves on

All exceptions derive from GitOpsError so callers at the outer boundary
(web handlers, CLI) can catch one type and use format_error_for_user().
"""

from __future__ import annotations


class GitOpsError(Exception):
    """Base class for all reconciler errors."""


class ValidationError(GitOpsError):
    """Bad input detected before any external call was made."""


class NotFoundError(GitOpsError):
    """Unknown project or deployment id."""

    def __init__(self, kind: str, identifier: object) -> None:
        self.kind = kind
        self.identifier = identifier
        super().__init__(f"{kind} not found: {identifier}")


class GitError(GitOpsError):
    """
    Clone, pull, fetch or remote listing failed.

    transient=True marks network-type failures that are safe to retry.
    Authentication failures are never transient.
    """

    def __init__(self, operation: str, message: str, *, transient: bool = False) -> None:
        self.operation = operation
        self.message = message
        self.transient = transient
        super().__init__(f"git {operation} failed: {message}")


class GitAuthenticationError(GitError):
    """Credentials were rejected, missing, or could not be decrypted."""

    def __init__(self, operation: str, message: str) -> None:
        super().__init__(operation, message, transient=False)


class ProcessError(GitOpsError):
    """The compose tool exited non-zero. Carries the captured output."""

    def __init__(
        self,
        command: list[str],
        returncode: int,
        stdout: str = "",
        stderr: str = "",
    ) -> None:
        self.command = command
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr
        super().__init__(str(self))

    def __str__(self) -> str:
        verb = next((arg for arg in self.command if arg in _COMPOSE_VERBS), "command")
        base = f"compose {verb} exited with code {self.returncode}"
        tail = self.stderr.strip().splitlines()[-1:] if self.stderr.strip() else []
        if tail:
            base += f": {tail[0]}"
        return base


class DecryptionError(GitOpsError):
    """Stored credentials could not be decrypted (e.g. the key was rotated away)."""


class DeploymentStateError(GitOpsError):
    """An illegal transition was attempted on a Deployment."""


_COMPOSE_VERBS = frozenset({"up", "down", "logs", "config", "pull", "build", "ps"})


def format_error_for_user(err: BaseException | None) -> str:
    """
    Convert an error into a short user-facing message.

    Only meant for the outermost layer (handlers, CLI). Services keep raising
    the detailed exception.
    """
    if err is None:
        return ""

    if isinstance(err, NotFoundError):
        return f"{err.kind} not found"
    if isinstance(err, ValidationError):
        return str(err)
    if isinstance(err, DecryptionError):
        return "stored git credentials could not be decrypted - please re-enter them"

    text = str(err).lower()

    # More specific git failures first
    if "permission denied (publickey)" in text:
        return "ssh key authentication failed - please check your private key"
    if "host key verification failed" in text:
        return "ssh host key verification failed - please check your SSH configuration"
    if isinstance(err, GitAuthenticationError) or "authentication failed" in text:
        return "git authentication failed - please check your credentials"
    if "could not read username" in text or "could not read password" in text:
        return "git authentication required - please provide valid credentials"
    if "terminal prompts disabled" in text:
        return "git authentication required - repository needs credentials to access"
    if "repository not found" in text or ("not found" in text and "git" in text):
        return "git repository not found - please check the URL and your access permissions"
    if "already exists" in text:
        return "a project with this name already exists"
    if "timed out" in text or "timeout" in text:
        return "operation timed out"
    if "permission denied" in text:
        return "permission denied"
    return "an unexpected error occurred"
