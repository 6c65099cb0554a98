# ABOUTME: Unit tests for the exception taxonomy
# ABOUTME: Tests error messages, ProcessError formatting and user-facing error text

import pytest

from compose_gitops.errors import (
    DecryptionError,
    GitAuthenticationError,
    GitError,
    GitOpsError,
    NotFoundError,
    ProcessError,
    ValidationError,
    format_error_for_user,
)


@pytest.mark.unit
class TestErrorTypes:
    """Tests for exception construction."""

    def test_all_errors_share_base(self):
        """Test that every error derives from GitOpsError."""
        for err in (
            ValidationError("x"),
            NotFoundError("project", "abc"),
            GitError("fetch", "boom"),
            GitAuthenticationError("clone", "denied"),
            ProcessError(["docker", "compose", "up"], 1),
            DecryptionError("bad"),
        ):
            assert isinstance(err, GitOpsError)

    def test_not_found_message(self):
        """Test NotFoundError keeps kind and identifier."""
        err = NotFoundError("project", "1234")

        assert err.kind == "project"
        assert err.identifier == "1234"
        assert str(err) == "project not found: 1234"

    def test_git_error_message(self):
        """Test GitError message includes the operation."""
        err = GitError("fetch", "could not resolve host", transient=True)

        assert str(err) == "git fetch failed: could not resolve host"
        assert err.transient is True

    def test_authentication_error_is_never_transient(self):
        """Test that authentication failures are not retryable."""
        err = GitAuthenticationError("clone", "Authentication failed")

        assert isinstance(err, GitError)
        assert err.transient is False


@pytest.mark.unit
class TestProcessError:
    """Tests for ProcessError formatting."""

    def test_message_names_compose_verb(self):
        """Test the message names the compose subcommand and exit code."""
        err = ProcessError(["docker", "compose", "--project-name", "blog", "up", "--detach"], 2)

        assert str(err) == "compose up exited with code 2"

    def test_message_includes_last_stderr_line(self):
        """Test the last stderr line is appended."""
        err = ProcessError(
            ["docker", "compose", "down"],
            1,
            stderr="first line\nno such service: web\n",
        )

        assert str(err) == "compose down exited with code 1: no such service: web"

    def test_keeps_output(self):
        """Test stdout and stderr are kept on the exception."""
        err = ProcessError(["docker", "compose", "up"], 1, stdout="out", stderr="err")

        assert err.stdout == "out"
        assert err.stderr == "err"
        assert err.returncode == 1

    def test_unknown_verb(self):
        """Test a command without a compose verb."""
        err = ProcessError(["true"], 3)

        assert str(err) == "compose command exited with code 3"


@pytest.mark.unit
class TestFormatErrorForUser:
    """Tests for format_error_for_user."""

    def test_none(self):
        """Test that None formats to an empty string."""
        assert format_error_for_user(None) == ""

    def test_not_found(self):
        """Test not-found errors hide the identifier."""
        assert format_error_for_user(NotFoundError("project", "abc")) == "project not found"

    def test_validation_passes_through(self):
        """Test validation messages are shown as-is."""
        assert format_error_for_user(ValidationError("name is required")) == "name is required"

    def test_decryption(self):
        """Test decryption failures ask for credentials again."""
        message = format_error_for_user(DecryptionError("invalid token"))
        assert "re-enter" in message

    @pytest.mark.parametrize(
        ("text", "expected"),
        [
            ("Permission denied (publickey).", "ssh key authentication failed"),
            ("Host key verification failed.", "ssh host key verification failed"),
            ("fatal: Authentication failed for 'https://x'", "git authentication failed"),
            ("could not read Username for 'https://x'", "git authentication required"),
            ("terminal prompts disabled", "git authentication required"),
            ("remote: Repository not found.", "git repository not found"),
            ("operation timed out", "operation timed out"),
            ("permission denied", "permission denied"),
            ("something else entirely", "an unexpected error occurred"),
        ],
    )
    def test_git_messages(self, text: str, expected: str):
        """Test git stderr is mapped to friendly messages."""
        assert format_error_for_user(GitError("clone", text)).startswith(expected)

    def test_authentication_error_type(self):
        """Test GitAuthenticationError maps to the auth message regardless of text."""
        err = GitAuthenticationError("fetch", "stored credentials could not be decrypted")
        assert format_error_for_user(err) == "git authentication failed - please check your credentials"
