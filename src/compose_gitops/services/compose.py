# ABOUTME: Docker Compose subprocess execution in blocking, streaming and piping modes
# ABOUTME: Builds compose argv, parses 'ps' JSON into a project status, extracts log messages

"""
Compose tool execution.

=============================================================================
COMMAND SHAPE
=============================================================================

Every invocation is an argv array, never a shell string:

    docker compose --progress plain --project-name <name>
        --file /abs/git/docker-compose.yml [--file ...] [--file -]
        <command> <args...>

Compose files are absolute paths under the project's git directory and the
child gets no cwd, so the compose tool never resolves bind mounts against
the reconciler's own working directory. An override document, when the
project has one, is passed as the trailing ``--file -`` and written to the
child's stdin.

The environment is the host environment plus NO_COLOR=1 plus the project
variables, later entries winning. Variables never touch disk.

=============================================================================
EXECUTION MODES
=============================================================================

BLOCKING   run_blocking()   wait, return stdout and stderr in a CommandResult
STREAMING  run_streaming()  forward each line to an OutputStream while running
PIPING     run_piping()     child writes straight to our stdout / stderr

A non-zero exit raises ProcessError in every mode.

=============================================================================
CANCELLATION
=============================================================================

Each child runs in its own session, i.e. its own process group. When the
awaiting task is cancelled the whole group receives SIGTERM, then SIGKILL if
it is still alive after the grace period, and the CancelledError propagates.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import os
import re
import signal
from dataclasses import dataclass, field
from enum import StrEnum
from pathlib import Path
from typing import TYPE_CHECKING, Any, TypeVar

import structlog
from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from compose_gitops.config import ComposeSettings
from compose_gitops.errors import ProcessError
from compose_gitops.services.streaming import MessageType, OutputStream

if TYPE_CHECKING:
    from collections.abc import Awaitable, Mapping, Sequence

    from compose_gitops.domain import Project

logger = structlog.get_logger(__name__)

T = TypeVar("T")

# Max bytes for a single output line before readline() gives up
LINE_LIMIT = 1024 * 1024


# =============================================================================
# STATUS MODEL
# =============================================================================


class ComposeProjectStatus(StrEnum):
    RUNNING = "running"
    STOPPED = "stopped"
    FAILED = "failed"
    UNKNOWN = "unknown"


class ContainerInfo(BaseModel):
    """One container as reported by ``compose ps --format json``."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    service: str = Field(default="", alias="Service")
    name: str = Field(default="", alias="Name")
    state: str = Field(default="", alias="State")
    status: str = Field(default="", alias="Status")
    running_for: str = Field(default="", alias="RunningFor")
    exit_code: int = Field(default=0, alias="ExitCode")


@dataclass
class ComposeStatus:
    status: ComposeProjectStatus
    containers: list[ContainerInfo] = field(default_factory=list)
    uptime: str = ""


@dataclass
class CommandResult:
    command: list[str]
    returncode: int
    stdout: str = ""
    stderr: str = ""

    @property
    def output(self) -> str:
        """stdout and stderr as one string."""
        if self.stdout and self.stderr:
            return f"{self.stdout.rstrip()}\n{self.stderr}"
        return self.stdout or self.stderr


# =============================================================================
# PARSING
# =============================================================================

_MSG_RE = re.compile(r'msg="((?:[^"\\]|\\.)*)"\s*(?:\s|$)')
_ESCAPE_RE = re.compile(r"\\(.)")
_ESCAPES = {'"': '"', "\\": "\\", "n": "\n", "t": "\t"}


def parse_compose_log_line(line: str) -> str:
    """
    Extract the message of a compose structured log line.

    ``time="..." level=warning msg="image \\"x\\" not found"`` becomes
    ``image "x" not found``. Lines without a msg field come back unchanged.
    """
    match = _MSG_RE.search(line)
    if not match:
        return line
    return _ESCAPE_RE.sub(lambda m: _ESCAPES.get(m.group(1), m.group(0)), match.group(1))


def parse_ps_output(stdout: str, project_name: str = "") -> list[ContainerInfo]:
    """Parse one JSON object per line, or a single JSON array. Bad lines are skipped."""
    text = stdout.strip()
    if not text:
        return []

    if text.startswith("["):
        try:
            items: list[Any] = json.loads(text)
        except json.JSONDecodeError as e:
            logger.error("Failed to parse container list", project=project_name, error=str(e))
            return []
    else:
        items = []
        for line in text.splitlines():
            if not line.strip():
                continue
            try:
                items.append(json.loads(line))
            except json.JSONDecodeError as e:
                logger.error(
                    "Failed to parse container JSON", project=project_name, line=line, error=str(e)
                )

    containers = []
    for item in items:
        try:
            containers.append(ContainerInfo.model_validate(item))
        except PydanticValidationError as e:
            logger.error("Unexpected container entry", project=project_name, error=str(e))
    return containers


def reduce_status(containers: Sequence[ContainerInfo]) -> ComposeStatus:
    """
    Collapse container states into one project status.

    Containers that exited with code 0 (init / one-shot jobs) are ignored.

        no containers                     -> STOPPED
        containers, none relevant         -> UNKNOWN
        all relevant running              -> RUNNING
        some relevant running             -> FAILED
        none running                      -> STOPPED
    """
    status = ComposeProjectStatus.STOPPED
    uptime = ""
    if containers:
        running = 0
        relevant = 0
        for container in containers:
            if container.state == "exited" and container.exit_code == 0:
                continue
            relevant += 1
            if container.state == "running":
                running += 1
                if not uptime:
                    uptime = container.running_for.removesuffix(" ago")

        if relevant == 0:
            status = ComposeProjectStatus.UNKNOWN
        elif running == relevant:
            status = ComposeProjectStatus.RUNNING
        elif running > 0:
            status = ComposeProjectStatus.FAILED

    return ComposeStatus(status=status, containers=list(containers), uptime=uptime)


# =============================================================================
# COMPOSE PROJECT
# =============================================================================


class ComposeProject:
    """Compose operations for one project checkout."""

    def __init__(
        self,
        name: str,
        working_dir: Path,
        compose_files: Sequence[str],
        variables: Mapping[str, str] | None = None,
        override: str | None = None,
        settings: ComposeSettings | None = None,
    ) -> None:
        self.name = name
        self.working_dir = Path(working_dir)
        self.compose_files = list(compose_files)
        self.variables = dict(variables or {})
        self.override = override or None
        self._settings = settings or ComposeSettings()
        self._log = logger.bind(project=name)

    # -------------------------------------------------------------------------
    # COMMAND CONSTRUCTION
    # -------------------------------------------------------------------------

    def command(self, command: str, *args: str) -> list[str]:
        argv = [
            self._settings.binary,
            "compose",
            "--progress",
            "plain",
            "--project-name",
            self.name,
        ]
        for file in self.compose_files:
            argv.extend(["--file", str((self.working_dir / file).absolute())])
        if self.override:
            argv.extend(["--file", "-"])
        argv.append(command)
        argv.extend(args)
        return argv

    def environment(self) -> dict[str, str]:
        return {**os.environ, "NO_COLOR": "1", **self.variables}

    def up_command(self, start_services: bool = True) -> list[str]:
        args = ["--detach", "--quiet-pull", "--quiet-build", "--remove-orphans"]
        if not start_services:
            args.append("--no-start")
        return self.command("up", *args)

    def down_command(self, remove_volumes: bool = False) -> list[str]:
        args = ["--remove-orphans"]
        if remove_volumes:
            args.append("--volumes")
        return self.command("down", *args)

    def logs_command(self, follow: bool = False) -> list[str]:
        return self.command("logs", "--follow") if follow else self.command("logs")

    # -------------------------------------------------------------------------
    # HIGH-LEVEL OPERATIONS
    # -------------------------------------------------------------------------

    async def up(
        self,
        start_services: bool = True,
        *,
        stream: OutputStream | None = None,
        pipe: bool = False,
    ) -> CommandResult:
        return await self._dispatch(self.up_command(start_services), stream, pipe)

    async def down(
        self,
        remove_volumes: bool = False,
        *,
        stream: OutputStream | None = None,
        pipe: bool = False,
    ) -> CommandResult:
        return await self._dispatch(self.down_command(remove_volumes), stream, pipe)

    async def logs(self) -> CommandResult:
        return await self.run_blocking(self.logs_command())

    async def follow_logs(self, stream: OutputStream) -> CommandResult:
        return await self.run_streaming(self.logs_command(follow=True), stream)

    async def pipe_logs(self) -> CommandResult:
        return await self.run_piping(self.logs_command(follow=True))

    async def config(self) -> CommandResult:
        return await self.run_blocking(self.command("config"))

    async def pull(self) -> CommandResult:
        return await self.run_blocking(self.command("pull"))

    async def build(self) -> CommandResult:
        return await self.run_blocking(self.command("build"))

    async def status(self) -> ComposeStatus:
        result = await self.run_blocking(self.command("ps", "--format", "json"))
        return reduce_status(parse_ps_output(result.stdout, self.name))

    async def _dispatch(
        self, cmd: list[str], stream: OutputStream | None, pipe: bool
    ) -> CommandResult:
        if stream is not None:
            return await self.run_streaming(cmd, stream)
        if pipe:
            return await self.run_piping(cmd)
        return await self.run_blocking(cmd)

    # -------------------------------------------------------------------------
    # EXECUTION
    # -------------------------------------------------------------------------

    async def run_blocking(self, cmd: list[str]) -> CommandResult:
        proc = await self._spawn(cmd, stdout=asyncio.subprocess.PIPE, stderr=asyncio.subprocess.PIPE)
        stdout, stderr = await self._supervise(proc, cmd, proc.communicate(self._stdin_bytes()))
        result = CommandResult(
            command=cmd,
            returncode=proc.returncode if proc.returncode is not None else -1,
            stdout=stdout.decode(errors="replace"),
            stderr=stderr.decode(errors="replace"),
        )
        return self._check(result)

    async def run_streaming(self, cmd: list[str], stream: OutputStream) -> CommandResult:
        proc = await self._spawn(cmd, stdout=asyncio.subprocess.PIPE, stderr=asyncio.subprocess.PIPE)
        stdout_lines: list[str] = []
        stderr_lines: list[str] = []

        async def run() -> int:
            await self._feed_stdin(proc)
            assert proc.stdout is not None and proc.stderr is not None
            async with asyncio.TaskGroup() as tg:
                tg.create_task(self._pump(proc.stdout, MessageType.STDOUT, stream, stdout_lines))
                tg.create_task(self._pump(proc.stderr, MessageType.STDERR, stream, stderr_lines))
                waiter = tg.create_task(proc.wait())
            return waiter.result()

        returncode = await self._supervise(proc, cmd, run())
        result = CommandResult(
            command=cmd,
            returncode=returncode,
            stdout="\n".join(stdout_lines),
            stderr="\n".join(stderr_lines),
        )
        return self._check(result)

    async def run_piping(self, cmd: list[str]) -> CommandResult:
        proc = await self._spawn(cmd, stdout=None, stderr=None)

        async def run() -> int:
            await self._feed_stdin(proc)
            return await proc.wait()

        returncode = await self._supervise(proc, cmd, run())
        return self._check(CommandResult(command=cmd, returncode=returncode))

    async def _spawn(self, cmd: list[str], stdout: int | None, stderr: int | None) -> asyncio.subprocess.Process:
        self._log.debug("Executing compose command", argv=cmd, variables=len(self.variables))
        try:
            return await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.PIPE if self.override else asyncio.subprocess.DEVNULL,
                stdout=stdout,
                stderr=stderr,
                env=self.environment(),
                start_new_session=True,
                limit=LINE_LIMIT,
            )
        except OSError as e:
            self._log.error("Failed to start compose command", argv=cmd, error=str(e))
            raise ProcessError(cmd, 127, stderr=str(e)) from e

    def _stdin_bytes(self) -> bytes | None:
        return self.override.encode() if self.override else None

    async def _feed_stdin(self, proc: asyncio.subprocess.Process) -> None:
        if proc.stdin is None:
            return
        data = self._stdin_bytes()
        try:
            if data:
                proc.stdin.write(data)
                await proc.stdin.drain()
        except (BrokenPipeError, ConnectionResetError):
            self._log.debug("Compose exited before reading the override")
        finally:
            proc.stdin.close()

    async def _pump(
        self,
        reader: asyncio.StreamReader,
        kind: MessageType,
        stream: OutputStream,
        sink: list[str],
    ) -> None:
        # Keep draining after the stream is full so the child never blocks on a pipe
        while raw := await _read_line(reader):
            line = raw.decode(errors="replace").rstrip("\r\n")
            sink.append(line)
            content = parse_compose_log_line(line) if kind is MessageType.STDERR else line
            stream.try_send(kind, content)

    async def _supervise(
        self, proc: asyncio.subprocess.Process, cmd: list[str], work: Awaitable[T]
    ) -> T:
        """Await work; on cancellation or any failure the process group is terminated first."""
        try:
            return await work
        except Exception as e:
            await self._terminate(proc)
            cause = e.exceptions[0] if isinstance(e, ExceptionGroup) else e
            self._log.error("Compose command aborted", argv=cmd, error=str(cause))
            raise ProcessError(
                cmd, proc.returncode if proc.returncode is not None else -1, stderr=str(cause)
            ) from e
        except BaseException:
            await self._terminate(proc)
            raise

    async def _terminate(self, proc: asyncio.subprocess.Process) -> None:
        if proc.returncode is not None:
            return
        self._log.info("Terminating compose process group", pid=proc.pid)
        _signal_group(proc.pid, signal.SIGTERM)
        try:
            await asyncio.wait_for(proc.wait(), timeout=self._settings.kill_grace_seconds)
        except TimeoutError:
            self._log.warning("Compose process ignored SIGTERM, killing", pid=proc.pid)
            _signal_group(proc.pid, signal.SIGKILL)
            await proc.wait()

    def _check(self, result: CommandResult) -> CommandResult:
        if result.returncode != 0:
            self._log.error(
                "Compose command failed",
                argv=result.command,
                returncode=result.returncode,
                stderr=result.stderr[-500:],
            )
            raise ProcessError(result.command, result.returncode, result.stdout, result.stderr)
        self._log.debug("Compose command completed", argv=result.command)
        return result


async def _read_line(reader: asyncio.StreamReader) -> bytes:
    """
    Read one line, including its newline. Returns b"" at EOF.

    A line longer than LINE_LIMIT is consumed in full so the pipe keeps
    draining, but only its first LINE_LIMIT bytes are returned.
    """
    kept: list[bytes] = []
    size = 0
    while True:
        try:
            chunk = await reader.readuntil(b"\n")
            done = True
        except asyncio.IncompleteReadError as e:
            chunk = e.partial
            done = True
        except asyncio.LimitOverrunError as e:
            chunk = await reader.readexactly(e.consumed)
            done = False
        if size < LINE_LIMIT:
            kept.append(chunk[: LINE_LIMIT - size])
            size += len(kept[-1])
        if done:
            return b"".join(kept)


def _signal_group(pid: int, sig: signal.Signals) -> None:
    with contextlib.suppress(ProcessLookupError, PermissionError):
        os.killpg(pid, sig)


# =============================================================================
# EXECUTOR
# =============================================================================


class ComposeExecutor:
    """Creates ComposeProject handles for stored projects."""

    def __init__(self, settings: ComposeSettings | None = None) -> None:
        self.settings = settings or ComposeSettings()

    def project(self, project: Project) -> ComposeProject:
        return ComposeProject(
            name=project.compose_project_name,
            working_dir=project.git_dir,
            compose_files=project.compose_files,
            variables=project.environment(),
            override=project.compose_override,
            settings=self.settings,
        )

    def open_stream(self) -> OutputStream:
        """A fresh OutputStream buffering up to compose.stream_buffer messages."""
        return OutputStream(maxsize=self.settings.stream_buffer)
