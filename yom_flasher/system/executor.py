"""Execution of located system tools in an already-elevated context.

This module handles:
- Running a cached command with asyncio subprocesses (never via a shell)
- Capturing stdout and stderr in full, since parted and sgdisk report
  recoverable problems only as stderr text, even on exit code 0
- Classifying failures (spawn, non-zero exit, permission, timeout)
- Streaming stderr line by line for long-running tools such as dd

Credentials are never requested here: the process is expected to be
running with the privileges the tools need.
"""

from __future__ import annotations

import asyncio
import logging
import re
import shlex
from collections import deque
from collections.abc import AsyncIterator, Sequence
from dataclasses import dataclass

from yom_flasher.errors import (
    COMMAND_FAILED,
    COMMAND_SPAWN_FAILED,
    COMMAND_TIMEOUT,
    PRIVILEGE_DENIED,
    FlasherError,
)
from yom_flasher.system.commands import CommandPathCache

logger = logging.getLogger(__name__)

# Exit status shells and exec wrappers use for "found but not executable"
_EXIT_NOT_EXECUTABLE = 126

_PRIVILEGE_PATTERNS = re.compile(
    r"permission denied|operation not permitted|must be root|"
    r"not authorized|requires root|are you root",
    re.IGNORECASE,
)

# stderr lines kept for error reports while streaming
_STDERR_TAIL_LINES = 20

_SEGMENT_SPLIT = re.compile(r"[\r\n]")


@dataclass(frozen=True)
class CommandResult:
    """Captured outcome of a finished command.

    Attributes:
        argv: The full argument vector that was executed.
        stdout: Decoded standard output.
        stderr: Decoded standard error.
        exit_code: Process exit status.
    """

    argv: tuple[str, ...]
    stdout: str
    stderr: str
    exit_code: int

    @property
    def ok(self) -> bool:
        return self.exit_code == 0

    @property
    def command_line(self) -> str:
        return shlex.join(self.argv)

    def raise_for_status(self) -> CommandResult:
        """Raise the matching error if the command exited non-zero.

        Returns:
            self, for chaining.

        Raises:
            PrivilegeDeniedError: The tool reported a permission failure.
            CommandFailedError: Any other non-zero exit.
        """
        if self.exit_code == 0:
            return self
        if is_privilege_failure(self.exit_code, self.stderr):
            raise PrivilegeDeniedError(self)
        raise CommandFailedError(self)


class CommandExecutionError(FlasherError):
    """Base exception for command execution errors."""


class CommandFailedError(CommandExecutionError):
    """Command exited with a non-zero status."""

    def __init__(self, result: CommandResult, error_code: str = COMMAND_FAILED) -> None:
        stderr = result.stderr.strip() or "N/A"
        super().__init__(
            f"Command '{result.command_line}' failed with exit code "
            f"{result.exit_code}. Stderr: {stderr}",
            error_code=error_code,
        )
        self.result = result
        self.exit_code = result.exit_code
        self.stderr = result.stderr


class PrivilegeDeniedError(CommandFailedError):
    """Command failed because the process lacks the needed privileges."""

    def __init__(self, result: CommandResult) -> None:
        super().__init__(result, error_code=PRIVILEGE_DENIED)
        self.message = (
            f"Insufficient privileges to run '{result.command_line}'. "
            f"Run the flasher (or its helper) as root. "
            f"Stderr: {result.stderr.strip() or 'N/A'}"
        )
        self.args = (self.message,)


class CommandSpawnError(CommandExecutionError):
    """Command could not be started at all."""

    def __init__(self, argv: Sequence[str], reason: str) -> None:
        super().__init__(
            f"Failed to start '{shlex.join(argv)}': {reason}",
            error_code=COMMAND_SPAWN_FAILED,
        )
        self.argv = tuple(argv)
        self.stderr = ""


class CommandTimeoutError(CommandExecutionError):
    """Command did not finish within its timeout and was killed."""

    def __init__(self, argv: Sequence[str], timeout: float) -> None:
        super().__init__(
            f"Command '{shlex.join(argv)}' timed out after {timeout:g} seconds",
            error_code=COMMAND_TIMEOUT,
        )
        self.argv = tuple(argv)
        self.timeout = timeout


def is_privilege_failure(exit_code: int, stderr: str) -> bool:
    """Check whether a failed command looks like a permission problem."""
    if exit_code == 0:
        return False
    return exit_code == _EXIT_NOT_EXECUTABLE or bool(_PRIVILEGE_PATTERNS.search(stderr))


def _decode(data: bytes | None) -> str:
    return data.decode("utf-8", errors="replace") if data else ""


async def _terminate(process: asyncio.subprocess.Process) -> None:
    """Kill a child process and reap it."""
    if process.returncode is not None:
        return
    try:
        process.kill()
    except ProcessLookupError:
        pass
    await process.wait()


class PrivilegedExecutor:
    """Runs located commands and captures their output.

    Args:
        commands: Cache of located command paths.
        default_timeout: Timeout applied to run() when none is given.
    """

    def __init__(
        self, commands: CommandPathCache, default_timeout: float | None = None
    ) -> None:
        self.commands = commands
        self.default_timeout = default_timeout

    def build_argv(self, name: str, args: Sequence[str]) -> list[str]:
        """Resolve a command name to a full argument vector.

        Raises:
            CommandNotFoundError: The command is not in the cache.
        """
        return [self.commands.require(name), *args]

    async def _spawn(
        self, argv: Sequence[str], *, stdout: int
    ) -> asyncio.subprocess.Process:
        try:
            return await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=stdout,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            logger.error("Failed to start %s: %s", argv[0], e)
            raise CommandSpawnError(argv, str(e)) from e

    async def run(
        self,
        name: str,
        args: Sequence[str] = (),
        *,
        check: bool = True,
        timeout: float | None = None,
    ) -> CommandResult:
        """Run a command to completion.

        Args:
            name: Logical command name (must be in the cache).
            args: Arguments passed after the command path.
            check: Raise on a non-zero exit status.
            timeout: Seconds before the process is killed.

        Returns:
            CommandResult with both streams and the exit status.

        Raises:
            CommandNotFoundError: Command not located.
            CommandSpawnError: Process could not be started.
            CommandTimeoutError: Process exceeded the timeout.
            CommandFailedError: Non-zero exit and check=True.
        """
        argv = self.build_argv(name, args)
        timeout = timeout if timeout is not None else self.default_timeout
        logger.debug("Executing: %s", shlex.join(argv))

        process = await self._spawn(argv, stdout=asyncio.subprocess.PIPE)
        try:
            stdout, stderr = await asyncio.wait_for(
                process.communicate(), timeout=timeout
            )
        except asyncio.TimeoutError:
            logger.error("Command timed out after %ss: %s", timeout, shlex.join(argv))
            await _terminate(process)
            raise CommandTimeoutError(argv, timeout or 0) from None
        except asyncio.CancelledError:
            await _terminate(process)
            raise

        result = CommandResult(
            argv=tuple(argv),
            stdout=_decode(stdout),
            stderr=_decode(stderr),
            exit_code=process.returncode if process.returncode is not None else -1,
        )

        if result.stderr.strip():
            logger.debug("%s stderr: %s", name, result.stderr.strip())
        if not result.ok:
            logger.warning("%s exited with code %d", name, result.exit_code)
        if check:
            result.raise_for_status()
        return result

    async def stream_stderr(
        self, name: str, args: Sequence[str] = ()
    ) -> AsyncIterator[str]:
        """Run a command and yield its stderr as it is produced.

        Output is split on both carriage returns and newlines, since
        progress-reporting tools rewrite the same terminal line with '\\r'.
        Empty segments are skipped. If the consumer stops iterating early
        (or is cancelled), the child process is killed.

        Raises:
            CommandNotFoundError: Command not located.
            CommandSpawnError: Process could not be started.
            CommandFailedError: Non-zero exit, raised after the last segment.
        """
        argv = self.build_argv(name, args)
        logger.debug("Streaming: %s", shlex.join(argv))

        process = await self._spawn(argv, stdout=asyncio.subprocess.DEVNULL)
        if process.stderr is None:
            await _terminate(process)
            raise CommandSpawnError(argv, "stderr pipe not available")

        tail: deque[str] = deque(maxlen=_STDERR_TAIL_LINES)
        buffer = ""
        try:
            while True:
                chunk = await process.stderr.read(4096)
                if not chunk:
                    break
                buffer += _decode(chunk)
                *segments, buffer = _SEGMENT_SPLIT.split(buffer)
                for segment in segments:
                    segment = segment.strip()
                    if segment:
                        tail.append(segment)
                        yield segment

            if buffer.strip():
                tail.append(buffer.strip())
                yield buffer.strip()

            exit_code = await process.wait()
        finally:
            await _terminate(process)

        if exit_code != 0:
            CommandResult(
                argv=tuple(argv),
                stdout="",
                stderr="\n".join(tail),
                exit_code=exit_code,
            ).raise_for_status()


__all__ = [
    "CommandExecutionError",
    "CommandFailedError",
    "CommandResult",
    "CommandSpawnError",
    "CommandTimeoutError",
    "PrivilegeDeniedError",
    "PrivilegedExecutor",
    "is_privilege_failure",
]
