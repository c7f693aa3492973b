"""Async subprocess utilities.

Provides non-blocking subprocess execution for use in async contexts.

This module offers:
    - run_command: Execute a command given as separate arguments (no shell)
    - CommandRunner: The engine's command execution interface, which never
      raises for a non-zero exit and turns timeouts into CommandTimeoutError

Example:
    >>> from worker_engine.utils.async_subprocess import CommandRunner
    >>> runner = CommandRunner(cwd="/repo", timeout=60)
    >>> result = await runner.run(["git", "status", "--porcelain"])
    >>> if result.ok:
    ...     print(result.stdout)

Thread Safety:
    Each call creates an independent subprocess with no shared state, so
    concurrent calls from multiple async tasks are safe.
"""

from __future__ import annotations

import asyncio
import shlex
import subprocess
import time
from dataclasses import dataclass
from pathlib import Path

import structlog

from worker_engine.exceptions import CommandTimeoutError
from worker_engine.utils.commands import CommandSanitizer

log = structlog.get_logger(__name__)

COMMAND_NOT_FOUND_EXIT_CODE = 127


async def run_command(
    *args: str,
    cwd: Path | str | None = None,
    check: bool = True,
    timeout: float | None = None,
) -> tuple[str, str, int]:
    """Run a command asynchronously without shell interpolation.

    Args:
        *args: Command and arguments as separate strings
        cwd: Working directory for command execution
        check: If True, raise CalledProcessError on a non-zero exit code
        timeout: Maximum seconds to wait. The process is killed if exceeded.

    Returns:
        Tuple of (stdout, stderr, return_code)

    Raises:
        subprocess.CalledProcessError: If check=True and the command fails
        TimeoutError: If timeout is exceeded (after the process is killed)
        FileNotFoundError: If the executable is not found
    """
    process = await asyncio.create_subprocess_exec(
        *args,
        cwd=cwd,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )

    try:
        stdout_bytes, stderr_bytes = await asyncio.wait_for(process.communicate(), timeout=timeout)
    except TimeoutError:
        process.kill()
        await process.wait()
        raise

    stdout = (stdout_bytes or b"").decode("utf-8", errors="replace")
    stderr = (stderr_bytes or b"").decode("utf-8", errors="replace")

    if check and process.returncode != 0:
        raise subprocess.CalledProcessError(process.returncode or 1, args, stdout, stderr)

    return stdout, stderr, process.returncode or 0


@dataclass(frozen=True)
class CommandResult:
    """Captured outcome of one process run."""

    argv: tuple[str, ...]
    stdout: str
    stderr: str
    exit_code: int
    duration_ms: int = 0

    @property
    def ok(self) -> bool:
        return self.exit_code == 0

    @property
    def output(self) -> str:
        """stdout and stderr combined, for parsing diagnostics."""
        if self.stdout and self.stderr:
            return f"{self.stdout}\n{self.stderr}"
        return self.stdout or self.stderr


class CommandRunner:
    """Run external processes from an argument vector.

    Args:
        cwd: Default working directory
        timeout: Default timeout in seconds
        sanitizer: Validator for configured command strings
    """

    def __init__(
        self,
        cwd: Path | str | None = None,
        timeout: float | None = 300.0,
        sanitizer: CommandSanitizer | None = None,
    ) -> None:
        self.cwd = cwd
        self.timeout = timeout
        self.sanitizer = sanitizer or CommandSanitizer()

    async def run(
        self,
        argv: list[str],
        *,
        cwd: Path | str | None = None,
        timeout: float | None = None,
    ) -> CommandResult:
        """Run ``argv`` and capture its output.

        A non-zero exit is reported in the result, not raised. A missing
        executable is reported as exit code 127.

        Raises:
            CommandTimeoutError: If the process exceeds its timeout
        """
        effective_timeout = timeout if timeout is not None else self.timeout
        display = shlex.join(argv)
        started = time.monotonic()

        try:
            stdout, stderr, code = await run_command(
                *argv,
                cwd=cwd if cwd is not None else self.cwd,
                check=False,
                timeout=effective_timeout,
            )
        except TimeoutError as e:
            log.warning("command_timeout", command=display, timeout=effective_timeout)
            raise CommandTimeoutError(display, effective_timeout or 0) from e
        except FileNotFoundError as e:
            log.warning("command_not_found", command=display)
            return CommandResult(
                argv=tuple(argv),
                stdout="",
                stderr=f"{argv[0]}: command not found ({e})",
                exit_code=COMMAND_NOT_FOUND_EXIT_CODE,
                duration_ms=int((time.monotonic() - started) * 1000),
            )

        duration_ms = int((time.monotonic() - started) * 1000)
        log.debug("command_finished", command=display, exit_code=code, duration_ms=duration_ms)
        return CommandResult(
            argv=tuple(argv), stdout=stdout, stderr=stderr, exit_code=code, duration_ms=duration_ms
        )

    async def run_configured(
        self,
        command: str,
        *,
        cwd: Path | str | None = None,
        timeout: float | None = None,
    ) -> CommandResult:
        """Validate a configured command string, then run it.

        Raises:
            CommandNotAllowedError: If the command fails validation
            CommandTimeoutError: If the process exceeds its timeout
        """
        argv = self.sanitizer.parse(command)
        return await self.run(argv, cwd=cwd, timeout=timeout)
