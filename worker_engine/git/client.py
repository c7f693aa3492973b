"""Git operations for the working checkout.

Every operation is a single ``git`` invocation built as an argument vector,
so branch names and commit messages are never interpreted by a shell.
"""

from __future__ import annotations

from pathlib import Path

import structlog

from worker_engine.exceptions import GitOperationError
from worker_engine.utils.async_subprocess import CommandResult, CommandRunner

log = structlog.get_logger(__name__)


class GitClient:
    """Thin async wrapper over the git CLI for one repository."""

    def __init__(self, runner: CommandRunner, repo_path: Path | str, timeout: float | None = 60.0) -> None:
        self.runner = runner
        self.repo_path = Path(repo_path)
        self.timeout = timeout

    async def _git(self, *args: str) -> CommandResult:
        result = await self.runner.run(["git", *args], cwd=self.repo_path, timeout=self.timeout)
        if not result.ok:
            raise GitOperationError(" ".join(args), result.stderr, result.exit_code)
        return result

    async def list_branches(self, pattern: str | None = None) -> list[str]:
        """Local branch names, optionally filtered by a git pattern."""
        args = ["branch", "--list", "--format=%(refname:short)"]
        if pattern:
            args.append(pattern)
        result = await self._git(*args)
        return [line.strip() for line in result.stdout.splitlines() if line.strip()]

    async def branch_exists(self, name: str) -> bool:
        return name in await self.list_branches(name)

    async def create_branch(self, name: str) -> None:
        """Create ``name`` from the current HEAD and switch to it."""
        await self._git("checkout", "-b", name)
        log.info("branch_created", branch=name)

    async def checkout(self, name: str) -> None:
        await self._git("checkout", name)
        log.info("branch_checked_out", branch=name)

    async def stage_all(self) -> None:
        await self._git("add", "-A")

    async def status_porcelain(self) -> str:
        result = await self._git("status", "--porcelain")
        return result.stdout

    async def commit(self, message: str) -> None:
        await self._git("commit", "-m", message)

    async def head_hash(self) -> str:
        result = await self._git("rev-parse", "HEAD")
        return result.stdout.strip()

    async def current_branch(self) -> str:
        """Name of the checked-out branch, or ``"unknown"`` if git fails."""
        try:
            result = await self._git("rev-parse", "--abbrev-ref", "HEAD")
        except GitOperationError as e:
            log.warning("current_branch_unavailable", error=e.message)
            return "unknown"
        return result.stdout.strip() or "unknown"
