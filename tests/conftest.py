"""Pytest configuration and shared fixtures."""

from collections.abc import Callable
from pathlib import Path
from unittest.mock import AsyncMock

import pytest

from worker_engine.config.settings import WorkerSettings
from worker_engine.engine.checkpointing import CheckpointStore
from worker_engine.git.client import GitClient
from worker_engine.models.domain import RelatedFile, WorkOrder, WorkOrderContext
from worker_engine.utils.async_subprocess import CommandResult, CommandRunner

# A scripted outcome: (exit_code, output) or an exception to raise.
Outcome = tuple[int, str] | BaseException


class ScriptedRunner(CommandRunner):
    """CommandRunner that replays scripted outcomes instead of spawning processes.

    Outcomes are keyed by the space-joined argument vector. Each call consumes
    the next outcome; the last one repeats. Unscripted commands succeed.
    """

    def __init__(self, scripts: dict[str, list[Outcome]] | None = None) -> None:
        super().__init__()
        self.scripts = {key: list(value) for key, value in (scripts or {}).items()}
        self.calls: list[str] = []

    def count(self, command: str) -> int:
        return self.calls.count(command)

    async def run(self, argv, *, cwd=None, timeout=None) -> CommandResult:
        key = " ".join(argv)
        self.calls.append(key)

        queue = self.scripts.get(key)
        outcome: Outcome = (0, "")
        if queue:
            outcome = queue.pop(0) if len(queue) > 1 else queue[0]

        if isinstance(outcome, BaseException):
            raise outcome
        exit_code, output = outcome
        return CommandResult(argv=tuple(argv), stdout=output, stderr="", exit_code=exit_code)


@pytest.fixture
def project_root(tmp_path: Path) -> Path:
    """Temporary project root."""
    root = tmp_path / "project"
    root.mkdir()
    return root


@pytest.fixture
def settings(project_root: Path) -> WorkerSettings:
    """Settings rooted at the temporary project, with fast retries."""
    return WorkerSettings(
        project={"root": str(project_root)},
        commands={
            "test": "pytest -q",
            "lint": "ruff check .",
            "lint_fix": "ruff check . --fix",
            "build": "python -m compileall -q .",
        },
        retry={"max_attempts": 3, "base_delay_ms": 5000, "backoff": "exponential", "max_delay_ms": 60000},
    )


@pytest.fixture
def checkpoint_store(settings: WorkerSettings) -> CheckpointStore:
    """CheckpointStore writing into the temporary project."""
    return CheckpointStore(settings.checkpoint_dir)


@pytest.fixture
def make_runner() -> Callable[..., ScriptedRunner]:
    """Factory for scripted command runners."""

    def factory(scripts: dict[str, list[Outcome]] | None = None) -> ScriptedRunner:
        return ScriptedRunner(scripts)

    return factory


@pytest.fixture
def mock_git() -> AsyncMock:
    """GitClient mock for a checkout on ``main`` with changes to commit.

    Creating or checking out a branch makes it exist and be current.
    """
    git = AsyncMock(spec=GitClient)

    async def switch_to(name: str) -> None:
        git.branch_exists.return_value = True
        git.current_branch.return_value = name

    git.list_branches = AsyncMock(return_value=[])
    git.branch_exists = AsyncMock(return_value=False)
    git.create_branch = AsyncMock(side_effect=switch_to)
    git.checkout = AsyncMock(side_effect=switch_to)
    git.stage_all = AsyncMock()
    git.status_porcelain = AsyncMock(return_value=" M src/app.py\n")
    git.commit = AsyncMock()
    git.head_hash = AsyncMock(return_value="abc123def456")
    git.current_branch = AsyncMock(return_value="main")
    return git


@pytest.fixture
def sleep_calls() -> list[float]:
    return []


@pytest.fixture
def fake_sleep(sleep_calls: list[float]) -> Callable[[float], object]:
    """Sleep replacement that records requested delays."""

    async def sleep(seconds: float) -> None:
        sleep_calls.append(seconds)

    return sleep


@pytest.fixture
def work_order() -> WorkOrder:
    """Sample work order."""
    return WorkOrder(
        order_id="WO-42",
        issue_id="ISS-42-add-retry",
        issue_url="https://github.com/example/project/issues/42",
        context=WorkOrderContext(
            sds_component="retry",
            related_files=[RelatedFile(path="src/app.py", reason="entry point")],
        ),
        acceptance_criteria=["Failed requests are retried"],
    )
