"""
Domain models for the worker engine.

Persisted artifacts (work orders, results, checkpoints) are immutable
Pydantic models so they round-trip through YAML without custom code.
Working state that only lives in memory during a run uses dataclasses.

Example:
    Loading a work order from a parsed YAML document::

        order = WorkOrder.model_validate(
            {
                "order_id": "WO-42",
                "issue_id": "ISS-42-add-retry",
                "context": {"related_files": [{"path": "src/app.py", "reason": "entry point"}]},
            }
        )
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any, Literal

from pydantic import BaseModel, ConfigDict, Field

from worker_engine.enums import ImplementationStatus, Step

if TYPE_CHECKING:
    from worker_engine.config.settings import WorkerSettings
    from worker_engine.engine.retry import RetryPolicy


def utc_now() -> datetime:
    return datetime.now(UTC)


class _FrozenModel(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")


# =============================================================================
# Work orders
# =============================================================================


class RelatedFile(_FrozenModel):
    """A source file the issue is expected to touch."""

    path: str
    reason: str = ""


class WorkOrderContext(_FrozenModel):
    """Traceability and file hints attached to a work order."""

    sds_component: str | None = None
    srs_feature: str | None = None
    prd_requirement: str | None = None
    related_files: list[RelatedFile] = Field(default_factory=list)
    notes: list[str] = Field(default_factory=list)


class WorkOrder(_FrozenModel):
    """A unit of implementation work. Read-only to the engine."""

    order_id: str
    issue_id: str
    issue_url: str | None = None
    created_at: datetime = Field(default_factory=utc_now)
    priority: int = 0
    context: WorkOrderContext = Field(default_factory=WorkOrderContext)
    acceptance_criteria: list[str] = Field(default_factory=list)

    @property
    def issue_number(self) -> int | None:
        """Issue number parsed from ``issue_url`` (``.../issues/<n>``)."""
        if not self.issue_url:
            return None
        match = re.search(r"/issues/(\d+)", self.issue_url)
        return int(match.group(1)) if match else None


# =============================================================================
# Implementation results
# =============================================================================


class FileChange(_FrozenModel):
    """A file created, modified or deleted while implementing a work order."""

    file_path: str
    change_type: Literal["create", "modify", "delete"]
    description: str = ""
    lines_added: int = 0
    lines_removed: int = 0


class CommitInfo(_FrozenModel):
    hash: str
    message: str


class BranchInfo(_FrozenModel):
    name: str
    commits: list[CommitInfo] = Field(default_factory=list)


class TestsSummary(_FrozenModel):
    """Generated test files and their test counts."""

    __test__ = False

    files_created: list[str] = Field(default_factory=list)
    total_tests: int = 0
    coverage_percentage: float = 0.0


class VerificationResult(_FrozenModel):
    """Pass/fail and output of the test, lint and build checks."""

    tests_passed: bool
    tests_output: str
    lint_passed: bool
    lint_output: str
    build_passed: bool
    build_output: str

    @classmethod
    def skipped(cls) -> VerificationResult:
        return cls(
            tests_passed=True,
            tests_output="Skipped",
            lint_passed=True,
            lint_output="Skipped",
            build_passed=True,
            build_output="Skipped",
        )


class ImplementationResult(_FrozenModel):
    """Outcome of a work order, written once at the end of a run.

    ``blockers`` is only populated for blocked results.
    """

    work_order_id: str
    issue_id: str
    github_issue: int | None = None
    status: ImplementationStatus
    started_at: datetime
    completed_at: datetime
    changes: list[FileChange] = Field(default_factory=list)
    tests: TestsSummary = Field(default_factory=TestsSummary)
    verification: VerificationResult = Field(default_factory=VerificationResult.skipped)
    branch: BranchInfo
    notes: str | None = None
    blockers: list[str] | None = None


# =============================================================================
# Test generation
# =============================================================================


class GeneratedTestSuite(_FrozenModel):
    """One generated test module."""

    __test__ = False

    source_file: str
    test_file: str
    content: str
    total_tests: int


class TestGenerationResult(_FrozenModel):
    """Output of a test generation backend."""

    __test__ = False

    suites: list[GeneratedTestSuite] = Field(default_factory=list)
    skipped_files: list[str] = Field(default_factory=list)

    @property
    def total_tests(self) -> int:
        return sum(suite.total_tests for suite in self.suites)


# =============================================================================
# Checkpoints
# =============================================================================


class CheckpointState(_FrozenModel):
    """Progress accumulated by the steps completed so far."""

    work_order: WorkOrder | None = None
    branch_name: str | None = None
    file_changes: list[FileChange] = Field(default_factory=list)
    tests_created: dict[str, int] = Field(default_factory=dict)
    commits: list[CommitInfo] = Field(default_factory=list)
    test_generation_result: TestGenerationResult | None = None
    verification: VerificationResult | None = None


class Checkpoint(_FrozenModel):
    """Durable record of the last completed step of a work order.

    ``current_step`` is the most recently *completed* step; execution resumes
    at the step after it.
    """

    work_order_id: str
    task_id: str
    current_step: Step
    timestamp: datetime = Field(default_factory=utc_now)
    attempt_number: int = Field(ge=0)
    progress_snapshot: CheckpointState | None = None
    files_changed: list[str] = Field(default_factory=list)
    resumable: bool = True


# =============================================================================
# In-memory working state
# =============================================================================


@dataclass
class FileContext:
    """Content of a related file read during context analysis."""

    path: str
    """Path relative to the project root."""

    content: str
    """File content decoded as UTF-8."""

    reason: str = ""
    """Why the work order lists this file."""


@dataclass
class CodePatterns:
    """Formatting conventions inferred from existing source files."""

    indentation: Literal["spaces", "tabs"] = "spaces"
    indent_size: int = 4
    quote_style: Literal["single", "double"] = "double"
    use_semicolons: bool = False
    trailing_comma: Literal["none", "es5", "all"] = "all"
    import_style: Literal["named", "default", "mixed"] = "named"
    export_style: Literal["named", "default", "mixed"] = "named"
    error_handling: Literal["try-catch", "result-type", "mixed"] = "try-catch"
    test_framework: str | None = "pytest"


@dataclass
class CodeContext:
    """Everything the generators get to see about the codebase."""

    work_order: WorkOrder
    related_files: list[FileContext] = field(default_factory=list)
    patterns: CodePatterns = field(default_factory=CodePatterns)


@dataclass
class ExecutionOptions:
    """Per-invocation switches for ``StepOrchestrator.implement``."""

    skip_tests: bool = False
    """Skip the test generation step."""

    skip_verification: bool = False
    """Skip verification and record a skipped verification result."""

    dry_run: bool = False
    """Do everything except committing."""

    retry_policy: RetryPolicy | None = None
    """Override the configured retry policy for this run."""


@dataclass
class ExecutionContext:
    """Arguments passed to the code generation backend."""

    work_order: WorkOrder
    code_context: CodeContext
    settings: WorkerSettings
    options: ExecutionOptions
    attempt_number: int
    metadata: dict[str, Any] = field(default_factory=dict)
