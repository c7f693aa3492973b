"""
Step orchestrator: drives one work order through the implementation pipeline.

Pipeline:
    context_analysis -> branch_creation -> code_generation -> test_generation
    -> verification -> commit -> result_persistence

A checkpoint is saved after every executed step and the resume point moves
past it, so neither a retry within the same run nor a resumed run repeats a
completed step. The one exception is context analysis: it is read-only and is
silently re-derived whenever it is skipped.

Failures are classified once. Fatal failures end the run with a failed or
blocked result; transient and recoverable failures are retried with backoff
until the retry policy is exhausted, at which point ``MaxRetriesExceededError``
is raised.

Example:
    >>> settings = WorkerSettings.from_yaml("worker.yaml")
    >>> orchestrator = StepOrchestrator(settings)
    >>> result = await orchestrator.implement(work_order, ExecutionOptions(dry_run=True))
    >>> result.status
    <ImplementationStatus.COMPLETED: 'completed'>
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path

import structlog

from worker_engine.config.settings import WorkerSettings
from worker_engine.engine.checkpointing import CheckpointStore
from worker_engine.engine.classifier import ErrorClassification, classify_error
from worker_engine.engine.generation import (
    CodeGenerator,
    NoOpCodeGenerator,
    PytestSkeletonGenerator,
    TestGenerator,
)
from worker_engine.engine.naming import branch_name_for, format_commit_message
from worker_engine.engine.patterns import infer_code_patterns
from worker_engine.engine.results import ResultStore
from worker_engine.engine.retry import RetryPolicy, next_retry
from worker_engine.engine.verification import SelfVerificationLoop
from worker_engine.enums import STEP_ORDER, ImplementationStatus, Step, VerificationKind, VerificationStatus
from worker_engine.exceptions import (
    BranchCreationError,
    CommitError,
    ContextAnalysisError,
    EscalationRequiredError,
    GitOperationError,
    ImplementationBlockedError,
    MaxRetriesExceededError,
    PathTraversalError,
    VerificationError,
)
from worker_engine.git.client import GitClient
from worker_engine.models.domain import (
    BranchInfo,
    CheckpointState,
    CodeContext,
    CommitInfo,
    ExecutionContext,
    ExecutionOptions,
    FileChange,
    FileContext,
    ImplementationResult,
    TestGenerationResult,
    TestsSummary,
    VerificationResult,
    WorkOrder,
    utc_now,
)
from worker_engine.models.verification import VerificationReport
from worker_engine.utils.async_subprocess import CommandRunner
from worker_engine.utils.commands import CommandSanitizer
from worker_engine.utils.file_access import SecureFileAccess

log = structlog.get_logger(__name__)

# Files read only to detect the project's test framework.
PROJECT_HINT_FILES = ("pyproject.toml", "setup.cfg", "package.json")

SleepFn = Callable[[float], Awaitable[None]]


@dataclass
class _RunState:
    """Mutable progress of one ``implement`` call."""

    work_order: WorkOrder
    started_at: datetime
    attempt: int = 0
    resume_step: Step = Step.CONTEXT_ANALYSIS
    branch_name: str | None = None
    code_context: CodeContext | None = None
    file_changes: dict[str, FileChange] = field(default_factory=dict)
    tests_created: dict[str, int] = field(default_factory=dict)
    commits: list[CommitInfo] = field(default_factory=list)
    test_generation_result: TestGenerationResult | None = None
    verification: VerificationResult | None = None
    coverage: float = 0.0

    def record_change(self, change: FileChange) -> None:
        self.file_changes[change.file_path] = change

    def snapshot(self) -> CheckpointState:
        return CheckpointState(
            work_order=self.work_order,
            branch_name=self.branch_name,
            file_changes=list(self.file_changes.values()),
            tests_created=dict(self.tests_created),
            commits=list(self.commits),
            test_generation_result=self.test_generation_result,
            verification=self.verification,
        )

    def restore(self, state: CheckpointState) -> None:
        self.branch_name = state.branch_name
        self.file_changes = {change.file_path: change for change in state.file_changes}
        self.tests_created = dict(state.tests_created)
        self.commits = list(state.commits)
        self.test_generation_result = state.test_generation_result
        self.verification = state.verification


def verification_from_report(report: VerificationReport) -> VerificationResult:
    """Collapse a self-verification report into the result's verification block."""

    def outcome(kind: VerificationKind) -> tuple[bool, str]:
        result = report.result_for(kind)
        if result is None:
            return True, "Not run"
        return result.passed, result.output

    tests_passed, tests_output = outcome(VerificationKind.TEST)
    lint_passed, lint_output = outcome(VerificationKind.LINT)
    build_passed, build_output = outcome(VerificationKind.BUILD)
    return VerificationResult(
        tests_passed=tests_passed,
        tests_output=tests_output,
        lint_passed=lint_passed,
        lint_output=lint_output,
        build_passed=build_passed,
        build_output=build_output,
    )


class StepOrchestrator:
    """Execute work orders step by step with checkpointing and retries.

    Collaborators not passed in are built from ``settings``.

    Args:
        settings: Worker settings
        checkpoints: Checkpoint store
        git: Git client for the project checkout
        files: Path-validated file access rooted at the project
        runner: Command runner for verification commands
        verifier: Self-verification loop
        code_generator: Code generation backend
        test_generator: Test generation backend
        results: Result store
        sleep: Coroutine used to wait between attempts (seconds)
    """

    def __init__(
        self,
        settings: WorkerSettings,
        *,
        checkpoints: CheckpointStore | None = None,
        git: GitClient | None = None,
        files: SecureFileAccess | None = None,
        runner: CommandRunner | None = None,
        verifier: SelfVerificationLoop | None = None,
        code_generator: CodeGenerator | None = None,
        test_generator: TestGenerator | None = None,
        results: ResultStore | None = None,
        sleep: SleepFn = asyncio.sleep,
    ) -> None:
        self.settings = settings
        root = settings.project_root
        self.runner = runner or CommandRunner(
            cwd=root,
            timeout=settings.commands.timeout_seconds,
            sanitizer=CommandSanitizer(settings.commands.allowed_executables),
        )
        self.files = files or SecureFileAccess(root)
        self.checkpoints = checkpoints or CheckpointStore(
            settings.checkpoint_dir,
            max_age=timedelta(hours=settings.project.checkpoint_max_age_hours),
            resumable_steps=set(settings.project.resumable_steps),
        )
        self.git = git or GitClient(self.runner, root)
        self.verifier = verifier or SelfVerificationLoop(settings, self.runner)
        self.code_generator = code_generator or NoOpCodeGenerator()
        self.test_generator = test_generator or PytestSkeletonGenerator()
        self.results = results or ResultStore(self.files, settings.results_dir)
        self._sleep = sleep

    # -------------------------------------------------------------------------
    # Entry point
    # -------------------------------------------------------------------------

    async def implement(
        self, work_order: WorkOrder, options: ExecutionOptions | None = None
    ) -> ImplementationResult:
        """Implement a work order end to end.

        Args:
            work_order: The work order to implement
            options: Per-run switches (skip tests, skip verification, dry run,
                retry policy override)

        Returns:
            The completed, failed or blocked result. The result is also
            persisted and any checkpoint is removed.

        Raises:
            MaxRetriesExceededError: If every permitted attempt failed
        """
        options = options or ExecutionOptions()
        policy = options.retry_policy or self.settings.retry

        with structlog.contextvars.bound_contextvars(work_order_id=work_order.order_id):
            run = _RunState(work_order=work_order, started_at=utc_now())
            await self._restore_checkpoint(run)
            return await self._run_attempts(run, options, policy)

    async def has_checkpoint(self, work_order_id: str) -> bool:
        return await self.checkpoints.has_checkpoint(work_order_id)

    async def _restore_checkpoint(self, run: _RunState) -> None:
        checkpoint = await self.checkpoints.load_checkpoint(run.work_order.order_id)
        if checkpoint is None:
            return
        if not checkpoint.resumable:
            log.info("checkpoint_not_resumable", step=checkpoint.current_step.value)
            return

        state = self.checkpoints.extract_state(checkpoint)
        if state is not None:
            run.restore(state)
        run.attempt = checkpoint.attempt_number
        run.resume_step = self.checkpoints.get_next_step(checkpoint.current_step)
        log.info(
            "resuming_from_checkpoint",
            completed_step=checkpoint.current_step.value,
            resume_step=run.resume_step.value,
            attempt=run.attempt,
        )

    async def _run_attempts(
        self, run: _RunState, options: ExecutionOptions, policy: RetryPolicy
    ) -> ImplementationResult:
        order = run.work_order
        last_error: BaseException | None = None

        while run.attempt < policy.max_attempts:
            run.attempt += 1
            log.info("attempt_started", attempt=run.attempt, resume_step=run.resume_step.value)

            try:
                return await self._run_steps(run, options)
            except Exception as e:
                last_error = e
                classification = classify_error(e)
                decision = next_retry(policy, classification.category, run.attempt)
                log.warning(
                    "attempt_failed",
                    attempt=run.attempt,
                    category=classification.category.value,
                    error=classification.message,
                    error_type=type(e).__name__,
                )

                if not decision.retry_permitted:
                    return await self._finish_unrecoverable(run, classification)
                if not decision.may_retry:
                    break
                if decision.require_fix_attempt:
                    log.info("retry_after_repair", attempt=run.attempt, action=classification.suggested_action)

                log.info("retry_scheduled", attempt=run.attempt, delay_ms=decision.delay_ms)
                await self._sleep(decision.delay_ms / 1000)

        await self.checkpoints.delete_checkpoint(order.order_id)
        log.error("max_retries_exceeded", attempts=run.attempt, error=str(last_error) if last_error else None)
        raise MaxRetriesExceededError(order.order_id, order.issue_id, run.attempt, last_error)

    # -------------------------------------------------------------------------
    # Step sequencing
    # -------------------------------------------------------------------------

    @staticmethod
    def _should_execute(run: _RunState, step: Step) -> bool:
        return step.position >= run.resume_step.position

    async def _complete_step(self, run: _RunState, step: Step) -> None:
        await self.checkpoints.save_checkpoint(
            run.work_order.order_id,
            run.work_order.issue_id,
            step,
            run.attempt,
            run.snapshot(),
        )
        if step.position + 1 < len(STEP_ORDER):
            run.resume_step = STEP_ORDER[step.position + 1]
        log.info("step_completed", step=step.value, attempt=run.attempt)

    async def _run_steps(self, run: _RunState, options: ExecutionOptions) -> ImplementationResult:
        order = run.work_order

        if self._should_execute(run, Step.CONTEXT_ANALYSIS):
            run.code_context = await self.analyze_context(order)
            await self._complete_step(run, Step.CONTEXT_ANALYSIS)
        elif run.code_context is None:
            run.code_context = await self.analyze_context(order)

        if self._should_execute(run, Step.BRANCH_CREATION):
            run.branch_name = await self.create_branch(order)
            await self._complete_step(run, Step.BRANCH_CREATION)
        else:
            await self._ensure_branch(run)

        if self._should_execute(run, Step.CODE_GENERATION):
            for change in await self.generate_code(run, options):
                run.record_change(change)
            await self._complete_step(run, Step.CODE_GENERATION)

        if options.skip_tests:
            log.info("step_skipped", step=Step.TEST_GENERATION.value, reason="skip_tests")
        elif self._should_execute(run, Step.TEST_GENERATION):
            await self.generate_tests(run)
            await self._complete_step(run, Step.TEST_GENERATION)

        if options.skip_verification:
            run.verification = VerificationResult.skipped()
            log.info("step_skipped", step=Step.VERIFICATION.value, reason="skip_verification")
        elif self._should_execute(run, Step.VERIFICATION):
            run.verification = await self.run_verification(run)
            await self._complete_step(run, Step.VERIFICATION)

        if options.dry_run:
            log.info("step_skipped", step=Step.COMMIT.value, reason="dry_run")
        elif self._should_execute(run, Step.COMMIT):
            commit = await self.commit_changes(order)
            if commit is not None:
                run.commits.append(commit)
            await self._complete_step(run, Step.COMMIT)

        result = self.create_result(run, ImplementationStatus.COMPLETED)
        await self.save_result(result)
        await self.checkpoints.delete_checkpoint(order.order_id)
        log.info("work_order_completed", attempt=run.attempt, commits=len(run.commits))
        return result

    async def _ensure_branch(self, run: _RunState) -> None:
        """Make sure the branch recorded by a checkpoint is still usable."""
        if run.branch_name is None:
            run.branch_name = await self.git.current_branch()
            return

        if not await self.git.branch_exists(run.branch_name):
            log.warning("recorded_branch_missing", branch=run.branch_name)
            run.branch_name = await self.create_branch(run.work_order)
            return

        if await self.git.current_branch() != run.branch_name:
            await self.git.checkout(run.branch_name)

    async def _finish_unrecoverable(
        self, run: _RunState, classification: ErrorClassification
    ) -> ImplementationResult:
        error = classification.error
        if run.branch_name is None:
            run.branch_name = await self.git.current_branch()

        if isinstance(error, EscalationRequiredError) and error.report is not None:
            run.verification = verification_from_report(error.report)

        if isinstance(error, ImplementationBlockedError):
            result = self.create_result(run, ImplementationStatus.BLOCKED, blockers=error.blockers)
        else:
            notes = f"Fatal error: {classification.message}"
            if isinstance(error, EscalationRequiredError) and error.analysis:
                notes = f"{notes}\n\n{error.analysis}"
            result = self.create_result(run, ImplementationStatus.FAILED, notes=notes)

        await self.save_result(result)
        await self.checkpoints.delete_checkpoint(run.work_order.order_id)
        log.error(
            "work_order_not_completed",
            status=result.status.value,
            attempt=run.attempt,
            action=classification.suggested_action,
        )
        return result

    # -------------------------------------------------------------------------
    # Steps
    # -------------------------------------------------------------------------

    async def _read_related(self, path: str, reason: str) -> FileContext | None:
        try:
            if not await self.files.exists(path):
                log.warning("related_file_missing", path=path)
                return None
            content = await self.files.read_text(path)
        except (OSError, UnicodeDecodeError, PathTraversalError) as e:
            log.warning("related_file_unreadable", path=path, error=str(e))
            return None
        return FileContext(path=path, content=content, reason=reason)

    async def analyze_context(self, work_order: WorkOrder) -> CodeContext:
        """Read the work order's related files and infer code patterns.

        Missing or unreadable files are skipped with a warning.

        Raises:
            ContextAnalysisError: On any other failure
        """
        try:
            related: list[FileContext] = []
            for related_file in work_order.context.related_files:
                file_context = await self._read_related(related_file.path, related_file.reason)
                if file_context is not None:
                    related.append(file_context)

            hints: list[FileContext] = []
            for name in PROJECT_HINT_FILES:
                if await self.files.exists(name):
                    hints.append(FileContext(path=name, content=await self.files.read_text(name)))

            patterns = infer_code_patterns(related + hints)
        except Exception as e:
            raise ContextAnalysisError(work_order.issue_id, e) from e

        log.info(
            "context_analyzed",
            related_files=len(related),
            indentation=patterns.indentation,
            test_framework=patterns.test_framework,
        )
        return CodeContext(work_order=work_order, related_files=related, patterns=patterns)

    async def create_branch(self, work_order: WorkOrder) -> str:
        """Check out the work order's branch, creating it if needed.

        Raises:
            BranchCreationError: If git fails
        """
        name = branch_name_for(work_order)
        try:
            if await self.git.branch_exists(name):
                await self.git.checkout(name)
            else:
                await self.git.create_branch(name)
        except GitOperationError as e:
            raise BranchCreationError(name, e) from e
        return name

    async def generate_code(self, run: _RunState, options: ExecutionOptions) -> list[FileChange]:
        """Delegate to the code generation backend. Its errors propagate."""
        if run.code_context is None:
            run.code_context = await self.analyze_context(run.work_order)
        context = ExecutionContext(
            work_order=run.work_order,
            code_context=run.code_context,
            settings=self.settings,
            options=options,
            attempt_number=run.attempt,
        )
        changes = await self.code_generator.generate(context)
        log.info("code_generated", changes=len(changes))
        return changes

    async def generate_tests(self, run: _RunState) -> TestGenerationResult:
        """Generate test files and write them into the project."""
        if run.code_context is None:
            run.code_context = await self.analyze_context(run.work_order)
        result = await self.test_generator.generate(run.code_context)

        for suite in result.suites:
            existed = await self.files.exists(suite.test_file)
            await self.files.write_text(suite.test_file, suite.content)
            run.tests_created[suite.test_file] = suite.total_tests
            run.record_change(
                FileChange(
                    file_path=suite.test_file,
                    change_type="modify" if existed else "create",
                    description=f"Tests for {suite.source_file}",
                    lines_added=suite.content.count("\n"),
                )
            )

        run.test_generation_result = result
        return result

    async def run_verification(self, run: _RunState) -> VerificationResult:
        """Run tests, lint and build.

        Raises:
            VerificationError: If a check fails without an escalation
            EscalationRequiredError: If self-verification escalates
        """
        if not self.settings.verification.self_fix:
            return await self._single_pass_verification()

        report = await self.verifier.run(run.work_order.issue_id)
        if report.test_summary is not None and report.test_summary.coverage is not None:
            run.coverage = report.test_summary.coverage

        if report.final_status == VerificationStatus.FAILED:
            for kind, result in report.results.items():
                if result is not None and not result.passed:
                    raise VerificationError(kind.value, result.output)
        return verification_from_report(report)

    async def _single_pass_verification(self) -> VerificationResult:
        commands = self.settings.commands
        root = self.settings.project_root
        timeout = commands.timeout_seconds

        tests = await self.runner.run_configured(commands.test, cwd=root, timeout=timeout)
        lint = await self.runner.run_configured(commands.lint, cwd=root, timeout=timeout)
        if not lint.ok and self.settings.verification.auto_fix_lint:
            await self.runner.run_configured(commands.effective_lint_fix, cwd=root, timeout=timeout)
            lint = await self.runner.run_configured(commands.lint, cwd=root, timeout=timeout)
        build = await self.runner.run_configured(commands.build, cwd=root, timeout=timeout)

        for kind, outcome in (
            (VerificationKind.TEST, tests),
            (VerificationKind.LINT, lint),
            (VerificationKind.BUILD, build),
        ):
            if not outcome.ok:
                raise VerificationError(kind.value, outcome.output)

        return VerificationResult(
            tests_passed=True,
            tests_output=tests.output,
            lint_passed=True,
            lint_output=lint.output,
            build_passed=True,
            build_output=build.output,
        )

    async def commit_changes(self, work_order: WorkOrder) -> CommitInfo | None:
        """Stage everything and commit. Returns None when there is nothing to commit.

        Raises:
            CommitError: If git fails
        """
        message = format_commit_message(work_order)
        try:
            await self.git.stage_all()
            status = await self.git.status_porcelain()
            if not status.strip():
                log.info("nothing_to_commit")
                return None
            await self.git.commit(message)
            commit_hash = await self.git.head_hash()
        except GitOperationError as e:
            raise CommitError(message, e) from e

        log.info("changes_committed", hash=commit_hash)
        return CommitInfo(hash=commit_hash, message=message)

    # -------------------------------------------------------------------------
    # Results
    # -------------------------------------------------------------------------

    def create_result(
        self,
        run: _RunState,
        status: ImplementationStatus,
        notes: str | None = None,
        blockers: list[str] | None = None,
    ) -> ImplementationResult:
        order = run.work_order
        return ImplementationResult(
            work_order_id=order.order_id,
            issue_id=order.issue_id,
            github_issue=order.issue_number,
            status=status,
            started_at=run.started_at,
            completed_at=utc_now(),
            changes=list(run.file_changes.values()),
            tests=TestsSummary(
                files_created=list(run.tests_created),
                total_tests=sum(run.tests_created.values()),
                coverage_percentage=run.coverage,
            ),
            verification=run.verification or VerificationResult.skipped(),
            branch=BranchInfo(name=run.branch_name or "unknown", commits=list(run.commits)),
            notes=notes,
            blockers=blockers or None,
        )

    async def save_result(self, result: ImplementationResult) -> Path:
        return await self.results.save(result)
