"""Custom exception hierarchy for the worker engine.

Every error raised by the engine derives from ``WorkerEngineError`` so callers
can catch engine failures with a single except clause. Some errors declare
their retry category directly through a ``category`` class attribute; the
error classifier honours that declaration before anything else.

Exception Hierarchy:
    WorkerEngineError (base)
    ├── ConfigurationError
    ├── WorkOrderParseError
    ├── ContextAnalysisError
    ├── BranchCreationError
    ├── CodeGenerationError
    ├── TestGenerationError
    ├── CommitError
    ├── GitOperationError
    ├── ResultPersistenceError
    ├── CommandError
    │   ├── CommandTimeoutError
    │   └── CommandNotAllowedError
    ├── PathTraversalError
    ├── MissingDependencyError
    ├── VerificationError
    ├── TypeCheckError
    ├── ImplementationBlockedError
    ├── EscalationRequiredError
    └── MaxRetriesExceededError

Example Usage:
    >>> from worker_engine.exceptions import BranchCreationError
    >>> try:
    ...     await git.create_branch(name)
    ... except GitOperationError as e:
    ...     raise BranchCreationError(name, e) from e
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from worker_engine.enums import ErrorCategory

if TYPE_CHECKING:
    from worker_engine.models.verification import VerificationReport


def _with_cause(message: str, cause: BaseException | None) -> str:
    if cause is None:
        return message
    return f"{message}: {cause}"


class WorkerEngineError(Exception):
    """Base exception for all worker engine errors.

    Attributes:
        message: Human-readable error description
        category: Optional self-declared retry category. ``None`` leaves the
            decision to the error classifier.
    """

    category: ErrorCategory | None = None

    def __init__(self, message: str) -> None:
        """Initialize exception.

        Args:
            message: Error message
        """
        self.message = message
        super().__init__(message)


class ConfigurationError(WorkerEngineError):
    """Configuration-related errors.

    Examples:
        - Configuration file not found
        - Invalid YAML syntax
        - Invalid configuration values
    """

    category = ErrorCategory.FATAL


class WorkOrderParseError(WorkerEngineError):
    """A work order document could not be read or validated."""

    category = ErrorCategory.FATAL

    def __init__(self, source: str, cause: BaseException | None = None) -> None:
        self.source = source
        self.cause = cause
        super().__init__(_with_cause(f"Failed to parse work order {source}", cause))


class ContextAnalysisError(WorkerEngineError):
    """Reading or analyzing the related files of an issue failed."""

    def __init__(self, issue_id: str, cause: BaseException | None = None) -> None:
        self.issue_id = issue_id
        self.cause = cause
        super().__init__(_with_cause(f"Failed to analyze context for issue {issue_id}", cause))


class BranchCreationError(WorkerEngineError):
    """The working branch could not be created or checked out."""

    def __init__(self, branch_name: str, cause: BaseException | None = None) -> None:
        self.branch_name = branch_name
        self.cause = cause
        super().__init__(_with_cause(f"Failed to create branch {branch_name}", cause))


class CodeGenerationError(WorkerEngineError):
    """The code generation backend failed."""

    def __init__(self, issue_id: str, cause: BaseException | None = None) -> None:
        self.issue_id = issue_id
        self.cause = cause
        super().__init__(_with_cause(f"Failed to generate code for issue {issue_id}", cause))


class TestGenerationError(WorkerEngineError):
    """The test generation backend failed."""

    __test__ = False

    def __init__(self, issue_id: str, cause: BaseException | None = None) -> None:
        self.issue_id = issue_id
        self.cause = cause
        super().__init__(_with_cause(f"Failed to generate tests for issue {issue_id}", cause))


class CommitError(WorkerEngineError):
    """Staging or committing the working tree failed.

    Attributes:
        commit_message: The message that was being committed
    """

    def __init__(self, commit_message: str, cause: BaseException | None = None) -> None:
        self.commit_message = commit_message
        self.cause = cause
        super().__init__(_with_cause("Failed to commit changes", cause))


class GitOperationError(WorkerEngineError):
    """A git invocation exited with a non-zero status.

    Attributes:
        operation: The git sub-command and arguments that failed
        stderr: Captured standard error of the git process
        exit_code: Process exit code
    """

    def __init__(self, operation: str, stderr: str = "", exit_code: int | None = None) -> None:
        self.operation = operation
        self.stderr = stderr
        self.exit_code = exit_code

        message = f"Git operation failed: {operation}"
        if exit_code is not None:
            message = f"{message} (exit code: {exit_code})"
        if stderr.strip():
            message = f"{message}: {stderr.strip()}"
        super().__init__(message)


class ResultPersistenceError(WorkerEngineError):
    """Saving or loading an implementation result failed."""

    def __init__(self, work_order_id: str, operation: str, cause: BaseException | None = None) -> None:
        self.work_order_id = work_order_id
        self.operation = operation
        self.cause = cause
        super().__init__(
            _with_cause(f"Failed to {operation} result for work order {work_order_id}", cause)
        )


class CommandError(WorkerEngineError):
    """Base class for external command failures.

    Attributes:
        command: The command line that failed, joined for display
    """

    def __init__(self, message: str, command: str) -> None:
        self.command = command
        super().__init__(message)


class CommandTimeoutError(CommandError):
    """An external command exceeded its timeout and was killed.

    Attributes:
        timeout_seconds: The timeout that was exceeded
    """

    category = ErrorCategory.TRANSIENT

    def __init__(self, command: str, timeout_seconds: float) -> None:
        self.timeout_seconds = timeout_seconds
        super().__init__(f"Command timed out after {timeout_seconds}s: {command}", command)


class CommandNotAllowedError(CommandError):
    """A configured command was rejected before execution.

    Raised for shell control operators in a command string or for
    executables outside the configured allow-list.
    """

    category = ErrorCategory.FATAL

    def __init__(self, command: str, reason: str) -> None:
        self.reason = reason
        super().__init__(f"Command not allowed ({reason}): {command}", command)


class PathTraversalError(WorkerEngineError):
    """A file path resolved outside the project root."""

    category = ErrorCategory.FATAL

    def __init__(self, path: str, root: str) -> None:
        self.path = path
        self.root = root
        super().__init__(f"Path '{path}' is outside the project root {root}")


class MissingDependencyError(WorkerEngineError):
    """A required tool or package is not installed."""

    category = ErrorCategory.FATAL

    def __init__(self, dependency: str, hint: str | None = None) -> None:
        self.dependency = dependency
        self.hint = hint
        message = f"Missing dependency: {dependency}"
        if hint:
            message = f"{message}\nSuggestion: {hint}"
        super().__init__(message)


class VerificationError(WorkerEngineError):
    """Tests, lint or build failed after any automatic repair.

    Attributes:
        kind: Which check failed (test, lint, build, typecheck)
        output: Full output of the failing check
    """

    category = ErrorCategory.RECOVERABLE

    def __init__(self, kind: str, output: str) -> None:
        self.kind = str(kind)
        self.output = output
        super().__init__(f"{self.kind} verification failed: {output[:200]}")


class TypeCheckError(WorkerEngineError):
    """The type checker reported errors."""

    category = ErrorCategory.RECOVERABLE

    def __init__(self, error_count: int, output: str) -> None:
        self.error_count = error_count
        self.output = output
        super().__init__(f"Type check failed with {error_count} error(s)")


class ImplementationBlockedError(WorkerEngineError):
    """The work order cannot proceed without outside help.

    Attributes:
        issue_id: The blocked issue
        blockers: Human-readable reasons the work is blocked
    """

    category = ErrorCategory.FATAL

    def __init__(self, issue_id: str, blockers: list[str]) -> None:
        self.issue_id = issue_id
        self.blockers = list(blockers)
        super().__init__(f"Implementation blocked for issue {issue_id}: {', '.join(self.blockers)}")


class EscalationRequiredError(WorkerEngineError):
    """Self-verification exhausted its repair budget.

    Always fatal for the retry scheduler: repeating the whole attempt would
    repeat the same unsuccessful repairs.

    Attributes:
        task_id: The task that was being verified
        failed_steps: Verification kinds that stayed red
        total_attempts: Number of fix attempts made across all kinds
        error_logs: Truncated output of each failed kind
        analysis: Synthesized summary of errors and fix attempts
        report: The full verification report, when available
    """

    category = ErrorCategory.FATAL

    def __init__(
        self,
        task_id: str,
        failed_steps: list[str],
        total_attempts: int,
        error_logs: list[str],
        analysis: str,
        report: VerificationReport | None = None,
    ) -> None:
        self.task_id = task_id
        self.failed_steps = list(failed_steps)
        self.total_attempts = total_attempts
        self.error_logs = list(error_logs)
        self.analysis = analysis
        self.report = report
        super().__init__(
            f"Escalation required for task {task_id}: "
            f"{len(self.failed_steps)} step(s) failed after {total_attempts} fix attempt(s)"
        )


class MaxRetriesExceededError(WorkerEngineError):
    """All attempts for a work order were used up.

    Attributes:
        work_order_id: The work order that was being implemented
        issue_id: Issue referenced by the work order
        attempts: Number of attempts made
        last_error: The failure of the final attempt
    """

    def __init__(
        self,
        work_order_id: str,
        issue_id: str,
        attempts: int,
        last_error: BaseException | None = None,
    ) -> None:
        self.work_order_id = work_order_id
        self.issue_id = issue_id
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(
            _with_cause(
                f"Max retries ({attempts}) exceeded for work order {work_order_id} (issue {issue_id})",
                last_error,
            )
        )

    def to_dict(self) -> dict[str, Any]:
        """Summarize the failure for logging or CLI output."""
        return {
            "work_order_id": self.work_order_id,
            "issue_id": self.issue_id,
            "attempts": self.attempts,
            "last_error": str(self.last_error) if self.last_error else None,
        }
