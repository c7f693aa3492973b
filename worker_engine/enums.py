"""Enumerations shared across the worker engine."""

from enum import Enum


class Step(str, Enum):
    """Pipeline steps executed for a work order, in execution order.

    The declaration order is the pipeline order; use ``STEP_ORDER`` or
    ``Step.position`` to compare positions.
    """

    CONTEXT_ANALYSIS = "context_analysis"
    BRANCH_CREATION = "branch_creation"
    CODE_GENERATION = "code_generation"
    TEST_GENERATION = "test_generation"
    VERIFICATION = "verification"
    COMMIT = "commit"
    RESULT_PERSISTENCE = "result_persistence"

    def __str__(self) -> str:
        return self.value

    @property
    def position(self) -> int:
        """Position of this step in the pipeline."""
        return STEP_ORDER.index(self)


STEP_ORDER: tuple[Step, ...] = tuple(Step)


class ErrorCategory(str, Enum):
    """Retry disposition of a failure.

    - transient: retry with backoff, no repair needed
    - recoverable: retry, but only after an automatic repair attempt
    - fatal: never retried
    """

    TRANSIENT = "transient"
    RECOVERABLE = "recoverable"
    FATAL = "fatal"

    def __str__(self) -> str:
        return self.value


class BackoffStrategy(str, Enum):
    """Delay growth between retry attempts."""

    FIXED = "fixed"
    LINEAR = "linear"
    EXPONENTIAL = "exponential"


class VerificationKind(str, Enum):
    """External checks run by the self-verification loop."""

    TEST = "test"
    LINT = "lint"
    BUILD = "build"
    TYPECHECK = "typecheck"

    def __str__(self) -> str:
        return self.value


class ImplementationStatus(str, Enum):
    """Terminal outcome of a work order."""

    COMPLETED = "completed"
    FAILED = "failed"
    BLOCKED = "blocked"


class VerificationStatus(str, Enum):
    """Overall outcome of a self-verification run."""

    PASSED = "passed"
    FAILED = "failed"
    ESCALATED = "escalated"


class BranchPrefix(str, Enum):
    """Branch name prefixes derived from the issue identifier."""

    FEATURE = "feature"
    FIX = "fix"
    DOCS = "docs"
    TEST = "test"
    REFACTOR = "refactor"


class CommitType(str, Enum):
    """Conventional commit types."""

    FEAT = "feat"
    FIX = "fix"
    DOCS = "docs"
    TEST = "test"
    REFACTOR = "refactor"
    STYLE = "style"
    CHORE = "chore"
    PERF = "perf"
