"""
Error classification for retry decisions.

Maps any exception to one of three retry categories. The rules are checked in
a fixed order and the first match wins:

1. the error declares its own ``category``
2. the error's type (``isinstance`` against a table)
3. an underlying system error code (``errno`` or a string ``code``)
4. keywords in the lower-cased message
5. transient, for anything unrecognized

Classification is pure: it never raises and never performs I/O.
"""

from __future__ import annotations

import errno
from dataclasses import dataclass

import structlog

from worker_engine.enums import ErrorCategory
from worker_engine.exceptions import (
    CommandNotAllowedError,
    CommandTimeoutError,
    EscalationRequiredError,
    ImplementationBlockedError,
    MissingDependencyError,
    PathTraversalError,
    TypeCheckError,
    VerificationError,
)

log = structlog.get_logger(__name__)


_TYPE_CATEGORIES: tuple[tuple[type[BaseException], ErrorCategory], ...] = (
    (VerificationError, ErrorCategory.RECOVERABLE),
    (TypeCheckError, ErrorCategory.RECOVERABLE),
    (CommandTimeoutError, ErrorCategory.TRANSIENT),
    (TimeoutError, ErrorCategory.TRANSIENT),
    (ConnectionError, ErrorCategory.TRANSIENT),
    (PermissionError, ErrorCategory.FATAL),
    (CommandNotAllowedError, ErrorCategory.FATAL),
    (PathTraversalError, ErrorCategory.FATAL),
    (MissingDependencyError, ErrorCategory.FATAL),
    (ModuleNotFoundError, ErrorCategory.FATAL),
    (ImplementationBlockedError, ErrorCategory.FATAL),
    (EscalationRequiredError, ErrorCategory.FATAL),
)

_CODE_CATEGORIES: dict[str, ErrorCategory] = {
    "ECONNRESET": ErrorCategory.TRANSIENT,
    "ECONNREFUSED": ErrorCategory.TRANSIENT,
    "ETIMEDOUT": ErrorCategory.TRANSIENT,
    "EHOSTUNREACH": ErrorCategory.TRANSIENT,
    "ENETUNREACH": ErrorCategory.TRANSIENT,
    "EAI_AGAIN": ErrorCategory.TRANSIENT,
    "EAGAIN": ErrorCategory.TRANSIENT,
    "RATE_LIMITED": ErrorCategory.TRANSIENT,
    "SERVICE_UNAVAILABLE": ErrorCategory.TRANSIENT,
    "GATEWAY_TIMEOUT": ErrorCategory.TRANSIENT,
    "EACCES": ErrorCategory.FATAL,
    "EPERM": ErrorCategory.FATAL,
    "ENOENT": ErrorCategory.FATAL,
    "MODULE_NOT_FOUND": ErrorCategory.FATAL,
    "MISSING_DEPENDENCY": ErrorCategory.FATAL,
}

_MESSAGE_PATTERNS: tuple[tuple[tuple[str, ...], ErrorCategory], ...] = (
    (("timeout", "timed out", "connection", "network"), ErrorCategory.TRANSIENT),
    (("permission denied", "not found", "missing dependency"), ErrorCategory.FATAL),
    (("test failed", "lint error", "build failed"), ErrorCategory.RECOVERABLE),
)

_SUGGESTED_ACTIONS: dict[ErrorCategory, str] = {
    ErrorCategory.TRANSIENT: (
        "Retry with exponential backoff. Check network connectivity if the issue persists."
    ),
    ErrorCategory.RECOVERABLE: (
        "Attempt an automatic fix, then retry. If the fix fails, escalate for review."
    ),
    ErrorCategory.FATAL: "Escalate immediately. Manual intervention required.",
}


@dataclass(frozen=True)
class ErrorClassification:
    """A failure together with the category decided for it."""

    error: BaseException
    category: ErrorCategory
    suggested_action: str

    @property
    def message(self) -> str:
        return getattr(self.error, "message", None) or str(self.error) or type(self.error).__name__


def _declared_category(error: BaseException) -> ErrorCategory | None:
    declared = getattr(error, "category", None)
    if isinstance(declared, ErrorCategory):
        return declared
    if isinstance(declared, str):
        try:
            return ErrorCategory(declared.lower())
        except ValueError:
            return None
    return None


def _error_code(error: BaseException) -> str | None:
    code = getattr(error, "code", None)
    if isinstance(code, str) and code:
        return code.upper()

    err_no = getattr(error, "errno", None)
    if isinstance(err_no, int):
        return errno.errorcode.get(err_no)
    return None


def classify(error: BaseException) -> ErrorCategory:
    """Return the retry category for ``error``.

    Args:
        error: Any exception raised during a work order attempt

    Returns:
        The ErrorCategory; unknown errors are treated as transient
    """
    declared = _declared_category(error)
    if declared is not None:
        return declared

    for error_type, category in _TYPE_CATEGORIES:
        if isinstance(error, error_type):
            return category

    code = _error_code(error)
    if code is not None and code in _CODE_CATEGORIES:
        return _CODE_CATEGORIES[code]

    message = str(error).lower()
    for keywords, category in _MESSAGE_PATTERNS:
        if any(keyword in message for keyword in keywords):
            return category

    return ErrorCategory.TRANSIENT


def suggested_action(error: BaseException, category: ErrorCategory | None = None) -> str:
    """Human-readable remediation hint for ``error``. Reporting only."""
    category = category or classify(error)

    if isinstance(error, (CommandTimeoutError, TimeoutError)):
        return "Retry with a longer timeout or check whether the command hangs waiting for input."
    if isinstance(error, VerificationError):
        return f"Fix the failing {error.kind} check automatically, then retry."
    if isinstance(error, ImplementationBlockedError):
        return "Resolve the listed blockers before resubmitting the work order."
    if isinstance(error, EscalationRequiredError):
        return "Review the escalation analysis; automatic repairs did not resolve the failures."
    return _SUGGESTED_ACTIONS[category]


def classify_error(error: BaseException) -> ErrorClassification:
    """Classify ``error`` once and bundle the outcome for later decisions."""
    category = classify(error)
    classification = ErrorClassification(
        error=error,
        category=category,
        suggested_action=suggested_action(error, category),
    )
    log.debug(
        "error_classified",
        error_type=type(error).__name__,
        category=category.value,
    )
    return classification
