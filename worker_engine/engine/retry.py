"""
Retry scheduling for failed work order attempts.

Given the category of a failure and the attempt number that just failed, the
scheduler decides whether another attempt may run, whether a repair has to
precede it, and how long to wait first. It performs no I/O; the orchestrator
does the sleeping.

Example:
    >>> policy = RetryPolicy(max_attempts=3, base_delay_ms=5000)
    >>> decision = next_retry(policy, ErrorCategory.TRANSIENT, attempt=1)
    >>> decision.may_retry, decision.delay_ms
    (True, 5000)
"""

from __future__ import annotations

from dataclasses import dataclass

from pydantic import BaseModel, ConfigDict, Field

from worker_engine.enums import BackoffStrategy, ErrorCategory


class CategoryRetryConfig(BaseModel):
    """Per-category override. Unset fields fall back to the defaults."""

    model_config = ConfigDict(frozen=True)

    retry: bool | None = None
    max_attempts: int | None = Field(default=None, ge=0)
    require_fix_attempt: bool | None = None


class RetryPolicy(BaseModel):
    """Attempt budget and backoff shape for a work order."""

    model_config = ConfigDict(frozen=True)

    max_attempts: int = Field(default=3, ge=1, description="Total attempts including the first")
    base_delay_ms: int = Field(default=5000, ge=0, description="Delay before the first retry")
    backoff: BackoffStrategy = Field(default=BackoffStrategy.EXPONENTIAL)
    max_delay_ms: int = Field(default=60000, ge=0, description="Upper bound for any single delay")
    by_category: dict[ErrorCategory, CategoryRetryConfig] = Field(default_factory=dict)


@dataclass(frozen=True)
class ResolvedCategoryConfig:
    retry: bool
    max_attempts: int
    require_fix_attempt: bool


@dataclass(frozen=True)
class RetryDecision:
    """What to do after a failed attempt.

    Attributes:
        retry_permitted: The category allows retrying at all
        may_retry: Another attempt should run now
        require_fix_attempt: A repair must run before the retry
        delay_ms: Wait before the next attempt (0 when ``may_retry`` is false)
        max_attempts: Effective attempt cap for this category
    """

    retry_permitted: bool
    may_retry: bool
    require_fix_attempt: bool
    delay_ms: int
    max_attempts: int


def category_config(policy: RetryPolicy, category: ErrorCategory) -> ResolvedCategoryConfig:
    """Resolve the effective retry behaviour for a category.

    Fatal failures are never retried, whatever the overrides say.
    """
    if category == ErrorCategory.FATAL:
        return ResolvedCategoryConfig(retry=False, max_attempts=0, require_fix_attempt=False)

    override = policy.by_category.get(category, CategoryRetryConfig())
    return ResolvedCategoryConfig(
        retry=True if override.retry is None else override.retry,
        max_attempts=policy.max_attempts if override.max_attempts is None else override.max_attempts,
        require_fix_attempt=(
            category == ErrorCategory.RECOVERABLE
            if override.require_fix_attempt is None
            else override.require_fix_attempt
        ),
    )


def calculate_delay(policy: RetryPolicy, attempt: int) -> int:
    """Delay in milliseconds before the attempt following ``attempt``.

    Args:
        policy: Retry policy providing base delay, shape and cap
        attempt: The 1-based attempt number that just failed

    Returns:
        Delay in milliseconds, never above ``policy.max_delay_ms``
    """
    attempt = max(attempt, 1)
    if policy.backoff == BackoffStrategy.FIXED:
        delay = policy.base_delay_ms
    elif policy.backoff == BackoffStrategy.LINEAR:
        delay = policy.base_delay_ms * attempt
    else:
        delay = policy.base_delay_ms * 2 ** (attempt - 1)
    return min(delay, policy.max_delay_ms)


def next_retry(policy: RetryPolicy, category: ErrorCategory, attempt: int) -> RetryDecision:
    """Decide whether and when to retry after ``attempt`` failed.

    Args:
        policy: Retry policy for the work order
        category: Category of the failure
        attempt: The 1-based attempt number that just failed

    Returns:
        RetryDecision for the caller to act on
    """
    config = category_config(policy, category)
    may_retry = (
        config.retry
        and attempt < config.max_attempts
        and attempt < policy.max_attempts
    )
    return RetryDecision(
        retry_permitted=config.retry,
        may_retry=may_retry,
        require_fix_attempt=config.require_fix_attempt,
        delay_ms=calculate_delay(policy, attempt) if may_retry else 0,
        max_attempts=config.max_attempts,
    )


class RetryScheduler:
    """Object form of ``next_retry`` bound to one policy."""

    def __init__(self, policy: RetryPolicy | None = None) -> None:
        self.policy = policy or RetryPolicy()

    def next(self, category: ErrorCategory, attempt: int) -> RetryDecision:
        return next_retry(self.policy, category, attempt)

    def delay_for(self, attempt: int) -> int:
        return calculate_delay(self.policy, attempt)
