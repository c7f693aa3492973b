"""Tests for worker_engine.engine.retry."""

import pytest
from pydantic import ValidationError

from worker_engine.engine.retry import (
    CategoryRetryConfig,
    RetryPolicy,
    RetryScheduler,
    calculate_delay,
    category_config,
    next_retry,
)
from worker_engine.enums import BackoffStrategy, ErrorCategory


@pytest.fixture
def policy() -> RetryPolicy:
    return RetryPolicy(max_attempts=3, base_delay_ms=5000, backoff=BackoffStrategy.EXPONENTIAL, max_delay_ms=60000)


class TestCalculateDelay:
    def test_exponential_sequence(self, policy):
        assert [calculate_delay(policy, n) for n in (1, 2, 3)] == [5000, 10000, 20000]

    def test_exponential_is_capped(self):
        policy = RetryPolicy(max_attempts=10, base_delay_ms=5000, max_delay_ms=60000)
        assert calculate_delay(policy, 5) == 60000
        assert calculate_delay(policy, 9) == 60000

    def test_fixed(self):
        policy = RetryPolicy(base_delay_ms=1000, backoff=BackoffStrategy.FIXED)
        assert [calculate_delay(policy, n) for n in (1, 2, 5)] == [1000, 1000, 1000]

    def test_linear(self):
        policy = RetryPolicy(base_delay_ms=1000, backoff=BackoffStrategy.LINEAR, max_delay_ms=2500)
        assert [calculate_delay(policy, n) for n in (1, 2, 3)] == [1000, 2000, 2500]

    def test_delay_never_exceeds_cap(self):
        policy = RetryPolicy(base_delay_ms=70000, max_delay_ms=60000, backoff=BackoffStrategy.FIXED)
        assert calculate_delay(policy, 1) == 60000


class TestNextRetry:
    def test_transient_first_failure(self, policy):
        decision = next_retry(policy, ErrorCategory.TRANSIENT, attempt=1)

        assert decision.retry_permitted is True
        assert decision.may_retry is True
        assert decision.require_fix_attempt is False
        assert decision.delay_ms == 5000
        assert decision.max_attempts == 3

    def test_recoverable_requires_fix(self, policy):
        decision = next_retry(policy, ErrorCategory.RECOVERABLE, attempt=2)

        assert decision.may_retry is True
        assert decision.require_fix_attempt is True
        assert decision.delay_ms == 10000

    def test_fatal_never_retries(self, policy):
        decision = next_retry(policy, ErrorCategory.FATAL, attempt=1)

        assert decision.retry_permitted is False
        assert decision.may_retry is False
        assert decision.max_attempts == 0
        assert decision.delay_ms == 0

    def test_last_attempt_may_not_retry(self, policy):
        decision = next_retry(policy, ErrorCategory.TRANSIENT, attempt=3)

        assert decision.retry_permitted is True
        assert decision.may_retry is False
        assert decision.delay_ms == 0

    def test_category_cap_applies(self):
        policy = RetryPolicy(
            max_attempts=5,
            by_category={ErrorCategory.RECOVERABLE: CategoryRetryConfig(max_attempts=2)},
        )

        assert next_retry(policy, ErrorCategory.RECOVERABLE, 1).may_retry is True
        assert next_retry(policy, ErrorCategory.RECOVERABLE, 2).may_retry is False
        assert next_retry(policy, ErrorCategory.TRANSIENT, 2).may_retry is True

    def test_override_can_disable_retry(self):
        policy = RetryPolicy(by_category={ErrorCategory.TRANSIENT: CategoryRetryConfig(retry=False)})
        decision = next_retry(policy, ErrorCategory.TRANSIENT, 1)

        assert decision.retry_permitted is False
        assert decision.may_retry is False

    def test_override_cannot_make_fatal_retryable(self):
        policy = RetryPolicy(
            by_category={ErrorCategory.FATAL: CategoryRetryConfig(retry=True, max_attempts=3)}
        )
        assert category_config(policy, ErrorCategory.FATAL).retry is False
        assert next_retry(policy, ErrorCategory.FATAL, 1).may_retry is False

    def test_override_fix_requirement(self):
        policy = RetryPolicy(
            by_category={ErrorCategory.RECOVERABLE: CategoryRetryConfig(require_fix_attempt=False)}
        )
        assert next_retry(policy, ErrorCategory.RECOVERABLE, 1).require_fix_attempt is False


class TestRetryPolicyModel:
    def test_defaults(self):
        policy = RetryPolicy()

        assert policy.max_attempts == 3
        assert policy.base_delay_ms == 5000
        assert policy.backoff == BackoffStrategy.EXPONENTIAL
        assert policy.max_delay_ms == 60000

    def test_rejects_zero_attempts(self):
        with pytest.raises(ValidationError):
            RetryPolicy(max_attempts=0)

    def test_by_category_from_plain_dict(self):
        policy = RetryPolicy.model_validate({"by_category": {"recoverable": {"max_attempts": 1}}})
        assert policy.by_category[ErrorCategory.RECOVERABLE].max_attempts == 1


class TestRetryScheduler:
    def test_scheduler_uses_bound_policy(self, policy):
        scheduler = RetryScheduler(policy)

        assert scheduler.next(ErrorCategory.TRANSIENT, 2).delay_ms == 10000
        assert scheduler.delay_for(3) == 20000

    def test_scheduler_default_policy(self):
        assert RetryScheduler().policy == RetryPolicy()
