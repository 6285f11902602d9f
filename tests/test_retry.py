"""Tests for the retry executor and cancellation token."""

from __future__ import annotations

import asyncio
import time

import pytest
from azure.core.exceptions import HttpResponseError, ODataV4Format

from provisioner.config import RetrySettings
from provisioner.context import CancellationToken
from provisioner.errors import (
    ErrorCode,
    OperationCancelled,
    PolicyDenied,
    RetryExhaustedError,
    TransientUnavailable,
)
from provisioner.retry import RetryExecutor, RetryPolicies, RetryPolicy, retry_on


class Flaky:
    """Callable failing with ``error`` for the first ``failures`` calls."""

    def __init__(self, failures: int, error: Exception, value: str = "ok") -> None:
        self.failures = failures
        self.error = error
        self.value = value
        self.calls = 0

    def __call__(self) -> str:
        self.calls += 1
        if self.calls <= self.failures:
            raise self.error
        return self.value


def fast(max_attempts: int = 3, **kwargs) -> RetryPolicy:
    return RetryPolicy(max_attempts=max_attempts, base_delay=0, **kwargs)


class TestRetryPolicy:
    """Tests for RetryPolicy backoff."""

    def test_schedule_is_deterministic(self) -> None:
        policy = RetryPolicy(max_attempts=5, base_delay=1, backoff_multiplier=2, max_delay=5)
        assert policy.schedule() == [1, 2, 4, 5]
        assert policy.schedule() == policy.schedule()

    def test_single_attempt_has_no_waits(self) -> None:
        assert RetryPolicy(max_attempts=1, base_delay=3).schedule() == []

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"max_attempts": 0, "base_delay": 1},
            {"max_attempts": 3, "base_delay": -1},
            {"max_attempts": 3, "base_delay": 1, "backoff_multiplier": 0.5},
        ],
    )
    def test_invalid_policy_rejected(self, kwargs: dict) -> None:
        with pytest.raises(ValueError):
            RetryPolicy(**kwargs)

    def test_attempt_is_one_based(self) -> None:
        with pytest.raises(ValueError):
            fast().delay_for(0)

    def test_policies_from_settings(self) -> None:
        """Identity polling uses a fixed interval, role assignment backs off."""
        settings = RetrySettings(identity_max_attempts=4, identity_base_delay_seconds=2)
        policies = RetryPolicies.from_settings(settings)

        assert policies.identity_propagation.schedule() == [2, 2, 2]
        assert policies.role_propagation.max_attempts == settings.role_max_attempts
        assert policies.destructive.destructive is True

    def test_role_policy_does_not_retry_deleting(self) -> None:
        policies = RetryPolicies.from_settings(RetrySettings())
        deleting = TransientUnavailable("being deleted", ErrorCode.RESOURCE_DELETING)
        pending = TransientUnavailable("no access yet", ErrorCode.AUTHORIZATION_PENDING)

        assert policies.role_propagation.retryable(deleting) is False
        assert policies.role_propagation.retryable(pending) is True


class TestRetryExecutor:
    """Tests for RetryExecutor.execute()."""

    @pytest.mark.asyncio
    async def test_succeeds_after_transient_failures(self) -> None:
        executor = RetryExecutor(CancellationToken(), call_timeout_seconds=5)
        operation = Flaky(2, TransientUnavailable("not yet"))

        result = await executor.execute(operation, fast(), operation_name="flaky")

        assert result.value == "ok"
        assert result.attempts == 3

    @pytest.mark.asyncio
    async def test_non_retryable_raised_immediately(self) -> None:
        executor = RetryExecutor(CancellationToken(), call_timeout_seconds=5)
        operation = Flaky(5, PolicyDenied("denied"))

        with pytest.raises(PolicyDenied) as exc_info:
            await executor.execute(operation, fast(), operation_name="denied")

        assert operation.calls == 1
        assert exc_info.value.attempts == 1

    @pytest.mark.asyncio
    async def test_exhaustion_reports_last_error_and_attempts(self) -> None:
        executor = RetryExecutor(CancellationToken(), call_timeout_seconds=5)
        operation = Flaky(10, TransientUnavailable("propagating", ErrorCode.PRINCIPAL_NOT_FOUND))

        with pytest.raises(RetryExhaustedError) as exc_info:
            await executor.execute(operation, fast(4), operation_name="propagation")

        assert operation.calls == 4
        assert exc_info.value.attempts == 4
        assert exc_info.value.signature.code == ErrorCode.PRINCIPAL_NOT_FOUND

    @pytest.mark.asyncio
    async def test_azure_errors_are_classified(self) -> None:
        """Raw SDK errors are classified before the retry predicate sees them."""
        throttled = HttpResponseError(message="Too many requests")
        throttled.error = ODataV4Format({"error": {"code": "TooManyRequests", "message": "slow"}})
        executor = RetryExecutor(CancellationToken(), call_timeout_seconds=5)
        operation = Flaky(1, throttled)

        result = await executor.execute(operation, fast(), operation_name="throttled")

        assert result.attempts == 2

    @pytest.mark.asyncio
    async def test_custom_predicate(self) -> None:
        executor = RetryExecutor(CancellationToken(), call_timeout_seconds=5)
        operation = Flaky(1, TransientUnavailable("deleting", ErrorCode.RESOURCE_DELETING))
        policy = fast(retryable=retry_on(ErrorCode.PRINCIPAL_NOT_FOUND))

        with pytest.raises(TransientUnavailable):
            await executor.execute(operation, policy, operation_name="narrow")

        assert operation.calls == 1

    @pytest.mark.asyncio
    async def test_destructive_runs_once_without_opt_in(self) -> None:
        executor = RetryExecutor(CancellationToken(), call_timeout_seconds=5)
        operation = Flaky(1, TransientUnavailable("busy"))

        with pytest.raises(RetryExhaustedError):
            await executor.execute(operation, fast(destructive=True), operation_name="delete")

        assert operation.calls == 1

    @pytest.mark.asyncio
    async def test_destructive_retries_with_opt_in(self) -> None:
        executor = RetryExecutor(CancellationToken(), call_timeout_seconds=5)
        operation = Flaky(1, TransientUnavailable("busy"))

        result = await executor.execute(
            operation, fast(destructive=True), operation_name="delete", allow_destructive=True
        )

        assert result.attempts == 2

    @pytest.mark.asyncio
    async def test_cancelled_token_stops_before_first_attempt(self) -> None:
        token = CancellationToken()
        token.cancel()
        executor = RetryExecutor(token, call_timeout_seconds=5)
        operation = Flaky(0, TransientUnavailable("unused"))

        with pytest.raises(OperationCancelled):
            await executor.execute(operation, fast(), operation_name="cancelled")

        assert operation.calls == 0

    @pytest.mark.asyncio
    async def test_cancel_interrupts_backoff_wait(self) -> None:
        token = CancellationToken()
        executor = RetryExecutor(token, call_timeout_seconds=5)
        operation = Flaky(10, TransientUnavailable("not yet"))
        asyncio.get_running_loop().call_later(0.05, token.cancel)

        started = time.monotonic()
        with pytest.raises(OperationCancelled):
            await executor.execute(
                operation, RetryPolicy(max_attempts=3, base_delay=30), operation_name="slow"
            )

        assert time.monotonic() - started < 5
        assert operation.calls == 1

    @pytest.mark.asyncio
    async def test_call_timeout_is_transient(self) -> None:
        executor = RetryExecutor(CancellationToken(), call_timeout_seconds=0.05)

        with pytest.raises(RetryExhaustedError) as exc_info:
            await executor.execute(lambda: time.sleep(0.3), fast(1), operation_name="hang")

        assert exc_info.value.signature.code == ErrorCode.TRANSIENT_UNAVAILABLE
        assert "timed out" in exc_info.value.signature.message


class TestCancellationToken:
    """Tests for CancellationToken."""

    @pytest.mark.asyncio
    async def test_full_wait_returns_true(self) -> None:
        assert await CancellationToken().wait(0.01) is True

    @pytest.mark.asyncio
    async def test_cancelled_wait_returns_false(self) -> None:
        token = CancellationToken()
        asyncio.get_running_loop().call_later(0.01, token.cancel)
        assert await token.wait(10) is False
        assert token.cancelled is True

    @pytest.mark.asyncio
    async def test_deadline_expires(self) -> None:
        token = CancellationToken(timeout_seconds=0.02)
        assert await token.wait(10) is False
        assert token.expired is True
        assert token.remaining() == 0.0

    def test_unbounded_token_has_no_deadline(self) -> None:
        token = CancellationToken()
        assert token.remaining() is None
        assert token.cancelled is False
