"""Bounded retry with deterministic exponential backoff.

The executor is the only component that waits. Each cloud call runs in the
default thread pool and is bounded by the per-call timeout; between attempts
the executor sleeps on the run's CancellationToken so a SIGINT or the run
deadline aborts the wait promptly.

SAFETY: Destructive operations are never retried implicitly. A policy marked
``destructive`` runs exactly once unless the call site passes
``allow_destructive=True``.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Generic, TypeVar

from azure.core.exceptions import AzureError

from .config import RetrySettings
from .context import CancellationToken
from .errors import (
    CloudError,
    ErrorCode,
    OperationCancelled,
    RetryExhaustedError,
    TransientUnavailable,
    classify_error,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Signatures retried by default
RETRYABLE_CODES: frozenset[ErrorCode] = frozenset(
    {
        ErrorCode.PRINCIPAL_NOT_FOUND,
        ErrorCode.AUTHORIZATION_PENDING,
        ErrorCode.RESOURCE_DELETING,
        ErrorCode.THROTTLED,
        ErrorCode.TRANSIENT_UNAVAILABLE,
    }
)


def is_retryable(error: CloudError) -> bool:
    """Default retry predicate: any transient signature."""
    return error.code in RETRYABLE_CODES


def retry_on(*codes: ErrorCode) -> Callable[[CloudError], bool]:
    """Build a predicate retrying only the given signatures."""
    allowed = frozenset(codes)

    def predicate(error: CloudError) -> bool:
        return error.code in allowed

    return predicate


@dataclass(frozen=True)
class RetryPolicy:
    """Retry configuration for one operation class."""

    max_attempts: int
    base_delay: float
    backoff_multiplier: float = 2.0
    max_delay: float = 60.0
    retryable: Callable[[CloudError], bool] = field(default=is_retryable, compare=False)
    destructive: bool = False

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.base_delay < 0 or self.max_delay < 0:
            raise ValueError("delays cannot be negative")
        if self.backoff_multiplier < 1:
            raise ValueError("backoff_multiplier must be >= 1")

    def delay_for(self, attempt: int) -> float:
        """Delay after failed attempt ``attempt`` (1-based). No jitter."""
        if attempt < 1:
            raise ValueError("attempt is 1-based")
        return min(self.base_delay * self.backoff_multiplier ** (attempt - 1), self.max_delay)

    def schedule(self) -> list[float]:
        """All waits between attempts, in order."""
        return [self.delay_for(n) for n in range(1, self.max_attempts)]


@dataclass(frozen=True)
class RetryPolicies:
    """Policies attached per operation class."""

    creation: RetryPolicy
    role_propagation: RetryPolicy
    identity_propagation: RetryPolicy
    revert: RetryPolicy
    destructive: RetryPolicy

    @classmethod
    def from_settings(cls, settings: RetrySettings) -> RetryPolicies:
        multiplier = settings.backoff_multiplier
        max_delay = settings.max_delay_seconds
        return cls(
            creation=RetryPolicy(
                max_attempts=settings.create_max_attempts,
                base_delay=settings.create_base_delay_seconds,
                backoff_multiplier=multiplier,
                max_delay=max_delay,
            ),
            role_propagation=RetryPolicy(
                max_attempts=settings.role_max_attempts,
                base_delay=settings.role_base_delay_seconds,
                backoff_multiplier=multiplier,
                max_delay=max_delay,
                retryable=retry_on(
                    ErrorCode.PRINCIPAL_NOT_FOUND,
                    ErrorCode.AUTHORIZATION_PENDING,
                    ErrorCode.THROTTLED,
                    ErrorCode.TRANSIENT_UNAVAILABLE,
                ),
            ),
            # Identity visibility is polled at a fixed interval
            identity_propagation=RetryPolicy(
                max_attempts=settings.identity_max_attempts,
                base_delay=settings.identity_base_delay_seconds,
                backoff_multiplier=1.0,
                max_delay=max_delay,
                retryable=retry_on(
                    ErrorCode.PRINCIPAL_NOT_FOUND,
                    ErrorCode.NOT_FOUND,
                    ErrorCode.THROTTLED,
                    ErrorCode.TRANSIENT_UNAVAILABLE,
                ),
            ),
            revert=RetryPolicy(
                max_attempts=settings.create_max_attempts,
                base_delay=settings.create_base_delay_seconds,
                backoff_multiplier=multiplier,
                max_delay=max_delay,
            ),
            destructive=RetryPolicy(
                max_attempts=settings.create_max_attempts,
                base_delay=settings.create_base_delay_seconds,
                backoff_multiplier=multiplier,
                max_delay=max_delay,
                destructive=True,
            ),
        )


@dataclass(frozen=True)
class ExecutionResult(Generic[T]):
    """Value returned by a successful execution plus the attempts it took."""

    value: T
    attempts: int


class RetryExecutor:
    """Runs blocking cloud calls with timeout, classification and backoff."""

    def __init__(self, token: CancellationToken, call_timeout_seconds: float) -> None:
        self._token = token
        self._call_timeout = call_timeout_seconds

    @property
    def token(self) -> CancellationToken:
        return self._token

    async def execute(
        self,
        operation: Callable[[], T],
        policy: RetryPolicy,
        *,
        operation_name: str,
        allow_destructive: bool = False,
    ) -> ExecutionResult[T]:
        """Run ``operation`` until it succeeds or the policy gives up.

        Args:
            operation: Blocking callable; raises AzureError or CloudError on failure.
            policy: Retry policy for this operation class.
            operation_name: Human-readable name for logging and errors.
            allow_destructive: Opt in to retrying a destructive operation.

        Returns:
            ExecutionResult with the operation's return value.

        Raises:
            CloudError: Non-retryable failure, annotated with ``attempts``.
            RetryExhaustedError: Retryable failure persisted past max_attempts.
            OperationCancelled: Token cancelled or run deadline passed.
        """
        max_attempts = policy.max_attempts
        if policy.destructive and not allow_destructive:
            max_attempts = 1

        last_error: CloudError | None = None
        for attempt in range(1, max_attempts + 1):
            if self._token.cancelled:
                raise OperationCancelled(f"{operation_name} cancelled before attempt {attempt}")

            try:
                value = await self._call(operation, operation_name)
                if attempt > 1:
                    logger.info(
                        f"{operation_name} succeeded after retry",
                        extra={"operation": operation_name, "attempts": attempt},
                    )
                return ExecutionResult(value=value, attempts=attempt)
            except CloudError as e:
                e.attempts = attempt
                if not policy.retryable(e):
                    raise
                last_error = e

            if attempt == max_attempts:
                break

            delay = policy.delay_for(attempt)
            logger.warning(
                f"{operation_name} failed, retrying",
                extra={
                    "operation": operation_name,
                    "attempt": attempt,
                    "max_attempts": max_attempts,
                    "wait_seconds": delay,
                    "error_code": last_error.code.value,
                },
            )
            if not await self._token.wait(delay):
                raise OperationCancelled(
                    f"{operation_name} cancelled while waiting after attempt {attempt}"
                )

        # SAFETY: max_attempts >= 1 so the loop ran and recorded an error
        assert last_error is not None, "Retry loop completed without setting last_error"
        logger.error(
            f"{operation_name} exhausted retries",
            extra={
                "operation": operation_name,
                "attempts": max_attempts,
                "error_code": last_error.code.value,
            },
        )
        raise RetryExhaustedError(operation_name, last_error, max_attempts)

    async def _call(self, operation: Callable[[], T], operation_name: str) -> T:
        """Run one attempt in the thread pool, classifying SDK errors.

        SECURITY: Enforces a timeout to prevent indefinite hangs on Azure API calls.
        """
        loop = asyncio.get_running_loop()
        try:
            return await asyncio.wait_for(
                loop.run_in_executor(None, operation),
                timeout=self._call_timeout,
            )
        except TimeoutError as e:
            raise TransientUnavailable(
                f"{operation_name} timed out after {self._call_timeout}s"
            ) from e
        except AzureError as e:
            raise classify_error(e) from e
