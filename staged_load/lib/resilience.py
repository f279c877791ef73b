"""Retry of whole synchronization runs.

A run never retries internally: a failed run closes its lineage entry as
failed and leaves the cutoff untouched, so re-invoking the full state
machine is always safe. These helpers do that re-invocation for the CLI and
``run_many``, only for failures that can be expected to go away.

Backoff and stop conditions come from tenacity.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Optional

import tenacity
from tenacity.wait import wait_base

from staged_load.lib.errors import SyncError, error_headline

logger = logging.getLogger(__name__)

__all__ = ["RetryConfig", "is_retryable", "retry_operation"]


def is_retryable(error: Optional[BaseException]) -> bool:
    """Transient sync failures only; conflicts and bad config never retry."""
    return isinstance(error, SyncError) and error.retryable


class RetryConfig:
    """Configuration for retry behavior.

    Use with run methods that accept a retry_config parameter.
    """

    def __init__(
        self,
        max_attempts: int = 3,
        backoff_seconds: float = 1.0,
        exponential: bool = True,
        jitter: bool = True,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.max_attempts = max_attempts
        self.backoff_seconds = backoff_seconds
        self.exponential = exponential
        self.jitter = jitter

    @classmethod
    def none(cls) -> "RetryConfig":
        """No retry - fail immediately."""
        return cls(max_attempts=1)

    @classmethod
    def default(cls) -> "RetryConfig":
        """Default retry: 3 attempts with exponential backoff."""
        return cls()

    @classmethod
    def aggressive(cls) -> "RetryConfig":
        """Aggressive retry: 5 attempts with longer backoff."""
        return cls(max_attempts=5, backoff_seconds=5.0)

    def wait_strategy(self) -> wait_base:
        strategy: wait_base
        if self.exponential:
            # multiplier * 2^(attempt-1)
            strategy = tenacity.wait_exponential(
                multiplier=self.backoff_seconds, min=self.backoff_seconds
            )
        else:
            strategy = tenacity.wait_fixed(self.backoff_seconds)

        if self.jitter:
            strategy = strategy + tenacity.wait_random(0, self.backoff_seconds * 0.5)
        return strategy

    def __repr__(self) -> str:
        return (
            f"RetryConfig(max_attempts={self.max_attempts}, "
            f"backoff_seconds={self.backoff_seconds})"
        )


def retry_operation(
    operation: Callable[[], Any],
    config: RetryConfig,
    operation_name: str = "operation",
    *,
    retry_on: Callable[[BaseException], bool] = is_retryable,
    retry_on_result: Optional[Callable[[Any], bool]] = None,
) -> Any:
    """Execute an operation with retry logic.

    Args:
        operation: Callable to execute
        config: Retry configuration
        operation_name: Name for logging
        retry_on: Which raised exceptions are worth another attempt
        retry_on_result: Which returned values are worth another attempt;
            once attempts run out the last value is returned

    Returns:
        Result of the operation

    Example:
        result = retry_operation(
            lambda: job.run(raise_on_failure=False),
            RetryConfig.default(),
            "order_details",
            retry_on_result=lambda r: is_retryable(r.error),
        )
    """

    def before_sleep_handler(retry_state: tenacity.RetryCallState) -> None:
        """Log retry attempts."""
        outcome = retry_state.outcome
        if outcome is None:
            reason: Any = None
        elif outcome.failed:
            reason = outcome.exception()
        else:
            reason = getattr(outcome.result(), "error", outcome.result())
        logger.warning(
            "%s attempt %d/%d failed: %s. Retrying in %.1fs...",
            operation_name,
            retry_state.attempt_number,
            config.max_attempts,
            error_headline(reason) if reason is not None else "unknown",
            retry_state.next_action.sleep if retry_state.next_action else 0,
        )

    condition = tenacity.retry_if_exception(retry_on)
    if retry_on_result is not None:
        condition = condition | tenacity.retry_if_result(retry_on_result)

    def last_result(retry_state: tenacity.RetryCallState) -> Any:
        logger.error(
            "%s failed after %d attempts", operation_name, retry_state.attempt_number
        )
        if retry_state.outcome is None:
            raise RuntimeError(f"{operation_name} finished without an outcome")
        return retry_state.outcome.result()

    retryer = tenacity.Retrying(
        stop=tenacity.stop_after_attempt(config.max_attempts),
        wait=config.wait_strategy(),
        retry=condition,
        before_sleep=before_sleep_handler,
        retry_error_callback=last_result,
    )
    return retryer(operation)
