"""Retry utilities for transient I/O.

Stream writes and blob uploads are retried a bounded number of times with a
short fixed wait. Exhausting the attempts re-raises the last underlying error
to the caller.

Implementation: Uses tenacity library internally for battle-tested retry logic.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Optional, Tuple, Type, TypeVar

import tenacity

logger = logging.getLogger(__name__)

__all__ = ["RetryConfig", "retry_operation"]

T = TypeVar("T")


class RetryConfig:
    """Configuration for retry behavior.

    Defaults match the loader's I/O policy: 3 attempts, fixed 1 second wait.
    """

    def __init__(
        self,
        max_attempts: int = 3,
        backoff_seconds: float = 1.0,
        retry_exceptions: Tuple[Type[BaseException], ...] = (Exception,),
        retry_if: Optional[Callable[[BaseException], bool]] = None,
    ):
        self.max_attempts = max_attempts
        self.backoff_seconds = backoff_seconds
        self.retry_exceptions = retry_exceptions
        self.retry_if = retry_if

    def retry_condition(self) -> Any:
        condition = tenacity.retry_if_exception_type(self.retry_exceptions)
        if self.retry_if is not None:
            condition = condition & tenacity.retry_if_exception(self.retry_if)
        return condition


def _before_sleep(
    log: logging.Logger, operation_name: str, max_attempts: int
) -> Callable[[tenacity.RetryCallState], None]:
    def handler(retry_state: tenacity.RetryCallState) -> None:
        exception = retry_state.outcome.exception() if retry_state.outcome else None
        log.warning(
            "%s attempt %d/%d failed: %s. Retrying in %.1fs...",
            operation_name,
            retry_state.attempt_number,
            max_attempts,
            exception,
            retry_state.next_action.sleep if retry_state.next_action else 0,
        )

    return handler


def retry_operation(
    operation: Callable[[], T],
    config: RetryConfig,
    operation_name: str = "operation",
) -> T:
    """Execute an operation with retry logic.

    Args:
        operation: Callable to execute
        config: Retry configuration
        operation_name: Name for logging

    Returns:
        Result of the operation

    Example:
        result = retry_operation(
            lambda: client.put_record(**request),
            RetryConfig(),
            "put_record",
        )
    """
    retryer = tenacity.Retrying(
        stop=tenacity.stop_after_attempt(config.max_attempts),
        wait=tenacity.wait_fixed(config.backoff_seconds),
        retry=config.retry_condition(),
        before_sleep=_before_sleep(logger, operation_name, config.max_attempts),
        reraise=True,
    )

    try:
        return retryer(operation)
    except Exception:
        logger.error(
            "%s failed after %d attempts",
            operation_name,
            config.max_attempts,
        )
        raise
