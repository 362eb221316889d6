"""
Bounded retry with exponential backoff, built on tenacity.

with_retry() wraps a single fallible operation; retry() is the decorator
form. Whether a failure is worth another attempt is decided by a
classification predicate (is_retryable by default). Waits between attempts
go through RunContext.wait() so a cancelled run stops retrying at once.
"""

import functools
import logging
from dataclasses import dataclass
from typing import Callable, Optional, TypeVar

from tenacity import Retrying, retry_if_exception, stop_after_attempt, wait_exponential

from dbkeeper.exceptions import CancelledError, ConfigurationError, IntegrityError
from .context import RunContext, ensure_context


logger = logging.getLogger(__name__)

T = TypeVar('T')

# Substrings (lowercase) that mark misconfiguration rather than a transient fault
NON_RETRYABLE_MESSAGES = (
    'permission denied',
    'access denied',
    'authentication failed',
    'authorization',
    'unauthorized',
    'forbidden',
    'invalid password',
    'credential',
    'does not exist',
)


@dataclass(frozen=True)
class RetryConfig:
    """Backoff parameters. Waits are in seconds."""

    max_attempts: int = 3
    initial_wait: float = 1.0
    max_wait: float = 30.0
    multiplier: float = 2.0


def is_retryable(exc: BaseException) -> bool:
    """
    Decide whether an error is transient.

    Cancellation, configuration and integrity errors are never retried, nor
    is anything whose message mentions a permission, credential or
    missing-object condition.
    """
    if isinstance(exc, (CancelledError, ConfigurationError, IntegrityError)):
        return False

    message = str(exc).lower()
    for needle in NON_RETRYABLE_MESSAGES:
        if needle in message:
            return False

    return True


def with_retry(
    operation: Callable[[], T],
    config: Optional[RetryConfig] = None,
    retryable: Callable[[BaseException], bool] = is_retryable,
    ctx: Optional[RunContext] = None,
    name: str = 'operation'
) -> T:
    """
    Run `operation` up to config.max_attempts times.

    Between attempts waits initial_wait * multiplier^(attempt-1), capped at
    max_wait. The wait is interrupted by ctx cancellation.

    Args:
        operation: Zero-argument callable to attempt
        config: Backoff parameters (default RetryConfig())
        retryable: Predicate deciding whether a failure may be retried
        ctx: Cancellation/deadline signal
        name: Operation name used in log messages

    Returns:
        Whatever `operation` returns on its first successful attempt

    Raises:
        CancelledError: If ctx is cancelled before an attempt or during a wait
        Exception: The first non-retryable error, or the last error once
            attempts are exhausted
    """
    config = config or RetryConfig()
    ctx = ensure_context(ctx)
    max_attempts = max(1, config.max_attempts)

    def log_retry(retry_state):
        logger.warning(
            f"{name} failed, retrying (attempt {retry_state.attempt_number}/{max_attempts}, "
            f"next wait {retry_state.next_action.sleep:.1f}s): {retry_state.outcome.exception()}"
        )

    def attempt():
        ctx.check()
        return operation()

    retrying = Retrying(
        stop=stop_after_attempt(max_attempts),
        wait=wait_exponential(multiplier=config.initial_wait, max=config.max_wait, exp_base=config.multiplier),
        retry=retry_if_exception(retryable),
        sleep=ctx.wait,
        before_sleep=log_retry,
        reraise=True
    )

    try:
        return retrying(attempt)
    except CancelledError:
        raise
    except Exception as e:
        logger.debug(f"{name} gave up: {e}")
        raise


def retry(
    config: Optional[RetryConfig] = None,
    retryable: Callable[[BaseException], bool] = is_retryable,
    name: Optional[str] = None
):
    """
    Decorator form of with_retry().

    The decorated function's `ctx` keyword argument, if given, is used as
    the cancellation signal for the waits.
    """
    def decorator(func):
        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            return with_retry(
                lambda: func(*args, **kwargs),
                config=config,
                retryable=retryable,
                ctx=kwargs.get('ctx'),
                name=name or func.__name__
            )
        return wrapper
    return decorator
