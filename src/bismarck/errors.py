"""Error handling infrastructure for the Bismarck engine.

This module defines the engine's error kinds and the retry logic used for
agent invocations. Errors local to one task (agent failures, exhausted critic
budgets, git failures) are recorded on that task and never abort a plan.
Plan-level errors (persistence failures) halt the scheduler for that plan.

Transient errors (rate limits, timeouts, connection errors, 5xx) are retried
with exponential backoff. Fatal errors (invalid API key, 401, 403) halt
immediately.
"""

import asyncio
import random
from typing import Awaitable, Callable, Iterable, Optional, TypeVar

T = TypeVar("T")


# =============================================================================
# Exception Classes
# =============================================================================


class BismarckError(Exception):
    """Base exception for all engine errors."""

    def __init__(
        self,
        message: str,
        task_id: Optional[str] = None,
        original_error: Optional[Exception] = None,
    ):
        super().__init__(message)
        self.message = message
        self.task_id = task_id
        self.original_error = original_error


class MalformedGraph(BismarckError):
    """Task dependency input is cyclic or references unknown tasks.

    Fatal to the build call only; callers must not feed cyclic input.
    """

    def __init__(self, message: str, task_ids: Iterable[str] = ()):
        super().__init__(message)
        self.task_ids = sorted(task_ids)


class WorktreeConflict(BismarckError):
    """A worktree was reused across tasks or released while under review."""

    pass


class AgentFailure(BismarckError):
    """A worker reported failure, crashed, or could not be started."""

    pass


class CriticIterationExhausted(BismarckError):
    """The critic rejected a task more times than the fix-up budget allows."""

    def __init__(self, message: str, task_id: Optional[str] = None, iterations: int = 0):
        super().__init__(message, task_id=task_id)
        self.iterations = iterations


class TimeoutOnCancel(BismarckError):
    """A worker did not acknowledge a stop request within the grace period.

    Surfaced as a warning; cancellation proceeds with forced cleanup.
    """

    pass


class PersistenceError(BismarckError):
    """A durable write failed. Fatal to the plan being scheduled."""

    pass


class InvalidTransition(BismarckError):
    """A command is not allowed in the current plan or loop status."""

    pass


class NotFound(BismarckError):
    """An unknown plan or loop id was referenced."""

    pass


class ConfigError(BismarckError):
    """Configuration could not be loaded or failed validation."""

    pass


class TransientError(BismarckError):
    """Error that is transient and can be retried.

    Examples: rate limits (429), server errors (5xx), timeouts, connection errors.
    """

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        original_error: Optional[Exception] = None,
    ):
        super().__init__(message, original_error=original_error)
        self.status_code = status_code


class FatalError(BismarckError):
    """Error that is fatal and should halt immediately.

    Examples: invalid API key (401), forbidden (403), permission denied.
    """

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        original_error: Optional[Exception] = None,
    ):
        super().__init__(message, original_error=original_error)
        self.status_code = status_code


class MaxRetriesExhaustedError(BismarckError):
    """Error raised when max retry attempts have been exhausted."""

    def __init__(
        self,
        message: str,
        attempts: int,
        last_error: Optional[Exception] = None,
    ):
        super().__init__(message, original_error=last_error)
        self.attempts = attempts
        self.last_error = last_error


# =============================================================================
# Error Classification
# =============================================================================

# HTTP status codes that are transient (retryable)
TRANSIENT_STATUS_CODES = {429, 500, 502, 503, 504}

# HTTP status codes that are fatal (non-retryable)
FATAL_STATUS_CODES = {401, 403}

# Python exception types that are always fatal
FATAL_EXCEPTION_TYPES = (
    PermissionError,
    FileNotFoundError,
)

# Engine errors that describe a decision already taken, never worth retrying
NON_RETRYABLE_ENGINE_ERRORS = (
    MalformedGraph,
    WorktreeConflict,
    InvalidTransition,
    NotFound,
    ConfigError,
    PersistenceError,
)


def is_transient_error(error: Exception) -> bool:
    """Classify error as transient (retry) or fatal (halt).

    Classification rules:
        - FatalError and non-retryable engine errors: fatal
        - TransientError: transient
        - PermissionError, FileNotFoundError: fatal
        - TimeoutError, ConnectionError: transient
        - status_code 429/5xx transient, 401/403 fatal
        - Unknown errors: treated as transient (retry)
    """
    if isinstance(error, FatalError):
        return False

    if isinstance(error, TransientError):
        if error.status_code in FATAL_STATUS_CODES:
            return False
        return True

    if isinstance(error, NON_RETRYABLE_ENGINE_ERRORS):
        return False

    if isinstance(error, FATAL_EXCEPTION_TYPES):
        return False

    if isinstance(error, (TimeoutError, ConnectionError)):
        return True

    status_code = getattr(error, "status_code", None)
    if status_code in FATAL_STATUS_CODES:
        return False
    if status_code in TRANSIENT_STATUS_CODES:
        return True

    return True


# =============================================================================
# Retry Handler
# =============================================================================


class RetryHandler:
    """Handles retry logic with exponential backoff for transient errors.

    Attributes:
        base_delay: Initial delay in seconds between retries.
        max_delay: Maximum delay in seconds (caps exponential growth).
        jitter: Random jitter factor (0-1) to add to delays.
    """

    def __init__(
        self,
        base_delay: float = 1.0,
        max_delay: float = 60.0,
        jitter: float = 0.5,
    ):
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.jitter = jitter

    async def execute_with_retry_async(
        self,
        func: Callable[[], Awaitable[T]],
        max_attempts: int = 3,
    ) -> T:
        """Execute async function with exponential backoff retry on transient errors.

        Args:
            func: The async function to execute.
            max_attempts: Maximum number of attempts before giving up.

        Returns:
            The return value of the function if successful.

        Raises:
            FatalError: If a fatal error occurs (halts immediately).
            MaxRetriesExhaustedError: If max_attempts are exhausted.
        """
        last_error: Optional[Exception] = None

        for attempt in range(1, max_attempts + 1):
            try:
                return await func()
            except Exception as e:
                last_error = e

                if not is_transient_error(e):
                    raise

                if attempt >= max_attempts:
                    break

                await asyncio.sleep(self._calculate_delay(attempt))

        raise MaxRetriesExhaustedError(
            message=f"Max retries exhausted after {max_attempts} attempts",
            attempts=max_attempts,
            last_error=last_error,
        )

    def _calculate_delay(self, attempt: int) -> float:
        """Calculate delay for the given attempt number.

        Uses exponential backoff with jitter: delay = base_delay * 2^(attempt-1)
        """
        delay = min(self.base_delay * (2 ** (attempt - 1)), self.max_delay)

        # Random factor between 1-jitter and 1+jitter
        jitter_factor = 1.0 + (random.random() * 2 - 1) * self.jitter
        return delay * jitter_factor
