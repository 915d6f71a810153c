"""
Read Retry Module

Bounded retry for idempotent storage reads. Only StorageError is retried;
validation, not-found and conflict errors propagate on the first attempt.
Writes must never go through here: a partially applied multi-row write
could be applied twice.
"""

import time
from typing import Callable, TypeVar

from .exceptions import StorageError
from .logging_config import get_logger


logger = get_logger("microloan.retry")

T = TypeVar("T")


def retry_read(operation: Callable[[], T], attempts: int = 3,
               delay_seconds: float = 0.1, description: str = "read") -> T:
    """
    Run a read-only operation, retrying transient storage failures

    Args:
        operation: Zero-argument callable performing the read
        attempts: Total number of attempts (at least 1)
        delay_seconds: Base delay, multiplied by the attempt number
        description: Label used in log lines

    Returns:
        Whatever the operation returns

    Raises:
        StorageError: If every attempt failed
    """
    attempts = max(1, attempts)
    for attempt in range(1, attempts + 1):
        try:
            return operation()
        except StorageError as e:
            if attempt == attempts:
                logger.error(
                    "read_retries_exhausted",
                    extra={"operation": description, "attempts": attempts},
                )
                raise
            logger.warning(
                "read_retry",
                extra={"operation": description, "attempt": attempt, "error": e.message},
            )
            if delay_seconds > 0:
                time.sleep(delay_seconds * attempt)
    # Unreachable: the loop either returns or raises
    raise StorageError(f"{description} failed")
