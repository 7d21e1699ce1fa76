"""Retry helpers for calls into the persistence boundary."""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import TypeVar

from core.config import Settings
from core.errors import ConflictError, TransientStorageError

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def retry_transient(
    operation: Callable[[], Awaitable[T]],
    *,
    attempts: int,
    delay: float,
    label: str,
) -> T:
    """
    Run ``operation`` retrying TransientStorageError with exponential backoff.

    Args:
        operation: zero-argument coroutine factory, called once per attempt
        attempts: total attempts, at least one
        delay: base delay in seconds, doubled after every failure
        label: name used in log lines

    Returns:
        Whatever ``operation`` returns on its first successful attempt
    """
    attempts = max(1, attempts)
    for attempt in range(1, attempts + 1):
        try:
            return await operation()
        except TransientStorageError as e:
            if attempt >= attempts:
                logger.error(f"{label} failed after {attempts} attempts: {e}")
                raise
            wait = delay * (2 ** (attempt - 1))
            logger.warning(
                f"{label} attempt {attempt}/{attempts} failed: {e}, retrying in {wait:.2f}s..."
            )
            await asyncio.sleep(wait)
    raise AssertionError("unreachable")


async def retry_conflicts(
    operation: Callable[[], Awaitable[T]],
    *,
    attempts: int,
    label: str,
) -> T:
    """
    Re-run ``operation`` when a concurrent writer wins the optimistic check.

    The operation must re-read current state on every call.
    """
    attempts = max(1, attempts)
    for attempt in range(1, attempts + 1):
        try:
            return await operation()
        except ConflictError as e:
            if attempt >= attempts:
                logger.error(f"{label} kept conflicting after {attempts} attempts: {e}")
                raise
            logger.debug(f"{label} conflict on attempt {attempt}, re-reading state")
            await asyncio.sleep(0)
    raise AssertionError("unreachable")


class RetryPolicy:
    """Retry settings bound once and shared by the battle services."""

    def __init__(self, settings: Settings) -> None:
        self.attempts = settings.storage_retry_attempts
        self.delay = settings.storage_retry_delay
        self.conflict_attempts = settings.conflict_retries

    async def transient(self, operation: Callable[[], Awaitable[T]], label: str) -> T:
        return await retry_transient(
            operation, attempts=self.attempts, delay=self.delay, label=label
        )

    async def conflicts(self, operation: Callable[[], Awaitable[T]], label: str) -> T:
        return await retry_conflicts(operation, attempts=self.conflict_attempts, label=label)
