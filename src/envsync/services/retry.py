"""Capped exponential backoff for idempotent remote reads.

Writes are never retried here; the only write retry envsync performs is
the single key-id renegotiation in the synchroniser.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import TypeVar

from envsync.core.config import SyncSettings
from envsync.core.errors import RemoteError

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_ATTEMPTS = 3
DEFAULT_BASE_DELAY = 0.5
DEFAULT_MAX_DELAY = 4.0


@dataclass(frozen=True)
class RetryPolicy:
    """How often and how long to wait before retrying a read.

    Delay before retry N (1-based) is base_delay * 2^(N-1), capped at
    max_delay. Only errors flagged `retriable` are retried.
    """

    attempts: int = DEFAULT_ATTEMPTS
    base_delay: float = DEFAULT_BASE_DELAY
    max_delay: float = DEFAULT_MAX_DELAY
    sleep: Callable[[float], Awaitable[None]] = field(default=asyncio.sleep, repr=False)

    @classmethod
    def from_settings(cls, settings: SyncSettings) -> RetryPolicy:
        return cls(
            attempts=settings.retry_attempts,
            base_delay=settings.retry_base_delay,
            max_delay=settings.retry_max_delay,
        )

    @classmethod
    def none(cls) -> RetryPolicy:
        """A policy that makes a single attempt."""
        return cls(attempts=1)

    def delay_for(self, attempt: int) -> float:
        """Backoff after the given failed attempt (1-based)."""
        return min(self.max_delay, self.base_delay * (2 ** (attempt - 1)))

    async def run(self, operation: Callable[[], Awaitable[T]], description: str) -> T:
        """Run an idempotent operation, retrying transient remote failures.

        Raises:
            RemoteError: The last error once attempts are exhausted, or the
                first non-retriable one.
        """
        attempt = 1
        while True:
            try:
                return await operation()
            except RemoteError as e:
                if not e.retriable or attempt >= self.attempts:
                    raise
                delay = self.delay_for(attempt)
                logger.warning(
                    "%s failed (attempt %d/%d): %s; retrying in %.2fs",
                    description,
                    attempt,
                    self.attempts,
                    e.message,
                    delay,
                )
                await self.sleep(delay)
                attempt += 1
