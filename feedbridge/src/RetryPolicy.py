"""RetryPolicy: Bounded retry shared by executor calls and price pushes.

With the defaults, a failed attempt is retried immediately. Setting
``backoff_base`` enables capped exponential backoff between attempts:
``min(backoff_base * backoff_factor ** attempt, backoff_max)``.

.. code-block:: python

    >>> policy = RetryPolicy(max_attempts=3, backoff_base=1.0)
    >>> [policy.delay_for(a) for a in range(3)]
    [1.0, 1.5, 2.25]
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RetryExhausted(Exception):
    """Raised when every attempt of an operation failed.

    :ivar attempts: Number of attempts made.
    """

    def __init__(self, description: str, attempts: int) -> None:
        self.attempts = attempts
        super().__init__(f"{description} failed after {attempts} attempts")


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded retry configuration.

    :ivar max_attempts: Total attempts, including the first.
    :ivar backoff_base: Delay after the first failure; 0 retries immediately.
    :ivar backoff_factor: Growth factor per attempt.
    :ivar backoff_max: Upper bound on any single delay.
    """

    max_attempts: int = 3
    backoff_base: float = 0.0
    backoff_factor: float = 1.5
    backoff_max: float = 5.0

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.backoff_base < 0:
            raise ValueError("backoff_base must not be negative")

    def delay_for(self, attempt: int) -> float:
        """Delay to wait after the given zero-based failed attempt."""
        if self.backoff_base <= 0:
            return 0.0
        return min(self.backoff_base * (self.backoff_factor ** attempt), self.backoff_max)

    async def wait(self, attempt: int) -> None:
        delay = self.delay_for(attempt)
        if delay > 0:
            await asyncio.sleep(delay)

    async def run(
        self,
        operation: Callable[[], Awaitable[T]],
        description: str = "operation",
        retry_on: tuple[type[BaseException], ...] = (Exception,),
    ) -> T:
        """Run ``operation`` until it succeeds or attempts run out.

        :param operation: Zero-argument coroutine factory.
        :param description: Name used in log messages.
        :param retry_on: Exception types that count as a failed attempt.
        :returns: The operation's result.
        :raises RetryExhausted: If every attempt failed.
        """
        last_error: BaseException | None = None
        for attempt in range(self.max_attempts):
            try:
                return await operation()
            except retry_on as exc:
                last_error = exc
                logger.warning(
                    f"{description} failed: {exc} "
                    f"(attempt {attempt + 1}/{self.max_attempts})"
                )
            if attempt + 1 < self.max_attempts:
                await self.wait(attempt)

        raise RetryExhausted(description, self.max_attempts) from last_error
