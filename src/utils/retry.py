"""Retry policy with exponential backoff, attempt cap and per-attempt timeout.

Shared by the aggregator's store calls and the change feed's reconnect loop so
both follow the same backoff schedule.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Iterator, Optional, Tuple, Type


logger = logging.getLogger(__name__)


class RetryExhaustedError(Exception):
    """Raised when every attempt allowed by a RetryPolicy has failed."""

    def __init__(self, description: str, attempts: int, last_error: BaseException):
        self.description = description
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(f"{description} failed after {attempts} attempt(s): {last_error}")


@dataclass
class RetryPolicy:
    """Configurable retry/backoff policy.

    ``max_retries`` counts retries after the first attempt, so a policy with
    ``max_retries=2`` makes at most three attempts. Delays grow as
    ``retry_delay * 2 ** attempt`` and are capped at ``max_delay``.
    """
    max_retries: int = 3
    retry_delay: float = 1.0
    max_delay: float = 30.0
    timeout: Optional[float] = None
    retry_on: Tuple[Type[BaseException], ...] = (Exception,)

    def __post_init__(self):
        if self.max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        if self.retry_delay < 0:
            raise ValueError("retry_delay must be >= 0")

    @property
    def max_attempts(self) -> int:
        return self.max_retries + 1

    def delay_for(self, attempt: int) -> float:
        """Backoff before retry number ``attempt`` (0-based)."""
        return min(self.retry_delay * (2 ** attempt), self.max_delay)

    def delays(self) -> Iterator[float]:
        """Yield the sleep before each retry, in order."""
        for attempt in range(self.max_retries):
            yield self.delay_for(attempt)

    async def call(
        self,
        func: Callable[..., Awaitable[Any]],
        *args: Any,
        description: str = "operation",
        **kwargs: Any,
    ) -> Any:
        """
        Await ``func(*args, **kwargs)`` until it succeeds or attempts run out.

        Each attempt is bounded by ``timeout``; a timeout counts as a failed
        attempt. Exceptions outside ``retry_on`` propagate immediately.

        Raises:
            RetryExhaustedError: when the last allowed attempt fails
        """
        last_error: Optional[BaseException] = None

        for attempt in range(self.max_attempts):
            try:
                if self.timeout is not None:
                    return await asyncio.wait_for(func(*args, **kwargs), timeout=self.timeout)
                return await func(*args, **kwargs)
            except asyncio.CancelledError:
                raise
            except asyncio.TimeoutError as e:
                last_error = e
            except self.retry_on as e:
                last_error = e

            if attempt < self.max_retries:
                delay = self.delay_for(attempt)
                logger.debug(
                    f"{description} attempt {attempt + 1}/{self.max_attempts} failed "
                    f"({last_error!r}); retrying in {delay:.2f}s"
                )
                await asyncio.sleep(delay)

        raise RetryExhaustedError(description, self.max_attempts, last_error)
