"""
Bounded retry helper for async I/O.

``retry_async`` never raises for failures of the wrapped operation; it
returns a ``RetryResult`` that the caller inspects or ``unwrap()``s.
Attempts and backoff are explicit parameters so every caller states its
own resiliency budget.

Usage:
    result = await retry_async(
        lambda: fetch_rows(urls),
        label="select-existing",
        attempts=3,
        backoff=linear_backoff(0.3),
    )
    rows = result.unwrap()  # raises RetryExhaustedError after the last attempt
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Generic, Optional, Tuple, Type, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

Backoff = Callable[[int], float]


class RetryExhaustedError(Exception):
    """Raised by ``RetryResult.unwrap`` when every attempt failed."""

    def __init__(self, label: str, attempts: int, last_error: BaseException):
        self.label = label
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(f"{label} failed after {attempts} attempts: {last_error}")


@dataclass
class RetryResult(Generic[T]):
    label: str
    attempts: int
    value: Optional[T] = None
    error: Optional[BaseException] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def unwrap(self) -> T:
        if self.error is not None:
            raise RetryExhaustedError(self.label, self.attempts, self.error) from self.error
        return self.value


def linear_backoff(base_seconds: float) -> Backoff:
    """Delay grows with the attempt number: base, 2*base, 3*base ..."""

    def _delay(attempt: int) -> float:
        return base_seconds * attempt

    return _delay


async def retry_async(
    operation: Callable[[], Awaitable[T]],
    *,
    label: str,
    attempts: int = 3,
    backoff: Backoff = linear_backoff(0.3),
    retry_on: Tuple[Type[BaseException], ...] = (Exception,),
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> RetryResult[T]:
    """
    Run ``operation`` up to ``attempts`` times.

    Only exceptions matching ``retry_on`` are retried; anything else
    propagates immediately. The sleep between attempt N and N+1 is
    ``backoff(N)``.
    """
    attempts = max(1, attempts)
    last_error: Optional[BaseException] = None

    for attempt in range(1, attempts + 1):
        try:
            value = await operation()
            return RetryResult(label=label, attempts=attempt, value=value)
        except retry_on as exc:
            last_error = exc
            retrying = attempt < attempts
            logger.warning(
                "operation_failed label=%s attempt=%d retrying=%s error=%s",
                label,
                attempt,
                retrying,
                exc,
            )
            if retrying:
                await sleep(backoff(attempt))

    return RetryResult(label=label, attempts=attempts, error=last_error)
