# file: app/tools/retry.py
from __future__ import annotations
import asyncio
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional

import aiohttp

RETRYABLE_STATUS = {429}


@dataclass
class FailedAttempt:
    attempt: int
    attempts: int
    error: BaseException
    retryable: bool
    delay: float


def is_retryable(exc: BaseException) -> bool:
    """Transient network failures, 429 and 5xx answers are worth another try."""
    if isinstance(exc, asyncio.CancelledError):
        return False
    if isinstance(exc, (asyncio.TimeoutError, TimeoutError, ConnectionResetError)):
        return True
    if isinstance(exc, aiohttp.ClientResponseError):
        return exc.status in RETRYABLE_STATUS or exc.status >= 500
    if isinstance(exc, (aiohttp.ClientConnectionError, aiohttp.ClientPayloadError)):
        return True
    status = getattr(exc, "status", None)
    if isinstance(status, int):
        return status in RETRYABLE_STATUS or status >= 500
    return False


@dataclass
class RetryPolicy:
    attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 4.0
    classify: Callable[[BaseException], bool] = is_retryable
    on_failed_attempt: Optional[Callable[[FailedAttempt], Any]] = None
    sleep: Callable[[float], Awaitable[Any]] = field(default=asyncio.sleep)

    def delay_for(self, attempt: int) -> float:
        """Delay before retry number `attempt` (1-based)."""
        return min(self.max_delay, self.base_delay * (2 ** (attempt - 1)))

    async def execute(self, operation: Callable[..., Awaitable[Any]], *args, **kwargs) -> Any:
        attempt = 0
        while True:
            attempt += 1
            try:
                return await operation(*args, **kwargs)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                retryable = self.classify(e)
                last = attempt >= self.attempts
                delay = self.delay_for(attempt) if retryable and not last else 0.0
                if self.on_failed_attempt is not None:
                    self.on_failed_attempt(FailedAttempt(attempt, self.attempts, e, retryable, delay))
                if not retryable or last:
                    raise
                await self.sleep(delay)
