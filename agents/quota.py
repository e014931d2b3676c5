# file: agents/quota.py
import asyncio
import logging
from datetime import date, datetime, timezone
from typing import Any, Awaitable, Callable, Optional

from app.errors import QuotaExceeded
from app.schema import DailyStats

log = logging.getLogger("quota")

WARMUP_START_LIMIT = 200
WARMUP_FULL_LIMIT = 1000
WARMUP_DAYS = 14


def warmup_daily_limit(created_on: date, today: date) -> int:
    """New senders ramp linearly from 200/day to 1000/day over two weeks."""
    days = max(0, (today - created_on).days)
    if days >= WARMUP_DAYS:
        return WARMUP_FULL_LIMIT
    step = (WARMUP_FULL_LIMIT - WARMUP_START_LIMIT) / WARMUP_DAYS
    return int(WARMUP_START_LIMIT + step * days)


def local_midnight(now: datetime) -> datetime:
    return now.astimezone().replace(hour=0, minute=0, second=0, microsecond=0)


class DispatchQuotaPolicy:
    """
    Owns the daily sent counter and the last-sent timestamp.

    Both values are read and written only under `self._lock`. The counter is
    seeded from the store on first use and again whenever the local day rolls over.
    """

    def __init__(self, store, daily_limit: int = 120, interval_seconds: float = 30.0,
                 sender_created_on: Optional[date] = None,
                 clock: Optional[Callable[[], datetime]] = None,
                 sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep):
        self.store = store
        self.daily_limit = daily_limit
        self.interval_seconds = interval_seconds
        self.sender_created_on = sender_created_on
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self.sleep = sleep
        self._lock = asyncio.Lock()
        self._day: Optional[date] = None
        self._sent = 0
        self._failed = 0
        self._last_sent: Optional[datetime] = None
        self._seeded_last = False

    def effective_limit(self, today: Optional[date] = None) -> int:
        today = today or local_midnight(self.clock()).date()
        if self.sender_created_on is None:
            return self.daily_limit
        return min(self.daily_limit, warmup_daily_limit(self.sender_created_on, today))

    async def _refresh(self) -> None:
        # caller holds the lock
        midnight = local_midnight(self.clock())
        if self._day != midnight.date():
            self._day = midnight.date()
            self._sent = await self.store.count_sent_since(midnight)
            self._failed = await self.store.count_failed_since(midnight)
        if not self._seeded_last:
            self._last_sent = await self.store.last_sent_timestamp()
            self._seeded_last = True

    async def authorize(self, run_id: Optional[str] = None) -> None:
        async with self._lock:
            await self._refresh()
            limit = self.effective_limit(self._day)
            if self._sent >= limit:
                log.warning("Daily limit reached (%d/%d) run=%s", self._sent, limit, run_id)
                raise QuotaExceeded(self._sent, limit)

    async def await_interval(self, run_id: Optional[str] = None) -> float:
        """Sleep out the rest of the minimum gap since the last successful send; returns seconds waited."""
        async with self._lock:
            await self._refresh()
            last = self._last_sent
        if last is None or self.interval_seconds <= 0:
            return 0.0
        wait = self.interval_seconds - (self.clock() - last).total_seconds()
        if wait <= 0:
            return 0.0
        log.info("Waiting %.1fs before next send run=%s", wait, run_id)
        await self.sleep(wait)
        return wait

    async def record_sent(self, run_id: str, supplier_id: str, at: Optional[datetime] = None) -> None:
        at = at or self.clock()
        async with self._lock:
            await self._refresh()
            await self.store.record_send(run_id, supplier_id, "sent", at=at)
            self._sent += 1
            if self._last_sent is None or at > self._last_sent:
                self._last_sent = at

    async def record_failed(self, run_id: str, supplier_id: str, error: str) -> None:
        async with self._lock:
            await self._refresh()
            await self.store.record_send(run_id, supplier_id, "failed", error=error, at=self.clock())
            self._failed += 1

    async def daily_stats(self) -> DailyStats:
        async with self._lock:
            await self._refresh()
            limit = self.effective_limit(self._day)
            return DailyStats(sent=self._sent, failed=self._failed, total=self._sent + self._failed,
                              daily_limit=limit, remaining=max(0, limit - self._sent))
