# file: tests/test_quota.py
from datetime import date, datetime, timedelta
import pytest

from agents.quota import DispatchQuotaPolicy, warmup_daily_limit
from app.errors import QuotaExceeded
from app.services.store import SearchStore


class Clock:
    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now


def policy(store, clock, sleeps=None, **kwargs):
    async def sleep(delay):
        if sleeps is not None:
            sleeps.append(delay)
    return DispatchQuotaPolicy(store, clock=clock, sleep=sleep, **kwargs)


NOON = datetime.now().astimezone().replace(hour=12, minute=0, second=0, microsecond=0)


def test_warmup_ramp():
    start = date(2026, 3, 1)
    assert warmup_daily_limit(start, start) == 200
    assert warmup_daily_limit(start, start + timedelta(days=7)) == 600
    assert warmup_daily_limit(start, start + timedelta(days=30)) == 1000


@pytest.mark.asyncio
async def test_authorize_is_a_check_not_a_reservation():
    quota = policy(SearchStore(), Clock(NOON), daily_limit=2, interval_seconds=0)
    for _ in range(5):
        await quota.authorize("SEARCH_1")
    stats = await quota.daily_stats()
    assert stats.sent == 0 and stats.remaining == 2


@pytest.mark.asyncio
async def test_limit_reached_after_recorded_sends():
    store = SearchStore()
    quota = policy(store, Clock(NOON), daily_limit=2, interval_seconds=0)
    await quota.record_sent("SEARCH_1", "SEARCH_1-S001")
    await quota.record_sent("SEARCH_1", "SEARCH_1-S002")

    with pytest.raises(QuotaExceeded) as exc:
        await quota.authorize("SEARCH_1")
    assert exc.value.code == "daily_quota_exceeded"
    assert exc.value.details == {"sent": 2, "daily_limit": 2}
    assert len([s for s in store.sends if s.status == "sent"]) == 2


@pytest.mark.asyncio
async def test_counter_seeds_from_store_and_resets_next_day():
    store = SearchStore()
    await store.record_send("SEARCH_0", "SEARCH_0-S001", "sent", at=NOON - timedelta(hours=1))
    await store.record_send("SEARCH_0", "SEARCH_0-S002", "failed", error="bounced", at=NOON - timedelta(hours=1))
    clock = Clock(NOON)
    quota = policy(store, clock, daily_limit=1, interval_seconds=0)

    with pytest.raises(QuotaExceeded):
        await quota.authorize()
    stats = await quota.daily_stats()
    assert (stats.sent, stats.failed, stats.total) == (1, 1, 2)

    clock.now = NOON + timedelta(days=1)
    await quota.authorize()
    assert (await quota.daily_stats()).sent == 0


@pytest.mark.asyncio
async def test_send_interval_waits_out_the_remainder():
    sleeps = []
    clock = Clock(NOON)
    quota = policy(SearchStore(), clock, sleeps, interval_seconds=30)

    assert await quota.await_interval() == 0.0
    await quota.record_sent("SEARCH_1", "SEARCH_1-S001", at=NOON - timedelta(seconds=10))
    assert await quota.await_interval() == pytest.approx(20.0)
    clock.now = NOON + timedelta(seconds=25)
    assert await quota.await_interval() == 0.0
    assert sleeps == [pytest.approx(20.0)]


@pytest.mark.asyncio
async def test_warmup_caps_the_configured_limit():
    today = NOON.date()
    quota = policy(SearchStore(), Clock(NOON), daily_limit=500, sender_created_on=today)
    assert quota.effective_limit() == 200
    assert (await quota.daily_stats()).daily_limit == 200

