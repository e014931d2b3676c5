# file: tests/test_dispatch.py
import asyncio
import pytest

from agents.quota import DispatchQuotaPolicy
from app.config import Settings
from app.errors import QuotaExceeded, RemoteServiceError, RunStateError
from app.schema import JobState, Priority, SearchQuery, SendReceipt, Supplier, SupplierStatus
from app.services.dispatch import DispatchQueue, RateLimiter
from app.services.store import SearchStore
from app.tools.mailer import prepare_message

RUN = "SEARCH_Q"
SETTINGS = Settings(sendgrid_api_key="", notification_recipients=[])


async def seeded_store(priorities):
    store = SearchStore()
    await store.create_run(RUN, SearchQuery(product_description="LED panel lights 600x600"))
    suppliers = [
        Supplier(id=f"{RUN}-S{i + 1:03d}", search_id=RUN, company_name=f"Supplier {i + 1} Co., Ltd.",
                 email=f"sales@supplier{i + 1}-led.com", priority=p)
        for i, p in enumerate(priorities)
    ]
    await store.add_suppliers(RUN, suppliers)
    return store, suppliers


def message(supplier):
    return prepare_message(supplier, f"Inquiry for {supplier.company_name}", "Please quote 500 units.", SETTINGS)


def make_queue(store, send, delays=None, daily_limit=100, **kwargs):
    async def sleep(delay):
        if delays is not None:
            delays.append(delay)
        await asyncio.sleep(0)

    quota = DispatchQuotaPolicy(store, daily_limit=daily_limit, interval_seconds=0)
    return DispatchQueue(send, store, quota, sleep=sleep, **kwargs)


class ScriptedSend:
    """Send fake: per supplier id, a list of outcomes (exception or None for success), consumed in order."""

    def __init__(self, script=None):
        self.script = script or {}
        self.calls = []

    async def __call__(self, message):
        sid = message.metadata.supplier_id
        self.calls.append(sid)
        outcomes = self.script.get(sid, [])
        outcome = outcomes.pop(0) if outcomes else None
        if outcome is not None:
            raise outcome
        return SendReceipt(status_code=202, provider_message_id=f"sg-{len(self.calls)}")


@pytest.mark.asyncio
async def test_high_priority_jobs_start_first_fifo_within_tier():
    store, (n1, h1, n2, h2) = await seeded_store(
        [Priority.NORMAL, Priority.HIGH, Priority.NORMAL, Priority.HIGH])
    send = ScriptedSend()
    queue = make_queue(store, send)

    for s in (n1, h1, n2, h2):
        await queue.enqueue(message(s), RUN, s.id, s.priority)
    queue.start()
    await queue.drain()

    assert send.calls == [h1.id, h2.id, n1.id, n2.id]
    assert queue.counts().completed == 4
    sent = await store.get_supplier(RUN, h1.id)
    assert sent.status == SupplierStatus.SENT
    assert sent.emails_sent == 1
    assert sent.conversation_history[-1].direction == "outbound"
    assert sent.conversation_history[-1].message_id == "sg-1"
    await queue.close()


@pytest.mark.asyncio
async def test_transient_failure_is_retried_with_backoff():
    store, (s1,) = await seeded_store([Priority.HIGH])
    send = ScriptedSend({s1.id: [RemoteServiceError("service unavailable", status=503)]})
    delays = []
    queue = make_queue(store, send, delays)
    completed = []
    queue.on_completed(completed.append)

    job = await queue.enqueue(message(s1), RUN, s1.id, s1.priority)
    queue.start()
    await queue.drain()

    assert queue.jobs[job.id].state == JobState.COMPLETED
    assert queue.jobs[job.id].attempts_made == 2
    assert delays == [2.0]
    assert len(completed) == 1 and completed[0].receipt.provider_message_id == "sg-2"
    assert queue.counts().failed == 0
    await queue.close()


@pytest.mark.asyncio
async def test_exhausted_retries_end_in_failed():
    store, (s1,) = await seeded_store([Priority.NORMAL])
    busy = RemoteServiceError("too many requests", status=429)
    send = ScriptedSend({s1.id: [busy, busy, busy]})
    delays = []
    queue = make_queue(store, send, delays)

    job = await queue.enqueue(message(s1), RUN, s1.id)
    queue.start()
    await queue.drain()

    assert queue.jobs[job.id].state == JobState.FAILED
    assert queue.jobs[job.id].attempts_made == 3
    assert delays == [2.0, 4.0]
    await queue.close()


@pytest.mark.asyncio
async def test_fatal_failure_marks_supplier_and_notifies():
    store, (s1, s2) = await seeded_store([Priority.NORMAL, Priority.NORMAL])
    send = ScriptedSend({s1.id: [RemoteServiceError("invalid recipient", status=400)]})
    queue = make_queue(store, send)
    failed = []
    queue.on_failed(failed.append)

    def broken_handler(event):
        raise RuntimeError("subscriber bug")
    queue.on_completed(broken_handler)

    for s in (s1, s2):
        await queue.enqueue(message(s), RUN, s.id)
    queue.start()
    await queue.drain()

    assert len(failed) == 1 and failed[0].retryable is False
    assert failed[0].job.attempts_made == 1
    supplier = await store.get_supplier(RUN, s1.id)
    assert supplier.status == SupplierStatus.FAILED
    assert "Send failed: invalid recipient" in supplier.notes
    assert supplier.conversation_history[-1].direction == "system"
    # the broken subscriber did not stop the second job
    assert (await store.get_supplier(RUN, s2.id)).status == SupplierStatus.SENT
    assert [r.status for r in store.sends] == ["failed", "sent"]
    await queue.close()


@pytest.mark.asyncio
async def test_enqueue_rejected_when_quota_is_used_up():
    store, (s1,) = await seeded_store([Priority.HIGH])
    queue = make_queue(store, ScriptedSend(), daily_limit=0)

    with pytest.raises(QuotaExceeded):
        await queue.enqueue(message(s1), RUN, s1.id, s1.priority)
    assert queue.jobs == {}


@pytest.mark.asyncio
async def test_closed_queue_refuses_jobs():
    store, (s1,) = await seeded_store([Priority.HIGH])
    queue = make_queue(store, ScriptedSend())
    queue.start()
    await queue.close()

    with pytest.raises(RunStateError):
        await queue.enqueue(message(s1), RUN, s1.id)


@pytest.mark.asyncio
async def test_stalled_job_is_requeued_and_worker_restarted():
    store, (s1,) = await seeded_store([Priority.HIGH])
    hang = asyncio.Event()
    calls = []

    async def send(msg):
        calls.append(msg.metadata.supplier_id)
        if len(calls) == 1:
            await hang.wait()
        return SendReceipt(status_code=202, provider_message_id="sg-after-stall")

    queue = make_queue(store, send)
    stalled = []
    queue.on_stalled(stalled.append)
    job = await queue.enqueue(message(s1), RUN, s1.id, s1.priority)
    queue.start()
    while not calls:
        await asyncio.sleep(0)

    queue._worker.cancel()
    while not stalled:
        await asyncio.sleep(0)
    await queue.drain()

    assert len(stalled) == 1 and stalled[0].job.id == job.id
    assert queue.jobs[job.id].state == JobState.COMPLETED
    assert queue.jobs[job.id].attempts_made == 2
    assert queue.running
    await queue.close()


@pytest.mark.asyncio
async def test_health_reports_counts_and_limits():
    store, (s1,) = await seeded_store([Priority.HIGH])
    queue = make_queue(store, ScriptedSend(), daily_limit=50, rate_limit=7)
    await queue.enqueue(message(s1), RUN, s1.id, s1.priority)

    health = await queue.health()
    assert health.counts.waiting == 1
    assert health.daily.daily_limit == 50 and health.daily.remaining == 50
    assert health.limits["per_minute"] == 7
    assert health.name == "email-sending"


@pytest.mark.asyncio
async def test_rate_limiter_defers_the_extra_start():
    now = [100.0]
    waits = []

    async def sleep(delay):
        waits.append(delay)
        now[0] += delay

    limiter = RateLimiter(max_starts=2, window=60, clock=lambda: now[0], sleep=sleep)
    assert await limiter.acquire() == 0.0
    now[0] += 5
    assert await limiter.acquire() == 0.0
    waited = await limiter.acquire()

    assert waited == pytest.approx(55.0)
    assert waits == [pytest.approx(55.0)]


@pytest.mark.asyncio
async def test_burst_admission_never_sends_past_the_daily_cap():
    store, suppliers = await seeded_store([Priority.HIGH] * 4)
    send = ScriptedSend()
    queue = make_queue(store, send, daily_limit=2)

    for s in suppliers:
        await queue.enqueue(message(s), RUN, s.id, s.priority)
    queue.start()
    await queue.drain()

    stats = await queue.quota.daily_stats()
    assert stats.sent == 2 and stats.remaining == 0
    assert send.calls == [suppliers[0].id, suppliers[1].id]
    assert [queue.jobs[f"{queue.name}-{i}"].state for i in (3, 4)] == [JobState.FAILED] * 2
    assert queue.jobs[f"{queue.name}-3"].attempts_made == 0
    refused = await store.get_supplier(RUN, suppliers[2].id)
    assert refused.status == SupplierStatus.FAILED
    assert "Daily email limit reached" in refused.notes
    await queue.close()
