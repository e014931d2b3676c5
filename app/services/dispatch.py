# file: app/services/dispatch.py
from __future__ import annotations
import asyncio
import heapq
import inspect
import itertools
import logging
import time
from collections import deque
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional, Set

from app.errors import QuotaExceeded, RunStateError
from app.schema import (
    ConversationEvent, DispatchJob, JobCompleted, JobFailed, JobStalled, JobState,
    PreparedMessage, Priority, QueueCounts, QueueHealth, SendReceipt, SupplierStatus, utcnow,
)
from app.tools.retry import RetryPolicy, is_retryable

log = logging.getLogger("dispatch")

Send = Callable[[PreparedMessage], Awaitable[SendReceipt]]
Handler = Callable[[Any], Any]

PRIORITY_RANK = {Priority.HIGH: 1, Priority.NORMAL: 3}
PENDING_STATES = (JobState.WAITING, JobState.ACTIVE, JobState.DELAYED)


class RateLimiter:
    """Rolling window: at most `max_starts` acquisitions in any `window` seconds. Excess callers wait."""

    def __init__(self, max_starts: int = 10, window: float = 60.0,
                 clock: Callable[[], float] = time.monotonic,
                 sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep):
        self.max_starts = max(1, max_starts)
        self.window = window
        self.clock = clock
        self.sleep = sleep
        self._starts: Deque[float] = deque()

    def _expire(self, now: float) -> None:
        while self._starts and self._starts[0] <= now - self.window:
            self._starts.popleft()

    async def acquire(self) -> float:
        waited = 0.0
        while True:
            now = self.clock()
            self._expire(now)
            if len(self._starts) < self.max_starts:
                self._starts.append(now)
                return waited
            delay = self._starts[0] + self.window - now
            await self.sleep(delay)
            waited += delay


class DispatchQueue:
    """
    Priority queue of outbound messages with a single worker.

    High-priority jobs start before Normal ones, FIFO within a tier. Every
    start re-checks the daily quota, then waits on the rolling rate limiter and
    the quota send interval; a job refused by the quota fails without sending.
    Retryable send failures park the job in `delayed` for an exponential
    backoff; fatal or exhausted ones end in `failed` and are kept for inspection.
    """

    def __init__(self, send: Send, store, quota, name: str = "email-sending",
                 rate_limit: int = 10, rate_window: float = 60.0,
                 attempts: int = 3, backoff_seconds: float = 2.0,
                 classify: Callable[[BaseException], bool] = is_retryable,
                 limiter: Optional[RateLimiter] = None,
                 sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep):
        self.name = name
        self.send = send
        self.store = store
        self.quota = quota
        self.sleep = sleep
        self.limiter = limiter or RateLimiter(rate_limit, rate_window)
        # only delay_for() and classify are used; jobs are re-queued instead of blocking the worker
        self.retry = RetryPolicy(attempts=attempts, base_delay=backoff_seconds,
                                 max_delay=float("inf"), classify=classify)
        self.jobs: Dict[str, DispatchJob] = {}
        self._heap: List[tuple] = []
        self._seq = itertools.count(1)
        self._wakeup = asyncio.Event()
        self._idle = asyncio.Event()
        self._idle.set()
        self._worker: Optional[asyncio.Task] = None
        self._timers: Set[asyncio.Task] = set()
        self._active: Optional[str] = None
        self._closing = False
        self._handlers: Dict[str, List[Handler]] = {"completed": [], "failed": [], "stalled": []}

    # ---------- subscriptions ----------

    def _subscribe(self, kind: str, handler: Handler) -> Callable[[], None]:
        self._handlers[kind].append(handler)

        def unsubscribe() -> None:
            if handler in self._handlers[kind]:
                self._handlers[kind].remove(handler)
        return unsubscribe

    def on_completed(self, handler: Handler) -> Callable[[], None]:
        return self._subscribe("completed", handler)

    def on_failed(self, handler: Handler) -> Callable[[], None]:
        return self._subscribe("failed", handler)

    def on_stalled(self, handler: Handler) -> Callable[[], None]:
        return self._subscribe("stalled", handler)

    async def _emit(self, kind: str, event: Any) -> None:
        for handler in list(self._handlers[kind]):
            try:
                result = handler(event)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                log.exception("%s handler failed on queue %s", kind, self.name)

    # ---------- admission ----------

    def _push(self, job: DispatchJob) -> None:
        job.state = JobState.WAITING
        heapq.heappush(self._heap, (PRIORITY_RANK[job.priority], job.sequence, job.id))
        self._idle.clear()
        self._wakeup.set()

    def _refresh_idle(self) -> None:
        if any(j.state in PENDING_STATES for j in self.jobs.values()):
            self._idle.clear()
        else:
            self._idle.set()

    async def enqueue(self, message: PreparedMessage, run_id: str, supplier_id: str,
                      priority: Priority = Priority.NORMAL) -> DispatchJob:
        """Admit a job; raises QuotaExceeded when today's quota is already used up."""
        if self._closing:
            raise RunStateError(f"Queue {self.name} is closed")
        await self.quota.authorize(run_id)
        seq = next(self._seq)
        job = DispatchJob(id=f"{self.name}-{seq}", queue=self.name, run_id=run_id, supplier_id=supplier_id,
                          message=message, priority=priority, sequence=seq)
        self.jobs[job.id] = job
        self._push(job)
        log.info("Queued job %s for supplier %s (priority %s)", job.id, supplier_id, priority.value)
        return job

    def _next(self) -> Optional[DispatchJob]:
        while self._heap:
            _, _, job_id = heapq.heappop(self._heap)
            job = self.jobs[job_id]
            if job.state == JobState.WAITING:
                return job
        return None

    # ---------- worker ----------

    def start(self) -> None:
        if self._worker is not None and not self._worker.done():
            return
        self._closing = False
        self._worker = asyncio.get_running_loop().create_task(self._run(), name=f"{self.name}-worker")
        self._worker.add_done_callback(self._on_worker_done)

    @property
    def running(self) -> bool:
        return self._worker is not None and not self._worker.done()

    async def _run(self) -> None:
        while True:
            self._wakeup.clear()
            job = self._next()
            if job is None:
                await self._wakeup.wait()
                continue
            # owned by the worker from here on, so a crash while waiting re-queues it
            self._active = job.id
            # admission only checks completed sends, so the cap is enforced again right before sending
            try:
                await self.quota.authorize(job.run_id)
            except QuotaExceeded as e:
                self._active = None
                await self._fail(job, e, retryable=False)
                self._refresh_idle()
                continue
            await self.limiter.acquire()
            await self.quota.await_interval(job.run_id)
            await self._process(job)

    def _on_worker_done(self, task: asyncio.Task) -> None:
        if task is not self._worker or self._closing:
            return
        if task.cancelled():
            log.warning("Worker for %s was cancelled", self.name)
        else:
            log.error("Worker for %s died: %r", self.name, task.exception())
        self._worker = None
        if self._active is not None:
            job = self.jobs[self._active]
            self._active = None
            log.warning("Job %s stalled; re-queued", job.id)
            self._push(job)
            asyncio.get_running_loop().create_task(self._emit("stalled", JobStalled(job=job.model_copy(deep=True))))
        self.start()

    async def _process(self, job: DispatchJob) -> None:
        job.state = JobState.ACTIVE
        job.attempts_made += 1
        self._active = job.id
        try:
            receipt = await self.send(job.message)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            retryable = self.retry.classify(e)
            self._active = None
            if retryable and job.attempts_made < self.retry.attempts:
                delay = self.retry.delay_for(job.attempts_made)
                job.state = JobState.DELAYED
                job.error = str(e)
                log.warning("Job %s attempt %d failed (%s); retrying in %.1fs",
                            job.id, job.attempts_made, e, delay)
                self._schedule(job, delay)
                return
            await self._fail(job, e, retryable)
        else:
            self._active = None
            await self._complete(job, receipt)
        finally:
            self._refresh_idle()

    def _schedule(self, job: DispatchJob, delay: float) -> None:
        async def release() -> None:
            await self.sleep(delay)
            if job.state == JobState.DELAYED:
                self._push(job)

        timer = asyncio.get_running_loop().create_task(release())
        self._timers.add(timer)
        timer.add_done_callback(self._timers.discard)

    async def _complete(self, job: DispatchJob, receipt: SendReceipt) -> None:
        now = utcnow()
        job.state = JobState.COMPLETED
        job.finished_at = now
        job.error = None
        job.provider_message_id = receipt.provider_message_id
        meta = job.message.metadata
        log.info("Job %s sent to %s (message id %s)", job.id, meta.email, receipt.provider_message_id)
        try:
            await self.quota.record_sent(job.run_id, job.supplier_id, at=now)
            await self.store.update_supplier(
                job.run_id, job.supplier_id,
                status=SupplierStatus.SENT, last_contact=now, increments={"emails_sent": 1},
                event=ConversationEvent(direction="outbound", subject=meta.subject, body=meta.body,
                                        provider="sendgrid", message_id=receipt.provider_message_id,
                                        job_id=job.id, at=now),
            )
        except Exception:
            log.exception("Bookkeeping failed after sending job %s", job.id)
        await self._emit("completed", JobCompleted(job=job.model_copy(deep=True), receipt=receipt))

    async def _fail(self, job: DispatchJob, exc: Exception, retryable: bool) -> None:
        message = str(exc) or exc.__class__.__name__
        job.state = JobState.FAILED
        job.finished_at = utcnow()
        job.error = message
        log.error("Job %s failed after %d attempt(s): %s", job.id, job.attempts_made, message)
        try:
            await self.quota.record_failed(job.run_id, job.supplier_id, message)
            await self.store.update_supplier(
                job.run_id, job.supplier_id,
                status=SupplierStatus.FAILED, note=f"Send failed: {message}",
                event=ConversationEvent(direction="system", subject="Send failure", body=message, job_id=job.id),
            )
        except Exception:
            log.exception("Bookkeeping failed after job %s failed", job.id)
        await self._emit("failed", JobFailed(job=job.model_copy(deep=True), error=message, retryable=retryable))

    # ---------- lifecycle & inspection ----------

    async def drain(self) -> None:
        """Wait until no job is waiting, active or delayed. Needs a started worker."""
        await self._idle.wait()

    async def close(self, drain: bool = True) -> None:
        if drain:
            await self.drain()
        self._closing = True
        for timer in list(self._timers):
            timer.cancel()
        if self._worker is not None:
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass
            self._worker = None

    def counts(self) -> QueueCounts:
        counts = QueueCounts()
        for job in self.jobs.values():
            setattr(counts, job.state.value, getattr(counts, job.state.value) + 1)
        return counts

    async def health(self) -> QueueHealth:
        daily = await self.quota.daily_stats()
        return QueueHealth(
            status="healthy" if self.running or self._idle.is_set() else "stopped",
            name=self.name,
            counts=self.counts(),
            daily=daily,
            limits={
                "per_minute": self.limiter.max_starts,
                "per_day": daily.daily_limit,
                "send_interval_seconds": self.quota.interval_seconds,
            },
        )
