# file: app/orchestrator.py
import asyncio
import logging
import secrets
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

from pydantic import ValidationError

from agents import CandidateFilterPipeline, ContactVerifier, DispatchQuotaPolicy, ReplyTracker, Writer
from app.config import Settings, get_settings
from app.errors import InvalidQueryError, PipelineError, QuotaExceeded, RunCancelled
from app.logging_utils import log_event
from app.schema import (
    ConversationEvent, FilterConfig, RunResult, RunStatus, SearchQuery, SearchRun, SupplierOutcome,
    SupplierStatus,
)
from app.services.dispatch import DispatchQueue
from app.services.metrics import Metrics
from app.services.store import SearchStore
from app.tools.llm import CompletionClient, SupplierGenerator
from app.tools.mailer import SendGridClient, prepare_message
from app.tools.reachability import ReachabilityChecker
from app.tools.retry import RetryPolicy

log = logging.getLogger("orchestrator")


def new_run_id() -> str:
    return f"SEARCH_{int(time.time() * 1000)}_{secrets.token_hex(3).upper()}"


def parse_query(query: Union[SearchQuery, Dict[str, Any]]) -> SearchQuery:
    if isinstance(query, SearchQuery):
        return query
    try:
        return SearchQuery.model_validate(query or {})
    except ValidationError as e:
        problems = [f"{'.'.join(str(p) for p in err['loc']) or 'request'}: {err['msg']}" for err in e.errors()]
        raise InvalidQueryError("Invalid search request", details=problems) from e


class SearchOrchestrator:
    """
    One search run end to end:
    query -> run record -> quota gate -> generation -> filtering -> compose + enqueue per supplier -> finalize.
    Every started run is finalized exactly once, including on cancellation.
    """

    def __init__(self, store: SearchStore, generator, pipeline: CandidateFilterPipeline, writer: Writer,
                 queue: DispatchQueue, quota: DispatchQuotaPolicy, settings: Optional[Settings] = None,
                 mailer: Optional[SendGridClient] = None, metrics: Optional[Metrics] = None,
                 id_factory: Callable[[], str] = new_run_id):
        self.store = store
        self.generator = generator
        self.pipeline = pipeline
        self.writer = writer
        self.queue = queue
        self.quota = quota
        self.settings = settings or get_settings()
        self.mailer = mailer
        self.metrics = metrics
        self.id_factory = id_factory

    def _filter_config(self, min_suppliers: int, max_suppliers: int) -> FilterConfig:
        s = self.settings
        return FilterConfig(
            min_suppliers=min_suppliers,
            max_suppliers=max_suppliers,
            verification_concurrency=s.verification_concurrency,
            verification_timeout=s.verification_timeout,
            require_reachable=s.require_reachable,
            reachability_floor=s.reachability_floor,
            high_priority_count=s.high_priority_count,
        )

    async def _log(self, run_id: str, agent: str, message: str, type: str = "agent_log",
                   payload: dict = None, level: str = "info") -> None:
        await self.store.append_log(run_id, log_event(agent, message, type, payload, level))

    def _bounds(self, query: SearchQuery) -> Tuple[int, int]:
        min_suppliers = query.min_suppliers or self.settings.min_suppliers
        return min_suppliers, max(query.max_suppliers or self.settings.max_suppliers, min_suppliers)

    async def open_run(self, query: Union[SearchQuery, Dict[str, Any]]) -> SearchRun:
        """Validate the query and create the run record; raises InvalidQueryError before any run exists."""
        query = parse_query(query)
        min_suppliers, max_suppliers = self._bounds(query)
        run_id = self.id_factory()
        run = await self.store.create_run(run_id, query, suppliers_requested=max_suppliers)
        if self.metrics:
            self.metrics.search_started()
        log.info("Search %s started: %s", run_id, query.product_description)
        await self._log(run_id, "orchestrator", "Search initialized", "agent_start",
                        {"product": query.product_description, "min": min_suppliers, "max": max_suppliers})
        return run

    async def execute_run(self, run: SearchRun) -> RunResult:
        """Every failure after the run exists comes back as a failed RunResult; cancellation re-raises."""
        run_id = run.id
        try:
            return await self._execute(run_id, run.query, *self._bounds(run.query))
        except asyncio.CancelledError:
            log.warning("Search %s cancelled", run_id)
            current = await self.store.get_run(run_id)
            if current is not None and current.status == RunStatus.PROCESSING:
                await self._finish_failed(run_id, "Search was cancelled", RunCancelled.code)
            raise
        except PipelineError as e:
            log.error("Search %s failed (%s): %s", run_id, e.code, e.message)
            return await self._finish_failed(run_id, e.message, e.code)
        except Exception as e:
            log.exception("Search %s crashed", run_id)
            return await self._finish_failed(run_id, str(e) or e.__class__.__name__, "internal_error")

    async def run_search(self, query: Union[SearchQuery, Dict[str, Any]]) -> RunResult:
        return await self.execute_run(await self.open_run(query))

    async def _execute(self, run_id: str, query: SearchQuery, min_suppliers: int, max_suppliers: int) -> RunResult:
        await self.quota.authorize(run_id)

        await self._log(run_id, "generator", "Requesting supplier candidates", "agent_start")
        payload = await self.generator.generate(query, min_suppliers, max_suppliers)

        result = await self.pipeline.filter(payload, run_id, self._filter_config(min_suppliers, max_suppliers))
        await self.store.set_filter_stats(run_id, result.stats)
        for warning in result.warnings:
            await self._log(run_id, "pipeline", warning, level="warn")
        await self.store.add_suppliers(run_id, result.suppliers)
        await self._log(run_id, "pipeline", f"{len(result.suppliers)} suppliers validated", "agent_end",
                        result.stats.model_dump())

        outcomes: List[SupplierOutcome] = []
        total = len(result.suppliers)
        for index, supplier in enumerate(result.suppliers):
            try:
                await self.quota.authorize(run_id)
                await self.quota.await_interval(run_id)
                draft = await self.writer.run(supplier, query)
                message = prepare_message(supplier, draft.subject, draft.body, self.settings,
                                          batch_current=index + 1, batch_total=total)
                job = await self.queue.enqueue(message, run_id, supplier.id, supplier.priority)
            except asyncio.CancelledError:
                raise
            except QuotaExceeded as e:
                outcomes.append(await self._supplier_failed(run_id, supplier, e.message))
                log.warning("Search %s stopped queueing at supplier %d/%d: %s", run_id, index + 1, total, e.message)
                await self._log(run_id, "quota", e.message, level="warn", payload=e.details)
                break
            except Exception as e:
                outcomes.append(await self._supplier_failed(run_id, supplier, str(e) or e.__class__.__name__))
                continue

            await self.store.record_send(run_id, supplier.id, "queued")
            # the worker may already have sent it; never move a supplier back to queued
            await self.store.update_supplier(
                run_id, supplier.id, status=SupplierStatus.QUEUED, status_from=(SupplierStatus.PENDING,),
                event=ConversationEvent(direction="system", subject="Email queued for sending",
                                        body=f"Job ID: {job.id}", provider="dispatch-queue", job_id=job.id),
            )
            if self.metrics:
                self.metrics.record_email("queued")
            outcomes.append(SupplierOutcome(supplier_id=supplier.id, company_name=supplier.company_name,
                                            status="queued", job_id=job.id, subject=draft.subject))
            log.info("Queued %s (%d/%d) as %s", supplier.company_name, index + 1, total, job.id)

        queued = sum(1 for o in outcomes if o.status == "queued")
        run = await self.store.finalize_run(run_id, RunStatus.COMPLETED, emails_queued=queued)
        if self.metrics:
            self.metrics.record_search(RunStatus.COMPLETED.value)
        await self._log(run_id, "orchestrator", f"Search completed: {queued} emails queued", "agent_end",
                        run.metrics.model_dump())
        await self._notify(run_id, len(result.suppliers), queued)
        return RunResult(run_id=run_id, status=run.status, metrics=run.metrics, outcomes=outcomes)

    async def _supplier_failed(self, run_id: str, supplier, error: str) -> SupplierOutcome:
        log.error("Could not queue email for %s: %s", supplier.company_name, error)
        await self.quota.record_failed(run_id, supplier.id, error)
        await self.store.update_supplier(
            run_id, supplier.id, status=SupplierStatus.FAILED, note=f"Queue failed: {error}",
            event=ConversationEvent(direction="system", subject="Email not queued", body=error),
        )
        return SupplierOutcome(supplier_id=supplier.id, company_name=supplier.company_name,
                               status="failed", error=error)

    async def _finish_failed(self, run_id: str, error: str, code: str) -> RunResult:
        run = await self.store.finalize_run(run_id, RunStatus.FAILED, error=error, code=code)
        if self.metrics:
            self.metrics.record_search(RunStatus.FAILED.value)
        await self._log(run_id, "orchestrator", f"Search failed: {error}", "agent_error", {"code": code}, "error")
        return RunResult(run_id=run_id, status=run.status, metrics=run.metrics, error=error, code=code)

    async def _notify(self, run_id: str, suppliers_contacted: int, emails_queued: int) -> None:
        if self.mailer is None or not self.settings.notification_recipients:
            return
        try:
            await self.mailer.send_summary(run_id, suppliers_contacted, emails_queued)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            log.warning("Summary email for %s failed: %s", run_id, e)
            await self._log(run_id, "mailer", f"Summary email failed: {e}", level="warn")

    async def describe(self, run_id: str) -> Optional[Dict[str, Any]]:
        run = await self.store.get_run(run_id)
        if run is None:
            return None
        suppliers = await self.store.list_suppliers(run_id)
        return {
            "search": run.model_dump(mode="json"),
            "suppliers": [s.model_dump(mode="json") for s in suppliers],
            "logs": await self.store.list_logs(run_id),
        }


@dataclass
class Services:
    settings: Settings
    store: SearchStore
    quota: DispatchQuotaPolicy
    mailer: SendGridClient
    queue: DispatchQueue
    metrics: Metrics
    orchestrator: SearchOrchestrator
    replies: ReplyTracker


def build_services(settings: Optional[Settings] = None) -> Services:
    """Wire the production collaborators from settings; the queue worker is started by the caller."""
    s = settings or get_settings()
    store = SearchStore(s.data_dir)
    quota = DispatchQuotaPolicy(store, daily_limit=s.daily_limit, interval_seconds=s.send_interval_seconds,
                                sender_created_on=s.sender_created_on)
    remote_retry = RetryPolicy(attempts=s.retry_attempts, base_delay=s.retry_base_delay,
                               max_delay=s.retry_max_delay)
    mailer = SendGridClient(s, retry=remote_retry)
    # the queue owns retries for outreach sends, so it gets a single-attempt client
    queue = DispatchQueue(SendGridClient(s).send, store, quota, rate_limit=s.rate_limit_per_minute,
                          attempts=s.dispatch_attempts, backoff_seconds=s.dispatch_backoff_seconds)
    metrics = Metrics()
    metrics.attach(queue)
    generator = SupplierGenerator(CompletionClient(s), s)
    pipeline = CandidateFilterPipeline(
        reachability=ReachabilityChecker(timeout=s.reachability_timeout, concurrency=s.reachability_concurrency,
                                        retry=remote_retry),
        verifier=ContactVerifier(timeout=s.verification_timeout, concurrency=s.verification_concurrency),
    )
    writer = Writer(generator, s.templates)
    orchestrator = SearchOrchestrator(store, generator, pipeline, writer, queue, quota, settings=s,
                                      mailer=mailer, metrics=metrics)
    return Services(settings=s, store=store, quota=quota, mailer=mailer, queue=queue, metrics=metrics,
                    orchestrator=orchestrator, replies=ReplyTracker(store))
