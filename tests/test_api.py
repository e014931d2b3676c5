# file: tests/test_api.py
import asyncio
import random
from unittest.mock import AsyncMock, Mock

import pytest
from fastapi.testclient import TestClient

from agents.pipeline import CandidateFilterPipeline
from agents.quota import DispatchQuotaPolicy
from agents.responder import ReplyTracker
from agents.verifier import ContactVerifier
from agents.writer import Writer
from app.config import Settings
from app.main import create_app
from app.orchestrator import SearchOrchestrator, Services
from app.schema import SendReceipt
from app.services.dispatch import DispatchQueue
from app.services.metrics import Metrics
from app.services.store import SearchStore
from app.tools.fetch import Page
from app.tools.mailer import SendGridClient
from app.tools.reachability import ReachabilityChecker

CANDIDATES = {"suppliers": [
    {"company_name": "Shenzhen Brightway Lighting Co., Ltd.", "email": "sales@brightway-led.com",
     "country": "China", "website": "brightway-led.com"},
    {"company_name": "Guangzhou Apex Manufacturing Ltd", "email": "contact@apexmfg.cn",
     "country": "China", "website": "apexmfg.cn"},
]}


async def probe(url, timeout):
    return 200


async def fetch(url, timeout):
    return Page(url=url, final_url=url, status=200, html="<p>sales@brightway-led.com contact@apexmfg.cn</p>")


async def send(message):
    return SendReceipt(status_code=202, provider_message_id=f"msg-{message.metadata.supplier_id}")


async def fast_sleep(delay):
    await asyncio.sleep(0)


@pytest.fixture
def services():
    settings = Settings(min_suppliers=2, max_suppliers=4, notification_recipients=[], sendgrid_api_key="")
    store = SearchStore()
    quota = DispatchQuotaPolicy(store, daily_limit=100, interval_seconds=0)
    queue = DispatchQueue(send, store, quota, sleep=fast_sleep)
    metrics = Metrics()
    metrics.attach(queue)
    generator = Mock()
    generator.generate = AsyncMock(return_value=CANDIDATES)
    generator.write_email = AsyncMock(return_value={"subject": "Inquiry", "body": "Please send a quotation."})
    pipeline = CandidateFilterPipeline(reachability=ReachabilityChecker(probe=probe),
                                       verifier=ContactVerifier(fetch=fetch))
    orchestrator = SearchOrchestrator(store, generator, pipeline, Writer(generator, settings.templates,
                                                                         rng=random.Random(1)),
                                      queue, quota, settings=settings, metrics=metrics)
    return Services(settings=settings, store=store, quota=quota, mailer=SendGridClient(settings), queue=queue,
                    metrics=metrics, orchestrator=orchestrator, replies=ReplyTracker(store))


@pytest.fixture
def client(services):
    with TestClient(create_app(services, configure_logging=False)) as c:
        yield c


def test_health_reports_queue_and_quota(client):
    r = client.get("/health")
    assert r.status_code == 200
    body = r.json()
    assert body["status"] == "healthy"
    assert body["name"] == "email-sending"
    assert body["daily"]["daily_limit"] == 100
    assert "timestamp" in body


def test_search_wait_returns_the_run_result(client, services):
    r = client.post("/search?wait=true", json={"productDescription": "LED panel lights 600x600 mm",
                                               "quantity": "5,000 units"})
    assert r.status_code == 200
    result = r.json()
    assert result["status"] == "completed"
    assert result["metrics"]["emails_queued"] == 2

    detail = client.get(f"/searches/{result['run_id']}").json()
    assert [s["company_name"] for s in detail["suppliers"]] == [
        "Shenzhen Brightway Lighting Co., Ltd.", "Guangzhou Apex Manufacturing Ltd"]
    assert detail["logs"][0]["message"] == "Search initialized"

    listing = client.get("/searches").json()
    assert listing["count"] == 1


def test_search_without_wait_is_accepted(client):
    r = client.post("/search", json={"productDescription": "LED panel lights 600x600 mm"})
    assert r.status_code == 202
    assert r.json()["status"] == "processing"
    assert client.get(f"/searches/{r.json()['search_id']}").status_code == 200


def test_invalid_query_and_unknown_search(client):
    r = client.post("/search", json={"productDescription": "LED panels", "minSuppliers": 9, "maxSuppliers": 2})
    assert r.status_code == 400
    assert r.json()["code"] == "invalid_query"

    r = client.post("/search", content=b"not json", headers={"Content-Type": "application/json"})
    assert r.status_code == 400

    r = client.get("/searches/SEARCH_0_000000")
    assert r.status_code == 404
    assert r.json()["code"] == "not_found"


def test_inbound_reply_is_matched(client):
    client.post("/search?wait=true", json={"productDescription": "LED panel lights 600x600 mm"})

    r = client.post("/webhooks/inbound", json={"from": "Sales <sales@brightway-led.com>",
                                                "subject": "Re: Inquiry", "body": "Quote attached"})
    assert r.status_code == 200
    assert r.json()["matched"] is True

    r = client.post("/webhooks/inbound", json={"from": "stranger@elsewhere-co.com"})
    assert r.json()["matched"] is False


def test_metrics_counts_requests_and_searches(client):
    client.get("/health")
    client.post("/search?wait=true", json={"productDescription": "LED panel lights 600x600 mm"})

    snapshot = client.get("/metrics").json()
    assert snapshot["requests"]["by_endpoint"]["/health"] == 1
    assert snapshot["searches"]["completed"] == 1
    assert snapshot["emails"]["queued"] == 2
    assert "waiting" in snapshot["queue"]


def test_sendgrid_events_land_in_the_run_log(client):
    r = client.post("/search?wait=true", json={"productDescription": "LED panel lights 600x600 mm"})
    run_id = r.json()["run_id"]

    r = client.post("/webhooks/sendgrid-events", json=[
        {"event": "delivered", "email": "sales@brightway-led.com",
         "custom_args": {"search_id": run_id, "supplier_id": f"{run_id}-S001"}},
        {"event": "open", "email": "contact@apexmfg.cn", "search_id": run_id, "supplier_id": f"{run_id}-S002"},
        {"event": "bounce", "email": "someone@elsewhere-co.com", "search_id": "SEARCH_0_000000"},
        {"event": "processed"},
    ])
    assert r.status_code == 200
    assert r.json() == {"status": "received", "recorded": 2}

    logs = client.get(f"/searches/{run_id}").json()["logs"]
    events = [entry["payload"] for entry in logs if entry["type"] == "delivery_event"]
    assert [(e["event"], e["supplier_id"]) for e in events] == [
        ("delivered", f"{run_id}-S001"), ("open", f"{run_id}-S002")]
