# file: tests/test_responder.py
import base64
import json
import pytest

from agents.responder import ReplyTracker, parse_inbound
from app.schema import SearchQuery, Supplier, SupplierStatus
from app.services.store import SearchStore


def b64(text):
    return base64.urlsafe_b64encode(text.encode()).decode().rstrip("=")


def test_plain_and_sendgrid_inbound_shapes():
    plain = parse_inbound({"from": "Sales Desk <Sales@Brightway-LED.com>", "subject": "Re: Inquiry", "body": "Quote attached"})
    assert plain.sender_email == "sales@brightway-led.com"
    assert plain.body == "Quote attached"

    parsed = parse_inbound({"email": "raw mime...", "from": "export@oceanic-ind.com", "text": "MOQ is 1000 pcs",
                            "headers": {"Message-ID": "<abc@oceanic-ind.com>"}})
    assert parsed.sender_email == "export@oceanic-ind.com"
    assert parsed.subject == "No Subject"
    assert parsed.message_id == "<abc@oceanic-ind.com>"


def test_gmail_message_with_encoded_body():
    reply = parse_inbound({
        "threadId": "18c2f",
        "snippet": "Thanks for...",
        "payload": {
            "headers": [{"name": "From", "value": "Apex <contact@apexmfg.cn>"},
                        {"name": "Subject", "value": "Re: LED panels"}],
            "body": {"data": b64("Thanks for your inquiry, price is $11.80.")},
        },
    })
    assert reply.sender_email == "contact@apexmfg.cn"
    assert reply.thread_id == "18c2f"
    assert reply.body == "Thanks for your inquiry, price is $11.80."


def test_pubsub_envelope_and_garbage():
    inner = {"sender_email": "sales@brightway-led.com", "subject": "Re: Inquiry"}
    envelope = {"message": {"data": base64.b64encode(json.dumps(inner).encode()).decode()}}
    assert parse_inbound(envelope).sender_email == "sales@brightway-led.com"

    assert parse_inbound({"message": {"data": "%%%not-base64%%%"}}) is None
    assert parse_inbound({"unrelated": True}) is None
    assert parse_inbound("plain text") is None


@pytest.mark.asyncio
async def test_reply_marks_supplier_responded():
    store = SearchStore()
    await store.create_run("SEARCH_R", SearchQuery(product_description="LED panel lights 600x600"))
    await store.add_suppliers("SEARCH_R", [Supplier(id="SEARCH_R-S001", search_id="SEARCH_R",
                                                     company_name="Brightway Lighting Co., Ltd.",
                                                     email="sales@brightway-led.com",
                                                     status=SupplierStatus.SENT)])
    tracker = ReplyTracker(store)

    outcome = await tracker.run({"from": "sales@brightway-led.com", "subject": "Re: Inquiry", "body": "Price list attached"})

    assert outcome == {"matched": True, "search_id": "SEARCH_R", "supplier_id": "SEARCH_R-S001"}
    supplier = await store.get_supplier("SEARCH_R", "SEARCH_R-S001")
    assert supplier.status == SupplierStatus.RESPONDED
    assert supplier.emails_received == 1
    assert supplier.last_response_date is not None
    assert supplier.conversation_history[-1].direction == "inbound"
    assert (await store.list_logs("SEARCH_R"))[-1]["type"] == "reply_received"

    unknown = await tracker.run({"from": "someone@unrelated-co.com"})
    assert unknown["matched"] is False
