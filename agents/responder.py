# file: agents/responder.py
import base64
import binascii
import json
import logging
import re
from typing import Any, Dict, Optional

from app.logging_utils import log_event
from app.schema import ConversationEvent, InboundReply, SupplierStatus, utcnow

log = logging.getLogger("responder")


def _b64(value: str) -> Optional[str]:
    padded = value + "=" * (-len(value) % 4)
    for decode in (base64.urlsafe_b64decode, base64.b64decode):
        try:
            return decode(padded).decode("utf-8")
        except (binascii.Error, ValueError):
            continue
    return None


def _address(value: str) -> str:
    m = re.search(r"<(.+?)>", value or "")
    return (m.group(1) if m else value or "").strip().lower()


def parse_inbound(payload: Any) -> Optional[InboundReply]:
    """
    Normalizes the inbound shapes we receive:
      * Pub/Sub push envelope {"message": {"data": <base64 json>}}
      * SendGrid Inbound Parse {"email": ..., "from": ..., "text": ...}
      * Gmail API message {"payload": {"headers": [...], "body": {"data": ...}}}
      * plain {"sender_email" | "from", "subject", "body"}
    """
    if not isinstance(payload, dict):
        return None

    message = payload.get("message")
    if isinstance(message, dict) and message.get("data"):
        decoded = _b64(message["data"])
        if not decoded:
            return None
        try:
            return parse_inbound(json.loads(decoded))
        except ValueError:
            return None

    if payload.get("email"):
        headers = payload.get("headers") if isinstance(payload.get("headers"), dict) else {}
        envelope = payload.get("envelope") if isinstance(payload.get("envelope"), dict) else {}
        return InboundReply(
            sender_email=_address(str(payload.get("from") or envelope.get("from") or "")),
            subject=payload.get("subject") or "No Subject",
            body=payload.get("text") or payload.get("html") or "",
            message_id=headers.get("Message-ID", ""),
            thread_id=headers.get("Thread-Id", ""),
        )

    inner = payload.get("payload")
    if isinstance(inner, dict) and isinstance(inner.get("headers"), list):
        lookup = {str(h.get("name", "")).lower(): h.get("value", "") for h in inner["headers"] if isinstance(h, dict)}
        body = payload.get("snippet") or ""
        data = (inner.get("body") or {}).get("data")
        if data:
            body = _b64(data) or body
        return InboundReply(
            sender_email=_address(lookup.get("from", "")),
            subject=lookup.get("subject") or "No Subject",
            body=body,
            message_id=lookup.get("message-id", ""),
            thread_id=payload.get("threadId") or lookup.get("thread-id", ""),
        )

    sender = payload.get("sender_email") or payload.get("from")
    if sender:
        return InboundReply(
            sender_email=_address(str(sender)),
            subject=payload.get("subject") or "No Subject",
            body=payload.get("body") or payload.get("text") or "",
            message_id=str(payload.get("message_id") or payload.get("id") or ""),
            thread_id=payload.get("thread_id") or "",
        )
    return None


class ReplyTracker:
    """Matches an inbound email to its supplier and records the reply"""

    def __init__(self, store):
        self.store = store

    async def run(self, payload: Any) -> Dict[str, Any]:
        reply = parse_inbound(payload)
        if reply is None or not reply.sender_email:
            return {"matched": False, "reason": "Unable to parse inbound payload"}

        supplier = await self.store.find_supplier_by_email(reply.sender_email)
        if supplier is None:
            log.info("Inbound email from unknown sender %s", reply.sender_email)
            return {"matched": False, "sender_email": reply.sender_email}

        now = utcnow()
        await self.store.update_supplier(
            supplier.search_id, supplier.id,
            status=SupplierStatus.RESPONDED, last_response_date=now, increments={"emails_received": 1},
            event=ConversationEvent(direction="inbound", subject=reply.subject, body=reply.body,
                                    message_id=reply.message_id or None, at=now),
        )
        await self.store.append_log(supplier.search_id, log_event(
            "responder", f"Inbound email from {supplier.company_name}", "reply_received",
            {"supplier_id": supplier.id, "subject": reply.subject}))
        log.info("Reply from %s recorded on %s", supplier.company_name, supplier.id)
        return {"matched": True, "search_id": supplier.search_id, "supplier_id": supplier.id}

    async def record_events(self, payload: Any) -> Dict[str, Any]:
        """SendGrid event webhook: append each delivery event to its run's log."""
        events = payload if isinstance(payload, list) else [payload]
        recorded = 0
        for event in events:
            if not isinstance(event, dict):
                continue
            custom = event.get("custom_args") if isinstance(event.get("custom_args"), dict) else {}
            # the event webhook flattens custom args onto the event itself
            search_id = custom.get("search_id") or event.get("search_id")
            if not search_id or await self.store.get_run(search_id) is None:
                continue
            await self.store.append_log(search_id, log_event(
                "sendgrid", "SendGrid event received", "delivery_event",
                {"event": event.get("event"), "email": event.get("email"),
                 "supplier_id": custom.get("supplier_id") or event.get("supplier_id"), "context": event}))
            recorded += 1
        log.info("Recorded %d of %d delivery event(s)", recorded, len(events))
        return {"status": "received", "recorded": recorded}
