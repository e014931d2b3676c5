# file: app/tools/mailer.py
from __future__ import annotations
import html
import logging
from typing import Any, Dict, List, Optional

import aiohttp

from app.config import Settings, get_settings
from app.errors import RemoteServiceError
from app.schema import MessageMetadata, PreparedMessage, SendReceipt, Supplier
from app.tools.retry import RetryPolicy

log = logging.getLogger("mailer")


def build_html_body(subject: str, body: str, reply_to: str) -> str:
    paragraphs = "<br><br>".join(html.escape(line) for line in body.split("\n"))
    return f"""<!DOCTYPE html>
<html lang="en">
  <head>
    <meta charset="UTF-8" />
    <meta name="viewport" content="width=device-width, initial-scale=1.0" />
    <title>{html.escape(subject)}</title>
  </head>
  <body style="font-family: 'Segoe UI', Tahoma, Geneva, Verdana, sans-serif; line-height: 1.6; color: #333; max-width: 640px; margin: 0 auto; padding: 24px; background: #f5f7fb;">
    <section style="background: #ffffff; border-radius: 12px; padding: 28px;">
      {paragraphs}
    </section>
    <section style="margin-top: 24px; font-size: 12px; color: #6c757d;">
      <p><strong>Contact:</strong> {html.escape(reply_to)}</p>
      <p>To unsubscribe reply with "UNSUBSCRIBE" in the subject line.</p>
    </section>
  </body>
</html>"""


def prepare_message(supplier: Supplier, subject: str, body: str, settings: Optional[Settings] = None,
                    batch_current: int = 1, batch_total: int = 1) -> PreparedMessage:
    """SendGrid v3 mail/send payload plus the metadata the queue needs after sending."""
    s = settings or get_settings()
    body_html = build_html_body(subject, body, s.reply_to)
    country = (supplier.country or "").lower().replace(" ", "_") or "unknown_country"
    payload: Dict[str, Any] = {
        "personalizations": [{
            "to": [{"email": supplier.email, "name": supplier.company_name}],
            "subject": subject,
            "custom_args": {
                "supplier_id": supplier.id,
                "search_id": supplier.search_id,
                "thread_id": supplier.thread_id,
                "campaign": "supplier_inquiry",
                "priority": supplier.priority.value,
            },
        }],
        "from": {"email": s.from_email, "name": s.from_name},
        "reply_to": {"email": s.reply_to, "name": s.from_name},
        "content": [
            {"type": "text/plain", "value": body},
            {"type": "text/html", "value": body_html},
        ],
        "categories": ["supplier_inquiry", country],
        "tracking_settings": {
            "click_tracking": {"enable": True, "enable_text": False},
            "open_tracking": {"enable": True},
        },
        "headers": dict(s.antispam_headers),
    }
    metadata = MessageMetadata(
        supplier_id=supplier.id, company_name=supplier.company_name, email=supplier.email,
        thread_id=supplier.thread_id, priority=supplier.priority, subject=subject, body=body,
        body_html=body_html, batch_current=batch_current, batch_total=batch_total,
    )
    return PreparedMessage(payload=payload, metadata=metadata)


class SendGridClient:
    """Minimal v3 mail/send client; one HTTP attempt per call unless a RetryPolicy is given."""

    def __init__(self, settings: Optional[Settings] = None, retry: Optional[RetryPolicy] = None):
        s = settings or get_settings()
        self.settings = s
        self.api_key = s.sendgrid_api_key
        self.base_url = s.sendgrid_base.rstrip("/")
        self.retry = retry

    async def _post(self, payload: Dict[str, Any]) -> SendReceipt:
        if not self.api_key:
            raise RemoteServiceError("SendGrid API key is not configured")
        headers = {"Authorization": f"Bearer {self.api_key}", "Content-Type": "application/json"}
        async with aiohttp.ClientSession(headers=headers) as session:
            async with session.post(f"{self.base_url}/mail/send", json=payload,
                                    timeout=aiohttp.ClientTimeout(total=30)) as resp:
                if resp.status >= 300:
                    text = await resp.text()
                    raise RemoteServiceError(f"SendGrid returned HTTP {resp.status}", status=resp.status,
                                             payload=text[:500])
                return SendReceipt(status_code=resp.status,
                                   provider_message_id=resp.headers.get("X-Message-Id", "unknown"))

    async def send_payload(self, payload: Dict[str, Any]) -> SendReceipt:
        if self.retry is not None:
            return await self.retry.execute(self._post, payload)
        return await self._post(payload)

    async def send(self, message: PreparedMessage) -> SendReceipt:
        return await self.send_payload(message.payload)

    async def send_summary(self, run_id: str, suppliers_contacted: int, emails_queued: int,
                           recipients: Optional[List[str]] = None) -> Optional[SendReceipt]:
        """Plain-text run summary to the notification list; None when nobody is subscribed."""
        recipients = recipients if recipients is not None else self.settings.notification_recipients
        if not recipients:
            return None
        payload = {
            "personalizations": [{
                "to": [{"email": r} for r in recipients],
                "subject": f"Supplier search complete: {suppliers_contacted} suppliers reached",
            }],
            "from": {"email": self.settings.from_email, "name": "Procurement AI Agent"},
            "content": [{
                "type": "text/plain",
                "value": (f"Search {run_id} completed. {suppliers_contacted} suppliers contacted, "
                          f"{emails_queued} emails queued for sending."),
            }],
        }
        receipt = await self.send_payload(payload)
        log.info("Summary for %s sent to %d recipient(s)", run_id, len(recipients))
        return receipt
