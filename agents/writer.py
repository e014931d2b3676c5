# file: agents/writer.py
import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Dict, Optional

from app.errors import GenerationError, RemoteServiceError
from app.schema import SearchQuery, Supplier
from app.tools.templates import render_spintax, render_template

log = logging.getLogger("orchestrator")


@dataclass
class Draft:
    subject: str
    body: str
    ai_subject: str = ""
    ai_body: str = ""
    fallback: bool = False


def default_email(supplier: Supplier, query: SearchQuery) -> Dict[str, str]:
    lines = [
        f"We are sourcing {query.product_description} and your capabilities in "
        f"{supplier.manufacturing_capabilities or 'this category'} caught our attention.",
    ]
    if query.quantity:
        lines.append(f"Our target quantity is {query.quantity}.")
    if query.target_price:
        lines.append(f"Our target price is {query.target_price}.")
    if query.additional_requirements:
        lines.append(f"Additional requirements: {query.additional_requirements}.")
    lines.append("Could you share your pricing, MOQ, lead time and relevant certifications?")
    return {"subject": f"Supplier inquiry: {query.product_description}", "body": "\n".join(lines)}


class Writer:
    """Composes the outreach message: model draft wrapped in the configured templates"""

    def __init__(self, generator, templates: Optional[Dict[str, str]] = None,
                 rng: Optional[random.Random] = None, fallback: bool = True):
        self.generator = generator
        self.templates = templates or {}
        self.rng = rng
        self.fallback = fallback

    def _part(self, name: str, variables: Dict[str, str]) -> str:
        template = self.templates.get(name)
        return render_spintax(render_template(template, variables), self.rng) if template else ""

    def compose(self, email: Dict[str, str], supplier: Supplier, query: SearchQuery) -> Draft:
        variables = {
            "productDescription": query.product_description,
            "product": query.product_description,
            "supplierCompany": supplier.company_name,
            "country": supplier.country,
            "quantity": query.quantity,
            "targetPrice": query.target_price,
        }
        subject = self._part("subject", variables) or render_spintax(email.get("subject") or "Supplier Inquiry", self.rng)
        ai_body = render_spintax(email.get("body") or "", self.rng)
        parts = [self._part("intro", variables), ai_body, self._part("closing", variables), self._part("footer", variables)]
        body = "\n\n".join(p for p in parts if p)
        return Draft(subject=subject, body=body or ai_body,
                     ai_subject=email.get("subject", ""), ai_body=email.get("body", ""))

    async def run(self, supplier: Supplier, query: SearchQuery) -> Draft:
        try:
            email = await self.generator.write_email(supplier, query)
            used_fallback = False
        except asyncio.CancelledError:
            raise
        except (GenerationError, RemoteServiceError) as e:
            if not self.fallback:
                raise
            log.warning("Email generation failed for %s, using default draft: %s", supplier.company_name, e)
            email, used_fallback = default_email(supplier, query), True
        draft = self.compose(email, supplier, query)
        draft.fallback = used_fallback
        return draft
