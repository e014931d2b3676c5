# file: agents/curator.py
import logging
from typing import List

from pydantic import ValidationError

from app.schema import CandidateRecord, Priority, Supplier, SupplierStatus
from app.tools.fetch import normalize_website

log = logging.getLogger("pipeline")


def supplier_id(run_id: str, index: int) -> str:
    return f"{run_id}-S{index + 1:03d}"


class Curator:
    """Turns verified candidates into Supplier records ready for outreach"""

    def __init__(self, high_priority_count: int = 5):
        self.high_priority_count = high_priority_count

    def to_supplier(self, candidate: CandidateRecord, run_id: str, index: int) -> Supplier:
        verification = candidate.verification
        email = verification.email if verification and verification.email else candidate.email
        metadata = {"raw": candidate.raw}
        if candidate.reachability is not None:
            metadata["reachability"] = candidate.reachability.model_dump()
        if verification is not None:
            metadata["verification"] = {
                "status": verification.status.value,
                "evidence": verification.evidence.model_dump(),
            }
            if candidate.email and email != candidate.email.lower():
                metadata["original_email"] = candidate.email

        return Supplier(
            id=supplier_id(run_id, index),
            search_id=run_id,
            company_name=candidate.company_name,
            email=email.lower(),
            phone=candidate.phone,
            country=candidate.country,
            city=candidate.city,
            website=normalize_website(candidate.website),
            manufacturing_capabilities=candidate.manufacturing_capabilities,
            production_capacity=candidate.production_capacity,
            certifications=candidate.certifications,
            years_in_business=candidate.years_in_business,
            estimated_price_range=candidate.estimated_price_range,
            minimum_order_quantity=candidate.minimum_order_quantity,
            status=SupplierStatus.PENDING,
            priority=Priority.HIGH if index < self.high_priority_count else Priority.NORMAL,
            metadata=metadata,
            thread_id=f"thread_{run_id}_{index + 1:03d}",
        )

    def run(self, candidates: List[CandidateRecord], run_id: str, max_suppliers: int) -> List[Supplier]:
        """Keep the first `max_suppliers` mappable candidates in generation order."""
        suppliers: List[Supplier] = []
        for candidate in candidates:
            if len(suppliers) >= max_suppliers:
                break
            try:
                suppliers.append(self.to_supplier(candidate, run_id, len(suppliers)))
            except ValidationError as e:
                log.warning("Dropping %s: not a valid supplier record (%s)",
                            candidate.company_name, e.errors()[0].get("msg") if e.errors() else e)
        return suppliers
