# file: agents/validator.py
import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, List, Optional, Tuple, Union

from email_validator import EmailNotValidError, validate_email
from pydantic import ValidationError

from app.errors import InvalidCandidatesError, NoValidCandidatesError
from app.schema import CandidateRecord
from app.tools.extract import is_business_email, is_free_mail

log = logging.getLogger("pipeline")

SHAPE_KEYS = ("suppliers", "candidates", "results", "data", "companies", "items")

ENTITY_TOKENS = (
    "ltd", "limited", "inc", "incorporated", "corp", "corporation", "co", "company",
    "manufacturing", "manufacturer", "factory", "group", "industries", "industrial",
    "llc", "gmbh", "plc", "pvt", "pte", "srl", "spa", "bv", "enterprise", "enterprises",
)
ENTITY_RE = re.compile(r"\b(?:" + "|".join(ENTITY_TOKENS) + r")\b", re.I)


@dataclass(frozen=True)
class Extracted:
    candidates: List[Any]


@dataclass(frozen=True)
class Rejected:
    reason: str


def extract_candidates(payload: Any) -> Union[Extracted, Rejected]:
    """Find the candidate list in whatever shape the generation service answered with."""
    if isinstance(payload, str):
        try:
            payload = json.loads(payload)
        except ValueError:
            return Rejected("Generation output is not valid JSON")

    if isinstance(payload, list):
        return Extracted(payload)
    if not isinstance(payload, dict):
        return Rejected(f"Generation output is a {type(payload).__name__}, expected a list or object")

    if payload.get("error"):
        return Rejected(f"Generation service reported an error: {payload['error']}")

    for key in SHAPE_KEYS:
        if isinstance(payload.get(key), list):
            return Extracted(payload[key])

    lists = [v for v in payload.values() if isinstance(v, list)]
    if len(lists) == 1:
        return Extracted(lists[0])
    if not lists:
        return Rejected(f"No candidate list in generation output (keys: {', '.join(map(str, payload)) or 'none'})")
    return Rejected("Generation output holds several lists; cannot tell which one lists suppliers")


@dataclass
class Rejection:
    position: int
    company_name: str
    reasons: List[str]

    def summary(self) -> str:
        return f"#{self.position + 1} {self.company_name or '<unnamed>'}: {'; '.join(self.reasons)}"


@dataclass
class ValidationReport:
    accepted: List[CandidateRecord] = field(default_factory=list)
    rejected: List[Rejection] = field(default_factory=list)


class CandidateValidator:
    """Schema gate: every candidate must look like a real business reachable by business email"""

    max_reported = 5

    def check(self, raw: Any, position: int) -> Tuple[Optional[CandidateRecord], List[str]]:
        if not isinstance(raw, dict):
            return None, [f"candidate is a {type(raw).__name__}, expected an object"]
        try:
            candidate = CandidateRecord.model_validate(raw)
        except ValidationError as e:
            return None, [f"malformed candidate: {err['msg']}" for err in e.errors()]
        candidate.position = position
        candidate.raw = raw

        reasons: List[str] = []
        if not candidate.company_name:
            reasons.append("company_name: missing")
        elif not ENTITY_RE.search(candidate.company_name):
            reasons.append("company_name: no business entity token (Ltd, Inc, Co, Factory, ...)")

        if not candidate.email:
            reasons.append("email: missing")
        else:
            try:
                validate_email(candidate.email, check_deliverability=False)
            except EmailNotValidError as e:
                reasons.append(f"email: invalid ({e})")
            else:
                if is_free_mail(candidate.email):
                    reasons.append("email: free-mail provider")
                elif not is_business_email(candidate.email):
                    reasons.append("email: not a business address")

        if not candidate.country:
            reasons.append("country: missing")

        website = candidate.website
        if website and not (re.match(r"^https?://", website, re.I) or "." in website):
            reasons.append("website: neither an absolute URL nor a domain")

        return (None if reasons else candidate), reasons

    def validate(self, payload: Any) -> ValidationReport:
        shape = extract_candidates(payload)
        if isinstance(shape, Rejected):
            raise InvalidCandidatesError(shape.reason, raw=payload)

        report = ValidationReport()
        for i, raw in enumerate(shape.candidates):
            candidate, reasons = self.check(raw, i)
            if candidate is not None:
                report.accepted.append(candidate)
            else:
                name = str(raw.get("company_name") or raw.get("companyName") or "") if isinstance(raw, dict) else ""
                report.rejected.append(Rejection(position=i, company_name=name, reasons=reasons))

        if not report.accepted:
            summaries = [r.summary() for r in report.rejected[: self.max_reported]]
            raise NoValidCandidatesError(
                "No valid business suppliers found. All suppliers failed validation.",
                details={"received": len(shape.candidates), "reasons": summaries},
            )
        log.info("Schema gate: %d accepted, %d rejected", len(report.accepted), len(report.rejected))
        return report
