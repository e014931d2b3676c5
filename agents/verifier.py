# file: agents/verifier.py
import asyncio
import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, List, Optional
from urllib.parse import urlsplit

from app.schema import (
    CandidateRecord, ContactSource, PageVisit, VerificationEvidence,
    VerificationResult, VerificationStatus, VerifiedCandidate,
)
from app.tools.extract import email_domain, extract_contacts
from app.tools.fetch import Page, fetch_page, normalize_website, registrable_domain

log = logging.getLogger("verifier")

DEFAULT_CONTACT_PATHS = [
    "/", "/contact", "/contact-us", "/contactus", "/contacts",
    "/en/contact", "/en/contact-us", "/about", "/about-us",
    "/company/contact", "/support", "/sales", "/en/about-us",
]

Fetch = Callable[[str, float], Awaitable[Page]]


def build_candidate_urls(website: str, paths: List[str] = DEFAULT_CONTACT_PATHS) -> List[str]:
    """Origin and its www/bare twin, each crossed with the contact paths."""
    try:
        parts = urlsplit(website)
        host = parts.hostname
    except ValueError:
        return []
    if not host:
        return []
    scheme = parts.scheme or "https"
    twin = host[4:] if host.startswith("www.") else f"www.{host}"
    urls: List[str] = []
    for origin in (f"{scheme}://{host}", f"{scheme}://{twin}"):
        for path in paths:
            url = origin + (path if path.startswith("/") else "/" + path)
            if url not in urls:
                urls.append(url)
    return urls


@dataclass
class VerificationSplit:
    verified: List[VerifiedCandidate] = field(default_factory=list)
    rejected: List[VerifiedCandidate] = field(default_factory=list)


class ContactVerifier:
    """Confirms a candidate's contact email against what its own website publishes"""

    def __init__(self, fetch: Optional[Fetch] = None, timeout: float = 12.0,
                 concurrency: int = 3, contact_paths: Optional[List[str]] = None):
        self.fetch = fetch or fetch_page
        self.timeout = timeout
        self.concurrency = max(1, concurrency)
        self.contact_paths = contact_paths or list(DEFAULT_CONTACT_PATHS)

    async def verify(self, candidate: CandidateRecord, timeout: Optional[float] = None) -> VerificationResult:
        timeout = self.timeout if timeout is None else timeout
        claimed = (candidate.email or "").strip().lower()
        website = normalize_website(candidate.website)

        if not website:
            return VerificationResult(
                status=VerificationStatus.FAILED, reason="Missing website URL", code="missing_website",
                evidence=VerificationEvidence(candidate_email=claimed or None),
            )

        urls = build_candidate_urls(website, self.contact_paths)
        if not urls:
            return VerificationResult(
                status=VerificationStatus.FAILED, reason="Invalid website URL", code="invalid_website",
                evidence=VerificationEvidence(candidate_email=claimed or None),
            )

        site_domain = registrable_domain(website)
        pages: List[PageVisit] = []
        email_sources: Dict[str, str] = {}
        phone_sources: Dict[str, str] = {}

        # Pages of one site are fetched one after another
        for url in urls:
            page = await self.fetch(url, timeout)
            pages.append(PageVisit(url=url, final_url=page.final_url, status=page.status, error=page.error))
            if page.error or not page.html:
                continue
            found = extract_contacts(page.html)
            source = page.final_url or url
            for email in found.emails:
                email_sources.setdefault(email, source)
            for phone in found.phones:
                phone_sources.setdefault(phone, source)
            if claimed and claimed in email_sources:
                break

        emails = list(email_sources)
        evidence = VerificationEvidence(
            candidate_email=claimed or None,
            site_domain=site_domain,
            emails=emails,
            phones=list(phone_sources),
            email_sources=[ContactSource(value=e, url=u) for e, u in email_sources.items()],
            phone_sources=[ContactSource(value=p, url=u) for p, u in phone_sources.items()],
            pages=pages,
        )

        resolved: Optional[str] = None
        status = VerificationStatus.FAILED
        if claimed and claimed in email_sources:
            resolved, status = claimed, VerificationStatus.MATCHED
        elif emails:
            on_site = next((e for e in emails if registrable_domain(email_domain(e)) == site_domain), None)
            if on_site:
                resolved = on_site
                status = VerificationStatus.DOMAIN_MATCHED if claimed else VerificationStatus.EXTRACTED
            elif not claimed:
                resolved, status = emails[0], VerificationStatus.EXTRACTED

        if status == VerificationStatus.FAILED:
            if emails:
                reason, code = "Email evidence domain mismatch", "domain_mismatch"
            else:
                reason, code = "No contact email found on website", "no_email_found"
            return VerificationResult(status=status, reason=reason, code=code, evidence=evidence)

        evidence.resolved_email = resolved
        evidence.matched_source = email_sources.get(resolved)
        return VerificationResult(status=status, email=resolved, evidence=evidence)

    async def _verify_safely(self, candidate: CandidateRecord, sem: asyncio.Semaphore,
                             timeout: Optional[float]) -> VerifiedCandidate:
        async with sem:
            try:
                result = await self.verify(candidate, timeout)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                log.exception("Verification crashed for %s", candidate.company_name)
                result = VerificationResult(
                    status=VerificationStatus.FAILED, reason=f"Verification error: {e}", code="verification_error",
                    evidence=VerificationEvidence(candidate_email=(candidate.email or "").lower() or None),
                )
        candidate.verification = result
        return VerifiedCandidate(candidate=candidate, result=result)

    async def verify_all(self, candidates: List[CandidateRecord], concurrency: Optional[int] = None,
                         timeout: Optional[float] = None) -> VerificationSplit:
        sem = asyncio.Semaphore(max(1, concurrency or self.concurrency))
        results = await asyncio.gather(*(self._verify_safely(c, sem, timeout) for c in candidates))
        split = VerificationSplit()
        for item in results:
            (split.verified if item.result.ok else split.rejected).append(item)
        return split
