# file: tests/test_verifier.py
import pytest

from agents.verifier import ContactVerifier, build_candidate_urls
from app.schema import CandidateRecord, VerificationStatus
from app.tools.fetch import Page, registrable_domain


def site_fetch(sites, broken=()):
    """Fake page fetcher serving one html body per registrable domain."""
    fetched = []

    async def fetch(url, timeout):
        fetched.append(url)
        if any(b in url for b in broken):
            return Page(url=url, error="Timeout")
        html = sites.get(registrable_domain(url), "")
        return Page(url=url, final_url=url, status=200 if html else 404, html=html)

    fetch.fetched = fetched
    return fetch


def candidate(email, website, name="Brightway Lighting Co., Ltd."):
    return CandidateRecord(company_name=name, email=email, website=website, country="China")


def test_candidate_urls_cover_both_hosts():
    urls = build_candidate_urls("https://brightway-led.com", ["/", "/contact"])
    assert urls == [
        "https://brightway-led.com/", "https://brightway-led.com/contact",
        "https://www.brightway-led.com/", "https://www.brightway-led.com/contact",
    ]


@pytest.mark.asyncio
async def test_claimed_email_found_is_matched_and_stops_early():
    fetch = site_fetch({"brightway-led.com": "<p>sales@brightway-led.com</p>"})
    result = await ContactVerifier(fetch=fetch).verify(candidate("Sales@Brightway-LED.com", "brightway-led.com"))

    assert result.status == VerificationStatus.MATCHED
    assert result.email == "sales@brightway-led.com"
    assert result.evidence.matched_source == "https://brightway-led.com/"
    assert len(fetch.fetched) == 1


@pytest.mark.asyncio
async def test_other_address_on_site_domain_is_domain_matched():
    fetch = site_fetch({"oceanic-ind.com": '<a href="mailto:export@oceanic-ind.com">mail</a>'})
    result = await ContactVerifier(fetch=fetch).verify(candidate("info@oceanic-ind.com", "https://www.oceanic-ind.com"))

    assert result.status == VerificationStatus.DOMAIN_MATCHED
    assert result.email == "export@oceanic-ind.com"
    assert result.evidence.candidate_email == "info@oceanic-ind.com"


@pytest.mark.asyncio
async def test_without_claimed_email_the_site_address_is_extracted():
    fetch = site_fetch({"apexmfg.cn": "<p>contact@apexmfg.cn / +86 20 8888 1234</p>"})
    result = await ContactVerifier(fetch=fetch).verify(candidate("", "apexmfg.cn"))

    assert result.status == VerificationStatus.EXTRACTED
    assert result.email == "contact@apexmfg.cn"
    assert result.evidence.phones


@pytest.mark.asyncio
async def test_only_foreign_addresses_is_a_domain_mismatch():
    fetch = site_fetch({"acme-tools.com": "<p>partner@trade-portal.net</p>"})
    result = await ContactVerifier(fetch=fetch).verify(candidate("sales@acme-tools.com", "acme-tools.com"))

    assert result.status == VerificationStatus.FAILED
    assert result.code == "domain_mismatch"
    assert result.evidence.emails == ["partner@trade-portal.net"]


@pytest.mark.asyncio
async def test_no_email_and_missing_website():
    verifier = ContactVerifier(fetch=site_fetch({}, broken=("/contact",)))

    none_found = await verifier.verify(candidate("sales@quiet-site.com", "quiet-site.com"))
    assert none_found.code == "no_email_found"
    assert any(p.error == "Timeout" for p in none_found.evidence.pages)

    no_site = await verifier.verify(candidate("sales@quiet-site.com", ""))
    assert no_site.code == "missing_website"


@pytest.mark.asyncio
async def test_verify_all_isolates_crashes_and_preserves_order():
    async def fetch(url, timeout):
        if "exploding" in url:
            raise RuntimeError("parser blew up")
        return Page(url=url, final_url=url, status=200, html="<p>sales@brightway-led.com</p>")

    candidates = [
        candidate("sales@brightway-led.com", "brightway-led.com"),
        candidate("info@exploding-site.com", "exploding-site.com", name="Exploding Site Ltd"),
    ]
    split = await ContactVerifier(fetch=fetch).verify_all(candidates, concurrency=2)

    assert [v.candidate.company_name for v in split.verified] == ["Brightway Lighting Co., Ltd."]
    assert split.rejected[0].result.code == "verification_error"
    assert candidates[1].verification.status == VerificationStatus.FAILED
