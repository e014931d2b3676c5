# file: app/tools/extract.py
"""
Contact extraction from raw HTML.

Kept free of I/O so it can be swapped or tuned independently of the verifier.

False-positive deny-list (documented, extend with care):
  * tracking / error-reporting hosts: sentry, wixpress, gtag, w.org
  * placeholder domains: example.com/.org/.net, domain.com, yourdomain.com,
    yourcompany.com, email.com
  * asset-like matches such as ``logo@2x.png`` (image, font, script suffixes)
Free-mail addresses (gmail, yahoo, hotmail, ...) are never business evidence.
Regional providers used by manufacturers (qq.com, 163.com, 126.com) are kept.
"""
from __future__ import annotations
import html as htmllib
import re
from dataclasses import dataclass, field
from typing import List

from bs4 import BeautifulSoup
from email_validator import EmailNotValidError, validate_email

EMAIL_RE = re.compile(r"[A-Z0-9._%+-]+@[A-Z0-9.-]+\.[A-Z]{2,}", re.I)
PHONE_RE = re.compile(r"(?:(?:\+?\d{1,3}[\s-]?)?(?:\(?\d{2,4}\)?[\s-]?)?\d{3,4}[\s-]?\d{3,4})")
_IP_DOMAIN = re.compile(r"^\[?\d{1,3}(?:\.\d{1,3}){3}\]?$")

FREE_MAIL_DOMAINS = (
    "gmail.com", "googlemail.com", "yahoo.com", "hotmail.com", "outlook.com",
    "live.com", "msn.com", "icloud.com", "me.com", "aol.com", "mail.ru",
)

DENY_DOMAIN_TOKENS = ("sentry", "wixpress", "gtag")
DENY_DOMAINS = (
    "example.com", "example.org", "example.net", "domain.com", "yourdomain.com",
    "yourcompany.com", "email.com", "w.org",
)
ASSET_SUFFIXES = (
    ".png", ".jpg", ".jpeg", ".gif", ".svg", ".webp", ".ico", ".bmp",
    ".css", ".js", ".woff", ".woff2", ".ttf",
)

MIN_PHONE_DIGITS = 7
MAX_PHONE_DIGITS = 15


@dataclass
class Contacts:
    emails: List[str] = field(default_factory=list)
    phones: List[str] = field(default_factory=list)


def _domain_in(domain: str, domains) -> bool:
    return any(domain == d or domain.endswith("." + d) for d in domains)


def email_domain(email: str) -> str:
    parts = (email or "").rsplit("@", 1)
    return parts[1].lower() if len(parts) == 2 else ""


def is_free_mail(email: str) -> bool:
    return _domain_in(email_domain(email), FREE_MAIL_DOMAINS)


def is_business_email(email: str) -> bool:
    value = (email or "").strip().lower()
    local, _, domain = value.partition("@")
    if not local or not domain or "." not in domain:
        return False
    if _IP_DOMAIN.match(domain):
        return False
    return not is_free_mail(value)


def is_valid_address(email: str) -> bool:
    """Syntax check only; the pattern alone lets through things like `a..b@x.com`."""
    try:
        validate_email(email, check_deliverability=False)
    except EmailNotValidError:
        return False
    return True


def _is_noise(email: str) -> bool:
    domain = email_domain(email)
    if any(tok in domain for tok in DENY_DOMAIN_TOKENS):
        return True
    if _domain_in(domain, DENY_DOMAINS):
        return True
    return email.endswith(ASSET_SUFFIXES)


def _clean_email(raw: str) -> str:
    return re.sub(r"[\s\"'<>]", "", raw or "").strip().lower()


def _keep(email: str) -> bool:
    return (bool(email) and not email.endswith("@") and not _is_noise(email)
            and is_business_email(email) and is_valid_address(email))


def extract_emails(html: str) -> List[str]:
    """Unique emails in first-seen order: pattern matches, then mailto: anchors."""
    if not html:
        return []
    decoded = htmllib.unescape(html)
    found: List[str] = []
    for raw in EMAIL_RE.findall(decoded):
        email = _clean_email(raw)
        if _keep(email) and email not in found:
            found.append(email)

    soup = BeautifulSoup(html, "html.parser")
    for a in soup.select('a[href^="mailto:"], a[href^="MAILTO:"]'):
        target = a.get("href", "")[len("mailto:"):].split("?", 1)[0]
        email = _clean_email(htmllib.unescape(target))
        if EMAIL_RE.fullmatch(email) and _keep(email) and email not in found:
            found.append(email)
    return found


def _normalize_phone(raw: str) -> str:
    return re.sub(r"[^\d+]", "", raw or "")


def extract_phones(html: str) -> List[str]:
    """Phone-like sequences from visible text and tel: links, digits and '+' only."""
    if not html:
        return []
    soup = BeautifulSoup(htmllib.unescape(html), "html.parser")
    tel_links = [a.get("href", "")[4:] for a in soup.select('a[href^="tel:"]')]
    for tag in soup(["script", "style", "noscript"]):
        tag.decompose()
    text = soup.get_text(" ")

    found: List[str] = []
    for raw in tel_links + PHONE_RE.findall(text):
        phone = _normalize_phone(raw)
        digits = len(phone.replace("+", ""))
        if MIN_PHONE_DIGITS <= digits <= MAX_PHONE_DIGITS and phone not in found:
            found.append(phone)
    return found


def extract_contacts(html: str) -> Contacts:
    return Contacts(emails=extract_emails(html), phones=extract_phones(html))
