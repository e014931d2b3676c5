from __future__ import annotations
import asyncio, logging, re
from dataclasses import dataclass
from typing import Optional
from urllib.parse import urlsplit

import aiohttp

log = logging.getLogger("fetch")

UA = "Mozilla/5.0 (compatible; SupplierSearchBot/1.0)"
HEADERS = {"User-Agent": UA, "Accept-Language": "en-US,en;q=0.8"}

# Public suffixes with two labels that are common among supplier sites
MULTI_PART_SUFFIXES = {
    "co.uk", "org.uk", "ac.uk", "com.cn", "net.cn", "org.cn", "com.hk", "com.tw",
    "co.jp", "co.kr", "com.au", "co.nz", "co.in", "com.sg", "com.my", "com.vn",
    "com.br", "com.mx", "com.tr", "co.za", "com.pk", "com.bd", "co.id", "co.th",
}


@dataclass
class Page:
    url: str
    final_url: Optional[str] = None
    status: Optional[int] = None
    html: str = ""
    error: Optional[str] = None


def normalize_website(url: str) -> str:
    """Trimmed URL with an https:// scheme when none was given; '' for blank input."""
    trimmed = (url or "").strip()
    if not trimmed:
        return ""
    if not re.match(r"^https?://", trimmed, re.I):
        return f"https://{trimmed}"
    return trimmed


def hostname_of(url: str) -> str:
    try:
        host = urlsplit(normalize_website(url)).hostname or ""
    except ValueError:
        return ""
    return re.sub(r"^www\.", "", host.lower())


def registrable_domain(value: str) -> str:
    """
    Registrable root of a host or URL:
      "https://www.acme-tools.com/contact" -> "acme-tools.com"
      "sales.shenzhen-parts.com.cn"        -> "shenzhen-parts.com.cn"
    """
    host = hostname_of(value) if "/" in value or ":" in value else value.lower().strip(".")
    host = re.sub(r"^www\.", "", host)
    parts = [p for p in host.split(".") if p]
    if len(parts) <= 2:
        return ".".join(parts)
    if ".".join(parts[-2:]) in MULTI_PART_SUFFIXES:
        return ".".join(parts[-3:])
    return ".".join(parts[-2:])


def describe_error(e: BaseException) -> str:
    if isinstance(e, (asyncio.TimeoutError, TimeoutError)):
        return "Timeout"
    return str(e) or e.__class__.__name__


async def head_status(url: str, timeout: float = 10.0) -> int:
    """HEAD probe following redirects. Network failures propagate to the caller."""
    async with aiohttp.ClientSession(headers=HEADERS) as session:
        async with session.head(
            url, allow_redirects=True, timeout=aiohttp.ClientTimeout(total=timeout)
        ) as resp:
            return resp.status


async def fetch_page(url: str, timeout: float = 12.0) -> Page:
    """GET a page; text bodies only. Failures are reported on the Page, not raised."""
    try:
        async with aiohttp.ClientSession(headers=HEADERS) as session:
            async with session.get(
                url, allow_redirects=True, timeout=aiohttp.ClientTimeout(total=timeout)
            ) as resp:
                ctype = (resp.headers.get("content-type") or "").lower()
                html = await resp.text(errors="replace") if "text" in ctype else ""
                return Page(url=url, final_url=str(resp.url), status=resp.status, html=html)
    except asyncio.CancelledError:
        raise
    except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
        log.debug("fetch failed %s: %s", url, describe_error(e))
        return Page(url=url, error=describe_error(e))
