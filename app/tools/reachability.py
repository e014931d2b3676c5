# file: app/tools/reachability.py
from __future__ import annotations
import asyncio
import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable, List, Optional
from urllib.parse import urlsplit

from app.schema import CandidateRecord, ReachabilityResult
from app.tools.fetch import describe_error, head_status, normalize_website
from app.tools.retry import RetryPolicy

log = logging.getLogger("reachability")

Probe = Callable[[str, float], Awaitable[int]]


def is_accessible_status(status: int) -> bool:
    # 401/403 on HEAD usually means a live site guarding its pages
    return status < 400 or status in (401, 403)


@dataclass
class ReachabilitySplit:
    valid: List[CandidateRecord] = field(default_factory=list)
    invalid: List[CandidateRecord] = field(default_factory=list)


class ReachabilityChecker:
    """HEAD-probes candidate websites, HTTPS first with a single HTTP fallback."""

    def __init__(self, probe: Optional[Probe] = None, timeout: float = 10.0,
                 concurrency: int = 5, retry: Optional[RetryPolicy] = None):
        self.probe = probe or head_status
        self.timeout = timeout
        self.concurrency = max(1, concurrency)
        self.retry = retry

    async def _status(self, url: str, timeout: float) -> int:
        async def attempt() -> int:
            return await asyncio.wait_for(self.probe(url, timeout), timeout)
        if self.retry is not None:
            return await self.retry.execute(attempt)
        return await attempt()

    async def check(self, url: str, timeout: Optional[float] = None) -> ReachabilityResult:
        timeout = self.timeout if timeout is None else timeout
        if not url or not url.strip():
            return ReachabilityResult(accessible=False, error="Empty URL provided")

        full = normalize_website(url)
        try:
            host = urlsplit(full).hostname
        except ValueError:
            host = None
        if not host:
            return ReachabilityResult(accessible=False, error="Invalid URL format")

        try:
            status = await self._status(full, timeout)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            first_error = describe_error(e)
            if not full.lower().startswith("https://"):
                return ReachabilityResult(accessible=False, error=first_error)
            fallback = "http://" + full[len("https://"):]
            try:
                status = await self._status(fallback, timeout)
            except asyncio.CancelledError:
                raise
            except Exception:
                return ReachabilityResult(accessible=False, error=first_error)

        ok = is_accessible_status(status)
        return ReachabilityResult(accessible=ok, status_code=status, error=None if ok else f"HTTP {status}")

    async def filter(self, candidates: List[CandidateRecord], require_accessible: bool = True) -> ReachabilitySplit:
        """Probe every candidate (bounded), attach the result, split by accessibility."""
        sem = asyncio.Semaphore(self.concurrency)

        async def one(c: CandidateRecord) -> CandidateRecord:
            async with sem:
                c.reachability = await self.check(c.website)
            return c

        checked = await asyncio.gather(*(one(c) for c in candidates))
        split = ReachabilitySplit()
        for c in checked:
            if require_accessible and not c.reachability.accessible:
                log.warning("Rejected %s: website not accessible %s (%s)",
                            c.company_name, c.website, c.reachability.error)
                split.invalid.append(c)
            else:
                split.valid.append(c)
        log.info("Reachability: %d valid, %d invalid", len(split.valid), len(split.invalid))
        return split
