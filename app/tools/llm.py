# app/tools/llm.py
from __future__ import annotations
import asyncio, json, logging, re, time
from typing import Any, Dict, List, Optional

import aiohttp

from app.config import Settings, get_settings
from app.errors import GenerationError, RemoteServiceError
from app.prompts import email_writer_messages, supplier_search_messages
from app.schema import SearchQuery, Supplier
from app.tools.retry import FailedAttempt, RetryPolicy

log = logging.getLogger("llm")

# Some models wrap answers in <think> blocks
_THINK_BLOCK = re.compile(r"<\s*think\s*>.*?<\s*/\s*think\s*>", re.I | re.S)
_FENCE_OPEN = re.compile(r"^```[a-zA-Z]*\n?")

SEARCH_MAX_TOKENS = 4000
EMAIL_MAX_TOKENS = 800


class LLMNotReady(GenerationError): ...


def strip_code_fences(text: str) -> str:
    t = (text or "").strip()
    if t.startswith("```"):
        t = _FENCE_OPEN.sub("", t)
        if t.endswith("```"):
            t = t[:-3]
    return t.strip()


def _trim_trailing(text: str) -> str:
    end = max(text.rfind("}"), text.rfind("]"))
    return text[: end + 1] if end != -1 else text


def find_balanced_segment(text: str, open_ch: str = "{", close_ch: str = "}") -> Optional[str]:
    """First balanced open/close segment, ignoring brackets inside JSON strings."""
    start = text.find(open_ch)
    while start != -1:
        depth, in_str, escaped = 0, False, False
        for i in range(start, len(text)):
            c = text[i]
            if in_str:
                if escaped:
                    escaped = False
                elif c == "\\":
                    escaped = True
                elif c == '"':
                    in_str = False
            elif c == '"':
                in_str = True
            elif c == open_ch:
                depth += 1
            elif c == close_ch:
                depth -= 1
                if depth == 0:
                    return text[start: i + 1]
        start = text.find(open_ch, start + 1)
    return None


def parse_json_content(content: str) -> Any:
    cleaned = _trim_trailing(strip_code_fences(_THINK_BLOCK.sub("", content or "")))
    try:
        return json.loads(cleaned)
    except ValueError:
        pass
    for open_ch, close_ch in (("{", "}"), ("[", "]")):
        segment = find_balanced_segment(cleaned, open_ch, close_ch)
        if segment:
            try:
                return json.loads(segment)
            except ValueError as e:
                log.warning("Secondary JSON parse attempt failed: %s", e)
    raise GenerationError("Failed to parse JSON from model response", raw=cleaned)


def _log_attempt(attempt: FailedAttempt) -> None:
    log.warning("Completion attempt %d/%d failed (%s)%s", attempt.attempt, attempt.attempts, attempt.error,
                f"; retrying in {attempt.delay:.1f}s" if attempt.retryable and attempt.delay else "")


class CompletionClient:
    """OpenAI-compatible chat completions over aiohttp, JSON mode, bounded concurrency."""

    def __init__(self, settings: Optional[Settings] = None, retry: Optional[RetryPolicy] = None):
        s = settings or get_settings()
        self.api_key = s.openai_api_key
        self.base_url = s.openai_base.rstrip("/")
        self.timeout = s.llm_timeout_seconds
        self._sem = asyncio.Semaphore(max(1, s.llm_concurrency))
        self.retry = retry or RetryPolicy(attempts=s.retry_attempts, base_delay=s.retry_base_delay,
                                          max_delay=s.retry_max_delay, on_failed_attempt=_log_attempt)

    async def _post(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        headers = {"Authorization": f"Bearer {self.api_key}", "Content-Type": "application/json"}
        async with self._sem:
            async with aiohttp.ClientSession(headers=headers) as session:
                async with session.post(f"{self.base_url}/chat/completions", json=payload,
                                        timeout=aiohttp.ClientTimeout(total=self.timeout)) as resp:
                    try:
                        data = await resp.json(content_type=None)
                    except ValueError:
                        data = {"error": {"message": (await resp.text())[:500]}}
                    if resp.status >= 400:
                        err = (data or {}).get("error") or {}
                        msg = err.get("message") if isinstance(err, dict) else str(err)
                        raise RemoteServiceError(msg or "Completion request failed", status=resp.status, payload=data)
                    return data

    async def chat_json(self, model: str, messages: List[Dict[str, str]], temperature: float = 0.1,
                        max_tokens: int = 2000) -> Any:
        if not self.api_key:
            raise LLMNotReady("OpenAI API key is not configured")
        payload = {
            "model": model,
            "messages": messages,
            "temperature": temperature,
            "max_tokens": max_tokens,
            "response_format": {"type": "json_object"},
        }
        t0 = time.time()
        data = await self.retry.execute(self._post, payload)
        try:
            content = data["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError):
            content = None
        if not content:
            raise GenerationError("Model response did not contain message content", raw=data)
        log.info("LLM %s chars=%d latency=%.2fs", model, len(content), time.time() - t0)
        return parse_json_content(content)


class SupplierGenerator:
    """Asks the generation service for supplier candidates"""

    def __init__(self, client: CompletionClient, settings: Optional[Settings] = None):
        self.client = client
        self.settings = settings or get_settings()

    async def generate(self, query: SearchQuery, min_suppliers: int, max_suppliers: int) -> Any:
        messages = supplier_search_messages(query, min_suppliers, max_suppliers)
        try:
            return await self.client.chat_json(self.settings.search_model, messages,
                                               self.settings.search_temperature, SEARCH_MAX_TOKENS)
        except RemoteServiceError as e:
            raise GenerationError(f"Generation service failed: {e.message}", raw=e.payload) from e
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise GenerationError(f"Generation service unreachable: {e or e.__class__.__name__}") from e

    async def write_email(self, supplier: Supplier, query: SearchQuery) -> Dict[str, Any]:
        data = await self.client.chat_json(self.settings.email_model, email_writer_messages(supplier, query),
                                           self.settings.email_temperature, EMAIL_MAX_TOKENS)
        if not isinstance(data, dict) or not data.get("subject") or not data.get("body"):
            raise GenerationError("Email writer did not return subject/body", raw=data)
        return data
