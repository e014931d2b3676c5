# app/config.py
from __future__ import annotations
import os
from dataclasses import dataclass, field
from datetime import date
from typing import Dict, List, Optional

def _as_bool(v: str | None, default: bool = False) -> bool:
    if v is None:
        return default
    return v.strip().lower() in ("1", "true", "yes", "on")

def _as_int(v: str | None, default: int) -> int:
    try:
        return int(v) if v not in (None, "") else default
    except ValueError:
        return default

def _as_float(v: str | None, default: float) -> float:
    try:
        return float(v) if v not in (None, "") else default
    except ValueError:
        return default

def _as_date(v: str | None) -> Optional[date]:
    if not v:
        return None
    try:
        return date.fromisoformat(v.strip())
    except ValueError:
        return None

def _as_list(v: str | None) -> List[str]:
    return [p.strip() for p in (v or "").split(",") if p.strip()]

DEFAULT_TEMPLATES: Dict[str, str] = {
    "subject": "{Inquiry|Partnership request|Sourcing request} regarding {{productDescription}}",
    "intro": "{Hello|Good day|Dear} {{supplierCompany}} team,",
    "closing": "{Best regards|Kind regards}\nProcurement Team",
    "footer": "This message was sent from our sourcing platform. "
              "{If you received it by mistake|If this inquiry is not relevant}, reply with \"UNSUBSCRIBE\".",
}

DEFAULT_ANTISPAM_HEADERS: Dict[str, str] = {
    "X-Priority": "3",
    "X-Auto-Response-Suppress": "OOF, DR, RN, NRN, AutoReply",
    "Precedence": "bulk",
}

@dataclass
class Settings:
    # Generation service (OpenAI-compatible chat completions)
    openai_api_key: str = os.getenv("OPENAI_API_KEY", "")
    openai_base: str = os.getenv("OPENAI_BASE_URL", "https://api.openai.com/v1")
    search_model: str = os.getenv("OPENAI_SEARCH_MODEL", "gpt-4o")
    email_model: str = os.getenv("OPENAI_EMAIL_MODEL", "gpt-4o-mini")
    search_temperature: float = _as_float(os.getenv("OPENAI_SEARCH_TEMPERATURE"), 0.1)
    email_temperature: float = _as_float(os.getenv("OPENAI_EMAIL_TEMPERATURE"), 0.3)
    llm_timeout_seconds: float = _as_float(os.getenv("LLM_TIMEOUT_SECONDS"), 60.0)
    llm_concurrency: int = _as_int(os.getenv("LLM_CONCURRENCY"), 5)

    # Send service
    sendgrid_api_key: str = os.getenv("SENDGRID_API_KEY", "")
    sendgrid_base: str = os.getenv("SENDGRID_BASE_URL", "https://api.sendgrid.com/v3")
    from_email: str = os.getenv("FROM_EMAIL", "procurement@sourcing-hub.com")
    from_name: str = os.getenv("FROM_NAME", "Procurement Team")
    reply_to: str = os.getenv("REPLY_TO", "replies@sourcing-hub.com")

    # Candidate filtering
    min_suppliers: int = _as_int(os.getenv("MIN_SUPPLIERS"), 15)
    max_suppliers: int = _as_int(os.getenv("MAX_SUPPLIERS"), 20)
    require_reachable: bool = _as_bool(os.getenv("REQUIRE_REACHABLE"), True)
    # Reachable count below this falls back to the schema-valid set; None means min_suppliers
    reachability_floor: Optional[int] = _as_int(os.getenv("REACHABILITY_FLOOR"), 0) or None
    reachability_concurrency: int = _as_int(os.getenv("REACHABILITY_CONCURRENCY"), 5)
    reachability_timeout: float = _as_float(os.getenv("REACHABILITY_TIMEOUT"), 10.0)
    verification_concurrency: int = _as_int(os.getenv("VERIFICATION_CONCURRENCY"), 3)
    verification_timeout: float = _as_float(os.getenv("VERIFICATION_TIMEOUT"), 12.0)
    high_priority_count: int = _as_int(os.getenv("HIGH_PRIORITY_COUNT"), 5)

    # Dispatch policy
    daily_limit: int = _as_int(os.getenv("DAILY_SEND_LIMIT"), 120)
    send_interval_seconds: float = _as_float(os.getenv("SEND_INTERVAL_SECONDS"), 30.0)
    rate_limit_per_minute: int = _as_int(os.getenv("RATE_LIMIT_PER_MINUTE"), 10)
    dispatch_attempts: int = _as_int(os.getenv("DISPATCH_ATTEMPTS"), 3)
    dispatch_backoff_seconds: float = _as_float(os.getenv("DISPATCH_BACKOFF_SECONDS"), 2.0)
    sender_created_on: Optional[date] = _as_date(os.getenv("SENDER_CREATED_ON"))

    # Retry for remote calls
    retry_attempts: int = _as_int(os.getenv("RETRY_ATTEMPTS"), 3)
    retry_base_delay: float = _as_float(os.getenv("RETRY_BASE_DELAY"), 1.0)
    retry_max_delay: float = _as_float(os.getenv("RETRY_MAX_DELAY"), 4.0)

    # Notifications / templates
    notification_recipients: List[str] = field(
        default_factory=lambda: _as_list(os.getenv("NOTIFICATION_RECIPIENTS")))
    templates: Dict[str, str] = field(default_factory=lambda: dict(DEFAULT_TEMPLATES))
    antispam_headers: Dict[str, str] = field(default_factory=lambda: dict(DEFAULT_ANTISPAM_HEADERS))

    # Persistence (JSON files); None keeps everything in memory
    data_dir: Optional[str] = os.getenv("DATA_DIR") or None

_settings: Settings | None = None

def get_settings() -> Settings:
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings
