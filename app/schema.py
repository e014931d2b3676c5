# file: app/schema.py
import re
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, EmailStr, Field, field_validator, model_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _clean_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, (list, tuple)):
        value = ", ".join(str(v) for v in value if v not in (None, ""))
    return re.sub(r"\s+", " ", str(value)).strip()


class SupplierStatus(str, Enum):
    PENDING = "Pending Outreach"
    QUEUED = "Email Queued"
    SENT = "Email Sent"
    FAILED = "Email Failed"
    RESPONDED = "Supplier Responded"


class Priority(str, Enum):
    HIGH = "High"
    NORMAL = "Normal"


class RunStatus(str, Enum):
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class VerificationStatus(str, Enum):
    MATCHED = "matched"
    DOMAIN_MATCHED = "domain-matched"
    EXTRACTED = "extracted"
    FAILED = "failed"


class JobState(str, Enum):
    WAITING = "waiting"
    ACTIVE = "active"
    DELAYED = "delayed"
    COMPLETED = "completed"
    FAILED = "failed"


# ---------- Filtering ----------

class ReachabilityResult(BaseModel):
    accessible: bool
    status_code: Optional[int] = None
    error: Optional[str] = None


class PageVisit(BaseModel):
    url: str
    final_url: Optional[str] = None
    status: Optional[int] = None
    error: Optional[str] = None


class ContactSource(BaseModel):
    value: str
    url: str


class VerificationEvidence(BaseModel):
    candidate_email: Optional[str] = None
    resolved_email: Optional[str] = None
    site_domain: Optional[str] = None
    emails: List[str] = []
    phones: List[str] = []
    email_sources: List[ContactSource] = []
    phone_sources: List[ContactSource] = []
    matched_source: Optional[str] = None
    pages: List[PageVisit] = []


class CandidateRecord(BaseModel):
    """Unverified supplier data as proposed by the generation service."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    company_name: str = Field("", validation_alias=AliasChoices("company_name", "companyName", "name"))
    email: str = ""
    phone: str = ""
    country: str = ""
    city: str = ""
    website: str = Field("", validation_alias=AliasChoices("website", "url", "site"))
    manufacturing_capabilities: str = Field(
        "", validation_alias=AliasChoices("manufacturing_capabilities", "capabilities"))
    production_capacity: str = ""
    certifications: str = ""
    years_in_business: str = ""
    estimated_price_range: str = Field(
        "", validation_alias=AliasChoices("estimated_price_range", "price_range"))
    minimum_order_quantity: str = Field(
        "", validation_alias=AliasChoices("minimum_order_quantity", "moq"))

    # position in the generation output, plus audit attachments added while filtering
    position: int = 0
    raw: Dict[str, Any] = {}
    reachability: Optional[ReachabilityResult] = None
    verification: Optional["VerificationResult"] = None

    @field_validator(
        "company_name", "email", "phone", "country", "city", "website",
        "manufacturing_capabilities", "production_capacity", "certifications",
        "years_in_business", "estimated_price_range", "minimum_order_quantity",
        mode="before",
    )
    @classmethod
    def _sanitize(cls, v: Any) -> str:
        return _clean_text(v)


class VerificationResult(BaseModel):
    status: VerificationStatus
    reason: Optional[str] = None
    code: Optional[str] = None
    email: Optional[str] = None
    evidence: VerificationEvidence = Field(default_factory=VerificationEvidence)

    @property
    def ok(self) -> bool:
        return self.status != VerificationStatus.FAILED


class VerifiedCandidate(BaseModel):
    candidate: CandidateRecord
    result: VerificationResult


CandidateRecord.model_rebuild()


class FilterConfig(BaseModel):
    min_suppliers: int = 15
    max_suppliers: int = 20
    verification_concurrency: int = 3
    verification_timeout: float = 12.0
    require_reachable: bool = True
    reachability_floor: Optional[int] = None
    high_priority_count: int = 5

    @property
    def fallback_floor(self) -> int:
        return self.min_suppliers if self.reachability_floor is None else self.reachability_floor


class FilterStats(BaseModel):
    received: int = 0
    schema_valid: int = 0
    schema_rejected: int = 0
    reachable: int = 0
    unreachable: int = 0
    reachability_fallback: bool = False
    verified: int = 0
    verification_rejected: int = 0
    selected: int = 0
    shortfall: int = 0


# ---------- Suppliers & runs ----------

class ConversationEvent(BaseModel):
    direction: str  # outbound, inbound, system
    subject: str = ""
    body: str = ""
    provider: Optional[str] = None
    message_id: Optional[str] = None
    job_id: Optional[str] = None
    at: datetime = Field(default_factory=utcnow)


class Supplier(BaseModel):
    model_config = ConfigDict(validate_assignment=True)

    id: str = Field(frozen=True)
    search_id: str
    company_name: str
    email: EmailStr
    phone: str = ""
    country: str = ""
    city: str = ""
    website: str = ""
    manufacturing_capabilities: str = ""
    production_capacity: str = ""
    certifications: str = ""
    years_in_business: str = ""
    estimated_price_range: str = ""
    minimum_order_quantity: str = ""
    status: SupplierStatus = SupplierStatus.PENDING
    priority: Priority = Priority.NORMAL
    created_at: datetime = Field(default_factory=utcnow)
    last_contact: Optional[datetime] = None
    emails_sent: int = 0
    emails_received: int = 0
    last_response_date: Optional[datetime] = None
    notes: str = ""
    conversation_history: List[ConversationEvent] = []
    metadata: Dict[str, Any] = {}
    thread_id: str = ""


class SearchQuery(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    product_description: str = Field(
        "", validation_alias=AliasChoices("product_description", "productDescription"))
    target_price: str = Field("", validation_alias=AliasChoices("target_price", "targetPrice"))
    quantity: str = ""
    additional_requirements: str = Field(
        "", validation_alias=AliasChoices("additional_requirements", "additionalRequirements"))
    min_suppliers: Optional[int] = Field(None, validation_alias=AliasChoices("min_suppliers", "minSuppliers"))
    max_suppliers: Optional[int] = Field(None, validation_alias=AliasChoices("max_suppliers", "maxSuppliers"))

    @field_validator("product_description", "target_price", "quantity", "additional_requirements", mode="before")
    @classmethod
    def _strip(cls, v: Any) -> str:
        return _clean_text(v)

    @field_validator("min_suppliers", "max_suppliers", mode="before")
    @classmethod
    def _blank_is_none(cls, v: Any) -> Any:
        if v is None or (isinstance(v, str) and not v.strip()):
            return None
        return v

    @field_validator("product_description")
    @classmethod
    def _description_length(cls, v: str) -> str:
        if len(v) < 10:
            raise ValueError("Product description must be at least 10 characters long.")
        return v

    @field_validator("quantity")
    @classmethod
    def _quantity_shape(cls, v: str) -> str:
        if v and not re.fullmatch(r"[-A-Za-z0-9 ,._xX]+", v):
            raise ValueError("Quantity must contain only numbers and simple descriptors.")
        return v

    @field_validator("target_price")
    @classmethod
    def _price_shape(cls, v: str) -> str:
        if v and not re.fullmatch(r"[$€¥£]?[0-9.,\- ]+", v):
            raise ValueError("Target price should look like a numeric amount (optionally with currency symbol).")
        return v

    @field_validator("min_suppliers", "max_suppliers")
    @classmethod
    def _positive(cls, v: Optional[int]) -> Optional[int]:
        if v is not None and v < 1:
            raise ValueError("Supplier counts must be integers of at least 1.")
        return v

    @model_validator(mode="after")
    def _min_le_max(self) -> "SearchQuery":
        if self.min_suppliers is not None and self.max_suppliers is not None \
                and self.min_suppliers > self.max_suppliers:
            raise ValueError("Minimum supplier count cannot exceed the maximum.")
        return self


class RunMetrics(BaseModel):
    suppliers_requested: int = 0
    suppliers_validated: int = 0
    emails_queued: int = 0


class SearchRun(BaseModel):
    id: str
    query: SearchQuery
    status: RunStatus = RunStatus.PROCESSING
    started_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    metrics: RunMetrics = Field(default_factory=RunMetrics)
    filter_stats: Optional[FilterStats] = None
    error: Optional[str] = None
    error_code: Optional[str] = None


class SupplierOutcome(BaseModel):
    supplier_id: str
    company_name: str
    status: str  # queued, failed
    job_id: Optional[str] = None
    subject: Optional[str] = None
    error: Optional[str] = None


class RunResult(BaseModel):
    run_id: str
    status: RunStatus
    metrics: RunMetrics = Field(default_factory=RunMetrics)
    outcomes: List[SupplierOutcome] = []
    error: Optional[str] = None
    code: Optional[str] = None


class SendRecord(BaseModel):
    run_id: str
    supplier_id: str
    status: str  # queued, sent, failed
    error: Optional[str] = None
    at: datetime = Field(default_factory=utcnow)


# ---------- Dispatch ----------

class MessageMetadata(BaseModel):
    supplier_id: str
    company_name: str
    email: str
    thread_id: str = ""
    priority: Priority = Priority.NORMAL
    subject: str
    body: str
    body_html: str = ""
    batch_current: int = 1
    batch_total: int = 1


class PreparedMessage(BaseModel):
    payload: Dict[str, Any]
    metadata: MessageMetadata


class SendReceipt(BaseModel):
    status_code: int
    provider_message_id: str = "unknown"


class DispatchJob(BaseModel):
    id: str
    queue: str
    run_id: str
    supplier_id: str
    message: PreparedMessage
    priority: Priority = Priority.NORMAL
    state: JobState = JobState.WAITING
    attempts_made: int = 0
    sequence: int = 0
    created_at: datetime = Field(default_factory=utcnow)
    finished_at: Optional[datetime] = None
    provider_message_id: Optional[str] = None
    error: Optional[str] = None


class JobCompleted(BaseModel):
    job: DispatchJob
    receipt: SendReceipt


class JobFailed(BaseModel):
    job: DispatchJob
    error: str
    retryable: bool = False


class JobStalled(BaseModel):
    job: DispatchJob


class DailyStats(BaseModel):
    sent: int = 0
    failed: int = 0
    total: int = 0
    daily_limit: int = 0
    remaining: int = 0


class QueueCounts(BaseModel):
    waiting: int = 0
    active: int = 0
    completed: int = 0
    failed: int = 0
    delayed: int = 0


class QueueHealth(BaseModel):
    status: str = "healthy"
    name: str
    counts: QueueCounts
    daily: DailyStats
    limits: Dict[str, Any] = {}


# ---------- Replies ----------

class InboundReply(BaseModel):
    sender_email: str
    subject: str = "No Subject"
    body: str = ""
    message_id: str = ""
    thread_id: str = ""
