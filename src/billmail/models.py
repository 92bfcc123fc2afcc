"""Pydantic models aligned with PostgreSQL schema and internal processing."""

import hashlib
import math
from datetime import datetime
from enum import Enum
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


# ============================================================================
# Database Models (aligned with PostgreSQL schema)
# ============================================================================


class User(BaseModel):
    """User account (read-only, managed by the accounting app)."""

    id: str
    email: str
    name: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)


class Vendor(BaseModel):
    """Known vendor with sender allowlist (read-only, managed in settings)."""

    id: str
    user_id: str
    name: str
    is_active: bool = True
    from_emails: list[str] = Field(default_factory=list)
    from_domains: list[str] = Field(default_factory=list)
    subject_keywords: list[str] = Field(default_factory=list)

    model_config = ConfigDict(from_attributes=True)

    @field_validator("from_emails", "from_domains", "subject_keywords", mode="before")
    @classmethod
    def _none_to_empty(cls, value):
        return value or []


class IngestionStatus(str, Enum):
    """Processing outcome of a single message."""

    PENDING = "pending"
    PROCESSED = "processed"
    ERROR = "error"


class DecisionTier(str, Enum):
    """Which tier of the classification policy made the decision."""

    VENDOR = "vendor"
    KEYWORD = "keyword"
    LLM = "llm"
    NONE = "none"
    MANUAL = "manual"


class ClassificationDecision(BaseModel):
    """Outcome of the classification policy for one message."""

    should_ingest: bool
    tier: DecisionTier
    reason: str
    confidence: Optional[float] = None
    vendor_name: Optional[str] = None


class IngestionLogEntry(BaseModel):
    """Row of email_ingestion_log - one per (user, mailbox, uid_validity, uid)."""

    id: Optional[int] = None  # Auto-generated
    user_id: str
    mailbox: str
    uid_validity: int
    uid: int
    message_id: Optional[str] = None
    internal_date: Optional[datetime] = None
    from_address: Optional[str] = None
    subject: Optional[str] = None

    status: IngestionStatus = IngestionStatus.PENDING
    error: Optional[str] = None
    ingested: bool = False
    attachment_hashes: list[str] = Field(default_factory=list)
    decision: Optional[ClassificationDecision] = None

    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)

    @field_validator("attachment_hashes", mode="before")
    @classmethod
    def _hashes_none_to_empty(cls, value):
        return value or []


class StoredFile(BaseModel):
    """Row of the files table written by the materializer."""

    id: str
    user_id: str
    filename: str
    path: str  # Relative to the user's upload root
    mimetype: str
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


# ============================================================================
# Internal Processing Models (not stored in database)
# ============================================================================


class EmailAttachment(BaseModel):
    """Email attachment with raw data (internal processing)."""

    filename: Optional[str] = None
    content_type: str
    data: bytes
    size_bytes: int

    @property
    def content_hash(self) -> str:
        """SHA-256 hex digest of the attachment bytes."""
        return hashlib.sha256(self.data).hexdigest()

    @property
    def is_pdf(self) -> bool:
        if self.content_type == "application/pdf":
            return True
        return bool(self.filename) and self.filename.lower().endswith(".pdf")


class ParsedEmail(BaseModel):
    """Parsed email data (internal processing)."""

    subject: str
    from_address: str
    from_addresses: list[str] = Field(default_factory=list)  # Bare, lower-cased
    to_address: Optional[str] = None
    date: str
    sent_at: Optional[datetime] = None
    body_text: Optional[str] = None
    body_html: Optional[str] = None
    attachments: list[EmailAttachment] = Field(default_factory=list)
    message_id: Optional[str] = None  # Email Message-ID header

    @property
    def pdf_attachments(self) -> list[EmailAttachment]:
        return [att for att in self.attachments if att.is_pdf]

    @property
    def body(self) -> str:
        """Text body, falling back to HTML."""
        return self.body_text or self.body_html or ""

    @property
    def sender_domains(self) -> list[str]:
        return [addr.split("@", 1)[1] for addr in self.from_addresses if "@" in addr]


class EmailMessage(BaseModel):
    """Raw email message from IMAP with UID."""

    uid: int
    rfc822_data: bytes  # Raw RFC822 email bytes
    internal_date: Optional[datetime] = None


class MailboxInfo(BaseModel):
    """State of a selected IMAP mailbox."""

    name: str
    uid_validity: int
    uid_next: Optional[int] = None
    exists: int = 0


class EmailClassification(BaseModel):
    """LLM classification result."""

    is_invoice: bool = Field(description="Whether this email is a bill we should ingest")
    confidence: float = Field(0.0, description="Confidence between 0 and 1")
    reasoning: Optional[str] = Field(None, description="Reasoning for classification")

    @field_validator("confidence", mode="before")
    @classmethod
    def _normalize_confidence(cls, value):
        # Some models answer with a label instead of a number
        labels = {"high": 0.9, "medium": 0.6, "low": 0.3}
        if isinstance(value, str) and value.strip().lower() in labels:
            return labels[value.strip().lower()]
        if value is None:
            return 0.0
        value = float(value)
        if math.isnan(value):
            return 0.0
        return max(0.0, min(1.0, value))


class TriageRecommendation(BaseModel):
    """Rule-based hint on whether a skipped message deserves a manual look."""

    should_process: bool
    reason: str
    confidence: float


# ============================================================================
# Result / Metrics Models
# ============================================================================


class FetchDetail(BaseModel):
    """Outcome for one message in a poll."""

    uid: int
    message_id: Optional[str] = None
    from_address: Optional[str] = None
    subject: Optional[str] = None
    status: Literal["ingested", "ignored", "skipped", "failed"]
    reason: Optional[str] = None


class FetchResult(BaseModel):
    """Aggregate result of a poll, backfill or reprocess run."""

    mailbox: Optional[str] = None
    uid_validity: Optional[int] = None
    total_fetched: int = 0
    ingested: int = 0
    ignored: int = 0
    skipped: int = 0
    failed: int = 0
    errors: list[str] = Field(default_factory=list)
    details: list[FetchDetail] = Field(default_factory=list)
    duration_sec: float = 0.0
    parse_time_sec: float = 0.0
    classification_time_sec: float = 0.0
    materialize_time_sec: float = 0.0

    def record(self, detail: FetchDetail) -> None:
        """Append a detail row and bump the matching counter."""
        self.details.append(detail)
        if detail.status == "ingested":
            self.ingested += 1
        elif detail.status == "ignored":
            self.ignored += 1
        elif detail.status == "skipped":
            self.skipped += 1
        else:
            self.failed += 1
            self.errors.append(f"Email {detail.uid}: {detail.reason}")
