"""Email bill ingestion - mailbox in, reviewable uploads out."""

# Models
from .models import (
    # Database models
    User,
    Vendor,
    IngestionLogEntry,
    IngestionStatus,
    StoredFile,
    # Processing models
    ParsedEmail,
    EmailAttachment,
    EmailMessage,
    MailboxInfo,
    EmailClassification,
    ClassificationDecision,
    DecisionTier,
    TriageRecommendation,
    # Results
    FetchDetail,
    FetchResult,
)

# Ingestion
from .ingestion import ImapMailbox, MailboxClient, MailboxError

# Processing
from .processing import EmailParser

# Classification
from .classification import ClassificationPolicy
from .semantic import InferenceClient

# Storage
from .storage import DatabaseClient, LocalUploadStore, S3UploadStore, UploadStore
from .materializer import Materializer

# Service
from .service import IngestionService

# Configuration
from .config import Config

__version__ = "0.1.0"

__all__ = [
    # Models
    "User",
    "Vendor",
    "IngestionLogEntry",
    "IngestionStatus",
    "StoredFile",
    "ParsedEmail",
    "EmailAttachment",
    "EmailMessage",
    "MailboxInfo",
    "EmailClassification",
    "ClassificationDecision",
    "DecisionTier",
    "TriageRecommendation",
    "FetchDetail",
    "FetchResult",
    # Components
    "ImapMailbox",
    "MailboxClient",
    "MailboxError",
    "EmailParser",
    "ClassificationPolicy",
    "InferenceClient",
    "DatabaseClient",
    "UploadStore",
    "LocalUploadStore",
    "S3UploadStore",
    "Materializer",
    "IngestionService",
    "Config",
]
