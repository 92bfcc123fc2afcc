"""Rule-based hints for messages the classification policy declined."""

import logging

from .models import IngestionLogEntry, TriageRecommendation, User
from .storage.database import DatabaseClient

logger = logging.getLogger(__name__)

REPLY_PREFIXES = ("re:", "fwd:", "fw:")
BILLING_SENDER_MARKERS = ("billing", "invoice", "accounting", "noreply")
BILLING_SUBJECT_KEYWORDS = ("invoice", "bill", "payment", "receipt")


def recommend(entry: IngestionLogEntry, known_vendors: list[str]) -> TriageRecommendation:
    """Suggest whether a skipped message is worth promoting.

    Args:
        entry: Processed, non-ingested log entry
        known_vendors: Vendor names for the user

    Returns:
        TriageRecommendation: First matching rule wins
    """
    subject = (entry.subject or "").lower()
    sender = (entry.from_address or "").lower()

    if subject.startswith(REPLY_PREFIXES):
        return TriageRecommendation(should_process=False, reason="Reply or forwarded email", confidence=0.9)

    if entry.attachment_hashes:
        return TriageRecommendation(
            should_process=True,
            reason=f"Has {len(entry.attachment_hashes)} attachment(s) - likely invoice/bill",
            confidence=0.8,
        )

    if any(marker in sender for marker in BILLING_SENDER_MARKERS):
        return TriageRecommendation(should_process=True, reason="From billing/invoice address", confidence=0.7)

    if any(keyword in subject for keyword in BILLING_SUBJECT_KEYWORDS):
        return TriageRecommendation(should_process=True, reason="Subject contains billing keywords", confidence=0.7)

    if "newsletter" in subject or "unsubscribe" in subject or "newsletter" in sender:
        return TriageRecommendation(should_process=False, reason="Newsletter or promotional email", confidence=0.8)

    for name in known_vendors:
        name = name.strip().lower()
        if name and (name in sender or name in subject):
            return TriageRecommendation(should_process=True, reason="From known vendor/biller", confidence=0.9)

    return TriageRecommendation(should_process=False, reason="No clear indicators", confidence=0.5)


def list_triage(
    db: DatabaseClient, user: User, limit: int = 100
) -> list[tuple[IngestionLogEntry, TriageRecommendation]]:
    """Skipped messages for a user, newest first, each with a recommendation."""
    vendor_names = [vendor.name for vendor in db.get_active_vendors(user.id)]
    entries = db.list_triage_entries(user.id, limit=limit)
    logger.info(f"Found {len(entries)} triage candidate(s) for {user.email}")
    return [(entry, recommend(entry, vendor_names)) for entry in entries]
