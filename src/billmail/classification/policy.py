"""Three-tier ingest decision: known vendor, keyword heuristic, LLM."""

import logging
from typing import Optional, Protocol

from ..models import ClassificationDecision, DecisionTier, EmailClassification, ParsedEmail, Vendor

logger = logging.getLogger(__name__)

INVOICE_KEYWORDS = (
    "invoice", "bill", "payment", "receipt", "statement",
    "due", "amount", "total", "tax", "vendor", "supplier",
)


class EmailClassifier(Protocol):
    def classify_email(self, parsed_email: ParsedEmail) -> EmailClassification: ...


def match_vendor(parsed: ParsedEmail, vendors: list[Vendor]) -> Optional[Vendor]:
    """Return the first active vendor whose allowlist matches the email.

    A vendor matches on an exact sender address, an exact sender domain, or a
    subject keyword. All comparisons are case-insensitive.
    """
    senders = {addr.lower() for addr in parsed.from_addresses}
    domains = {domain.lower() for domain in parsed.sender_domains}
    subject = (parsed.subject or "").lower()

    for vendor in vendors:
        if not vendor.is_active:
            continue
        if any(e.strip().lower() in senders for e in vendor.from_emails if e.strip()):
            return vendor
        if any(d.strip().lower().lstrip("@") in domains for d in vendor.from_domains if d.strip()):
            return vendor
        if any(k.strip().lower() in subject for k in vendor.subject_keywords if k.strip()):
            return vendor
    return None


def find_invoice_keyword(parsed: ParsedEmail) -> Optional[str]:
    """Return the first invoice keyword found in subject or body, if any."""
    haystacks = [
        (parsed.subject or "").lower(),
        (parsed.body_text or "").lower(),
        (parsed.body_html or "").lower(),
    ]
    for keyword in INVOICE_KEYWORDS:
        if any(keyword in text for text in haystacks):
            return keyword
    return None


class ClassificationPolicy:
    """Decide whether a parsed email is a bill worth ingesting."""

    def __init__(self, classifier: Optional[EmailClassifier] = None, llm_confidence_threshold: float = 0.6):
        """Initialize policy.

        Args:
            classifier: LLM classifier for the last tier (None disables it)
            llm_confidence_threshold: Minimum LLM confidence to ingest
        """
        self.classifier = classifier
        self.llm_confidence_threshold = llm_confidence_threshold

    def decide(self, parsed: ParsedEmail, vendors: list[Vendor]) -> ClassificationDecision:
        """Run the tiers in order; the first one that applies decides.

        Args:
            parsed: Parsed email
            vendors: The user's vendor allowlist

        Returns:
            ClassificationDecision: Outcome with tier and human-readable reason
        """
        has_pdf = bool(parsed.pdf_attachments)

        vendor = match_vendor(parsed, vendors)
        if vendor is not None:
            if has_pdf:
                return ClassificationDecision(
                    should_ingest=True,
                    tier=DecisionTier.VENDOR,
                    reason=f"Known vendor: {vendor.name}",
                    vendor_name=vendor.name,
                )
            return ClassificationDecision(
                should_ingest=False,
                tier=DecisionTier.VENDOR,
                reason=f"Known vendor {vendor.name} but no PDF attachment",
                vendor_name=vendor.name,
            )

        if not has_pdf:
            return ClassificationDecision(
                should_ingest=False,
                tier=DecisionTier.NONE,
                reason="No PDF attachment",
            )

        keyword = find_invoice_keyword(parsed)
        if keyword is not None:
            return ClassificationDecision(
                should_ingest=True,
                tier=DecisionTier.KEYWORD,
                reason=f"PDF attachment and invoice keyword '{keyword}'",
            )

        if self.classifier is None:
            return ClassificationDecision(
                should_ingest=False,
                tier=DecisionTier.NONE,
                reason="No invoice keywords and LLM classification disabled",
            )

        result = self.classifier.classify_email(parsed)
        ingest = result.is_invoice and result.confidence >= self.llm_confidence_threshold
        if ingest:
            reason = f"LLM classified as invoice (confidence {result.confidence:.2f})"
        elif result.is_invoice:
            reason = (
                f"LLM confidence {result.confidence:.2f} below threshold "
                f"{self.llm_confidence_threshold:.2f}"
            )
        else:
            reason = f"LLM classified as not an invoice (confidence {result.confidence:.2f})"
        logger.debug(f"LLM decision for {parsed.subject!r}: {reason}")

        return ClassificationDecision(
            should_ingest=ingest,
            tier=DecisionTier.LLM,
            reason=reason,
            confidence=result.confidence,
        )
