"""Ingest decision policy."""

from .policy import ClassificationPolicy, INVOICE_KEYWORDS, find_invoice_keyword, match_vendor

__all__ = ["ClassificationPolicy", "INVOICE_KEYWORDS", "find_invoice_keyword", "match_vendor"]
