"""Email processing module."""

from .email_parser import EmailParser, decode_email_header

__all__ = ["EmailParser", "decode_email_header"]
