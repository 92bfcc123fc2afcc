"""Email parsing utilities for RFC822 format emails."""

import email
import logging
from datetime import datetime
from email.errors import HeaderParseError
from email.header import decode_header
from email.message import Message
from email.utils import getaddresses, parsedate_to_datetime
from typing import Optional

from ..models import ParsedEmail, EmailAttachment

logger = logging.getLogger(__name__)


def decode_email_header(header: Optional[str]) -> str:
    """Decode an RFC 2047 encoded header, tolerating bad charsets.

    Args:
        header: Raw email header

    Returns:
        Decoded string
    """
    if not header:
        return ""

    try:
        parts = decode_header(str(header))
    except HeaderParseError as e:
        logger.warning(f"Keeping undecodable header as-is: {e}")
        return str(header).strip()

    result = []
    for part, encoding in parts:
        if isinstance(part, bytes):
            try:
                result.append(part.decode(encoding or "utf-8", errors="ignore"))
            except LookupError:
                result.append(part.decode("utf-8", errors="ignore"))
        else:
            result.append(part)

    return "".join(result).strip()


class EmailParser:
    """Parse RFC822 email messages and extract components."""

    @staticmethod
    def parse(email_bytes: bytes) -> ParsedEmail:
        """Parse email bytes and extract key components.

        Args:
            email_bytes: Email in RFC822 format (bytes)

        Returns:
            ParsedEmail: Parsed email object with all components
        """
        msg = email.message_from_bytes(email_bytes)

        attachments = EmailParser._extract_attachments(msg)
        body_text, body_html = EmailParser._extract_body(msg)

        raw_date = msg.get("Date", "")
        message_id = msg.get("Message-ID")

        return ParsedEmail(
            subject=decode_email_header(msg.get("Subject", "")),
            from_address=decode_email_header(msg.get("From", "")),
            from_addresses=EmailParser._extract_addresses(msg, "From"),
            to_address=decode_email_header(msg.get("To", "")),
            date=str(raw_date),
            sent_at=EmailParser._parse_date(raw_date),
            body_text=body_text,
            body_html=body_html,
            attachments=attachments,
            message_id=str(message_id).strip() if message_id else None,
        )

    @staticmethod
    def _extract_addresses(msg: Message, header: str) -> list[str]:
        """Bare, lower-cased addresses from an address header."""
        values = [str(value) for value in msg.get_all(header, [])]
        return [addr.lower() for _, addr in getaddresses(values) if "@" in addr]

    @staticmethod
    def _parse_date(raw_date: str) -> Optional[datetime]:
        if not raw_date:
            return None
        try:
            parsed = parsedate_to_datetime(str(raw_date))
        except (TypeError, ValueError, IndexError):
            return None
        # Naive means "-0000" (unknown zone); leave it to the caller's fallback
        return parsed if parsed.tzinfo is not None else None

    @staticmethod
    def _extract_attachments(msg: Message) -> list[EmailAttachment]:
        """Extract attachments from email message.

        A part counts as an attachment when it has a filename, an
        "attachment" disposition, or is an unnamed PDF.

        Args:
            msg: Email message object

        Returns:
            list[EmailAttachment]: List of email attachments
        """
        attachments = []

        for part in msg.walk():
            if part.is_multipart():
                continue

            filename = part.get_filename()
            content_type = part.get_content_type()
            disposition = part.get_content_disposition()

            if not filename and disposition != "attachment" and content_type != "application/pdf":
                continue

            try:
                payload = part.get_payload(decode=True)
            except (ValueError, LookupError) as e:
                logger.warning(f"Skipping malformed attachment {filename!r}: {e}")
                continue
            if payload is None:
                continue

            attachments.append(EmailAttachment(
                filename=decode_email_header(filename) if filename else None,
                content_type=content_type,
                data=payload,
                size_bytes=len(payload),
            ))

        return attachments

    @staticmethod
    def _decode_part(part: Message) -> Optional[str]:
        try:
            payload = part.get_payload(decode=True)
        except (ValueError, LookupError) as e:
            logger.warning(f"Skipping undecodable {part.get_content_type()} part: {e}")
            return None
        if payload is None:
            return None
        charset = part.get_content_charset() or "utf-8"
        try:
            return payload.decode(charset, errors="ignore")
        except LookupError:
            # Unknown charset name
            return payload.decode("utf-8", errors="ignore")

    @staticmethod
    def _extract_body(msg: Message) -> tuple[Optional[str], Optional[str]]:
        """Extract both text and HTML bodies from an email message.

        Args:
            msg: Email message object

        Returns:
            tuple[Optional[str], Optional[str]]: (body_text, body_html)
        """
        body_text = None
        body_html = None

        if msg.is_multipart():
            for part in msg.walk():
                content_type = part.get_content_type()

                # Skip attachments
                if part.get_content_disposition() == "attachment" or part.get_filename():
                    continue

                if content_type == "text/plain" and body_text is None:
                    body_text = EmailParser._decode_part(part)
                elif content_type == "text/html" and body_html is None:
                    body_html = EmailParser._decode_part(part)
        else:
            content_type = msg.get_content_type()
            decoded = EmailParser._decode_part(msg)
            if decoded:
                if content_type == "text/html":
                    body_html = decoded
                elif content_type.startswith("text/"):
                    body_text = decoded

        # Strip whitespace
        if body_text:
            body_text = body_text.strip()
        if body_html:
            body_html = body_html.strip()

        return body_text or None, body_html or None
