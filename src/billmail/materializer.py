"""Write accepted emails into the user's upload store and record file rows."""

import hashlib
import logging
import uuid
from datetime import datetime, timezone
from typing import Any

from .models import EmailAttachment, IngestionLogEntry, ParsedEmail, StoredFile, User
from .storage.database import DatabaseClient
from .storage.uploads import UploadStore, unsorted_file_path

logger = logging.getLogger(__name__)


def render_email_content(parsed: ParsedEmail, entry: IngestionLogEntry) -> str:
    """Plain-text rendition of an email saved next to its attachments."""
    received = entry.internal_date or parsed.sent_at or datetime.now(timezone.utc)
    return (
        f"From: {parsed.from_address or 'Unknown'}\n"
        f"To: {parsed.to_address or 'Unknown'}\n"
        f"Subject: {parsed.subject or '(no subject)'}\n"
        f"Date: {received.isoformat()}\n"
        f"Message-ID: {parsed.message_id or 'unknown'}\n"
        f"\n--- Email Content ---\n\n"
        f"{parsed.body or '(no content)'}"
    )


class Materializer:
    """Persist PDF attachments and the email body as reviewable uploads."""

    def __init__(self, db: DatabaseClient, store: UploadStore):
        self.db = db
        self.store = store

    def _metadata(self, parsed: ParsedEmail, entry: IngestionLogEntry, size: int) -> dict[str, Any]:
        received = entry.internal_date or parsed.sent_at or datetime.now(timezone.utc)
        sender = parsed.from_addresses[0] if parsed.from_addresses else parsed.from_address
        return {
            "source": "email",
            "from": sender,
            "subject": parsed.subject,
            "receivedDate": received.isoformat(),
            "size": size,
            "emailUid": entry.uid,
            "emailUidValidity": str(entry.uid_validity),
            "emailMailbox": entry.mailbox,
            "messageId": parsed.message_id,
        }

    def materialize(self, user: User, parsed: ParsedEmail, entry: IngestionLogEntry) -> list[str]:
        """Store PDF attachments and the email body for review.

        Args:
            user: Owner of the uploads
            parsed: Parsed email
            entry: Ingestion log entry identifying the message

        Returns:
            list[str]: SHA-256 hashes of the PDF attachments

        Note:
            File rows are inserted on the current connection; call within a
            transaction so they commit together with the log update.
        """
        hashes = []
        for attachment in parsed.pdf_attachments:
            hashes.append(self._save_pdf(user, parsed, entry, attachment))

        if parsed.body_text or parsed.body_html:
            self._save_email_content(user, parsed, entry)

        return hashes

    def _save_pdf(
        self, user: User, parsed: ParsedEmail, entry: IngestionLogEntry, attachment: EmailAttachment
    ) -> str:
        content_hash = attachment.content_hash

        existing = self.db.find_file_by_hash(user.id, content_hash)
        if existing is not None:
            logger.info(
                f"PDF {attachment.filename!r} from UID {entry.uid} already stored as {existing.id}, skipping"
            )
            return content_hash

        file_id = str(uuid.uuid4())
        filename = attachment.filename or f"invoice_{entry.uid}.pdf"
        relative_path = unsorted_file_path(file_id, filename)
        self.store.save(user, relative_path, attachment.data, "application/pdf")

        metadata = self._metadata(parsed, entry, attachment.size_bytes)
        metadata["attachmentHash"] = content_hash

        self.db.insert_file(StoredFile(
            id=file_id,
            user_id=user.id,
            filename=filename,
            path=relative_path,
            mimetype="application/pdf",
            metadata=metadata,
        ))

        logger.info(f"Saved PDF attachment: {filename} -> {relative_path}")
        return content_hash

    def _save_email_content(self, user: User, parsed: ParsedEmail, entry: IngestionLogEntry) -> str:
        content = render_email_content(parsed, entry)
        data = content.encode("utf-8")

        file_id = str(uuid.uuid4())
        sender = parsed.from_addresses[0] if parsed.from_addresses else "unknown@"
        local_part = sender.split("@", 1)[0] or "unknown"
        timestamp = datetime.now(timezone.utc).strftime("%Y-%m-%dT%H-%M-%S")
        filename = f"email_{local_part}_{timestamp}.txt"
        relative_path = unsorted_file_path(file_id, filename)
        self.store.save(user, relative_path, data, "text/plain")

        metadata = self._metadata(parsed, entry, len(data))
        metadata["contentHash"] = hashlib.sha256(data).hexdigest()

        self.db.insert_file(StoredFile(
            id=file_id,
            user_id=user.id,
            filename=filename,
            path=relative_path,
            mimetype="text/plain",
            metadata=metadata,
        ))

        logger.info(f"Saved email content: {filename} -> {relative_path}")
        return file_id
