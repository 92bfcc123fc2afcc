"""
tests/conftest.py - Shared fixtures: message builder, in-memory mailbox and database.
"""

from __future__ import annotations

import copy
from contextlib import contextmanager
from datetime import date, datetime, timezone
from email.message import EmailMessage as MimeMessage
from pathlib import Path
from typing import Optional

import pytest

from billmail.config import Config
from billmail.ingestion import MailboxClient, MailboxError
from billmail.models import (
    ClassificationDecision,
    EmailMessage,
    IngestionLogEntry,
    IngestionStatus,
    MailboxInfo,
    StoredFile,
    User,
    Vendor,
)
from billmail.storage import LocalUploadStore

PDF_BYTES = b"%PDF-1.4\n1 0 obj << /Type /Catalog >> endobj\ntrailer << >>\n%%EOF\n"


def make_email(
    subject: str = "Hello",
    sender: str = "Alice <alice@example.org>",
    to: str = "me@example.com",
    body: str = "Just saying hi.",
    pdf: Optional[bytes] = None,
    pdf_name: Optional[str] = "document.pdf",
    html: Optional[str] = None,
    date_header: str = "Mon, 06 Oct 2025 10:00:00 +0000",
    message_id: str = "<msg-1@example.org>",
) -> bytes:
    """Build RFC822 bytes with an optional PDF attachment."""
    msg = MimeMessage()
    msg["Subject"] = subject
    msg["From"] = sender
    msg["To"] = to
    msg["Date"] = date_header
    msg["Message-ID"] = message_id
    msg.set_content(body)
    if html is not None:
        msg.add_alternative(html, subtype="html")
    if pdf is not None:
        msg.add_attachment(pdf, maintype="application", subtype="pdf", filename=pdf_name)
    return msg.as_bytes()


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------


class FakeMailbox(MailboxClient):
    """Mailbox backed by a dict of uid -> RFC822 bytes."""

    def __init__(self, messages: Optional[dict[int, bytes]] = None, uid_validity: int = 1):
        self.messages = dict(messages or {})
        self.internal_dates: dict[int, datetime] = {}
        self.uid_validity = uid_validity
        self.fetch_errors: set[int] = set()
        self.seen: list[int] = []
        self.search_calls: list[int] = []
        self.closed = False

    def add(self, uid: int, data: bytes, internal_date: Optional[datetime] = None):
        self.messages[uid] = data
        self.internal_dates[uid] = internal_date or datetime(2025, 10, 6, 10, 0, tzinfo=timezone.utc)

    @contextmanager
    def locked(self, mailbox: str):
        uids = sorted(self.messages)
        yield MailboxInfo(
            name=mailbox,
            uid_validity=self.uid_validity,
            uid_next=(uids[-1] + 1) if uids else 1,
            exists=len(uids),
        )

    def search_uids(self, start: int, end: Optional[int] = None) -> list[int]:
        self.search_calls.append(start)
        return [uid for uid in sorted(self.messages) if uid >= start and (end is None or uid <= end)]

    def search_since(self, since: date) -> list[int]:
        return [uid for uid in sorted(self.messages) if self.internal_dates[uid].date() >= since]

    def fetch(self, uid: int) -> Optional[EmailMessage]:
        if uid in self.fetch_errors:
            raise MailboxError(f"FETCH failed for UID {uid}")
        if uid not in self.messages:
            return None
        return EmailMessage(uid=uid, rfc822_data=self.messages[uid], internal_date=self.internal_dates.get(uid))

    def fetch_headers(self, limit: int) -> list[tuple[int, bytes]]:
        return [(uid, self.messages[uid]) for uid in sorted(self.messages)[-limit:]]

    def mark_seen(self, uid: int) -> None:
        self.seen.append(uid)

    def close(self) -> None:
        self.closed = True


class FakeDatabase:
    """In-memory stand-in for DatabaseClient with snapshot rollback."""

    def __init__(self, users: Optional[list[User]] = None, vendors: Optional[list[Vendor]] = None):
        self.users = list(users or [])
        self.vendors = list(vendors or [])
        self.log: dict[int, IngestionLogEntry] = {}
        self.files: list[StoredFile] = []
        self._next_id = 1
        self.commits = 0
        self.rollbacks = 0
        self.closed = False

    @contextmanager
    def transaction(self):
        snapshot = (copy.deepcopy(self.log), copy.deepcopy(self.files), self._next_id)
        try:
            yield self
            self.commits += 1
        except Exception:
            self.log, self.files, self._next_id = snapshot
            self.rollbacks += 1
            raise

    def close(self):
        self.closed = True

    def get_user_by_id(self, user_id: str) -> Optional[User]:
        return next((u for u in self.users if u.id == user_id), None)

    def get_first_user(self) -> Optional[User]:
        return self.users[0] if self.users else None

    def get_active_vendors(self, user_id: str) -> list[Vendor]:
        return [v for v in self.vendors if v.user_id == user_id and v.is_active]

    def get_last_uid(self, user_id: str, mailbox: str, uid_validity: int) -> int:
        uids = [
            e.uid for e in self.log.values()
            if e.user_id == user_id and e.mailbox == mailbox and e.uid_validity == uid_validity
        ]
        return max(uids, default=0)

    def get_log_entry(self, user_id, mailbox, uid_validity, uid) -> Optional[IngestionLogEntry]:
        for e in self.log.values():
            if (e.user_id, e.mailbox, e.uid_validity, e.uid) == (user_id, mailbox, uid_validity, uid):
                return e.model_copy(deep=True)
        return None

    def get_log_entry_by_id(self, entry_id: int, user_id: str) -> Optional[IngestionLogEntry]:
        entry = self.log.get(entry_id)
        if entry is None or entry.user_id != user_id:
            return None
        return entry.model_copy(deep=True)

    def create_log_entry(self, entry: IngestionLogEntry) -> Optional[int]:
        if self.get_log_entry(entry.user_id, entry.mailbox, entry.uid_validity, entry.uid):
            return None
        row = entry.model_copy(deep=True)
        row.id = self._next_id
        row.status = IngestionStatus.PENDING
        self.log[row.id] = row
        self._next_id += 1
        return row.id

    def upsert_log_entry(self, entry: IngestionLogEntry) -> int:
        existing = self.get_log_entry(entry.user_id, entry.mailbox, entry.uid_validity, entry.uid)
        if existing is None:
            return self.create_log_entry(entry)
        row = self.log[existing.id]
        row.status = IngestionStatus.PENDING
        row.error = None
        row.subject = entry.subject
        row.message_id = entry.message_id
        return row.id

    def update_log_entry(
        self,
        entry_id: int,
        status: IngestionStatus,
        error: Optional[str] = None,
        ingested: bool = False,
        attachment_hashes: Optional[list[str]] = None,
        decision: Optional[ClassificationDecision] = None,
    ):
        row = self.log[entry_id]
        row.status = status
        row.error = error
        row.ingested = ingested
        if attachment_hashes is not None:
            row.attachment_hashes = list(attachment_hashes)
        if decision is not None:
            row.decision = decision

    def list_triage_entries(self, user_id: str, limit: int = 100) -> list[IngestionLogEntry]:
        rows = [
            e for e in self.log.values()
            if e.user_id == user_id and e.status == IngestionStatus.PROCESSED and not e.ingested
        ]
        return sorted(rows, key=lambda e: e.id, reverse=True)[:limit]

    def insert_file(self, record: StoredFile):
        self.files.append(record)

    def find_file_by_hash(self, user_id: str, content_hash: str) -> Optional[StoredFile]:
        for f in self.files:
            if f.user_id == user_id and f.metadata.get("attachmentHash") == content_hash:
                return f
        return None


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def user() -> User:
    return User(id="user-1", email="owner@example.com", name="Owner")


@pytest.fixture
def acme(user: User) -> Vendor:
    return Vendor(id="v-1", user_id=user.id, name="Acme Power", from_domains=["acme-power.com"])


@pytest.fixture
def db(user: User, acme: Vendor) -> FakeDatabase:
    return FakeDatabase(users=[user], vendors=[acme])


@pytest.fixture
def mailbox() -> FakeMailbox:
    return FakeMailbox()


@pytest.fixture
def store(tmp_path: Path) -> LocalUploadStore:
    return LocalUploadStore(tmp_path / "uploads")


@pytest.fixture
def config(tmp_path: Path) -> Config:
    return Config(
        database_url="postgresql://localhost/test",
        imap_user="owner@example.com",
        imap_password="secret",
        upload_path=str(tmp_path / "uploads"),
        polling_interval_sec=0.0,
        batch_size=3,
    )
