"""Database operations using psycopg (PostgreSQL)."""

import json
import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from importlib import resources
from typing import Optional

import psycopg
from psycopg.rows import dict_row

from ..models import (
    ClassificationDecision,
    IngestionLogEntry,
    IngestionStatus,
    StoredFile,
    User,
    Vendor,
)

logger = logging.getLogger(__name__)

_LOG_COLUMNS = """
    id, user_id, mailbox, uid_validity, uid, message_id, internal_date,
    from_address, subject, status, error, ingested, attachment_hashes,
    decision, created_at, updated_at
"""


def _now() -> datetime:
    return datetime.now(timezone.utc)


class DatabaseClient:
    """PostgreSQL database client using psycopg."""

    def __init__(self, database_url: str):
        """Initialize database client.

        Args:
            database_url: PostgreSQL connection string
        """
        self.database_url = database_url
        self._conn: Optional[psycopg.Connection] = None

    def connect(self):
        """Establish database connection."""
        if self._conn is None or self._conn.closed:
            self._conn = psycopg.connect(
                self.database_url,
                row_factory=dict_row,
                autocommit=False,  # We'll manage transactions explicitly
            )
            logger.info("Database connection established")
        return self._conn

    def close(self):
        """Close database connection."""
        if self._conn and not self._conn.closed:
            self._conn.close()
            logger.info("Database connection closed")

    @contextmanager
    def transaction(self):
        """Context manager for database transactions.

        Usage:
            with db.transaction() as conn:
                db.update_log_entry(...)
                # Automatically commits on success, rolls back on exception

        Yields:
            psycopg.Connection: Database connection object
        """
        conn = self.connect()
        try:
            yield conn
            conn.commit()
            logger.debug("Transaction committed")
        except Exception as e:
            conn.rollback()
            logger.error(f"Transaction rolled back: {e}")
            raise

    def init_schema(self):
        """Create the tables billmail needs if they don't exist."""
        sql = resources.files("billmail.storage").joinpath("schema.sql").read_text(encoding="utf-8")
        with self.transaction() as conn:
            conn.execute(sql)
        logger.info("Database schema initialized")

    # ========================================================================
    # Users & Vendors
    # ========================================================================

    def get_user_by_id(self, user_id: str) -> Optional[User]:
        conn = self.connect()
        with conn.cursor() as cur:
            cur.execute("SELECT id, email, name FROM users WHERE id = %s", (user_id,))
            row = cur.fetchone()
            return User(**row) if row else None

    def get_first_user(self) -> Optional[User]:
        """Oldest user account (single-user deployments)."""
        conn = self.connect()
        with conn.cursor() as cur:
            cur.execute("SELECT id, email, name FROM users ORDER BY created_at, id LIMIT 1")
            row = cur.fetchone()
            return User(**row) if row else None

    def get_active_vendors(self, user_id: str) -> list[Vendor]:
        """Fetch the user's active vendors ordered by name.

        Args:
            user_id: Owner of the vendor list

        Returns:
            list[Vendor]: Active vendors with their allowlists
        """
        conn = self.connect()
        with conn.cursor() as cur:
            cur.execute("""
                SELECT id, user_id, name, is_active,
                       from_emails, from_domains, subject_keywords
                FROM vendors
                WHERE user_id = %s AND is_active
                ORDER BY name
            """, (user_id,))
            return [Vendor(**row) for row in cur.fetchall()]

    # ========================================================================
    # Ingestion Log Operations
    # ========================================================================

    def get_last_uid(self, user_id: str, mailbox: str, uid_validity: int) -> int:
        """Highest UID logged for (user, mailbox, uid_validity), or 0."""
        conn = self.connect()
        with conn.cursor() as cur:
            cur.execute("""
                SELECT COALESCE(MAX(uid), 0) AS last_uid
                FROM email_ingestion_log
                WHERE user_id = %s AND mailbox = %s AND uid_validity = %s
            """, (user_id, mailbox, uid_validity))
            return int(cur.fetchone()["last_uid"])

    def get_log_entry(
        self, user_id: str, mailbox: str, uid_validity: int, uid: int
    ) -> Optional[IngestionLogEntry]:
        conn = self.connect()
        with conn.cursor() as cur:
            cur.execute(f"""
                SELECT {_LOG_COLUMNS}
                FROM email_ingestion_log
                WHERE user_id = %s AND mailbox = %s AND uid_validity = %s AND uid = %s
            """, (user_id, mailbox, uid_validity, uid))
            row = cur.fetchone()
            return IngestionLogEntry(**row) if row else None

    def get_log_entry_by_id(self, entry_id: int, user_id: str) -> Optional[IngestionLogEntry]:
        conn = self.connect()
        with conn.cursor() as cur:
            cur.execute(f"""
                SELECT {_LOG_COLUMNS}
                FROM email_ingestion_log
                WHERE id = %s AND user_id = %s
            """, (entry_id, user_id))
            row = cur.fetchone()
            return IngestionLogEntry(**row) if row else None

    def _log_values(self, entry: IngestionLogEntry) -> tuple:
        now = _now()
        return (
            entry.user_id,
            entry.mailbox,
            entry.uid_validity,
            entry.uid,
            entry.message_id,
            entry.internal_date,
            entry.from_address,
            entry.subject,
            IngestionStatus.PENDING.value,
            json.dumps(entry.attachment_hashes),
            now,  # created_at
            now,  # updated_at
        )

    def create_log_entry(self, entry: IngestionLogEntry) -> Optional[int]:
        """Insert a pending log row.

        Args:
            entry: Entry to insert (status is forced to pending)

        Returns:
            Optional[int]: New row ID, or None if the message is already logged

        Note:
            This should be called within a transaction context.
        """
        conn = self.connect()
        with conn.cursor() as cur:
            cur.execute("""
                INSERT INTO email_ingestion_log (
                    user_id, mailbox, uid_validity, uid, message_id, internal_date,
                    from_address, subject, status, attachment_hashes,
                    created_at, updated_at
                ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s::jsonb, %s, %s)
                ON CONFLICT (user_id, mailbox, uid_validity, uid) DO NOTHING
                RETURNING id
            """, self._log_values(entry))
            row = cur.fetchone()
            return row["id"] if row else None

    def upsert_log_entry(self, entry: IngestionLogEntry) -> int:
        """Insert a pending log row, resetting an existing one (forced reprocessing).

        Note:
            This should be called within a transaction context.
        """
        conn = self.connect()
        with conn.cursor() as cur:
            cur.execute("""
                INSERT INTO email_ingestion_log (
                    user_id, mailbox, uid_validity, uid, message_id, internal_date,
                    from_address, subject, status, attachment_hashes,
                    created_at, updated_at
                ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s::jsonb, %s, %s)
                ON CONFLICT (user_id, mailbox, uid_validity, uid) DO UPDATE
                SET message_id = EXCLUDED.message_id,
                    internal_date = EXCLUDED.internal_date,
                    from_address = EXCLUDED.from_address,
                    subject = EXCLUDED.subject,
                    status = EXCLUDED.status,
                    error = NULL,
                    updated_at = EXCLUDED.updated_at
                RETURNING id
            """, self._log_values(entry))
            return cur.fetchone()["id"]

    def update_log_entry(
        self,
        entry_id: int,
        status: IngestionStatus,
        error: Optional[str] = None,
        ingested: bool = False,
        attachment_hashes: Optional[list[str]] = None,
        decision: Optional[ClassificationDecision] = None,
    ):
        """Record the outcome of processing a message.

        Hashes and decision are left untouched when passed as None.

        Note:
            This should be called within a transaction context.
        """
        conn = self.connect()
        with conn.cursor() as cur:
            cur.execute("""
                UPDATE email_ingestion_log
                SET status = %s,
                    error = %s,
                    ingested = %s,
                    attachment_hashes = COALESCE(%s::jsonb, attachment_hashes),
                    decision = COALESCE(%s::jsonb, decision),
                    updated_at = %s
                WHERE id = %s
            """, (
                status.value,
                error,
                ingested,
                json.dumps(attachment_hashes) if attachment_hashes is not None else None,
                decision.model_dump_json() if decision is not None else None,
                _now(),
                entry_id,
            ))
            logger.debug(f"Updated log entry {entry_id}: status={status.value}")

    def list_log_entries(
        self, user_id: str, status: Optional[IngestionStatus] = None, limit: int = 20
    ) -> list[IngestionLogEntry]:
        """Most recent log rows, optionally filtered by status."""
        conn = self.connect()
        with conn.cursor() as cur:
            if status is None:
                cur.execute(f"""
                    SELECT {_LOG_COLUMNS} FROM email_ingestion_log
                    WHERE user_id = %s
                    ORDER BY created_at DESC, id DESC
                    LIMIT %s
                """, (user_id, limit))
            else:
                cur.execute(f"""
                    SELECT {_LOG_COLUMNS} FROM email_ingestion_log
                    WHERE user_id = %s AND status = %s
                    ORDER BY created_at DESC, id DESC
                    LIMIT %s
                """, (user_id, status.value, limit))
            return [IngestionLogEntry(**row) for row in cur.fetchall()]

    def list_triage_entries(self, user_id: str, limit: int = 100) -> list[IngestionLogEntry]:
        """Processed messages the policy declined to ingest, newest first."""
        conn = self.connect()
        with conn.cursor() as cur:
            cur.execute(f"""
                SELECT {_LOG_COLUMNS} FROM email_ingestion_log
                WHERE user_id = %s AND status = %s AND NOT ingested
                ORDER BY internal_date DESC NULLS LAST, id DESC
                LIMIT %s
            """, (user_id, IngestionStatus.PROCESSED.value, limit))
            return [IngestionLogEntry(**row) for row in cur.fetchall()]

    def delete_log_entries(self, user_id: Optional[str] = None) -> int:
        """Delete ingestion log rows (all users when user_id is None).

        Returns:
            int: Number of rows deleted
        """
        conn = self.connect()
        with conn.cursor() as cur:
            if user_id is None:
                cur.execute("DELETE FROM email_ingestion_log")
            else:
                cur.execute("DELETE FROM email_ingestion_log WHERE user_id = %s", (user_id,))
            deleted = cur.rowcount
            conn.commit()
            logger.warning(f"Deleted {deleted} email ingestion log entries")
            return deleted

    # ========================================================================
    # File Operations
    # ========================================================================

    def insert_file(self, record: StoredFile):
        """Insert a materialized upload.

        Note:
            This should be called within a transaction context.
        """
        conn = self.connect()
        with conn.cursor() as cur:
            cur.execute("""
                INSERT INTO files (id, user_id, filename, path, mimetype, metadata, created_at)
                VALUES (%s, %s, %s, %s, %s, %s::jsonb, %s)
            """, (
                record.id,
                record.user_id,
                record.filename,
                record.path,
                record.mimetype,
                json.dumps(record.metadata, default=str),
                record.created_at or _now(),
            ))
            logger.debug(f"Inserted file {record.id} ({record.filename})")

    def find_file_by_hash(self, user_id: str, content_hash: str) -> Optional[StoredFile]:
        """Find an existing upload with the same attachment hash."""
        conn = self.connect()
        with conn.cursor() as cur:
            cur.execute("""
                SELECT id, user_id, filename, path, mimetype, metadata, created_at
                FROM files
                WHERE user_id = %s AND metadata ->> 'attachmentHash' = %s
                LIMIT 1
            """, (user_id, content_hash))
            row = cur.fetchone()
            return StoredFile(**row) if row else None
