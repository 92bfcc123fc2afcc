"""Ingestion service - mailbox in, logged decisions and stored uploads out."""

import logging
import threading
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Optional

import psycopg

from .classification import ClassificationPolicy
from .config import Config
from .ingestion import ImapMailbox, MailboxClient, MailboxError
from .materializer import Materializer
from .metrics import MetricsCollector
from .models import (
    ClassificationDecision,
    DecisionTier,
    EmailMessage,
    FetchDetail,
    FetchResult,
    IngestionLogEntry,
    IngestionStatus,
    MailboxInfo,
    ParsedEmail,
    User,
    Vendor,
)
from .processing import EmailParser
from .semantic import InferenceClient
from .storage import DatabaseClient, LocalUploadStore, S3UploadStore

logger = logging.getLogger(__name__)


class IngestionService:
    """Discover new mail, decide what is a bill, and store it for review.

    Each message moves through the ingestion log as:
        pending (committed before any work) -> processed | error

    The cursor for a (user, mailbox, uid_validity) is the highest UID in the
    log, so errored messages still advance it; use reprocess() to retry them.
    """

    def __init__(
        self,
        config: Config,
        db: DatabaseClient,
        mailbox: MailboxClient,
        materializer: Materializer,
        policy: Optional[ClassificationPolicy] = None,
        parser: Optional[EmailParser] = None,
    ):
        self.config = config
        self.db = db
        self.mailbox = mailbox
        self.materializer = materializer
        self.policy = policy or ClassificationPolicy(
            llm_confidence_threshold=config.llm_confidence_threshold
        )
        self.parser = parser or EmailParser()

    @classmethod
    def from_config(cls, config: Config) -> "IngestionService":
        """Wire up IMAP, PostgreSQL, the upload store and the optional LLM tier."""
        db = DatabaseClient(config.database_url)

        mailbox = ImapMailbox(
            host=config.imap_host,
            port=config.imap_port,
            secure=config.imap_secure,
            username=config.imap_user,
            password=config.imap_password,
            readonly=not config.mark_seen,
            access_token=config.imap_access_token,
            client_id=config.google_oauth2_client_id,
            client_secret=config.google_oauth2_client_secret,
            refresh_token=config.imap_refresh_token,
        )

        if config.upload_backend == "s3":
            store = S3UploadStore(
                endpoint_url=config.s3_endpoint,
                bucket_name=config.s3_bucket,
                access_key_id=config.aws_access_key_id,
                secret_access_key=config.aws_secret_access_key,
            )
        else:
            store = LocalUploadStore(Path(config.upload_path))

        classifier = None
        if config.llm_enabled:
            classifier = InferenceClient(
                api_key=config.openai_api_key,
                model_name=config.openai_model_name,
                base_url=config.openai_base_url,
            )
        else:
            logger.info("OPENAI_API_KEY not set - LLM classification tier disabled")

        policy = ClassificationPolicy(classifier, config.llm_confidence_threshold)
        return cls(config, db, mailbox, Materializer(db, store), policy)

    def close(self):
        self.mailbox.close()
        self.db.close()

    # ========================================================================
    # Entry points
    # ========================================================================

    def resolve_user(self) -> User:
        """User that owns the mailbox: EMAIL_INGESTION_USER_ID, else the first user.

        Raises:
            LookupError: If no matching user exists
        """
        if self.config.user_id:
            user = self.db.get_user_by_id(self.config.user_id)
            if user is None:
                raise LookupError(f"User {self.config.user_id} not found")
            return user

        user = self.db.get_first_user()
        if user is None:
            raise LookupError("No user found in database")
        return user

    def pending_uids(self, info: MailboxInfo, last_uid: int) -> list[int]:
        """UIDs to process this poll given the cursor.

        First run for an epoch takes the newest batch; afterwards UIDs above
        the cursor are taken oldest first so the cursor never skips a message.
        """
        batch_size = self.config.batch_size

        if last_uid == 0:
            uids = self.mailbox.search_uids(1)
            return uids[-batch_size:] if batch_size > 0 else uids

        if info.uid_next is not None and info.uid_next <= last_uid + 1:
            return []

        uids = self.mailbox.search_uids(last_uid + 1)
        return uids[:batch_size] if batch_size > 0 else uids

    def poll_once(self) -> FetchResult:
        """Process messages that arrived since the last poll.

        Returns:
            FetchResult: Per-message outcomes and stage timings
        """
        metrics = MetricsCollector()
        user = self.resolve_user()
        vendors = self.db.get_active_vendors(user.id)

        with self.mailbox.locked(self.config.mailbox) as info:
            last_uid = self.db.get_last_uid(user.id, info.name, info.uid_validity)
            uids = self.pending_uids(info, last_uid)

            result = FetchResult(mailbox=info.name, uid_validity=info.uid_validity, total_fetched=len(uids))
            logger.info(
                f"Polling {info.name} (uidvalidity={info.uid_validity}, last uid={last_uid}): "
                f"{len(uids)} new message(s)"
            )

            for uid in uids:
                self._process_uid(user, vendors, info, uid, result, metrics)

        return self._finish(result, metrics)

    def backfill(self, days: int = 7, force: bool = False) -> FetchResult:
        """Process messages received in the last `days` days.

        Args:
            days: Size of the window, counted back from today
            force: Re-run messages that are already in the log

        Returns:
            FetchResult: Per-message outcomes and stage timings
        """
        metrics = MetricsCollector()
        user = self.resolve_user()
        vendors = self.db.get_active_vendors(user.id)
        since = (datetime.now(timezone.utc) - timedelta(days=days)).date()

        with self.mailbox.locked(self.config.mailbox) as info:
            uids = self.mailbox.search_since(since)
            result = FetchResult(mailbox=info.name, uid_validity=info.uid_validity, total_fetched=len(uids))
            logger.info(f"Backfilling {info.name} since {since.isoformat()}: {len(uids)} message(s)")

            for uid in uids:
                if not force:
                    existing = self.db.get_log_entry(user.id, info.name, info.uid_validity, uid)
                    if existing is not None:
                        result.record(FetchDetail(
                            uid=uid,
                            message_id=existing.message_id,
                            from_address=existing.from_address,
                            subject=existing.subject,
                            status="skipped",
                            reason=f"Already processed (status: {existing.status.value})",
                        ))
                        logger.info(f"Skipping email {uid} - already processed")
                        continue

                self._process_uid(user, vendors, info, uid, result, metrics, force=force)

        return self._finish(result, metrics)

    def reprocess(self, entry_id: int, force_ingest: bool = False) -> FetchResult:
        """Re-fetch a logged message and run it again.

        Args:
            entry_id: Ingestion log row ID
            force_ingest: Skip the policy and ingest unconditionally (triage promotion)

        Raises:
            LookupError: If the entry does not exist for the user
            MailboxError: If the mailbox UIDVALIDITY changed since it was logged
        """
        metrics = MetricsCollector()
        user = self.resolve_user()
        entry = self.db.get_log_entry_by_id(entry_id, user.id)
        if entry is None:
            raise LookupError(f"Ingestion log entry {entry_id} not found")
        vendors = self.db.get_active_vendors(user.id)

        with self.mailbox.locked(entry.mailbox) as info:
            if info.uid_validity != entry.uid_validity:
                raise MailboxError(
                    f"UIDVALIDITY of {entry.mailbox} changed ({entry.uid_validity} -> "
                    f"{info.uid_validity}); UID {entry.uid} is no longer addressable"
                )
            result = FetchResult(mailbox=info.name, uid_validity=info.uid_validity, total_fetched=1)
            self._process_uid(
                user, vendors, info, entry.uid, result, metrics, force=True, force_ingest=force_ingest
            )

        return self._finish(result, metrics)

    def run_forever(self, stop_event: Optional[threading.Event] = None):
        """Poll on a fixed interval until stop_event is set.

        A failed poll is logged and retried on the next tick.
        """
        stop_event = stop_event or threading.Event()
        logger.info(
            f"Email ingestion started for {self.config.mailbox}, "
            f"polling every {self.config.polling_interval_sec:.0f}s"
        )

        while not stop_event.is_set():
            try:
                self.poll_once()
            except Exception as e:
                logger.error(f"Error polling emails: {e}", exc_info=True)
            stop_event.wait(self.config.polling_interval_sec)

        logger.info("Email ingestion stopped")

    # ========================================================================
    # Per-message processing
    # ========================================================================

    def _finish(self, result: FetchResult, metrics: MetricsCollector) -> FetchResult:
        metrics.apply(result)
        logger.info(
            f"Processing complete: {result.ingested} ingested, {result.ignored} ignored, "
            f"{result.skipped} skipped, {result.failed} failed in {result.duration_sec:.2f}s"
        )
        return result

    def _build_entry(
        self,
        user: User,
        info: MailboxInfo,
        uid: int,
        message: Optional[EmailMessage],
        parsed: Optional[ParsedEmail],
    ) -> IngestionLogEntry:
        internal_date = None
        if message is not None:
            internal_date = message.internal_date
        if internal_date is None and parsed is not None:
            internal_date = parsed.sent_at

        from_address = None
        if parsed is not None:
            from_address = ", ".join(parsed.from_addresses) or parsed.from_address

        return IngestionLogEntry(
            user_id=user.id,
            mailbox=info.name,
            uid_validity=info.uid_validity,
            uid=uid,
            message_id=parsed.message_id if parsed else None,
            internal_date=internal_date or datetime.now(timezone.utc),
            from_address=from_address,
            subject=parsed.subject if parsed else None,
        )

    def _open_entry(self, entry: IngestionLogEntry, force: bool) -> Optional[int]:
        """Commit the pending row; None if it already existed and force is off."""
        with self.db.transaction():
            if force:
                return self.db.upsert_log_entry(entry)
            return self.db.create_log_entry(entry)

    def _mark_error(self, entry_id: int, message: str):
        try:
            with self.db.transaction():
                self.db.update_log_entry(entry_id, IngestionStatus.ERROR, error=message)
        except psycopg.Error as e:
            logger.error(f"Failed to record error status for log entry {entry_id}: {e}")

    def _decide(
        self,
        parsed: ParsedEmail,
        entry: IngestionLogEntry,
        vendors: list[Vendor],
        metrics: MetricsCollector,
        force_ingest: bool,
    ) -> ClassificationDecision:
        if force_ingest:
            return ClassificationDecision(
                should_ingest=True,
                tier=DecisionTier.MANUAL,
                reason="Manually promoted from triage",
            )

        first_date = self.config.first_email_date
        if first_date is not None and entry.internal_date is not None:
            if entry.internal_date.date() < first_date:
                return ClassificationDecision(
                    should_ingest=False,
                    tier=DecisionTier.NONE,
                    reason=f"Received before first email date {first_date.isoformat()}",
                )

        with metrics.timer("classification"):
            return self.policy.decide(parsed, vendors)

    def _process_uid(
        self,
        user: User,
        vendors: list[Vendor],
        info: MailboxInfo,
        uid: int,
        result: FetchResult,
        metrics: MetricsCollector,
        force: bool = False,
        force_ingest: bool = False,
    ):
        try:
            message = self.mailbox.fetch(uid)
        except MailboxError as e:
            logger.error(f"Failed to fetch email UID {uid}: {e}")
            entry = self._build_entry(user, info, uid, None, None)
            entry_id = self._open_entry(entry, force)
            if entry_id is not None:
                self._mark_error(entry_id, str(e))
            result.record(FetchDetail(uid=uid, status="failed", reason=str(e)))
            return

        if message is None:
            logger.warning(f"Email UID {uid} no longer exists, skipping")
            result.record(FetchDetail(uid=uid, status="skipped", reason="Message no longer exists"))
            return

        try:
            with metrics.timer("parse"):
                parsed = self.parser.parse(message.rfc822_data)
        except Exception as e:
            logger.error(f"Failed to parse email UID {uid}: {e}", exc_info=True)
            entry = self._build_entry(user, info, uid, message, None)
            entry_id = self._open_entry(entry, force)
            if entry_id is not None:
                self._mark_error(entry_id, f"Unparseable message: {e}")
            result.record(FetchDetail(uid=uid, status="failed", reason=str(e)))
            return

        entry = self._build_entry(user, info, uid, message, parsed)
        entry.id = self._open_entry(entry, force)

        detail = FetchDetail(
            uid=uid,
            message_id=parsed.message_id,
            from_address=entry.from_address,
            subject=parsed.subject,
            status="ignored",
        )

        if entry.id is None:
            existing = self.db.get_log_entry(user.id, info.name, info.uid_validity, uid)
            status = existing.status.value if existing else "unknown"
            detail.status = "skipped"
            detail.reason = f"Already processed (status: {status})"
            result.record(detail)
            logger.info(f"Skipping email {uid} - already processed")
            return

        try:
            decision = self._decide(parsed, entry, vendors, metrics, force_ingest)

            with self.db.transaction():
                hashes = [att.content_hash for att in parsed.pdf_attachments]
                if decision.should_ingest:
                    with metrics.timer("materialize"):
                        hashes = self.materializer.materialize(user, parsed, entry)
                self.db.update_log_entry(
                    entry.id,
                    IngestionStatus.PROCESSED,
                    ingested=decision.should_ingest,
                    attachment_hashes=hashes,
                    decision=decision,
                )

        except Exception as e:
            logger.error(f"Failed to process email UID {uid}: {e}", exc_info=True)
            self._mark_error(entry.id, str(e))
            detail.status = "failed"
            detail.reason = str(e)
            result.record(detail)
            return

        detail.status = "ingested" if decision.should_ingest else "ignored"
        detail.reason = decision.reason
        result.record(detail)
        logger.info(f"Processed email {uid}: {detail.status} ({decision.reason}) - {parsed.subject!r}")

        if decision.should_ingest and self.config.mark_seen:
            try:
                self.mailbox.mark_seen(uid)
            except MailboxError as e:
                logger.warning(f"Could not mark UID {uid} as seen: {e}")
