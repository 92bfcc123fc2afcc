"""IMAP mailbox access with password or OAuth2 (XOAUTH2) login."""

import imaplib
import logging
import re
import ssl
import threading
import time
from contextlib import contextmanager
from datetime import date, datetime, timezone
from typing import Iterator, Optional

import requests

from ..models import EmailMessage, MailboxInfo
from .base import MailboxClient, MailboxError

logger = logging.getLogger(__name__)

GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"

_MONTHS = ("Jan", "Feb", "Mar", "Apr", "May", "Jun", "Jul", "Aug", "Sep", "Oct", "Nov", "Dec")
_FETCH_UID_RE = re.compile(rb"UID (\d+)")
_STATUS_RE = re.compile(rb"(UIDVALIDITY|UIDNEXT) (\d+)")


def quote_mailbox(name: str) -> str:
    """Quote a mailbox name for use as an IMAP astring."""
    if name.startswith('"') and name.endswith('"'):
        return name
    return '"' + name.replace("\\", "\\\\").replace('"', '\\"') + '"'


def imap_date(value: date) -> str:
    """Format a date as IMAP SEARCH expects (locale independent), e.g. 05-Mar-2025."""
    return f"{value.day:02d}-{_MONTHS[value.month - 1]}-{value.year}"


def parse_internal_date(fetch_header: bytes) -> Optional[datetime]:
    """Extract INTERNALDATE from a FETCH response line as an aware UTC datetime."""
    time_tuple = imaplib.Internaldate2tuple(fetch_header)
    if time_tuple is None:
        return None
    return datetime.fromtimestamp(time.mktime(time_tuple), tz=timezone.utc)


class ImapMailbox(MailboxClient):
    """Mailbox client backed by imaplib."""

    def __init__(
        self,
        host: str,
        username: str,
        password: Optional[str] = None,
        port: int = 993,
        secure: bool = True,
        readonly: bool = True,
        access_token: Optional[str] = None,
        client_id: Optional[str] = None,
        client_secret: Optional[str] = None,
        refresh_token: Optional[str] = None,
    ):
        """Initialize IMAP mailbox client.

        Args:
            host: IMAP server hostname
            username: Login name (usually the email address)
            password: Password for LOGIN (ignored when access_token is set)
            port: IMAP port
            secure: Use implicit TLS (IMAP4_SSL)
            readonly: Select mailboxes read-only (no flag changes)
            access_token: OAuth2 access token for XOAUTH2
            client_id: OAuth2 client ID (for token refresh)
            client_secret: OAuth2 client secret (for token refresh)
            refresh_token: OAuth2 refresh token (for token refresh)
        """
        self.host = host
        self.port = port
        self.secure = secure
        self.readonly = readonly
        self.username = username
        self.password = password
        self.access_token = access_token
        self.client_id = client_id
        self.client_secret = client_secret
        self.refresh_token = refresh_token
        self._imap: Optional[imaplib.IMAP4] = None
        self._lock = threading.Lock()

    # ========================================================================
    # Connection
    # ========================================================================

    def _open(self) -> imaplib.IMAP4:
        if self.secure:
            return imaplib.IMAP4_SSL(self.host, self.port, ssl_context=ssl.create_default_context())
        return imaplib.IMAP4(self.host, self.port)

    def _authenticate(self, imap: imaplib.IMAP4):
        if self.access_token:
            auth_string = f"user={self.username}\x01auth=Bearer {self.access_token}\x01\x01"
            imap.authenticate("XOAUTH2", lambda x: auth_string)
        else:
            imap.login(self.username, self.password or "")

    def _connect(self):
        """Connect and authenticate if not already connected."""
        if self._imap is not None:
            return

        imap = self._open()
        try:
            try:
                self._authenticate(imap)
            except imaplib.IMAP4.error:
                if not (self.access_token and self.refresh_token):
                    raise
                # Expired bearer token: refresh once and retry on a fresh connection
                logger.info(f"XOAUTH2 login failed for {self.username}, refreshing access token")
                self._safe_logout(imap)
                self.refresh_access_token()
                imap = self._open()
                self._authenticate(imap)
        except imaplib.IMAP4.error as e:
            self._safe_logout(imap)
            raise MailboxError(f"IMAP authentication failed for {self.username}: {e}") from e

        self._imap = imap
        logger.info(f"Connected to IMAP {self.host}:{self.port} as {self.username}")

    def refresh_access_token(self) -> str:
        """Refresh OAuth2 access token.

        Returns:
            str: New access token

        Raises:
            MailboxError: If credentials are missing or the token endpoint refuses
        """
        if not self.refresh_token or not self.client_id or not self.client_secret:
            raise MailboxError("Missing OAuth2 credentials for token refresh")

        data = {
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            "refresh_token": self.refresh_token,
            "grant_type": "refresh_token",
        }

        try:
            response = requests.post(GOOGLE_TOKEN_URL, data=data, timeout=30)
            response.raise_for_status()
        except requests.RequestException as e:
            raise MailboxError(f"OAuth2 token refresh failed: {e}") from e

        new_token = response.json()["access_token"]
        self.access_token = new_token
        return new_token

    @staticmethod
    def _safe_logout(imap: imaplib.IMAP4):
        try:
            imap.logout()
        except (imaplib.IMAP4.error, OSError) as e:
            logger.debug(f"Ignoring error during IMAP logout: {e}")

    def _require_connection(self) -> imaplib.IMAP4:
        if self._imap is None:
            raise MailboxError("No mailbox selected; use locked() first")
        return self._imap

    def close(self):
        """Close IMAP connection."""
        if self._imap is not None:
            self._safe_logout(self._imap)
            self._imap = None

    # ========================================================================
    # Mailbox selection
    # ========================================================================

    @contextmanager
    def locked(self, mailbox: str) -> Iterator[MailboxInfo]:
        with self._lock:
            self._connect()
            try:
                info = self._select(mailbox)
                try:
                    yield info
                finally:
                    self._unselect()
            except (imaplib.IMAP4.abort, OSError):
                # Connection is unusable; reconnect on next use
                logger.warning(f"IMAP connection to {self.host} dropped")
                self._imap = None
                raise

    def _select(self, mailbox: str) -> MailboxInfo:
        imap = self._require_connection()
        status, data = imap.select(quote_mailbox(mailbox), readonly=self.readonly)
        if status != "OK":
            raise MailboxError(f"Failed to select mailbox {mailbox}: {data}")

        exists = int(data[0]) if data and data[0] else 0
        uid_validity = self._untagged_int("UIDVALIDITY")
        uid_next = self._untagged_int("UIDNEXT")

        if uid_validity is None:
            # Server omitted the response codes on SELECT; ask explicitly
            status, data = imap.status(quote_mailbox(mailbox), "(UIDVALIDITY UIDNEXT)")
            if status != "OK" or not data or not data[0]:
                raise MailboxError(f"Failed to read UIDVALIDITY for {mailbox}: {status}")
            values = {key: int(value) for key, value in _STATUS_RE.findall(data[0])}
            uid_validity = values.get(b"UIDVALIDITY")
            uid_next = values.get(b"UIDNEXT", uid_next)
            if uid_validity is None:
                raise MailboxError(f"Server did not report UIDVALIDITY for {mailbox}")

        logger.debug(f"Selected {mailbox}: uidvalidity={uid_validity} uidnext={uid_next} exists={exists}")
        return MailboxInfo(name=mailbox, uid_validity=uid_validity, uid_next=uid_next, exists=exists)

    def _untagged_int(self, name: str) -> Optional[int]:
        _, data = self._imap.response(name)
        if data and data[-1] is not None:
            try:
                return int(data[-1])
            except ValueError:
                return None
        return None

    def _unselect(self):
        if self._imap is None:
            return
        try:
            self._imap.close()
        except imaplib.IMAP4.error as e:
            logger.debug(f"Ignoring error on CLOSE: {e}")

    # ========================================================================
    # Message access
    # ========================================================================

    def _uid_search(self, *criteria: str) -> list[int]:
        imap = self._require_connection()
        status, data = imap.uid("SEARCH", None, *criteria)
        if status != "OK":
            raise MailboxError(f"Failed to search ({' '.join(criteria)}): {status}")
        raw = data[0] if data and data[0] else b""
        return sorted(int(uid) for uid in raw.split())

    def search_uids(self, start: int, end: Optional[int] = None) -> list[int]:
        upper = "*" if end is None else str(end)
        uids = self._uid_search("UID", f"{start}:{upper}")
        # "n:*" always matches the highest UID, even when it is below n
        return [uid for uid in uids if uid >= start and (end is None or uid <= end)]

    def search_since(self, since: date) -> list[int]:
        return self._uid_search("SINCE", imap_date(since))

    def fetch(self, uid: int) -> Optional[EmailMessage]:
        imap = self._require_connection()
        try:
            status, data = imap.uid("FETCH", str(uid), "(UID INTERNALDATE RFC822)")
        except imaplib.IMAP4.abort:
            raise
        except imaplib.IMAP4.error as e:
            # BAD reply from the server; the connection is still usable
            raise MailboxError(f"Failed to fetch UID {uid}: {e}") from e
        if status != "OK":
            raise MailboxError(f"Failed to fetch UID {uid}: {status}")

        for item in data or []:
            if not isinstance(item, tuple) or len(item) < 2:
                continue
            header, payload = item[0], item[1]
            match = _FETCH_UID_RE.search(header)
            if match and int(match.group(1)) != uid:
                continue
            return EmailMessage(uid=uid, rfc822_data=payload, internal_date=parse_internal_date(header))

        return None

    def fetch_headers(self, limit: int) -> list[tuple[int, bytes]]:
        uids = self.search_uids(1)[-limit:]
        if not uids:
            return []

        imap = self._require_connection()
        status, data = imap.uid("FETCH", ",".join(str(uid) for uid in uids), "(UID BODY.PEEK[HEADER])")
        if status != "OK":
            raise MailboxError(f"Failed to fetch headers: {status}")

        headers = []
        for item in data or []:
            if not isinstance(item, tuple) or len(item) < 2:
                continue
            match = _FETCH_UID_RE.search(item[0])
            if match:
                headers.append((int(match.group(1)), item[1]))
        return sorted(headers)

    def mark_seen(self, uid: int):
        if self.readonly:
            raise MailboxError("Cannot set flags on a mailbox selected read-only")
        imap = self._require_connection()
        status, _ = imap.uid("STORE", str(uid), "+FLAGS", r"(\Seen)")
        if status != "OK":
            raise MailboxError(f"Failed to mark UID {uid} as seen: {status}")
