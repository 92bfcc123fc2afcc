"""
tests/test_imap.py - ImapMailbox against a mocked imaplib connection.

Run with: pytest tests/test_imap.py -v
"""

from __future__ import annotations

import imaplib
from datetime import date, datetime, timezone
from unittest.mock import MagicMock

import pytest
import requests

from billmail.ingestion import ImapMailbox, MailboxError
from billmail.ingestion.imap import imap_date, parse_internal_date, quote_mailbox


@pytest.fixture
def conn() -> MagicMock:
    imap = MagicMock()
    imap.select.return_value = ("OK", [b"3"])
    imap.response.side_effect = lambda name: (name, [b"42"] if name == "UIDVALIDITY" else [b"100"])
    return imap


@pytest.fixture
def mailbox(conn: MagicMock) -> ImapMailbox:
    client = ImapMailbox(host="imap.example.com", username="owner@example.com", password="secret")
    client._imap = conn
    return client


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def test_quote_mailbox() -> None:
    assert quote_mailbox("INBOX") == '"INBOX"'
    assert quote_mailbox('My "Bills"') == '"My \\"Bills\\""'
    assert quote_mailbox('"Already"') == '"Already"'


def test_imap_date_is_locale_independent() -> None:
    assert imap_date(date(2025, 3, 5)) == "05-Mar-2025"
    assert imap_date(date(2024, 12, 31)) == "31-Dec-2024"


def test_parse_internal_date() -> None:
    header = b'1 (UID 5 INTERNALDATE "06-Oct-2025 12:00:00 +0200" RFC822 {120}'
    assert parse_internal_date(header) == datetime(2025, 10, 6, 10, 0, tzinfo=timezone.utc)
    assert parse_internal_date(b"1 (UID 5 RFC822 {120}") is None


# ---------------------------------------------------------------------------
# Selection
# ---------------------------------------------------------------------------

def test_locked_reports_uid_state_and_closes(mailbox: ImapMailbox, conn: MagicMock) -> None:
    with mailbox.locked("INBOX") as info:
        assert info.name == "INBOX"
        assert info.uid_validity == 42
        assert info.uid_next == 100
        assert info.exists == 3
        conn.close.assert_not_called()

    conn.select.assert_called_once_with('"INBOX"', readonly=True)
    conn.close.assert_called_once()


def test_locked_falls_back_to_status(mailbox: ImapMailbox, conn: MagicMock) -> None:
    conn.response.side_effect = lambda name: (name, [None])
    conn.status.return_value = ("OK", [b'"INBOX" (UIDVALIDITY 7 UIDNEXT 9)'])

    with mailbox.locked("INBOX") as info:
        assert info.uid_validity == 7
        assert info.uid_next == 9


def test_locked_select_failure(mailbox: ImapMailbox, conn: MagicMock) -> None:
    conn.select.return_value = ("NO", [b"Mailbox does not exist"])
    with pytest.raises(MailboxError):
        with mailbox.locked("Missing"):
            pass


def test_locked_drops_connection_on_abort(mailbox: ImapMailbox, conn: MagicMock) -> None:
    conn.select.side_effect = imaplib.IMAP4.abort("socket error")
    with pytest.raises(imaplib.IMAP4.abort):
        with mailbox.locked("INBOX"):
            pass
    assert mailbox._imap is None


# ---------------------------------------------------------------------------
# Search & fetch
# ---------------------------------------------------------------------------

def test_search_uids(mailbox: ImapMailbox, conn: MagicMock) -> None:
    conn.uid.return_value = ("OK", [b"12 10 11"])
    assert mailbox.search_uids(10) == [10, 11, 12]
    conn.uid.assert_called_once_with("SEARCH", None, "UID", "10:*")


def test_search_uids_drops_highest_uid_quirk(mailbox: ImapMailbox, conn: MagicMock) -> None:
    # "UID 10:*" matches the last message even when its UID is below 10
    conn.uid.return_value = ("OK", [b"7"])
    assert mailbox.search_uids(10) == []


def test_search_uids_empty(mailbox: ImapMailbox, conn: MagicMock) -> None:
    conn.uid.return_value = ("OK", [b""])
    assert mailbox.search_uids(1) == []


def test_search_since(mailbox: ImapMailbox, conn: MagicMock) -> None:
    conn.uid.return_value = ("OK", [b"3 4"])
    assert mailbox.search_since(date(2025, 10, 1)) == [3, 4]
    conn.uid.assert_called_once_with("SEARCH", None, "SINCE", "01-Oct-2025")


def test_search_failure(mailbox: ImapMailbox, conn: MagicMock) -> None:
    conn.uid.return_value = ("NO", [b"error"])
    with pytest.raises(MailboxError):
        mailbox.search_uids(1)


def test_fetch_returns_message(mailbox: ImapMailbox, conn: MagicMock) -> None:
    conn.uid.return_value = ("OK", [
        (b'1 (UID 5 INTERNALDATE "06-Oct-2025 10:00:00 +0000" RFC822 {5}', b"hello"),
        b")",
    ])

    message = mailbox.fetch(5)

    assert message.uid == 5
    assert message.rfc822_data == b"hello"
    assert message.internal_date == datetime(2025, 10, 6, 10, 0, tzinfo=timezone.utc)


def test_fetch_missing_uid_returns_none(mailbox: ImapMailbox, conn: MagicMock) -> None:
    conn.uid.return_value = ("OK", [None])
    assert mailbox.fetch(5) is None


def test_fetch_ignores_other_uids(mailbox: ImapMailbox, conn: MagicMock) -> None:
    conn.uid.return_value = ("OK", [(b"1 (UID 6 RFC822 {5}", b"other"), b")"])
    assert mailbox.fetch(5) is None


def test_fetch_failure(mailbox: ImapMailbox, conn: MagicMock) -> None:
    conn.uid.return_value = ("NO", [b"error"])
    with pytest.raises(MailboxError):
        mailbox.fetch(5)


def test_fetch_bad_reply_is_mailbox_error(mailbox: ImapMailbox, conn: MagicMock) -> None:
    conn.uid.side_effect = imaplib.IMAP4.error("UID FETCH command error: BAD [b'Invalid sequence']")
    with pytest.raises(MailboxError):
        mailbox.fetch(5)


def test_fetch_abort_propagates(mailbox: ImapMailbox, conn: MagicMock) -> None:
    conn.uid.side_effect = imaplib.IMAP4.abort("connection reset")
    with pytest.raises(imaplib.IMAP4.abort):
        mailbox.fetch(5)


def test_fetch_headers(mailbox: ImapMailbox, conn: MagicMock) -> None:
    conn.uid.side_effect = [
        ("OK", [b"1 2 3"]),
        ("OK", [(b"2 (UID 3 BODY[HEADER] {9}", b"Subject: c"), b")", (b"1 (UID 2 BODY[HEADER] {9}", b"Subject: b"), b")"]),
    ]
    assert mailbox.fetch_headers(2) == [(2, b"Subject: b"), (3, b"Subject: c")]
    assert conn.uid.call_args.args[:2] == ("FETCH", "2,3")


# ---------------------------------------------------------------------------
# Flags
# ---------------------------------------------------------------------------

def test_mark_seen_refused_when_readonly(mailbox: ImapMailbox) -> None:
    with pytest.raises(MailboxError):
        mailbox.mark_seen(5)


def test_mark_seen(mailbox: ImapMailbox, conn: MagicMock) -> None:
    mailbox.readonly = False
    conn.uid.return_value = ("OK", [b""])
    mailbox.mark_seen(5)
    conn.uid.assert_called_once_with("STORE", "5", "+FLAGS", r"(\Seen)")


# ---------------------------------------------------------------------------
# Authentication
# ---------------------------------------------------------------------------

def test_password_login(monkeypatch) -> None:
    imap = MagicMock()
    client = ImapMailbox(host="imap.example.com", username="owner@example.com", password="secret")
    monkeypatch.setattr(client, "_open", lambda: imap)

    client._connect()

    imap.login.assert_called_once_with("owner@example.com", "secret")
    assert client._imap is imap


def test_xoauth2_refreshes_expired_token(monkeypatch) -> None:
    first, second = MagicMock(), MagicMock()
    first.authenticate.side_effect = imaplib.IMAP4.error("AUTHENTICATIONFAILED")
    connections = iter([first, second])

    client = ImapMailbox(
        host="imap.gmail.com",
        username="owner@gmail.com",
        access_token="expired",
        client_id="cid",
        client_secret="csecret",
        refresh_token="refresh",
    )
    monkeypatch.setattr(client, "_open", lambda: next(connections))

    response = MagicMock()
    response.json.return_value = {"access_token": "fresh"}
    post = MagicMock(return_value=response)
    monkeypatch.setattr(requests, "post", post)

    client._connect()

    assert client.access_token == "fresh"
    assert client._imap is second
    first.logout.assert_called_once()
    assert post.call_args.kwargs["data"]["grant_type"] == "refresh_token"


def test_failed_login_raises_mailbox_error(monkeypatch) -> None:
    imap = MagicMock()
    imap.login.side_effect = imaplib.IMAP4.error("LOGIN failed")
    client = ImapMailbox(host="imap.example.com", username="owner@example.com", password="wrong")
    monkeypatch.setattr(client, "_open", lambda: imap)

    with pytest.raises(MailboxError, match="authentication failed"):
        client._connect()
    assert client._imap is None


def test_refresh_without_credentials() -> None:
    client = ImapMailbox(host="imap.gmail.com", username="owner@gmail.com", access_token="t")
    with pytest.raises(MailboxError, match="Missing OAuth2 credentials"):
        client.refresh_access_token()


def test_close_logs_out(mailbox: ImapMailbox, conn: MagicMock) -> None:
    mailbox.close()
    conn.logout.assert_called_once()
    assert mailbox._imap is None
