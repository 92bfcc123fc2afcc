"""Mailbox ingestion module."""

from .base import MailboxClient, MailboxError
from .imap import ImapMailbox

__all__ = ["MailboxClient", "MailboxError", "ImapMailbox"]
