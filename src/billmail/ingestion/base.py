"""Abstract base class for mailbox access."""

from abc import ABC, abstractmethod
from contextlib import AbstractContextManager
from datetime import date
from typing import Optional

from ..models import EmailMessage, MailboxInfo


class MailboxError(Exception):
    """Raised when the mail server rejects a command or a message is unreachable."""


class MailboxClient(ABC):
    """Abstract interface for reading messages from a mailbox."""

    @abstractmethod
    def locked(self, mailbox: str) -> AbstractContextManager[MailboxInfo]:
        """Select a mailbox for exclusive use by the caller.

        Usage:
            with client.locked("INBOX") as info:
                uids = client.search_uids(1)

        Args:
            mailbox: Mailbox name (e.g., "INBOX")

        Returns:
            Context manager yielding the mailbox UIDVALIDITY/UIDNEXT state
        """
        pass

    @abstractmethod
    def search_uids(self, start: int, end: Optional[int] = None) -> list[int]:
        """Return UIDs in [start, end] (end=None means open-ended), ascending."""
        pass

    @abstractmethod
    def search_since(self, since: date) -> list[int]:
        """Return UIDs with INTERNALDATE on or after since, ascending."""
        pass

    @abstractmethod
    def fetch(self, uid: int) -> Optional[EmailMessage]:
        """Fetch a single message by UID.

        Returns:
            Optional[EmailMessage]: Message, or None if the UID no longer exists
        """
        pass

    @abstractmethod
    def fetch_headers(self, limit: int) -> list[tuple[int, bytes]]:
        """Fetch raw headers of the newest messages, oldest first."""
        pass

    @abstractmethod
    def mark_seen(self, uid: int) -> None:
        """Add the \\Seen flag to a message."""
        pass

    @abstractmethod
    def close(self) -> None:
        """Close the connection."""
        pass
