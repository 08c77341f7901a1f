"""Data types shared by the mailbox provider adapters."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class ProviderType(str, Enum):
    """Mailbox backend an account is connected to."""

    GOOGLE = "google"
    MICROSOFT = "microsoft"
    YAHOO = "yahoo"


@dataclass(frozen=True)
class Credential:
    """OAuth access/refresh token pair for one account.

    ``expires_at`` is a UNIX timestamp in seconds; 0 means unknown and is
    treated as already expired.
    """

    access_token: str | None
    refresh_token: str | None
    expires_at: float = 0.0

    def is_fresh(self, margin: float, now: float | None = None) -> bool:
        """True if the access token exists and won't expire within ``margin`` seconds."""
        current = time.time() if now is None else now
        return bool(self.access_token) and self.expires_at - margin > current


@dataclass(frozen=True)
class Account:
    """The account record a provider adapter works on behalf of."""

    user_id: str
    email: str
    provider: ProviderType
    credential: Credential
    name: str = ""
    important_keywords: tuple[str, ...] = ()
    last_sync: str | None = None


@dataclass(frozen=True)
class Message:
    """A normalised mail entry, identical in shape across providers.

    ``body`` is plain text: HTML is stripped and a text/plain part is
    preferred when the provider offers both.
    """

    id: str
    subject: str
    sender: str
    to: tuple[str, ...] = ()
    date: datetime | None = None
    snippet: str = ""
    body: str = ""
    is_read: bool = False
    has_attachments: bool = False
    thread_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "threadId": self.thread_id,
            "subject": self.subject,
            "from": self.sender,
            "to": list(self.to),
            "date": self.date.isoformat() if self.date else None,
            "snippet": self.snippet,
            "body": self.body,
            "isRead": self.is_read,
            "hasAttachments": self.has_attachments,
        }


@dataclass(frozen=True)
class Attachment:
    """Attachment bytes plus metadata. Content passes through opaquely."""

    filename: str
    mime_type: str
    content: bytes = b""


@dataclass(frozen=True)
class AttachmentInfo:
    """Attachment metadata without content, as listed on a message."""

    id: str
    filename: str
    mime_type: str
    size: int = 0


@dataclass(frozen=True)
class FilterSpec:
    """Selects a mailbox view plus optional free-text search and time window.

    ``view`` is a named view such as ``all``, ``unread`` or ``sent``.
    ``time_range`` is ``all``, ``daily``, ``weekly``, ``monthly`` or a single
    day written ``YYYY/MM/DD``.
    """

    view: str = "all"
    query: str = ""
    time_range: str | None = None
    max_results: int = 50
    page_token: str | None = None


@dataclass(frozen=True)
class FetchResult:
    messages: list[Message] = field(default_factory=list)
    next_page_token: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "messages": [m.to_dict() for m in self.messages],
            "nextPageToken": self.next_page_token,
        }
