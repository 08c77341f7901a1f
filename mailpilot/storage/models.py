"""SQLite table schemas, record types and the store interfaces the core depends on."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol

from mailpilot.providers.types import Account, Credential


# ── DDL ────────────────────────────────────────────────────────────────────────

_CREATE_ACCOUNTS = """
CREATE TABLE IF NOT EXISTS accounts (
    user_id            TEXT PRIMARY KEY,
    email              TEXT NOT NULL,
    name               TEXT NOT NULL DEFAULT '',
    provider           TEXT NOT NULL,
    access_token       TEXT,
    refresh_token      TEXT,
    expires_at         REAL NOT NULL DEFAULT 0,
    important_keywords TEXT NOT NULL DEFAULT '[]',
    last_sync          TEXT
)
"""

_CREATE_DRAFTS = """
CREATE TABLE IF NOT EXISTS drafts (
    id          INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id     TEXT NOT NULL,
    recipient   TEXT NOT NULL,
    subject     TEXT NOT NULL,
    body        TEXT NOT NULL,
    created_at  TEXT NOT NULL DEFAULT (datetime('now')),
    FOREIGN KEY (user_id) REFERENCES accounts(user_id)
)
"""

#: All DDL statements in creation order (respects FK dependencies).
ALL_TABLES: list[str] = [
    _CREATE_ACCOUNTS,
    _CREATE_DRAFTS,
]


# ── Record types ────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class PendingDraft:
    """A composed email awaiting explicit user confirmation before sending."""

    recipient: str
    subject: str
    body: str

    def render(self) -> str:
        return f"To: {self.recipient}\nSubject: {self.subject}\n\n{self.body}"


@dataclass(frozen=True)
class DraftRecord:
    """A row from the drafts table."""

    id: int
    user_id: str
    recipient: str
    subject: str
    body: str
    created_at: str

    def as_pending(self) -> PendingDraft:
        return PendingDraft(self.recipient, self.subject, self.body)


# ── Store interfaces ────────────────────────────────────────────────────────────


class AccountStore(Protocol):
    def get_account(self, user_id: str) -> Account:
        """Return the account, raising AccountNotFound if it doesn't exist."""
        ...

    def save_credential(self, user_id: str, credential: Credential) -> None:
        """Atomically replace the account's tokens and stamp last_sync."""
        ...


class DraftStore(Protocol):
    def create_draft(self, user_id: str, draft: PendingDraft) -> int: ...

    def recent_drafts(self, user_id: str, limit: int | None = None) -> list[DraftRecord]: ...

    def update_latest_draft(self, user_id: str, draft: PendingDraft) -> bool: ...

    def delete_drafts(self, user_id: str) -> int: ...
