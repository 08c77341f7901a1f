"""SQLite storage for connected accounts and durable email drafts."""

import json
import logging
import sqlite3
from datetime import datetime, timezone
from pathlib import Path

from mailpilot.errors import AccountNotFound
from mailpilot.providers.types import Account, Credential, ProviderType
from mailpilot.storage.models import ALL_TABLES, DraftRecord, PendingDraft

logger = logging.getLogger(__name__)

_DEFAULT_DB_PATH = Path("data/mailpilot.db")

_DRAFT_COLUMNS = "id, user_id, recipient, subject, body, created_at"


class AssistantDatabase:
    """Wraps SQLite for account credentials and saved drafts.

    Designed for single-threaded use from an async event loop. All calls are
    synchronous but fast enough for per-user volumes.

    Usage::

        db = AssistantDatabase()
        db.upsert_account(account)
        account = db.get_account("user-1")
    """

    def __init__(self, db_path: str | Path = _DEFAULT_DB_PATH) -> None:
        self._path = Path(db_path)
        if str(db_path) != ":memory:":
            self._path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(str(self._path))
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._create_tables()

    def close(self) -> None:
        """Close the underlying database connection."""
        self._conn.close()

    # ── Accounts ────────────────────────────────────────────────────────────────

    def upsert_account(self, account: Account) -> None:
        """Insert or replace an account, tokens included."""
        credential = account.credential
        with self._conn:
            self._conn.execute(
                """
                INSERT INTO accounts
                    (user_id, email, name, provider, access_token, refresh_token,
                     expires_at, important_keywords, last_sync)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(user_id) DO UPDATE SET
                    email              = excluded.email,
                    name               = excluded.name,
                    provider           = excluded.provider,
                    access_token       = excluded.access_token,
                    refresh_token      = excluded.refresh_token,
                    expires_at         = excluded.expires_at,
                    important_keywords = excluded.important_keywords
                """,
                (
                    account.user_id,
                    account.email,
                    account.name,
                    account.provider.value,
                    credential.access_token,
                    credential.refresh_token,
                    credential.expires_at,
                    json.dumps(list(account.important_keywords)),
                    account.last_sync,
                ),
            )
        logger.info("Saved %s account %s", account.provider.value, account.user_id)

    def get_account(self, user_id: str) -> Account:
        """Return the account for user_id.

        Raises:
            AccountNotFound: no account row exists.
        """
        row = self._conn.execute(
            """SELECT user_id, email, name, provider, access_token, refresh_token,
                      expires_at, important_keywords, last_sync
               FROM accounts WHERE user_id = ?""",
            (user_id,),
        ).fetchone()
        if row is None:
            raise AccountNotFound(user_id)
        return Account(
            user_id=row["user_id"],
            email=row["email"],
            name=row["name"],
            provider=ProviderType(row["provider"]),
            credential=Credential(
                access_token=row["access_token"],
                refresh_token=row["refresh_token"],
                expires_at=row["expires_at"],
            ),
            important_keywords=tuple(json.loads(row["important_keywords"])),
            last_sync=row["last_sync"],
        )

    def list_accounts(self) -> list[Account]:
        rows = self._conn.execute("SELECT user_id FROM accounts ORDER BY user_id").fetchall()
        return [self.get_account(r["user_id"]) for r in rows]

    def save_credential(self, user_id: str, credential: Credential) -> None:
        """Replace the stored tokens and stamp last_sync in one statement."""
        with self._conn:
            cursor = self._conn.execute(
                """UPDATE accounts
                   SET access_token = ?, refresh_token = ?, expires_at = ?, last_sync = ?
                   WHERE user_id = ?""",
                (
                    credential.access_token,
                    credential.refresh_token,
                    credential.expires_at,
                    datetime.now(timezone.utc).isoformat(),
                    user_id,
                ),
            )
        if cursor.rowcount == 0:
            raise AccountNotFound(user_id)

    def set_important_keywords(self, user_id: str, keywords: list[str]) -> None:
        with self._conn:
            cursor = self._conn.execute(
                "UPDATE accounts SET important_keywords = ? WHERE user_id = ?",
                (json.dumps(keywords), user_id),
            )
        if cursor.rowcount == 0:
            raise AccountNotFound(user_id)

    # ── Drafts ──────────────────────────────────────────────────────────────────

    def create_draft(self, user_id: str, draft: PendingDraft) -> int:
        """Store a draft and return its row id."""
        with self._conn:
            cursor = self._conn.execute(
                "INSERT INTO drafts (user_id, recipient, subject, body) VALUES (?, ?, ?, ?)",
                (user_id, draft.recipient, draft.subject, draft.body),
            )
        return int(cursor.lastrowid)

    def recent_drafts(self, user_id: str, limit: int | None = None) -> list[DraftRecord]:
        """Return the user's drafts, most recent first."""
        sql = f"SELECT {_DRAFT_COLUMNS} FROM drafts WHERE user_id = ? ORDER BY id DESC"
        params: tuple = (user_id,)
        if limit is not None:
            sql += " LIMIT ?"
            params = (user_id, limit)
        rows = self._conn.execute(sql, params).fetchall()
        return [DraftRecord(**dict(r)) for r in rows]

    def update_latest_draft(self, user_id: str, draft: PendingDraft) -> bool:
        """Overwrite the most recent draft; False when the user has none."""
        with self._conn:
            cursor = self._conn.execute(
                """UPDATE drafts SET recipient = ?, subject = ?, body = ?
                   WHERE id = (SELECT MAX(id) FROM drafts WHERE user_id = ?)""",
                (draft.recipient, draft.subject, draft.body, user_id),
            )
        return cursor.rowcount > 0

    def delete_drafts(self, user_id: str) -> int:
        """Delete every draft the user has; returns the number removed."""
        with self._conn:
            cursor = self._conn.execute("DELETE FROM drafts WHERE user_id = ?", (user_id,))
        return cursor.rowcount

    # ── Private ─────────────────────────────────────────────────────────────────

    def _create_tables(self) -> None:
        with self._conn:
            for ddl in ALL_TABLES:
                self._conn.execute(ddl)
