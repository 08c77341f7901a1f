"""Per-user conversation session state.

The orchestrator keeps three things between turns: the live pending draft,
the bounded chat history, and the messages it last listed (so the user can
say "read email 2"). They live behind a small async store interface so a
shared backend can replace the in-process one without touching callers.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Protocol

from mailpilot.providers.types import Message
from mailpilot.storage.models import PendingDraft


@dataclass(frozen=True)
class Turn:
    """One chat message; role is ``user`` or ``assistant``."""

    role: str
    content: str


@dataclass
class Session:
    draft: PendingDraft | None = None
    history: list[Turn] = field(default_factory=list)
    last_listed: list[Message] = field(default_factory=list)


class SessionStore(Protocol):
    async def load(self, user_id: str) -> Session: ...

    async def save(self, user_id: str, session: Session) -> None: ...

    def lock(self, user_id: str) -> asyncio.Lock: ...


class InMemorySessionStore:
    """Sessions held in a dict; lost on restart."""

    def __init__(self) -> None:
        self._sessions: dict[str, Session] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    async def load(self, user_id: str) -> Session:
        current = self._sessions.get(user_id)
        if current is None:
            return Session()
        return Session(
            draft=current.draft,
            history=list(current.history),
            last_listed=list(current.last_listed),
        )

    async def save(self, user_id: str, session: Session) -> None:
        self._sessions[user_id] = session

    def lock(self, user_id: str) -> asyncio.Lock:
        """Serialises turns for one user so draft transitions don't interleave."""
        lock = self._locks.get(user_id)
        if lock is None:
            lock = self._locks[user_id] = asyncio.Lock()
        return lock
