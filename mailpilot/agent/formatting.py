"""Markdown rendering for assistant replies."""

from __future__ import annotations

from collections.abc import Sequence
from typing import Any

from mailpilot.processing.classifier import ScoredMessage
from mailpilot.providers.types import Message
from mailpilot.storage.models import DraftRecord, PendingDraft

CONFIRM_HINT = 'Say **"confirm send"** to send it, or tell me what to change.'


def truncate(text: str, limit: int) -> str:
    return text if len(text) <= limit else text[: limit - 3] + "..."


def display_name(sender: str) -> str:
    """``"Ann <ann@x.com>"`` → ``"Ann"``; bare addresses are returned unchanged."""
    if "<" not in sender:
        return sender
    return sender.split("<")[0].strip().strip('"') or sender


def _cell(value: Any) -> str:
    return str(value if value is not None else "").replace("|", "\\|").replace("\n", " ")


def markdown_table(rows: Sequence[dict[str, Any]]) -> str:
    """Render a list of row dicts; columns follow first-seen key order."""
    if not rows:
        return ""
    columns: list[str] = []
    for row in rows:
        for key in row:
            if key not in columns:
                columns.append(key)
    header = "| " + " | ".join(_cell(c) for c in columns) + " |"
    separator = "| " + " | ".join(":---" for _ in columns) + " |"
    body = ["| " + " | ".join(_cell(row.get(c)) for c in columns) + " |" for row in rows]
    return "\n".join([header, separator, *body])


def email_table(messages: Sequence[Message]) -> str:
    if not messages:
        return "No emails available."
    rows = [
        {
            "Date": m.date.strftime("%Y-%m-%d") if m.date else "",
            "From": display_name(m.sender),
            "Subject": truncate(m.subject or "No Subject", 30),
            "Preview": truncate(m.snippet, 50),
        }
        for m in messages
    ]
    return markdown_table(rows)


def email_listing(messages: Sequence[Message]) -> str:
    """Numbered preview list; numbers match the "email N" references users can make."""
    entries = []
    for index, m in enumerate(messages, start=1):
        lines = [
            f"**{index}.** **From:** {m.sender}",
            f"**Subject:** {m.subject or 'No subject'}",
            f"**Date:** {m.date.strftime('%Y-%m-%d') if m.date else 'unknown'}",
            f"**ID:** {m.id}",
        ]
        if m.has_attachments:
            lines.append(f"**Attachments:** Yes (say \"show attachments for email {index}\")")
        lines.append(m.snippet or "No preview available")
        entries.append("\n".join(lines))
    return "\n\n".join(entries)


def email_detail(message: Message) -> str:
    parts = [
        f"**From:** {message.sender}",
        f"**To:** {', '.join(message.to) or 'unknown'}",
        f"**Subject:** {message.subject or 'No subject'}",
        f"**Date:** {message.date.isoformat() if message.date else 'unknown'}",
        "",
        message.body or message.snippet or "(no content)",
    ]
    return "\n".join(parts)


def draft_review(draft: PendingDraft, intro: str) -> str:
    return (
        f"{intro}\n\n**To:** {draft.recipient}\n**Subject:** {draft.subject}\n\n"
        f"{draft.body}\n\n{CONFIRM_HINT}"
    )


def draft_choices(drafts: Sequence[DraftRecord]) -> str:
    lines = [f"I found {len(drafts)} drafts:"]
    lines += [f"{i}. To: {d.recipient}, Subject: {d.subject}" for i, d in enumerate(drafts, start=1)]
    options = " or ".join(f'**"send draft {i}"**' for i in range(1, len(drafts) + 1))
    lines.append(f"Which one? Say {options}.")
    return "\n".join(lines)


def important_listing(name: str, scored: Sequence[ScoredMessage], total: int) -> str:
    entries = []
    for index, item in enumerate(scored, start=1):
        m = item.message
        entry = [
            f"**{index}.** From: {m.sender}",
            f"Subject: {m.subject}",
            f"Importance Score: {item.score}%",
        ]
        if m.snippet:
            entry.append(f"Snippet: {m.snippet}")
        if m.body:
            entry.append(f"Content: {truncate(m.body, 203)}")
        entries.append("\n".join(entry))
    listing = "\n\n".join(entries)
    return (
        f"Hey {name}, I found **{total} important emails** that need your attention. "
        f"Here are the top ones:\n\n{listing}\n\nWant me to open any of these?"
    )


def count_sentence(count: int, view: str, query: str = "") -> str:
    noun = "email" if count == 1 else "emails"
    label = f"{view} {noun}" if view != "all" else noun
    text = f"You have **{count}** {label}"
    if query:
        text += f' matching "{query}"'
    return text + "."
