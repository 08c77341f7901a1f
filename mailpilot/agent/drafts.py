"""Recognising confirmation and amendment turns, and parsing model-written drafts."""

from __future__ import annotations

import re
from dataclasses import dataclass

from mailpilot.storage.models import PendingDraft

_SEND_DRAFT_N = re.compile(r"\bsend\s+draft\s+(\d+)\b", re.IGNORECASE)
_WORD = re.compile(r"[a-z']+")

# A confirmation turn starts with one of these...
_CONFIRM_LEADS = frozenset(
    {"confirm", "confirmed", "yes", "yep", "yeah", "ok", "okay", "sure", "send", "proceed", "go"}
)
# ...and every other word must come from this set.
_CONFIRM_FILLER = frozenset(
    {
        "send", "sent", "it", "now", "please", "ahead", "the", "email", "draft",
        "mail", "confirm", "confirmed", "yes", "go", "proceed", "ok", "okay", "that", "this",
    }
)

EDIT_VERBS = frozenset({"change", "adjust", "adjustment", "modify", "edit", "update"})
# Words that may precede an edit verb in an instruction ("could you please change ...").
_POLITE = frozenset(
    {"please", "can", "could", "would", "will", "you", "now", "ok", "okay", "also", "and", "then"}
)
# Parts of a draft an instruction can name.
_DRAFT_PARTS = frozenset(
    {"draft", "subject", "body", "recipient", "greeting", "closing", "signature", "tone", "wording"}
)

_SUBJECT_LINE = re.compile(r"^\s*\**subject:\**\s*(.*)$", re.IGNORECASE)
_TO_LINE = re.compile(r"^\s*\**to:\**\s*(.*)$", re.IGNORECASE)


@dataclass(frozen=True)
class Confirmation:
    """A confirmation turn; ``draft_number`` is set for "send draft N" (1 = most recent)."""

    draft_number: int | None = None


def detect_confirmation(text: str) -> Confirmation | None:
    """Return a Confirmation if the turn is an unambiguous go-ahead to send."""
    match = _SEND_DRAFT_N.search(text)
    if match:
        return Confirmation(draft_number=int(match.group(1)))
    words = _WORD.findall(text.lower())
    if not words or words[0] not in _CONFIRM_LEADS:
        return None
    if all(w in _CONFIRM_FILLER or w in _CONFIRM_LEADS for w in words[1:]):
        return Confirmation()
    return None


def is_amendment(text: str) -> bool:
    """True when the turn is an instruction to edit the pending draft.

    Either the turn opens with an edit verb ("change the subject ...",
    "could you update the body"), or it uses an edit verb and names a part of
    the draft without being a question. "Any update on the budget?" is not one.
    """
    words = [w.split("'")[0] for w in _WORD.findall(text.lower())]
    if not any(w in EDIT_VERBS for w in words):
        return False
    lead = next((w for w in words if w not in _POLITE), "")
    if lead in EDIT_VERBS:
        return True
    if text.rstrip().endswith("?"):
        return False
    return any(w in _DRAFT_PARTS for w in words)


def parse_amended_draft(text: str, previous: PendingDraft) -> PendingDraft:
    """Parse ``To:`` / ``Subject:`` / blank line / body; missing parts keep their old value."""
    start = text.find("To:")
    if start != -1:
        text = text[start:]
    recipient = subject = ""
    body_lines: list[str] = []
    in_body = False
    seen_subject = False
    for line in text.splitlines():
        if in_body:
            body_lines.append(line)
            continue
        to_match = _TO_LINE.match(line)
        subject_match = _SUBJECT_LINE.match(line)
        if to_match and not recipient:
            recipient = to_match.group(1).strip()
        elif subject_match and not seen_subject:
            subject = subject_match.group(1).strip()
            seen_subject = True
        elif seen_subject and not line.strip():
            in_body = True
        elif seen_subject:
            in_body = True
            body_lines.append(line)
    body = "\n".join(body_lines).strip()
    return PendingDraft(
        recipient=recipient or previous.recipient,
        subject=subject or previous.subject,
        body=body or previous.body,
    )


def parse_composed_draft(text: str) -> tuple[str, str]:
    """Split a composed email into (subject, body); subject defaults to "No subject"."""
    lines = text.strip().splitlines()
    for index, line in enumerate(lines):
        match = _SUBJECT_LINE.match(line)
        if match:
            body = "\n".join(lines[index + 1:]).strip()
            return match.group(1).strip() or "No subject", body
    return "No subject", text.strip()
