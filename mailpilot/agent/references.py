"""Rewrites user phrasing into forms the model and mail APIs understand."""

from __future__ import annotations

import re
from collections.abc import Sequence
from datetime import date, timedelta

from mailpilot.providers.types import Message

_ORDINALS = {"first": 1, "second": 2, "third": 3, "fourth": 4, "fifth": 5}
_POSITIONAL_REF = re.compile(
    r"\bthe\s+(?P<ordinal>first|second|third|fourth|fifth)\s+email\b|\bemail\s+#?(?P<number>\d{1,2})\b",
    re.IGNORECASE,
)
_THESE_EMAILS = re.compile(r"\b(?:this|these)\s+emails\b", re.IGNORECASE)

_TODAY = re.compile(r"\btoday\b", re.IGNORECASE)
_THIS_WEEK = re.compile(r"\bthis\s+week\b", re.IGNORECASE)
_THIS_MONTH = re.compile(r"\bthis\s+month\b", re.IGNORECASE)


def resolve_positional(text: str, last_listed: Sequence[Message]) -> str:
    """Replace "email 2" / "the first email" with ids from the last listing.

    References past the end of the listing are left untouched.
    """
    if not last_listed:
        return text

    def _replace(match: re.Match[str]) -> str:
        ordinal = match.group("ordinal")
        index = _ORDINALS[ordinal.lower()] if ordinal else int(match.group("number"))
        if 1 <= index <= len(last_listed):
            return f"email {last_listed[index - 1].id}"
        return match.group(0)

    text = _POSITIONAL_REF.sub(_replace, text)
    return _THESE_EMAILS.sub("emails " + ", ".join(m.id for m in last_listed), text)


def resolve_relative_dates(query: str, today: date) -> str:
    """Rewrite today / this week / this month to ``YYYY/MM/DD`` (week starts Sunday)."""
    week_start = today - timedelta(days=(today.weekday() + 1) % 7)
    query = _TODAY.sub(today.strftime("%Y/%m/%d"), query)
    query = _THIS_WEEK.sub(week_start.strftime("%Y/%m/%d"), query)
    return _THIS_MONTH.sub(today.replace(day=1).strftime("%Y/%m/%d"), query)
