"""HTML → plain text conversion and header parsing for provider payloads."""

from __future__ import annotations

import re
from datetime import datetime, timezone
from email.utils import getaddresses, parsedate_to_datetime
from html.parser import HTMLParser

# Tags whose text content is never visible
_SKIPPED_TAGS = {"script", "style", "head", "title"}
# Tags that start a new line when rendered
_BLOCK_TAGS = {"p", "div", "br", "tr", "li", "h1", "h2", "h3", "h4", "h5", "h6", "table"}


class _HTMLStripper(HTMLParser):
    """Collects visible text nodes, keeping block boundaries as newlines."""

    def __init__(self) -> None:
        super().__init__(convert_charrefs=True)
        self._parts: list[str] = []
        self._skip_depth = 0

    def handle_starttag(self, tag: str, attrs: list[tuple[str, str | None]]) -> None:
        if tag in _SKIPPED_TAGS:
            self._skip_depth += 1
        elif tag in _BLOCK_TAGS:
            self._parts.append("\n")

    def handle_endtag(self, tag: str) -> None:
        if tag in _SKIPPED_TAGS and self._skip_depth:
            self._skip_depth -= 1
        elif tag in _BLOCK_TAGS:
            self._parts.append("\n")

    def handle_data(self, data: str) -> None:
        if self._skip_depth:
            return
        text = " ".join(data.split())
        if text:
            self._parts.append(text + " ")

    def get_text(self) -> str:
        text = "".join(self._parts)
        lines = (line.strip() for line in text.splitlines())
        return "\n".join(line for line in lines if line)


def strip_html(text: str) -> str:
    """Return plain text from an HTML string.

    Input that doesn't look like HTML is returned unchanged.
    """
    if "<" not in text:
        return text
    stripper = _HTMLStripper()
    stripper.feed(text)
    stripper.close()
    return stripper.get_text()


def parse_addresses(raw: str | None) -> tuple[str, ...]:
    """Split a To:/Cc: header value into bare addresses."""
    if not raw:
        return ()
    return tuple(addr for _name, addr in getaddresses([raw]) if addr)


def parse_rfc2822_date(raw: str | None) -> datetime | None:
    """Parse a Date: header; None when missing or malformed."""
    if not raw:
        return None
    try:
        parsed = parsedate_to_datetime(raw)
    except (TypeError, ValueError):
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def parse_iso_date(raw: str | None) -> datetime | None:
    """Parse an ISO-8601 timestamp such as Graph's ``receivedDateTime``."""
    if not raw:
        return None
    try:
        parsed = datetime.fromisoformat(re.sub(r"Z$", "+00:00", raw))
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def parse_epoch(raw: int | float | str | None) -> datetime | None:
    """Parse a UNIX timestamp in seconds (or milliseconds, detected by size)."""
    if raw in (None, ""):
        return None
    try:
        value = float(raw)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return parse_iso_date(str(raw))
    if value > 1e12:
        value /= 1000
    return datetime.fromtimestamp(value, tz=timezone.utc)
