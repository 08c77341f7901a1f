"""Gmail adapter over the Gmail REST API (users/me endpoints)."""

from __future__ import annotations

import asyncio
import base64
import html
import logging
from collections.abc import Iterator, Sequence
from email.message import EmailMessage
from typing import Any

from mailpilot.providers.base import MailProvider
from mailpilot.providers.html import parse_addresses, parse_epoch, parse_rfc2822_date, strip_html
from mailpilot.providers.types import (
    Attachment,
    AttachmentInfo,
    FetchResult,
    FilterSpec,
    Message,
)
from mailpilot.providers.windows import TimeWindow

logger = logging.getLogger(__name__)

_API = "https://gmail.googleapis.com/gmail/v1/users/me"

# Views expressed as search operators
_VIEW_QUERY = {
    "read": "is:read",
    "unread": "is:unread",
    "archived": "-in:inbox -in:sent -in:drafts -in:trash",
    "starred": "is:starred",
    "promotions": "category:promotions",
}
# Views expressed as system labels
_VIEW_LABEL = {
    "sent": "SENT",
    "drafts": "DRAFT",
    "important": "IMPORTANT",
    "trash": "TRASH",
}

# Gmail's maximum page size for id-only listing
_ID_PAGE_SIZE = 500
_COUNT_CAP = 5000


def _decode_b64url(data: str) -> bytes:
    return base64.urlsafe_b64decode(data + "=" * (-len(data) % 4))


def _walk_parts(payload: dict[str, Any]) -> Iterator[dict[str, Any]]:
    """Yield the payload and every nested MIME part, depth first."""
    yield payload
    for part in payload.get("parts") or []:
        yield from _walk_parts(part)


def _extract_body(payload: dict[str, Any]) -> str:
    """Return plain text from a message payload, preferring text/plain."""
    plain: str | None = None
    rich: str | None = None
    for part in _walk_parts(payload):
        data = (part.get("body") or {}).get("data")
        if not data or part.get("filename"):
            continue
        mime = part.get("mimeType", "")
        if mime == "text/plain" and plain is None:
            plain = _decode_b64url(data).decode("utf-8", errors="replace")
        elif mime == "text/html" and rich is None:
            rich = _decode_b64url(data).decode("utf-8", errors="replace")
    if plain is not None:
        return plain.strip()
    if rich is not None:
        return strip_html(rich)
    return ""


def _attachment_parts(payload: dict[str, Any]) -> list[AttachmentInfo]:
    return [
        AttachmentInfo(
            id=part["body"]["attachmentId"],
            filename=part["filename"],
            mime_type=part.get("mimeType", "application/octet-stream"),
            size=int(part["body"].get("size", 0)),
        )
        for part in _walk_parts(payload)
        if part.get("filename") and (part.get("body") or {}).get("attachmentId")
    ]


def _build_raw(
    to: str,
    subject: str,
    body: str,
    attachments: Sequence[Attachment] = (),
) -> str:
    """Serialise an outgoing message as the base64url ``raw`` field Gmail expects."""
    message = EmailMessage()
    message["To"] = to
    message["Subject"] = subject
    message.set_content(body)
    for attachment in attachments:
        maintype, _, subtype = attachment.mime_type.partition("/")
        message.add_attachment(
            attachment.content,
            maintype=maintype or "application",
            subtype=subtype or "octet-stream",
            filename=attachment.filename,
        )
    return base64.urlsafe_b64encode(message.as_bytes()).decode("ascii")


def _format(data: dict[str, Any]) -> Message:
    payload = data.get("payload") or {}
    headers = {h["name"].lower(): h["value"] for h in payload.get("headers", [])}
    labels = data.get("labelIds") or []
    return Message(
        id=data["id"],
        thread_id=data.get("threadId"),
        subject=headers.get("subject", ""),
        sender=headers.get("from", ""),
        to=parse_addresses(headers.get("to")),
        date=parse_rfc2822_date(headers.get("date")) or parse_epoch(data.get("internalDate")),
        snippet=html.unescape(data.get("snippet", "")),
        body=_extract_body(payload),
        is_read="UNREAD" not in labels,
        has_attachments=bool(_attachment_parts(payload)),
    )


class GmailProvider(MailProvider):
    name = "Gmail"
    token_url = "https://oauth2.googleapis.com/token"
    supported_views = frozenset({"all", *_VIEW_QUERY, *_VIEW_LABEL})

    # ── Listing ────────────────────────────────────────────────────────────────

    def _list_params(self, spec: FilterSpec, window: TimeWindow | None) -> dict[str, Any]:
        view = spec.view.lower()
        terms = [spec.query] if spec.query else []
        if view in _VIEW_QUERY:
            terms.append(_VIEW_QUERY[view])
        if window is not None:
            if window.after is not None:
                terms.append(f"after:{int(window.after.timestamp())}")
            if window.before is not None:
                terms.append(f"before:{int(window.before.timestamp())}")

        params: dict[str, Any] = {}
        if terms:
            params["q"] = " ".join(terms)
        if view in _VIEW_LABEL:
            params["labelIds"] = _VIEW_LABEL[view]
        if view == "trash":
            params["includeSpamTrash"] = "true"
        return params

    async def _fetch(self, spec: FilterSpec, window: TimeWindow | None) -> FetchResult:
        params = self._list_params(spec, window)
        params["maxResults"] = spec.max_results
        if spec.page_token:
            params["pageToken"] = spec.page_token

        response = await self._request("GET", f"{_API}/messages", params=params, action="list messages")
        data = response.json()
        ids = [m["id"] for m in data.get("messages") or []]
        logger.debug("Gmail listed %d message ids (q=%r)", len(ids), params.get("q"))
        messages = await self._gather_limited(ids)
        return FetchResult(messages=messages, next_page_token=data.get("nextPageToken"))

    async def _count(self, spec: FilterSpec, window: TimeWindow | None) -> int:
        """Count via id-only listing, which skips the per-message fetches."""
        params = self._list_params(spec, window)
        params["maxResults"] = _ID_PAGE_SIZE
        params["fields"] = "messages/id,nextPageToken"
        total = 0
        while True:
            response = await self._request("GET", f"{_API}/messages", params=params, action="count messages")
            data = response.json()
            total += len(data.get("messages") or [])
            token = data.get("nextPageToken")
            if not token or total >= _COUNT_CAP:
                return total
            params["pageToken"] = token

    # ── Single message ─────────────────────────────────────────────────────────

    async def get(self, message_id: str) -> Message:
        response = await self._request(
            "GET", f"{_API}/messages/{message_id}", params={"format": "full"}, action="read message"
        )
        return _format(response.json())

    async def list_attachments(self, message_id: str) -> list[AttachmentInfo]:
        response = await self._request(
            "GET", f"{_API}/messages/{message_id}", params={"format": "full"}, action="list attachments"
        )
        return _attachment_parts(response.json().get("payload") or {})

    async def get_attachment(self, message_id: str, attachment_id: str) -> Attachment:
        infos, response = await asyncio.gather(
            self.list_attachments(message_id),
            self._request(
                "GET",
                f"{_API}/messages/{message_id}/attachments/{attachment_id}",
                action="download attachment",
            ),
        )
        info = next((i for i in infos if i.id == attachment_id), None)
        return Attachment(
            filename=info.filename if info else "attachment",
            mime_type=info.mime_type if info else "application/octet-stream",
            content=_decode_b64url(response.json().get("data", "")),
        )

    # ── Mutations ──────────────────────────────────────────────────────────────

    async def send(
        self, to: str, subject: str, body: str, attachments: Sequence[Attachment] = ()
    ) -> None:
        raw = _build_raw(to, subject, body, attachments)
        await self._request("POST", f"{_API}/messages/send", json={"raw": raw}, action="send message")
        logger.info("Gmail message sent to %s", to)

    async def reply(
        self, message_id: str, body: str, attachments: Sequence[Attachment] = ()
    ) -> None:
        original = await self.get(message_id)
        recipient = self._reply_recipient(original)
        raw = _build_raw(recipient, self._reply_subject(original.subject), body, attachments)
        payload: dict[str, Any] = {"raw": raw}
        if original.thread_id:
            payload["threadId"] = original.thread_id
        await self._request("POST", f"{_API}/messages/send", json=payload, action="send reply")
        logger.info("Gmail reply sent to %s", recipient)

    async def trash(self, message_id: str) -> None:
        await self._request("POST", f"{_API}/messages/{message_id}/trash", action="trash message")

    async def mark_read(self, message_id: str, read: bool = True) -> None:
        change = {"removeLabelIds": ["UNREAD"]} if read else {"addLabelIds": ["UNREAD"]}
        await self._request(
            "POST", f"{_API}/messages/{message_id}/modify", json=change, action="update read state"
        )

    async def draft(
        self, to: str, subject: str, body: str, attachments: Sequence[Attachment] = ()
    ) -> str:
        raw = _build_raw(to, subject, body, attachments)
        response = await self._request(
            "POST", f"{_API}/drafts", json={"message": {"raw": raw}}, action="save draft"
        )
        return str(response.json().get("id", ""))
