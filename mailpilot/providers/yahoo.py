"""Yahoo Mail adapter.

Yahoo's API is folder-based: read/unread and time windows aren't server-side
filters, so they are applied to each fetched page. A page can therefore hold
fewer than ``max_results`` messages while a next page still exists.
"""

from __future__ import annotations

import base64
import logging
from collections.abc import Sequence
from typing import Any

from mailpilot.providers.base import MailProvider
from mailpilot.providers.html import parse_epoch, strip_html
from mailpilot.providers.types import (
    Attachment,
    AttachmentInfo,
    FetchResult,
    FilterSpec,
    Message,
)
from mailpilot.providers.windows import TimeWindow

logger = logging.getLogger(__name__)

_API = "https://api.mail.yahoo.com/v1"

_VIEW_FOLDER = {
    "all": "inbox",
    "read": "inbox",
    "unread": "inbox",
    "archived": "archive",
    "starred": "starred",
    "sent": "sent",
    "drafts": "drafts",
    "trash": "trash",
}


def _format(data: dict[str, Any]) -> Message:
    sender = data.get("from") or {}
    body = data.get("plainText") or ""
    if not body and data.get("htmlText"):
        body = strip_html(data["htmlText"])
    return Message(
        id=str(data["id"]),
        thread_id=data.get("conversationId"),
        subject=data.get("subject") or "",
        sender=sender.get("email", "") if isinstance(sender, dict) else str(sender),
        to=tuple(r["email"] for r in data.get("to") or [] if r.get("email")),
        date=parse_epoch(data.get("receivedDate")),
        snippet=data.get("snippet") or "",
        body=body.strip(),
        is_read=bool(data.get("isRead")),
        has_attachments=bool(data.get("attachments") or data.get("hasAttachments")),
    )


def _multipart(attachments: Sequence[Attachment]) -> list[tuple[str, tuple[str, bytes, str]]]:
    return [("attachments", (a.filename, a.content, a.mime_type)) for a in attachments]


class YahooProvider(MailProvider):
    name = "Yahoo"
    token_url = "https://api.login.yahoo.com/oauth2/get_token"
    supported_views = frozenset(_VIEW_FOLDER)

    async def _fetch(self, spec: FilterSpec, window: TimeWindow | None) -> FetchResult:
        view = spec.view.lower()
        params: dict[str, Any] = {"count": spec.max_results, "folder": _VIEW_FOLDER[view]}
        if spec.query:
            params["query"] = spec.query
        if spec.page_token:
            params["start"] = spec.page_token

        response = await self._request("GET", f"{_API}/messages", params=params, action="list messages")
        data = response.json()
        messages = [_format(item) for item in data.get("messages") or []]

        if view == "read":
            messages = [m for m in messages if m.is_read]
        elif view == "unread":
            messages = [m for m in messages if not m.is_read]
        if window is not None:
            messages = [m for m in messages if window.contains(m.date)]

        return FetchResult(messages=messages, next_page_token=data.get("nextPageToken"))

    async def get(self, message_id: str) -> Message:
        response = await self._request("GET", f"{_API}/message/{message_id}", action="read message")
        return _format(response.json())

    async def list_attachments(self, message_id: str) -> list[AttachmentInfo]:
        response = await self._request("GET", f"{_API}/message/{message_id}", action="list attachments")
        return [
            AttachmentInfo(
                id=str(item["id"]),
                filename=item.get("filename") or "attachment",
                mime_type=item.get("mimeType") or "application/octet-stream",
                size=int(item.get("size") or 0),
            )
            for item in response.json().get("attachments") or []
        ]

    async def get_attachment(self, message_id: str, attachment_id: str) -> Attachment:
        response = await self._request(
            "GET",
            f"{_API}/message/{message_id}/attachments/{attachment_id}",
            action="download attachment",
        )
        item = response.json()
        return Attachment(
            filename=item.get("filename") or "attachment",
            mime_type=item.get("mimeType") or "application/octet-stream",
            content=base64.b64decode(item.get("content") or ""),
        )

    async def send(
        self, to: str, subject: str, body: str, attachments: Sequence[Attachment] = ()
    ) -> None:
        await self._request(
            "POST",
            f"{_API}/message",
            data={"to": to, "subject": subject, "body": body},
            files=_multipart(attachments) or None,
            action="send message",
        )
        logger.info("Yahoo message sent to %s", to)

    async def reply(
        self, message_id: str, body: str, attachments: Sequence[Attachment] = ()
    ) -> None:
        original = await self.get(message_id)
        recipient = self._reply_recipient(original)
        await self._request(
            "POST",
            f"{_API}/message",
            data={
                "to": recipient,
                "subject": self._reply_subject(original.subject),
                "body": body,
                "inReplyTo": message_id,
            },
            files=_multipart(attachments) or None,
            action="send reply",
        )
        logger.info("Yahoo reply sent to %s", recipient)

    async def trash(self, message_id: str) -> None:
        await self._request("DELETE", f"{_API}/message/{message_id}", action="trash message")

    async def mark_read(self, message_id: str, read: bool = True) -> None:
        await self._request(
            "PATCH", f"{_API}/message/{message_id}", json={"isRead": read}, action="update read state"
        )

    async def draft(
        self, to: str, subject: str, body: str, attachments: Sequence[Attachment] = ()
    ) -> str:
        response = await self._request(
            "POST",
            f"{_API}/draft",
            data={"to": to, "subject": subject, "body": body, "isDraft": "true"},
            files=_multipart(attachments) or None,
            action="save draft",
        )
        return str(response.json().get("id", ""))
