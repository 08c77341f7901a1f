"""Outlook adapter over Microsoft Graph (``/me`` mailbox endpoints)."""

from __future__ import annotations

import base64
import logging
from collections.abc import Sequence
from typing import Any

import httpx

from mailpilot.errors import ProviderError
from mailpilot.providers.base import MailProvider
from mailpilot.providers.html import parse_iso_date, strip_html
from mailpilot.providers.types import (
    Attachment,
    AttachmentInfo,
    FetchResult,
    FilterSpec,
    Message,
)
from mailpilot.providers.windows import TimeWindow

logger = logging.getLogger(__name__)

_API = "https://graph.microsoft.com/v1.0/me"

_SELECT = (
    "id,conversationId,subject,from,toRecipients,receivedDateTime,"
    "bodyPreview,body,isRead,hasAttachments,flag,importance,categories"
)

# Views that live in a dedicated well-known folder
_VIEW_FOLDER = {
    "sent": "sentitems",
    "archived": "archive",
    "drafts": "drafts",
    "trash": "deleteditems",
}

_PROMOTIONS = (
    "categories/any(c:c eq 'Promotions') or contains(from/emailAddress/address,'newsletter') "
    "or contains(from/emailAddress/address,'noreply') or contains(from/emailAddress/address,'marketing') "
    "or contains(subject,'newsletter') or contains(subject,'offer') or contains(subject,'deal') "
    "or contains(subject,'sale') or contains(subject,'discount')"
)

_PROMO_SENDERS = ("newsletter", "noreply", "marketing")
_PROMO_SUBJECTS = ("newsletter", "offer", "deal", "sale", "discount")

# Views expressed as $filter conditions on /messages
_VIEW_FILTER = {
    "read": "isRead eq true",
    "unread": "isRead eq false",
    "starred": "flag/flagStatus eq 'flagged'",
    "important": "importance eq 'high'",
    "promotions": f"({_PROMOTIONS})",
}


def _graph_time(moment: Any) -> str:
    return moment.strftime("%Y-%m-%dT%H:%M:%SZ")


def _address(entry: dict[str, Any] | None) -> str:
    return ((entry or {}).get("emailAddress") or {}).get("address", "")


def _in_view(view: str, item: dict[str, Any]) -> bool:
    """Client-side twin of _VIEW_FILTER for results $search brought back unfiltered."""
    if view == "read":
        return bool(item.get("isRead"))
    if view == "unread":
        return not item.get("isRead")
    if view == "starred":
        return (item.get("flag") or {}).get("flagStatus") == "flagged"
    if view == "important":
        return item.get("importance") == "high"
    if view == "promotions":
        sender = _address(item.get("from")).lower()
        subject = (item.get("subject") or "").lower()
        return (
            "Promotions" in (item.get("categories") or [])
            or any(word in sender for word in _PROMO_SENDERS)
            or any(word in subject for word in _PROMO_SUBJECTS)
        )
    return True


def _format(data: dict[str, Any]) -> Message:
    body = data.get("body") or {}
    content = body.get("content") or ""
    if str(body.get("contentType", "")).lower() == "html":
        content = strip_html(content)
    return Message(
        id=data["id"],
        thread_id=data.get("conversationId"),
        subject=data.get("subject") or "",
        sender=_address(data.get("from")),
        to=tuple(a for a in (_address(r) for r in data.get("toRecipients") or []) if a),
        date=parse_iso_date(data.get("receivedDateTime")),
        snippet=data.get("bodyPreview") or "",
        body=content.strip(),
        is_read=bool(data.get("isRead")),
        has_attachments=bool(data.get("hasAttachments")),
    )


def _file_attachments(attachments: Sequence[Attachment]) -> list[dict[str, Any]]:
    return [
        {
            "@odata.type": "#microsoft.graph.fileAttachment",
            "name": a.filename,
            "contentType": a.mime_type,
            "contentBytes": base64.b64encode(a.content).decode("ascii"),
        }
        for a in attachments
    ]


def _message_payload(
    to: str, subject: str, body: str, attachments: Sequence[Attachment]
) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "subject": subject,
        "body": {"contentType": "Text", "content": body},
        "toRecipients": [{"emailAddress": {"address": to}}],
    }
    if attachments:
        payload["attachments"] = _file_attachments(attachments)
    return payload


class OutlookProvider(MailProvider):
    name = "Outlook"
    token_url = "https://login.microsoftonline.com/common/oauth2/v2.0/token"
    refresh_extra = {"scope": "offline_access User.Read Mail.Read Mail.ReadWrite Mail.Send"}
    supported_views = frozenset({"all", *_VIEW_FOLDER, *_VIEW_FILTER})

    # ── Listing ────────────────────────────────────────────────────────────────

    def _endpoint(self, view: str) -> str:
        folder = _VIEW_FOLDER.get(view)
        return f"{_API}/mailFolders/{folder}/messages" if folder else f"{_API}/messages"

    def _conditions(self, view: str, window: TimeWindow | None) -> list[str]:
        conditions = [_VIEW_FILTER[view]] if view in _VIEW_FILTER else []
        if window is not None:
            if window.after is not None:
                conditions.append(f"receivedDateTime ge {_graph_time(window.after)}")
            if window.before is not None:
                conditions.append(f"receivedDateTime lt {_graph_time(window.before)}")
        return conditions

    def _search_or_filter(self, spec: FilterSpec, window: TimeWindow | None) -> dict[str, str]:
        """Graph can't combine $search with $filter; free-text search wins."""
        if spec.query.strip():
            return {"$search": f'"{spec.query.strip()}"'}
        conditions = self._conditions(spec.view.lower(), window)
        return {"$filter": " and ".join(conditions)} if conditions else {}

    async def _fetch(self, spec: FilterSpec, window: TimeWindow | None) -> FetchResult:
        view = spec.view.lower()
        params: dict[str, Any] = {"$top": spec.max_results, "$select": _SELECT}
        params.update(self._search_or_filter(spec, window))
        if spec.page_token:
            params["$skiptoken"] = spec.page_token

        response = await self._request("GET", self._endpoint(view), params=params, action="list messages")
        data = response.json()
        items = data.get("value") or []
        if "$search" in params:
            # The view and window were dropped from the query; apply them here.
            items = [item for item in items if _in_view(view, item)]
        messages = [_format(item) for item in items]
        if "$search" in params and window is not None:
            messages = [m for m in messages if window.contains(m.date)]

        next_link = data.get("@odata.nextLink")
        next_token = httpx.URL(next_link).params.get("$skiptoken") if next_link else None
        return FetchResult(messages=messages, next_page_token=next_token)

    async def _count(self, spec: FilterSpec, window: TimeWindow | None) -> int:
        view = spec.view.lower()
        if spec.query.strip() and (view in _VIEW_FILTER or window is not None):
            # $count can't honour the dropped conditions, so count client-side.
            return await super()._count(spec, window)
        params: dict[str, Any] = {"$count": "true", "$top": 1, "$select": "id"}
        params.update(self._search_or_filter(spec, window))
        response = await self._request(
            "GET",
            self._endpoint(view),
            params=params,
            headers={"ConsistencyLevel": "eventual"},
            action="count messages",
        )
        return int(response.json().get("@odata.count", 0))

    # ── Single message ─────────────────────────────────────────────────────────

    async def get(self, message_id: str) -> Message:
        response = await self._request(
            "GET", f"{_API}/messages/{message_id}", params={"$select": _SELECT}, action="read message"
        )
        return _format(response.json())

    async def list_attachments(self, message_id: str) -> list[AttachmentInfo]:
        response = await self._request(
            "GET",
            f"{_API}/messages/{message_id}/attachments",
            params={"$select": "id,name,contentType,size"},
            action="list attachments",
        )
        return [
            AttachmentInfo(
                id=item["id"],
                filename=item.get("name") or "attachment",
                mime_type=item.get("contentType") or "application/octet-stream",
                size=int(item.get("size") or 0),
            )
            for item in response.json().get("value") or []
        ]

    async def get_attachment(self, message_id: str, attachment_id: str) -> Attachment:
        response = await self._request(
            "GET",
            f"{_API}/messages/{message_id}/attachments/{attachment_id}",
            action="download attachment",
        )
        item = response.json()
        if "contentBytes" not in item:
            raise ProviderError(f"Outlook attachment {attachment_id} has no downloadable content")
        return Attachment(
            filename=item.get("name") or "attachment",
            mime_type=item.get("contentType") or "application/octet-stream",
            content=base64.b64decode(item["contentBytes"]),
        )

    # ── Mutations ──────────────────────────────────────────────────────────────

    async def send(
        self, to: str, subject: str, body: str, attachments: Sequence[Attachment] = ()
    ) -> None:
        await self._request(
            "POST",
            f"{_API}/sendMail",
            json={"message": _message_payload(to, subject, body, attachments), "saveToSentItems": True},
            action="send message",
        )
        logger.info("Outlook message sent to %s", to)

    async def reply(
        self, message_id: str, body: str, attachments: Sequence[Attachment] = ()
    ) -> None:
        payload: dict[str, Any] = {"comment": body}
        if attachments:
            payload["message"] = {"attachments": _file_attachments(attachments)}
        await self._request("POST", f"{_API}/messages/{message_id}/reply", json=payload, action="send reply")
        logger.info("Outlook reply sent for message %s", message_id)

    async def trash(self, message_id: str) -> None:
        await self._request(
            "POST",
            f"{_API}/messages/{message_id}/move",
            json={"destinationId": "deleteditems"},
            action="trash message",
        )

    async def mark_read(self, message_id: str, read: bool = True) -> None:
        await self._request(
            "PATCH", f"{_API}/messages/{message_id}", json={"isRead": read}, action="update read state"
        )

    async def draft(
        self, to: str, subject: str, body: str, attachments: Sequence[Attachment] = ()
    ) -> str:
        response = await self._request(
            "POST",
            f"{_API}/messages",
            json=_message_payload(to, subject, body, attachments),
            action="save draft",
        )
        return str(response.json().get("id", ""))
