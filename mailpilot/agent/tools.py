"""Named mailbox tools the orchestrator dispatches model-chosen actions to.

Every tool validates its required parameters before touching the provider
and returns a ToolResult: reply text, optional JSON-able data, and the
side information the orchestrator keeps between turns.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import asdict, dataclass
from datetime import date
from typing import Any

from mailpilot.agent.drafts import parse_composed_draft
from mailpilot.agent.formatting import (
    count_sentence,
    draft_review,
    email_detail,
    email_listing,
    email_table,
)
from mailpilot.agent.references import resolve_relative_dates
from mailpilot.errors import AllModelsExhausted, MissingParameter, ProviderError, UnknownTool
from mailpilot.llm.backends import CompletionRequest
from mailpilot.llm.fallback import ModelFallbackClient
from mailpilot.llm.registry import STANDARD_FALLBACK_CHAIN
from mailpilot.processing.prompts import build_compose_messages, build_summary_messages
from mailpilot.providers.base import MailProvider
from mailpilot.providers.types import FilterSpec, Message
from mailpilot.storage.models import PendingDraft

logger = logging.getLogger(__name__)

# Listing replies show at most this many messages
_PREVIEW_LIMIT = 10


@dataclass(frozen=True)
class ToolContext:
    user_id: str
    provider: MailProvider
    model_id: str
    pending_draft: PendingDraft | None = None


@dataclass(frozen=True)
class ToolResult:
    text: str
    data: Any = None
    #: Messages shown to the user, in display order, for "email N" references
    listed: Sequence[Message] | None = None
    #: A draft the tool composed; the orchestrator makes it the pending draft
    draft: PendingDraft | None = None


ToolHandler = Callable[[ToolContext, dict[str, Any]], Awaitable[ToolResult]]

#: Required parameters per tool, checked before the handler runs.
REQUIRED_PARAMS: dict[str, tuple[str, ...]] = {
    "fetch-emails": (),
    "count-emails": (),
    "read-email": ("email_id",),
    "trash-email": ("email_id",),
    "reply-to-email": ("email_id", "message"),
    "search-emails": ("query",),
    "mark-email-as-read": ("email_id",),
    "summarize-email": ("email_id",),
    "draft-email": ("recipient", "content"),
    "send-email": ("recipient_id", "subject", "message"),
    "list-attachments": ("email_id",),
    "save-draft": (),
}


def _blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def _as_bool(value: Any, default: bool = True) -> bool:
    if value is None:
        return default
    if isinstance(value, str):
        return value.strip().lower() not in {"false", "0", "no"}
    return bool(value)


def _as_limit(value: Any, default: int) -> int:
    """A page size from model-supplied text; anything unusable means the default."""
    try:
        limit = int(value)
    except (TypeError, ValueError):
        return default
    return min(limit, default) if limit > 0 else default


class ToolBox:
    """Dispatches tool calls by name.

    Usage::

        tools = ToolBox(models)
        result = await tools.call("count-emails", {"filter": "unread"}, ctx)
    """

    def __init__(
        self,
        models: ModelFallbackClient,
        *,
        fetch_limit: int = 50,
        fallback_chain: Sequence[str] = STANDARD_FALLBACK_CHAIN,
        today: Callable[[], date] = date.today,
    ) -> None:
        self._models = models
        self._fetch_limit = fetch_limit
        self._chain = tuple(fallback_chain)
        self._today = today
        self._handlers: dict[str, ToolHandler] = {
            "fetch-emails": self._fetch_emails,
            "count-emails": self._count_emails,
            "read-email": self._read_email,
            "trash-email": self._trash_email,
            "reply-to-email": self._reply_to_email,
            "search-emails": self._search_emails,
            "mark-email-as-read": self._mark_email_as_read,
            "summarize-email": self._summarize_email,
            "draft-email": self._draft_email,
            "send-email": self._send_email,
            "list-attachments": self._list_attachments,
            "save-draft": self._save_draft,
        }

    @property
    def names(self) -> list[str]:
        return list(self._handlers)

    async def call(self, name: str, params: dict[str, Any] | None, ctx: ToolContext) -> ToolResult:
        """Run one tool.

        Raises:
            UnknownTool: no tool has this name.
            MissingParameter: a required parameter is absent or blank.
        """
        handler = self._handlers.get(name)
        if handler is None:
            raise UnknownTool(name)
        params = dict(params or {})
        for parameter in REQUIRED_PARAMS[name]:
            if _blank(params.get(parameter)):
                raise MissingParameter(name, parameter)
        logger.info("Running tool %s for user %s", name, ctx.user_id)
        return await handler(ctx, params)

    # ── Listing ────────────────────────────────────────────────────────────────

    async def _fetch_emails(self, ctx: ToolContext, params: dict[str, Any]) -> ToolResult:
        query = resolve_relative_dates(str(params.get("query") or ""), self._today())
        spec = FilterSpec(
            view=str(params.get("filter") or "all"),
            query=query,
            time_range=params.get("timeRange") or params.get("time_range"),
            max_results=_as_limit(params.get("maxResults"), self._fetch_limit),
            page_token=params.get("pageToken"),
        )
        result = await ctx.provider.fetch(spec)
        return self._listing_result(result.messages, result.to_dict(), "No emails match that. Try different keywords or a wider date range.")

    async def _search_emails(self, ctx: ToolContext, params: dict[str, Any]) -> ToolResult:
        query = resolve_relative_dates(str(params["query"]), self._today())
        result = await ctx.provider.fetch(FilterSpec(query=query, max_results=self._fetch_limit))
        if not result.messages:
            return ToolResult(text=f'Nothing found for "**{params["query"]}**".', data=result.to_dict(), listed=[])
        preview = result.messages[:_PREVIEW_LIMIT]
        text = f'Here\'s what I found for "**{params["query"]}**":\n\n{email_table(preview)}'
        return ToolResult(text=text, data=result.to_dict(), listed=preview)

    def _listing_result(self, messages: Sequence[Message], data: Any, empty_text: str) -> ToolResult:
        if not messages:
            return ToolResult(text=empty_text, data=data, listed=[])
        preview = list(messages[:_PREVIEW_LIMIT])
        text = (
            f"Found **{len(messages)} emails**. Here are the latest **{len(preview)}**:\n\n"
            f"{email_listing(preview)}\n\nWant me to summarize any of these?"
        )
        return ToolResult(text=text, data=data, listed=preview)

    async def _count_emails(self, ctx: ToolContext, params: dict[str, Any]) -> ToolResult:
        view = str(params.get("filter") or "all")
        query = resolve_relative_dates(str(params.get("query") or ""), self._today())
        count = await ctx.provider.count(
            FilterSpec(view=view, query=query, time_range=params.get("timeRange") or params.get("time_range"))
        )
        return ToolResult(text=count_sentence(count, view, query), data={"count": count, "filter": view})

    # ── Single message ─────────────────────────────────────────────────────────

    async def _read_email(self, ctx: ToolContext, params: dict[str, Any]) -> ToolResult:
        message = await ctx.provider.get(str(params["email_id"]))
        return ToolResult(text=f"Here's that email:\n\n{email_detail(message)}", data=message.to_dict())

    async def _trash_email(self, ctx: ToolContext, params: dict[str, Any]) -> ToolResult:
        email_id = str(params["email_id"])
        try:
            await ctx.provider.trash(email_id)
        except ProviderError as exc:
            if exc.status_code == 404:
                return ToolResult(text="That email seems to be missing. Maybe it was already deleted or the ID is wrong.")
            raise
        return ToolResult(text="Moved that email to the trash.", data={"trashed": email_id})

    async def _reply_to_email(self, ctx: ToolContext, params: dict[str, Any]) -> ToolResult:
        email_id = str(params["email_id"])
        await ctx.provider.reply(email_id, str(params["message"]))
        return ToolResult(text="Your reply is on its way!", data={"repliedTo": email_id})

    async def _mark_email_as_read(self, ctx: ToolContext, params: dict[str, Any]) -> ToolResult:
        email_id = str(params["email_id"])
        read = _as_bool(params.get("read"))
        await ctx.provider.mark_read(email_id, read)
        state = "read" if read else "unread"
        return ToolResult(text=f"Marked that email as **{state}**.", data={"id": email_id, "isRead": read})

    async def _summarize_email(self, ctx: ToolContext, params: dict[str, Any]) -> ToolResult:
        message = await ctx.provider.get(str(params["email_id"]))
        body = "\n".join(line for line in message.body.splitlines() if line.strip())
        if not body:
            return ToolResult(text="This email is empty, so there's nothing to summarize.")

        request = CompletionRequest(messages=build_summary_messages(body), temperature=0.5, max_tokens=300)
        try:
            result = await self._models.invoke(ctx.model_id, request, self._chain)
        except AllModelsExhausted as exc:
            logger.warning("Summary unavailable for %s: %s", message.id, exc)
            return ToolResult(text=f"I couldn't summarize it right now. Here's the gist: **{message.snippet or message.subject or 'No details available'}**")

        summary = result.text.strip()
        if not summary:
            return ToolResult(text=f"Snippet: **{message.snippet or message.subject or 'No details available'}**")
        return ToolResult(text=f"Here's the gist: **{summary}**", data={"id": message.id, "summary": summary})

    async def _list_attachments(self, ctx: ToolContext, params: dict[str, Any]) -> ToolResult:
        email_id = str(params["email_id"])
        attachments = await ctx.provider.list_attachments(email_id)
        if not attachments:
            return ToolResult(text="This email has no attachments.", data={"attachments": []})
        lines = [f"{i}. {a.filename} ({a.mime_type}, {a.size} bytes)" for i, a in enumerate(attachments, start=1)]
        data = {"attachments": [{"id": a.id, "filename": a.filename, "mimeType": a.mime_type, "size": a.size} for a in attachments]}
        return ToolResult(text=f"Attachments on email {email_id}:\n" + "\n".join(lines), data=data)

    # ── Drafting and sending ───────────────────────────────────────────────────

    async def _draft_email(self, ctx: ToolContext, params: dict[str, Any]) -> ToolResult:
        recipient = str(params["recipient"])
        address = str(params.get("recipient_email") or recipient)
        content = str(params["content"])
        sender = ctx.provider.account.name or ctx.provider.account.email

        request = CompletionRequest(messages=build_compose_messages(sender, recipient, content), max_tokens=1024)
        try:
            result = await self._models.invoke(ctx.model_id, request, self._chain)
            subject, body = parse_composed_draft(result.text)
        except AllModelsExhausted as exc:
            logger.warning("Draft composition unavailable: %s", exc)
            subject, body = "No subject", content

        draft = PendingDraft(recipient=address, subject=subject, body=body or content)
        intro = f"Here's a draft for **{recipient}**:"
        return ToolResult(text=draft_review(draft, intro), data={"draft": asdict(draft)}, draft=draft)

    async def _send_email(self, ctx: ToolContext, params: dict[str, Any]) -> ToolResult:
        recipient = str(params["recipient_id"])
        await ctx.provider.send(recipient, str(params["subject"]), str(params["message"]))
        return ToolResult(text=f"Done! Your email is on its way to **{recipient}**.", data={"sentTo": recipient})

    async def _save_draft(self, ctx: ToolContext, params: dict[str, Any]) -> ToolResult:
        draft = ctx.pending_draft
        if all(not _blank(params.get(k)) for k in ("recipient_id", "subject", "message")):
            draft = PendingDraft(str(params["recipient_id"]), str(params["subject"]), str(params["message"]))
        if draft is None:
            return ToolResult(text="There's no draft to save yet. Want to start one?")
        draft_id = await ctx.provider.draft(draft.recipient, draft.subject, draft.body)
        return ToolResult(
            text=f"Saved the draft to **{draft.recipient}** in your Drafts folder.",
            data={"draftId": draft_id},
        )
