"""Conversation Orchestrator: one user turn in, one assistant reply out.

Per user the orchestrator is either Idle or DraftPending. Mail is only ever
sent from a confirmation turn against an existing draft; a model-chosen
``send-email`` action becomes a draft for review instead.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Callable, Iterable, Sequence
from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from mailpilot.agent.drafts import Confirmation, detect_confirmation, is_amendment, parse_amended_draft
from mailpilot.agent.formatting import display_name, draft_choices, draft_review, important_listing, markdown_table
from mailpilot.agent.intents import ActionIntent, ChatIntent, StructuredDataIntent, Unrecognized, decode_intent
from mailpilot.agent.references import resolve_positional
from mailpilot.agent.tools import ToolBox, ToolContext, ToolResult
from mailpilot.errors import (
    AllModelsExhausted,
    InvalidFilter,
    InvalidTimeRange,
    MissingParameter,
    UnknownTool,
)
from mailpilot.llm.backends import CompletionRequest
from mailpilot.llm.fallback import FallbackResult, ModelFallbackClient
from mailpilot.llm.registry import STANDARD_FALLBACK_CHAIN
from mailpilot.processing.classifier import ImportanceClassifier, ScoredMessage
from mailpilot.processing.prompts import (
    SYSTEM_PROMPT_TEMPLATE,
    build_amend_messages,
    render_system_prompt,
    time_context,
)
from mailpilot.providers.factory import ProviderFactory
from mailpilot.providers.types import Account, FilterSpec
from mailpilot.providers.windows import ROLLING_WINDOWS
from mailpilot.storage.models import AccountStore, DraftStore, PendingDraft
from mailpilot.storage.session import InMemorySessionStore, Session, SessionStore, Turn

logger = logging.getLogger(__name__)

CLARIFICATION = "I'm not quite sure what you mean. Could you rephrase that?"
NO_DRAFT = "There's no draft ready to send yet. Want to start one?"
DATA_FOLLOW_UP = "Anything here you want to dive into?"

_IMPORTANT_TRIGGERS = re.compile(r"\b(important|priority|urgent)\b", re.IGNORECASE)
_SEND_WORDS = re.compile(r"\b(send|sent|confirm|confirmed)\b", re.IGNORECASE)

#: Ceiling on estimated prompt tokens, kept under the smallest hosted context windows.
PROMPT_TOKEN_LIMIT = 5500
_PROMPT_OVERHEAD = 100
_REPLY_TOKENS = 1024
_CHARS_PER_TOKEN = 4


class ConversationState(str, Enum):
    IDLE = "idle"
    DRAFT_PENDING = "draft_pending"


@dataclass(frozen=True)
class MailboxSummary:
    """Caller-supplied mailbox context used to personalise the system prompt."""

    time_context: str = ""
    total: int = 0
    unread: int = 0
    important_count: int = 0
    top_important: tuple[ScoredMessage, ...] = ()


@dataclass(frozen=True)
class ChatResponse:
    text: str
    model_used: str | None = None
    used_fallback: bool = False
    token_count: int | None = None
    data: Any = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "text": self.text,
            "modelUsed": self.model_used,
            "usedFallback": self.used_fallback,
            "tokenCount": self.token_count,
            "data": self.data,
        }


@dataclass(frozen=True)
class ImportantEmails:
    messages: list[ScoredMessage] = field(default_factory=list)
    next_page_token: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "messages": [m.to_dict() for m in self.messages],
            "nextPageToken": self.next_page_token,
        }


def estimate_tokens(text: str) -> int:
    """Rough token count: one token per four characters."""
    return -(-len(text) // _CHARS_PER_TOKEN)


def _turns(history: Iterable[Turn | dict[str, str]]) -> list[Turn]:
    return [t if isinstance(t, Turn) else Turn(role=t["role"], content=t["content"]) for t in history]


class ConversationOrchestrator:
    """Turns a natural-language turn into mailbox operations.

    Usage::

        orchestrator = ConversationOrchestrator(
            providers=factory, accounts=db, drafts=db, models=models, classifier=classifier,
        )
        reply = await orchestrator.chat("user-1", "how many unread emails do I have?")
    """

    def __init__(
        self,
        *,
        providers: ProviderFactory,
        accounts: AccountStore,
        drafts: DraftStore,
        models: ModelFallbackClient,
        classifier: ImportanceClassifier,
        sessions: SessionStore | None = None,
        tools: ToolBox | None = None,
        max_history: int = 5,
        fetch_limit: int = 50,
        fallback_chain: Sequence[str] = STANDARD_FALLBACK_CHAIN,
        system_template: str = SYSTEM_PROMPT_TEMPLATE,
        clock: Callable[[], datetime] = lambda: datetime.now().astimezone(),
    ) -> None:
        self._providers = providers
        self._accounts = accounts
        self._drafts = drafts
        self._models = models
        self._classifier = classifier
        self._sessions = sessions or InMemorySessionStore()
        self._tools = tools or ToolBox(models, fetch_limit=fetch_limit, fallback_chain=fallback_chain)
        self._max_history = max_history
        self._fetch_limit = fetch_limit
        self._chain = tuple(fallback_chain)
        self._template = system_template
        self._clock = clock

    # ── Public API ─────────────────────────────────────────────────────────────

    async def chat(
        self,
        user_id: str,
        text: str,
        history: Iterable[Turn | dict[str, str]] | None = None,
        mailbox_summary: MailboxSummary | None = None,
        model_id: str | None = None,
    ) -> ChatResponse:
        """Handle one conversational turn.

        ``history``, when given, replaces the stored history for this turn.

        Raises:
            AccountNotFound: the user has no connected mailbox.
            AllModelsExhausted: no model could interpret the turn.
            ReauthRequired, TransientProviderError, ProviderError: mailbox failures.
        """
        async with self._sessions.lock(user_id):
            session = await self._sessions.load(user_id)
            if history is not None:
                session.history = _turns(history)
            account = self._accounts.get_account(user_id)
            primary = model_id or self._models.registry.default.id

            response = await self._handle_turn(account, session, text, mailbox_summary, primary)

            session.history = self._bounded([*session.history, Turn("user", text), Turn("assistant", response.text)])
            await self._sessions.save(user_id, session)
            return response

    async def fetch_important(
        self,
        user_id: str,
        keywords: Iterable[str] | None = None,
        time_range: str = "weekly",
    ) -> ImportantEmails:
        """Fetch recent mail and return only the important messages, best first.

        Raises:
            InvalidTimeRange: time_range isn't daily, weekly or monthly.
        """
        if time_range not in ROLLING_WINDOWS:
            raise InvalidTimeRange(time_range)
        account = self._accounts.get_account(user_id)
        provider = self._providers.for_account(account)
        result = await provider.fetch(FilterSpec(time_range=time_range, max_results=self._fetch_limit))
        ranked = await self._classifier.rank(
            result.messages,
            extra_keywords=list(keywords or ()),
            time_range=time_range,
            account_keywords=account.important_keywords,
        )
        return ImportantEmails(messages=ranked, next_page_token=result.next_page_token)

    async def mailbox_summary(self, user_id: str, time_range: str = "weekly") -> MailboxSummary:
        """Build the context chat() personalises its prompt with."""
        account = self._accounts.get_account(user_id)
        provider = self._providers.for_account(account)
        total = await provider.count(FilterSpec(time_range=time_range))
        unread = await provider.count(FilterSpec(view="unread", time_range=time_range))
        important = await self.fetch_important(user_id, time_range=time_range)
        return MailboxSummary(
            time_context=time_context(self._clock()),
            total=total,
            unread=unread,
            important_count=len(important.messages),
            top_important=tuple(important.messages[:5]),
        )

    async def call_tool(
        self,
        user_id: str,
        name: str,
        params: dict[str, Any] | None = None,
        model_id: str | None = None,
    ) -> ToolResult:
        """Run one tool directly, outside the conversational flow.

        ``send-email`` only stages a draft; a confirming chat turn sends it.

        Raises:
            UnknownTool, MissingParameter: bad tool name or parameters.
        """
        async with self._sessions.lock(user_id):
            session = await self._sessions.load(user_id)
            account = self._accounts.get_account(user_id)
            if name == "send-email":
                draft = _draft_from_params(params or {})
                self._stage_draft(user_id, session, draft)
                await self._sessions.save(user_id, session)
                intro = f"Here's the draft for **{draft.recipient}**:"
                return ToolResult(text=draft_review(draft, intro), data={"draft": asdict(draft)}, draft=draft)
            ctx = ToolContext(
                user_id=user_id,
                provider=self._providers.for_account(account),
                model_id=model_id or self._models.registry.default.id,
                pending_draft=session.draft,
            )
            result = await self._tools.call(name, params, ctx)
            self._absorb(user_id, session, result)
            await self._sessions.save(user_id, session)
            return result

    async def state(self, user_id: str) -> ConversationState:
        session = await self._sessions.load(user_id)
        if session.draft is not None or self._drafts.recent_drafts(user_id, limit=1):
            return ConversationState.DRAFT_PENDING
        return ConversationState.IDLE

    async def pending_draft(self, user_id: str) -> PendingDraft | None:
        return (await self._sessions.load(user_id)).draft

    # ── Turn handling ──────────────────────────────────────────────────────────

    async def _handle_turn(
        self,
        account: Account,
        session: Session,
        text: str,
        summary: MailboxSummary | None,
        primary: str,
    ) -> ChatResponse:
        user_id = account.user_id
        durable = self._drafts.recent_drafts(user_id)
        has_draft = session.draft is not None or bool(durable)

        confirmation = detect_confirmation(text)
        if confirmation is not None:
            if has_draft:
                return await self._confirm(account, session, confirmation)
            if confirmation.draft_number is not None or _SEND_WORDS.search(text):
                return ChatResponse(text=NO_DRAFT)

        if session.draft is not None and is_amendment(text):
            return await self._amend(user_id, session, session.draft, text, primary)

        if summary is not None and _IMPORTANT_TRIGGERS.search(text):
            return self._important_shortcut(account, summary)

        return await self._interpret(account, session, text, summary, primary)

    async def _confirm(self, account: Account, session: Session, confirmation: Confirmation) -> ChatResponse:
        user_id = account.user_id
        durable = self._drafts.recent_drafts(user_id)
        number = confirmation.draft_number

        if number is not None:
            if not 1 <= number <= len(durable):
                return ChatResponse(text=f"I couldn't find draft {number}. You have {len(durable)} saved draft(s).")
            target = durable[number - 1].as_pending()
        elif session.draft is not None:
            target = session.draft
        elif len(durable) == 1:
            target = durable[0].as_pending()
        else:
            return ChatResponse(text=draft_choices(durable[:5]))

        provider = self._providers.for_account(account)
        await provider.send(target.recipient, target.subject, target.body)
        removed = self._drafts.delete_drafts(user_id)
        session.draft = None
        logger.info("Sent confirmed draft for user %s (%d stored drafts cleared)", user_id, removed)
        return ChatResponse(
            text=f"Done! Your email to **{target.recipient}** has been sent.",
            data={"sent": {"to": target.recipient, "subject": target.subject}},
        )

    async def _amend(
        self, user_id: str, session: Session, current: PendingDraft, instruction: str, primary: str
    ) -> ChatResponse:
        request = CompletionRequest(messages=build_amend_messages(current.render(), instruction), max_tokens=1024)
        try:
            result = await self._models.invoke(primary, request, self._chain)
        except AllModelsExhausted as exc:
            logger.warning("Could not amend draft for user %s: %s", user_id, exc)
            return ChatResponse(text="Sorry, I couldn't update the draft right now. It's unchanged, so please try again.")

        updated = parse_amended_draft(result.text, current)
        session.draft = updated
        if not self._drafts.update_latest_draft(user_id, updated):
            self._drafts.create_draft(user_id, updated)
        logger.info("Amended draft for user %s", user_id)
        return self._reply(
            draft_review(updated, f"I've updated the email draft for **{updated.recipient}**:"),
            result,
        )

    def _important_shortcut(self, account: Account, summary: MailboxSummary) -> ChatResponse:
        name = account.name or account.email
        if summary.important_count > 0 and summary.top_important:
            text = important_listing(name, summary.top_important, summary.important_count)
            return ChatResponse(text=text, data={"important": [m.to_dict() for m in summary.top_important]})
        return ChatResponse(text=f"Hi {name}, I didn't find any important emails right now. Anything else I can help with?")

    async def _interpret(
        self,
        account: Account,
        session: Session,
        text: str,
        summary: MailboxSummary | None,
        primary: str,
    ) -> ChatResponse:
        request = CompletionRequest(
            messages=self._build_messages(account, session, text, summary, primary),
            temperature=0.7,
            max_tokens=_REPLY_TOKENS,
            json_mode=True,
        )
        result = await self._models.invoke(primary, request, self._chain)
        intent = decode_intent(result.text)

        if isinstance(intent, ActionIntent):
            return await self._dispatch(account, session, intent, result, primary)
        if isinstance(intent, StructuredDataIntent):
            rows = intent.data.get("table")
            table = markdown_table(rows) if isinstance(rows, list) and all(isinstance(r, dict) for r in rows) else ""
            body = "\n\n".join(part for part in (intent.message, table, DATA_FOLLOW_UP) if part)
            return self._reply(self._with_fallback_notice(body, result, primary), result, data=intent.data)
        if isinstance(intent, ChatIntent):
            return self._reply(self._with_fallback_notice(intent.text, result, primary), result)
        reason = intent.reason if isinstance(intent, Unrecognized) else type(intent).__name__
        logger.warning("Unrecognised model reply for user %s (%s)", account.user_id, reason)
        return self._reply(CLARIFICATION, result)

    async def _dispatch(
        self,
        account: Account,
        session: Session,
        intent: ActionIntent,
        result: FallbackResult,
        primary: str,
    ) -> ChatResponse:
        if intent.action == "send-email":
            # Never send on the model's say-so: stage it for confirmation.
            try:
                draft = _draft_from_params(intent.params)
            except MissingParameter as exc:
                return self._reply(exc.message, result)
            self._stage_draft(account.user_id, session, draft)
            intro = f"I've put together an email for **{display_name(draft.recipient).split('@')[0]}**:"
            return self._reply(draft_review(draft, intro), result, data={"draft": asdict(draft)})

        ctx = ToolContext(
            user_id=account.user_id,
            provider=self._providers.for_account(account),
            model_id=primary,
            pending_draft=session.draft,
        )
        try:
            tool_result = await self._tools.call(intent.action, intent.params, ctx)
        except (MissingParameter, InvalidFilter, InvalidTimeRange) as exc:
            return self._reply(exc.message, result)
        except UnknownTool:
            logger.warning("Model asked for unknown tool %r", intent.action)
            return self._reply(CLARIFICATION, result)

        self._absorb(account.user_id, session, tool_result)
        return self._reply(tool_result.text, result, data=tool_result.data)

    # ── Helpers ────────────────────────────────────────────────────────────────

    def _build_messages(
        self, account: Account, session: Session, text: str, summary: MailboxSummary | None, primary: str
    ) -> list[dict[str, str]]:
        summary = summary or MailboxSummary()
        system = render_system_prompt(
            self._template,
            {
                "USER_NAME": account.name or account.email,
                "USER_EMAIL": account.email,
                "TIME_CONTEXT": summary.time_context or time_context(self._clock()),
                "EMAIL_COUNT": str(summary.total),
                "UNREAD_COUNT": str(summary.unread),
            },
        )
        context: list[dict[str, str]] = []
        if summary.top_important:
            lines = "\n".join(
                f"From: {s.message.sender}, Subject: {s.message.subject}, Score: {s.score}"
                for s in summary.top_important
            )
            context.append({"role": "assistant", "content": f"I have found the following important emails:\n{lines}"})
        user_text = resolve_positional(text, session.last_listed)

        # Fit the prompt: drop the oldest history first, then cut the user turn.
        budget = self._prompt_budget(primary)
        fixed = estimate_tokens(system) + sum(estimate_tokens(m["content"]) for m in context) + _PROMPT_OVERHEAD
        history = self._bounded(session.history)
        history_tokens = sum(estimate_tokens(t.content) for t in history)
        while history and fixed + history_tokens + estimate_tokens(user_text) > budget:
            history_tokens -= estimate_tokens(history.pop(0).content)
        if fixed + history_tokens + estimate_tokens(user_text) > budget:
            room = max(budget - fixed - history_tokens, 0) * _CHARS_PER_TOKEN
            user_text = f"{user_text[:room]}... (message truncated due to length)"
            logger.info("Truncated user message for %s to fit the prompt budget", account.user_id)

        messages = [{"role": "system", "content": system}]
        messages += [{"role": t.role, "content": t.content} for t in history]
        messages += context
        messages.append({"role": "user", "content": user_text})
        return messages

    def _prompt_budget(self, primary: str) -> int:
        """Prompt tokens allowed for the smallest model this turn might reach."""
        registry = self._models.registry
        windows = [d.context_window for d in map(registry.get, (primary, *self._chain)) if d is not None]
        smallest = min(windows, default=registry.default.context_window)
        return min(PROMPT_TOKEN_LIMIT, smallest - _REPLY_TOKENS)

    def _bounded(self, history: Sequence[Turn]) -> list[Turn]:
        """The last ``max_history`` exchanges, never opening on an orphaned reply."""
        limit = 2 * self._max_history
        if len(history) <= limit:
            return list(history)
        kept = list(history[-limit:])
        if kept[0].role == "assistant":
            kept = kept[1:]
        return kept

    def _stage_draft(self, user_id: str, session: Session, draft: PendingDraft) -> None:
        session.draft = draft
        self._drafts.create_draft(user_id, draft)
        logger.info("Stored pending draft for user %s", user_id)

    def _absorb(self, user_id: str, session: Session, result: ToolResult) -> None:
        if result.listed is not None:
            session.last_listed = list(result.listed)
        if result.draft is not None:
            self._stage_draft(user_id, session, result.draft)

    @staticmethod
    def _with_fallback_notice(text: str, result: FallbackResult, primary: str) -> str:
        if not result.used_fallback:
            return text
        return f"_Note: {primary} was unavailable, so {result.model_used} answered instead._\n\n{text}"

    @staticmethod
    def _reply(text: str, result: FallbackResult, data: Any = None) -> ChatResponse:
        return ChatResponse(
            text=text,
            model_used=result.model_used,
            used_fallback=result.used_fallback,
            token_count=result.token_count,
            data=data,
        )


def _draft_from_params(params: dict[str, Any]) -> PendingDraft:
    values = {}
    for key in ("recipient_id", "subject", "message"):
        value = params.get(key)
        if value is None or not str(value).strip():
            raise MissingParameter("send-email", key)
        values[key] = str(value).strip()
    return PendingDraft(recipient=values["recipient_id"], subject=values["subject"], body=values["message"])
