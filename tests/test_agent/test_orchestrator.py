"""Tests for ConversationOrchestrator — real SQLite drafts, mocked provider, scripted models."""

import json
from datetime import datetime, timezone
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest

from mailpilot.agent.orchestrator import (
    CLARIFICATION,
    NO_DRAFT,
    PROMPT_TOKEN_LIMIT,
    ConversationOrchestrator,
    ConversationState,
    MailboxSummary,
    estimate_tokens,
)
from mailpilot.errors import (
    AccountNotFound,
    AllModelsExhausted,
    InvalidFilter,
    InvalidTimeRange,
    MissingParameter,
    TransientProviderError,
)
from mailpilot.llm.backends import Completion, CompletionRequest
from mailpilot.llm.fallback import ModelFallbackClient
from mailpilot.llm.registry import Backend, ModelRegistry
from mailpilot.processing.classifier import ScoredMessage
from mailpilot.providers.types import Account, Credential, FetchResult, FilterSpec, Message, ProviderType
from mailpilot.storage.db import AssistantDatabase
from mailpilot.storage.models import PendingDraft
from mailpilot.storage.session import Turn

ACCOUNT = Account(
    user_id="alice",
    email="alice@example.com",
    provider=ProviderType.GOOGLE,
    credential=Credential("token", "refresh", 0.0),
    name="Alice",
    important_keywords=("invoice",),
)
CLOCK = datetime(2026, 3, 10, 9, 0, tzinfo=timezone.utc)


# ── Helpers ────────────────────────────────────────────────────────────────────


class _ScriptedBackend:
    """Returns queued replies in order; raises once the script runs out."""

    def __init__(self, *replies: str) -> None:
        self.replies = list(replies)
        self.requests: list[CompletionRequest] = []

    async def complete(self, model_id: str, request: CompletionRequest) -> Completion:
        self.requests.append(request)
        if not self.replies:
            raise RuntimeError("model unavailable")
        return Completion(text=self.replies.pop(0), token_count=5)


def _reply(**fields: object) -> str:
    return json.dumps(fields)


def _message(id: str, subject: str = "Status") -> Message:
    return Message(id=id, subject=subject, sender="bob@example.com", date=CLOCK, snippet="hi", body="hello")


def _provider() -> MagicMock:
    provider = MagicMock()
    provider.account = ACCOUNT
    provider.fetch = AsyncMock(return_value=FetchResult([_message("id-1"), _message("id-2")]))
    provider.count = AsyncMock(return_value=7)
    provider.get = AsyncMock(return_value=_message("id-2"))
    provider.send = AsyncMock()
    provider.draft = AsyncMock(return_value="d-1")
    return provider


class _Harness:
    def __init__(self, tmp_path: Path) -> None:
        self.db = AssistantDatabase(tmp_path / "orchestrator.db")
        self.db.upsert_account(ACCOUNT)
        self.backend = _ScriptedBackend()
        self.provider = _provider()
        self.classifier = MagicMock()
        self.classifier.rank = AsyncMock(return_value=[])
        providers = MagicMock()
        providers.for_account.return_value = self.provider
        models = ModelFallbackClient(
            ModelRegistry.builtin(),
            {Backend.GROQ: self.backend, Backend.OPENAI: self.backend},
            retry_count=1,
            sleep=AsyncMock(),
        )
        self.orchestrator = ConversationOrchestrator(
            providers=providers,
            accounts=self.db,
            drafts=self.db,
            models=models,
            classifier=self.classifier,
            max_history=4,
            clock=lambda: CLOCK,
        )

    def script(self, *replies: str) -> None:
        self.backend.replies.extend(replies)


@pytest.fixture
def h(tmp_path: Path) -> _Harness:
    harness = _Harness(tmp_path)
    yield harness
    harness.db.close()


SEND_ACTION = _reply(
    action="send-email",
    params={"recipient_id": "bob@example.com", "subject": "Lunch", "message": "Lunch on Friday?"},
)


# ── Model path ─────────────────────────────────────────────────────────────────


class TestModelPath:
    async def test_count_emails_action(self, h: _Harness) -> None:
        h.script(_reply(action="count-emails", params={"filter": "unread"}))
        reply = await h.orchestrator.chat("alice", "how many unread emails do I have?")
        assert "7" in reply.text
        assert reply.model_used == "gpt-4o-mini"
        assert reply.used_fallback is False
        assert reply.data == {"count": 7, "filter": "unread"}
        h.provider.count.assert_awaited_once()

    async def test_system_prompt_is_personalised(self, h: _Harness) -> None:
        h.script(_reply(chat="Hi!"))
        await h.orchestrator.chat(
            "alice", "hello", mailbox_summary=MailboxSummary(time_context="It is morning.", total=40, unread=6)
        )
        request = h.backend.requests[0]
        system = request.messages[0]["content"]
        assert "Alice (alice@example.com)" in system
        assert "40 recent emails, 6 of them unread" in system
        assert request.json_mode is True
        assert request.messages[-1] == {"role": "user", "content": "hello"}

    async def test_chat_reply_passes_through(self, h: _Harness) -> None:
        h.script(_reply(chat="Happy to help."))
        reply = await h.orchestrator.chat("alice", "thanks")
        assert reply.text == "Happy to help."
        assert reply.token_count == 5

    async def test_structured_data_rendered_as_table(self, h: _Harness) -> None:
        h.script(_reply(message="Your top senders:", data={"table": [{"Sender": "Bob", "Emails": 4}]}))
        reply = await h.orchestrator.chat("alice", "who emails me most?")
        assert reply.text.startswith("Your top senders:")
        assert "| Sender | Emails |" in reply.text
        assert reply.data == {"table": [{"Sender": "Bob", "Emails": 4}]}

    async def test_unrecognised_reply_asks_to_rephrase(self, h: _Harness) -> None:
        h.script("I am not JSON at all")
        reply = await h.orchestrator.chat("alice", "blorp")
        assert reply.text == CLARIFICATION

    async def test_unknown_tool_asks_to_rephrase(self, h: _Harness) -> None:
        h.script(_reply(action="launch-rockets", params={}))
        reply = await h.orchestrator.chat("alice", "launch")
        assert reply.text == CLARIFICATION

    async def test_missing_parameter_is_reported(self, h: _Harness) -> None:
        h.script(_reply(action="read-email", params={}))
        reply = await h.orchestrator.chat("alice", "read it")
        assert "email_id" in reply.text
        h.provider.get.assert_not_awaited()

    async def test_wordy_max_results_still_lists(self, h: _Harness) -> None:
        h.script(_reply(action="fetch-emails", params={"maxResults": "ten"}))
        reply = await h.orchestrator.chat("alice", "show me ten emails")
        assert "**ID:** id-2" in reply.text
        assert h.provider.fetch.await_args.args[0].max_results == 50

    async def test_invalid_filter_is_reported(self, h: _Harness) -> None:
        h.provider.count.side_effect = InvalidFilter("spam", "Gmail")
        h.script(_reply(action="count-emails", params={"filter": "spam"}))
        reply = await h.orchestrator.chat("alice", "count spam")
        assert "spam" in reply.text

    async def test_fallback_notice_when_primary_fails(self, h: _Harness) -> None:
        async def flaky(model_id: str, request: CompletionRequest) -> Completion:
            if model_id == "gpt-4o-mini":
                raise RuntimeError("primary down")
            return Completion(text=_reply(chat="Hello from the backup."))

        h.backend.complete = flaky  # type: ignore[method-assign]
        reply = await h.orchestrator.chat("alice", "hi")

        assert reply.used_fallback is True
        assert reply.model_used == "llama-3.3-70b-versatile"
        assert "Hello from the backup." in reply.text
        assert "unavailable" in reply.text

    async def test_all_models_down_raises(self, h: _Harness) -> None:
        with pytest.raises(AllModelsExhausted):
            await h.orchestrator.chat("alice", "hi")

    async def test_unknown_user(self, h: _Harness) -> None:
        with pytest.raises(AccountNotFound):
            await h.orchestrator.chat("mallory", "hi")


# ── History and references ─────────────────────────────────────────────────────


class TestHistoryAndReferences:
    async def test_positional_reference_uses_last_listing(self, h: _Harness) -> None:
        h.script(_reply(action="fetch-emails", params={}), _reply(action="read-email", params={"email_id": "id-2"}))
        await h.orchestrator.chat("alice", "show my emails")
        await h.orchestrator.chat("alice", "read email 2")
        assert h.backend.requests[1].messages[-1]["content"] == "read email id-2"

    async def test_history_is_bounded_by_exchanges(self, h: _Harness) -> None:
        for i in range(6):
            h.script(_reply(chat=f"reply {i}"))
            await h.orchestrator.chat("alice", f"message {i}")
        history = h.backend.requests[-1].messages[1:-1]
        assert len(history) == 8
        assert history[0] == {"role": "user", "content": "message 1"}
        assert history[-1] == {"role": "assistant", "content": "reply 4"}

    async def test_trimmed_history_never_opens_on_a_reply(self, h: _Harness) -> None:
        turns = []
        for i in range(4):
            turns += [{"role": "user", "content": f"q{i}"}, {"role": "assistant", "content": f"a{i}"}]
        turns.append({"role": "user", "content": "q4"})
        h.script(_reply(chat="ok"))
        await h.orchestrator.chat("alice", "next", history=turns)
        history = h.backend.requests[0].messages[1:-1]
        assert len(history) == 7
        assert history[0] == {"role": "user", "content": "q1"}

    async def test_oldest_history_dropped_to_fit_prompt(self, h: _Harness) -> None:
        turns = [
            {"role": "user", "content": "a" * 20_000},
            {"role": "assistant", "content": "noted"},
            {"role": "user", "content": "b" * 4_000},
        ]
        h.script(_reply(chat="ok"))
        await h.orchestrator.chat("alice", "what did I just say?", history=turns)
        messages = h.backend.requests[0].messages
        assert [m["content"] for m in messages[1:]] == ["noted", "b" * 4_000, "what did I just say?"]

    async def test_oversized_message_is_truncated(self, h: _Harness) -> None:
        h.script(_reply(chat="ok"))
        await h.orchestrator.chat("alice", "x" * 40_000)
        messages = h.backend.requests[0].messages
        assert messages[-1]["content"].endswith("... (message truncated due to length)")
        assert sum(estimate_tokens(m["content"]) for m in messages) <= PROMPT_TOKEN_LIMIT

    async def test_caller_history_replaces_stored_history(self, h: _Harness) -> None:
        h.script(_reply(chat="one"), _reply(chat="two"))
        await h.orchestrator.chat("alice", "first")
        await h.orchestrator.chat("alice", "second", history=[{"role": "user", "content": "earlier"}])
        messages = h.backend.requests[-1].messages
        assert messages[1:-1] == [{"role": "user", "content": "earlier"}]

    async def test_history_accepts_turn_objects(self, h: _Harness) -> None:
        h.script(_reply(chat="ok"))
        await h.orchestrator.chat("alice", "hi", history=[Turn("assistant", "previous answer")])
        assert h.backend.requests[0].messages[1] == {"role": "assistant", "content": "previous answer"}


# ── Draft → confirm → send ─────────────────────────────────────────────────────


class TestDraftLifecycle:
    async def test_send_action_only_creates_draft(self, h: _Harness) -> None:
        h.script(SEND_ACTION)
        reply = await h.orchestrator.chat("alice", "email bob about lunch on friday")

        h.provider.send.assert_not_awaited()
        assert "confirm send" in reply.text
        assert await h.orchestrator.state("alice") is ConversationState.DRAFT_PENDING
        assert await h.orchestrator.pending_draft("alice") == PendingDraft("bob@example.com", "Lunch", "Lunch on Friday?")
        assert len(h.db.recent_drafts("alice")) == 1

    async def test_confirm_sends_once_and_clears_draft(self, h: _Harness) -> None:
        h.script(SEND_ACTION)
        await h.orchestrator.chat("alice", "email bob about lunch")
        calls_before = len(h.backend.requests)

        reply = await h.orchestrator.chat("alice", "confirm send")

        h.provider.send.assert_awaited_once_with("bob@example.com", "Lunch", "Lunch on Friday?")
        assert "bob@example.com" in reply.text
        assert len(h.backend.requests) == calls_before
        assert h.db.recent_drafts("alice") == []
        assert await h.orchestrator.state("alice") is ConversationState.IDLE

    async def test_confirm_without_draft(self, h: _Harness) -> None:
        reply = await h.orchestrator.chat("alice", "confirm send")
        assert reply.text == NO_DRAFT
        h.provider.send.assert_not_awaited()
        assert h.backend.requests == []

    async def test_bare_yes_without_draft_goes_to_model(self, h: _Harness) -> None:
        h.script(_reply(chat="What should I say yes to?"))
        reply = await h.orchestrator.chat("alice", "yes")
        assert reply.text == "What should I say yes to?"
        h.provider.send.assert_not_awaited()

    async def test_send_failure_keeps_draft(self, h: _Harness) -> None:
        h.script(SEND_ACTION)
        await h.orchestrator.chat("alice", "email bob")
        h.provider.send.side_effect = TransientProviderError("Gmail send failed (HTTP 503)")

        with pytest.raises(TransientProviderError):
            await h.orchestrator.chat("alice", "yes send it")

        assert await h.orchestrator.state("alice") is ConversationState.DRAFT_PENDING
        assert len(h.db.recent_drafts("alice")) == 1

    async def test_amendment_updates_draft_without_sending(self, h: _Harness) -> None:
        h.script(SEND_ACTION, "To: bob@example.com\nSubject: Dinner\n\nDinner on Friday?")
        await h.orchestrator.chat("alice", "email bob about lunch")

        reply = await h.orchestrator.chat("alice", "change the subject to dinner")

        expected = PendingDraft("bob@example.com", "Dinner", "Dinner on Friday?")
        h.provider.send.assert_not_awaited()
        assert "Dinner on Friday?" in reply.text
        assert await h.orchestrator.pending_draft("alice") == expected
        assert h.db.recent_drafts("alice")[0].as_pending() == expected
        assert "Subject: Lunch" in h.backend.requests[-1].messages[0]["content"]

    async def test_amendment_failure_leaves_draft_unchanged(self, h: _Harness) -> None:
        h.script(SEND_ACTION)
        await h.orchestrator.chat("alice", "email bob about lunch")

        reply = await h.orchestrator.chat("alice", "edit the body please")

        assert "unchanged" in reply.text
        assert await h.orchestrator.pending_draft("alice") == PendingDraft("bob@example.com", "Lunch", "Lunch on Friday?")

    async def test_unrelated_turn_leaves_draft_untouched(self, h: _Harness) -> None:
        h.script(SEND_ACTION, _reply(chat="Nothing from the accountant yet."))
        await h.orchestrator.chat("alice", "email bob about lunch")

        reply = await h.orchestrator.chat("alice", "any update from the accountant this week?")

        staged = PendingDraft("bob@example.com", "Lunch", "Lunch on Friday?")
        assert reply.text == "Nothing from the accountant yet."
        h.provider.send.assert_not_awaited()
        assert await h.orchestrator.pending_draft("alice") == staged
        assert h.db.recent_drafts("alice")[0].as_pending() == staged
        assert await h.orchestrator.state("alice") is ConversationState.DRAFT_PENDING

    async def test_edit_without_live_draft_goes_to_model(self, h: _Harness) -> None:
        h.db.create_draft("alice", PendingDraft("old@example.com", "Stored", "body"))
        h.script(_reply(chat="Which email do you mean?"))

        reply = await h.orchestrator.chat("alice", "change the subject to dinner")

        assert reply.text == "Which email do you mean?"
        assert h.db.recent_drafts("alice")[0].subject == "Stored"

    async def test_stored_drafts_survive_a_new_session(self, h: _Harness) -> None:
        h.db.create_draft("alice", PendingDraft("old@example.com", "Older", "first"))
        h.db.create_draft("alice", PendingDraft("new@example.com", "Newer", "second"))

        choices = await h.orchestrator.chat("alice", "confirm")
        assert "send draft 1" in choices.text and "send draft 2" in choices.text
        h.provider.send.assert_not_awaited()

        await h.orchestrator.chat("alice", "send draft 2")
        h.provider.send.assert_awaited_once_with("old@example.com", "Older", "first")
        assert h.db.recent_drafts("alice") == []

    async def test_single_stored_draft_is_sent(self, h: _Harness) -> None:
        h.db.create_draft("alice", PendingDraft("old@example.com", "Only", "body"))
        await h.orchestrator.chat("alice", "ok send it")
        h.provider.send.assert_awaited_once_with("old@example.com", "Only", "body")

    async def test_draft_number_out_of_range(self, h: _Harness) -> None:
        h.db.create_draft("alice", PendingDraft("old@example.com", "Only", "body"))
        reply = await h.orchestrator.chat("alice", "send draft 5")
        assert "couldn't find draft 5" in reply.text
        h.provider.send.assert_not_awaited()

    async def test_draft_email_tool_stages_draft(self, h: _Harness) -> None:
        h.script(
            _reply(action="draft-email", params={"recipient": "bob@example.com", "content": "lunch?"}),
            "Subject: Lunch\n\nHi Bob, lunch?",
        )
        await h.orchestrator.chat("alice", "write to bob about lunch")
        assert await h.orchestrator.pending_draft("alice") == PendingDraft("bob@example.com", "Lunch", "Hi Bob, lunch?")
        h.provider.send.assert_not_awaited()


# ── Important mail ─────────────────────────────────────────────────────────────


class TestImportant:
    async def test_fetch_important_merges_account_keywords(self, h: _Harness) -> None:
        scored = [ScoredMessage(_message("id-1"), 90, True, "llama-3.3-70b-versatile")]
        h.classifier.rank.return_value = scored

        result = await h.orchestrator.fetch_important("alice", ["contract"], "daily")

        assert result.messages == scored
        assert h.provider.fetch.await_args.args[0] == FilterSpec(time_range="daily", max_results=50)
        kwargs = h.classifier.rank.await_args.kwargs
        assert kwargs["extra_keywords"] == ["contract"]
        assert kwargs["account_keywords"] == ("invoice",)
        assert result.to_dict()["messages"][0]["importanceScore"] == 90

    async def test_invalid_range_before_any_fetch(self, h: _Harness) -> None:
        with pytest.raises(InvalidTimeRange):
            await h.orchestrator.fetch_important("alice", time_range="yearly")
        h.provider.fetch.assert_not_awaited()

    async def test_important_shortcut_uses_summary(self, h: _Harness) -> None:
        summary = MailboxSummary(
            important_count=1,
            top_important=(ScoredMessage(_message("id-1", "Invoice overdue"), 88, True),),
        )
        reply = await h.orchestrator.chat("alice", "anything urgent?", mailbox_summary=summary)
        assert "Invoice overdue" in reply.text
        assert "88%" in reply.text
        assert h.backend.requests == []

    async def test_important_shortcut_with_nothing_found(self, h: _Harness) -> None:
        reply = await h.orchestrator.chat("alice", "what's important?", mailbox_summary=MailboxSummary())
        assert "didn't find any important emails" in reply.text

    async def test_mailbox_summary(self, h: _Harness) -> None:
        summary = await h.orchestrator.mailbox_summary("alice")
        assert (summary.total, summary.unread, summary.important_count) == (7, 7, 0)
        assert summary.time_context.startswith("It is morning")


# ── Direct tool calls ──────────────────────────────────────────────────────────


class TestCallTool:
    async def test_call_tool_runs_directly(self, h: _Harness) -> None:
        result = await h.orchestrator.call_tool("alice", "count-emails", {"filter": "unread"})
        assert result.data == {"count": 7, "filter": "unread"}
        assert h.backend.requests == []

    async def test_call_tool_send_email_only_stages_draft(self, h: _Harness) -> None:
        params = {"recipient_id": "bob@example.com", "subject": "Lunch", "message": "Lunch on Friday?"}
        result = await h.orchestrator.call_tool("alice", "send-email", params)

        h.provider.send.assert_not_awaited()
        assert "confirm send" in result.text
        assert await h.orchestrator.state("alice") is ConversationState.DRAFT_PENDING

        await h.orchestrator.chat("alice", "confirm send")
        h.provider.send.assert_awaited_once_with("bob@example.com", "Lunch", "Lunch on Friday?")

    async def test_call_tool_send_email_requires_fields(self, h: _Harness) -> None:
        with pytest.raises(MissingParameter):
            await h.orchestrator.call_tool("alice", "send-email", {"recipient_id": "bob@example.com"})
        assert h.db.recent_drafts("alice") == []

    async def test_call_tool_listing_feeds_references(self, h: _Harness) -> None:
        await h.orchestrator.call_tool("alice", "fetch-emails", {})
        h.script(_reply(chat="ok"))
        await h.orchestrator.chat("alice", "summarize the first email")
        assert h.backend.requests[0].messages[-1]["content"] == "summarize email id-1"
