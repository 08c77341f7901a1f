"""Tests for the MCP server handlers — the Assistant is a MagicMock."""

from unittest.mock import AsyncMock, MagicMock

from mailpilot.agent.orchestrator import ChatResponse, ImportantEmails
from mailpilot.agent.tools import ToolResult
from mailpilot.errors import AccountNotFound, AllModelsExhausted, InvalidTimeRange, UnknownTool
from mailpilot.llm.registry import ModelRegistry
from mailpilot.mcp.server import build_server, handle_chat, handle_important, handle_tool


def _assistant() -> MagicMock:
    assistant = MagicMock()
    assistant.orchestrator.chat = AsyncMock(
        return_value=ChatResponse(text="Hi!", model_used="gpt-4o-mini", token_count=12)
    )
    assistant.orchestrator.fetch_important = AsyncMock(return_value=ImportantEmails(next_page_token="p2"))
    assistant.orchestrator.call_tool = AsyncMock(return_value=ToolResult(text="You have **7** emails.", data={"count": 7}))
    assistant.models.registry = ModelRegistry.builtin()
    return assistant


class TestHandlers:
    async def test_chat_returns_camel_case_reply(self) -> None:
        assistant = _assistant()
        result = await handle_chat(assistant, "alice", "hello", "gpt-4o")
        assert result == {
            "text": "Hi!",
            "modelUsed": "gpt-4o-mini",
            "usedFallback": False,
            "tokenCount": 12,
            "data": None,
        }
        assistant.orchestrator.chat.assert_awaited_once_with("alice", "hello", model_id="gpt-4o")

    async def test_chat_errors_become_error_payloads(self) -> None:
        assistant = _assistant()
        assistant.orchestrator.chat.side_effect = AllModelsExhausted(["gpt-4o-mini"], RuntimeError("down"))
        result = await handle_chat(assistant, "alice", "hello")
        assert result["error"] == "all_models_exhausted"

    async def test_important(self) -> None:
        assistant = _assistant()
        result = await handle_important(assistant, "alice", ["invoice"], "daily")
        assert result == {"messages": [], "nextPageToken": "p2"}
        assistant.orchestrator.fetch_important.assert_awaited_once_with("alice", ["invoice"], "daily")

    async def test_important_invalid_range(self) -> None:
        assistant = _assistant()
        assistant.orchestrator.fetch_important.side_effect = InvalidTimeRange("yearly")
        result = await handle_important(assistant, "alice", time_range="yearly")
        assert result["error"] == "invalid_time_range"
        assert "yearly" in result["message"]

    async def test_tool(self) -> None:
        result = await handle_tool(_assistant(), "alice", "count-emails", {"filter": "unread"})
        assert result == {"text": "You have **7** emails.", "data": {"count": 7}}

    async def test_tool_errors(self) -> None:
        assistant = _assistant()
        assistant.orchestrator.call_tool.side_effect = UnknownTool("explode")
        assert (await handle_tool(assistant, "alice", "explode"))["error"] == "unknown_tool"

        assistant.orchestrator.call_tool.side_effect = AccountNotFound("mallory")
        assert (await handle_tool(assistant, "mallory", "count-emails"))["error"] == "account_not_found"


class TestBuildServer:
    async def test_registers_tools(self) -> None:
        server = build_server(_assistant())
        names = {t.name for t in await server.list_tools()}
        assert names == {"chat", "important_emails", "mailbox_tool", "list_models"}
