"""MCP server exposing the assistant to other agents.

Tools:
- chat: one conversational turn (drafts still need a confirming turn)
- important_emails: ranked important mail for a rolling window
- mailbox_tool: any named mailbox tool (fetch-emails, count-emails, ...);
  send-email stages a draft that a confirming chat turn sends
- list_models: the model registry
"""

from __future__ import annotations

import logging
from typing import Any

from mcp.server.fastmcp import FastMCP

from mailpilot.app import Assistant
from mailpilot.errors import MailPilotError

logger = logging.getLogger(__name__)


def _error(exc: MailPilotError) -> dict[str, Any]:
    return {"error": exc.kind, "message": exc.message}


async def handle_chat(
    assistant: Assistant, user_id: str, message: str, model_id: str | None = None
) -> dict[str, Any]:
    try:
        reply = await assistant.orchestrator.chat(user_id, message, model_id=model_id)
    except MailPilotError as exc:
        logger.warning("chat failed for %s: %s", user_id, exc)
        return _error(exc)
    return reply.to_dict()


async def handle_important(
    assistant: Assistant, user_id: str, keywords: list[str] | None = None, time_range: str = "weekly"
) -> dict[str, Any]:
    try:
        result = await assistant.orchestrator.fetch_important(user_id, keywords, time_range)
    except MailPilotError as exc:
        logger.warning("important_emails failed for %s: %s", user_id, exc)
        return _error(exc)
    return result.to_dict()


async def handle_tool(
    assistant: Assistant, user_id: str, name: str, params: dict[str, Any] | None = None
) -> dict[str, Any]:
    try:
        result = await assistant.orchestrator.call_tool(user_id, name, params)
    except MailPilotError as exc:
        logger.warning("tool %s failed for %s: %s", name, user_id, exc)
        return _error(exc)
    return {"text": result.text, "data": result.data}


def build_server(assistant: Assistant) -> FastMCP:
    """Create a FastMCP server whose tools delegate to ``assistant``."""
    mcp = FastMCP("mailpilot")

    @mcp.tool()
    async def chat(user_id: str, message: str, model_id: str | None = None) -> dict[str, Any]:
        """Send one message to the email assistant for a user.

        Returns the reply text, the model that answered and any structured data.
        """
        return await handle_chat(assistant, user_id, message, model_id)

    @mcp.tool()
    async def important_emails(
        user_id: str, keywords: list[str] | None = None, time_range: str = "weekly"
    ) -> dict[str, Any]:
        """Return a user's important emails (daily, weekly or monthly), best first."""
        return await handle_important(assistant, user_id, keywords, time_range)

    @mcp.tool()
    async def mailbox_tool(user_id: str, name: str, params: dict[str, Any] | None = None) -> dict[str, Any]:
        """Run a named mailbox tool such as fetch-emails, count-emails or read-email.

        send-email only stages a draft; confirm it with a chat turn to send.
        """
        return await handle_tool(assistant, user_id, name, params)

    @mcp.tool()
    async def list_models() -> list[dict[str, Any]]:
        """List the models the assistant can route requests to."""
        return [
            {
                "id": m.id,
                "name": m.name,
                "backend": m.backend.value,
                "contextWindow": m.context_window,
                "isDefault": m.is_default,
            }
            for m in assistant.models.registry.list()
        ]

    logger.info("Registered mailpilot MCP tools")
    return mcp
