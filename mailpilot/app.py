"""Assistant: wires settings, storage, providers and models into one orchestrator."""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import httpx

from mailpilot.agent.orchestrator import ConversationOrchestrator
from mailpilot.agent.tools import ToolBox
from mailpilot.config import Settings
from mailpilot.llm.fallback import ModelFallbackClient
from mailpilot.processing.classifier import ImportanceClassifier
from mailpilot.providers.factory import ProviderFactory
from mailpilot.storage.db import AssistantDatabase

logger = logging.getLogger(__name__)


class Assistant:
    """Holds the long-lived pieces the CLI and MCP server share.

    The database and HTTP client are exposed as public attributes so commands
    can manage accounts directly without building a second instance.

    Usage::

        async with Assistant.open(Settings.from_env()) as assistant:
            reply = await assistant.orchestrator.chat("user-1", "any unread mail?")
    """

    def __init__(
        self,
        settings: Settings,
        db: AssistantDatabase,
        http: httpx.AsyncClient,
        models: ModelFallbackClient,
    ) -> None:
        self.settings = settings
        self.db = db
        self.http = http
        self.models = models
        self.providers = ProviderFactory(http=http, accounts=db, settings=settings)
        self.classifier = ImportanceClassifier(
            models, ttl=settings.importance_ttl, cache_size=settings.importance_cache_size
        )
        self.orchestrator = ConversationOrchestrator(
            providers=self.providers,
            accounts=db,
            drafts=db,
            models=models,
            classifier=self.classifier,
            tools=ToolBox(models, fetch_limit=settings.fetch_limit),
            max_history=settings.max_history,
            fetch_limit=settings.fetch_limit,
        )

    @classmethod
    @asynccontextmanager
    async def open(cls, settings: Settings | None = None) -> AsyncIterator[Assistant]:
        settings = settings or Settings.from_env()
        db = AssistantDatabase(settings.db_path)
        http = httpx.AsyncClient(timeout=settings.http_timeout)
        try:
            models = ModelFallbackClient.from_settings(settings)
            logger.info("Assistant ready (db=%s, default model=%s)", settings.db_path, models.registry.default.id)
            yield cls(settings, db, http, models)
        finally:
            await http.aclose()
            db.close()
