"""Importance Classifier: keyword pre-filter plus cached model scoring."""

from __future__ import annotations

import asyncio
import json
import logging
import re
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from datetime import datetime

from cachetools import TTLCache

from mailpilot.errors import AllModelsExhausted, InvalidTimeRange
from mailpilot.llm.backends import CompletionRequest
from mailpilot.llm.fallback import ModelFallbackClient
from mailpilot.processing.prompts import build_importance_messages
from mailpilot.providers.types import Message
from mailpilot.providers.windows import ROLLING_WINDOWS, resolve_window

logger = logging.getLogger(__name__)

_PRIMARY_MODEL = "llama-3.3-70b-versatile"
_FALLBACK_MODELS = ("llama-3.1-8b-instant", "gpt-4o-mini")
_DEFAULT_TTL = 2 * 60 * 60
_DEFAULT_CACHE_SIZE = 10_000

_JSON_OBJECT = re.compile(r"\{[\s\S]*\}")


@dataclass(frozen=True)
class ImportanceScore:
    score: int
    is_important: bool
    model_used: str | None = None
    used_fallback: bool = False


#: Returned when the model's answer can't be used; never blocks the caller.
DEGRADED_SCORE = ImportanceScore(score=25, is_important=False)
#: Assigned without a model call to messages matching no keyword.
NOT_IMPORTANT = ImportanceScore(score=0, is_important=False)


@dataclass(frozen=True)
class ScoredMessage:
    message: Message
    score: int
    is_important: bool
    model_used: str | None = None
    used_fallback: bool = False

    def to_dict(self) -> dict:
        return {
            **self.message.to_dict(),
            "importanceScore": self.score,
            "isImportant": self.is_important,
            "modelUsed": self.model_used,
            "fallbackUsed": self.used_fallback,
        }


def matches_keywords(message: Message, keywords: Iterable[str]) -> bool:
    """Case-insensitive containment over subject, snippet and body."""
    content = f"{message.subject} {message.snippet} {message.body}".lower()
    return any(k.lower() in content for k in keywords)


def parse_score(text: str) -> tuple[int, bool] | None:
    """Pull ``{"score", "isImportant"}`` out of a model reply; None if unusable."""
    match = _JSON_OBJECT.search(text or "")
    if not match:
        return None
    try:
        data = json.loads(match.group(0))
        score = int(round(float(data["score"])))
    except (ValueError, TypeError, KeyError):
        return None
    flag = data.get("isImportant", False)
    is_important = flag if isinstance(flag, bool) else str(flag).strip().lower() == "true"
    return max(0, min(100, score)), is_important


class ImportanceClassifier:
    """Ranks recent messages by importance, scoring each one at most once per TTL.

    Scores are cached per (message id, time range) and are immutable while
    cached. Scoring failures degrade to a fixed low score instead of raising.

    Usage::

        classifier = ImportanceClassifier(models)
        ranked = await classifier.rank(messages, ["invoice"], "weekly")
    """

    def __init__(
        self,
        models: ModelFallbackClient,
        cache: TTLCache[tuple[str, str], ImportanceScore] | None = None,
        *,
        ttl: float = _DEFAULT_TTL,
        cache_size: int = _DEFAULT_CACHE_SIZE,
        primary_model: str = _PRIMARY_MODEL,
        fallback_models: Sequence[str] = _FALLBACK_MODELS,
    ) -> None:
        self._models = models
        self._cache = cache if cache is not None else TTLCache(maxsize=cache_size, ttl=ttl)
        self._primary = primary_model
        self._fallbacks = tuple(fallback_models)

    async def rank(
        self,
        messages: Iterable[Message],
        extra_keywords: Iterable[str] = (),
        time_range: str = "weekly",
        account_keywords: Iterable[str] = (),
        now: datetime | None = None,
    ) -> list[ScoredMessage]:
        """Return the important messages inside the window, highest score first.

        Raises:
            InvalidTimeRange: time_range isn't daily, weekly or monthly.
        """
        if time_range not in ROLLING_WINDOWS:
            raise InvalidTimeRange(time_range)
        window = resolve_window(time_range, now)
        if window is None:
            raise InvalidTimeRange(time_range)
        recent = [m for m in messages if window.contains(m.date)]

        keywords = list(dict.fromkeys(k.strip() for k in (*account_keywords, *extra_keywords) if k.strip()))

        scores: dict[str, ImportanceScore] = {}
        pending: dict[str, Message] = {}
        for message in recent:
            if message.id in scores or message.id in pending:
                continue
            key = (message.id, time_range)
            if not matches_keywords(message, keywords):
                self._remember(key, NOT_IMPORTANT)
                scores[message.id] = NOT_IMPORTANT
                continue
            cached = self._cache.get(key)
            if cached is not None:
                scores[message.id] = cached
            else:
                pending[message.id] = message

        if pending:
            logger.info("Scoring %d keyword-matching messages (%s)", len(pending), time_range)
            results = await asyncio.gather(*(self._score(m, keywords) for m in pending.values()))
            # Commit only once every score is in, so a cancelled call caches nothing.
            for message_id, score in zip(pending, results):
                self._remember((message_id, time_range), score)
                scores[message_id] = score

        ranked = [
            ScoredMessage(
                message=m,
                score=scores[m.id].score,
                is_important=scores[m.id].is_important,
                model_used=scores[m.id].model_used,
                used_fallback=scores[m.id].used_fallback,
            )
            for m in {m.id: m for m in recent}.values()
            if scores[m.id].is_important
        ]
        ranked.sort(key=lambda s: s.score, reverse=True)
        return ranked

    def _remember(self, key: tuple[str, str], score: ImportanceScore) -> None:
        # Write-once: a live score is never replaced before it expires.
        if key not in self._cache:
            self._cache[key] = score

    async def _score(self, message: Message, keywords: list[str]) -> ImportanceScore:
        request = CompletionRequest(
            messages=build_importance_messages(message, keywords),
            temperature=0.2,
            max_tokens=100,
            json_mode=True,
        )
        try:
            result = await self._models.invoke(self._primary, request, self._fallbacks)
        except AllModelsExhausted as exc:
            logger.warning("Importance scoring unavailable for %s: %s", message.id, exc)
            return DEGRADED_SCORE

        parsed = parse_score(result.text)
        if parsed is None:
            logger.warning("Unparseable importance score for %s from %s", message.id, result.model_used)
            return ImportanceScore(25, False, result.model_used, result.used_fallback)
        score, is_important = parsed
        return ImportanceScore(score, is_important, result.model_used, result.used_fallback)
