"""Decodes the model's JSON reply into exactly one intent variant."""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Union

logger = logging.getLogger(__name__)

_FENCE = re.compile(r"^```(?:json)?\s*|\s*```$", re.IGNORECASE)
_JSON_OBJECT = re.compile(r"\{[\s\S]*\}")


@dataclass(frozen=True)
class ActionIntent:
    """Run the named tool with the given parameters."""

    action: str
    params: dict[str, Any] = field(default_factory=dict)
    message: str | None = None


@dataclass(frozen=True)
class StructuredDataIntent:
    """Show ``data`` (usually a ``table`` list of rows) under an intro message."""

    message: str
    data: dict[str, Any]


@dataclass(frozen=True)
class ChatIntent:
    text: str


@dataclass(frozen=True)
class Unrecognized:
    raw: str
    reason: str


Intent = Union[ActionIntent, StructuredDataIntent, ChatIntent, Unrecognized]


def _load_object(raw: str) -> dict[str, Any] | None:
    text = _FENCE.sub("", raw.strip())
    try:
        data = json.loads(text)
    except ValueError:
        match = _JSON_OBJECT.search(text)
        if not match:
            return None
        try:
            data = json.loads(match.group(0))
        except ValueError:
            return None
    return data if isinstance(data, dict) else None


def decode_intent(raw: str) -> Intent:
    """Classify a model reply. Never raises: anything unusable is Unrecognized.

    Precedence: ``action`` → ``message`` with ``data`` → ``chat`` →
    a lone ``message`` (treated as chat).
    """
    data = _load_object(raw or "")
    if data is None:
        logger.warning("Model reply is not a JSON object")
        return Unrecognized(raw=raw, reason="not a JSON object")

    action = data.get("action")
    if isinstance(action, str) and action.strip():
        params = data.get("params")
        if params is None:
            params = {}
        if not isinstance(params, dict):
            return Unrecognized(raw=raw, reason="params is not an object")
        message = data.get("message")
        return ActionIntent(action=action.strip(), params=params, message=message if isinstance(message, str) else None)

    message = data.get("message")
    payload = data.get("data")
    if isinstance(message, str) and isinstance(payload, dict):
        return StructuredDataIntent(message=message, data=payload)

    chat = data.get("chat")
    if isinstance(chat, str) and chat.strip():
        return ChatIntent(text=chat)
    if isinstance(message, str) and message.strip():
        return ChatIntent(text=message)

    logger.warning("Model reply has no action, data or chat field: keys=%s", sorted(data))
    return Unrecognized(raw=raw, reason="unknown shape")
