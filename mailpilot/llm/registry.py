"""Model descriptors and the registry the fallback client resolves ids against."""

from __future__ import annotations

import json
import logging
from collections.abc import Iterable
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

logger = logging.getLogger(__name__)


class Backend(str, Enum):
    """Completion API a model is served from."""

    OPENAI = "openai"
    GROQ = "groq"
    ANTHROPIC = "anthropic"


@dataclass(frozen=True)
class ModelDescriptor:
    id: str
    name: str
    backend: Backend
    context_window: int
    is_default: bool = False
    description: str = ""


BUILTIN_MODELS: tuple[ModelDescriptor, ...] = (
    ModelDescriptor("gpt-4o", "GPT-4o", Backend.OPENAI, 128_000,
                    description="OpenAI's efficient and versatile chat model"),
    ModelDescriptor("gpt-4o-mini", "GPT-4o Mini", Backend.OPENAI, 128_000, is_default=True,
                    description="Smaller, cheaper GPT-4o variant"),
    ModelDescriptor("llama-3.3-70b-versatile", "Llama 3.3 70B Versatile", Backend.GROQ, 128_000,
                    description="Meta's 70B model with versatile capabilities"),
    ModelDescriptor("llama-3.1-8b-instant", "Llama 3.1 8B Instant", Backend.GROQ, 128_000,
                    description="Fast model for quick interactions"),
    ModelDescriptor("gemma2-9b-it", "Gemma 2 9B IT", Backend.GROQ, 8_192,
                    description="Instruction-tuned Gemma 2 9B"),
    ModelDescriptor("llama3-70b-8192", "Llama 3 70B (8K)", Backend.GROQ, 8_192),
    ModelDescriptor("llama3-8b-8192", "Llama 3 8B (8K)", Backend.GROQ, 8_192),
    ModelDescriptor("claude-haiku-4-5-20251001", "Claude Haiku 4.5", Backend.ANTHROPIC, 200_000,
                    description="Anthropic's fast, low-cost model"),
)

#: Fallback order used after the caller's chosen model fails.
STANDARD_FALLBACK_CHAIN: tuple[str, ...] = (
    "llama-3.3-70b-versatile",
    "llama-3.1-8b-instant",
    "gpt-4o",
    "gemma2-9b-it",
    "llama3-70b-8192",
    "gpt-4o-mini",
)


class ModelRegistry:
    """Models keyed by id, with exactly one default.

    Raises:
        ValueError: on construction, if there isn't exactly one default.
    """

    def __init__(self, descriptors: Iterable[ModelDescriptor]) -> None:
        self._models: dict[str, ModelDescriptor] = {d.id: d for d in descriptors}
        defaults = [d for d in self._models.values() if d.is_default]
        if len(defaults) != 1:
            raise ValueError(f"Model registry needs exactly one default model, found {len(defaults)}")
        self._default = defaults[0]

    @classmethod
    def builtin(cls) -> ModelRegistry:
        return cls(BUILTIN_MODELS)

    @classmethod
    def from_file(cls, path: str | Path) -> ModelRegistry:
        """Load descriptors from a JSON list of ``{id, name, backend, contextWindow, isDefault}``."""
        entries = json.loads(Path(path).read_text(encoding="utf-8"))
        descriptors = [
            ModelDescriptor(
                id=entry["id"],
                name=entry.get("name", entry["id"]),
                backend=Backend(entry["backend"]),
                context_window=int(entry.get("contextWindow", 8_192)),
                is_default=bool(entry.get("isDefault", False)),
                description=entry.get("description", ""),
            )
            for entry in entries
        ]
        logger.info("Loaded %d model descriptors from %s", len(descriptors), path)
        return cls(descriptors)

    @classmethod
    def load(cls, path: str | Path | None = None) -> ModelRegistry:
        return cls.from_file(path) if path else cls.builtin()

    @property
    def default(self) -> ModelDescriptor:
        return self._default

    def get(self, model_id: str) -> ModelDescriptor | None:
        return self._models.get(model_id)

    def list(self) -> list[ModelDescriptor]:
        return list(self._models.values())

    def __contains__(self, model_id: object) -> bool:
        return model_id in self._models
