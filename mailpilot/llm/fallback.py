"""Model Fallback Client: retry one model, then walk an ordered fallback chain."""

from __future__ import annotations

import asyncio
import functools
import logging
from collections.abc import Awaitable, Callable, Iterable, Mapping
from dataclasses import dataclass

from mailpilot.config import Settings
from mailpilot.errors import AllModelsExhausted
from mailpilot.llm.backends import Completion, CompletionRequest, ModelBackend, build_backends
from mailpilot.llm.registry import Backend, ModelRegistry
from mailpilot.llm.retry import exponential_backoff, retry_async

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FallbackResult:
    response: Completion
    model_used: str
    used_fallback: bool

    @property
    def text(self) -> str:
        return self.response.text

    @property
    def token_count(self) -> int | None:
        return self.response.token_count


class ModelFallbackClient:
    """Uniform completion interface over several interchangeable backends.

    Each model in the chain gets ``retry_count`` attempts separated by
    exponential backoff. Ids missing from the registry, or whose backend has
    no API key, are skipped without being attempted.

    Usage::

        client = ModelFallbackClient.from_settings(settings)
        result = await client.invoke("gpt-4o-mini", request, STANDARD_FALLBACK_CHAIN)
    """

    def __init__(
        self,
        registry: ModelRegistry,
        backends: Mapping[Backend, ModelBackend],
        *,
        retry_count: int = 3,
        backoff: Callable[[int], float] | None = None,
        sleep: Callable[[float], Awaitable[object]] = asyncio.sleep,
    ) -> None:
        self._registry = registry
        self._backends = dict(backends)
        self._retry_count = retry_count
        self._backoff = backoff or exponential_backoff(0.5, 4.0)
        self._sleep = sleep

    @classmethod
    def from_settings(cls, settings: Settings, registry: ModelRegistry | None = None) -> ModelFallbackClient:
        return cls(
            registry or ModelRegistry.load(settings.models_file),
            build_backends(settings),
            retry_count=settings.retry_count,
            backoff=exponential_backoff(settings.retry_base_delay, settings.retry_max_delay),
        )

    @property
    def registry(self) -> ModelRegistry:
        return self._registry

    async def invoke(
        self,
        primary_id: str,
        request: CompletionRequest,
        fallback_ids: Iterable[str] = (),
    ) -> FallbackResult:
        """Return the first successful completion along the chain.

        ``used_fallback`` is True whenever the answering model isn't
        ``primary_id``, including when the primary was skipped as unknown.

        Raises:
            AllModelsExhausted: every model failed or was skipped.
        """
        chain = [primary_id, *(m for m in dict.fromkeys(fallback_ids) if m != primary_id)]
        tried: list[str] = []
        last_error: Exception | None = None

        for model_id in chain:
            descriptor = self._registry.get(model_id)
            if descriptor is None:
                logger.warning("Model %r is not in the registry; skipping", model_id)
                continue
            backend = self._backends.get(descriptor.backend)
            if backend is None:
                logger.warning("No %s backend configured for model %s; skipping", descriptor.backend.value, model_id)
                continue

            tried.append(model_id)
            try:
                completion = await retry_async(
                    functools.partial(backend.complete, model_id, request),
                    attempts=self._retry_count,
                    backoff=self._backoff,
                    sleep=self._sleep,
                )
            except Exception as exc:  # noqa: BLE001
                logger.warning("Model %s failed after %d attempts: %s", model_id, self._retry_count, exc)
                last_error = exc
                continue

            used_fallback = model_id != primary_id
            if used_fallback:
                logger.info("Answered by fallback model %s (primary %s)", model_id, primary_id)
            return FallbackResult(response=completion, model_used=model_id, used_fallback=used_fallback)

        logger.error("All models exhausted (tried: %s)", ", ".join(tried) or "none")
        raise AllModelsExhausted(tried, last_error) from last_error
