"""Runtime settings, read from the environment (``.env`` is loaded by entry points)."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    return float(raw) if raw else default


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    return int(raw) if raw else default


@dataclass(frozen=True)
class OAuthClient:
    """Client id/secret pair used to refresh a provider's access tokens."""

    client_id: str = ""
    client_secret: str = ""


@dataclass(frozen=True)
class Settings:
    db_path: Path = Path("data/mailpilot.db")
    http_timeout: float = 30.0
    models_file: Path | None = None

    retry_count: int = 3
    retry_base_delay: float = 0.5
    retry_max_delay: float = 4.0

    importance_ttl: float = 7200.0
    importance_cache_size: int = 10_000
    max_history: int = 5  # user/assistant exchanges kept per session
    fetch_concurrency: int = 10
    fetch_limit: int = 50
    refresh_margin: float = 60.0

    google: OAuthClient = OAuthClient()
    microsoft: OAuthClient = OAuthClient()
    yahoo: OAuthClient = OAuthClient()

    groq_api_key: str = ""
    openai_api_key: str = ""
    anthropic_api_key: str = ""

    @classmethod
    def from_env(cls) -> Settings:
        """Build Settings from environment variables, falling back to defaults."""
        models_file = os.environ.get("MAILPILOT_MODELS_FILE")
        return cls(
            db_path=Path(os.environ.get("MAILPILOT_DB_PATH", "data/mailpilot.db")),
            http_timeout=_env_float("MAILPILOT_HTTP_TIMEOUT", 30.0),
            models_file=Path(models_file) if models_file else None,
            retry_count=_env_int("MAILPILOT_RETRY_COUNT", 3),
            retry_base_delay=_env_float("MAILPILOT_RETRY_BASE_DELAY", 0.5),
            retry_max_delay=_env_float("MAILPILOT_RETRY_MAX_DELAY", 4.0),
            importance_ttl=_env_float("MAILPILOT_IMPORTANCE_TTL", 7200.0),
            importance_cache_size=_env_int("MAILPILOT_IMPORTANCE_CACHE_SIZE", 10_000),
            max_history=_env_int("MAILPILOT_MAX_HISTORY", 5),
            fetch_concurrency=_env_int("MAILPILOT_FETCH_CONCURRENCY", 10),
            fetch_limit=_env_int("MAILPILOT_FETCH_LIMIT", 50),
            google=OAuthClient(
                os.environ.get("GOOGLE_CLIENT_ID", ""),
                os.environ.get("GOOGLE_CLIENT_SECRET", ""),
            ),
            microsoft=OAuthClient(
                os.environ.get("MICROSOFT_CLIENT_ID", ""),
                os.environ.get("MICROSOFT_CLIENT_SECRET", ""),
            ),
            yahoo=OAuthClient(
                os.environ.get("YAHOO_CLIENT_ID", ""),
                os.environ.get("YAHOO_CLIENT_SECRET", ""),
            ),
            groq_api_key=os.environ.get("GROQ_API_KEY", ""),
            openai_api_key=os.environ.get("OPENAI_API_KEY", ""),
            anthropic_api_key=os.environ.get("ANTHROPIC_API_KEY", ""),
        )
