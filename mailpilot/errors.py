"""Error taxonomy shared by the provider, model and conversation layers.

Every error carries a stable ``kind`` string so callers (CLI, MCP server)
can branch on it without importing the concrete class.
"""

from __future__ import annotations


class MailPilotError(Exception):
    """Base class for all errors raised by mailpilot."""

    kind = "error"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


# ── Caller input errors ────────────────────────────────────────────────────────


class InvalidFilter(MailPilotError):
    """The requested mailbox view is not supported by the provider."""

    kind = "invalid_filter"

    def __init__(self, filter_name: str, provider: str) -> None:
        super().__init__(f"Unsupported filter {filter_name!r} for {provider}")
        self.filter_name = filter_name
        self.provider = provider


class InvalidTimeRange(MailPilotError):
    """The requested time window is not one of the supported values."""

    kind = "invalid_time_range"

    def __init__(self, time_range: str) -> None:
        super().__init__(f"Invalid time range: {time_range!r}")
        self.time_range = time_range


class MissingParameter(MailPilotError):
    """A tool was called without one of its required parameters."""

    kind = "missing_parameter"

    def __init__(self, tool: str, parameter: str) -> None:
        super().__init__(f"Missing required parameter {parameter!r} for {tool}")
        self.tool = tool
        self.parameter = parameter


class UnknownTool(MailPilotError):
    kind = "unknown_tool"

    def __init__(self, name: str) -> None:
        super().__init__(f"Unknown tool: {name!r}")
        self.name = name


class AccountNotFound(MailPilotError):
    kind = "account_not_found"

    def __init__(self, user_id: str) -> None:
        super().__init__(f"No mailbox account for user {user_id!r}")
        self.user_id = user_id


# ── Provider errors ────────────────────────────────────────────────────────────


class ReauthRequired(MailPilotError):
    """The stored grant is invalid or revoked; the user must sign in again.

    Never retried automatically.
    """

    kind = "reauth_required"

    def __init__(self, provider: str, message: str | None = None) -> None:
        super().__init__(message or f"{provider} credential is no longer valid. Please re-authenticate.")
        self.provider = provider


class TransientProviderError(MailPilotError):
    """Network failure, timeout, rate limit or 5xx; safe for the caller to retry."""

    kind = "transient_provider_error"


class ProviderError(MailPilotError):
    """A non-retryable error response from a mail provider API."""

    kind = "provider_error"

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


# ── Model errors ───────────────────────────────────────────────────────────────


class AllModelsExhausted(MailPilotError):
    """Every model in the fallback chain failed or was unavailable."""

    kind = "all_models_exhausted"

    def __init__(self, tried: list[str], last_error: BaseException | None = None) -> None:
        detail = f": {last_error}" if last_error is not None else ""
        super().__init__(f"All models in the fallback chain failed ({', '.join(tried) or 'none available'}){detail}")
        self.tried = tried
        self.last_error = last_error
