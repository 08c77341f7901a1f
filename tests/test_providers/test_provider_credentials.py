"""Tests for token refresh, 401 retry and error mapping shared by all adapters.

Gmail is used as the concrete adapter; every HTTP call goes to an
httpx.MockTransport so nothing leaves the process.
"""

import asyncio
import json
from dataclasses import replace
from typing import Callable

import httpx
import pytest

from mailpilot.config import OAuthClient
from mailpilot.errors import ProviderError, ReauthRequired, TransientProviderError
from mailpilot.providers.base import CredentialLocks
from mailpilot.providers.gmail import GmailProvider
from mailpilot.providers.types import Account, Credential, ProviderType

NOW = 1_800_000_000.0
TOKEN_URL = "https://oauth2.googleapis.com/token"


# ── Helpers ────────────────────────────────────────────────────────────────────


class _Accounts:
    """AccountStore that keeps one account in memory and records writes."""

    def __init__(self, account: Account) -> None:
        self.account = account
        self.saved: list[Credential] = []

    def get_account(self, user_id: str) -> Account:
        return self.account

    def save_credential(self, user_id: str, credential: Credential) -> None:
        self.saved.append(credential)
        self.account = replace(self.account, credential=credential)


def _account(expires_at: float, access: str | None = "old-token", refresh: str | None = "refresh-1") -> Account:
    return Account(
        user_id="alice",
        email="alice@example.com",
        provider=ProviderType.GOOGLE,
        credential=Credential(access, refresh, expires_at),
    )


def _provider(
    accounts: _Accounts,
    handler: Callable[[httpx.Request], httpx.Response],
    locks: CredentialLocks | None = None,
) -> GmailProvider:
    return GmailProvider(
        accounts.account,
        http=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
        accounts=accounts,
        oauth=OAuthClient("client-id", "client-secret"),
        locks=locks,
        clock=lambda: NOW,
    )


def _is_token_call(request: httpx.Request) -> bool:
    return str(request.url) == TOKEN_URL


# ── Refresh-before-use ─────────────────────────────────────────────────────────


class TestRefreshBeforeUse:
    async def test_fresh_token_used_without_refresh(self) -> None:
        seen: list[str] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request.headers["Authorization"])
            return httpx.Response(200, json={"id": "d1"})

        accounts = _Accounts(_account(expires_at=NOW + 3600))
        await _provider(accounts, handler).trash("m1")
        assert seen == ["Bearer old-token"]
        assert accounts.saved == []

    async def test_expiring_token_is_refreshed_and_written_back(self) -> None:
        calls: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            if _is_token_call(request):
                return httpx.Response(200, json={"access_token": "new-token", "expires_in": 3600})
            return httpx.Response(200, json={})

        accounts = _Accounts(_account(expires_at=NOW + 30))
        await _provider(accounts, handler).trash("m1")

        assert _is_token_call(calls[0])
        form = dict(httpx.QueryParams(calls[0].content.decode()))
        assert form["grant_type"] == "refresh_token"
        assert form["refresh_token"] == "refresh-1"
        assert calls[1].headers["Authorization"] == "Bearer new-token"
        # The refresh token is kept when the provider doesn't rotate it
        assert accounts.saved == [Credential("new-token", "refresh-1", NOW + 3600)]

    async def test_rotated_refresh_token_is_stored(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            if _is_token_call(request):
                return httpx.Response(
                    200, json={"access_token": "new", "refresh_token": "refresh-2", "expires_in": 60}
                )
            return httpx.Response(200, json={})

        accounts = _Accounts(_account(expires_at=0))
        await _provider(accounts, handler).trash("m1")
        assert accounts.account.credential.refresh_token == "refresh-2"

    async def test_missing_refresh_token_needs_reauth(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise AssertionError("no request should be sent")

        accounts = _Accounts(_account(expires_at=0, refresh=None))
        with pytest.raises(ReauthRequired):
            await _provider(accounts, handler).trash("m1")

    async def test_invalid_grant_needs_reauth(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(400, json={"error": "invalid_grant", "error_description": "Token revoked"})

        accounts = _Accounts(_account(expires_at=0))
        with pytest.raises(ReauthRequired) as exc_info:
            await _provider(accounts, handler).trash("m1")
        assert exc_info.value.kind == "reauth_required"
        assert accounts.saved == []

    async def test_other_refresh_failure_is_transient(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(503, text="unavailable")

        with pytest.raises(TransientProviderError):
            await _provider(_Accounts(_account(expires_at=0)), handler).trash("m1")


# ── Concurrent refresh ─────────────────────────────────────────────────────────


class TestConcurrentRefresh:
    async def test_two_adapters_share_one_refresh(self) -> None:
        token_calls = 0

        async def handler(request: httpx.Request) -> httpx.Response:
            nonlocal token_calls
            if _is_token_call(request):
                token_calls += 1
                await asyncio.sleep(0)
                return httpx.Response(200, json={"access_token": f"new-{token_calls}", "expires_in": 3600})
            return httpx.Response(200, json={})

        accounts = _Accounts(_account(expires_at=0))
        locks = CredentialLocks()
        first = _provider(accounts, handler, locks)
        second = _provider(accounts, handler, locks)

        await asyncio.gather(first.trash("m1"), second.trash("m2"))

        assert token_calls == 1
        assert len(accounts.saved) == 1
        assert first.account.credential.access_token == "new-1"
        assert second.account.credential.access_token == "new-1"


# ── 401 handling and error mapping ─────────────────────────────────────────────


class TestUnauthorizedRetry:
    async def test_401_forces_one_refresh_and_retry(self) -> None:
        api_tokens: list[str] = []

        def handler(request: httpx.Request) -> httpx.Response:
            if _is_token_call(request):
                return httpx.Response(200, json={"access_token": "new-token", "expires_in": 3600})
            api_tokens.append(request.headers["Authorization"])
            if request.headers["Authorization"] == "Bearer old-token":
                return httpx.Response(401, json={"error": {"message": "expired"}})
            return httpx.Response(200, json={})

        accounts = _Accounts(_account(expires_at=NOW + 3600))
        await _provider(accounts, handler).trash("m1")
        assert api_tokens == ["Bearer old-token", "Bearer new-token"]
        assert len(accounts.saved) == 1

    async def test_second_401_needs_reauth(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            if _is_token_call(request):
                return httpx.Response(200, json={"access_token": "new-token", "expires_in": 3600})
            return httpx.Response(401, json={"error": {"message": "nope"}})

        with pytest.raises(ReauthRequired):
            await _provider(_Accounts(_account(expires_at=NOW + 3600)), handler).trash("m1")


class TestErrorMapping:
    @pytest.mark.parametrize("status", [429, 500, 503])
    async def test_throttling_and_server_errors_are_transient(self, status: int) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(status, json={"error": {"message": "slow down"}})

        with pytest.raises(TransientProviderError) as exc_info:
            await _provider(_Accounts(_account(expires_at=NOW + 3600)), handler).trash("m1")
        assert "slow down" in exc_info.value.message

    async def test_not_found_is_provider_error_with_status(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(404, json={"error": {"message": "Requested entity was not found."}})

        with pytest.raises(ProviderError) as exc_info:
            await _provider(_Accounts(_account(expires_at=NOW + 3600)), handler).trash("missing")
        assert exc_info.value.status_code == 404

    async def test_timeout_is_transient(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("timed out", request=request)

        with pytest.raises(TransientProviderError):
            await _provider(_Accounts(_account(expires_at=NOW + 3600)), handler).trash("m1")

    async def test_connection_failure_is_transient(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        with pytest.raises(TransientProviderError):
            await _provider(_Accounts(_account(expires_at=NOW + 3600)), handler).trash("m1")
