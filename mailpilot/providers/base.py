"""Provider adapter contract and the credential/HTTP plumbing every variant shares.

Each concrete adapter (Gmail, Outlook, Yahoo) translates the generic mailbox
operations into one provider's REST calls. The base class owns:

  - refresh-before-use: no request is sent with a token known to expire
    within ``refresh_margin`` seconds
  - per-account refresh serialisation (some providers rotate refresh tokens
    on every use, so two concurrent refreshes would invalidate each other)
  - write-back of the refreshed credential before the call proceeds
  - mapping of HTTP failures onto the error taxonomy
"""

from __future__ import annotations

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from collections.abc import Callable, Iterable, Sequence
from dataclasses import replace
from typing import TYPE_CHECKING, Any, ClassVar

import httpx

from mailpilot.config import OAuthClient
from mailpilot.errors import (
    InvalidFilter,
    ProviderError,
    ReauthRequired,
    TransientProviderError,
)
from mailpilot.providers.types import (
    Account,
    Attachment,
    AttachmentInfo,
    Credential,
    FetchResult,
    FilterSpec,
    Message,
)
from mailpilot.providers.windows import TimeWindow, resolve_window

if TYPE_CHECKING:
    from mailpilot.storage.models import AccountStore

logger = logging.getLogger(__name__)

# Upper bound on messages visited by the generic paging count
_COUNT_CAP = 2000


class CredentialLocks:
    """One asyncio.Lock per account id, shared by every adapter instance.

    Adapters are created per request, so the locks must live outside them
    for refreshes of the same account to serialise.
    """

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}

    def for_account(self, user_id: str) -> asyncio.Lock:
        lock = self._locks.get(user_id)
        if lock is None:
            lock = self._locks[user_id] = asyncio.Lock()
        return lock


class MailProvider(ABC):
    """Capability contract implemented once per mailbox backend."""

    #: Human-readable provider name used in errors and logs
    name: ClassVar[str]
    #: OAuth token endpoint used for refresh_token grants
    token_url: ClassVar[str]
    #: Extra form fields sent with the refresh grant (e.g. scope)
    refresh_extra: ClassVar[dict[str, str]] = {}
    #: Named views accepted by fetch()/count()
    supported_views: ClassVar[frozenset[str]]

    def __init__(
        self,
        account: Account,
        *,
        http: httpx.AsyncClient,
        accounts: AccountStore,
        oauth: OAuthClient,
        locks: CredentialLocks | None = None,
        refresh_margin: float = 60.0,
        fetch_concurrency: int = 10,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._account = account
        self._http = http
        self._accounts = accounts
        self._oauth = oauth
        self._locks = locks or CredentialLocks()
        self._margin = refresh_margin
        self._fetch_concurrency = fetch_concurrency
        self._clock = clock

    @property
    def account(self) -> Account:
        return self._account

    # ── Contract ───────────────────────────────────────────────────────────────

    async def fetch(self, spec: FilterSpec) -> FetchResult:
        """Return one page of messages for the requested view.

        Raises:
            InvalidFilter: the view isn't supported (checked before any I/O).
            InvalidTimeRange: the time window can't be parsed.
        """
        self._check_view(spec.view)
        window = resolve_window(spec.time_range)
        return await self._fetch(spec, window)

    async def count(self, spec: FilterSpec) -> int:
        """Return the number of messages matching the view, query and window."""
        self._check_view(spec.view)
        window = resolve_window(spec.time_range)
        return await self._count(spec, window)

    @abstractmethod
    async def get(self, message_id: str) -> Message:
        """Return a single normalised message with its full body."""

    @abstractmethod
    async def send(
        self, to: str, subject: str, body: str, attachments: Sequence[Attachment] = ()
    ) -> None:
        """Send a new message."""

    @abstractmethod
    async def reply(
        self, message_id: str, body: str, attachments: Sequence[Attachment] = ()
    ) -> None:
        """Reply to an existing message in its thread."""

    @abstractmethod
    async def trash(self, message_id: str) -> None:
        """Move a message to the provider's trash folder."""

    @abstractmethod
    async def mark_read(self, message_id: str, read: bool = True) -> None:
        """Set or clear the read flag."""

    @abstractmethod
    async def draft(
        self, to: str, subject: str, body: str, attachments: Sequence[Attachment] = ()
    ) -> str:
        """Save a message in the Drafts folder and return the provider's draft id."""

    @abstractmethod
    async def list_attachments(self, message_id: str) -> list[AttachmentInfo]:
        """Return attachment metadata for a message."""

    @abstractmethod
    async def get_attachment(self, message_id: str, attachment_id: str) -> Attachment:
        """Download one attachment."""

    @abstractmethod
    async def _fetch(self, spec: FilterSpec, window: TimeWindow | None) -> FetchResult:
        ...

    async def _count(self, spec: FilterSpec, window: TimeWindow | None) -> int:
        """Count by paging through fetch(); providers with a native count override this."""
        total = 0
        page = replace(spec, page_token=None, max_results=max(spec.max_results, 100))
        while True:
            result = await self._fetch(page, window)
            total += len(result.messages)
            if not result.next_page_token or total >= _COUNT_CAP:
                return total
            page = replace(page, page_token=result.next_page_token)

    # ── Helpers for subclasses ─────────────────────────────────────────────────

    def _check_view(self, view: str) -> None:
        if view.lower() not in self.supported_views:
            raise InvalidFilter(view, self.name)

    async def _gather_limited(self, ids: Iterable[str]) -> list[Message]:
        """Fetch full messages for ``ids`` concurrently, preserving order."""
        semaphore = asyncio.Semaphore(self._fetch_concurrency)

        async def _one(message_id: str) -> Message:
            async with semaphore:
                return await self.get(message_id)

        return list(await asyncio.gather(*(_one(i) for i in ids)))

    def _reply_recipient(self, original: Message) -> str:
        """Reply to the sender, or to the first recipient if the user sent it."""
        own = self._account.email.lower()
        if own and own in original.sender.lower() and original.to:
            return original.to[0]
        return original.sender

    @staticmethod
    def _reply_subject(subject: str) -> str:
        return subject if subject.lower().startswith("re:") else f"Re: {subject}"

    # ── Credentials ────────────────────────────────────────────────────────────

    async def _bearer_token(self, *, force_refresh: bool = False) -> str:
        """Return a usable access token, refreshing it first when needed.

        A refresh completed by a concurrent call while we waited on the lock
        is reused instead of being repeated.
        """
        seen = self._account.credential
        if not force_refresh and seen.is_fresh(self._margin, self._clock()):
            return seen.access_token  # type: ignore[return-value]

        async with self._locks.for_account(self._account.user_id):
            latest = self._accounts.get_account(self._account.user_id).credential
            refreshed_meanwhile = latest.access_token != seen.access_token
            if latest.is_fresh(self._margin, self._clock()) and (
                not force_refresh or refreshed_meanwhile
            ):
                self._account = replace(self._account, credential=latest)
                return latest.access_token  # type: ignore[return-value]

            credential = await self._refresh(latest)
            self._accounts.save_credential(self._account.user_id, credential)
            self._account = replace(self._account, credential=credential)
            logger.info("%s token refreshed for user %s", self.name, self._account.user_id)
            return credential.access_token  # type: ignore[return-value]

    async def _refresh(self, credential: Credential) -> Credential:
        """Exchange the refresh token for a new access token.

        Raises:
            ReauthRequired: no refresh token, or the grant is invalid/revoked.
            TransientProviderError: any other refresh or network failure.
        """
        if not credential.refresh_token:
            raise ReauthRequired(self.name, f"No {self.name} refresh token available. Please re-authenticate.")

        form = {
            "client_id": self._oauth.client_id,
            "client_secret": self._oauth.client_secret,
            "refresh_token": credential.refresh_token,
            "grant_type": "refresh_token",
            **self.refresh_extra,
        }
        try:
            response = await self._http.post(self.token_url, data=form)
        except httpx.HTTPError as exc:
            raise TransientProviderError(f"{self.name} token refresh failed: {exc}") from exc

        payload = _json_or_empty(response)
        if response.is_error:
            if _oauth_error_code(payload) == "invalid_grant":
                raise ReauthRequired(self.name)
            logger.error("%s token refresh failed with HTTP %d", self.name, response.status_code)
            raise TransientProviderError(
                f"{self.name} token refresh failed (HTTP {response.status_code}): {_error_detail(payload, response)}"
            )

        access_token = payload.get("access_token")
        if not access_token:
            raise TransientProviderError(f"{self.name} token refresh returned no access token")
        expires_in = float(payload.get("expires_in") or 3600)
        return Credential(
            access_token=str(access_token),
            refresh_token=str(payload.get("refresh_token") or credential.refresh_token),
            expires_at=self._clock() + expires_in,
        )

    # ── HTTP ───────────────────────────────────────────────────────────────────

    async def _request(
        self,
        method: str,
        url: str,
        *,
        action: str,
        headers: dict[str, str] | None = None,
        **kwargs: Any,
    ) -> httpx.Response:
        """Send an authorised request, retrying once with a forced refresh on 401."""
        token = await self._bearer_token()
        response = await self._send(method, url, token, headers, **kwargs)
        if response.status_code == 401:
            logger.info("%s returned 401 for %s; forcing token refresh", self.name, action)
            token = await self._bearer_token(force_refresh=True)
            response = await self._send(method, url, token, headers, **kwargs)
            if response.status_code == 401:
                raise ReauthRequired(self.name)

        if response.status_code == 429 or response.status_code >= 500:
            raise TransientProviderError(
                f"{self.name} {action} failed (HTTP {response.status_code}): "
                f"{_error_detail(_json_or_empty(response), response)}"
            )
        if response.is_error:
            raise ProviderError(
                f"{self.name} {action} failed: {_error_detail(_json_or_empty(response), response)}",
                status_code=response.status_code,
            )
        return response

    async def _send(
        self,
        method: str,
        url: str,
        token: str,
        headers: dict[str, str] | None,
        **kwargs: Any,
    ) -> httpx.Response:
        merged = {**(headers or {}), "Authorization": f"Bearer {token}"}
        logger.debug("%s → %s %s", self.name, method, url)
        try:
            return await self._http.request(method, url, headers=merged, **kwargs)
        except httpx.TimeoutException as exc:
            raise TransientProviderError(f"{self.name} request timed out: {method} {url}") from exc
        except httpx.TransportError as exc:
            raise TransientProviderError(f"{self.name} request failed: {exc}") from exc


def _json_or_empty(response: httpx.Response) -> dict[str, Any]:
    try:
        data = response.json()
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {}


def _oauth_error_code(payload: dict[str, Any]) -> str | None:
    error = payload.get("error")
    if isinstance(error, dict):
        error = error.get("code") or error.get("error")
    return str(error) if error else None


def _error_detail(payload: dict[str, Any], response: httpx.Response) -> str:
    """Pull the most readable message out of a provider error body."""
    error = payload.get("error")
    if isinstance(error, dict):
        return str(error.get("message") or error.get("description") or error)
    if error:
        return str(payload.get("error_description") or error)
    return response.text[:200] or f"HTTP {response.status_code}"
