"""Builds the adapter matching an account's provider."""

from __future__ import annotations

import httpx

from mailpilot.config import Settings
from mailpilot.providers.base import CredentialLocks, MailProvider
from mailpilot.providers.gmail import GmailProvider
from mailpilot.providers.outlook import OutlookProvider
from mailpilot.providers.types import Account, ProviderType
from mailpilot.providers.yahoo import YahooProvider
from mailpilot.storage.models import AccountStore

_ADAPTERS: dict[ProviderType, type[MailProvider]] = {
    ProviderType.GOOGLE: GmailProvider,
    ProviderType.MICROSOFT: OutlookProvider,
    ProviderType.YAHOO: YahooProvider,
}


class ProviderFactory:
    """Creates per-request adapters that share one HTTP client and lock registry."""

    def __init__(
        self,
        *,
        http: httpx.AsyncClient,
        accounts: AccountStore,
        settings: Settings,
        locks: CredentialLocks | None = None,
    ) -> None:
        self._http = http
        self._accounts = accounts
        self._settings = settings
        self._locks = locks or CredentialLocks()

    def for_account(self, account: Account) -> MailProvider:
        oauth = {
            ProviderType.GOOGLE: self._settings.google,
            ProviderType.MICROSOFT: self._settings.microsoft,
            ProviderType.YAHOO: self._settings.yahoo,
        }[account.provider]
        return _ADAPTERS[account.provider](
            account,
            http=self._http,
            accounts=self._accounts,
            oauth=oauth,
            locks=self._locks,
            refresh_margin=self._settings.refresh_margin,
            fetch_concurrency=self._settings.fetch_concurrency,
        )

    def for_user(self, user_id: str) -> MailProvider:
        """Look the account up and return its adapter.

        Raises:
            AccountNotFound: no account is registered for user_id.
        """
        return self.for_account(self._accounts.get_account(user_id))
