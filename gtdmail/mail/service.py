"""
Mail service: account lifecycle and fetch orchestration.

This is the seam the HTTP layer talks to. It owns no protocol logic:
- connecting an account means exchanging an OAuth code (or taking IMAP
  credentials), sealing the credentials and storing an EmailAccount
- fetching means resolving credentials through the vault, building the
  provider client for the credential tag, and running its fetch under a
  timeout

Auth failures disconnect the account so it is not retried blindly.
Transient failures and timeouts leave the account untouched.

Usage:
    service = MailService(settings, store, vault, http)
    url = service.build_authorization_url(EmailProvider.GMAIL, redirect_uri, state)
    account = await service.connect_oauth_account(user_id, EmailProvider.GMAIL, code, redirect_uri)
    emails = await service.fetch_emails(account.id, max_results=50)
"""

import asyncio
import logging
import uuid
from functools import partial
from typing import Callable, Optional

import httpx

from gtdmail.config import Settings
from gtdmail.errors import AccountNotFoundError, AuthExpiredError, FetchTimeoutError
from gtdmail.logging.audit import audit
from gtdmail.mail.schemas import (
    EmailAccount,
    EmailAccountSettings,
    EmailMetadata,
    EmailProvider,
    ImapCredentials,
)
from gtdmail.providers.factory import create_provider_client
from gtdmail.providers.oauth import OAuthEndpoints, OAuthTokenClient, build_authorization_url
from gtdmail.vault.store import AccountStore
from gtdmail.vault.vault import CredentialVault

logger = logging.getLogger(__name__)


class MailService:
    def __init__(
        self,
        settings: Settings,
        store: AccountStore,
        vault: CredentialVault,
        http: httpx.AsyncClient,
        client_factory: Callable = create_provider_client,
        id_factory: Optional[Callable[[], str]] = None,
    ):
        self._settings = settings
        self._store = store
        self._vault = vault
        self._http = http
        self._client_factory = client_factory
        self._new_id = id_factory or (lambda: str(uuid.uuid4()))

    # =========================================================================
    # ACCOUNTS
    # =========================================================================

    def build_authorization_url(self, provider: EmailProvider, redirect_uri: str, state: str = "") -> str:
        """Consent URL for an OAuth provider. IMAP has none."""
        endpoints = OAuthEndpoints.for_provider(provider, self._settings)
        return build_authorization_url(endpoints, redirect_uri, state)

    async def connect_oauth_account(
        self,
        user_id: str,
        provider: EmailProvider,
        code: str,
        redirect_uri: str,
        email: str = "",
    ) -> EmailAccount:
        """Complete the OAuth callback and store the new account."""
        tokens = OAuthTokenClient(OAuthEndpoints.for_provider(provider, self._settings), self._http)
        credentials = await tokens.exchange_code(code, redirect_uri)

        account = EmailAccount(
            id=self._new_id(),
            user_id=user_id,
            provider=provider,
            email=email,
            credentials=self._vault.seal(credentials),
            settings=EmailAccountSettings(),
        )
        await self._store.put(account)

        audit.info(
            "account.connected",
            user_id=user_id,
            account_id=account.id,
            provider=provider.value,
            has_refresh_token=bool(credentials.refresh_token),
        )
        return account

    async def add_imap_account(
        self, user_id: str, credentials: ImapCredentials, email: str = ""
    ) -> EmailAccount:
        """Store an IMAP account. The login is first exercised on the first fetch."""
        account = EmailAccount(
            id=self._new_id(),
            user_id=user_id,
            provider=EmailProvider.IMAP,
            email=email or credentials.username,
            credentials=self._vault.seal(credentials),
            settings=EmailAccountSettings(),
        )
        await self._store.put(account)

        audit.info(
            "account.connected",
            user_id=user_id,
            account_id=account.id,
            provider=EmailProvider.IMAP.value,
            host=credentials.host,
        )
        return account

    async def list_accounts(self, user_id: str) -> list[EmailAccount]:
        return await self._store.list_for_user(user_id)

    # =========================================================================
    # FETCHING
    # =========================================================================

    async def fetch_emails(
        self,
        account_id: str,
        max_results: Optional[int] = None,
        timeout: Optional[float] = None,
        user_id: Optional[str] = None,
    ) -> list[EmailMetadata]:
        """
        Fetch a bounded batch of messages for one account.

        When user_id is given the account must belong to that user.

        Raises:
            AccountNotFoundError: no such account (for this user)
            AuthExpiredError: credentials rejected; the account is now disconnected
            FetchTimeoutError: the fetch did not finish within `timeout` seconds
            TransientNetworkError: provider unavailable; safe to retry later
        """
        account = await self._store.get(account_id)
        if account is None or (user_id is not None and account.user_id != user_id):
            raise AccountNotFoundError(f"Unknown account: {account_id}")

        max_results = max_results or account.settings.max_emails_per_sync
        timeout = timeout or self._settings.fetch_timeout_seconds

        try:
            credentials = await self._vault.resolve(account_id)
            client = self._client_factory(
                credentials,
                self._settings,
                self._http,
                refresh=partial(self._vault.refresh_if_expired, account_id),
                account=account,
            )
            emails = await asyncio.wait_for(client.fetch_emails(max_results), timeout)
        except asyncio.TimeoutError as e:
            logger.warning(
                "mail.fetch.timeout",
                extra={
                    "action": "mail.fetch.timeout",
                    "account_id": account_id,
                    "provider": account.provider.value,
                    "timeout_seconds": timeout,
                },
            )
            raise FetchTimeoutError(
                f"Fetch for {account_id} exceeded {timeout}s", account.provider.value
            ) from e
        except AuthExpiredError as e:
            # An already disconnected account keeps its original reason.
            if account.is_connected:
                await self._store.mark_disconnected(account_id, str(e))
            audit.warning(
                "account.auth_expired",
                account_id=account_id,
                provider=account.provider.value,
                error_type=type(e).__name__,
            )
            raise

        await self._store.mark_synced(account_id)
        return emails
