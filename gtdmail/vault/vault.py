"""
Credential vault: decrypted credentials for the duration of one operation.

Nothing decrypted is cached. resolve() re-reads and decrypts the stored blob
every time, so a credential never outlives the fetch that asked for it.

Token refresh is a critical section per account. Two fetches racing on an
expired token would each exchange the refresh token, and with rotating
refresh tokens the second exchange can invalidate the first. Instead:

1. The caller notices the token is expired (cheap check, no lock)
2. It takes the account's lock and re-reads the stored credentials
3. If another task already refreshed them, those are returned as-is
4. Otherwise the token is exchanged and the result is persisted BEFORE it
   is returned, so the new refresh token is never held only in memory

Usage:
    vault = CredentialVault(settings, store, http=http)
    credentials = await vault.resolve(account_id)
    credentials = await vault.refresh_if_expired(account_id, credentials)
"""

import asyncio
import logging
import weakref
from datetime import datetime, timezone
from typing import Callable, Optional

import httpx

from gtdmail.config import Settings
from gtdmail.errors import AccountNotFoundError, AuthExpiredError, CredentialMismatchError
from gtdmail.logging.audit import audit
from gtdmail.mail.schemas import (
    EmailProvider,
    ImapCredentials,
    ProviderCredentials,
)
from gtdmail.providers.oauth import OAuthEndpoints, OAuthTokenClient
from gtdmail.vault.crypto import CredentialCipher
from gtdmail.vault.store import AccountStore

logger = logging.getLogger(__name__)


class CredentialVault:
    """Resolves, seals and refreshes provider credentials."""

    def __init__(
        self,
        settings: Settings,
        store: AccountStore,
        http: httpx.AsyncClient,
        cipher: Optional[CredentialCipher] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self._settings = settings
        self._store = store
        self._http = http
        self._cipher = cipher or CredentialCipher(settings)
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        # An entry lives only while some task holds or waits on the lock.
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = weakref.WeakValueDictionary()
        self._token_clients: dict[EmailProvider, OAuthTokenClient] = {}

    def seal(self, credentials: ProviderCredentials) -> str:
        """Encrypt credentials for storage."""
        return self._cipher.encrypt(credentials)

    async def resolve(self, account_id: str) -> ProviderCredentials:
        """Decrypt and return the account's current credentials."""
        account = await self._store.get(account_id)
        if account is None:
            raise AccountNotFoundError(f"Unknown account: {account_id}")
        if not account.is_connected:
            raise AuthExpiredError(
                f"Account {account_id} is disconnected; reconnect required",
                account.provider.value,
            )
        return self._cipher.decrypt(account.credentials)

    def is_expired(self, credentials: ProviderCredentials) -> bool:
        if isinstance(credentials, ImapCredentials):
            return False
        return credentials.is_expired(
            now=self._clock(), skew_seconds=self._settings.token_refresh_skew_seconds
        )

    async def refresh_if_expired(
        self, account_id: str, credentials: ProviderCredentials
    ) -> ProviderCredentials:
        """
        Return credentials with a usable access token.

        IMAP credentials and unexpired tokens are returned untouched.
        Raises InvalidGrantError if the provider rejects the refresh token.
        """
        if not self.is_expired(credentials):
            return credentials

        lock = self._locks.setdefault(account_id, asyncio.Lock())
        async with lock:
            current = await self.resolve(account_id)
            if current.provider != credentials.provider:
                raise CredentialMismatchError(
                    f"Stored credentials for {account_id} are {current.provider}, "
                    f"not {credentials.provider}"
                )
            if not self.is_expired(current):
                logger.info(
                    "vault.token_refresh_skipped",
                    extra={"action": "vault.token_refresh_skipped", "account_id": account_id},
                )
                return current

            refreshed = await self._token_client(EmailProvider(current.provider)).refresh(current)
            await self._store.update_credentials(account_id, self.seal(refreshed))

            audit.info(
                "vault.token_refreshed",
                account_id=account_id,
                provider=current.provider,
                rotated=refreshed.refresh_token != current.refresh_token,
            )
            return refreshed

    def _token_client(self, provider: EmailProvider) -> OAuthTokenClient:
        client = self._token_clients.get(provider)
        if client is None:
            client = OAuthTokenClient(
                OAuthEndpoints.for_provider(provider, self._settings),
                self._http,
                clock=self._clock,
            )
            self._token_clients[provider] = client
        return client
