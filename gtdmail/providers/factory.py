"""
Variant dispatch for provider clients.

The credential's `provider` tag picks the client. No inheritance is
involved; each variant just satisfies ProviderClient.
"""

from typing import Callable, Optional

import httpx

from gtdmail.config import Settings
from gtdmail.errors import CredentialMismatchError, UnsupportedProviderError
from gtdmail.mail.schemas import EmailAccount, EmailProvider, ProviderCredentials
from gtdmail.providers.base import ProviderClient, TokenRefresher
from gtdmail.providers.gmail import GmailClient
from gtdmail.providers.imap.client import ImapClient
from gtdmail.providers.outlook import OutlookClient

ClientBuilder = Callable[..., ProviderClient]


def _gmail(credentials, settings, http, refresh, account_id) -> ProviderClient:
    return GmailClient(credentials, settings, http, refresh=refresh, account_id=account_id)


def _outlook(credentials, settings, http, refresh, account_id) -> ProviderClient:
    return OutlookClient(credentials, settings, http, refresh=refresh, account_id=account_id)


def _imap(credentials, settings, http, refresh, account_id) -> ProviderClient:
    return ImapClient(credentials, settings, account_id=account_id)


PROVIDER_BUILDERS: dict[EmailProvider, ClientBuilder] = {
    EmailProvider.GMAIL: _gmail,
    EmailProvider.OUTLOOK: _outlook,
    EmailProvider.IMAP: _imap,
}


def create_provider_client(
    credentials: ProviderCredentials,
    settings: Settings,
    http: httpx.AsyncClient,
    refresh: Optional[TokenRefresher] = None,
    account: Optional[EmailAccount] = None,
) -> ProviderClient:
    """
    Build the client for `credentials`.

    When `account` is given, its provider must agree with the credential
    tag; a mismatch means the stored blob belongs to another account type.
    """
    try:
        provider = EmailProvider(credentials.provider)
    except (AttributeError, ValueError) as e:
        raise UnsupportedProviderError(f"No provider variant for {credentials!r}") from e

    if account is not None and account.provider != provider:
        raise CredentialMismatchError(
            f"Account {account.id} is {account.provider.value} but holds {provider.value} credentials"
        )

    builder = PROVIDER_BUILDERS.get(provider)
    if builder is None:
        raise UnsupportedProviderError(f"No provider variant for {provider.value}")
    return builder(credentials, settings, http, refresh, account.id if account else "")
