"""
The provider capability shared by every mail service variant.

There is no base class to inherit from. A provider client is anything that
satisfies ProviderClient; the factory picks the variant from the credential
tag. Stateful variants (IMAP) additionally expose connect/disconnect.
"""

from typing import Awaitable, Callable, Optional, Protocol, runtime_checkable

import httpx

from gtdmail.errors import AuthExpiredError, ProviderError, TransientNetworkError
from gtdmail.mail.schemas import AnyOAuthCredentials, EmailMetadata, EmailProvider

# Given the credentials a client holds, return credentials whose access token
# is usable (refreshing, and persisting, if needed).
TokenRefresher = Callable[[AnyOAuthCredentials], Awaitable[AnyOAuthCredentials]]


@runtime_checkable
class ProviderClient(Protocol):
    provider: EmailProvider

    async def fetch_emails(self, max_results: Optional[int] = None) -> list[EmailMetadata]:
        """Fetch a bounded batch of messages, newest first, without modifying them."""
        ...


@runtime_checkable
class SessionProviderClient(ProviderClient, Protocol):
    async def connect(self) -> None: ...

    async def disconnect(self) -> None: ...


def check_response(resp: httpx.Response, provider: EmailProvider, what: str) -> None:
    """
    Map a REST error status onto the error taxonomy.

    401/403 mean the token was rejected; 429 and 5xx are worth retrying
    later; anything else is a provider error for this fetch.
    """
    if not resp.is_error:
        return
    status = resp.status_code
    if status in (401, 403):
        raise AuthExpiredError(f"{what}: access token rejected (HTTP {status})", provider.value)
    if status == 429 or status >= 500:
        raise TransientNetworkError(f"{what}: provider unavailable (HTTP {status})", provider.value)
    raise ProviderError(f"{what}: HTTP {status}", provider.value)
