"""
OAuth 2.0 authorization code flow for the Gmail and Outlook variants.

Both providers speak the same protocol against different endpoints:
1. The user is sent to the provider's consent URL (build_authorization_url)
2. The provider redirects back with an authorization code
3. exchange_code() POSTs grant_type=authorization_code to the token endpoint
4. refresh() POSTs grant_type=refresh_token when the access token expires

Both POSTs are application/x-www-form-urlencoded, exactly as the published
token endpoints expect. Failures map onto the error taxonomy: a rejected
refresh token is InvalidGrantError so the caller can disconnect the account
instead of retrying forever.

Usage:
    endpoints = OAuthEndpoints.for_provider(EmailProvider.GMAIL, settings)
    url = build_authorization_url(endpoints, redirect_uri, state="csrf-token")
    tokens = OAuthTokenClient(endpoints, http)
    credentials = await tokens.exchange_code(code, redirect_uri)
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional
from urllib.parse import quote, urlencode

import httpx

from gtdmail.config import Settings
from gtdmail.errors import (
    AuthExpiredError,
    InvalidGrantError,
    TransientNetworkError,
    UnsupportedProviderError,
)
from gtdmail.mail.schemas import (
    AnyOAuthCredentials,
    EmailProvider,
    GmailOAuthCredentials,
    OutlookOAuthCredentials,
)

logger = logging.getLogger(__name__)

FORM_HEADERS = {
    "Content-Type": "application/x-www-form-urlencoded",
    "Accept": "application/json",
}

# Used when a token response omits expires_in.
DEFAULT_EXPIRES_IN = 3600


@dataclass(frozen=True)
class OAuthEndpoints:
    """Where and as whom to talk OAuth for one provider."""

    provider: EmailProvider
    auth_url: str
    token_url: str
    scopes: tuple[str, ...]
    client_id: str
    client_secret: str

    @classmethod
    def for_provider(cls, provider: EmailProvider, settings: Settings) -> "OAuthEndpoints":
        if provider == EmailProvider.GMAIL:
            return cls(
                provider=EmailProvider.GMAIL,
                auth_url=settings.gmail_auth_url,
                token_url=settings.gmail_token_url,
                scopes=tuple(settings.gmail_scopes),
                client_id=settings.gmail_client_id,
                client_secret=settings.gmail_client_secret,
            )
        if provider == EmailProvider.OUTLOOK:
            return cls(
                provider=EmailProvider.OUTLOOK,
                auth_url=settings.outlook_auth_url,
                token_url=settings.outlook_token_url,
                scopes=tuple(settings.outlook_scopes),
                client_id=settings.outlook_client_id,
                client_secret=settings.outlook_client_secret,
            )
        raise UnsupportedProviderError(f"No OAuth flow for provider: {provider}")


def build_authorization_url(endpoints: OAuthEndpoints, redirect_uri: str, state: str = "") -> str:
    """
    Build the consent URL to redirect the user's browser to.

    Gmail asks for offline access and forces the consent screen so a refresh
    token is always issued; Outlook gets offline_access through its scopes.
    """
    params = {
        "client_id": endpoints.client_id,
        "redirect_uri": redirect_uri,
        "response_type": "code",
        "scope": " ".join(endpoints.scopes),
    }
    if endpoints.provider == EmailProvider.GMAIL:
        params["access_type"] = "offline"
        params["prompt"] = "consent"
    else:
        params["response_mode"] = "query"
    if state:
        params["state"] = state

    logger.info(
        "oauth.auth_url_built",
        extra={"action": "oauth.auth_url_built", "provider": endpoints.provider.value},
    )
    return f"{endpoints.auth_url}?{urlencode(params, quote_via=quote)}"


class OAuthTokenClient:
    """Token endpoint client for one provider."""

    def __init__(
        self,
        endpoints: OAuthEndpoints,
        http: httpx.AsyncClient,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self._endpoints = endpoints
        self._http = http
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    @property
    def provider(self) -> EmailProvider:
        return self._endpoints.provider

    async def exchange_code(
        self,
        code: str,
        redirect_uri: str,
        client_id: Optional[str] = None,
        client_secret: Optional[str] = None,
    ) -> AnyOAuthCredentials:
        """
        Exchange an authorization code for tokens.

        Called once per account, in the OAuth callback.
        """
        client_id = client_id or self._endpoints.client_id
        client_secret = client_secret or self._endpoints.client_secret
        data = await self._post(
            {
                "code": code,
                "client_id": client_id,
                "client_secret": client_secret,
                "redirect_uri": redirect_uri,
                "grant_type": "authorization_code",
            },
            action="oauth.token_exchange",
        )

        credentials_cls = (
            GmailOAuthCredentials
            if self.provider == EmailProvider.GMAIL
            else OutlookOAuthCredentials
        )
        return credentials_cls(
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token", ""),
            expires_at=self._expires_at(data),
            scope=str(data.get("scope") or "").split(),
            client_id=client_id,
            client_secret=client_secret,
        )

    async def refresh(self, credentials: AnyOAuthCredentials) -> AnyOAuthCredentials:
        """
        Use the refresh token to get a new access token.

        If the provider rotates refresh tokens the new one is kept; otherwise
        the old refresh token stays valid and is carried over.
        """
        data = await self._post(
            {
                "client_id": credentials.client_id or self._endpoints.client_id,
                "client_secret": credentials.client_secret or self._endpoints.client_secret,
                "refresh_token": credentials.refresh_token,
                "grant_type": "refresh_token",
            },
            action="oauth.token_refresh",
        )

        update = {
            "access_token": data["access_token"],
            "expires_at": self._expires_at(data),
        }
        if data.get("refresh_token"):
            update["refresh_token"] = data["refresh_token"]
        if data.get("scope"):
            update["scope"] = str(data["scope"]).split()
        return credentials.model_copy(update=update)

    # =========================================================================
    # PRIVATE HELPERS
    # =========================================================================

    def _expires_at(self, data: dict) -> datetime:
        try:
            expires_in = int(data.get("expires_in", DEFAULT_EXPIRES_IN))
        except (TypeError, ValueError):
            expires_in = DEFAULT_EXPIRES_IN
        return self._clock() + timedelta(seconds=expires_in)

    async def _post(self, form: dict, action: str) -> dict:
        provider = self.provider.value
        try:
            resp = await self._http.post(
                self._endpoints.token_url, data=form, headers=FORM_HEADERS
            )
        except httpx.HTTPError as e:
            logger.error(
                f"{action}.network_error",
                extra={"action": f"{action}.network_error", "provider": provider, "error": str(e)},
            )
            raise TransientNetworkError(f"Token endpoint unreachable: {e}", provider) from e

        if resp.status_code == 429 or resp.status_code >= 500:
            logger.error(
                f"{action}.unavailable",
                extra={
                    "action": f"{action}.unavailable",
                    "provider": provider,
                    "status_code": resp.status_code,
                },
            )
            raise TransientNetworkError(
                f"Token endpoint returned HTTP {resp.status_code}", provider
            )

        try:
            data = resp.json()
        except ValueError:
            data = {}

        if resp.is_error or "access_token" not in data:
            error = data.get("error", "unknown_error") if isinstance(data, dict) else "unknown_error"
            logger.warning(
                f"{action}.failed",
                extra={
                    "action": f"{action}.failed",
                    "provider": provider,
                    "status_code": resp.status_code,
                    "error": error,
                },
            )
            if error == "invalid_grant":
                raise InvalidGrantError(
                    f"Token endpoint rejected the grant: {data.get('error_description', error)}",
                    provider,
                )
            raise AuthExpiredError(f"Token request failed: {error}", provider)

        logger.info(
            f"{action}.succeeded",
            extra={
                "action": f"{action}.succeeded",
                "provider": provider,
                "has_refresh_token": "refresh_token" in data,
                "expires_in": data.get("expires_in"),
            },
        )
        return data
