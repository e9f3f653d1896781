"""
Microsoft Graph (Outlook) mail client.

Unlike Gmail, Graph can return everything in the list call, so a fetch is a
single paged query with field projection and no per-message detail requests:
- $select limits the payload to the canonical fields
- $expand pulls the message size from its MAPI extended property
- Prefer: outlook.body-content-type="text" makes Graph render bodies as text
- @odata.nextLink is followed until max_results messages are collected

Usage:
    from gtdmail.providers.outlook import OutlookClient

    outlook = OutlookClient(credentials, settings, http, refresh=refresher)
    emails = await outlook.fetch_emails(max_results=50)
"""

import logging
import time
from typing import Any, Optional

import httpx
from pydantic import ValidationError

from gtdmail.config import Settings
from gtdmail.errors import (
    CredentialMismatchError,
    MalformedMessageError,
    ProviderError,
    TransientNetworkError,
)
from gtdmail.logging.audit import audit
from gtdmail.mail.schemas import (
    EmailAddress,
    EmailMetadata,
    EmailProvider,
    EmailRecipients,
    OutlookOAuthCredentials,
)
from gtdmail.providers.base import TokenRefresher, check_response
from gtdmail.providers.normalize import make_snippet, parse_date
from gtdmail.providers.oauth import OAuthEndpoints, OAuthTokenClient

logger = logging.getLogger(__name__)

# Fields we request from the Graph API.
# Requesting only what we need reduces response size and latency.
MESSAGE_SELECT_FIELDS = (
    "id,conversationId,subject,from,sender,toRecipients,ccRecipients,bccRecipients,"
    "receivedDateTime,sentDateTime,body,bodyPreview,isRead,isDraft,flag,categories,"
    "hasAttachments"
)

# PidTagMessageSize. Graph v1.0 has no size property on messages.
MESSAGE_SIZE_PROPERTY = "Integer 0x0E08"

# Graph caps $top at 1000, but large pages of bodies are slow.
PAGE_SIZE = 50


class OutlookClient:
    """Outlook (Microsoft Graph) variant of the provider capability."""

    provider = EmailProvider.OUTLOOK

    def __init__(
        self,
        credentials: OutlookOAuthCredentials,
        settings: Settings,
        http: httpx.AsyncClient,
        refresh: Optional[TokenRefresher] = None,
        account_id: str = "",
    ):
        if not isinstance(credentials, OutlookOAuthCredentials):
            raise CredentialMismatchError(
                f"OutlookClient cannot use {getattr(credentials, 'provider', type(credentials).__name__)} credentials"
            )
        self._credentials = credentials
        self._settings = settings
        self._http = http
        self._base = settings.outlook_graph_base_url
        self._refresh = refresh or self._refresh_in_memory
        self._account_id = account_id

    @classmethod
    async def handle_callback(
        cls,
        code: str,
        redirect_uri: str,
        client_id: str,
        client_secret: str,
        settings: Settings,
        http: httpx.AsyncClient,
    ) -> OutlookOAuthCredentials:
        """Exchange an OAuth authorization code for Outlook credentials."""
        tokens = OAuthTokenClient(OAuthEndpoints.for_provider(EmailProvider.OUTLOOK, settings), http)
        return await tokens.exchange_code(code, redirect_uri, client_id, client_secret)

    # =========================================================================
    # FETCHING: single paged query, newest first
    # =========================================================================

    async def fetch_emails(self, max_results: Optional[int] = None) -> list[EmailMetadata]:
        """
        Fetch the newest messages across the mailbox.

        Paginates automatically until max_results is reached or no more pages.
        """
        max_results = max_results or self._settings.fetch_default_max_results
        start = time.monotonic()

        self._credentials = await self._refresh(self._credentials)

        params = {
            "$orderby": "receivedDateTime desc",
            "$top": min(PAGE_SIZE, max_results),
            "$select": MESSAGE_SELECT_FIELDS,
            "$expand": f"singleValueExtendedProperties($filter=id eq '{MESSAGE_SIZE_PROPERTY}')",
        }

        emails: list[EmailMetadata] = []
        skipped = 0
        url: Optional[str] = f"{self._base}/me/messages"
        page_count = 0

        while url and len(emails) < max_results:
            # Subsequent pages use @odata.nextLink which includes params
            data = await self._get_page(url, params if page_count == 0 else None, page_count)
            page_count += 1

            for msg in data.get("value") or []:
                if len(emails) >= max_results:
                    break
                try:
                    emails.append(self._parse_message(msg, self._account_id))
                except MalformedMessageError as e:
                    skipped += 1
                    logger.warning(
                        "outlook.parse_message.skipped",
                        extra={
                            "action": "outlook.parse_message.skipped",
                            "message_id": e.message_id,
                            "error": str(e),
                        },
                    )

            url = data.get("@odata.nextLink")

        audit.info(
            "outlook.fetch.completed",
            account_id=self._account_id,
            emails_fetched=len(emails),
            skipped=skipped,
            pages=page_count,
            latency_ms=int((time.monotonic() - start) * 1000),
        )
        return emails

    async def _get_page(self, url: str, params: Optional[dict], page: int) -> dict:
        try:
            resp = await self._http.get(
                url,
                params=params,
                headers={
                    "Authorization": f"Bearer {self._credentials.access_token}",
                    "Prefer": 'outlook.body-content-type="text"',
                },
            )
        except httpx.HTTPError as e:
            logger.error(
                "outlook.fetch.error",
                extra={
                    "action": "outlook.fetch.error",
                    "account_id": self._account_id,
                    "page": page,
                    "error": str(e),
                },
            )
            raise TransientNetworkError(f"outlook.list_messages: {e}", self.provider.value) from e

        if resp.is_error:
            logger.error(
                "outlook.fetch.error",
                extra={
                    "action": "outlook.fetch.error",
                    "account_id": self._account_id,
                    "page": page,
                    "status_code": resp.status_code,
                    "response_body": resp.text[:500],
                },
            )
        check_response(resp, self.provider, "outlook.list_messages")

        try:
            data = resp.json()
        except ValueError as e:
            raise ProviderError(f"outlook.list_messages: invalid JSON: {e}", self.provider.value) from e
        if not isinstance(data, dict):
            raise ProviderError("outlook.list_messages: unexpected response shape", self.provider.value)
        return data

    async def _refresh_in_memory(self, credentials: OutlookOAuthCredentials) -> OutlookOAuthCredentials:
        """Refresh without persisting. Used when no vault is wired in."""
        if not credentials.is_expired(skew_seconds=self._settings.token_refresh_skew_seconds):
            return credentials
        tokens = OAuthTokenClient(OAuthEndpoints.for_provider(self.provider, self._settings), self._http)
        return await tokens.refresh(credentials)

    # =========================================================================
    # NORMALIZATION
    # =========================================================================

    @staticmethod
    def _parse_message(msg: Any, account_id: str = "") -> EmailMetadata:
        """
        Map a Graph message resource onto EmailMetadata.

        Defensive parsing: missing or oddly-typed optional fields fall back to
        defaults. Only a message without an id is rejected.
        """
        if not isinstance(msg, dict) or not msg.get("id"):
            raise MalformedMessageError("Graph message has no id", "OUTLOOK")
        message_id = str(msg["id"])

        try:
            sender = _graph_address(msg.get("from")) or _graph_address(msg.get("sender")) or EmailAddress()

            received_at = parse_date(msg.get("receivedDateTime"))
            date = parse_date(msg.get("sentDateTime"), fallback=received_at)

            body_obj = msg.get("body") if isinstance(msg.get("body"), dict) else {}
            preview = str(msg.get("bodyPreview") or "")
            if str(body_obj.get("contentType") or "").lower() == "text":
                body_text = str(body_obj.get("content") or "")
            else:
                body_text = preview

            flag = msg.get("flag") if isinstance(msg.get("flag"), dict) else {}

            return EmailMetadata(
                id=message_id,
                account_id=account_id,
                provider_id=message_id,
                thread_id=str(msg.get("conversationId") or ""),
                subject=str(msg.get("subject") or ""),
                sender=sender,
                recipients=EmailRecipients(
                    to=_graph_address_list(msg.get("toRecipients")),
                    cc=_graph_address_list(msg.get("ccRecipients")),
                    bcc=_graph_address_list(msg.get("bccRecipients")),
                ),
                date=date,
                received_at=received_at,
                size=_message_size(msg.get("singleValueExtendedProperties")),
                labels=[str(c) for c in (msg.get("categories") or [])],
                is_read=bool(msg.get("isRead", False)),
                is_starred=str(flag.get("flagStatus") or "").lower() == "flagged",
                is_draft=bool(msg.get("isDraft", False)),
                # Folder membership is not part of the projected query.
                is_sent=False,
                is_trash=False,
                is_spam=False,
                has_attachments=bool(msg.get("hasAttachments", False)),
                snippet=make_snippet(preview),
                preview_text=body_text,
            )
        except (AttributeError, TypeError, ValueError, ValidationError) as e:
            raise MalformedMessageError(
                f"Unparseable Graph message: {e}", "OUTLOOK", message_id
            ) from e


def _graph_address(recipient: Any) -> Optional[EmailAddress]:
    if not isinstance(recipient, dict):
        return None
    address = recipient.get("emailAddress")
    if not isinstance(address, dict):
        return None
    return EmailAddress(
        name=str(address.get("name") or ""),
        email=str(address.get("address") or ""),
    )


def _graph_address_list(recipients: Any) -> list[EmailAddress]:
    if not isinstance(recipients, list):
        return []
    return [a for a in (_graph_address(r) for r in recipients) if a is not None]


def _message_size(properties: Any) -> int:
    for prop in properties or []:
        if isinstance(prop, dict) and str(prop.get("id", "")).lower() == MESSAGE_SIZE_PROPERTY.lower():
            try:
                return max(0, int(prop.get("value") or 0))
            except (TypeError, ValueError):
                return 0
    return 0
