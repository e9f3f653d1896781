"""
Gmail REST API client.

Gmail's list endpoint only returns message ids, so a fetch is:
1. Refresh the access token if it has expired
2. GET /messages?maxResults=N for the newest ids
3. GET /messages/{id}?format=full for each id, at most
   Settings.fetch_concurrency requests in flight at once
4. Normalize each payload into EmailMetadata

A message that fails to parse is skipped and logged; it never fails the
batch. An auth or network failure aborts the whole fetch.

Usage:
    from gtdmail.providers.gmail import GmailClient

    gmail = GmailClient(credentials, settings, http, refresh=refresher)
    emails = await gmail.fetch_emails(max_results=50)
"""

import asyncio
import html
import logging
import time
from typing import Optional

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
    EmailMetadata,
    EmailProvider,
    EmailRecipients,
    GmailOAuthCredentials,
)
from gtdmail.providers.base import TokenRefresher, check_response
from gtdmail.providers.normalize import (
    decode_base64url,
    from_epoch_millis,
    headers_from_pairs,
    parse_date,
)
from gtdmail.providers.oauth import OAuthEndpoints, OAuthTokenClient

logger = logging.getLogger(__name__)

# Gmail system labels that map onto canonical flags.
LABEL_UNREAD = "UNREAD"
LABEL_STARRED = "STARRED"
LABEL_DRAFT = "DRAFT"
LABEL_SENT = "SENT"
LABEL_TRASH = "TRASH"
LABEL_SPAM = "SPAM"


class GmailClient:
    """Gmail variant of the provider capability."""

    provider = EmailProvider.GMAIL

    def __init__(
        self,
        credentials: GmailOAuthCredentials,
        settings: Settings,
        http: httpx.AsyncClient,
        refresh: Optional[TokenRefresher] = None,
        account_id: str = "",
    ):
        if not isinstance(credentials, GmailOAuthCredentials):
            raise CredentialMismatchError(
                f"GmailClient cannot use {getattr(credentials, 'provider', type(credentials).__name__)} credentials"
            )
        self._credentials = credentials
        self._settings = settings
        self._http = http
        self._base = settings.gmail_api_base_url
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
    ) -> GmailOAuthCredentials:
        """Exchange an OAuth authorization code for Gmail credentials."""
        tokens = OAuthTokenClient(OAuthEndpoints.for_provider(EmailProvider.GMAIL, settings), http)
        return await tokens.exchange_code(code, redirect_uri, client_id, client_secret)

    # =========================================================================
    # FETCHING
    # =========================================================================

    async def fetch_emails(self, max_results: Optional[int] = None) -> list[EmailMetadata]:
        """
        Fetch the newest messages, in the order Gmail lists them.

        Read-only: messages are fetched with format=full, which does not
        change their UNREAD label.
        """
        max_results = max_results or self._settings.fetch_default_max_results
        start = time.monotonic()

        self._credentials = await self._refresh(self._credentials)
        message_ids = await self._list_message_ids(max_results)

        semaphore = asyncio.Semaphore(self._settings.fetch_concurrency)

        async def fetch_one(message_id: str) -> Optional[EmailMetadata]:
            async with semaphore:
                return await self._fetch_message(message_id)

        tasks = [asyncio.create_task(fetch_one(mid)) for mid in message_ids]
        try:
            results = await asyncio.gather(*tasks)
        except BaseException:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

        emails = [email for email in results if email is not None]

        audit.info(
            "gmail.fetch.completed",
            account_id=self._account_id,
            listed=len(message_ids),
            emails_fetched=len(emails),
            skipped=len(message_ids) - len(emails),
            latency_ms=int((time.monotonic() - start) * 1000),
        )
        return emails

    async def _list_message_ids(self, max_results: int) -> list[str]:
        resp = await self._get(
            f"{self._base}/messages",
            params={"maxResults": max_results},
            what="gmail.list_messages",
        )
        try:
            data = resp.json()
        except ValueError as e:
            raise ProviderError(f"gmail.list_messages: invalid JSON: {e}", self.provider.value) from e
        # An empty mailbox has no "messages" key at all.
        messages = data.get("messages") or []
        return [str(m["id"]) for m in messages if isinstance(m, dict) and m.get("id")][:max_results]

    async def _fetch_message(self, message_id: str) -> Optional[EmailMetadata]:
        resp = await self._get(
            f"{self._base}/messages/{message_id}",
            params={"format": "full"},
            what="gmail.get_message",
            allow_not_found=True,
        )
        if resp.status_code == 404:
            # Deleted between the list call and now.
            logger.info(
                "gmail.message_vanished",
                extra={"action": "gmail.message_vanished", "message_id": message_id},
            )
            return None

        try:
            return self._parse_message(resp.json(), self._account_id)
        except (MalformedMessageError, ValueError) as e:
            logger.warning(
                "gmail.parse_message.skipped",
                extra={
                    "action": "gmail.parse_message.skipped",
                    "message_id": message_id,
                    "error": str(e),
                },
            )
            return None

    async def _get(
        self, url: str, params: dict, what: str, allow_not_found: bool = False
    ) -> httpx.Response:
        try:
            resp = await self._http.get(
                url,
                params=params,
                headers={"Authorization": f"Bearer {self._credentials.access_token}"},
            )
        except httpx.HTTPError as e:
            logger.error(
                f"{what}.error",
                extra={"action": f"{what}.error", "account_id": self._account_id, "error": str(e)},
            )
            raise TransientNetworkError(f"{what}: {e}", self.provider.value) from e

        if allow_not_found and resp.status_code == 404:
            return resp
        check_response(resp, self.provider, what)
        return resp

    async def _refresh_in_memory(self, credentials: GmailOAuthCredentials) -> GmailOAuthCredentials:
        """Refresh without persisting. Used when no vault is wired in."""
        if not credentials.is_expired(skew_seconds=self._settings.token_refresh_skew_seconds):
            return credentials
        tokens = OAuthTokenClient(OAuthEndpoints.for_provider(self.provider, self._settings), self._http)
        return await tokens.refresh(credentials)

    # =========================================================================
    # NORMALIZATION
    # =========================================================================

    @staticmethod
    def _parse_message(data: dict, account_id: str = "") -> EmailMetadata:
        """
        Map a format=full Gmail message onto EmailMetadata.

        Raises MalformedMessageError when the payload is not a message at all.
        Missing optional fields fall back to defaults.
        """
        if not isinstance(data, dict) or not data.get("id"):
            raise MalformedMessageError("Gmail message has no id", "GMAIL")
        message_id = str(data["id"])
        payload = data.get("payload") or {}
        if not isinstance(payload, dict):
            raise MalformedMessageError("Gmail payload is not an object", "GMAIL", message_id)

        try:
            raw_headers = payload.get("headers") or []
            headers = headers_from_pairs(
                (str(h.get("name") or ""), str(h.get("value") or ""))
                for h in raw_headers
                if isinstance(h, dict)
            )
            label_ids = [str(label) for label in (data.get("labelIds") or [])]
            internal_date = from_epoch_millis(data.get("internalDate"))
            date = parse_date(headers.date, fallback=internal_date)

            return EmailMetadata(
                id=message_id,
                account_id=account_id,
                provider_id=message_id,
                thread_id=str(data.get("threadId") or ""),
                subject=headers.subject,
                sender=headers.sender,
                recipients=EmailRecipients(to=headers.to, cc=headers.cc, bcc=headers.bcc),
                date=date,
                received_at=internal_date or date,
                size=max(0, int(data.get("sizeEstimate") or 0)),
                labels=label_ids,
                is_read=LABEL_UNREAD not in label_ids,
                is_starred=LABEL_STARRED in label_ids,
                is_draft=LABEL_DRAFT in label_ids,
                is_sent=LABEL_SENT in label_ids,
                is_trash=LABEL_TRASH in label_ids,
                is_spam=LABEL_SPAM in label_ids,
                has_attachments=_has_attachment_parts(payload),
                snippet=html.unescape(str(data.get("snippet") or "")),
                preview_text=_extract_body(payload),
            )
        except (AttributeError, TypeError, ValueError, ValidationError) as e:
            raise MalformedMessageError(f"Unparseable Gmail message: {e}", "GMAIL", message_id) from e


def _extract_body(payload: dict) -> str:
    """
    Decode the message body.

    A single-part body is decoded directly. For multipart messages the first
    text/plain part (searched depth-first through nested multiparts) wins.
    Anything undecodable yields "".
    """
    body = payload.get("body") or {}
    if isinstance(body, dict) and body.get("data"):
        return decode_base64url(body["data"])

    part = _find_part(payload, "text/plain")
    if part is not None:
        return decode_base64url((part.get("body") or {}).get("data"))
    return ""


def _find_part(payload: dict, mime_type: str) -> Optional[dict]:
    for part in payload.get("parts") or []:
        if not isinstance(part, dict):
            continue
        if part.get("mimeType") == mime_type and (part.get("body") or {}).get("data"):
            return part
        nested = _find_part(part, mime_type)
        if nested is not None:
            return nested
    return None


def _has_attachment_parts(payload: dict) -> bool:
    """Any part, at any depth, carrying a filename is an attachment."""
    for part in payload.get("parts") or []:
        if not isinstance(part, dict):
            continue
        if part.get("filename"):
            return True
        if _has_attachment_parts(part):
            return True
    return False
