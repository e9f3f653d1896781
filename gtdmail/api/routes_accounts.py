"""
Account API routes.

These endpoints handle:
- Starting the OAuth consent flow for Gmail / Outlook
- Completing it from the provider's callback
- Adding an IMAP account
- Listing the caller's accounts (credentials are never returned)
"""

import logging

from fastapi import APIRouter, Depends, HTTPException
from pydantic import Field

from gtdmail.api.dependencies import get_mail_service, require_user
from gtdmail.mail.schemas import CamelModel, EmailProvider, ImapCredentials
from gtdmail.mail.service import MailService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/email/accounts", tags=["accounts"])

OAUTH_PROVIDERS = (EmailProvider.GMAIL, EmailProvider.OUTLOOK)


class ConnectRequest(CamelModel):
    provider: EmailProvider
    redirect_uri: str = Field(min_length=1)
    state: str = ""


class CallbackRequest(CamelModel):
    provider: EmailProvider
    code: str = Field(min_length=1)
    redirect_uri: str = Field(min_length=1)
    email: str = ""


class ImapAccountRequest(CamelModel):
    host: str = Field(min_length=1)
    port: int = Field(default=993, gt=0, lt=65536)
    username: str = Field(min_length=1)
    password: str = Field(min_length=1, repr=False)
    use_tls: bool = Field(default=True, alias="useTLS")
    email: str = ""


def _require_oauth_provider(provider: EmailProvider) -> None:
    if provider not in OAUTH_PROVIDERS:
        raise HTTPException(status_code=400, detail=f"{provider.value} does not use OAuth")


@router.post("/connect")
async def connect(
    body: ConnectRequest,
    user_id: str = Depends(require_user),
    service: MailService = Depends(get_mail_service),
):
    """Return the provider consent URL to send the user's browser to."""
    _require_oauth_provider(body.provider)
    auth_url = service.build_authorization_url(body.provider, body.redirect_uri, body.state)
    return {"authUrl": auth_url}


@router.post("/callback")
async def callback(
    body: CallbackRequest,
    user_id: str = Depends(require_user),
    service: MailService = Depends(get_mail_service),
):
    """Exchange the authorization code and store the new account."""
    _require_oauth_provider(body.provider)
    account = await service.connect_oauth_account(
        user_id, body.provider, body.code, body.redirect_uri, email=body.email
    )
    return {"accountId": account.id}


@router.post("/imap")
async def add_imap(
    body: ImapAccountRequest,
    user_id: str = Depends(require_user),
    service: MailService = Depends(get_mail_service),
):
    credentials = ImapCredentials(
        host=body.host,
        port=body.port,
        username=body.username,
        password=body.password,
        use_tls=body.use_tls,
    )
    account = await service.add_imap_account(user_id, credentials, email=body.email)
    return {"accountId": account.id}


@router.get("")
async def list_accounts(
    user_id: str = Depends(require_user),
    service: MailService = Depends(get_mail_service),
):
    accounts = await service.list_accounts(user_id)
    return {"accounts": [account.public_view() for account in accounts]}
