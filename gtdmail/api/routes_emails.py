"""
Email fetch route.

Fetching is read-only: nothing is marked read or moved on the provider.
Errors map through the app's error handlers (401 auth expired, 503
provider unavailable, 504 timeout).
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import Field

from gtdmail.api.dependencies import get_mail_service, require_user
from gtdmail.mail.schemas import CamelModel
from gtdmail.mail.service import MailService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/emails", tags=["emails"])


class FetchRequest(CamelModel):
    account_id: str = Field(min_length=1)
    max_results: int = Field(default=50, ge=1, le=500)
    timeout_seconds: Optional[float] = Field(default=None, gt=0)


@router.post("/fetch")
async def fetch_emails(
    body: FetchRequest,
    user_id: str = Depends(require_user),
    service: MailService = Depends(get_mail_service),
):
    emails = await service.fetch_emails(
        body.account_id,
        max_results=body.max_results,
        timeout=body.timeout_seconds,
        user_id=user_id,
    )
    return {"emails": [email.model_dump(mode="json", by_alias=True) for email in emails]}
