"""
FastAPI dependencies: caller identity and the wired-up services.

User registration and token issuance happen upstream; by the time a request
reaches this app, the gateway has put the caller's id in X-User-ID.
"""

from typing import Optional

from fastapi import Header, HTTPException, Request

from gtdmail.classification.orchestrator import ClassificationOrchestrator
from gtdmail.logging.config import current_user_var
from gtdmail.mail.service import MailService


async def require_user(x_user_id: Optional[str] = Header(default=None)) -> str:
    """The calling user's id. 401 when the gateway did not supply one."""
    if not x_user_id or not x_user_id.strip():
        raise HTTPException(status_code=401, detail="Not authenticated")
    user_id = x_user_id.strip()
    current_user_var.set(user_id)
    return user_id


def get_mail_service(request: Request) -> MailService:
    return request.app.state.mail_service


def get_orchestrator(request: Request) -> ClassificationOrchestrator:
    return request.app.state.orchestrator
