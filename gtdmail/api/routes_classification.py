"""
Classification API routes.

These endpoints handle:
- Classifying one email, or a batch, with the rule engine
- Recording the user's own classification for an email
- Listing classified emails by category
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import Field

from gtdmail.api.dependencies import get_orchestrator, require_user
from gtdmail.classification.orchestrator import ClassificationOrchestrator
from gtdmail.classification.schemas import ClassificationMetadata, Email, EmailCategory
from gtdmail.mail.schemas import CamelModel

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/emails", tags=["classification"])


class ClassifyRequest(CamelModel):
    email: Optional[Email] = None
    force: bool = False


class BatchClassifyRequest(CamelModel):
    emails: list[Email] = Field(default_factory=list)
    force: bool = False


class UpdateCategoryRequest(CamelModel):
    classification: ClassificationMetadata


def _dump(model) -> dict:
    return model.model_dump(mode="json", by_alias=True)


@router.post("/classify")
async def classify_email(
    body: ClassifyRequest,
    user_id: str = Depends(require_user),
    orchestrator: ClassificationOrchestrator = Depends(get_orchestrator),
):
    outcome = await orchestrator.classify_email(body.email, user_id, force=body.force)
    return {"success": True, "data": _dump(outcome)}


@router.post("/batch/categorize")
async def classify_batch(
    body: BatchClassifyRequest,
    user_id: str = Depends(require_user),
    orchestrator: ClassificationOrchestrator = Depends(get_orchestrator),
):
    outcomes = await orchestrator.classify_batch(body.emails, user_id, force=body.force)
    return {"success": True, "data": {"results": [_dump(outcome) for outcome in outcomes]}}


@router.patch("/{email_id}/category")
async def update_category(
    email_id: str,
    body: UpdateCategoryRequest,
    user_id: str = Depends(require_user),
    orchestrator: ClassificationOrchestrator = Depends(get_orchestrator),
):
    record = await orchestrator.update_classification(email_id, user_id, body.classification)
    return {"success": True, "data": _dump(record)}


@router.get("")
async def list_by_category(
    category: EmailCategory = Query(description="GTD category to list"),
    limit: int = Query(default=100, ge=1, le=500),
    user_id: str = Depends(require_user),
    orchestrator: ClassificationOrchestrator = Depends(get_orchestrator),
):
    records = await orchestrator.list_by_category(category, user_id, limit=limit)
    return {"success": True, "data": [_dump(record) for record in records]}
