"""
Classification orchestrator: sequences classification requests.

The orchestrator does NOT evaluate rules itself. It validates the request,
runs the RuleEngine, and hands each result to the two storage
collaborators (structured record + backup blob).

Two guarantees live here rather than in the engine:
- A classification the user set by hand is never replaced by an automatic
  pass. Only force=True or another user update changes it.
- Writes are per message. In a batch, one message's failed write is
  reported on that message's result and does not affect the others.
  Nothing already written is rolled back: when only the backup write
  fails, the outcome still says `updated` because the record landed.

Usage:
    orchestrator = ClassificationOrchestrator(engine, store, backups)
    outcome = await orchestrator.classify_email(email, user_id)
    outcomes = await orchestrator.classify_batch(emails, user_id)
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Callable, Optional, Sequence

from pydantic import Field

from gtdmail.classification.engine import RuleEngine
from gtdmail.classification.schemas import (
    ClassificationMetadata,
    ClassificationRecord,
    Email,
    EmailCategory,
)
from gtdmail.classification.storage import (
    BackupStore,
    ClassificationStore,
    backup_key,
    backup_payload,
)
from gtdmail.errors import InvalidClassificationRequest, StorageError
from gtdmail.logging.audit import audit
from gtdmail.mail.schemas import CamelModel

logger = logging.getLogger(__name__)

USER_SET_REASON = "Kept classification set by user; automatic reclassification does not overwrite it"


class ClassificationOutcome(CamelModel):
    """Result of one classification request, as returned to callers."""

    email_id: str
    classification: ClassificationMetadata
    confidence: float = Field(ge=0.0, le=1.0)
    reasoning: list[str] = Field(default_factory=list)
    rule_id: Optional[str] = None
    # False when the stored user classification was kept instead.
    updated: bool = True
    error: Optional[str] = None


class ClassificationOrchestrator:
    def __init__(
        self,
        engine: RuleEngine,
        store: ClassificationStore,
        backups: BackupStore,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self._engine = engine
        self._store = store
        self._backups = backups
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    # =========================================================================
    # AUTOMATIC CLASSIFICATION
    # =========================================================================

    async def classify_email(
        self, email: Optional[Email], user_id: str, force: bool = False
    ) -> ClassificationOutcome:
        """
        Classify and store one email.

        Raises InvalidClassificationRequest before any rule runs if the email
        or user id is missing, and StorageError if the write fails.
        """
        if email is None or not user_id:
            raise InvalidClassificationRequest("Both an email and a user id are required")

        outcome = await self._classify_and_store(email, user_id, force)
        audit.info(
            "classification.completed",
            user_id=user_id,
            email_id=email.id,
            category=outcome.classification.category.value,
            confidence=outcome.confidence,
            updated=outcome.updated,
        )
        return outcome

    async def classify_batch(
        self, emails: Sequence[Email], user_id: str, force: bool = False
    ) -> list[ClassificationOutcome]:
        """
        Classify and store many emails, independently, in input order.

        A failed write shows up as `error` on that email's outcome, and
        `updated` says whether its structured record was stored.
        """
        if not emails or not user_id:
            raise InvalidClassificationRequest("A non-empty email list and a user id are required")
        if any(email is None for email in emails):
            raise InvalidClassificationRequest("Batch contains an empty email entry")

        with audit.timed("classification.batch.completed", user_id=user_id, count=len(emails)) as fields:
            outcomes = await asyncio.gather(
                *(self._classify_and_store(email, user_id, force, contain_errors=True) for email in emails)
            )
            fields["failed"] = sum(1 for outcome in outcomes if outcome.error)
            fields["kept_user_set"] = sum(1 for outcome in outcomes if not outcome.updated and not outcome.error)
        return list(outcomes)

    async def _classify_and_store(
        self, email: Email, user_id: str, force: bool, contain_errors: bool = False
    ) -> ClassificationOutcome:
        """
        Classify, then write the record and the backup, in that order.

        With contain_errors a failed write is reported on the outcome instead
        of raised: `updated` says whether the structured record landed, and
        `error` names the write that failed. Without it the StorageError
        propagates; a failed backup write leaves the record already stored.
        """
        result = self._engine.classify(email, now=self._clock())
        outcome = ClassificationOutcome(
            email_id=email.id,
            classification=result.metadata,
            confidence=result.confidence,
            reasoning=result.reasoning,
            rule_id=result.rule_id,
        )

        try:
            existing = await self._store.get(email.id, user_id)
        except StorageError as e:
            if not contain_errors:
                raise
            return self._write_failed(outcome, user_id, "record read", e, updated=False)

        if existing is not None and existing.metadata.last_updated_by == "user" and not force:
            logger.info(
                "classification.user_set_kept",
                extra={"action": "classification.user_set_kept", "email_id": email.id, "user_id": user_id},
            )
            return ClassificationOutcome(
                email_id=email.id,
                classification=existing.metadata,
                confidence=existing.confidence,
                reasoning=[USER_SET_REASON],
                rule_id=existing.rule_id,
                updated=False,
            )

        record = ClassificationRecord(
            email_id=email.id,
            user_id=user_id,
            metadata=result.metadata,
            confidence=result.confidence,
            reasoning=result.reasoning,
            rule_id=result.rule_id,
            email_date=email.date,
        )
        try:
            await self._store.put(record)
        except StorageError as e:
            if not contain_errors:
                raise
            return self._write_failed(outcome, user_id, "record write", e, updated=False)

        try:
            await self._put_backup(record)
        except StorageError as e:
            if not contain_errors:
                raise
            return self._write_failed(outcome, user_id, "backup write", e, updated=True)

        return outcome

    @staticmethod
    def _write_failed(
        outcome: ClassificationOutcome, user_id: str, stage: str, error: StorageError, updated: bool
    ) -> ClassificationOutcome:
        logger.error(
            "classification.store_failed",
            extra={
                "action": "classification.store_failed",
                "email_id": outcome.email_id,
                "user_id": user_id,
                "stage": stage,
                "record_stored": updated,
                "error": str(error),
            },
        )
        return outcome.model_copy(update={"updated": updated, "error": f"{stage} failed: {error}"})

    # =========================================================================
    # USER CORRECTIONS AND QUERIES
    # =========================================================================

    async def update_classification(
        self, email_id: str, user_id: str, classification: ClassificationMetadata
    ) -> ClassificationRecord:
        """Store a classification chosen by the user. It wins over later automatic passes."""
        if not email_id or not user_id or classification is None:
            raise InvalidClassificationRequest("Email id, user id and classification are required")

        existing = await self._store.get(email_id, user_id)
        metadata = classification.model_copy(
            update={"last_updated": self._clock(), "last_updated_by": "user"}
        )
        record = ClassificationRecord(
            email_id=email_id,
            user_id=user_id,
            metadata=metadata,
            confidence=metadata.confidence,
            reasoning=["Set by user"],
            email_date=existing.email_date if existing else None,
        )
        await self._write(record)

        audit.info(
            "classification.corrected",
            user_id=user_id,
            email_id=email_id,
            category=metadata.category.value,
            previous_category=existing.metadata.category.value if existing else None,
        )
        return record

    async def list_by_category(
        self, category: EmailCategory, user_id: str, limit: int = 100
    ) -> list[ClassificationRecord]:
        """Classified emails in one category, URGENT first, then most recent."""
        if not user_id:
            raise InvalidClassificationRequest("A user id is required")
        return await self._store.list_by_category(category, user_id, limit)

    async def _write(self, record: ClassificationRecord) -> None:
        await self._store.put(record)
        await self._put_backup(record)

    async def _put_backup(self, record: ClassificationRecord) -> None:
        await self._backups.put(
            backup_key(record.user_id, record.email_id),
            backup_payload(record, self._clock()),
        )
