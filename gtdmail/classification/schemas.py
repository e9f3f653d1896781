"""
Data models for GTD classification.

Rules are configuration: they are read, never written, by the engine.
A classification is stored separately from the message it describes,
keyed by (email_id, user_id).
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Literal, Optional

from pydantic import Field, field_validator, model_validator

from gtdmail.mail.schemas import CamelModel, EmailAddress, EmailMetadata


def _now() -> datetime:
    return datetime.now(timezone.utc)


class EmailCategory(str, Enum):
    ACTIONABLE = "ACTIONABLE"
    TO_READ = "TO_READ"
    REFERENCE = "REFERENCE"
    AWAITING_RESPONSE = "AWAITING_RESPONSE"
    DELEGATED = "DELEGATED"
    SCHEDULED = "SCHEDULED"
    ARCHIVED = "ARCHIVED"
    TRASH = "TRASH"
    SPAM = "SPAM"
    UNCLASSIFIED = "UNCLASSIFIED"


class Priority(str, Enum):
    """Rule and message priority. Compare with `rank`, not the string value."""

    URGENT = "URGENT"
    HIGH = "HIGH"
    MEDIUM = "MEDIUM"
    LOW = "LOW"
    NONE = "NONE"

    @property
    def rank(self) -> int:
        return _PRIORITY_RANK[self]


_PRIORITY_RANK = {
    Priority.URGENT: 4,
    Priority.HIGH: 3,
    Priority.MEDIUM: 2,
    Priority.LOW: 1,
    Priority.NONE: 0,
}


class ActionStatus(str, Enum):
    NOT_STARTED = "NOT_STARTED"
    IN_PROGRESS = "IN_PROGRESS"
    WAITING = "WAITING"
    COMPLETED = "COMPLETED"
    DEFERRED = "DEFERRED"
    CANCELLED = "CANCELLED"


ConditionField = Literal["subject", "body", "sender", "recipients", "date", "attachments", "labels"]
ConditionOperator = Literal[
    "contains", "equals", "startsWith", "endsWith", "regex", "greaterThan", "lessThan"
]
ActionType = Literal[
    "setCategory", "setPriority", "addLabel", "removeLabel", "setDueDate", "setProject", "setContext"
]


class RuleCondition(CamelModel):
    field: ConditionField
    operator: ConditionOperator
    value: Any


class RuleAction(CamelModel):
    type: ActionType
    value: Any


class CategoryRule(CamelModel):
    """
    A named set of conditions (all must hold) and the actions to apply when
    they do. `category` and `priority` seed the classification before the
    actions run; `priority` also decides which of several matching rules wins.
    """

    id: str
    name: str
    description: str = ""
    category: EmailCategory
    priority: Priority = Priority.MEDIUM
    conditions: list[RuleCondition] = Field(default_factory=list)
    actions: list[RuleAction] = Field(default_factory=list)
    is_active: bool = True
    created_at: datetime = Field(default_factory=_now)
    updated_at: datetime = Field(default_factory=_now)

    @field_validator("id", mode="before")
    @classmethod
    def _id_as_string(cls, value: Any) -> str:
        return str(value)


class ClassificationMetadata(CamelModel):
    category: EmailCategory = EmailCategory.UNCLASSIFIED
    priority: Priority = Priority.MEDIUM
    action_status: ActionStatus = ActionStatus.NOT_STARTED
    labels: list[str] = Field(default_factory=list)
    due_date: Optional[datetime] = None
    scheduled_date: Optional[datetime] = None
    estimated_duration: Optional[int] = Field(default=None, ge=0, description="Minutes")
    project: Optional[str] = None
    context: Optional[str] = None
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    last_updated: datetime = Field(default_factory=_now)
    last_updated_by: Literal["system", "user"] = "system"


class ClassificationResult(CamelModel):
    """What the engine returns for one message."""

    metadata: ClassificationMetadata
    confidence: float = Field(ge=0.0, le=1.0)
    reasoning: list[str] = Field(min_length=1)
    rule_id: Optional[str] = None


class Attachment(CamelModel):
    filename: str = ""
    content_type: str = ""
    size: int = Field(default=0, ge=0)


class Email(CamelModel):
    """
    The message as the classifier sees it.

    `sender` also accepts the key "from" on input.
    """

    id: str
    subject: str = ""
    sender: EmailAddress = Field(default_factory=EmailAddress)
    to: list[EmailAddress] = Field(default_factory=list)
    cc: list[EmailAddress] = Field(default_factory=list)
    bcc: list[EmailAddress] = Field(default_factory=list)
    date: Optional[datetime] = None
    content: str = ""
    snippet: str = ""
    labels: list[str] = Field(default_factory=list)
    attachments: list[Attachment] = Field(default_factory=list)

    @model_validator(mode="before")
    @classmethod
    def _accept_from(cls, data: Any) -> Any:
        if isinstance(data, dict) and "from" in data and "sender" not in data:
            data = {**data, "sender": data["from"]}
            del data["from"]
        return data

    @classmethod
    def from_metadata(cls, metadata: EmailMetadata) -> "Email":
        """
        Build classifier input from a fetched record.

        Metadata only says whether attachments exist, so a message with
        attachments gets a single placeholder entry.
        """
        return cls(
            id=metadata.id,
            subject=metadata.subject,
            sender=metadata.sender,
            to=list(metadata.recipients.to),
            cc=list(metadata.recipients.cc),
            bcc=list(metadata.recipients.bcc),
            date=metadata.date,
            content=metadata.preview_text,
            snippet=metadata.snippet,
            labels=list(metadata.labels),
            attachments=[Attachment()] if metadata.has_attachments else [],
        )


class ClassificationRecord(CamelModel):
    """The stored classification for one (email, user) pair."""

    email_id: str
    user_id: str
    metadata: ClassificationMetadata
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    reasoning: list[str] = Field(default_factory=list)
    rule_id: Optional[str] = None
    email_date: Optional[datetime] = None
