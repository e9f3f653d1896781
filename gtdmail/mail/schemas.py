"""
Canonical mail models.

Every provider variant maps its wire format into EmailMetadata. Credentials
are a tagged union; the `provider` tag decides which client may consume them.

JSON payloads use camelCase (accountId, receivedAt, ...) through aliases;
Python code uses the snake_case attribute names.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

SNIPPET_MAX_CHARS = 200


class CamelModel(BaseModel):
    """Base model serializing to camelCase, accepting either case on input."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class EmailProvider(str, Enum):
    GMAIL = "GMAIL"
    OUTLOOK = "OUTLOOK"
    IMAP = "IMAP"


class EmailAddress(CamelModel):
    """A mailbox: display name (possibly empty) and address."""

    model_config = ConfigDict(frozen=True)

    name: str = ""
    email: str = ""


class EmailRecipients(CamelModel):
    model_config = ConfigDict(frozen=True)

    to: list[EmailAddress] = Field(default_factory=list)
    cc: list[EmailAddress] = Field(default_factory=list)
    bcc: list[EmailAddress] = Field(default_factory=list)

    def all(self) -> list[EmailAddress]:
        return [*self.to, *self.cc, *self.bcc]


def _now() -> datetime:
    return datetime.now(timezone.utc)


class EmailMetadata(CamelModel):
    """
    Canonical message record produced by every provider variant.

    Created on fetch and never mutated afterwards. `date` and `received_at`
    are always populated: a missing or unparseable value becomes "now".
    """

    model_config = ConfigDict(frozen=True)

    id: str
    account_id: str = ""
    provider_id: str = ""
    thread_id: str = ""
    subject: str = ""
    sender: EmailAddress = Field(default_factory=EmailAddress)
    recipients: EmailRecipients = Field(default_factory=EmailRecipients)
    date: datetime = Field(default_factory=_now)
    received_at: datetime = Field(default_factory=_now)
    size: int = Field(default=0, ge=0)
    labels: list[str] = Field(default_factory=list)
    is_read: bool = False
    is_starred: bool = False
    is_draft: bool = False
    is_sent: bool = False
    is_trash: bool = False
    is_spam: bool = False
    has_attachments: bool = False
    snippet: str = ""
    preview_text: str = ""

    @field_validator("date", "received_at", mode="before")
    @classmethod
    def _never_null(cls, value):
        return _now() if value is None else value

    @field_validator("snippet")
    @classmethod
    def _truncate_snippet(cls, value: str) -> str:
        return value[:SNIPPET_MAX_CHARS]

    @field_validator("labels")
    @classmethod
    def _dedupe_labels(cls, value: list[str]) -> list[str]:
        return list(dict.fromkeys(value))


# =========================================================================
# CREDENTIALS: tagged union over the three provider variants
# =========================================================================

class OAuthCredentials(CamelModel):
    """Token set shared by the Gmail and Outlook variants."""

    access_token: str = Field(repr=False)
    refresh_token: str = Field(default="", repr=False)
    expires_at: datetime
    scope: list[str] = Field(default_factory=list)
    client_id: str = ""
    client_secret: str = Field(default="", repr=False)

    def is_expired(self, now: Optional[datetime] = None, skew_seconds: int = 0) -> bool:
        """True once `expires_at` (less the skew) is at or before `now`."""
        now = now or _now()
        expires_at = self.expires_at
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        return expires_at.timestamp() - skew_seconds <= now.timestamp()


class GmailOAuthCredentials(OAuthCredentials):
    provider: Literal["GMAIL"] = "GMAIL"


class OutlookOAuthCredentials(OAuthCredentials):
    provider: Literal["OUTLOOK"] = "OUTLOOK"


class ImapCredentials(CamelModel):
    provider: Literal["IMAP"] = "IMAP"
    host: str
    port: int = 993
    username: str
    password: str = Field(repr=False)
    use_tls: bool = Field(default=True, alias="useTLS")


ProviderCredentials = Annotated[
    Union[GmailOAuthCredentials, OutlookOAuthCredentials, ImapCredentials],
    Field(discriminator="provider"),
]

AnyOAuthCredentials = Union[GmailOAuthCredentials, OutlookOAuthCredentials]


# =========================================================================
# ACCOUNTS: stored with encrypted credentials only
# =========================================================================

class EmailAccountSettings(CamelModel):
    sync_frequency: int = Field(default=15, description="Minutes between syncs")
    folders_to_sync: list[str] = Field(default_factory=list)
    exclude_patterns: list[str] = Field(default_factory=list)
    max_emails_per_sync: int = 100
    retention_days: int = 30
    auto_archive: bool = False
    auto_delete: bool = False


class EmailAccount(CamelModel):
    """
    A connected mailbox. `credentials` holds the encrypted credential blob,
    never plaintext.
    """

    id: str
    user_id: str
    provider: EmailProvider
    email: str = ""
    display_name: str = ""
    is_primary: bool = False
    is_connected: bool = True
    status: Literal["active", "error", "disconnected"] = "active"
    error: Optional[str] = None
    credentials: str = Field(repr=False)
    settings: EmailAccountSettings = Field(default_factory=EmailAccountSettings)
    created_at: datetime = Field(default_factory=_now)
    updated_at: datetime = Field(default_factory=_now)
    last_sync_at: Optional[datetime] = None

    def public_view(self) -> dict:
        """Serializable account summary without the credential blob."""
        return self.model_dump(mode="json", by_alias=True, exclude={"credentials"})
