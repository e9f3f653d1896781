"""
Error taxonomy shared by the provider layer, the vault and the classifier.

Callers branch on the exception class, never on message text:

    AuthExpiredError        credentials rejected; flag the account, don't retry
    InvalidGrantError       refresh token rejected; account is disconnected
    TransientNetworkError   provider unavailable; caller may retry with backoff
    MalformedMessageError   one message could not be parsed; batch continues
    RuleConfigurationError  a rule is invalid; that rule is skipped
    UnsupportedProviderError  programming/config error; fail fast
"""

from typing import Optional


class GtdMailError(Exception):
    """Base class for every error raised by this package."""


class ProviderError(GtdMailError):
    """A remote mail provider failed."""

    def __init__(self, message: str, provider: Optional[str] = None):
        super().__init__(message)
        self.provider = provider


class AuthExpiredError(ProviderError):
    """The provider rejected the access token or login credentials."""


class InvalidGrantError(AuthExpiredError):
    """The refresh token was rejected. The account must be reconnected."""


class TransientNetworkError(ProviderError):
    """Provider or network unavailable. Safe to retry at the caller."""


class FetchTimeoutError(TransientNetworkError):
    """A fetch did not finish within the caller's timeout."""


class MalformedMessageError(ProviderError):
    """A single message could not be normalized."""

    def __init__(self, message: str, provider: Optional[str] = None, message_id: str = ""):
        super().__init__(message, provider)
        self.message_id = message_id


class UnsupportedProviderError(GtdMailError):
    """No provider variant exists for the requested tag."""


class CredentialMismatchError(UnsupportedProviderError):
    """Credentials were handed to a provider variant that cannot consume them."""


class AccountNotFoundError(GtdMailError):
    """No stored account for the given id."""


class RuleConfigurationError(GtdMailError):
    """A rule condition or action is invalid (e.g. a bad regex)."""

    def __init__(self, message: str, rule_id: str = ""):
        super().__init__(message)
        self.rule_id = rule_id


class InvalidClassificationRequest(GtdMailError, ValueError):
    """A classification request is missing the email or the user id."""


class StorageError(GtdMailError):
    """A persistence collaborator failed to write."""
