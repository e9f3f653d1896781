"""
Symmetric encryption for stored provider credentials.

Credentials are serialized to JSON and sealed with Fernet (AES-128-CBC +
HMAC-SHA256). The Fernet key is derived from Settings.encryption_key, so any
string secret works and rotating the secret makes old blobs unreadable.
"""

import base64
import hashlib
import logging

from cryptography.fernet import Fernet, InvalidToken
from pydantic import TypeAdapter, ValidationError

from gtdmail.config import Settings
from gtdmail.errors import AuthExpiredError
from gtdmail.mail.schemas import ProviderCredentials

logger = logging.getLogger(__name__)

_credentials_adapter: TypeAdapter = TypeAdapter(ProviderCredentials)


class CredentialCipher:
    """Encrypts and decrypts the tagged credential union."""

    def __init__(self, settings: Settings):
        key_bytes = hashlib.sha256(settings.encryption_key.encode()).digest()
        self._fernet = Fernet(base64.urlsafe_b64encode(key_bytes))

    def encrypt(self, credentials: ProviderCredentials) -> str:
        payload = _credentials_adapter.dump_json(credentials, by_alias=True)
        return self._fernet.encrypt(payload).decode()

    def decrypt(self, token: str) -> ProviderCredentials:
        """
        Decrypt a stored blob back into typed credentials.

        An unreadable blob (tampered, or sealed under another key) means the
        account has to be reconnected, so it surfaces as AuthExpiredError.
        """
        try:
            payload = self._fernet.decrypt(token.encode())
            return _credentials_adapter.validate_json(payload)
        except (InvalidToken, ValidationError, ValueError) as e:
            logger.warning(
                "vault.decrypt_failed",
                extra={"action": "vault.decrypt_failed", "error_type": type(e).__name__},
            )
            raise AuthExpiredError("Stored credentials could not be decrypted") from e
