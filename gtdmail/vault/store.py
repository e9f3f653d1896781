"""
Account storage boundary.

The relational/KV storage engine lives outside this package; the core only
needs the operations in AccountStore. Stored accounts carry credentials in
encrypted form only.

InMemoryAccountStore backs tests and single-process deployments. Sessions
are lost on restart, and so are connected accounts.
"""

import logging
from datetime import datetime, timezone
from typing import Optional, Protocol

from gtdmail.errors import AccountNotFoundError
from gtdmail.mail.schemas import EmailAccount

logger = logging.getLogger(__name__)


class AccountStore(Protocol):
    async def get(self, account_id: str) -> Optional[EmailAccount]: ...

    async def put(self, account: EmailAccount) -> None: ...

    async def list_for_user(self, user_id: str) -> list[EmailAccount]: ...

    async def update_credentials(self, account_id: str, ciphertext: str) -> None: ...

    async def mark_disconnected(self, account_id: str, reason: str) -> None: ...

    async def mark_synced(self, account_id: str) -> None: ...


class InMemoryAccountStore:
    """Dict-backed AccountStore."""

    def __init__(self):
        self._accounts: dict[str, EmailAccount] = {}

    async def get(self, account_id: str) -> Optional[EmailAccount]:
        return self._accounts.get(account_id)

    async def put(self, account: EmailAccount) -> None:
        self._accounts[account.id] = account

    async def list_for_user(self, user_id: str) -> list[EmailAccount]:
        return [a for a in self._accounts.values() if a.user_id == user_id]

    async def update_credentials(self, account_id: str, ciphertext: str) -> None:
        account = self._require(account_id)
        self._accounts[account_id] = account.model_copy(
            update={"credentials": ciphertext, "updated_at": _now()}
        )

    async def mark_disconnected(self, account_id: str, reason: str) -> None:
        account = self._require(account_id)
        self._accounts[account_id] = account.model_copy(
            update={
                "is_connected": False,
                "status": "disconnected",
                "error": reason,
                "updated_at": _now(),
            }
        )
        logger.warning(
            "account.disconnected",
            extra={"action": "account.disconnected", "account_id": account_id},
        )

    async def mark_synced(self, account_id: str) -> None:
        account = self._require(account_id)
        now = _now()
        self._accounts[account_id] = account.model_copy(
            update={"last_sync_at": now, "status": "active", "error": None, "updated_at": now}
        )

    def _require(self, account_id: str) -> EmailAccount:
        account = self._accounts.get(account_id)
        if account is None:
            raise AccountNotFoundError(f"Unknown account: {account_id}")
        return account


def _now() -> datetime:
    return datetime.now(timezone.utc)
