"""
Persistence boundaries for classifications.

Each classification is written twice:
- a structured record keyed by (email_id, user_id), which is what queries
  read
- a backup blob at {user_id}/{email_id}/classification.json holding the
  same payload plus a timestamp

The real storage engines live outside this package. The in-memory stores
back tests and single-process runs; FileBackupStore writes the backup blobs
to a local directory.
"""

import asyncio
import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional, Protocol

from gtdmail.classification.schemas import ClassificationRecord, EmailCategory
from gtdmail.errors import StorageError

logger = logging.getLogger(__name__)


class ClassificationStore(Protocol):
    async def get(self, email_id: str, user_id: str) -> Optional[ClassificationRecord]: ...

    async def put(self, record: ClassificationRecord) -> None: ...

    async def list_by_category(
        self, category: EmailCategory, user_id: str, limit: int = 100
    ) -> list[ClassificationRecord]: ...


class BackupStore(Protocol):
    async def put(self, key: str, payload: dict[str, Any]) -> None: ...


def backup_key(user_id: str, email_id: str) -> str:
    return f"{user_id}/{email_id}/classification.json"


def backup_payload(record: ClassificationRecord, timestamp: Optional[datetime] = None) -> dict[str, Any]:
    timestamp = timestamp or datetime.now(timezone.utc)
    return {
        "metadata": record.metadata.model_dump(mode="json", by_alias=True),
        "confidence": record.confidence,
        "reasoning": list(record.reasoning),
        "timestamp": timestamp.isoformat(),
    }


def record_sort_key(record: ClassificationRecord) -> tuple:
    """URGENT first, then the most recent message."""
    recent = record.email_date or record.metadata.last_updated
    if recent.tzinfo is None:
        recent = recent.replace(tzinfo=timezone.utc)
    return (-record.metadata.priority.rank, -recent.timestamp())


class InMemoryClassificationStore:
    def __init__(self):
        self._records: dict[tuple[str, str], ClassificationRecord] = {}

    async def get(self, email_id: str, user_id: str) -> Optional[ClassificationRecord]:
        return self._records.get((email_id, user_id))

    async def put(self, record: ClassificationRecord) -> None:
        self._records[(record.email_id, record.user_id)] = record

    async def list_by_category(
        self, category: EmailCategory, user_id: str, limit: int = 100
    ) -> list[ClassificationRecord]:
        matching = [
            r for r in self._records.values()
            if r.user_id == user_id and r.metadata.category == category
        ]
        return sorted(matching, key=record_sort_key)[:limit]


class InMemoryBackupStore:
    def __init__(self):
        self.objects: dict[str, dict[str, Any]] = {}

    async def put(self, key: str, payload: dict[str, Any]) -> None:
        self.objects[key] = payload


class FileBackupStore:
    """Writes each backup blob as a JSON file under `root`."""

    def __init__(self, root: str):
        self._root = Path(root)

    def path_for(self, key: str) -> Path:
        parts = key.split("/")
        if any(part in ("", ".", "..") or "\\" in part for part in parts):
            raise StorageError(f"Unsafe backup key: {key!r}")
        return self._root.joinpath(*parts)

    async def put(self, key: str, payload: dict[str, Any]) -> None:
        path = self.path_for(key)
        try:
            await asyncio.to_thread(self._write, path, payload)
        except OSError as e:
            logger.error(
                "backup.write_failed",
                extra={"action": "backup.write_failed", "key": key, "error": str(e)},
            )
            raise StorageError(f"Backup write failed for {key}: {e}") from e

    @staticmethod
    def _write(path: Path, payload: dict[str, Any]) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_suffix(".json.tmp")
        tmp.write_text(json.dumps(payload, indent=2))
        tmp.replace(path)
