"""In-memory credential store, keyed by (user, integration)."""

import asyncio
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

import structlog

from core.exceptions import NotFoundError

logger = structlog.get_logger(__name__)


class CredentialStore:
    """Stores one credential record per user/integration pair."""

    def __init__(self):
        self._records: Dict[Tuple[str, str], Dict[str, Any]] = {}
        self._lock = asyncio.Lock()

    async def save(self, user_id: str, integration_id: str, credentials: Dict[str, Any]) -> Dict[str, Any]:
        """Create or replace the record for the pair."""
        async with self._lock:
            now = datetime.now(timezone.utc)
            previous = self._records.get((user_id, integration_id))
            record = {
                "user_id": user_id,
                "integration_id": integration_id,
                "credentials": dict(credentials),
                "created_at": previous["created_at"] if previous else now,
                "updated_at": now,
            }
            self._records[(user_id, integration_id)] = record
        logger.info("Credentials saved", user_id=user_id, integration_id=integration_id)
        return record

    async def get(self, user_id: str, integration_id: str) -> Optional[Dict[str, Any]]:
        async with self._lock:
            record = self._records.get((user_id, integration_id))
            return dict(record["credentials"]) if record else None

    async def delete(self, user_id: str, integration_id: str) -> None:
        """Remove the record for the pair.

        Raises:
            NotFoundError: if the user never connected the integration
        """
        async with self._lock:
            if self._records.pop((user_id, integration_id), None) is None:
                raise NotFoundError(f"No credentials for integration '{integration_id}'")
        logger.info("Credentials deleted", user_id=user_id, integration_id=integration_id)

    async def is_connected(self, user_id: str, integration_id: str) -> bool:
        async with self._lock:
            return (user_id, integration_id) in self._records

    async def list_connected(self, user_id: str) -> List[str]:
        async with self._lock:
            return sorted(iid for uid, iid in self._records if uid == user_id)


# Singleton
_store: Optional[CredentialStore] = None


def get_credential_store() -> CredentialStore:
    global _store
    if _store is None:
        _store = CredentialStore()
    return _store
