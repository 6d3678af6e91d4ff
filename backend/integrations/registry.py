"""
Integration Registry.

Central hub for the third-party services workflows can call.
Each integration is described by a manifest (display metadata plus an
operation table) and resolved to a ServiceClient at call time, with the
calling user's stored credentials injected.

Features:
- Register manifests at runtime or load them from ``*/manifest.json``
- Override the client for an integration (custom SDK wrappers, test fakes)
- Per-user listing with a ``connected`` flag
"""

import json
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import structlog

from core.exceptions import NotFoundError, ValidationError
from integrations.client import HttpServiceClient, IntegrationManifest, ServiceClient
from integrations.credentials import CredentialStore, get_credential_store

logger = structlog.get_logger(__name__)

ClientFactory = Callable[[IntegrationManifest, Dict[str, Any]], ServiceClient]


def _default_client_factory(manifest: IntegrationManifest, credentials: Dict[str, Any]) -> ServiceClient:
    return HttpServiceClient(manifest, credentials)


class IntegrationRegistry:
    """
    Registry of all available integrations.

    Usage:
        registry = get_integration_registry()
        registry.register(IntegrationManifest.from_dict({...}))
        client = await registry.get_client("crm", user_id="u-1")
        result = await client.call("get_contact", {"contact_id": 7})
    """

    def __init__(self, credential_store: Optional[CredentialStore] = None):
        self._manifests: Dict[str, IntegrationManifest] = {}
        self._factories: Dict[str, ClientFactory] = {}
        self._clients: Dict[str, ServiceClient] = {}
        self._credential_store = credential_store

    @property
    def credential_store(self) -> CredentialStore:
        if self._credential_store is None:
            self._credential_store = get_credential_store()
        return self._credential_store

    def register(
        self,
        manifest: IntegrationManifest,
        client_factory: Optional[ClientFactory] = None,
    ) -> IntegrationManifest:
        """Register (or replace) an integration manifest."""
        if manifest.id in self._manifests:
            logger.warning("Integration already registered, overwriting", integration_id=manifest.id)
        self._manifests[manifest.id] = manifest
        self._factories[manifest.id] = client_factory or _default_client_factory
        logger.info("Integration registered", integration_id=manifest.id, operations=len(manifest.operations))
        return manifest

    def register_client(
        self,
        integration_id: str,
        client: ServiceClient,
        manifest: Optional[IntegrationManifest] = None,
    ) -> None:
        """Bind a ready-made client to an integration, bypassing the factory."""
        if not isinstance(client, ServiceClient):
            raise TypeError(f"{client!r} does not implement call(operation, parameters)")
        if integration_id not in self._manifests:
            self.register(manifest or IntegrationManifest(id=integration_id))
        self._clients[integration_id] = client

    def unregister(self, integration_id: str) -> bool:
        removed = self._manifests.pop(integration_id, None) is not None
        self._factories.pop(integration_id, None)
        self._clients.pop(integration_id, None)
        if removed:
            logger.info("Integration unregistered", integration_id=integration_id)
        return removed

    def get(self, integration_id: str) -> Optional[IntegrationManifest]:
        return self._manifests.get(integration_id)

    def has(self, integration_id: str) -> bool:
        return integration_id in self._manifests

    def list_all(self) -> List[dict]:
        return [m.to_dict() for m in self._manifests.values()]

    async def get_client(self, integration_id: str, user_id: Optional[str] = None) -> ServiceClient:
        """Resolve the client for an integration, with the user's credentials.

        Raises:
            NotFoundError: if the integration is not registered
        """
        if integration_id in self._clients:
            return self._clients[integration_id]

        manifest = self._manifests.get(integration_id)
        if manifest is None:
            raise NotFoundError(f"Integration '{integration_id}' not found")

        credentials: Dict[str, Any] = {}
        if user_id is not None:
            credentials = await self.credential_store.get(user_id, integration_id) or {}
        return self._factories[integration_id](manifest, credentials)

    async def list_for_user(
        self,
        user_id: str,
        credential_store: Optional[CredentialStore] = None,
    ) -> List[dict]:
        """All integrations with a per-user ``connected`` flag.

        Sorted connected-first, then by display name (case-insensitive).
        """
        store = credential_store or self.credential_store
        connected = set(await store.list_connected(user_id))
        items = [
            {**manifest.to_dict(), "connected": manifest.id in connected}
            for manifest in self._manifests.values()
        ]
        items.sort(key=lambda i: (not i["connected"], i["display_name"].lower()))
        return items

    def load_manifests(self, directory: str) -> int:
        """Register every ``<directory>/<integration>/manifest.json``.

        The folder name is used as the id when the manifest has none.
        Returns the number of manifests loaded.
        """
        root = Path(directory)
        if not root.is_dir():
            raise NotFoundError(f"Integrations directory not found: {directory}")

        loaded = 0
        for manifest_path in sorted(root.glob("*/manifest.json")):
            try:
                data = json.loads(manifest_path.read_text(encoding="utf-8"))
            except (OSError, json.JSONDecodeError) as e:
                raise ValidationError(f"Invalid integration manifest {manifest_path}: {e}") from e
            data.setdefault("id", manifest_path.parent.name)
            self.register(IntegrationManifest.from_dict(data))
            loaded += 1

        logger.info("Loaded integration manifests", directory=str(root), count=loaded)
        return loaded


# ─── Singleton ─────────────────────────────────────────────────────

_registry: Optional[IntegrationRegistry] = None


def get_integration_registry() -> IntegrationRegistry:
    """Get or create the singleton integration registry."""
    global _registry
    if _registry is None:
        _registry = IntegrationRegistry()
    return _registry
