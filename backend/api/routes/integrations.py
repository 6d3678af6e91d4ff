"""
Integration API Routes.

Lists available integrations for the current user and manages the
stored credentials that connect them.
"""

from typing import Any, Dict

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from app.dependencies import get_credentials, get_current_user_id, get_integrations
from core.exceptions import NotFoundError
from integrations.credentials import CredentialStore
from integrations.registry import IntegrationRegistry

router = APIRouter()


# ─── Schemas ─────────────────────────────────────────────────────────

class ConnectRequest(BaseModel):
    integration_id: str
    credentials: Dict[str, Any] = Field(default_factory=dict)


class DisconnectRequest(BaseModel):
    integration_id: str


# ─── Endpoints ───────────────────────────────────────────────────────

@router.get("/", summary="List integrations with connection status")
async def list_integrations(
    user_id: str = Depends(get_current_user_id),
    registry: IntegrationRegistry = Depends(get_integrations),
    store: CredentialStore = Depends(get_credentials),
):
    """All integrations, connected ones first, then by display name."""
    items = await registry.list_for_user(user_id, store)
    return {
        "integrations": items,
        "total": len(items),
        "connected": sum(1 for i in items if i["connected"]),
    }


@router.post("/connect", summary="Store credentials for an integration")
async def connect_integration(
    body: ConnectRequest,
    user_id: str = Depends(get_current_user_id),
    registry: IntegrationRegistry = Depends(get_integrations),
    store: CredentialStore = Depends(get_credentials),
):
    if not registry.has(body.integration_id):
        raise NotFoundError(f"Integration '{body.integration_id}' not found")
    await store.save(user_id, body.integration_id, body.credentials)
    return {"message": f"Integration '{body.integration_id}' connected", "connected": True}


@router.post("/disconnect", summary="Remove stored credentials for an integration")
async def disconnect_integration(
    body: DisconnectRequest,
    user_id: str = Depends(get_current_user_id),
    store: CredentialStore = Depends(get_credentials),
):
    await store.delete(user_id, body.integration_id)
    return {"message": f"Integration '{body.integration_id}' disconnected", "connected": False}
