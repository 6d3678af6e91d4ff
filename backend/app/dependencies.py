"""FastAPI dependency injection functions."""

from typing import Optional

from fastapi import Header

from integrations.credentials import CredentialStore, get_credential_store
from integrations.registry import IntegrationRegistry, get_integration_registry
from nodes.registry import NodeRegistry, get_node_registry
from workflow.engine import WorkflowEngine, get_workflow_engine

ANONYMOUS_USER = "anonymous"


async def get_current_user_id(x_user_id: Optional[str] = Header(default=None)) -> str:
    """Identify the caller from the X-User-Id header."""
    return (x_user_id or "").strip() or ANONYMOUS_USER


def get_engine() -> WorkflowEngine:
    return get_workflow_engine()


def get_registry() -> NodeRegistry:
    return get_node_registry()


def get_integrations() -> IntegrationRegistry:
    return get_integration_registry()


def get_credentials() -> CredentialStore:
    return get_credential_store()
