"""Node Types API routes.

Exposes registered node types to the frontend for the workflow editor.
"""

from typing import Optional

from fastapi import APIRouter, Depends, Query

from app.dependencies import get_registry
from core.exceptions import NotFoundError
from nodes.registry import NodeRegistry

router = APIRouter()


@router.get("/", summary="List all available node types")
async def list_node_types(
    q: Optional[str] = Query(None, description="Search type, name and description"),
    category: Optional[str] = Query(None, description="Only types in this category"),
    registry: NodeRegistry = Depends(get_registry),
):
    """Get registered node types with their ports and parameter schemas.

    Used by the visual workflow editor to populate the node palette.
    """
    descriptors = registry.search(q or "")
    if category:
        descriptors = [d for d in descriptors if d.category == category]
    node_types = [d.to_dict() for d in descriptors]
    return {
        "node_types": node_types,
        "count": len(node_types),
        "categories": registry.get_categories(),
    }


@router.get("/{node_type}", summary="Get node type details")
async def get_node_type(node_type: str, registry: NodeRegistry = Depends(get_registry)):
    """Get ports and parameter schema for a specific node type."""
    schema = registry.get_schema(node_type)
    if schema is None:
        raise NotFoundError(f"Unknown node type: {node_type}")
    return schema.to_dict()
