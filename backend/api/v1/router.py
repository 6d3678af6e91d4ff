"""API v1 aggregated router.

All v1 endpoints are registered here and mounted under /api/v1 in main.py.
This makes it trivial to add /api/v2 later without touching existing routes.
"""

from fastapi import APIRouter

from api.routes import executions, health, node_types
from api.routes import integrations as integrations_routes

api_v1_router = APIRouter()

# Health
api_v1_router.include_router(
    health.router,
    tags=["Health"],
)

# Node Types (for workflow editor)
api_v1_router.include_router(
    node_types.router,
    prefix="/node-types",
    tags=["Node Types"],
)

# Executions
api_v1_router.include_router(
    executions.router,
    prefix="/executions",
    tags=["Executions"],
)

# Integrations
api_v1_router.include_router(
    integrations_routes.router,
    prefix="/integrations",
    tags=["Integrations"],
)
