"""Health check endpoints.

Provides:
- Basic liveness probe (/health/)
- Detailed engine status (/health/status)
"""

import platform
import sys
import time
from datetime import datetime, timezone
from typing import Any

from fastapi import APIRouter

from app.config import get_settings
from integrations.registry import get_integration_registry
from nodes.registry import get_node_registry
from workflow.engine import get_workflow_engine

router = APIRouter(prefix="/health", tags=["health"])

_start_time = time.monotonic()
_start_datetime = datetime.now(timezone.utc).isoformat()


@router.get("/", response_model=dict[str, Any])
async def root() -> dict[str, Any]:
    """
    Get API root information and version.
    Used as a simple liveness probe.
    """
    settings = get_settings()
    return {
        "app": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "status": "ok",
    }


@router.get("/status", response_model=dict[str, Any])
async def system_status() -> dict[str, Any]:
    """Detailed status: uptime, runtime, registered node types, active runs."""
    settings = get_settings()
    engine = get_workflow_engine()
    return {
        "status": "ok",
        "version": settings.APP_VERSION,
        "environment": settings.ENVIRONMENT,
        "uptime_seconds": round(time.monotonic() - _start_time, 1),
        "started_at": _start_datetime,
        "python": sys.version.split()[0],
        "platform": platform.platform(),
        "node_types": get_node_registry().get_stats(),
        "integrations": len(get_integration_registry().list_all()),
        "active_executions": len(engine.get_active_executions()),
    }
