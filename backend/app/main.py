"""Flowgraph Workflow Engine - FastAPI Application."""

from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from api.routes import health
from api.v1.router import api_v1_router
from app.config import get_settings
from core.logging_config import setup_logging
from core.middleware import RequestTrackingMiddleware, setup_exception_handlers
from integrations.registry import get_integration_registry
from nodes.registry import get_node_registry
from workflow.engine import get_workflow_engine

logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application startup and shutdown events."""
    # Startup
    settings = get_settings()
    setup_logging()

    registry = get_node_registry()
    logger.info("Node registry ready", node_types=registry.get_registered_types())

    if settings.INTEGRATIONS_DIR:
        loaded = get_integration_registry().load_manifests(settings.INTEGRATIONS_DIR)
        logger.info("Integration manifests loaded", count=loaded, directory=settings.INTEGRATIONS_DIR)
    else:
        logger.info("Integration registry ready (no INTEGRATIONS_DIR configured)")

    engine = get_workflow_engine()
    logger.info(
        "Application started",
        app=settings.APP_NAME,
        version=settings.APP_VERSION,
        environment=settings.ENVIRONMENT,
    )
    yield
    # Shutdown
    await engine.shutdown()
    logger.info("Application shutting down")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title=settings.APP_NAME,
        version=settings.APP_VERSION,
        description="Low-code workflow execution backend: typed nodes, "
                    "port-routed DAG scheduling and third-party integrations.",
        docs_url="/docs" if settings.is_development else None,
        redoc_url="/redoc" if settings.is_development else None,
        lifespan=lifespan,
    )

    # Request tracking middleware
    app.add_middleware(RequestTrackingMiddleware)

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type", "X-User-Id", "X-Request-ID"],
    )

    # Global exception handlers
    setup_exception_handlers(app)

    # Root health check (unversioned, for load balancers and k8s probes)
    app.include_router(health.router, prefix="/api", tags=["Health"])

    # Versioned API: all business endpoints under /api/v1
    app.include_router(api_v1_router, prefix=settings.API_V1_PREFIX)

    return app


app = create_app()
