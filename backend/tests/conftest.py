"""Shared pytest fixtures for the workflow engine test suite.

Provides:
- Fresh node registry, engine, integration registry and credential store
- FastAPI test client (httpx.AsyncClient over ASGITransport) wired to them
- Graph-building helpers
"""

import os
from typing import AsyncGenerator

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

# Override settings BEFORE any app imports
os.environ.setdefault("ENVIRONMENT", "testing")
os.environ.setdefault("LOG_FORMAT", "text")
os.environ.setdefault("LOG_LEVEL", "WARNING")

from integrations.credentials import CredentialStore  # noqa: E402
from integrations.registry import IntegrationRegistry  # noqa: E402
from nodes.base_node import NodeTypeDescriptor, PortSpec  # noqa: E402
from nodes.registry import NodeRegistry  # noqa: E402
from workflow.engine import WorkflowEngine  # noqa: E402
from workflow.graph import Edge, NodeInstance, WorkflowGraph  # noqa: E402


# ---------------------------------------------------------------------------
# Core fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def credential_store() -> CredentialStore:
    return CredentialStore()


@pytest.fixture
def integration_registry(credential_store) -> IntegrationRegistry:
    return IntegrationRegistry(credential_store=credential_store)


@pytest.fixture
def node_registry(integration_registry, monkeypatch) -> NodeRegistry:
    """Registry with the built-in node types, bound to the test integration registry."""
    import integrations.registry as integrations_mod

    monkeypatch.setattr(integrations_mod, "_registry", integration_registry)
    return NodeRegistry()


@pytest.fixture
def engine(node_registry) -> WorkflowEngine:
    return WorkflowEngine(
        registry=node_registry,
        max_concurrency=0,
        cancel_in_flight=True,
        history_limit=100,
    )


# ---------------------------------------------------------------------------
# App / HTTP client fixtures
# ---------------------------------------------------------------------------

@pytest_asyncio.fixture
async def app(node_registry, engine, integration_registry, credential_store, monkeypatch):
    """FastAPI app whose singletons are the test fixtures."""
    import integrations.credentials as credentials_mod
    import nodes.registry as nodes_mod
    import workflow.engine as engine_mod

    monkeypatch.setattr(nodes_mod, "_registry", node_registry)
    monkeypatch.setattr(engine_mod, "_engine", engine)
    monkeypatch.setattr(credentials_mod, "_store", credential_store)

    from app.main import create_app
    test_app = create_app()

    yield test_app

    await engine.shutdown()


@pytest_asyncio.fixture
async def client(app) -> AsyncGenerator[AsyncClient, None]:
    """Async HTTP test client."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test", follow_redirects=True) as ac:
        yield ac


# ---------------------------------------------------------------------------
# Graph helpers
# ---------------------------------------------------------------------------

def node(node_id: str, node_type: str, **parameters) -> NodeInstance:
    return NodeInstance(id=node_id, type=node_type, parameters=parameters)


def edge(source: str, source_port: str, target: str, target_port: str) -> Edge:
    return Edge(source=source, source_port=source_port, target=target, target_port=target_port)


def graph(*items, name: str = "test") -> WorkflowGraph:
    nodes = [i for i in items if isinstance(i, NodeInstance)]
    edges = [i for i in items if isinstance(i, Edge)]
    return WorkflowGraph(name=name, nodes=nodes, edges=edges)


def descriptor(node_type: str, inputs=(), outputs=("out",), required=()) -> NodeTypeDescriptor:
    """Descriptor with ``any``-typed ports; names in ``required`` are required inputs."""
    return NodeTypeDescriptor(
        type=node_type,
        inputs=[PortSpec(name, required=name in required) for name in inputs],
        outputs=[PortSpec(name) for name in outputs],
    )
