"""
Node Type Registry: central registry for all available node types.

Maps a node-type identifier (dotted string, e.g. ``data.filter``) to the
BaseNode implementation that executes it. The engine resolves every node
through this registry at validation and dispatch time, so types can be
added, removed or overridden process-wide without touching graph
definitions.

Registration and removal are announced on the registry's EventBus
(NodeTypeRegistered / NodeTypeUnregistered).
"""

import copy
from typing import Any, Callable, Dict, List, Optional, Union

import structlog

from core.events import EventBus, NodeTypeRegistered, NodeTypeUnregistered
from core.exceptions import InvalidExecutorError
from nodes.base_node import BaseNode, FunctionNode, NodeTypeDescriptor, PortSpec, accepts_node_signature
from nodes.implementations.filter import FILTER_NODE_TYPES
from nodes.implementations.http_request import HTTP_NODE_TYPES
from nodes.implementations.integration_call import INTEGRATION_NODE_TYPES
from nodes.implementations.transform import TRANSFORM_NODE_TYPES

logger = structlog.get_logger(__name__)

Executor = Union[BaseNode, Callable[..., Any]]


class NodeRegistry:
    """Central registry for all node type implementations."""

    def __init__(self, event_bus: Optional[EventBus] = None, register_builtins: bool = True):
        self._nodes: Dict[str, BaseNode] = {}
        self.events = event_bus or EventBus()
        if register_builtins:
            self._register_builtin_nodes()

    def _register_builtin_nodes(self):
        """Register all built-in node types."""
        # Data nodes
        for node_type, node_class in TRANSFORM_NODE_TYPES.items():
            self.register(node_type, node_class())
        for node_type, node_class in FILTER_NODE_TYPES.items():
            self.register(node_type, node_class())

        # HTTP nodes
        for node_type, node_class in HTTP_NODE_TYPES.items():
            self.register(node_type, node_class())

        # Integration nodes (third-party services)
        for node_type, node_class in INTEGRATION_NODE_TYPES.items():
            self.register(node_type, node_class())

    def register(
        self,
        node_type: str,
        executor: Executor,
        schema: Optional[NodeTypeDescriptor] = None,
    ) -> BaseNode:
        """Register (or overwrite) a node type.

        Args:
            node_type: Dotted type identifier
            executor: BaseNode instance, or callable(inputs, parameters, context)
            schema: Descriptor for callables, or to override a node's own descriptor

        Raises:
            InvalidExecutorError: if executor does not satisfy the node contract
        """
        if not node_type or not isinstance(node_type, str):
            raise InvalidExecutorError("Node type must be a non-empty string")

        if isinstance(executor, type) and issubclass(executor, BaseNode):
            raise InvalidExecutorError(
                f"Register an instance of {executor.__name__}, not the class"
            )

        if isinstance(executor, BaseNode):
            # Each registration owns its descriptor; the caller's instance is left untouched
            node = copy.copy(executor)
            if schema is not None:
                node.descriptor = schema
        elif accepts_node_signature(executor):
            node = FunctionNode(executor, schema or NodeTypeDescriptor(
                type=node_type,
                inputs=[PortSpec("data")],
                outputs=[PortSpec("result")],
            ))
        else:
            raise InvalidExecutorError(
                f"Executor for '{node_type}' must be a BaseNode or a callable "
                f"accepting (inputs, parameters, context), got {executor!r}"
            )

        if node.descriptor.type != node_type:
            node.descriptor = NodeTypeDescriptor(
                type=node_type,
                display_name=node.descriptor.display_name,
                description=node.descriptor.description,
                category=node.descriptor.category,
                inputs=list(node.descriptor.inputs),
                outputs=list(node.descriptor.outputs),
                parameters=list(node.descriptor.parameters),
            )

        replaced = node_type in self._nodes
        if replaced:
            logger.warning("Node type already registered, overwriting", node_type=node_type)

        self._nodes[node_type] = node
        logger.debug("Registered node type", node_type=node_type, category=node.descriptor.category)
        self.events.publish_nowait(NodeTypeRegistered(node_type=node_type, replaced=replaced))
        return node

    def unregister(self, node_type: str) -> bool:
        """Remove a node type. Returns False if it was not registered."""
        node = self._nodes.pop(node_type, None)
        if node is None:
            return False
        logger.debug("Unregistered node type", node_type=node_type)
        self.events.publish_nowait(NodeTypeUnregistered(node_type=node_type))
        return True

    def get_executor(self, node_type: str) -> Optional[BaseNode]:
        """Get the executor bound to a node type."""
        return self._nodes.get(node_type)

    def get_schema(self, node_type: str) -> Optional[NodeTypeDescriptor]:
        """Get the descriptor (ports + parameters) of a node type."""
        node = self._nodes.get(node_type)
        return node.descriptor if node else None

    def has_type(self, node_type: str) -> bool:
        return node_type in self._nodes

    def get_registered_types(self) -> List[str]:
        """Snapshot of all registered node types."""
        return list(self._nodes.keys())

    def list_all(self) -> List[dict]:
        """List all registered node types with metadata."""
        return [node.descriptor.to_dict() for node in self._nodes.values()]

    def search(self, query: str) -> List[NodeTypeDescriptor]:
        """Case-insensitive match on type, display name and description."""
        needle = (query or "").strip().lower()
        if not needle:
            return [node.descriptor for node in self._nodes.values()]
        return [
            node.descriptor
            for node in self._nodes.values()
            if needle in node.descriptor.type.lower()
            or needle in (node.descriptor.display_name or "").lower()
            or needle in (node.descriptor.description or "").lower()
        ]

    def get_by_category(self, category: str) -> List[NodeTypeDescriptor]:
        return [node.descriptor for node in self._nodes.values() if node.descriptor.category == category]

    def get_categories(self) -> List[str]:
        """Sorted distinct categories of the registered types."""
        return sorted({node.descriptor.category for node in self._nodes.values()})

    def get_stats(self) -> dict:
        categories: Dict[str, List[str]] = {}
        for node_type, node in self._nodes.items():
            categories.setdefault(node.descriptor.category, []).append(node_type)
        return {
            "count": len(self._nodes),
            "types": sorted(self._nodes.keys()),
            "categories": {k: sorted(v) for k, v in sorted(categories.items())},
        }

    def __contains__(self, node_type: str) -> bool:
        return self.has_type(node_type)

    def __len__(self) -> int:
        return len(self._nodes)


# Singleton
_registry: Optional[NodeRegistry] = None


def get_node_registry() -> NodeRegistry:
    """Get or create the singleton node registry."""
    global _registry
    if _registry is None:
        _registry = NodeRegistry()
    return _registry
