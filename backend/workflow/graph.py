"""Workflow graph data model.

A workflow is a list of node instances plus port-to-port edges:

{
    "name": "Sync contacts",
    "nodes": [
        {"id": "fetch", "type": "http.request", "parameters": {"url": "https://api.example.com/contacts"}},
        {"id": "active", "type": "data.filter",
         "parameters": {"conditions": [{"field": "active", "operator": "equals", "value": true}]}},
        {"id": "shape", "type": "data.transform", "parameters": {"expression": "len(data)"}}
    ],
    "edges": [
        {"source": "fetch", "source_port": "response", "target": "active", "target_port": "data"},
        {"source": "active", "source_port": "matched", "target": "shape", "target_port": "data"}
    ]
}

The graph itself has no behavior beyond structure checks (duplicate ids,
dangling edges, cycles). Type and port resolution happen in the engine.
"""

from collections import deque
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional

from core.exceptions import ValidationError


@dataclass
class NodeInstance:
    """A node placed in a workflow: id, type and fixed parameters."""

    id: str
    type: str
    parameters: Dict[str, Any] = field(default_factory=dict)
    name: Optional[str] = None

    @classmethod
    def from_dict(cls, data: dict) -> "NodeInstance":
        try:
            node_id = data["id"]
            node_type = data["type"]
        except (KeyError, TypeError) as e:
            raise ValidationError(f"Node definition is missing {e}") from e
        parameters = data.get("parameters", data.get("config")) or {}
        if not isinstance(parameters, dict):
            raise ValidationError(f"Node '{node_id}' parameters must be an object", node_id=node_id)
        return cls(id=str(node_id), type=node_type, parameters=dict(parameters), name=data.get("name"))

    def to_dict(self) -> dict:
        data = {"id": self.id, "type": self.type, "parameters": self.parameters}
        if self.name:
            data["name"] = self.name
        return data


@dataclass(frozen=True)
class Edge:
    """Directed connection from a node's output port to another node's input port."""

    source: str
    source_port: str
    target: str
    target_port: str

    @classmethod
    def from_dict(cls, data: dict) -> "Edge":
        if not isinstance(data, dict):
            raise ValidationError("Edge definition must be an object")
        values = {
            "source": data.get("source"),
            "source_port": data.get("source_port") or data.get("sourceOutput"),
            "target": data.get("target"),
            "target_port": data.get("target_port") or data.get("targetInput"),
        }
        missing = [k for k, v in values.items() if not v]
        if missing:
            raise ValidationError(f"Edge definition is missing {', '.join(missing)}")
        return cls(
            source=str(values["source"]),
            source_port=str(values["source_port"]),
            target=str(values["target"]),
            target_port=str(values["target_port"]),
        )

    def to_dict(self) -> dict:
        return {
            "source": self.source,
            "source_port": self.source_port,
            "target": self.target,
            "target_port": self.target_port,
        }

    def __str__(self) -> str:
        return f"{self.source}.{self.source_port} -> {self.target}.{self.target_port}"


@dataclass
class WorkflowGraph:
    """Static description of a workflow: nodes and edges, no behavior."""

    name: str = "workflow"
    nodes: List[NodeInstance] = field(default_factory=list)
    edges: List[Edge] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict) -> "WorkflowGraph":
        if not isinstance(data, dict):
            raise ValidationError("Workflow definition must be an object")
        nodes = [NodeInstance.from_dict(n) for n in data.get("nodes") or []]
        edges = [Edge.from_dict(e) for e in (data.get("edges", data.get("connections")) or [])]
        return cls(name=data.get("name") or "workflow", nodes=nodes, edges=edges)

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "nodes": [n.to_dict() for n in self.nodes],
            "edges": [e.to_dict() for e in self.edges],
        }

    @property
    def node_ids(self) -> List[str]:
        return [n.id for n in self.nodes]

    def get_node(self, node_id: str) -> Optional[NodeInstance]:
        return next((n for n in self.nodes if n.id == node_id), None)

    def incoming(self, node_id: str) -> List[Edge]:
        return [e for e in self.edges if e.target == node_id]

    def outgoing(self, node_id: str) -> List[Edge]:
        return [e for e in self.edges if e.source == node_id]

    def successors(self, node_id: str) -> List[str]:
        return list(dict.fromkeys(e.target for e in self.edges if e.source == node_id))

    def terminal_nodes(self) -> List[str]:
        """Nodes with no outgoing edges."""
        sources = {e.source for e in self.edges}
        return [n.id for n in self.nodes if n.id not in sources]

    def check_structure(self) -> None:
        """Reject empty graphs, duplicate ids, dangling edges and cycles.

        Raises:
            ValidationError: on the first structural problem found
        """
        if not self.nodes:
            raise ValidationError(f"Workflow '{self.name}' has no nodes")

        seen = set()
        for node in self.nodes:
            if node.id in seen:
                raise ValidationError(f"Duplicate node id '{node.id}'", node_id=node.id)
            seen.add(node.id)

        for edge in self.edges:
            for end in (edge.source, edge.target):
                if end not in seen:
                    raise ValidationError(f"Edge {edge} references unknown node '{end}'", node_id=end)

        cycle = self.find_cycle()
        if cycle:
            raise ValidationError(
                f"Workflow contains a cycle: {' -> '.join(cycle)}",
                node_id=cycle[0],
                cycle=cycle,
            )

    def topological_order(self) -> List[str]:
        """Kahn's algorithm; nodes left out of the result sit on or behind a cycle."""
        indegree = {n.id: 0 for n in self.nodes}
        adjacency: Dict[str, List[str]] = {n.id: [] for n in self.nodes}
        for source, target in _unique_links(self.edges):
            adjacency[source].append(target)
            indegree[target] += 1

        queue = deque(nid for nid in indegree if indegree[nid] == 0)
        order: List[str] = []
        while queue:
            nid = queue.popleft()
            order.append(nid)
            for target in adjacency[nid]:
                indegree[target] -= 1
                if indegree[target] == 0:
                    queue.append(target)
        return order

    def find_cycle(self) -> Optional[List[str]]:
        """Return one cycle as a closed path ``[a, b, ..., a]``, or None."""
        ordered = set(self.topological_order())
        remaining = [n.id for n in self.nodes if n.id not in ordered]
        if not remaining:
            return None

        adjacency: Dict[str, List[str]] = {nid: [] for nid in remaining}
        for source, target in _unique_links(self.edges):
            if source in adjacency and target in adjacency:
                adjacency[source].append(target)

        # Iterative DFS over the leftover subgraph
        state: Dict[str, int] = {}
        for root in remaining:
            if state.get(root):
                continue
            path: List[str] = []
            stack = [(root, iter(adjacency[root]))]
            state[root] = 1
            path.append(root)
            while stack:
                nid, children = stack[-1]
                child = next(children, None)
                if child is None:
                    stack.pop()
                    path.pop()
                    state[nid] = 2
                elif state.get(child) == 1:
                    return path[path.index(child):] + [child]
                elif not state.get(child):
                    state[child] = 1
                    path.append(child)
                    stack.append((child, iter(adjacency[child])))
        return None


def _unique_links(edges: Iterable[Edge]):
    return dict.fromkeys((e.source, e.target) for e in edges).keys()
