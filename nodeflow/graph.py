"""In-memory view of a workflow node graph.

The wire format is a mapping of node id to ``{type, config, outputs}`` where
each output is either ``{"port": ..., "target": ...}`` or a bare target id.
An optional top-level ``edges`` list (``{source, target, sourcePort}``) adds
further connections; both sources are merged and de-duplicated here so the
interpreter and validator never deal with the raw shapes.
"""

from __future__ import annotations

import re
from collections import deque
from typing import Any, Iterable, Optional

from pydantic import BaseModel, Field

DEFAULT_PORT = "default"

NODE_TYPES = (
    "trigger",
    "action",
    "condition",
    "fork",
    "join",
    "loop",
    "delay",
    "subworkflow",
    "approval",
    "end",
)

_LEGACY_PORT = re.compile(r"^output-\d+$")
_DEFAULT_ALIASES = (DEFAULT_PORT, "next")


def normalize_port(port: Optional[str]) -> str:
    if not port:
        return DEFAULT_PORT
    if _LEGACY_PORT.match(port) or port in _DEFAULT_ALIASES:
        return DEFAULT_PORT
    return port


def ports_match(a: Optional[str], b: Optional[str]) -> bool:
    """Return True when two port names address the same output slot."""
    return a == b or normalize_port(a) == normalize_port(b)


class Edge(BaseModel):
    source: str
    port: str = DEFAULT_PORT
    target: str

    @property
    def key(self) -> str:
        return f"{self.source}:{normalize_port(self.port)}"


class Node(BaseModel):
    id: str
    type: str = "unknown"
    config: dict[str, Any] = Field(default_factory=dict)
    outputs: list[Edge] = Field(default_factory=list)


def _parse_output(source: str, raw: Any) -> Optional[Edge]:
    if isinstance(raw, str):
        return Edge(source=source, port=DEFAULT_PORT, target=raw)
    if isinstance(raw, dict):
        target = raw.get("target") or raw.get("to")
        port = raw.get("port") or raw.get("sourcePort") or DEFAULT_PORT
        if isinstance(target, int) and not isinstance(target, bool):
            target = str(target)
        if not isinstance(target, str) or not target or not isinstance(port, str):
            return None
        return Edge(source=source, port=port, target=target)
    return None


def raw_nodes(definition: dict[str, Any]) -> dict[str, dict[str, Any]]:
    """Return the ``nodes`` section as a mapping, accepting list form too."""
    nodes = definition.get("nodes") if isinstance(definition, dict) else None
    if isinstance(nodes, dict):
        return {str(k): (v if isinstance(v, dict) else {}) for k, v in nodes.items()}
    if isinstance(nodes, list):
        return {
            str(item["id"]): item
            for item in nodes
            if isinstance(item, dict) and item.get("id") is not None
        }
    return {}


def node_shape_errors(definition: dict[str, Any]) -> list[str]:
    """Describe nodes and outputs whose shape cannot be interpreted."""
    errors: list[str] = []
    nodes = definition.get("nodes") if isinstance(definition, dict) else None
    if isinstance(nodes, dict):
        items = [(str(node_id), raw) for node_id, raw in nodes.items()]
    elif isinstance(nodes, list):
        items = [
            (str(raw.get("id")) if isinstance(raw, dict) else f"#{index}", raw)
            for index, raw in enumerate(nodes)
        ]
    else:
        return errors

    for node_id, raw in items:
        if not isinstance(raw, dict):
            errors.append(f"Node '{node_id}' must be an object.")
            continue
        if raw.get("config") is not None and not isinstance(raw["config"], dict):
            errors.append(f"Node '{node_id}' config must be an object.")
        outputs = raw.get("outputs")
        if outputs is None:
            continue
        if not isinstance(outputs, list):
            errors.append(f"Node '{node_id}' outputs must be a list.")
            continue
        for output in outputs:
            if isinstance(output, str):
                continue
            if not isinstance(output, dict):
                errors.append(
                    f"Node '{node_id}' has an output that is neither a target id nor an object."
                )
                continue
            target = output.get("target") or output.get("to")
            port = output.get("port") or output.get("sourcePort")
            if isinstance(target, bool) or not isinstance(target, (str, int)):
                errors.append(f"Node '{node_id}' has an output without a target id.")
            if port is not None and not isinstance(port, str):
                errors.append(f"Node '{node_id}' has an output with a non-string port {port!r}.")
    return errors


class WorkflowGraph:
    """Parsed, read-only node graph of a workflow version."""

    def __init__(self, definition: dict[str, Any]):
        self.definition = definition or {}
        self.nodes: dict[str, Node] = {}
        self.edges: list[Edge] = []
        self._parse()

    def _parse(self) -> None:
        seen: set[tuple[str, str, str]] = set()

        def add(edge: Optional[Edge]) -> None:
            if edge is None:
                return
            marker = (edge.source, normalize_port(edge.port), edge.target)
            if marker in seen:
                return
            seen.add(marker)
            self.edges.append(edge)

        for node_id, raw in raw_nodes(self.definition).items():
            config = raw.get("config")
            node = Node(
                id=node_id,
                type=str(raw.get("type") or "unknown"),
                config=config if isinstance(config, dict) else {},
            )
            self.nodes[node_id] = node
            outputs = raw.get("outputs")
            for output in outputs if isinstance(outputs, list) else []:
                add(_parse_output(node_id, output))

        raw_edges = self.definition.get("edges")
        for raw_edge in raw_edges if isinstance(raw_edges, list) else []:
            if not isinstance(raw_edge, dict):
                continue
            source = raw_edge.get("source") or raw_edge.get("from")
            if not source:
                continue
            add(_parse_output(str(source), raw_edge))

        for edge in self.edges:
            node = self.nodes.get(edge.source)
            if node is not None:
                node.outputs.append(edge)

    # ------------------------------------------------------------------
    # Lookups
    def node(self, node_id: str) -> Optional[Node]:
        return self.nodes.get(node_id)

    def nodes_of_type(self, node_type: str) -> list[Node]:
        return [n for n in self.nodes.values() if n.type == node_type]

    @property
    def trigger(self) -> Optional[Node]:
        triggers = self.nodes_of_type("trigger")
        return triggers[0] if triggers else None

    def outgoing(self, node_id: str, port: Optional[str] = None) -> list[Edge]:
        """Edges leaving ``node_id``; restricted to ``port`` when given."""
        node = self.nodes.get(node_id)
        if node is None:
            return []
        if port is None:
            return list(node.outputs)
        return [e for e in node.outputs if ports_match(e.port, port)]

    def targets(self, node_id: str, port: Optional[str] = None) -> list[str]:
        targets: list[str] = []
        for edge in self.outgoing(node_id, port):
            if edge.target not in targets:
                targets.append(edge.target)
        return targets

    def incoming(self, node_id: str) -> list[Edge]:
        return [e for e in self.edges if e.target == node_id and e.source in self.nodes]

    def ports(self, node_id: str) -> set[str]:
        return {normalize_port(e.port) for e in self.outgoing(node_id)}

    # ------------------------------------------------------------------
    # Traversal
    def reachable_from(self, start: str) -> set[str]:
        """Breadth-first set of node ids reachable from ``start`` (inclusive)."""
        if start not in self.nodes:
            return set()
        visited = {start}
        queue: deque[str] = deque([start])
        while queue:
            current = queue.popleft()
            for target in self.targets(current):
                if target in self.nodes and target not in visited:
                    visited.add(target)
                    queue.append(target)
        return visited

    def dangling(self) -> Iterable[Edge]:
        return (e for e in self.edges if e.source in self.nodes and e.target not in self.nodes)
