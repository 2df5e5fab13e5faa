"""
Flow Graph — immutable, indexed snapshot of a bot's node/edge graph.

Provides:
- FlowGraph.from_flow_data: parse editor JSON into typed nodes and edges
- issues() / validate(): structural checks (start node, dangling edges,
  orphans, duplicate handles)
- get() / outgoing() / resolve_next(): O(1) node lookup and
  (node_id, handle) edge resolution
- NodeIdAllocator: per-graph monotonic node id generator

A FlowGraph is read-only once built. Sessions keep the raw ``{nodes, edges}``
document they started with, so edits to a bot never reach in-flight
sessions.

Usage:
    graph = FlowGraph.from_flow_data(bot.flow_data)
    graph.validate(strict=True)
    nxt = graph.resolve_next("cond_1", "true")
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, Iterable, Mapping, Optional

import structlog
from pydantic import TypeAdapter, ValidationError

from flows.errors import (
    DanglingEdgeError, DuplicateHandleError, GraphError, GraphValidationError,
    InvalidNodeError, MissingStartError, OrphanNodeError, UnknownNodeError,
)
from models.schemas import FlowEdge, FlowNode, NodeType

logger = structlog.get_logger()

_node_adapter: TypeAdapter = TypeAdapter(FlowNode)


# ──────────────────────────────────────────────────────────────
#  Validation issues
# ──────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class GraphIssue:
    """One finding from graph validation. Warnings do not block registration."""
    severity: str               # "error" | "warning"
    error: GraphError

    @property
    def code(self) -> str:
        return self.error.code

    @property
    def message(self) -> str:
        return str(self.error)

    def to_dict(self) -> dict[str, Any]:
        return {
            "severity": self.severity,
            "code": self.code,
            "node_id": self.error.node_id,
            "message": self.message,
        }


# ──────────────────────────────────────────────────────────────
#  Flow Graph
# ──────────────────────────────────────────────────────────────

class FlowGraph:
    """Indexed, read-only view over a flow graph snapshot."""

    def __init__(self, nodes: Iterable[Any], edges: Iterable[FlowEdge]):
        nodes = tuple(nodes)
        edges = tuple(edges)

        by_id: dict[str, Any] = {}
        for node in nodes:
            if node.id in by_id:
                raise InvalidNodeError(f"Duplicate node id '{node.id}'", node_id=node.id)
            by_id[node.id] = node

        by_handle: dict[tuple[str, Optional[str]], list[FlowEdge]] = {}
        out: dict[str, list[FlowEdge]] = {}
        incoming: dict[str, int] = {}
        for edge in edges:
            by_handle.setdefault((edge.source, edge.source_handle), []).append(edge)
            out.setdefault(edge.source, []).append(edge)
            incoming[edge.target] = incoming.get(edge.target, 0) + 1

        self._nodes: tuple = nodes
        self._edges: tuple[FlowEdge, ...] = edges
        self._by_id: Mapping[str, Any] = MappingProxyType(by_id)
        self._by_handle = MappingProxyType({k: tuple(v) for k, v in by_handle.items()})
        self._outgoing = MappingProxyType({k: tuple(v) for k, v in out.items()})
        self._incoming = MappingProxyType(incoming)

    # ── Construction ──────────────────────────────────────────

    @classmethod
    def from_flow_data(cls, data: Optional[dict[str, Any]]) -> "FlowGraph":
        """Parse editor ``{nodes, edges}`` JSON. Raises InvalidNodeError on bad input."""
        data = data or {}
        nodes = []
        for idx, raw in enumerate(data.get("nodes") or []):
            node_id = raw.get("id") if isinstance(raw, dict) else None
            try:
                nodes.append(_node_adapter.validate_python(raw))
            except ValidationError as e:
                raise InvalidNodeError(
                    f"Node '{node_id or idx}' is invalid: {e.errors()[0]['msg']}",
                    node_id=node_id,
                ) from e

        edges = []
        for idx, raw in enumerate(data.get("edges") or []):
            try:
                edges.append(FlowEdge.model_validate(raw))
            except ValidationError as e:
                raise InvalidNodeError(f"Edge #{idx} is invalid: {e.errors()[0]['msg']}") from e

        return cls(nodes, edges)

    # ── Lookup ────────────────────────────────────────────────

    @property
    def nodes(self) -> tuple:
        return self._nodes

    @property
    def edges(self) -> tuple[FlowEdge, ...]:
        return self._edges

    def __contains__(self, node_id: str) -> bool:
        return node_id in self._by_id

    def __len__(self) -> int:
        return len(self._nodes)

    def get(self, node_id: str):
        """Return the node with this id or raise UnknownNodeError."""
        node = self._by_id.get(node_id)
        if node is None:
            raise UnknownNodeError(f"Node '{node_id}' not in graph", node_id=node_id)
        return node

    def find(self, node_id: str):
        return self._by_id.get(node_id)

    @property
    def start_node(self):
        starts = [n for n in self._nodes if n.type == NodeType.START.value]
        if len(starts) != 1:
            raise MissingStartError(
                f"Graph must have exactly one start node, found {len(starts)}"
            )
        return starts[0]

    def outgoing(self, node_id: str) -> tuple[FlowEdge, ...]:
        return self._outgoing.get(node_id, ())

    def resolve_next(self, node_id: str, handle: Optional[str] = None) -> Optional[str]:
        """
        Target of the edge leaving ``node_id`` through ``handle``.

        Single-output nodes resolve with ``handle=None``; editors do not always
        leave the handle empty on those edges, so any non-error edge is
        accepted when no unlabelled edge exists. Returns None when the branch
        has no edge.
        """
        edges = self._by_handle.get((node_id, handle))
        if edges:
            return edges[0].target
        if handle is None:
            for edge in self.outgoing(node_id):
                if edge.source_handle != "error":
                    return edge.target
        return None

    def resolve_any(self, node_id: str, handles: Iterable[str]) -> Optional[str]:
        """First edge target among several candidate handle spellings."""
        for handle in handles:
            target = self._by_handle.get((node_id, handle))
            if target:
                return target[0].target
        return None

    # ── Validation ────────────────────────────────────────────

    def issues(self) -> list[GraphIssue]:
        """Every structural problem, in a stable order. Orphans are warnings."""
        found: list[GraphIssue] = []

        starts = [n for n in self._nodes if n.type == NodeType.START.value]
        if len(starts) != 1:
            found.append(GraphIssue("error", MissingStartError(
                f"Graph must have exactly one start node, found {len(starts)}"
            )))

        for edge in self._edges:
            for end in (edge.source, edge.target):
                if end not in self._by_id:
                    found.append(GraphIssue("error", DanglingEdgeError(
                        f"Edge {edge.source} -> {edge.target} references missing node '{end}'",
                        node_id=end,
                    )))

        for (source, handle), edges in self._by_handle.items():
            if len(edges) > 1:
                found.append(GraphIssue("error", DuplicateHandleError(
                    f"Node '{source}' has {len(edges)} edges for handle '{handle or ''}'",
                    node_id=source,
                )))

        for node in self._nodes:
            if node.type != NodeType.START.value and not self._incoming.get(node.id):
                found.append(GraphIssue("warning", OrphanNodeError(
                    f"Node '{node.id}' has no incoming edge", node_id=node.id,
                )))

        return found

    def validate(self, strict: bool = True) -> list[GraphIssue]:
        """
        Raise the first blocking issue. With ``strict`` (session snapshot
        time) orphan nodes are blocking too. Returns the remaining warnings.
        """
        found = self.issues()
        blocking = [i for i in found if i.severity == "error" or strict]
        if blocking:
            raise blocking[0].error
        return found

    def check(self) -> list[GraphIssue]:
        """Registration-time validation: raise all errors at once, return warnings."""
        found = self.issues()
        errors = [i.error for i in found if i.severity == "error"]
        if errors:
            raise GraphValidationError(errors)
        warnings = [i for i in found if i.severity == "warning"]
        for w in warnings:
            logger.warning("graph_warning", code=w.code, node_id=w.error.node_id)
        return warnings

    def id_allocator(self) -> "NodeIdAllocator":
        return NodeIdAllocator.for_graph(self)


# ──────────────────────────────────────────────────────────────
#  Node id allocation
# ──────────────────────────────────────────────────────────────

_NODE_ID = re.compile(r"^node_(\d+)$")


class NodeIdAllocator:
    """
    Monotonic ``node_<n>`` id generator scoped to one graph.

    Seeded past the highest existing ``node_<n>`` id so ids handed out
    while editing never collide with loaded nodes.
    """

    def __init__(self, start: int = 0):
        self._next = start

    @classmethod
    def for_graph(cls, graph_or_ids: Any) -> "NodeIdAllocator":
        if isinstance(graph_or_ids, FlowGraph):
            ids = [n.id for n in graph_or_ids.nodes]
        else:
            ids = list(graph_or_ids)
        highest = -1
        for node_id in ids:
            m = _NODE_ID.match(node_id)
            if m:
                highest = max(highest, int(m.group(1)))
        return cls(highest + 1)

    def next_id(self) -> str:
        node_id = f"node_{self._next}"
        self._next += 1
        return node_id

    @property
    def peek(self) -> int:
        return self._next
