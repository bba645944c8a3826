"""
FlowGraph — immutable, validated view of one flow version.

Nodes live in an arena (a list indexed by position) with an id → index
map; each node owns an adjacency list of edge indices in definition order.
A graph is built once per flow version and shared by every conversation
pinned to that version, so nothing here mutates after __init__.
"""
from __future__ import annotations

from types import MappingProxyType
from typing import Any, Iterable, Mapping, Optional

import structlog

from core.errors import GraphIntegrityError
from models.schemas import (
    VOICE_ONLY_NODES, ChannelType, Edge, Flow, Node, NodeType, Trigger, VariableTier,
)
from utils.conditions import ConditionEvaluator

logger = structlog.get_logger()

# Handles that only fire on special outcomes, never during normal routing
SPECIAL_HANDLES = frozenset({"invalid", "fallback", "timeout", "error"})

_BRANCHING = (NodeType.CONDITION, NodeType.GOTOIF)


class FlowGraph:

    def __init__(self, flow: Flow, validate: bool = True):
        self.flow = flow
        self._nodes: tuple[Node, ...] = tuple(flow.nodes)
        self._edges: tuple[Edge, ...] = tuple(flow.edges)
        self._index: dict[str, int] = {}
        for i, node in enumerate(self._nodes):
            self._index.setdefault(node.id, i)

        adjacency: list[list[int]] = [[] for _ in self._nodes]
        incoming = [0] * len(self._nodes)
        for e_idx, edge in enumerate(self._edges):
            src = self._index.get(edge.source)
            dst = self._index.get(edge.target)
            if src is not None:
                adjacency[src].append(e_idx)
            if dst is not None:
                incoming[dst] += 1
        self._adjacency: tuple[tuple[int, ...], ...] = tuple(tuple(a) for a in adjacency)
        self._incoming = tuple(incoming)

        self.defaults: Mapping[str, Any] = MappingProxyType({
            v.name: v.default_value for v in flow.variables
            if v.scope != VariableTier.SESSION
        })
        self.session_seeds: Mapping[str, Any] = MappingProxyType({
            v.name: v.default_value for v in flow.variables
            if v.scope == VariableTier.SESSION
        })

        if validate:
            self.validate()

    # ── Identity ──────────────────────────────────────────────

    @property
    def flow_id(self) -> str:
        return self.flow.id

    @property
    def version(self) -> int:
        return self.flow.version

    @property
    def triggers(self) -> list[Trigger]:
        return self.flow.triggers

    def __len__(self) -> int:
        return len(self._nodes)

    def __repr__(self) -> str:
        return f"<FlowGraph {self.flow_id} v{self.version} nodes={len(self._nodes)}>"

    # ── Lookups ───────────────────────────────────────────────

    def has_node(self, node_id: Optional[str]) -> bool:
        return node_id is not None and str(node_id) in self._index

    def get_node(self, node_id: str) -> Optional[Node]:
        idx = self._index.get(str(node_id))
        return self._nodes[idx] if idx is not None else None

    def nodes(self) -> Iterable[Node]:
        return iter(self._nodes)

    def outgoing_edges(self, node_id: str) -> list[Edge]:
        idx = self._index.get(str(node_id))
        if idx is None:
            return []
        return [self._edges[e] for e in self._adjacency[idx]]

    def routing_edges(self, node_id: str) -> list[Edge]:
        """Outgoing edges minus those reserved for invalid/timeout/error outcomes."""
        return [e for e in self.outgoing_edges(node_id) if e.handle not in SPECIAL_HANDLES]

    def edge_by_handle(self, node_id: str, *handles: str) -> Optional[Edge]:
        wanted = {h.lower() for h in handles}
        for edge in self.outgoing_edges(node_id):
            if edge.handle in wanted:
                return edge
        return None

    def entry_node_for_trigger(self, trigger: Optional[Trigger] = None) -> Optional[Node]:
        if trigger is not None:
            configured = trigger.configuration.get("entryNodeId")
            if configured not in (None, "") and self.has_node(str(configured)):
                return self.get_node(str(configured))
        if self.flow.entry_node_id and self.has_node(self.flow.entry_node_id):
            return self.get_node(self.flow.entry_node_id)
        for i, node in enumerate(self._nodes):
            if self._incoming[i] == 0:
                return node
        return self._nodes[0] if self._nodes else None

    # ── Validation ────────────────────────────────────────────

    def validate(self) -> None:
        """Raise GraphIntegrityError listing every structural problem."""
        problems: list[str] = []

        seen: set[str] = set()
        for node in self._nodes:
            if node.id in seen:
                problems.append(f"duplicate node id '{node.id}'")
            seen.add(node.id)

        for edge in self._edges:
            if edge.source not in self._index:
                problems.append(f"edge '{edge.id}' source '{edge.source}' is not a node of this flow")
            if edge.target not in self._index:
                problems.append(f"edge '{edge.id}' target '{edge.target}' is not a node of this flow")

        if self.flow.entry_node_id and self.flow.entry_node_id not in self._index:
            problems.append(f"entry node '{self.flow.entry_node_id}' does not exist")

        for trigger in self.flow.triggers:
            configured = trigger.configuration.get("entryNodeId")
            if configured not in (None, "") and str(configured) not in self._index:
                problems.append(f"trigger '{trigger.id}' entry node '{configured}' does not exist")

        for node in self._nodes:
            if node.type == NodeType.GOTO:
                target = node.data.get("targetNodeId")
                if target not in (None, "") and not node.data.get("targetFlow") \
                        and str(target) not in self._index:
                    problems.append(f"goto node '{node.id}' targets unknown node '{target}'")
                if target in (None, "") and not node.data.get("targetFlow"):
                    problems.append(f"goto node '{node.id}' has no target")

            if node.type in _BRANCHING and not node.data.get("condition"):
                edges = self.routing_edges(node.id)
                defaults = [i for i, e in enumerate(edges) if e.is_default]
                if len(defaults) > 1:
                    problems.append(f"{node.type.value} node '{node.id}' has {len(defaults)} default edges")
                elif defaults and defaults[0] != len(edges) - 1:
                    problems.append(f"{node.type.value} node '{node.id}' default edge is not last")

        non_voice = [
            t.channel_type for t in self.flow.triggers
            if t.channel_type != ChannelType.ALL and not t.channel_type.voice_capable
        ]
        if non_voice:
            for node in self._nodes:
                if node.type not in VOICE_ONLY_NODES:
                    continue
                # restricted to voice channels: skipped at runtime elsewhere
                reachable = [c for c in non_voice if node.supports(c)]
                if reachable:
                    problems.append(
                        f"{node.type.value} node '{node.id}' requires a voice channel "
                        f"but the flow is triggered on {reachable[0].value}"
                    )

        if problems:
            raise GraphIntegrityError(self.flow_id, problems)

        for edge in self._edges:
            bad = ConditionEvaluator.validate(edge.condition)
            if bad:
                logger.warning("edge_condition_unparseable",
                               flow_id=self.flow_id, edge_id=edge.id, error=bad)
