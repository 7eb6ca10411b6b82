"""
Influence Graph Store

The persistence boundary the engine reads snapshots from and commits
scores to. InMemoryGraphStore is a dict-based implementation with the
same semantics as the FalkorDB store, for development and testing.

Every read returns copies; callers never hold references into the store.
"""

import copy
import threading
from typing import Iterable, Optional, Protocol, runtime_checkable

from influence_graph.core.errors import (
    ErrorCode, InvalidInput, NotFound,
    validate_edge_endpoints, validate_id, validate_tenant, validate_weight,
)
from influence_graph.core.types import (
    Edge, EventType, InfluenceEvent, Node, ScoreUpdate, now_ms,
)
from influence_graph.engine.decay import influence_delta


HISTORY_LIMIT = 30


@runtime_checkable
class GraphStore(Protocol):
    """What the engine needs from persistent storage."""

    def list_active_edges(self, tenant: str) -> list[Edge]: ...
    def list_unprocessed_events(self, tenant: str) -> list[InfluenceEvent]: ...
    def list_nodes(self, tenant: str) -> list[Node]: ...
    def commit_scores(self, tenant: str, updates: list[ScoreUpdate],
                      calculated_at: Optional[int] = None,
                      processed_event_ids: Iterable[str] = ()) -> None: ...
    def mark_events_processed(self, event_ids: list[str],
                              processed_at: Optional[int] = None) -> None: ...


class InMemoryGraphStore:
    """Tenant-scoped nodes, edges and events held in dicts."""

    def __init__(self):
        self._nodes: dict[str, Node] = {}
        self._edges: dict[str, Edge] = {}
        self._events: dict[str, InfluenceEvent] = {}
        self._groups: dict[str, str] = {}              # group_id -> name
        # Indexes for fast lookup
        self._node_tenant: dict[str, str] = {}         # id -> tenant
        self._edge_tenant: dict[str, str] = {}
        self._event_tenant: dict[str, str] = {}
        self._nodes_by_tenant: dict[str, list[str]] = {}
        self._edges_by_tenant: dict[str, list[str]] = {}
        self._events_by_tenant: dict[str, list[str]] = {}
        self._outgoing: dict[str, list[str]] = {}      # node_id -> edge ids
        self._incoming: dict[str, list[str]] = {}
        self._edge_counter = 0
        self._event_counter = 0
        self._lock = threading.RLock()

    # --------------------------------------------------------
    # Node operations
    # --------------------------------------------------------

    def add_node(self, tenant: str, node_id: str, name: str,
                 group_id: Optional[str] = None,
                 group_name: Optional[str] = None, **scores) -> Node:
        """Add a node. Overwrites if it exists in the same tenant.

        Node ids are unique across tenants; an id owned by another
        tenant is rejected.
        """
        validate_tenant(tenant)
        validate_id(node_id, "node_id")
        node = Node(id=node_id, name=name, group_id=group_id,
                    group_name=group_name, **scores)
        with self._lock:
            owner = self._node_tenant.get(node_id)
            if owner is not None and owner != tenant:
                raise InvalidInput(f"Node id {node_id} is already used by another tenant",
                                   ErrorCode.E_DUPLICATE)
            if owner is None:
                self._nodes_by_tenant.setdefault(tenant, []).append(node_id)
            self._nodes[node_id] = node
            self._node_tenant[node_id] = tenant
            self._outgoing.setdefault(node_id, [])
            self._incoming.setdefault(node_id, [])
            if group_id:
                self._groups[group_id] = group_name or self._groups.get(group_id, group_id)
        return copy.deepcopy(node)

    def get_node(self, node_id: str) -> Node:
        with self._lock:
            node = self._nodes.get(node_id)
            if node is None:
                raise NotFound(f"Node {node_id} not found")
            return copy.deepcopy(node)

    def has_node(self, node_id: str) -> bool:
        return node_id in self._nodes

    def list_nodes(self, tenant: str) -> list[Node]:
        with self._lock:
            return [copy.deepcopy(self._nodes[nid])
                    for nid in self._nodes_by_tenant.get(tenant, [])]

    def group_names(self, tenant: str) -> dict[str, str]:
        with self._lock:
            return {n.group_id: self._groups.get(n.group_id, n.group_id)
                    for n in self._nodes.values()
                    if n.group_id and self._node_tenant.get(n.id) == tenant}

    # --------------------------------------------------------
    # Edge operations
    # --------------------------------------------------------

    def create_edge(self, tenant: str, source_id: str, target_id: str,
                    weight: float, context: Optional[str] = None,
                    context_type: Optional[str] = None,
                    created_at: Optional[int] = None,
                    edge_id: Optional[str] = None) -> Edge:
        """Add an edge between two nodes of the same tenant."""
        validate_tenant(tenant)
        validate_edge_endpoints(source_id, target_id)
        weight = validate_weight(weight)
        with self._lock:
            for nid in (source_id, target_id):
                if self._node_tenant.get(nid) != tenant or nid not in self._nodes:
                    raise NotFound(f"Node {nid} not found in {tenant}")
            for eid in self._outgoing.get(source_id, []):
                existing = self._edges[eid]
                if existing.target_id == target_id and existing.context == context:
                    raise InvalidInput("Influence edge already exists", ErrorCode.E_DUPLICATE)
            if edge_id is None:
                self._edge_counter += 1
                edge_id = f"e_{self._edge_counter}"
            edge = Edge(id=edge_id, source_id=source_id, target_id=target_id,
                        weight=weight, context=context, context_type=context_type,
                        created_at=created_at if created_at is not None else now_ms())
            self._edges[edge_id] = edge
            self._edge_tenant[edge_id] = tenant
            self._edges_by_tenant.setdefault(tenant, []).append(edge_id)
            self._outgoing.setdefault(source_id, []).append(edge_id)
            self._incoming.setdefault(target_id, []).append(edge_id)
            return copy.deepcopy(edge)

    def get_edge(self, edge_id: str) -> Edge:
        with self._lock:
            edge = self._edges.get(edge_id)
            if edge is None:
                raise NotFound(f"Edge {edge_id} not found")
            return copy.deepcopy(edge)

    def edge_tenant(self, edge_id: str) -> str:
        with self._lock:
            if edge_id not in self._edges:
                raise NotFound(f"Edge {edge_id} not found")
            return self._edge_tenant[edge_id]

    def update_edge(self, edge_id: str, weight: Optional[float] = None,
                    context: Optional[str] = None,
                    context_type: Optional[str] = None,
                    active: Optional[bool] = None) -> Edge:
        if weight is not None:
            weight = validate_weight(weight)
        with self._lock:
            edge = self._edges.get(edge_id)
            if edge is None:
                raise NotFound(f"Edge {edge_id} not found")
            if weight is not None:
                edge.weight = weight
            if context is not None:
                edge.context = context
            if context_type is not None:
                edge.context_type = context_type
            if active is not None:
                edge.active = active
            return copy.deepcopy(edge)

    def delete_edge(self, edge_id: str) -> Edge:
        with self._lock:
            edge = self._edges.pop(edge_id, None)
            if edge is None:
                raise NotFound(f"Edge {edge_id} not found")
            tenant = self._edge_tenant.pop(edge_id)
            self._edges_by_tenant[tenant].remove(edge_id)
            self._outgoing[edge.source_id].remove(edge_id)
            self._incoming[edge.target_id].remove(edge_id)
            return edge

    def list_edges(self, tenant: str) -> list[Edge]:
        with self._lock:
            return [copy.deepcopy(self._edges[eid])
                    for eid in self._edges_by_tenant.get(tenant, [])]

    def list_active_edges(self, tenant: str) -> list[Edge]:
        return [e for e in self.list_edges(tenant) if e.active]

    def get_outgoing(self, node_id: str) -> list[Edge]:
        with self._lock:
            return [copy.deepcopy(self._edges[eid]) for eid in self._outgoing.get(node_id, [])]

    def get_incoming(self, node_id: str) -> list[Edge]:
        with self._lock:
            return [copy.deepcopy(self._edges[eid]) for eid in self._incoming.get(node_id, [])]

    # --------------------------------------------------------
    # Events
    # --------------------------------------------------------

    def record_event(self, tenant: str, subject_node_id: str, event_type,
                     weight_delta: Optional[float] = None,
                     impact_score: float = 1.0,
                     created_at: Optional[int] = None) -> InfluenceEvent:
        """Queue a one-shot adjustment. The delta defaults to the event type's multiplier."""
        validate_tenant(tenant)
        validate_id(subject_node_id, "subject_node_id")
        if isinstance(event_type, str):
            try:
                event_type = EventType(event_type)
            except ValueError:
                raise InvalidInput(f"Unknown event type: {event_type}")
        if weight_delta is None:
            weight_delta = influence_delta(event_type, impact_score)
        with self._lock:
            if self._node_tenant.get(subject_node_id) != tenant:
                raise NotFound(f"Node {subject_node_id} not found in {tenant}")
            self._event_counter += 1
            event = InfluenceEvent(
                id=f"ev_{self._event_counter}", subject_node_id=subject_node_id,
                event_type=event_type, weight_delta=float(weight_delta),
                created_at=created_at if created_at is not None else now_ms())
            self._events[event.id] = event
            self._event_tenant[event.id] = tenant
            self._events_by_tenant.setdefault(tenant, []).append(event.id)
            return copy.deepcopy(event)

    def get_event(self, event_id: str) -> InfluenceEvent:
        with self._lock:
            event = self._events.get(event_id)
            if event is None:
                raise NotFound(f"Event {event_id} not found")
            return copy.deepcopy(event)

    def list_events(self, tenant: str, limit: Optional[int] = None) -> list[InfluenceEvent]:
        """Events newest first."""
        with self._lock:
            events = [copy.deepcopy(self._events[eid])
                      for eid in self._events_by_tenant.get(tenant, [])]
        events.sort(key=lambda e: e.created_at, reverse=True)
        return events[:limit] if limit is not None else events

    def list_unprocessed_events(self, tenant: str) -> list[InfluenceEvent]:
        """Pending events, oldest first."""
        with self._lock:
            events = [copy.deepcopy(self._events[eid])
                      for eid in self._events_by_tenant.get(tenant, [])
                      if self._events[eid].processed_at is None]
        events.sort(key=lambda e: e.created_at)
        return events

    def mark_events_processed(self, event_ids: Iterable[str],
                              processed_at: Optional[int] = None) -> None:
        stamp = processed_at if processed_at is not None else now_ms()
        with self._lock:
            for eid in event_ids:
                event = self._events.get(eid)
                if event is not None and event.processed_at is None:
                    event.processed_at = stamp

    # --------------------------------------------------------
    # Scores
    # --------------------------------------------------------

    def commit_scores(self, tenant: str, updates: list[ScoreUpdate],
                      calculated_at: Optional[int] = None,
                      processed_event_ids: Iterable[str] = ()) -> None:
        """Write back a recompute cycle's results in one step.

        The consumed events are marked processed under the same lock, so a
        committed event_bonus never coexists with its events still pending.
        """
        stamp = calculated_at if calculated_at is not None else now_ms()
        event_ids = list(processed_event_ids)
        with self._lock:
            for u in updates:
                if self._node_tenant.get(u.node_id) != tenant:
                    raise NotFound(f"Node {u.node_id} not found in {tenant}")
            for eid in event_ids:
                if self._event_tenant.get(eid) != tenant:
                    raise NotFound(f"Event {eid} not found in {tenant}")
            for eid in event_ids:
                event = self._events[eid]
                if event.processed_at is None:
                    event.processed_at = stamp
            for u in updates:
                node = self._nodes[u.node_id]
                node.score = u.score
                node.raw_score = u.raw_score
                node.volatility = u.volatility
                node.rank = u.rank
                node.event_bonus = u.event_bonus
                node.calculated_at = stamp
                node.history = ([u.score] + node.history)[:HISTORY_LIMIT]

    def last_calculated_at(self, tenant: str) -> Optional[int]:
        stamps = [n.calculated_at for n in self.list_nodes(tenant)
                  if n.calculated_at is not None]
        return max(stamps) if stamps else None

    # --------------------------------------------------------
    # Stats
    # --------------------------------------------------------

    @property
    def node_count(self) -> int:
        return len(self._nodes)

    @property
    def edge_count(self) -> int:
        return len(self._edges)
