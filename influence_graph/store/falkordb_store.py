"""
FalkorDB Influence Store

Drop-in replacement for InMemoryGraphStore, backed by FalkorDB Cypher.

Node model:
  - (:Person {_id, tenant, name, group_id, group_name, score, raw_score,
              volatility, rank, event_bonus, history, calculated_at})
  - (:InfluenceEvent {_id, tenant, subject_id, event_type, weight_delta,
                      created_at, processed_at})

Edge model:
  - (:Person)-[:INFLUENCES {_id, tenant, weight, created_at, active,
                            context, context_type}]->(:Person)

All values travel as query parameters. Any driver error surfaces as
StorageFailure, which callers may retry.
"""

import logging
import os
import uuid
from typing import Any, Iterable, Optional

from falkordb import FalkorDB as FalkorDBClient

from influence_graph.core.errors import (
    ErrorCode, InvalidInput, NotFound, StorageFailure,
    validate_edge_endpoints, validate_id, validate_tenant, validate_weight,
)
from influence_graph.core.types import (
    Edge, EventType, InfluenceEvent, Node, ScoreUpdate, now_ms,
)
from influence_graph.engine.decay import influence_delta
from influence_graph.store.memory_store import HISTORY_LIMIT


logger = logging.getLogger(__name__)

PERSON = "Person"
EVENT = "InfluenceEvent"
INFLUENCES = "INFLUENCES"

_EDGE_RETURN = "r, a._id, b._id"


def _props(entity) -> dict:
    return dict(entity.properties) if hasattr(entity, "properties") else {}


def _row_to_node(entity) -> Node:
    """Convert a FalkorDB node result to our Node dataclass."""
    p = _props(entity)
    return Node(
        id=p.get("_id", "?"),
        name=p.get("name", ""),
        group_id=p.get("group_id"),
        group_name=p.get("group_name"),
        score=float(p.get("score") or 0.0),
        raw_score=float(p.get("raw_score") or 0.0),
        volatility=float(p.get("volatility") or 0.0),
        rank=p.get("rank"),
        event_bonus=float(p.get("event_bonus") or 0.0),
        history=[float(s) for s in (p.get("history") or [])],
        calculated_at=p.get("calculated_at"),
    )


def _row_to_edge(row) -> Edge:
    """Convert a (relationship, source _id, target _id) row to an Edge."""
    p = _props(row[0])
    return Edge(
        id=p.get("_id", "?"),
        source_id=row[1],
        target_id=row[2],
        weight=float(p.get("weight") or 0.0),
        created_at=int(p.get("created_at") or 0),
        active=bool(p.get("active", True)),
        context=p.get("context"),
        context_type=p.get("context_type"),
    )


def _row_to_event(entity) -> InfluenceEvent:
    p = _props(entity)
    return InfluenceEvent(
        id=p.get("_id", "?"),
        subject_node_id=p.get("subject_id", ""),
        event_type=EventType(p.get("event_type", EventType.COLLABORATION.value)),
        weight_delta=float(p.get("weight_delta") or 0.0),
        created_at=int(p.get("created_at") or 0),
        processed_at=p.get("processed_at"),
    )


class FalkorGraphStore:
    """FalkorDB-backed influence store. Same interface as InMemoryGraphStore."""

    def __init__(self, host: str = None, port: int = None,
                 password: str = None, graph_name: str = "influence_graph",
                 client=None):
        self._host = host or os.getenv("FALKORDB_HOST", "localhost")
        self._port = int(port or os.getenv("FALKORDB_PORT", "6379"))
        self._password = password or os.getenv("FALKORDB_PASSWORD", "")
        self._graph_name = graph_name

        if client is None:
            kwargs = {"host": self._host, "port": self._port}
            if self._password:
                kwargs["password"] = self._password
            try:
                client = FalkorDBClient(**kwargs)
            except Exception as e:
                raise StorageFailure(f"FalkorDB connection failed: {e}")
        self._db = client
        self._graph = self._db.select_graph(self._graph_name)
        self._ensure_indexes()

    def _ensure_indexes(self):
        for label in (PERSON, EVENT):
            try:
                self._graph.query(f"CREATE INDEX FOR (n:{label}) ON (n._id)")
            except Exception:
                logger.debug("Index on %s._id already present", label)

    def _q(self, query: str, params: Optional[dict] = None):
        """Execute a Cypher query."""
        try:
            return self._graph.query(query, params or {})
        except Exception as e:
            logger.error("FalkorDB query error: %s | query: %s", e, query[:200])
            raise StorageFailure(f"FalkorDB query failed: {e}")

    # --------------------------------------------------------
    # Node operations
    # --------------------------------------------------------

    def add_node(self, tenant: str, node_id: str, name: str,
                 group_id: Optional[str] = None,
                 group_name: Optional[str] = None, **scores) -> Node:
        validate_tenant(tenant)
        validate_id(node_id, "node_id")
        node = Node(id=node_id, name=name, group_id=group_id,
                    group_name=group_name, **scores)
        props = {
            "_id": node_id, "tenant": tenant, "name": name,
            "group_id": group_id, "group_name": group_name,
            "score": node.score, "raw_score": node.raw_score,
            "volatility": node.volatility, "rank": node.rank,
            "event_bonus": node.event_bonus, "history": node.history,
            "calculated_at": node.calculated_at,
        }
        owner = self._q(f"MATCH (n:{PERSON} {{_id: $id}}) RETURN n.tenant LIMIT 1",
                        {"id": node_id})
        if owner.result_set and owner.result_set[0][0] != tenant:
            raise InvalidInput(f"Node id {node_id} is already used by another tenant",
                               ErrorCode.E_DUPLICATE)
        # MERGE on (_id, tenant), set all props (overwrite if exists)
        self._q(f"MERGE (n:{PERSON} {{_id: $id, tenant: $tenant}}) SET n = $props RETURN n",
                {"id": node_id, "tenant": tenant,
                 "props": {k: v for k, v in props.items() if v is not None}})
        return node

    def get_node(self, node_id: str) -> Node:
        result = self._q(f"MATCH (n:{PERSON} {{_id: $id}}) RETURN n LIMIT 1", {"id": node_id})
        if not result.result_set:
            raise NotFound(f"Node {node_id} not found")
        return _row_to_node(result.result_set[0][0])

    def has_node(self, node_id: str) -> bool:
        result = self._q(f"MATCH (n:{PERSON} {{_id: $id}}) RETURN count(n)", {"id": node_id})
        return result.result_set[0][0] > 0

    def list_nodes(self, tenant: str) -> list[Node]:
        result = self._q(f"MATCH (n:{PERSON} {{tenant: $tenant}}) RETURN n ORDER BY n._id",
                         {"tenant": tenant})
        return [_row_to_node(row[0]) for row in result.result_set]

    def group_names(self, tenant: str) -> dict[str, str]:
        return {n.group_id: n.group_name or n.group_id
                for n in self.list_nodes(tenant) if n.group_id}

    # --------------------------------------------------------
    # Edge operations
    # --------------------------------------------------------

    def create_edge(self, tenant: str, source_id: str, target_id: str,
                    weight: float, context: Optional[str] = None,
                    context_type: Optional[str] = None,
                    created_at: Optional[int] = None,
                    edge_id: Optional[str] = None) -> Edge:
        validate_tenant(tenant)
        validate_edge_endpoints(source_id, target_id)
        weight = validate_weight(weight)

        existing = self._q(
            f"MATCH (a:{PERSON} {{_id: $src}})-[r:{INFLUENCES}]->(b:{PERSON} {{_id: $tgt}}) "
            f"WHERE r.context = $context OR (r.context IS NULL AND $context IS NULL) "
            f"RETURN count(r)",
            {"src": source_id, "tgt": target_id, "context": context})
        if existing.result_set and existing.result_set[0][0] > 0:
            raise InvalidInput("Influence edge already exists", ErrorCode.E_DUPLICATE)

        edge = Edge(id=edge_id or f"e_{uuid.uuid4().hex[:12]}",
                    source_id=source_id, target_id=target_id, weight=weight,
                    created_at=created_at if created_at is not None else now_ms(),
                    context=context, context_type=context_type)
        props = {"_id": edge.id, "tenant": tenant, "weight": edge.weight,
                 "created_at": edge.created_at, "active": True,
                 "context": context, "context_type": context_type}
        result = self._q(
            f"MATCH (a:{PERSON} {{_id: $src, tenant: $tenant}}), "
            f"(b:{PERSON} {{_id: $tgt, tenant: $tenant}}) "
            f"CREATE (a)-[r:{INFLUENCES}]->(b) SET r = $props RETURN r",
            {"src": source_id, "tgt": target_id, "tenant": tenant,
             "props": {k: v for k, v in props.items() if v is not None}})
        if not result.result_set:
            raise NotFound(f"Node {source_id} or {target_id} not found in {tenant}")
        return edge

    def get_edge(self, edge_id: str) -> Edge:
        result = self._q(
            f"MATCH (a)-[r:{INFLUENCES} {{_id: $id}}]->(b) RETURN {_EDGE_RETURN} LIMIT 1",
            {"id": edge_id})
        if not result.result_set:
            raise NotFound(f"Edge {edge_id} not found")
        return _row_to_edge(result.result_set[0])

    def edge_tenant(self, edge_id: str) -> str:
        result = self._q(f"MATCH ()-[r:{INFLUENCES} {{_id: $id}}]->() RETURN r.tenant",
                         {"id": edge_id})
        if not result.result_set:
            raise NotFound(f"Edge {edge_id} not found")
        return result.result_set[0][0]

    def update_edge(self, edge_id: str, weight: Optional[float] = None,
                    context: Optional[str] = None,
                    context_type: Optional[str] = None,
                    active: Optional[bool] = None) -> Edge:
        changes: dict[str, Any] = {}
        if weight is not None:
            changes["weight"] = validate_weight(weight)
        if context is not None:
            changes["context"] = context
        if context_type is not None:
            changes["context_type"] = context_type
        if active is not None:
            changes["active"] = bool(active)
        result = self._q(
            f"MATCH (a)-[r:{INFLUENCES} {{_id: $id}}]->(b) SET r += $changes "
            f"RETURN {_EDGE_RETURN}",
            {"id": edge_id, "changes": changes})
        if not result.result_set:
            raise NotFound(f"Edge {edge_id} not found")
        return _row_to_edge(result.result_set[0])

    def delete_edge(self, edge_id: str) -> Edge:
        edge = self.get_edge(edge_id)
        self._q(f"MATCH ()-[r:{INFLUENCES} {{_id: $id}}]->() DELETE r", {"id": edge_id})
        return edge

    def list_edges(self, tenant: str) -> list[Edge]:
        result = self._q(
            f"MATCH (a:{PERSON})-[r:{INFLUENCES} {{tenant: $tenant}}]->(b:{PERSON}) "
            f"RETURN {_EDGE_RETURN} ORDER BY r.created_at, r._id",
            {"tenant": tenant})
        return [_row_to_edge(row) for row in result.result_set]

    def list_active_edges(self, tenant: str) -> list[Edge]:
        return [e for e in self.list_edges(tenant) if e.active]

    def get_outgoing(self, node_id: str) -> list[Edge]:
        result = self._q(
            f"MATCH (a:{PERSON} {{_id: $id}})-[r:{INFLUENCES}]->(b) RETURN {_EDGE_RETURN}",
            {"id": node_id})
        return [_row_to_edge(row) for row in result.result_set]

    def get_incoming(self, node_id: str) -> list[Edge]:
        result = self._q(
            f"MATCH (a)-[r:{INFLUENCES}]->(b:{PERSON} {{_id: $id}}) RETURN {_EDGE_RETURN}",
            {"id": node_id})
        return [_row_to_edge(row) for row in result.result_set]

    # --------------------------------------------------------
    # Events
    # --------------------------------------------------------

    def record_event(self, tenant: str, subject_node_id: str, event_type,
                     weight_delta: Optional[float] = None,
                     impact_score: float = 1.0,
                     created_at: Optional[int] = None) -> InfluenceEvent:
        validate_tenant(tenant)
        validate_id(subject_node_id, "subject_node_id")
        if isinstance(event_type, str):
            try:
                event_type = EventType(event_type)
            except ValueError:
                raise InvalidInput(f"Unknown event type: {event_type}")
        if weight_delta is None:
            weight_delta = influence_delta(event_type, impact_score)
        event = InfluenceEvent(
            id=f"ev_{uuid.uuid4().hex[:12]}", subject_node_id=subject_node_id,
            event_type=event_type, weight_delta=float(weight_delta),
            created_at=created_at if created_at is not None else now_ms())
        result = self._q(
            f"MATCH (s:{PERSON} {{_id: $subject, tenant: $tenant}}) "
            f"CREATE (e:{EVENT} {{_id: $id, tenant: $tenant, subject_id: $subject, "
            f"event_type: $event_type, weight_delta: $delta, created_at: $created_at}}) "
            f"RETURN e",
            {"subject": subject_node_id, "tenant": tenant, "id": event.id,
             "event_type": event.event_type.value, "delta": event.weight_delta,
             "created_at": event.created_at})
        if not result.result_set:
            raise NotFound(f"Node {subject_node_id} not found in {tenant}")
        return event

    def get_event(self, event_id: str) -> InfluenceEvent:
        result = self._q(f"MATCH (e:{EVENT} {{_id: $id}}) RETURN e LIMIT 1", {"id": event_id})
        if not result.result_set:
            raise NotFound(f"Event {event_id} not found")
        return _row_to_event(result.result_set[0][0])

    def list_events(self, tenant: str, limit: Optional[int] = None) -> list[InfluenceEvent]:
        query = f"MATCH (e:{EVENT} {{tenant: $tenant}}) RETURN e ORDER BY e.created_at DESC"
        params: dict[str, Any] = {"tenant": tenant}
        if limit is not None:
            query += " LIMIT $limit"
            params["limit"] = int(limit)
        result = self._q(query, params)
        return [_row_to_event(row[0]) for row in result.result_set]

    def list_unprocessed_events(self, tenant: str) -> list[InfluenceEvent]:
        result = self._q(
            f"MATCH (e:{EVENT} {{tenant: $tenant}}) WHERE e.processed_at IS NULL "
            f"RETURN e ORDER BY e.created_at ASC",
            {"tenant": tenant})
        return [_row_to_event(row[0]) for row in result.result_set]

    def mark_events_processed(self, event_ids: Iterable[str],
                              processed_at: Optional[int] = None) -> None:
        ids = list(event_ids)
        if not ids:
            return
        self._q(
            f"MATCH (e:{EVENT}) WHERE e._id IN $ids AND e.processed_at IS NULL "
            f"SET e.processed_at = $stamp",
            {"ids": ids, "stamp": processed_at if processed_at is not None else now_ms()})

    # --------------------------------------------------------
    # Scores
    # --------------------------------------------------------

    def commit_scores(self, tenant: str, updates: list[ScoreUpdate],
                      calculated_at: Optional[int] = None,
                      processed_event_ids: Iterable[str] = ()) -> None:
        """Scores and processed marks in a single query, so the write-back is atomic."""
        event_ids = list(processed_event_ids)
        stamp = calculated_at if calculated_at is not None else now_ms()
        if not updates:
            self.mark_events_processed(event_ids, processed_at=stamp)
            return
        rows = [{"id": u.node_id, "score": u.score, "raw_score": u.raw_score,
                 "volatility": u.volatility, "rank": u.rank,
                 "event_bonus": u.event_bonus} for u in updates]
        query = (
            f"UNWIND $rows AS u "
            f"MATCH (n:{PERSON} {{_id: u.id, tenant: $tenant}}) "
            f"SET n.score = u.score, n.raw_score = u.raw_score, "
            f"n.volatility = u.volatility, n.rank = u.rank, "
            f"n.event_bonus = u.event_bonus, n.calculated_at = $stamp, "
            f"n.history = ([u.score] + coalesce(n.history, []))[0..{HISTORY_LIMIT}]")
        if event_ids:
            query += (
                f" WITH count(n) AS committed "
                f"MATCH (e:{EVENT} {{tenant: $tenant}}) "
                f"WHERE e._id IN $event_ids AND e.processed_at IS NULL "
                f"SET e.processed_at = $stamp")
        self._q(query, {"rows": rows, "tenant": tenant, "stamp": stamp,
                        "event_ids": event_ids})

    def last_calculated_at(self, tenant: str) -> Optional[int]:
        result = self._q(f"MATCH (n:{PERSON} {{tenant: $tenant}}) RETURN max(n.calculated_at)",
                         {"tenant": tenant})
        return result.result_set[0][0] if result.result_set else None

    # --------------------------------------------------------
    # Stats
    # --------------------------------------------------------

    @property
    def node_count(self) -> int:
        result = self._q(f"MATCH (n:{PERSON}) RETURN count(n)")
        return result.result_set[0][0] if result.result_set else 0

    @property
    def edge_count(self) -> int:
        result = self._q(f"MATCH ()-[r:{INFLUENCES}]->() RETURN count(r)")
        return result.result_set[0][0] if result.result_set else 0

    def clear(self):
        """Drop all data in this graph."""
        self._q("MATCH (n) DETACH DELETE n")
