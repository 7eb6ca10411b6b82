"""
Influence Service

The surface the request layer (HTTP routes, MCP tools) calls into.
Queries go through the result cache with explicit get_or_set calls;
mutations validate input, write through the store, invalidate the
tenant's cached views and publish a realtime hint.
"""

import logging
from datetime import datetime, timezone
from typing import Callable, Optional

from influence_graph.cache.cache import CacheKeys, ResultCache, invalidate_tenant
from influence_graph.config import EngineConfig
from influence_graph.core.errors import InvalidInput, NotFound, validate_id, validate_tenant
from influence_graph.core.types import UpdateType, now_ms
from influence_graph.engine.aggregation import (
    department_matrix, find_top_influencers, graph_metrics, group_breakdown,
    heatmap_rows, volatility, weight_distribution,
)
from influence_graph.engine.community import community_sizes, detect_communities
from influence_graph.engine.decay import decayed_weight
from influence_graph.engine.propagation import propagate
from influence_graph.notify.channel import NotificationChannel, notify
from influence_graph.orchestrator.recompute import RecomputeOrchestrator


logger = logging.getLogger(__name__)

ANALYTICS_KINDS = ("overview", "top", "heatmap", "volatility", "metrics", "trends")
OVERVIEW_TOP = 5
VOLATILITY_EXTREMES = 10
TRENDS_EVENT_LIMIT = 100
TRENDS_SCORE_LIMIT = 50


def _day(ms: int) -> str:
    return datetime.fromtimestamp(ms / 1000, tz=timezone.utc).date().isoformat()


class InfluenceService:

    def __init__(self, store, cache: ResultCache,
                 orchestrator: Optional[RecomputeOrchestrator] = None,
                 channel: Optional[NotificationChannel] = None,
                 config: Optional[EngineConfig] = None,
                 clock: Optional[Callable[[], int]] = None):
        self.store = store
        self.cache = cache
        self.config = config or EngineConfig()
        self.channel = channel
        self._clock = clock or now_ms
        self.orchestrator = orchestrator or RecomputeOrchestrator(
            store, cache, channel, self.config, self._clock)

    # --------------------------------------------------------
    # Graph view
    # --------------------------------------------------------

    def compute_graph_view(self, tenant: str, include_propagation: bool = False,
                           include_communities: bool = False) -> dict:
        """Nodes, edges with their decayed weight and, optionally, propagation."""
        validate_tenant(tenant)
        view = self.cache.get_or_set(
            CacheKeys.graph(tenant, include_propagation),
            lambda: self._build_graph_view(tenant, include_propagation),
            self.config.graph_ttl_ms)
        if include_communities:
            edges = self.store.list_active_edges(tenant)
            labels = detect_communities(edges, [n["id"] for n in view["nodes"]])
            view = dict(view, communities=labels,
                        communityCount=len(community_sizes(labels)))
        return view

    def _build_graph_view(self, tenant: str, include_propagation: bool) -> dict:
        nodes = self.store.list_nodes(tenant)
        edges = sorted(self.store.list_active_edges(tenant),
                       key=lambda e: e.weight, reverse=True)
        now = self._clock()
        edge_rows = []
        for e in edges:
            row = e.to_dict()
            row["decayedWeight"] = decayed_weight(e.weight, e.created_at,
                                                  self.config.decay_rate, now)
            edge_rows.append(row)

        propagation = None
        if include_propagation:
            results = propagate(edges, [n.id for n in nodes],
                                max_depth=self.config.max_depth,
                                decay_factor=self.config.decay_factor,
                                min_weight=self.config.min_weight,
                                max_expansions=self.config.max_expansions)
            propagation = {nid: r.to_dict() for nid, r in results.items()}

        return {
            "nodes": [n.to_dict() for n in nodes],
            "edges": edge_rows,
            "propagation": propagation,
            "meta": {"totalNodes": len(nodes), "totalEdges": len(edges),
                     "lastUpdated": now},
        }

    def node_detail(self, tenant: str, node_id: str) -> dict:
        """One node's edges and recent score history."""
        validate_tenant(tenant)
        validate_id(node_id, "node_id")

        def build():
            if node_id not in {n.id for n in self.store.list_nodes(tenant)}:
                raise NotFound(f"Node {node_id} not found in {tenant}")
            node = self.store.get_node(node_id)
            return {
                **node.to_dict(),
                "outgoing": [e.to_dict() for e in self.store.get_outgoing(node_id)],
                "incoming": [e.to_dict() for e in self.store.get_incoming(node_id)],
                "history": list(node.history),
            }

        return self.cache.get_or_set(CacheKeys.node_scores(tenant, node_id), build,
                                     self.config.graph_ttl_ms)

    # --------------------------------------------------------
    # Analytics
    # --------------------------------------------------------

    def compute_analytics(self, tenant: str, kind: str = "overview",
                          limit: int = 10, metric: str = "total") -> dict:
        validate_tenant(tenant)
        if kind not in ANALYTICS_KINDS:
            raise InvalidInput(f"Unknown analytics kind: {kind}")
        if kind == "top":
            return self.cache.get_or_set(
                CacheKeys.top(tenant, metric, limit),
                lambda: self._top(tenant, limit, metric),
                self.config.analytics_ttl_ms)
        builders = {
            "overview": self._overview,
            "heatmap": self._heatmap,
            "volatility": self._volatility,
            "metrics": self._metrics,
            "trends": self._trends,
        }
        return self.cache.get_or_set(
            CacheKeys.analytics(tenant, kind),
            lambda: builders[kind](tenant),
            self.config.analytics_ttl_ms)

    def _overview(self, tenant: str) -> dict:
        nodes = self.store.list_nodes(tenant)
        edges = self.store.list_active_edges(tenant)
        total = sum(n.score for n in nodes)
        top = sorted(nodes, key=lambda n: n.score, reverse=True)[:OVERVIEW_TOP]
        breakdown = group_breakdown(nodes, edges)
        return {
            "overview": {
                "totalNodes": len(nodes),
                "totalEdges": len(edges),
                "totalGroups": len(breakdown),
                "totalInfluence": total,
                "averageInfluence": total / len(nodes) if nodes else 0.0,
            },
            "topInfluencers": [{"id": n.id, "name": n.name, "group": n.group_name,
                                "score": n.score} for n in top],
            "groupBreakdown": breakdown,
            "lastUpdated": self._clock(),
        }

    def _top(self, tenant: str, limit: int, metric: str) -> dict:
        nodes = self.store.list_nodes(tenant)
        edges = self.store.list_active_edges(tenant)
        out_count: dict[str, int] = {}
        in_count: dict[str, int] = {}
        for e in edges:
            out_count[e.source_id] = out_count.get(e.source_id, 0) + 1
            in_count[e.target_id] = in_count.get(e.target_id, 0) + 1
        ranked = find_top_influencers(nodes, metric, limit)
        return {
            "topInfluencers": [{"rank": i + 1, **n.to_dict(),
                                "outgoingEdges": out_count.get(n.id, 0),
                                "incomingEdges": in_count.get(n.id, 0)}
                               for i, n in enumerate(ranked)],
            "metric": metric,
            "lastUpdated": self._clock(),
        }

    def _heatmap(self, tenant: str) -> dict:
        nodes = self.store.list_nodes(tenant)
        edges = self.store.list_active_edges(tenant)
        names = self.store.group_names(tenant)
        matrix = department_matrix(edges, nodes)
        return {
            "matrix": matrix,
            "heatmap": heatmap_rows(matrix, names),
            "groups": [{"id": gid, "name": name} for gid, name in names.items()],
            "lastUpdated": self._clock(),
        }

    def _volatility(self, tenant: str) -> dict:
        rows = []
        for n in self.store.list_nodes(tenant):
            rows.append({
                "id": n.id,
                "name": n.name,
                "group": n.group_name,
                "currentScore": n.history[0] if n.history else 0.0,
                "volatility": volatility(n.history),
                "scoreHistory": n.history[:10],
            })
        rows.sort(key=lambda r: r["volatility"], reverse=True)
        return {
            "volatility": rows,
            "averageVolatility": (sum(r["volatility"] for r in rows) / len(rows)
                                  if rows else 0.0),
            "mostVolatile": rows[:VOLATILITY_EXTREMES],
            "mostStable": list(reversed(rows[-VOLATILITY_EXTREMES:])),
            "lastUpdated": self._clock(),
        }

    def _metrics(self, tenant: str) -> dict:
        nodes = self.store.list_nodes(tenant)
        edges = self.store.list_active_edges(tenant)
        metrics = graph_metrics(nodes, edges).to_dict()
        metrics["edgeWeightDistribution"] = weight_distribution(edges)
        metrics["averageEdgeWeight"] = (sum(e.weight for e in edges) / len(edges)
                                        if edges else 0.0)
        metrics["lastUpdated"] = self._clock()
        return metrics

    def _trends(self, tenant: str) -> dict:
        by_date: dict[str, dict] = {}
        for event in self.store.list_events(tenant, limit=TRENDS_EVENT_LIMIT):
            bucket = by_date.setdefault(_day(event.created_at), {"total": 0.0, "types": {}})
            bucket["total"] += event.weight_delta
            kind = event.event_type.value
            bucket["types"][kind] = bucket["types"].get(kind, 0) + 1

        scored = [n for n in self.store.list_nodes(tenant) if n.calculated_at is not None]
        scored.sort(key=lambda n: n.calculated_at, reverse=True)
        return {
            "eventsByDate": by_date,
            "recentScoreChanges": [{"nodeId": n.id, "name": n.name, "score": n.score,
                                    "updatedAt": n.calculated_at}
                                   for n in scored[:TRENDS_SCORE_LIMIT]],
            "lastUpdated": self._clock(),
        }

    # --------------------------------------------------------
    # Recompute
    # --------------------------------------------------------

    def recompute(self, tenant: str, apply_decay: bool = True,
                  process_events: bool = True) -> dict:
        return self.orchestrator.recompute(tenant, apply_decay, process_events).to_dict()

    def recompute_status(self, tenant: str) -> dict:
        return self.orchestrator.status(tenant)

    # --------------------------------------------------------
    # Mutations
    # --------------------------------------------------------

    def _edge_changed(self, tenant: str, update_type: UpdateType, payload: dict) -> None:
        invalidate_tenant(self.cache, tenant, CacheKeys.INVALIDATE_ON_EDGE_CHANGE)
        notify(self.channel, update_type, tenant, payload)

    def add_node(self, tenant: str, node_id: str, name: str,
                 group_id: Optional[str] = None,
                 group_name: Optional[str] = None) -> dict:
        node = self.store.add_node(tenant, node_id, name,
                                   group_id=group_id, group_name=group_name)
        invalidate_tenant(self.cache, tenant, CacheKeys.INVALIDATE_ON_EDGE_CHANGE)
        return node.to_dict()

    def create_edge(self, tenant: str, source_id: str, target_id: str,
                    weight: float, context: Optional[str] = None,
                    context_type: Optional[str] = None) -> dict:
        edge = self.store.create_edge(tenant, source_id, target_id, weight,
                                      context=context, context_type=context_type)
        logger.info("Edge %s created in %s: %s -> %s (%.1f)",
                    edge.id, tenant, source_id, target_id, edge.weight)
        self._edge_changed(tenant, UpdateType.EDGE_CREATED, edge.to_dict())
        return edge.to_dict()

    def update_edge(self, edge_id: str, weight: Optional[float] = None,
                    context: Optional[str] = None,
                    context_type: Optional[str] = None,
                    active: Optional[bool] = None) -> dict:
        validate_id(edge_id, "edge_id")
        tenant = self.store.edge_tenant(edge_id)
        edge = self.store.update_edge(edge_id, weight=weight, context=context,
                                      context_type=context_type, active=active)
        self._edge_changed(tenant, UpdateType.EDGE_UPDATED, edge.to_dict())
        return edge.to_dict()

    def delete_edge(self, edge_id: str) -> dict:
        validate_id(edge_id, "edge_id")
        tenant = self.store.edge_tenant(edge_id)
        edge = self.store.delete_edge(edge_id)
        self._edge_changed(tenant, UpdateType.EDGE_DELETED, {"edgeId": edge.id})
        return {"message": "Influence edge deleted successfully", "edgeId": edge.id}

    def record_event(self, tenant: str, subject_node_id: str, event_type: str,
                     weight_delta: Optional[float] = None,
                     impact_score: float = 1.0) -> dict:
        event = self.store.record_event(tenant, subject_node_id, event_type,
                                        weight_delta=weight_delta,
                                        impact_score=impact_score)
        return event.to_dict()

    def cache_stats(self) -> dict:
        return self.cache.stats().to_dict()
