"""
Influence Graph Data Model

Snapshots passed between the store, the engine and the request layer.
The engine never mutates these in place; it returns new derived values.

Timestamps are epoch milliseconds throughout.
"""

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional


MS_PER_DAY = 24 * 60 * 60 * 1000


def now_ms() -> int:
    return int(time.time() * 1000)


class EventType(Enum):
    """One-shot score adjustments and their base multipliers."""
    PROJECT_SUCCESS = "PROJECT_SUCCESS"
    PROPOSAL_ADOPTED = "PROPOSAL_ADOPTED"
    MENTORSHIP = "MENTORSHIP"
    COLLABORATION = "COLLABORATION"


class UpdateType(Enum):
    """Realtime notification kinds."""
    EDGE_CREATED = "EDGE_CREATED"
    EDGE_UPDATED = "EDGE_UPDATED"
    EDGE_DELETED = "EDGE_DELETED"
    SCORE_UPDATED = "SCORE_UPDATED"


@dataclass
class Node:
    """A person in the influence graph, with its last committed scores."""
    id: str
    name: str
    group_id: Optional[str] = None
    group_name: Optional[str] = None
    score: float = 0.0
    raw_score: float = 0.0
    volatility: float = 0.0
    rank: Optional[int] = None
    event_bonus: float = 0.0
    history: list[float] = field(default_factory=list)  # newest first
    calculated_at: Optional[int] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "groupId": self.group_id,
            "groupName": self.group_name,
            "score": self.score,
            "rawScore": self.raw_score,
            "volatility": self.volatility,
            "rank": self.rank,
        }


@dataclass
class Edge:
    """A directed influence relationship. Weight is in [0, 100]."""
    id: str
    source_id: str
    target_id: str
    weight: float
    created_at: int = field(default_factory=now_ms)
    active: bool = True
    context: Optional[str] = None
    context_type: Optional[str] = None

    def with_weight(self, weight: float) -> "Edge":
        return Edge(id=self.id, source_id=self.source_id, target_id=self.target_id,
                    weight=weight, created_at=self.created_at, active=self.active,
                    context=self.context, context_type=self.context_type)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "source": self.source_id,
            "target": self.target_id,
            "weight": self.weight,
            "createdAt": self.created_at,
            "active": self.active,
            "context": self.context,
            "contextType": self.context_type,
        }


@dataclass
class InfluenceEvent:
    """A score adjustment consumed exactly once."""
    id: str
    subject_node_id: str
    event_type: EventType
    weight_delta: float
    created_at: int = field(default_factory=now_ms)
    processed_at: Optional[int] = None

    @property
    def processed(self) -> bool:
        return self.processed_at is not None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "subjectNodeId": self.subject_node_id,
            "eventType": self.event_type.value,
            "weightDelta": self.weight_delta,
            "createdAt": self.created_at,
            "processedAt": self.processed_at,
        }


@dataclass
class InfluencePath:
    path: list[str]
    weight: float
    depth: int


@dataclass
class PropagationResult:
    node_id: str
    direct_influence: float = 0.0
    propagated_influence: float = 0.0
    paths: list[InfluencePath] = field(default_factory=list)

    @property
    def total_influence(self) -> float:
        return self.direct_influence + self.propagated_influence

    def to_dict(self) -> dict[str, Any]:
        return {
            "nodeId": self.node_id,
            "directInfluence": self.direct_influence,
            "propagatedInfluence": self.propagated_influence,
            "totalInfluence": self.total_influence,
            "paths": [{"path": list(p.path), "weight": p.weight, "depth": p.depth}
                      for p in self.paths],
        }


@dataclass
class ScoreUpdate:
    """One row written back to the store by a recompute cycle."""
    node_id: str
    score: float
    raw_score: float
    volatility: float
    rank: int
    event_bonus: float = 0.0
    old_score: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "nodeId": self.node_id,
            "oldScore": self.old_score,
            "newScore": self.score,
            "rank": self.rank,
            "volatility": self.volatility,
        }


@dataclass
class GraphMetrics:
    total_nodes: int = 0
    total_edges: int = 0
    average_influence: float = 0.0
    density: float = 0.0
    clustering: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "totalNodes": self.total_nodes,
            "totalEdges": self.total_edges,
            "averageInfluence": self.average_influence,
            "density": self.density,
            "clustering": self.clustering,
        }


@dataclass
class RecomputeReport:
    tenant: str
    edges_processed: int = 0
    events_processed: int = 0
    nodes_processed: int = 0
    scores_updated: int = 0
    duration_ms: float = 0.0
    top_changes: list[ScoreUpdate] = field(default_factory=list)
    finished_at: Optional[int] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": True,
            "stats": {
                "nodesProcessed": self.nodes_processed,
                "edgesProcessed": self.edges_processed,
                "eventsProcessed": self.events_processed,
                "scoresUpdated": self.scores_updated,
            },
            "durationMs": self.duration_ms,
            "topChanges": [u.to_dict() for u in self.top_changes],
            "timestamp": self.finished_at,
        }
