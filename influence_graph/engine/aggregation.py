"""
Influence Aggregation

Derived views over node and edge snapshots: the cross-department matrix,
top-influencer rankings, coarse graph metrics and score volatility.
"""

import math
from typing import Iterable, Optional

from influence_graph.core.errors import InvalidInput
from influence_graph.core.types import Edge, GraphMetrics, Node
from influence_graph.engine.propagation import build_adjacency


VOLATILITY_WINDOW = 30
TOP_METRICS = ("total", "direct", "propagated", "volatility")


# ============================================================
# Department matrix
# ============================================================

def department_matrix(edges: Iterable[Edge],
                      nodes: Iterable[Node]) -> dict[str, dict[str, float]]:
    """matrix[source_group][target_group] = summed edge weight.

    Only edges crossing groups contribute; nodes without a group are ignored.
    """
    node_groups = {n.id: n.group_id for n in nodes if n.group_id}
    matrix: dict[str, dict[str, float]] = {}
    for edge in edges:
        src = node_groups.get(edge.source_id)
        tgt = node_groups.get(edge.target_id)
        if src and tgt and src != tgt:
            row = matrix.setdefault(src, {})
            row[tgt] = row.get(tgt, 0.0) + edge.weight
    return matrix


def heatmap_rows(matrix: dict[str, dict[str, float]],
                 group_names: Optional[dict[str, str]] = None) -> list[dict]:
    """Flatten a department matrix into rows sorted by weight, heaviest first."""
    names = group_names or {}
    rows = []
    for src, targets in matrix.items():
        for tgt, weight in targets.items():
            rows.append({
                "sourceGroup": src,
                "targetGroup": tgt,
                "sourceName": names.get(src, src),
                "targetName": names.get(tgt, tgt),
                "weight": weight,
            })
    rows.sort(key=lambda r: r["weight"], reverse=True)
    return rows


def group_breakdown(nodes: list[Node], edges: list[Edge]) -> list[dict]:
    """Per-group member count, influence totals and internal/external edges."""
    members: dict[str, set[str]] = {}
    names: dict[str, str] = {}
    totals: dict[str, float] = {}
    for node in nodes:
        if not node.group_id:
            continue
        members.setdefault(node.group_id, set()).add(node.id)
        names.setdefault(node.group_id, node.group_name or node.group_id)
        totals[node.group_id] = totals.get(node.group_id, 0.0) + node.score

    breakdown = []
    for group_id, ids in members.items():
        internal = external = 0
        for e in edges:
            src_in = e.source_id in ids
            tgt_in = e.target_id in ids
            if src_in and tgt_in:
                internal += 1
            elif src_in or tgt_in:
                external += 1
        breakdown.append({
            "id": group_id,
            "name": names[group_id],
            "nodeCount": len(ids),
            "totalInfluence": totals[group_id],
            "avgInfluence": totals[group_id] / len(ids),
            "internalEdges": internal,
            "externalEdges": external,
        })
    return breakdown


# ============================================================
# Rankings
# ============================================================

def _metric_value(node: Node, metric: str) -> float:
    # "total" ranks by raw_score and "direct" by the committed score
    if metric == "direct":
        return node.score
    if metric == "propagated":
        return node.raw_score - node.score
    if metric == "volatility":
        return node.volatility
    return node.raw_score


def find_top_influencers(nodes: Iterable[Node], metric: str = "total",
                         limit: int = 10) -> list[Node]:
    """Nodes sorted descending by metric; ties keep input order."""
    if metric not in TOP_METRICS:
        raise InvalidInput(f"Unknown ranking metric: {metric}")
    if limit < 0:
        raise InvalidInput("limit must be >= 0")
    ranked = sorted(nodes, key=lambda n: _metric_value(n, metric), reverse=True)
    return ranked[:limit]


# ============================================================
# Graph metrics
# ============================================================

def graph_metrics(nodes: list[Node], edges: list[Edge]) -> GraphMetrics:
    """Density and an out-neighbour clustering proxy.

    Clustering counts, for every node, the unordered pairs of its
    out-neighbours where the first has an edge to the second. It is a
    local approximation, not a true undirected triangle count.
    """
    n = len(nodes)
    m = len(edges)
    metrics = GraphMetrics(total_nodes=n, total_edges=m)
    if n:
        metrics.average_influence = sum(node.raw_score for node in nodes) / n
    possible_edges = n * (n - 1)
    metrics.density = m / possible_edges if possible_edges > 0 else 0.0

    adjacency = build_adjacency(edges)
    out_targets = {src: {e.target_id for e in out} for src, out in adjacency.items()}
    closed = possible = 0
    for node in nodes:
        neighbors = [e.target_id for e in adjacency.get(node.id, [])]
        for i in range(len(neighbors)):
            for j in range(i + 1, len(neighbors)):
                possible += 1
                if neighbors[j] in out_targets.get(neighbors[i], ()):
                    closed += 1
    metrics.clustering = closed / possible if possible > 0 else 0.0
    return metrics


def weight_distribution(edges: Iterable[Edge], bucket: int = 20) -> dict[str, int]:
    """Edge counts per weight bucket, e.g. {"60-80": 3}."""
    dist: dict[str, int] = {}
    for e in edges:
        low = int(math.floor(e.weight / bucket) * bucket)
        label = f"{low}-{low + bucket}"
        dist[label] = dist.get(label, 0) + 1
    return dist


# ============================================================
# Volatility
# ============================================================

def volatility(history: list[float], window: int = VOLATILITY_WINDOW) -> float:
    """Population standard deviation of the most recent `window` scores.

    History is ordered newest first. Fewer than 2 samples gives 0.
    """
    samples = list(history[:window])
    if len(samples) < 2:
        return 0.0
    mean = sum(samples) / len(samples)
    variance = sum((s - mean) ** 2 for s in samples) / len(samples)
    return math.sqrt(variance)
