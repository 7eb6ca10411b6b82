"""
Influence Propagation

Depth-limited breadth-first propagation over the directed influence
graph. Each hop multiplies the carried weight by the edge weight (as a
fraction of 100) and by a per-level decay factor:

    carried' = carried * (edge.weight / 100) * decay_factor

Steps whose carried weight drops below MIN_WEIGHT_THRESHOLD are pruned.
Paths always start with the source itself at depth 0.
There is no visited set: a node reached through several distinct paths
contributes once per path (reinforcement through multiple routes), and
cycles are bounded by max_depth alone.
"""

from typing import Iterable, Optional

from influence_graph.core.errors import ComputationTimeout, validate_propagation_params
from influence_graph.core.types import Edge, InfluencePath, PropagationResult


MAX_DEPTH = 3
DECAY_FACTOR = 0.6             # influence decays by 40% per level
MIN_WEIGHT_THRESHOLD = 0.01
MAX_EXPANSIONS = 1_000_000     # per source node


def build_adjacency(edges: Iterable[Edge]) -> dict[str, list[Edge]]:
    """Outgoing edges keyed by source id, in input order.

    Callers filter out inactive edges first.
    """
    adjacency: dict[str, list[Edge]] = {}
    for edge in edges:
        adjacency.setdefault(edge.source_id, []).append(edge)
    return adjacency


def propagate(edges: Iterable[Edge], node_ids: Iterable[str],
              max_depth: int = MAX_DEPTH,
              decay_factor: float = DECAY_FACTOR,
              min_weight: float = MIN_WEIGHT_THRESHOLD,
              max_expansions: int = MAX_EXPANSIONS) -> dict[str, PropagationResult]:
    """Compute direct, propagated and total influence for every node id.

    Ids without outgoing edges are processed with an empty neighbour list.
    """
    validate_propagation_params(max_depth, decay_factor)
    adjacency = build_adjacency(edges)
    results: dict[str, PropagationResult] = {}
    for node_id in node_ids:
        results[node_id] = propagate_from(node_id, adjacency, max_depth,
                                          decay_factor, min_weight, max_expansions)
    return results


def propagate_from(source_id: str, adjacency: dict[str, list[Edge]],
                   max_depth: int = MAX_DEPTH,
                   decay_factor: float = DECAY_FACTOR,
                   min_weight: float = MIN_WEIGHT_THRESHOLD,
                   max_expansions: Optional[int] = MAX_EXPANSIONS) -> PropagationResult:
    """BFS from a single source node."""
    paths: list[InfluencePath] = []
    propagated = 0.0

    # (node_id, carried_weight, path, depth)
    queue = [(source_id, 1.0, [source_id], 0)]
    head = 0
    while head < len(queue):
        current_id, carried, path, depth = queue[head]
        head += 1
        if max_expansions is not None and head > max_expansions:
            raise ComputationTimeout(
                f"Propagation from {source_id} exceeded {max_expansions} expansions; "
                f"check decay_factor={decay_factor} and max_depth={max_depth}")

        # The source itself is recorded at depth 0 but never counted.
        paths.append(InfluencePath(path=path, weight=carried, depth=depth))
        if depth > 0:
            propagated += carried

        if depth >= max_depth:
            continue

        for edge in adjacency.get(current_id, []):
            weight = carried * (edge.weight / 100.0) * decay_factor
            if weight < min_weight:
                continue
            queue.append((edge.target_id, weight, path + [edge.target_id], depth + 1))

    direct = sum(e.weight for e in adjacency.get(source_id, []))
    return PropagationResult(node_id=source_id, direct_influence=direct,
                             propagated_influence=propagated, paths=paths)
