"""
Influence Communities

Label propagation with asynchronous updates: labels change in place
during a pass, so later nodes in the same pass already see the new
labels of earlier ones. There is no second label buffer, and results
depend on node order. Every node starts with its own
label; on each pass a node adopts the label with the largest
edge-weighted vote among its out-neighbours. When the current label is
among the top votes the node keeps it; otherwise ties between other
labels go to the one seen first in edge order.
"""

from typing import Iterable

from influence_graph.core.types import Edge
from influence_graph.engine.propagation import build_adjacency


MAX_ITERATIONS = 10


def detect_communities(edges: Iterable[Edge], node_ids: Iterable[str],
                       max_iterations: int = MAX_ITERATIONS) -> dict[str, int]:
    """Map node id -> community label."""
    adjacency = build_adjacency(edges)
    order = list(node_ids)
    labels = {nid: i for i, nid in enumerate(order)}

    for _ in range(max_iterations):
        changed = False
        for node_id in order:
            neighbors = adjacency.get(node_id, [])
            if not neighbors:
                continue

            votes: dict[int, float] = {}
            for edge in neighbors:
                # Targets outside the node set vote with label 0
                label = labels.get(edge.target_id, 0)
                votes[label] = votes.get(label, 0.0) + edge.weight

            current = labels[node_id]
            best_count = max(votes.values())
            if best_count <= 0 or votes.get(current, 0.0) == best_count:
                best_label = current
            else:
                best_label = next(lbl for lbl, c in votes.items() if c == best_count)

            if labels[node_id] != best_label:
                labels[node_id] = best_label
                changed = True

        if not changed:
            break

    return labels


def community_sizes(labels: dict[str, int]) -> dict[int, int]:
    sizes: dict[int, int] = {}
    for label in labels.values():
        sizes[label] = sizes.get(label, 0) + 1
    return sizes
