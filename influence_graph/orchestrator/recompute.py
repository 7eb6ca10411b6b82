"""
Influence Recompute Orchestrator

One recompute cycle for a tenant runs through fixed states:

    LOAD_INPUTS -> APPLY_DECAY -> PROPAGATE -> MERGE_EVENTS
        -> RANK_AND_SCORE -> PERSIST -> INVALIDATE_CACHE -> DONE

Everything between loading and persisting is a pure function of the
loaded snapshots, and only events still unprocessed are merged, so a
failed cycle can be retried in full. Cycles for the same tenant are
serialized by a per-tenant lock; different tenants run concurrently.

Processed events are never re-applied. Their effect survives in each
node's committed event_bonus, which every cycle carries forward; the
bonus and the events' processed marks are persisted in one store call.
"""

import logging
import threading
import time
from enum import Enum
from typing import Callable, Optional

from influence_graph.cache.cache import CacheKeys, ResultCache, invalidate_tenant
from influence_graph.config import EngineConfig
from influence_graph.core.errors import InfluenceError, StorageFailure, validate_tenant
from influence_graph.core.types import (
    Edge, InfluenceEvent, Node, PropagationResult, RecomputeReport,
    ScoreUpdate, UpdateType, now_ms,
)
from influence_graph.engine.aggregation import volatility
from influence_graph.engine.decay import decay_edges
from influence_graph.engine.propagation import propagate
from influence_graph.notify.channel import NotificationChannel, notify


logger = logging.getLogger(__name__)

TOP_CHANGES = 5
RECOMMEND_AFTER_PENDING = 10


class RecomputeState(Enum):
    LOAD_INPUTS = "LoadInputs"
    APPLY_DECAY = "ApplyDecay"
    PROPAGATE = "Propagate"
    MERGE_EVENTS = "MergeEvents"
    RANK_AND_SCORE = "RankAndScore"
    PERSIST = "Persist"
    INVALIDATE_CACHE = "InvalidateCache"
    DONE = "Done"
    FAILED = "Failed"


# ============================================================
# Pure steps
# ============================================================

def merge_events(events: list[InfluenceEvent]) -> dict[str, float]:
    """Sum of pending weight deltas per subject node."""
    bonus: dict[str, float] = {}
    for event in events:
        if event.processed:
            continue
        bonus[event.subject_node_id] = bonus.get(event.subject_node_id, 0.0) + event.weight_delta
    return bonus


def rank_and_score(nodes: list[Node], results: dict[str, PropagationResult],
                   pending_bonus: dict[str, float]) -> list[ScoreUpdate]:
    """New score per node, floored at 0, ranked 1..n by descending score.

    Equal scores keep input order. Volatility is taken over the prior
    history with the new score prepended.
    """
    updates = []
    for node in nodes:
        result = results.get(node.id) or PropagationResult(node_id=node.id)
        event_bonus = node.event_bonus + pending_bonus.get(node.id, 0.0)
        new_score = max(0.0, result.direct_influence + result.propagated_influence + event_bonus)
        updates.append(ScoreUpdate(
            node_id=node.id,
            score=new_score,
            raw_score=result.direct_influence,
            volatility=volatility([new_score] + list(node.history)),
            rank=0,
            event_bonus=event_bonus,
            old_score=node.score,
        ))
    updates.sort(key=lambda u: u.score, reverse=True)
    for i, update in enumerate(updates):
        update.rank = i + 1
    return updates


# ============================================================
# Orchestrator
# ============================================================

class RecomputeOrchestrator:
    """Runs recompute cycles against a store, a cache and a notification channel."""

    def __init__(self, store, cache: ResultCache,
                 channel: Optional[NotificationChannel] = None,
                 config: Optional[EngineConfig] = None,
                 clock: Optional[Callable[[], int]] = None):
        self.store = store
        self.cache = cache
        self.channel = channel
        self.config = config or EngineConfig()
        self._clock = clock or now_ms
        self._tenant_locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()
        self.last_state: dict[str, RecomputeState] = {}

    def _lock_for(self, tenant: str) -> threading.Lock:
        with self._locks_guard:
            return self._tenant_locks.setdefault(tenant, threading.Lock())

    def _enter(self, tenant: str, state: RecomputeState) -> None:
        self.last_state[tenant] = state
        logger.debug("Recompute %s: %s", tenant, state.value)

    def recompute(self, tenant: str, apply_decay: bool = True,
                  process_events: bool = True) -> RecomputeReport:
        validate_tenant(tenant)
        with self._lock_for(tenant):
            try:
                return self._run_cycle(tenant, apply_decay, process_events)
            except InfluenceError:
                self._fail(tenant)
                raise
            except Exception as e:
                self._fail(tenant)
                raise StorageFailure(f"Recompute for {tenant} failed: {e}") from e

    def _fail(self, tenant: str) -> None:
        failed_in = self.last_state.get(tenant)
        self.last_state[tenant] = RecomputeState.FAILED
        logger.exception("Recompute %s aborted in %s",
                         tenant, failed_in.value if failed_in else "?")

    def _run_cycle(self, tenant: str, apply_decay: bool,
                   process_events: bool) -> RecomputeReport:
        started = time.perf_counter()
        now = self._clock()
        report = RecomputeReport(tenant=tenant)

        self._enter(tenant, RecomputeState.LOAD_INPUTS)
        edges: list[Edge] = [e for e in self.store.list_active_edges(tenant) if e.active]
        events: list[InfluenceEvent] = (
            self.store.list_unprocessed_events(tenant) if process_events else [])
        nodes: list[Node] = self.store.list_nodes(tenant)
        report.edges_processed = len(edges)
        report.events_processed = len(events)
        report.nodes_processed = len(nodes)

        self._enter(tenant, RecomputeState.APPLY_DECAY)
        if apply_decay:
            edges = decay_edges(edges, self.config.decay_rate, now)

        self._enter(tenant, RecomputeState.PROPAGATE)
        results = propagate(edges, [n.id for n in nodes],
                            max_depth=self.config.max_depth,
                            decay_factor=self.config.decay_factor,
                            min_weight=self.config.min_weight,
                            max_expansions=self.config.max_expansions)

        self._enter(tenant, RecomputeState.MERGE_EVENTS)
        pending_bonus = merge_events(events)

        self._enter(tenant, RecomputeState.RANK_AND_SCORE)
        updates = rank_and_score(nodes, results, pending_bonus)

        self._enter(tenant, RecomputeState.PERSIST)
        # event_bonus already includes these events; both land or neither does
        self.store.commit_scores(tenant, updates, calculated_at=now,
                                 processed_event_ids=[e.id for e in events])
        report.scores_updated = len(updates)
        report.top_changes = updates[:TOP_CHANGES]

        self._enter(tenant, RecomputeState.INVALIDATE_CACHE)
        invalidated = invalidate_tenant(self.cache, tenant, CacheKeys.INVALIDATE_ON_RECOMPUTE)

        report.duration_ms = round((time.perf_counter() - started) * 1000, 3)
        report.finished_at = self._clock()
        self._enter(tenant, RecomputeState.DONE)

        notify(self.channel, UpdateType.SCORE_UPDATED, tenant, {
            "scoresUpdated": report.scores_updated,
            "topChanges": [u.to_dict() for u in report.top_changes],
        })
        logger.info("Recompute %s done: %d nodes, %d edges, %d events, %d cache keys dropped in %.1fms",
                    tenant, report.nodes_processed, report.edges_processed,
                    report.events_processed, invalidated, report.duration_ms)
        return report

    def status(self, tenant: str) -> dict:
        """Pending work and the time of the last committed cycle."""
        validate_tenant(tenant)
        pending = len(self.store.list_unprocessed_events(tenant))
        state = self.last_state.get(tenant)
        return {
            "pendingEvents": pending,
            "lastRecalculation": self.store.last_calculated_at(tenant),
            "recommended": pending > RECOMMEND_AFTER_PENDING,
            "lastState": state.value if state else None,
        }
