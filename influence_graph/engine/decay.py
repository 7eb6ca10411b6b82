"""
Edge Time Decay

An edge's effective weight fades geometrically with the days elapsed
since it was created:

    decayed = weight * (1 - rate) ** days_elapsed

Elapsed time is clamped at zero, so an edge stamped in the future is
never amplified.
"""

from typing import Optional

from influence_graph.core.errors import validate_decay_rate, InvalidInput
from influence_graph.core.types import Edge, EventType, MS_PER_DAY, now_ms


DEFAULT_DECAY_RATE = 0.05  # 5% per day

EVENT_MULTIPLIERS = {
    EventType.PROJECT_SUCCESS: 15.0,
    EventType.PROPOSAL_ADOPTED: 10.0,
    EventType.MENTORSHIP: 5.0,
    EventType.COLLABORATION: 3.0,
}


def days_elapsed(created_at: int, now: Optional[int] = None) -> float:
    if now is None:
        now = now_ms()
    return max(0.0, (now - created_at) / MS_PER_DAY)


def decayed_weight(weight: float, created_at: int,
                   rate: float = DEFAULT_DECAY_RATE,
                   now: Optional[int] = None) -> float:
    """Time-adjusted weight of an edge."""
    validate_decay_rate(rate)
    return weight * (1.0 - rate) ** days_elapsed(created_at, now)


def decay_edges(edges: list[Edge], rate: float = DEFAULT_DECAY_RATE,
                now: Optional[int] = None) -> list[Edge]:
    """Copies of edges with their weight replaced by the decayed value."""
    validate_decay_rate(rate)
    if now is None:
        now = now_ms()
    return [e.with_weight(decayed_weight(e.weight, e.created_at, rate, now))
            for e in edges]


def influence_delta(event_type, impact_score: float = 1.0) -> float:
    """Score adjustment for an event type, scaled by its impact."""
    if isinstance(event_type, str):
        try:
            event_type = EventType(event_type)
        except ValueError:
            raise InvalidInput(f"Unknown event type: {event_type}")
    return EVENT_MULTIPLIERS[event_type] * impact_score
