"""
Engine configuration, read from the environment.
"""

import os
from dataclasses import dataclass
from typing import Optional

from influence_graph.cache.cache import DEFAULT_TTL_MS, SWEEP_INTERVAL_S
from influence_graph.engine.decay import DEFAULT_DECAY_RATE
from influence_graph.engine.propagation import (
    DECAY_FACTOR, MAX_DEPTH, MAX_EXPANSIONS, MIN_WEIGHT_THRESHOLD,
)


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class EngineConfig:
    max_depth: int = MAX_DEPTH
    decay_factor: float = DECAY_FACTOR
    min_weight: float = MIN_WEIGHT_THRESHOLD
    max_expansions: int = MAX_EXPANSIONS
    decay_rate: float = DEFAULT_DECAY_RATE
    cache_ttl_ms: int = DEFAULT_TTL_MS
    graph_ttl_ms: int = 60_000
    analytics_ttl_ms: int = 120_000
    sweep_interval_s: float = SWEEP_INTERVAL_S
    falkordb_host: Optional[str] = None
    falkordb_port: int = 6379
    falkordb_password: str = ""
    falkordb_graph: str = "influence_graph"
    broadcast_url: Optional[str] = None
    enable_mcp: bool = True

    def __post_init__(self):
        self._validate()

    def _validate(self):
        if self.max_depth < 0:
            raise ValueError(f"max_depth must be >= 0, got {self.max_depth}")
        # decay_factor >= 1 lets carried weight grow instead of fade
        if not (0 <= self.decay_factor < 1):
            raise ValueError(f"decay_factor must be in [0, 1), got {self.decay_factor}")
        if not (0 <= self.decay_rate < 1):
            raise ValueError(f"decay_rate must be in [0, 1), got {self.decay_rate}")
        if self.min_weight < 0:
            raise ValueError(f"min_weight must be >= 0, got {self.min_weight}")
        if self.max_expansions < 1:
            raise ValueError("max_expansions must be positive")
        for name in ("cache_ttl_ms", "graph_ttl_ms", "analytics_ttl_ms"):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be positive")
        if self.sweep_interval_s <= 0:
            raise ValueError("sweep_interval_s must be positive")

    @classmethod
    def from_env(cls) -> "EngineConfig":
        return cls(
            max_depth=int(os.getenv("INFLUENCE_MAX_DEPTH", str(MAX_DEPTH))),
            decay_factor=float(os.getenv("INFLUENCE_DECAY_FACTOR", str(DECAY_FACTOR))),
            min_weight=float(os.getenv("INFLUENCE_MIN_WEIGHT", str(MIN_WEIGHT_THRESHOLD))),
            max_expansions=int(os.getenv("INFLUENCE_MAX_EXPANSIONS", str(MAX_EXPANSIONS))),
            decay_rate=float(os.getenv("INFLUENCE_DECAY_RATE", str(DEFAULT_DECAY_RATE))),
            cache_ttl_ms=int(os.getenv("INFLUENCE_CACHE_TTL_MS", str(DEFAULT_TTL_MS))),
            graph_ttl_ms=int(os.getenv("INFLUENCE_GRAPH_TTL_MS", "60000")),
            analytics_ttl_ms=int(os.getenv("INFLUENCE_ANALYTICS_TTL_MS", "120000")),
            sweep_interval_s=float(os.getenv("INFLUENCE_SWEEP_INTERVAL_S", str(SWEEP_INTERVAL_S))),
            falkordb_host=os.getenv("FALKORDB_HOST") or None,
            falkordb_port=int(os.getenv("FALKORDB_PORT", "6379")),
            falkordb_password=os.getenv("FALKORDB_PASSWORD", ""),
            falkordb_graph=os.getenv("FALKORDB_GRAPH", "influence_graph"),
            broadcast_url=os.getenv("INFLUENCE_BROADCAST_URL") or None,
            enable_mcp=_env_bool("ENABLE_MCP", True),
        )
