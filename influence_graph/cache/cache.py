"""
Influence Result Cache

TTL-keyed in-memory store for expensive graph queries.

An entry is logically absent once now > expires_at, even before it is
physically evicted. Expired entries are dropped lazily on access and by a
background sweeper thread. All map access goes through one lock; the
compute function of get_or_set runs outside it, so concurrent misses on
the same key may both compute.

Cache operations never raise to callers.
"""

import logging
import re
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional


logger = logging.getLogger(__name__)

DEFAULT_TTL_MS = 300_000
SWEEP_INTERVAL_S = 60.0

_MISSING = object()


def _wall_clock_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class CacheEntry:
    value: Any
    created_at: int
    expires_at: int


@dataclass
class CacheStats:
    hits: int
    misses: int
    size: int

    @property
    def hit_rate(self) -> float:
        total = self.hits + self.misses
        return self.hits / total if total > 0 else 0.0

    def to_dict(self) -> dict:
        return {"hits": self.hits, "misses": self.misses,
                "size": self.size, "hitRate": self.hit_rate}


def glob_to_regex(pattern: str) -> "re.Pattern":
    """Compile a glob where only `*` is special (any substring)."""
    return re.compile(".*".join(re.escape(part) for part in pattern.split("*")))


class ResultCache:
    """Thread-safe TTL cache with a background sweeper.

    Construct, then start() the sweeper; close() stops it. The clock is
    injectable (epoch milliseconds) for deterministic tests.
    """

    def __init__(self, default_ttl_ms: int = DEFAULT_TTL_MS,
                 sweep_interval_s: float = SWEEP_INTERVAL_S,
                 clock: Optional[Callable[[], int]] = None,
                 start: bool = False):
        self.default_ttl_ms = default_ttl_ms
        self.sweep_interval_s = sweep_interval_s
        self._clock = clock or _wall_clock_ms
        self._entries: dict[str, CacheEntry] = {}
        self._lock = threading.Lock()
        self._hits = 0
        self._misses = 0
        self._stop = threading.Event()
        self._sweeper: Optional[threading.Thread] = None
        if start:
            self.start()

    # --------------------------------------------------------
    # Lifecycle
    # --------------------------------------------------------

    def start(self) -> None:
        if self._sweeper is not None and self._sweeper.is_alive():
            return
        self._stop.clear()
        self._sweeper = threading.Thread(target=self._sweep_loop,
                                         name="influence-cache-sweeper", daemon=True)
        self._sweeper.start()
        logger.info("Result cache sweeper started (every %ss)", self.sweep_interval_s)

    def close(self) -> None:
        """Stop the sweeper and drop every entry."""
        self._stop.set()
        if self._sweeper is not None:
            self._sweeper.join(timeout=self.sweep_interval_s + 1)
            self._sweeper = None
        with self._lock:
            self._entries.clear()
        logger.info("Result cache closed")

    @property
    def running(self) -> bool:
        return self._sweeper is not None and self._sweeper.is_alive()

    def _sweep_loop(self) -> None:
        while not self._stop.wait(self.sweep_interval_s):
            try:
                removed = self.sweep()
                if removed:
                    logger.debug("Cache sweep evicted %d entries", removed)
            except Exception:
                logger.exception("Cache sweep failed")

    # --------------------------------------------------------
    # Core operations
    # --------------------------------------------------------

    def get(self, key: str, default: Any = None) -> Any:
        """Value for key, or default when absent or expired."""
        now = self._clock()
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self._misses += 1
                return default
            if now > entry.expires_at:
                del self._entries[key]
                self._misses += 1
                return default
            self._hits += 1
            return entry.value

    def set(self, key: str, value: Any, ttl_ms: Optional[int] = None) -> None:
        ttl = self.default_ttl_ms if ttl_ms is None else ttl_ms
        now = self._clock()
        with self._lock:
            self._entries[key] = CacheEntry(value=value, created_at=now,
                                            expires_at=now + ttl)

    def has(self, key: str) -> bool:
        now = self._clock()
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return False
            if now > entry.expires_at:
                del self._entries[key]
                return False
            return True

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._entries.pop(key, None) is not None

    def delete_pattern(self, pattern: str) -> int:
        """Delete every key matching a `*` glob. Returns the count deleted."""
        regex = glob_to_regex(pattern)
        with self._lock:
            doomed = [k for k in self._entries if regex.fullmatch(k)]
            for k in doomed:
                del self._entries[k]
        if doomed:
            logger.debug("Invalidated %d cache keys for %s", len(doomed), pattern)
        return len(doomed)

    def get_or_set(self, key: str, compute: Callable[[], Any],
                   ttl_ms: Optional[int] = None) -> Any:
        """Cached value, or compute() once, store it and return it."""
        value = self.get(key, _MISSING)
        if value is not _MISSING:
            return value
        value = compute()
        self.set(key, value, ttl_ms)
        return value

    def sweep(self) -> int:
        """Evict every expired entry now."""
        now = self._clock()
        with self._lock:
            expired = [k for k, e in self._entries.items() if now > e.expires_at]
            for k in expired:
                del self._entries[k]
        return len(expired)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self._hits = 0
            self._misses = 0

    def stats(self) -> CacheStats:
        with self._lock:
            return CacheStats(hits=self._hits, misses=self._misses,
                              size=len(self._entries))

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


# ============================================================
# Key builders
# ============================================================

class CacheKeys:
    """Cache key layout. Every key starts with `<namespace>:<tenant>`."""

    GRAPH = "graph"
    SCORES = "scores"
    ANALYTICS = "analytics"
    TOP = "top"

    INVALIDATE_ON_RECOMPUTE = (GRAPH, SCORES, ANALYTICS, TOP)
    # top rankings carry per-node edge counts
    INVALIDATE_ON_EDGE_CHANGE = (GRAPH, SCORES, ANALYTICS, TOP)

    @staticmethod
    def graph(tenant: str, propagation: bool = False) -> str:
        return f"graph:{tenant}:propagation" if propagation else f"graph:{tenant}"

    @staticmethod
    def scores(tenant: str) -> str:
        return f"scores:{tenant}"

    @staticmethod
    def node_scores(tenant: str, node_id: str) -> str:
        return f"scores:{tenant}:{node_id}"

    @staticmethod
    def top(tenant: str, metric: str, limit: int) -> str:
        return f"top:{tenant}:{metric}:{limit}"

    @staticmethod
    def analytics(tenant: str, kind: str, limit: Optional[int] = None) -> str:
        if limit is None:
            return f"analytics:{tenant}:{kind}"
        return f"analytics:{tenant}:{kind}:{limit}"

    @staticmethod
    def tenant_patterns(namespace: str, tenant: str) -> tuple[str, str]:
        # "graph:org1*" would also hit "graph:org10"
        return f"{namespace}:{tenant}", f"{namespace}:{tenant}:*"


def invalidate_tenant(cache: ResultCache, tenant: str,
                      namespaces=CacheKeys.INVALIDATE_ON_RECOMPUTE) -> int:
    """Drop every cached result for a tenant under the given namespaces."""
    deleted = 0
    for namespace in namespaces:
        for pattern in CacheKeys.tenant_patterns(namespace, tenant):
            deleted += cache.delete_pattern(pattern)
    return deleted
