"""
Result Cache.

Advisory cache of computed trades and census snapshots over an injected
string store (RedisClient, SqliteStore or anything with get/set/delete).

Freshness: trade history is mostly immutable and gets a long window; holder
and buyer censuses move quickly and get a short one. Explicit invalidation
always wins over freshness: every key carries a generation counter, which is
the entry's `sourceFingerprint`. `begin(key)` captures the generation before
a computation starts and `put` discards the write if an invalidation bumped
it in the meantime.
"""

import json
import logging
import time
from typing import Any, Callable, Dict, Iterable, List, Optional

from .metrics import LensMetrics
from .models import CacheEntry, TradeEvent

logger = logging.getLogger(__name__)

KIND_TRADES = "trades"
KIND_CENSUS = "census"
KIND_BUYERS = "buyers"


def trades_key(wallet: str) -> str:
    return f"{KIND_TRADES}:{wallet}"


def census_key(mint: str) -> str:
    return f"{KIND_CENSUS}:{mint}"


def buyers_key(mint: str) -> str:
    return f"{KIND_BUYERS}:{mint}"


def key_kind(key: str) -> str:
    return key.split(":", 1)[0]


class ResultCache:
    """
    Args:
        store: Backing string store
        trade_ttl_seconds: Freshness window for trade history
        census_ttl_seconds: Freshness window for holder/buyer censuses
        metrics: Optional LensMetrics sink
        clock: Wall clock in seconds
    """

    def __init__(
        self,
        store,
        trade_ttl_seconds: int = 86400,
        census_ttl_seconds: int = 60,
        metrics: Optional[LensMetrics] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.metrics = metrics
        self._clock = clock
        self._freshness_seconds = {
            KIND_TRADES: trade_ttl_seconds,
            KIND_CENSUS: census_ttl_seconds,
            KIND_BUYERS: census_ttl_seconds,
        }

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    def freshness_seconds(self, key: str) -> int:
        return self._freshness_seconds.get(key_kind(key), self._freshness_seconds[KIND_CENSUS])

    def _generation(self, key: str) -> str:
        return self.store.get(f"gen:{key}") or "0"

    def _record(self, key: str, hit: bool):
        if self.metrics:
            self.metrics.record_cache_lookup(key_kind(key), hit)

    def get(self, key: str) -> Optional[CacheEntry]:
        """Return a fresh, non-invalidated entry, or None (a miss is never an error)."""
        raw = self.store.get(f"entry:{key}")
        if raw is None:
            self._record(key, False)
            return None

        try:
            entry = CacheEntry.from_dict(json.loads(raw))
        except (ValueError, KeyError, TypeError) as e:
            logger.warning(f"Discarding unreadable cache entry {key}: {e}")
            self._record(key, False)
            return None

        if entry.source_fingerprint != self._generation(key):
            logger.debug(f"Cache entry {key} predates an invalidation")
            self._record(key, False)
            return None

        age_ms = self._now_ms() - entry.computed_at_ms
        if age_ms >= self.freshness_seconds(key) * 1000:
            logger.debug(f"Cache entry {key} is stale ({age_ms}ms old)")
            self._record(key, False)
            return None

        self._record(key, True)
        return entry

    def begin(self, key: str) -> str:
        """Capture the fingerprint a later `put` must still match."""
        return self._generation(key)

    def put(self, key: str, payload: Any, fingerprint: Optional[str] = None) -> bool:
        """
        Write a computed payload.

        Returns False (and writes nothing) when `fingerprint` no longer
        matches, i.e. the key was invalidated while the result was computed.
        """
        current = self._generation(key)
        if fingerprint is not None and fingerprint != current:
            logger.info(f"Discarding stale write for {key} (fingerprint {fingerprint} != {current})")
            return False

        entry = CacheEntry(key=key, payload=payload, computed_at_ms=self._now_ms(), source_fingerprint=current)
        self.store.set(f"entry:{key}", json.dumps(entry.to_dict()), ttl_seconds=self.freshness_seconds(key))
        return True

    def invalidate(self, key: str) -> int:
        """Delete the entry and bump its generation. Returns the invalidation time (ms)."""
        invalidated_at = self._now_ms()
        deleted = self.store.delete(f"entry:{key}")
        bumped = self.store.set(f"gen:{key}", str(int(self._generation(key)) + 1))
        self.store.set(f"inv:{key}", str(invalidated_at))
        if not (deleted and bumped):
            # The old entry may still be served once the store recovers, until its TTL runs out
            logger.warning(f"Invalidation of cache entry {key} did not reach the backing store")
        else:
            logger.info(f"Invalidated cache entry {key}")
        return invalidated_at

    def invalidated_at(self, key: str) -> Optional[int]:
        raw = self.store.get(f"inv:{key}")
        return int(raw) if raw else None

    # Persistence collaborator facade

    def load_cached_trades(self, wallet: str) -> Optional[List[TradeEvent]]:
        entry = self.get(trades_key(wallet))
        if entry is None:
            return None
        try:
            return [TradeEvent.from_dict(item) for item in entry.payload["events"]]
        except (KeyError, TypeError, ValueError) as e:
            logger.warning(f"Cached trades for {wallet} are unreadable: {e}")
            return None

    def save_trades(
        self,
        wallet: str,
        trades: Iterable[TradeEvent],
        fingerprint: Optional[str] = None,
        diagnostics: Optional[Dict[str, Any]] = None,
    ) -> bool:
        payload = {"events": [event.to_dict() for event in trades], "diagnostics": diagnostics or {}}
        return self.put(trades_key(wallet), payload, fingerprint)

    def clear_cached_trades(self, wallet: str) -> int:
        return self.invalidate(trades_key(wallet))

