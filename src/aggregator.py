from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
import logging
from threading import Lock
import time
from typing import Callable, Iterable, Protocol, Sequence

from invoker import utc_now
from records import CounterIncrement, ProviderStats, StatsUpdate


logger = logging.getLogger(__name__)


class CounterStoreProtocol(Protocol):
    def apply_increments(self, increments: Sequence[CounterIncrement]) -> None:
        ...


@dataclass(slots=True)
class CounterTotals:
    total: int = 0
    success: int = 0
    failed: int = 0
    last_call: datetime | None = None
    next_scheduled_call: datetime | None = None


class SnapshotCache:
    def __init__(
        self,
        loader: Callable[[], Sequence[ProviderStats]],
        ttl_s: float,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.loader = loader
        self.ttl_s = ttl_s
        self.clock = clock
        self._snapshot: tuple[ProviderStats, ...] | None = None
        self._loaded_at = 0.0
        self._lock = Lock()

    def get(self) -> tuple[ProviderStats, ...]:
        with self._lock:
            now = self.clock()
            if self._snapshot is not None and now - self._loaded_at < self.ttl_s:
                return self._snapshot
            # Replaced wholesale so concurrent readers never see a partial snapshot.
            self._snapshot = tuple(self.loader())
            self._loaded_at = now
            logger.debug("Reloaded stats snapshot: %d provider(s)", len(self._snapshot))
            return self._snapshot

    def invalidate(self) -> None:
        with self._lock:
            self._snapshot = None


class StatsAggregator:
    def __init__(
        self,
        store: CounterStoreProtocol,
        cache: SnapshotCache | None = None,
        now_fn: Callable[[], datetime] = utc_now,
    ) -> None:
        self.store = store
        self.cache = cache
        self.now_fn = now_fn

    @staticmethod
    def to_increments(updates: Iterable[StatsUpdate], now: datetime) -> list[CounterIncrement]:
        return [
            CounterIncrement(
                provider_index=update.provider_index,
                total=1,
                success=1 if update.success else 0,
                failed=0 if update.success else 1,
                last_call=now,
                next_scheduled_call=update.next_call_time,
            )
            for update in updates
        ]

    def apply(self, updates: Sequence[StatsUpdate]) -> list[CounterIncrement]:
        if not updates:
            return []
        increments = self.to_increments(updates, self.now_fn())
        logger.debug("Applying %d counter increment(s)", len(increments))
        self.store.apply_increments(increments)
        if self.cache is not None:
            self.cache.invalidate()
        return increments


def accumulate(increments: Iterable[CounterIncrement]) -> dict[int, CounterTotals]:
    totals: dict[int, CounterTotals] = {}
    for increment in increments:
        current = totals.setdefault(increment.provider_index, CounterTotals())
        current.total += increment.total
        current.success += increment.success
        current.failed += increment.failed
        current.last_call = increment.last_call
        current.next_scheduled_call = increment.next_scheduled_call
    return totals
