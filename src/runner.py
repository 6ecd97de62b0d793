from __future__ import annotations

from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timedelta
import logging
import random
from threading import Lock
import time
from typing import Callable, Sequence

from aggregator import SnapshotCache, StatsAggregator
from invoker import (
    ABORTED_QUESTION,
    ChatTransportProtocol,
    HttpxTransport,
    RetryingInvoker,
    SnapshotSource,
    unknown_provider_name,
    utc_now,
)
from metrics import StatsSummary, summarize_stats
from providers import KeepaliveConfig
from records import HistoryEntry, InvocationOutcome, ProviderStats, StatsUpdate
from storage import KeepaliveStorage


logger = logging.getLogger(__name__)

BATCH_MARKER_INDEX = -1
BATCH_MARKER_NAME = "CRON-TASK"
BATCH_MARKER_QUESTION = "(scheduled batch)"


@dataclass(slots=True)
class BatchResult:
    outcomes: list[InvocationOutcome] = field(default_factory=list)
    history_items: list[InvocationOutcome] = field(default_factory=list)
    stats_updates: list[StatsUpdate] = field(default_factory=list)

    @property
    def success_count(self) -> int:
        return sum(1 for outcome in self.outcomes if outcome.success)


@dataclass(slots=True)
class EngineCounters:
    invocations: int = 0
    http_attempts: int = 0
    store_operations: int = 0


class BatchDispatcher:
    def __init__(
        self,
        invoker: RetryingInvoker,
        snapshot: SnapshotSource,
        reschedule_s: float = 60.0,
        now_fn: Callable[[], datetime] = utc_now,
    ) -> None:
        self.invoker = invoker
        self.snapshot = snapshot
        self.reschedule_s = reschedule_s
        self.now_fn = now_fn

    def dispatch(self, provider_indices: Sequence[int]) -> BatchResult:
        indices = list(provider_indices)
        result = BatchResult()
        if not indices:
            return result

        logger.info("Invoking %d provider(s) concurrently", len(indices))
        with ThreadPoolExecutor(max_workers=len(indices), thread_name_prefix="keepalive") as executor:
            futures = [self._submit(executor, provider_index) for provider_index in indices]
            # Collect in request order; every future is awaited, none is cancelled.
            for provider_index, future in zip(indices, futures):
                outcome = self._settle(provider_index, future)
                result.outcomes.append(outcome)
                result.history_items.append(outcome)
                result.stats_updates.append(
                    StatsUpdate(
                        provider_index=provider_index,
                        success=outcome.success,
                        next_call_time=self.now_fn() + timedelta(seconds=self.reschedule_s),
                    )
                )
        return result

    def _submit(self, executor: ThreadPoolExecutor, provider_index: int) -> Future:
        try:
            return executor.submit(self.invoker.invoke, provider_index)
        except RuntimeError as exc:
            rejected: Future = Future()
            rejected.set_exception(exc)
            return rejected

    def _settle(self, provider_index: int, future: Future) -> InvocationOutcome:
        try:
            return future.result()
        except Exception as exc:  # noqa: BLE001
            logger.error("Invocation task for provider %d crashed: %s", provider_index, exc)
            return InvocationOutcome(
                provider_index=provider_index,
                provider_name=self._provider_name(provider_index),
                model=None,
                url=None,
                question=ABORTED_QUESTION,
                success=False,
                answer=None,
                error=str(exc) or type(exc).__name__,
                duration_ms=0,
                timestamp=self.now_fn().isoformat(),
            )

    def _provider_name(self, provider_index: int) -> str:
        try:
            stats = self.snapshot()
            if 0 <= provider_index < len(stats):
                return stats[provider_index].provider.name
        except Exception:  # noqa: BLE001
            logger.debug("Snapshot unavailable while naming provider %d", provider_index, exc_info=True)
        return unknown_provider_name(provider_index)


class KeepaliveEngine:
    def __init__(
        self,
        config: KeepaliveConfig,
        storage: KeepaliveStorage,
        transport: ChatTransportProtocol | None = None,
        clock: Callable[[], float] = time.perf_counter,
        sleep_fn: Callable[[float], None] = time.sleep,
        now_fn: Callable[[], datetime] = utc_now,
        rng: random.Random | None = None,
        cache_clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config
        self.storage = storage
        self.transport = transport or HttpxTransport()
        self.now_fn = now_fn
        self.counters = EngineCounters()
        self._counters_lock = Lock()
        self.cache = SnapshotCache(
            loader=self._load_snapshot,
            ttl_s=config.cache_ttl_s,
            clock=cache_clock,
        )
        self.invoker = RetryingInvoker(
            transport=self.transport,
            snapshot=self.current_snapshot,
            questions=config.question_pool(),
            policy=config.retry_policy(),
            clock=clock,
            sleep_fn=sleep_fn,
            now_fn=now_fn,
            rng=rng,
        )
        self.dispatcher = BatchDispatcher(
            invoker=self.invoker,
            snapshot=self.current_snapshot,
            reschedule_s=config.reschedule_s,
            now_fn=now_fn,
        )
        self.aggregator = StatsAggregator(store=storage, cache=self.cache, now_fn=now_fn)

    def sync_providers(self) -> None:
        next_call = self.now_fn() + timedelta(seconds=self.config.reschedule_s)
        self.storage.sync_providers(self.config.list_providers(), next_call=next_call)
        self._count_store_operation()
        self.cache.invalidate()

    def current_snapshot(self) -> tuple[ProviderStats, ...]:
        return self.cache.get()

    def provider_count(self) -> int:
        return len(self.current_snapshot())

    def invoke_one(self, provider_index: int) -> InvocationOutcome:
        batch = self._run_batch([provider_index])
        return batch.outcomes[0]

    def invoke_all(self) -> list[InvocationOutcome]:
        indices = list(range(self.provider_count()))
        batch = self._run_batch(indices)
        return batch.outcomes

    def record_batch_marker(self, outcomes: Sequence[InvocationOutcome]) -> InvocationOutcome:
        """Append one history row summarizing a scheduled batch."""
        success_count = sum(1 for outcome in outcomes if outcome.success)
        marker = InvocationOutcome(
            provider_index=BATCH_MARKER_INDEX,
            provider_name=BATCH_MARKER_NAME,
            model=None,
            url=None,
            question=BATCH_MARKER_QUESTION,
            success=True,
            answer=f"Invoked {len(outcomes)} provider(s), {success_count} succeeded",
            error=None,
            duration_ms=0,
            timestamp=self.now_fn().isoformat(),
        )
        self.storage.append_history([marker], limit=self.config.history_limit)
        self._count_store_operation()
        return marker

    def history(self, limit: int = 10) -> list[HistoryEntry]:
        self._count_store_operation()
        return self.storage.list_history(limit=limit)

    def recent_history(self, within_s: float = 3600.0, limit: int = 20) -> list[HistoryEntry]:
        self._count_store_operation()
        since = self.now_fn() - timedelta(seconds=within_s)
        return self.storage.recent_history(since=since, limit=limit)

    def clear_history(self) -> None:
        self._count_store_operation()
        self.storage.clear_history()

    def summary(self) -> StatsSummary:
        return summarize_stats(self.current_snapshot())

    def close(self) -> None:
        close = getattr(self.transport, "close", None)
        if close is not None:
            close()

    def _run_batch(self, indices: list[int]) -> BatchResult:
        batch = self.dispatcher.dispatch(indices)
        with self._counters_lock:
            self.counters.invocations += len(batch.outcomes)
            self.counters.http_attempts += sum(outcome.attempts for outcome in batch.outcomes)

        if batch.history_items:
            self.storage.append_history(batch.history_items, limit=self.config.history_limit)
            self._count_store_operation()
        if batch.stats_updates:
            self.aggregator.apply(batch.stats_updates)
            self._count_store_operation()

        logger.info(
            "Batch finished: %d/%d succeeded (%d HTTP attempt(s), %d store operation(s) so far)",
            batch.success_count,
            len(batch.outcomes),
            self.counters.http_attempts,
            self.counters.store_operations,
        )
        return batch

    def _load_snapshot(self) -> list[ProviderStats]:
        self._count_store_operation()
        return self.storage.load_stats(self.config.list_providers())

    def _count_store_operation(self) -> None:
        with self._counters_lock:
            self.counters.store_operations += 1
