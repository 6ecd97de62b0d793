from __future__ import annotations

from dataclasses import asdict, dataclass
from math import ceil, floor
from typing import Iterable, Sequence

from records import HistoryEntry, ProviderStats


@dataclass(slots=True)
class StatsSummary:
    provider_count: int
    total_calls: int
    total_success: int
    total_failed: int
    success_rate: float

    def to_dict(self) -> dict[str, object]:
        return asdict(self)


def _quantile_cont(values: list[float], percentile: float) -> float | None:
    if not values:
        return None
    if len(values) == 1:
        return float(values[0])

    sorted_values = sorted(values)
    position = (len(sorted_values) - 1) * percentile
    lower_index = floor(position)
    upper_index = ceil(position)
    if lower_index == upper_index:
        return float(sorted_values[lower_index])

    left = sorted_values[lower_index]
    right = sorted_values[upper_index]
    fraction = position - lower_index
    return float(left + (right - left) * fraction)


def quantile_summary(values: list[float]) -> dict[str, float | int | None]:
    return {
        "count": len(values),
        "p50": _quantile_cont(values, 0.50),
        "p90": _quantile_cont(values, 0.90),
        "p95": _quantile_cont(values, 0.95),
        "p99": _quantile_cont(values, 0.99),
    }


def summarize_stats(stats: Sequence[ProviderStats]) -> StatsSummary:
    total_calls = sum(item.total_calls for item in stats)
    total_success = sum(item.success_calls for item in stats)
    total_failed = sum(item.failed_calls for item in stats)
    success_rate = round(total_success / total_calls * 100.0, 2) if total_calls else 0.0
    return StatsSummary(
        provider_count=len(stats),
        total_calls=total_calls,
        total_success=total_success,
        total_failed=total_failed,
        success_rate=success_rate,
    )


def duration_summary(entries: Iterable[HistoryEntry]) -> dict[str, float | int | None]:
    return quantile_summary([float(entry.duration_ms) for entry in entries if entry.success])
