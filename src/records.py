from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import datetime

from providers import ProviderConfig


@dataclass(frozen=True, slots=True)
class InvocationOutcome:
    provider_index: int
    provider_name: str
    model: str | None
    url: str | None
    question: str
    success: bool
    answer: str | None
    error: str | None
    duration_ms: int
    timestamp: str
    stream_chunks: int = 0
    attempts: int = 0
    raw_preview: str | None = None

    def to_dict(self) -> dict[str, object]:
        return asdict(self)


@dataclass(frozen=True, slots=True)
class ProviderStats:
    provider: ProviderConfig
    total_calls: int = 0
    success_calls: int = 0
    failed_calls: int = 0
    last_call: str | None = None
    next_scheduled_call: str | None = None

    @property
    def index(self) -> int:
        return self.provider.index

    def to_dict(self) -> dict[str, object]:
        return {
            "index": self.provider.index,
            "name": self.provider.name,
            "model": self.provider.model,
            "url": self.provider.url,
            "total_calls": self.total_calls,
            "success_calls": self.success_calls,
            "failed_calls": self.failed_calls,
            "last_call": self.last_call,
            "next_scheduled_call": self.next_scheduled_call,
        }


@dataclass(frozen=True, slots=True)
class StatsUpdate:
    provider_index: int
    success: bool
    next_call_time: datetime


@dataclass(frozen=True, slots=True)
class CounterIncrement:
    provider_index: int
    total: int
    success: int
    failed: int
    last_call: datetime
    next_scheduled_call: datetime


@dataclass(frozen=True, slots=True)
class HistoryEntry:
    provider_index: int
    provider_name: str
    question: str
    answer: str
    success: bool
    error: str
    duration_ms: int
    timestamp: str

    def to_dict(self) -> dict[str, object]:
        return asdict(self)
