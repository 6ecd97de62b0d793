from __future__ import annotations

from datetime import datetime, timezone
import logging
import random
import time
from typing import Callable, Iterable, Iterator, Protocol, Sequence

import httpx

from providers import ConfigurationError, ProviderConfig, RetryPolicy
from records import InvocationOutcome, ProviderStats
from stream import DecodedStream, decode_stream


logger = logging.getLogger(__name__)

ABORTED_QUESTION = "(invocation aborted)"
REQUEST_MAX_TOKENS = 50
REQUEST_TEMPERATURE = 0.3

SnapshotSource = Callable[[], Sequence[ProviderStats]]


class TransportError(RuntimeError):
    pass


class ChatTransportProtocol(Protocol):
    def stream_chat(self, provider: ProviderConfig, question: str) -> Iterable[bytes]:
        ...


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def unknown_provider_name(provider_index: int) -> str:
    return f"unknown-provider-{provider_index}"


class HttpxTransport:
    def __init__(self, client: httpx.Client | None = None) -> None:
        self.client = client or httpx.Client()

    def stream_chat(self, provider: ProviderConfig, question: str) -> Iterator[bytes]:
        request_options: dict[str, object] = {
            "headers": {
                "Content-Type": "application/json",
                "Authorization": f"Bearer {provider.credential()}",
            },
            "json": {
                "messages": [{"role": "user", "content": question}],
                "model": provider.model,
                "max_tokens": REQUEST_MAX_TOKENS,
                "temperature": REQUEST_TEMPERATURE,
                "stream": True,
            },
        }
        if provider.timeout_s is not None:
            request_options["timeout"] = provider.timeout_s

        try:
            with self.client.stream("POST", provider.url, **request_options) as response:
                if not response.is_success:
                    raise TransportError(f"HTTP {response.status_code}")
                yield from response.iter_bytes()
        except httpx.HTTPError as exc:
            raise TransportError(f"{type(exc).__name__}: {exc}") from exc

    def close(self) -> None:
        self.client.close()


class RetryingInvoker:
    def __init__(
        self,
        transport: ChatTransportProtocol,
        snapshot: SnapshotSource,
        questions: Sequence[str],
        policy: RetryPolicy | None = None,
        clock: Callable[[], float] = time.perf_counter,
        sleep_fn: Callable[[float], None] = time.sleep,
        now_fn: Callable[[], datetime] = utc_now,
        rng: random.Random | None = None,
    ) -> None:
        if not questions:
            raise ConfigurationError("Question pool must not be empty")
        self.transport = transport
        self.snapshot = snapshot
        self.questions = tuple(questions)
        self.policy = policy or RetryPolicy()
        self.clock = clock
        self.sleep_fn = sleep_fn
        self.now_fn = now_fn
        self.rng = rng or random.Random()

    def resolve(self, provider_index: int) -> ProviderConfig:
        stats = self.snapshot()
        if provider_index < 0 or provider_index >= len(stats):
            raise ConfigurationError(f"Provider config {provider_index} not found")
        return stats[provider_index].provider

    def pick_question(self) -> str:
        return self.rng.choice(self.questions)

    def invoke(self, provider_index: int) -> InvocationOutcome:
        try:
            provider = self.resolve(provider_index)
        except ConfigurationError as exc:
            logger.warning("Cannot invoke provider %d: %s", provider_index, exc)
            return InvocationOutcome(
                provider_index=provider_index,
                provider_name=unknown_provider_name(provider_index),
                model=None,
                url=None,
                question=ABORTED_QUESTION,
                success=False,
                answer=None,
                error=str(exc),
                duration_ms=0,
                timestamp=self.now_fn().isoformat(),
            )

        last_error: Exception | None = None
        question = ABORTED_QUESTION
        duration_ms = 0
        for attempt in range(self.policy.max_attempts):
            if attempt > 0:
                delay_s = self.policy.backoff_delay_s(attempt - 1)
                logger.info(
                    "Retrying provider %d (%s) #%d after %.2fs",
                    provider_index,
                    provider.name,
                    attempt,
                    delay_s,
                )
                self.sleep_fn(delay_s)

            question = self.pick_question()
            logger.info("Invoking provider %d (%s), attempt %d", provider_index, provider.name, attempt + 1)
            started_at = self.clock()
            try:
                decoded = self._attempt(provider, question)
            except ConfigurationError as exc:
                logger.warning("Provider %d (%s) is misconfigured: %s", provider_index, provider.name, exc)
                return InvocationOutcome(
                    provider_index=provider_index,
                    provider_name=provider.name,
                    model=provider.model,
                    url=provider.url,
                    question=question,
                    success=False,
                    answer=None,
                    error=str(exc),
                    duration_ms=self._elapsed_ms(started_at),
                    timestamp=self.now_fn().isoformat(),
                    attempts=attempt + 1,
                )
            except Exception as exc:  # noqa: BLE001
                duration_ms = self._elapsed_ms(started_at)
                last_error = exc
                logger.warning(
                    "Provider %d (%s) attempt %d failed: %s",
                    provider_index,
                    provider.name,
                    attempt + 1,
                    exc,
                )
                continue

            return InvocationOutcome(
                provider_index=provider_index,
                provider_name=provider.name,
                model=provider.model,
                url=provider.url,
                question=question,
                success=True,
                answer=decoded.answer,
                error=None,
                duration_ms=self._elapsed_ms(started_at),
                timestamp=self.now_fn().isoformat(),
                stream_chunks=decoded.diagnostics.chunks,
                attempts=attempt + 1,
                raw_preview=decoded.raw_preview,
            )

        logger.warning(
            "Provider %d (%s) failed after %d attempt(s)",
            provider_index,
            provider.name,
            self.policy.max_attempts,
        )
        return InvocationOutcome(
            provider_index=provider_index,
            provider_name=provider.name,
            model=provider.model,
            url=provider.url,
            question=question,
            success=False,
            answer=None,
            error=str(last_error) if last_error is not None else "unknown error",
            duration_ms=duration_ms,
            timestamp=self.now_fn().isoformat(),
            attempts=self.policy.max_attempts,
        )

    def _attempt(self, provider: ProviderConfig, question: str) -> DecodedStream:
        chunks = self.transport.stream_chat(provider, question)
        try:
            return decode_stream(chunks)
        finally:
            # Stop reading the body once decoding is done, even after an early sentinel.
            close = getattr(chunks, "close", None)
            if close is not None:
                close()

    def _elapsed_ms(self, started_at: float) -> int:
        return int(round((self.clock() - started_at) * 1000))
