"""Incremental decoding of server-sent event streams into a single answer.

Chat endpoints reply with ``data: <json>`` lines terminated by ``data: [DONE]``,
but some return a plain JSON body or something that only loosely resembles
either. The decoder accumulates content from the event stream and, when that
yields nothing, falls back to parsing the whole body.
"""

from __future__ import annotations

import codecs
from dataclasses import dataclass
import json
import logging
import re
from typing import Any, Callable, Iterable, Sequence


logger = logging.getLogger(__name__)

DATA_PREFIX = "data: "
DONE_SENTINEL = "[DONE]"
EMPTY_ANSWER = "(no response content)"
RAW_PREVIEW_CHARS = 200
CONTENT_PATTERN = re.compile(r'"content":\s*"([^"]*?)"')

Extractor = Callable[[Any], str | None]


def _dig(payload: Any, path: Sequence[str | int]) -> Any:
    current = payload
    for key in path:
        if isinstance(key, int):
            if not isinstance(current, list) or len(current) <= key:
                return None
            current = current[key]
        else:
            if not isinstance(current, dict):
                return None
            current = current.get(key)
        if current is None:
            return None
    return current


def field_extractor(*path: str | int) -> Extractor:
    def extract(payload: Any) -> str | None:
        value = _dig(payload, path)
        if isinstance(value, str) and value:
            return value
        return None

    extract.__name__ = "extract_" + "_".join(str(key) for key in path)
    return extract


STREAM_EXTRACTORS: tuple[Extractor, ...] = (
    field_extractor("choices", 0, "delta", "content"),
    field_extractor("choices", 0, "message", "content"),
    field_extractor("content"),
)

BODY_EXTRACTORS: tuple[Extractor, ...] = (
    field_extractor("choices", 0, "message", "content"),
    field_extractor("choices", 0, "text"),
    field_extractor("response"),
    field_extractor("content"),
)


def first_content(payload: Any, extractors: Iterable[Extractor]) -> str | None:
    for extractor in extractors:
        content = extractor(payload)
        if content:
            return content
    return None


@dataclass(slots=True)
class DecodeDiagnostics:
    chunks: int = 0
    lines: int = 0
    fragments: int = 0
    skipped_fragments: int = 0


@dataclass(frozen=True, slots=True)
class DecodedStream:
    answer: str
    content_found: bool
    sentinel_seen: bool
    fallback: str | None
    diagnostics: DecodeDiagnostics
    raw_preview: str


class StreamDecoder:
    def __init__(
        self,
        stream_extractors: Sequence[Extractor] = STREAM_EXTRACTORS,
        body_extractors: Sequence[Extractor] = BODY_EXTRACTORS,
    ) -> None:
        self.stream_extractors = tuple(stream_extractors)
        self.body_extractors = tuple(body_extractors)
        self.diagnostics = DecodeDiagnostics()
        self.finished = False
        self.sentinel_seen = False
        self._text_decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""
        self._raw_parts: list[str] = []
        self._fragments: list[str] = []
        self._closed = False

    @property
    def answer(self) -> str:
        return "".join(self._fragments)

    @property
    def raw_text(self) -> str:
        return "".join(self._raw_parts)

    def feed(self, chunk: bytes) -> list[str]:
        if self.finished:
            return []
        self.diagnostics.chunks += 1
        text = self._text_decoder.decode(chunk)
        logger.debug("Received stream chunk: %d byte(s)", len(chunk))

        lines = (self._buffer + text).split("\n")
        # The last piece has no newline yet; keep it for the next chunk.
        self._buffer = lines.pop()
        return self._consume(lines)

    def close(self) -> list[str]:
        if self._closed:
            return []
        self._closed = True
        fragments: list[str] = []
        if not self.finished:
            self._buffer += self._text_decoder.decode(b"", final=True)
            if self._buffer:
                fragments = self._consume([self._buffer], terminated=False)
        self._buffer = ""
        self.finished = True
        return fragments

    def result(self) -> DecodedStream:
        self.close()
        answer = self.answer
        fallback: str | None = None
        raw_text = self.raw_text
        if not answer and raw_text:
            answer, fallback = self._recover_from_body(raw_text)

        preview = raw_text[:RAW_PREVIEW_CHARS] + "..."
        if answer:
            return DecodedStream(
                answer=answer,
                content_found=True,
                sentinel_seen=self.sentinel_seen,
                fallback=fallback,
                diagnostics=self.diagnostics,
                raw_preview=preview,
            )
        return DecodedStream(
            answer=EMPTY_ANSWER,
            content_found=False,
            sentinel_seen=self.sentinel_seen,
            fallback=None,
            diagnostics=self.diagnostics,
            raw_preview=preview,
        )

    def _consume(self, lines: list[str], terminated: bool = True) -> list[str]:
        fragments: list[str] = []
        for line in lines:
            self._raw_parts.append(line + "\n" if terminated else line)
            content = self._process_line(line)
            if self.finished:
                break
            if content:
                fragments.append(content)
        self._fragments.extend(fragments)
        return fragments

    def _process_line(self, line: str) -> str | None:
        if not line.startswith(DATA_PREFIX):
            return None
        self.diagnostics.lines += 1
        data = line[len(DATA_PREFIX) :].strip()
        if data == DONE_SENTINEL:
            logger.debug("Stream sentinel received")
            self.sentinel_seen = True
            self.finished = True
            return None
        if not data:
            return None

        try:
            payload = json.loads(data)
        except json.JSONDecodeError as exc:
            self.diagnostics.skipped_fragments += 1
            logger.debug("Skipping malformed stream fragment: %s", exc.msg)
            return None

        content = first_content(payload, self.stream_extractors)
        if content:
            self.diagnostics.fragments += 1
        return content

    def _recover_from_body(self, raw_text: str) -> tuple[str, str | None]:
        try:
            payload = json.loads(raw_text)
        except json.JSONDecodeError:
            logger.debug("Body is not a JSON document, trying pattern match")
        else:
            content = first_content(payload, self.body_extractors)
            if content:
                logger.debug("Recovered content from whole-body JSON")
                return content, "json"

        match = CONTENT_PATTERN.search(raw_text)
        if match and match.group(1):
            logger.debug("Recovered content with pattern match")
            return match.group(1), "regex"
        return "", None


def decode_stream(chunks: Iterable[bytes], decoder: StreamDecoder | None = None) -> DecodedStream:
    decoder = decoder or StreamDecoder()
    for chunk in chunks:
        decoder.feed(chunk)
        if decoder.finished:
            break
    return decoder.result()
