from __future__ import annotations

from pathlib import Path
import sys

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1] / "src"))

from stream import (
    EMPTY_ANSWER,
    StreamDecoder,
    decode_stream,
    field_extractor,
    first_content,
)


EVENT_STREAM = (
    b'data: {"choices":[{"delta":{"content":"Hel"}}]}\n\n'
    b'data: {"choices":[{"delta":{"content":"lo th"}}]}\n\n'
    b'data: {"choices":[{"delta":{"role":"assistant"}}]}\n\n'
    b'data: {"choices":[{"delta":{"content":"ere"}}]}\n\n'
    b"data: [DONE]\n\n"
)


def _split(payload: bytes, size: int) -> list[bytes]:
    return [payload[offset : offset + size] for offset in range(0, len(payload), size)]


def test_decodes_event_stream_in_one_chunk() -> None:
    decoded = decode_stream([EVENT_STREAM])
    assert decoded.answer == "Hello there"
    assert decoded.content_found is True
    assert decoded.sentinel_seen is True
    assert decoded.fallback is None
    assert decoded.diagnostics.fragments == 3


@pytest.mark.parametrize("size", [1, 2, 3, 5, 7, 16, 64])
def test_answer_is_independent_of_chunk_boundaries(size: int) -> None:
    whole = decode_stream([EVENT_STREAM])
    pieces = decode_stream(_split(EVENT_STREAM, size))
    assert pieces.answer == whole.answer
    # Reading stops at the sentinel, so trailing bytes may never be consumed.
    assert pieces.diagnostics.chunks <= len(_split(EVENT_STREAM, size))


def test_multibyte_characters_split_across_chunks() -> None:
    payload = 'data: {"content":"héllo ✓"}\n\ndata: [DONE]\n'.encode("utf-8")
    decoded = decode_stream(_split(payload, 1))
    assert decoded.answer == "héllo ✓"


def test_sentinel_stops_reading_further_chunks() -> None:
    def chunks():
        yield b'data: {"content":"a"}\n'
        yield b"data: [DONE]\n"
        raise AssertionError("read past the sentinel")

    decoded = decode_stream(chunks())
    assert decoded.answer == "a"
    assert decoded.sentinel_seen is True


def test_sentinel_ignores_lines_in_the_same_chunk() -> None:
    decoded = decode_stream([b'data: {"content":"a"}\ndata: [DONE]\ndata: {"content":"b"}\n'])
    assert decoded.answer == "a"


def test_malformed_fragment_is_skipped_and_counted() -> None:
    decoded = decode_stream([b'data: {not json\ndata: {"content":"ok"}\n'])
    assert decoded.answer == "ok"
    assert decoded.diagnostics.skipped_fragments == 1


def test_blank_and_non_data_lines_are_ignored() -> None:
    decoded = decode_stream([b': keepalive\nevent: message\ndata: \ndata: {"content":"x"}\n'])
    assert decoded.answer == "x"
    assert decoded.diagnostics.skipped_fragments == 0


def test_crlf_line_endings() -> None:
    decoded = decode_stream([b'data: {"content":"a"}\r\n\r\ndata: {"content":"b"}\r\n'])
    assert decoded.answer == "ab"


def test_trailing_partial_line_is_flushed_at_end_of_stream() -> None:
    decoded = decode_stream([b'data: {"content":"hea', b'd"}\ndata: {"content":"tail"}'])
    assert decoded.answer == "headtail"
    assert decoded.sentinel_seen is False


def test_stream_field_priority() -> None:
    decoded = decode_stream(
        [
            b'data: {"choices":[{"delta":{"content":"d"},"message":{"content":"m"}}],"content":"c"}\n',
            b'data: {"choices":[{"message":{"content":"m"}}],"content":"c"}\n',
            b'data: {"content":"c"}\n',
        ]
    )
    assert decoded.answer == "dmc"


def test_feed_returns_fragments_as_they_complete() -> None:
    decoder = StreamDecoder()
    assert decoder.feed(b'data: {"content":"a"}\ndata: {"con') == ["a"]
    assert decoder.answer == "a"
    assert decoder.feed(b'tent":"b"}\n') == ["b"]
    assert decoder.answer == "ab"
    assert decoder.finished is False
    assert decoder.feed(b"data: [DONE]\n") == []
    assert decoder.finished is True
    assert decoder.feed(b'data: {"content":"late"}\n') == []
    assert decoder.answer == "ab"


def test_falls_back_to_whole_body_json() -> None:
    decoded = decode_stream([b'{"con', b'tent":"ok"}'])
    assert decoded.answer == "ok"
    assert decoded.fallback == "json"


@pytest.mark.parametrize(
    ("body", "expected"),
    [
        (b'{"choices":[{"message":{"content":"full"}}],"content":"later"}', "full"),
        (b'{"choices":[{"text":"completion"}]}', "completion"),
        (b'{"response":"generated"}', "generated"),
        (b'{"content":"plain"}', "plain"),
    ],
)
def test_whole_body_field_priority(body: bytes, expected: str) -> None:
    assert decode_stream([body]).answer == expected


def test_falls_back_to_pattern_when_body_is_not_json() -> None:
    decoded = decode_stream([b'oops "content": "found it", trailing garbage'])
    assert decoded.answer == "found it"
    assert decoded.fallback == "regex"


def test_pattern_fallback_when_json_has_no_known_field() -> None:
    decoded = decode_stream([b'{"data": {"content": "nested"}}'])
    assert decoded.answer == "nested"
    assert decoded.fallback == "regex"


def test_no_content_is_an_empty_answer_not_an_error() -> None:
    decoded = decode_stream([b"event: ping\n\n"])
    assert decoded.answer == EMPTY_ANSWER
    assert decoded.content_found is False


def test_empty_source_yields_empty_answer() -> None:
    decoded = decode_stream([])
    assert decoded.answer == EMPTY_ANSWER
    assert decoded.diagnostics.chunks == 0


def test_raw_preview_is_truncated() -> None:
    decoded = decode_stream([b"x" * 500])
    assert decoded.raw_preview == "x" * 200 + "..."


def test_first_content_uses_extractor_order() -> None:
    payload = {"a": "first", "b": "second"}
    assert first_content(payload, [field_extractor("b"), field_extractor("a")]) == "second"
    assert first_content(payload, [field_extractor("missing"), field_extractor("a")]) == "first"
    assert first_content(payload, [field_extractor("missing")]) is None


def test_field_extractor_ignores_non_string_values() -> None:
    extract = field_extractor("choices", 0, "delta", "content")
    assert extract({"choices": [{"delta": {"content": None}}]}) is None
    assert extract({"choices": []}) is None
    assert extract({"choices": [{"delta": {"content": ["x"]}}]}) is None
    assert extract(["not", "a", "dict"]) is None
