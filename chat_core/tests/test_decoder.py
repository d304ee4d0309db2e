import pytest

from chat_core.domain.events import BeginResponse, CloseResponse, Content, Done, StreamError
from chat_core.domain.exceptions import ParsingError, TransportError
from chat_core.providers.decoder import ResponseDecoder, decode_stream, split_inclusive


EXAMPLE = (
    'data: {"choices":[{"index":0,"delta":{"role":"assistant"}}]}\n\n'
    'data: {"choices":[{"index":0,"delta":{"content":"Hi"}}]}\n\n'
    "data: [DONE]\n\n"
).encode("utf-8")

EXPECTED = [
    BeginResponse(role="assistant", response_index=0),
    Content(delta="Hi", response_index=0),
    Done(),
]


def decode_all(fragments):
    decoder = ResponseDecoder()
    events = []
    for fragment in fragments:
        events.extend(decoder.feed(fragment))
    events.extend(decoder.finish())
    return events


async def _source(chunks, state=None):
    try:
        for chunk in chunks:
            yield chunk
    finally:
        if state is not None:
            state["closed"] = True


async def _collect(agen):
    result = []
    async for event in agen:
        result.append(event)
    return result


def test_split_inclusive_keeps_terminator():
    assert list(split_inclusive("a\n\nb\n\nc", "\n\n")) == ["a\n\n", "b\n\n", "c"]
    assert list(split_inclusive("", "\n\n")) == []


def test_decode_single_fragment():
    assert decode_all([EXAMPLE]) == EXPECTED


def test_decode_split_inside_second_payload():
    offset = EXAMPLE.index(b'"Hi"') + 2
    assert decode_all([EXAMPLE[:offset], EXAMPLE[offset:]]) == EXPECTED


def test_decode_any_two_way_split():
    for offset in range(len(EXAMPLE) + 1):
        assert decode_all([EXAMPLE[:offset], EXAMPLE[offset:]]) == EXPECTED, offset


def test_decode_byte_by_byte():
    assert decode_all([EXAMPLE[i:i + 1] for i in range(len(EXAMPLE))]) == EXPECTED


def test_multibyte_character_split_across_fragments():
    raw = 'data: {"choices":[{"index":0,"delta":{"content":"héllo 你好"}}]}\n\n'.encode("utf-8")
    events = decode_all([raw[i:i + 1] for i in range(len(raw))])
    assert events == [Content(delta="héllo 你好", response_index=0)]


def test_terminator_split_is_emitted_once_after_completion():
    decoder = ResponseDecoder()
    first = b'data: {"choices":[{"index":0,"delta":{"content":"a"}}]}\n'
    assert decoder.feed(first) == []
    assert decoder.unparsed.endswith("\n")
    assert decoder.feed(b"\n") == [Content(delta="a", response_index=0)]
    assert decoder.unparsed == ""
    assert decoder.feed(b"") == []


def test_carry_over_only_fragment_emits_nothing():
    decoder = ResponseDecoder()
    assert decoder.feed(b'data: {"choi') == []
    assert decoder.feed(b'ces":[{"index":0,') == []
    assert decoder.unparsed == 'data: {"choices":[{"index":0,'
    assert decoder.feed(b'"delta":{}}]}\n\n') == [CloseResponse(response_index=0)]


def test_done_yields_single_event():
    events = decode_all([b"data: [DONE]\n\n"])
    assert events == [Done()]


def test_comments_and_unprefixed_blocks_are_ignored():
    raw = b": keep-alive\n\nevent: ping\n\n" + EXAMPLE
    assert decode_all([raw]) == EXPECTED


def test_malformed_json_yields_error_and_continues():
    raw = b"data: {not json}\n\n" + EXAMPLE
    events = decode_all([raw])
    assert isinstance(events[0], StreamError)
    assert isinstance(events[0].error, ParsingError)
    assert events[1:] == EXPECTED


def test_payload_without_choices_is_an_error():
    events = decode_all([b'data: {"id": "x"}\n\n'])
    assert len(events) == 1
    assert isinstance(events[0].error, ParsingError)


def test_unknown_role_is_an_error():
    events = decode_all([b'data: {"choices":[{"index":0,"delta":{"role":"robot"}}]}\n\n'])
    assert isinstance(events[0], StreamError)


def test_invalid_utf8_fragment_is_reported_and_dropped():
    decoder = ResponseDecoder()
    decoder.feed(b'data: {"choices":[{"index":0,')
    events = decoder.feed(b"\xff\xfe")
    assert len(events) == 1
    assert isinstance(events[0].error, ParsingError)
    # carry-over 不受影响
    assert decoder.feed(b'"delta":{"content":"x"}}]}\n\n') == [Content(delta="x", response_index=0)]


def test_parallel_candidates_keep_their_index():
    raw = (
        b'data: {"choices":[{"index":1,"delta":{"content":"B"}}]}\n\n'
        b'data: {"choices":[{"index":0,"delta":{"content":"A"}}]}\n\n'
        b'data: {"choices":[{"index":1,"delta":{}, "finish_reason":"stop"}]}\n\n'
    )
    assert decode_all([raw]) == [
        Content(delta="B", response_index=1),
        Content(delta="A", response_index=0),
        CloseResponse(response_index=1),
    ]


def test_role_with_empty_content_announces_role():
    raw = b'data: {"choices":[{"index":0,"delta":{"role":"assistant","content":""}}]}\n\n'
    assert decode_all([raw]) == [BeginResponse(role="assistant", response_index=0)]


def test_role_with_content_emits_begin_then_content():
    raw = b'data: {"choices":[{"index":1,"delta":{"role":"assistant","content":"Hi"}}]}\n\n'
    assert decode_all([raw]) == [
        BeginResponse(role="assistant", response_index=1),
        Content(delta="Hi", response_index=1),
    ]


def test_finish_reports_incomplete_event():
    decoder = ResponseDecoder()
    decoder.feed(b'data: {"choices":')
    events = decoder.finish()
    assert len(events) == 1
    assert isinstance(events[0].error, ParsingError)
    assert decoder.unparsed == ""


@pytest.mark.asyncio
async def test_decode_stream_stops_after_done_and_closes_source():
    state = {}
    chunks = [EXAMPLE, b'data: {"choices":[{"index":0,"delta":{"content":"late"}}]}\n\n']
    events = await _collect(decode_stream(_source(chunks, state)))
    assert events == EXPECTED
    assert state["closed"] is True


@pytest.mark.asyncio
async def test_decode_stream_early_close_releases_source():
    state = {}
    agen = decode_stream(_source([EXAMPLE[:70], EXAMPLE[70:]], state))
    first = await agen.__anext__()
    assert first == EXPECTED[0]
    await agen.aclose()
    assert state["closed"] is True


@pytest.mark.asyncio
async def test_decode_stream_transport_error_is_last_event():
    async def failing():
        yield b'data: {"choices":[{"index":0,"delta":{"content":"a"}}]}\n\n'
        raise TransportError("connection reset")

    events = await _collect(decode_stream(failing()))
    assert events[0] == Content(delta="a", response_index=0)
    assert isinstance(events[-1], StreamError)
    assert isinstance(events[-1].error, TransportError)


@pytest.mark.asyncio
async def test_decode_stream_reports_truncated_stream():
    events = await _collect(decode_stream(_source([b'data: {"choices":[{"index":0'])))
    assert len(events) == 1
    assert isinstance(events[0].error, ParsingError)
