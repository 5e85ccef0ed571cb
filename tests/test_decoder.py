import pytest

from src.personality.domain.events import (
    ChunkEvent,
    GenerationEvent,
    MalformedEventLine,
    OutputsEvent,
    parse_event,
)
from src.personality.services.decoder import EventStreamDecoder

from .utils import SCENARIO_A, chunk, gen, outputs


WIRE = "".join(
    [
        gen("start", "thinking"),
        chunk("internal 🤔 notes"),
        gen("end", "thinking"),
        gen("start", "output"),
        chunk("héllo "),
        chunk("wörld 🎉"),
        gen("end", "output"),
        outputs({"about": "ünïcode", "emojis": "🔥"}),
    ]
).encode("utf-8")


def _feed_all(pieces):
    decoder = EventStreamDecoder()
    events = []
    for piece in pieces:
        events.extend(decoder.feed(piece))
    decoder.close()
    return events


def test_single_chunk_yields_events_in_wire_order():
    events = _feed_all([WIRE])
    assert [e.type for e in events] == [
        "generation",
        "chunk",
        "generation",
        "generation",
        "chunk",
        "chunk",
        "generation",
        "outputs",
    ]
    assert events[4] == ChunkEvent(value="héllo ")
    assert events[-1] == OutputsEvent(values={"output": {"about": "ünïcode", "emojis": "🔥"}})


def test_every_two_way_split_matches_single_chunk():
    expected = _feed_all([WIRE])
    for cut in range(1, len(WIRE)):
        assert _feed_all([WIRE[:cut], WIRE[cut:]]) == expected, f"split at byte {cut}"


def test_one_byte_at_a_time_matches_single_chunk():
    pieces = [WIRE[i : i + 1] for i in range(len(WIRE))]
    assert _feed_all(pieces) == _feed_all([WIRE])


def test_split_inside_multibyte_character():
    payload = chunk("🎉").encode("utf-8")
    emoji_start = payload.index("🎉".encode("utf-8"))
    events = _feed_all([payload[: emoji_start + 2], payload[emoji_start + 2 :]])
    assert events == [ChunkEvent(value="🎉")]


def test_malformed_line_is_dropped_and_decoding_continues():
    decoder = EventStreamDecoder()
    events = decoder.feed(b"not json at all\n" + chunk("ok").encode() + b'{"value": {"type": "mystery"}}\n')
    assert events == [ChunkEvent(value="ok")]
    assert decoder.lines_dropped == 2
    assert decoder.lines_parsed == 1


def test_unterminated_trailing_line_is_discarded():
    decoder = EventStreamDecoder()
    events = decoder.feed(chunk("a").encode() + b'{"value": {"type": "chunk", "value": "b"}}')
    assert events == [ChunkEvent(value="a")]
    assert decoder.pending.startswith('{"value"')
    decoder.close()
    assert decoder.pending == ""


def test_crlf_and_blank_lines_are_tolerated():
    wire = (chunk("x").rstrip("\n") + "\r\n\r\n\n" + gen("start", "output")).encode()
    events = _feed_all([wire])
    assert events == [ChunkEvent(value="x"), GenerationEvent(state="start", label="output")]


def test_feed_after_close_is_rejected():
    decoder = EventStreamDecoder()
    decoder.close()
    with pytest.raises(RuntimeError):
        decoder.feed(b"{}\n")


def test_parse_event_requires_value_envelope():
    with pytest.raises(MalformedEventLine):
        parse_event('{"type":"chunk","value":"z"}')
    with pytest.raises(MalformedEventLine):
        parse_event('{"value": {"type": "generation", "state": "sideways"}}')


def test_chunk_with_null_value_parses():
    assert parse_event('{"value": {"type": "chunk", "value": null}}') == ChunkEvent(value=None)
