import asyncio

from itinerary_stream.errors import StreamReadFailure
from itinerary_stream.multiplexer import decode_delta, decode_frame, encode_frame, multiplex
from itinerary_stream.schemas import CompleteEvent, DayEvent, DestinationEvent, ErrorEvent, SummaryEvent

from sample_data import document_text, make_day, provider_sse, split_even


def _lines(chunks):
    return provider_sse(chunks).split("\n")


async def _iterate(lines, fail_with=None, stall=None):
    for line in lines:
        await asyncio.sleep(0)
        yield line
    if fail_with is not None:
        raise fail_with
    if stall is not None:
        await asyncio.sleep(stall)


def _collect(source, **kwargs):
    async def scenario():
        return [event async for event in multiplex(source, **kwargs)]

    return asyncio.run(scenario())


def test_decode_delta():
    assert decode_delta('data: {"choices": [{"delta": {"content": "Hi"}}]}') == "Hi"
    assert decode_delta('data: {"choices": [{"delta": {"role": "assistant"}}]}') is None
    assert decode_delta("data: [DONE]") is None
    assert decode_delta("data: {not json") is None
    assert decode_delta(": keep-alive") is None
    assert decode_delta("") is None


def test_stream_yields_sections_then_complete():
    events = _collect(_iterate(_lines(split_even(document_text(3), 60))))

    assert isinstance(events[0], DestinationEvent)
    assert isinstance(events[1], SummaryEvent)
    assert [e.day_number for e in events if isinstance(e, DayEvent)] == [1, 2, 3]
    assert events[-1] == CompleteEvent()
    assert sum(isinstance(e, CompleteEvent) for e in events) == 1


def test_read_failure_ends_with_error_after_delivered_sections():
    text = document_text(3)
    cut = text.index('"day": 3')
    source = _iterate(_lines(split_even(text[:cut], 20)), fail_with=StreamReadFailure("reset"))

    events = _collect(source)

    assert [e.day_number for e in events if isinstance(e, DayEvent)] == [1, 2]
    assert events[-1] == ErrorEvent(error="reset", code="stream_read_failure")
    assert not any(isinstance(e, CompleteEvent) for e in events)


def test_stalled_stream_times_out():
    source = _iterate(_lines(["{"]), stall=5)

    events = _collect(source, timeout_sec=0.05)

    assert events[-1].type == "error"
    assert events[-1].code == "timeout"


def test_frames_use_wire_names():
    frame = encode_frame(DayEvent(day_number=2, data=make_day(2)))

    assert frame.startswith('data: {"type":"day"')
    assert '"dayNumber":2' in frame
    assert frame.endswith("\n\n")
    assert decode_frame(frame.strip()) == DayEvent(day_number=2, data=make_day(2))
    assert encode_frame(CompleteEvent()) == 'data: {"type":"complete"}\n\n'
