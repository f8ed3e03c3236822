import asyncio
from contextlib import asynccontextmanager

import httpx
import pytest
from fastapi.testclient import TestClient

from itinerary_stream.consumer import ConsumerPhase, ItineraryConsumer
from itinerary_stream.errors import AuthInvalid, MalformedOutput, RateLimited, UpstreamUnavailable
from itinerary_stream.main import app
from itinerary_stream.multiplexer import decode_frame
from itinerary_stream.schemas import CompleteEvent, DayEvent, DestinationEvent, ErrorEvent, SummaryEvent
from itinerary_stream.transport import HttpTransport

from sample_data import make_day, make_document, make_preferences


class FakePipeline:
    def __init__(self, events=(), open_error=None, document=None, fetch_error=None):
        self.events = list(events)
        self.open_error = open_error
        self.document = document
        self.fetch_error = fetch_error
        self.released = False

    @asynccontextmanager
    async def open_stream(self, preferences):
        if self.open_error is not None:
            raise self.open_error

        async def events():
            for event in self.events:
                yield event

        try:
            yield events()
        finally:
            self.released = True

    async def fetch_itinerary(self, preferences):
        if self.fetch_error is not None:
            raise self.fetch_error
        return self.document


@pytest.fixture
def install():
    def _install(pipeline):
        app.state.pipeline = pipeline
        return pipeline

    yield _install
    app.state.pipeline = None


@pytest.fixture
def client():
    return TestClient(app)


def _payload(**overrides):
    data = make_preferences().model_dump(mode="json", by_alias=True)
    data.update(overrides)
    return {"travelData": data}


def _frames(text):
    return [event for event in (decode_frame(line) for line in text.splitlines()) if event is not None]


def test_health(client):
    assert client.get("/health").json() == {"status": "ok"}


def test_buffered_generation_returns_document(client, install):
    install(FakePipeline(document=make_document(2)))

    resp = client.post("/generate-itinerary", json=_payload())

    assert resp.status_code == 200
    assert resp.json() == {"itinerary": make_document(2)}


@pytest.mark.parametrize(
    "error, status",
    [(RateLimited(), 429), (AuthInvalid(), 401), (UpstreamUnavailable(), 503)],
)
def test_buffered_errors_map_to_status(client, install, error, status):
    install(FakePipeline(fetch_error=error))

    resp = client.post("/generate-itinerary", json=_payload())

    assert resp.status_code == status
    assert resp.json()["code"] == error.code
    assert resp.json()["error"] == error.message


def test_malformed_output_exposes_bounded_prefix(client, install):
    install(FakePipeline(fetch_error=MalformedOutput(truncated=True, raw_prefix="{\"destination\": ")))

    resp = client.post("/generate-itinerary", json=_payload())

    body = resp.json()
    assert resp.status_code == 500
    assert body["rawResponse"] == "{\"destination\": "
    assert body["truncated"] is True
    assert "shorter trip" in body["details"]


def test_stream_sends_one_frame_per_event(client, install):
    pipeline = install(
        FakePipeline(
            events=[
                DestinationEvent(data="Lisbon"),
                SummaryEvent(data="Sunny"),
                DayEvent(day_number=1, data=make_day(1)),
                CompleteEvent(),
            ]
        )
    )

    resp = client.post("/generate-itinerary?stream=true", json=_payload())

    assert resp.status_code == 200
    assert resp.headers["content-type"].startswith("text/event-stream")
    events = _frames(resp.text)
    assert [e.type for e in events] == ["destination", "summary", "day", "complete"]
    assert events[2].data == make_day(1)
    assert pipeline.released is True


def test_stream_open_failure_is_a_plain_error_response(client, install):
    install(FakePipeline(open_error=AuthInvalid()))

    resp = client.post("/generate-itinerary?stream=true", json=_payload())

    assert resp.status_code == 401
    assert resp.json()["code"] == "auth_invalid"


def test_invalid_preferences_are_rejected(client, install):
    install(FakePipeline())

    assert client.post("/generate-itinerary", json=_payload(endDate="2025-04-01")).status_code == 422
    assert client.post("/generate-itinerary", json=_payload(interests=[])).status_code == 422
    assert client.post("/generate-itinerary", json=_payload(budget="cheap")).status_code == 422


def _run_over_http():
    async def scenario():
        transport = HttpTransport("http://service.test", transport=httpx.ASGITransport(app=app))
        try:
            consumer = ItineraryConsumer(transport, make_preferences(2))
            return await consumer.run(), consumer
        finally:
            await transport.aclose()

    return asyncio.run(scenario())


def test_consumer_over_http_streams_to_completion(install):
    pipeline = FakePipeline(
        events=[
            DestinationEvent(data="Lisbon"),
            DayEvent(day_number=2, data=make_day(2)),
            DayEvent(day_number=1, data=make_day(1)),
            CompleteEvent(),
        ]
    )
    install(pipeline)

    draft, consumer = _run_over_http()

    assert consumer.phase is ConsumerPhase.complete
    assert [d.day for d in draft.days] == [1, 2]


def test_consumer_over_http_falls_back_when_stream_cannot_open(install):
    pipeline = FakePipeline(open_error=UpstreamUnavailable(), document=make_document(2))
    install(pipeline)

    draft, consumer = _run_over_http()

    assert consumer.phase is ConsumerPhase.complete
    assert consumer.retries == 0
    assert draft.document == make_document(2)


def test_consumer_over_http_reports_buffered_failure(install):
    pipeline = FakePipeline(
        events=[ErrorEvent(error="reset", code="stream_read_failure")],
        fetch_error=MalformedOutput(truncated=False, raw_prefix="oops"),
    )
    install(pipeline)

    async def no_wait(delay):
        return None

    async def scenario():
        transport = HttpTransport("http://service.test", transport=httpx.ASGITransport(app=app))
        try:
            consumer = ItineraryConsumer(transport, make_preferences(2), max_retries=1, sleep=no_wait)
            return await consumer.run(), consumer
        finally:
            await transport.aclose()

    draft, consumer = asyncio.run(scenario())

    assert consumer.phase is ConsumerPhase.failed
    assert consumer.retries == 1
    assert "Invalid JSON format" in draft.error
