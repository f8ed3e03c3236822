from __future__ import annotations

from contextlib import AbstractAsyncContextManager, asynccontextmanager
from typing import Any, AsyncIterator, Protocol

import httpx

from itinerary_stream.errors import (
    ItineraryError,
    MalformedOutput,
    StreamReadFailure,
    StreamTimeout,
    UpstreamUnavailable,
    classify_status,
    error_from_code,
)
from itinerary_stream.multiplexer import decode_frame
from itinerary_stream.schemas import SectionEvent, TripPreferences


class ItineraryTransport(Protocol):
    """What the consumer needs from whoever produces itineraries.

    ``ItineraryPipeline`` satisfies it in-process; ``HttpTransport`` talks to
    the HTTP service.
    """

    def open_stream(
        self, preferences: TripPreferences
    ) -> AbstractAsyncContextManager[AsyncIterator[SectionEvent]]: ...

    async def fetch_itinerary(self, preferences: TripPreferences) -> dict[str, Any]: ...


class HttpTransport:
    def __init__(
        self,
        base_url: str,
        timeout: float = 120.0,
        headers: dict[str, str] | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._client = httpx.AsyncClient(base_url=base_url, timeout=timeout, headers=headers, transport=transport)

    async def aclose(self) -> None:
        await self._client.aclose()

    @staticmethod
    def _payload(preferences: TripPreferences) -> dict[str, Any]:
        return {"travelData": preferences.model_dump(mode="json", by_alias=True)}

    @asynccontextmanager
    async def open_stream(self, preferences: TripPreferences) -> AsyncIterator[AsyncIterator[SectionEvent]]:
        request = self._client.build_request(
            "POST", "/generate-itinerary", params={"stream": "true"}, json=self._payload(preferences)
        )
        try:
            response = await self._client.send(request, stream=True)
        except httpx.TimeoutException as exc:
            raise StreamTimeout(f"Request timeout: {exc}") from exc
        except httpx.RequestError as exc:
            raise UpstreamUnavailable(f"Network error: {exc}") from exc

        try:
            if not response.is_success:
                await response.aread()
                raise _error_from_response(response)
            yield _read_events(response)
        finally:
            await response.aclose()

    async def fetch_itinerary(self, preferences: TripPreferences) -> dict[str, Any]:
        try:
            resp = await self._client.post("/generate-itinerary", json=self._payload(preferences))
        except httpx.TimeoutException as exc:
            raise StreamTimeout(f"Request timeout: {exc}") from exc
        except httpx.RequestError as exc:
            raise UpstreamUnavailable(f"Network error: {exc}") from exc

        if not resp.is_success:
            raise _error_from_response(resp)
        return resp.json()["itinerary"]


async def _read_events(response: httpx.Response) -> AsyncIterator[SectionEvent]:
    try:
        async for line in response.aiter_lines():
            event = decode_frame(line)
            if event is not None:
                yield event
    except httpx.TimeoutException as exc:
        raise StreamTimeout(f"Stream read timeout: {exc}") from exc
    except (httpx.HTTPError, httpx.StreamError) as exc:
        raise StreamReadFailure(f"Stream read failed: {exc}") from exc


def _error_from_response(response: httpx.Response) -> ItineraryError:
    try:
        body = response.json()
    except ValueError:
        body = {}
    if not isinstance(body, dict) or "code" not in body:
        return classify_status(response.status_code, response.reason_phrase)

    code = body["code"]
    message = body.get("error") or response.reason_phrase
    if code == MalformedOutput.code:
        return MalformedOutput(truncated=bool(body.get("truncated")), raw_prefix=body.get("rawResponse", ""))
    return error_from_code(code, message, status=response.status_code)
