from __future__ import annotations

import asyncio
import json
import logging
from typing import AsyncIterator

import httpx
from pydantic import ValidationError

from itinerary_stream.errors import ItineraryError, StreamReadFailure, StreamTimeout
from itinerary_stream.extractor import SectionExtractor
from itinerary_stream.schemas import CompleteEvent, ErrorEvent, SectionEvent, section_event_adapter


logger = logging.getLogger("itinerary-stream")

SSE_PREFIX = "data:"


def _sse_payload(line: str) -> str | None:
    line = line.strip()
    if not line.startswith(SSE_PREFIX):
        return None
    payload = line[len(SSE_PREFIX):].strip()
    return payload or None


def decode_delta(line: str) -> str | None:
    """Pull the text delta out of one OpenAI chat-completions SSE line."""
    payload = _sse_payload(line)
    if payload is None or payload == "[DONE]":
        return None
    try:
        frame = json.loads(payload)
    except json.JSONDecodeError:
        logger.debug("multiplexer: skipping malformed provider frame %r", payload[:100])
        return None
    if not isinstance(frame, dict):
        return None
    choices = frame.get("choices") or []
    if not choices or not isinstance(choices[0], dict):
        return None
    content = (choices[0].get("delta") or {}).get("content")
    return content if isinstance(content, str) and content else None


def encode_frame(event: SectionEvent) -> str:
    return f"data: {event.model_dump_json(by_alias=True, exclude_none=True)}\n\n"


def decode_frame(line: str) -> SectionEvent | None:
    """Parse one outbound SSE line back into a ``SectionEvent``."""
    payload = _sse_payload(line)
    if payload is None:
        return None
    try:
        return section_event_adapter.validate_json(payload)
    except ValidationError:
        logger.warning("multiplexer: ignoring unparseable event frame %r", payload[:100])
        return None


def error_event(exc: ItineraryError) -> ErrorEvent:
    return ErrorEvent(error=exc.message, code=exc.code)


async def multiplex(
    lines: AsyncIterator[str],
    extractor: SectionExtractor | None = None,
    timeout_sec: float | None = None,
) -> AsyncIterator[SectionEvent]:
    """Turn provider SSE lines into section events.

    Ends with exactly one ``CompleteEvent`` (channel closed) or
    ``ErrorEvent`` (read failure or ``timeout_sec`` elapsed).
    """
    extractor = extractor or SectionExtractor()
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout_sec if timeout_sec else None
    iterator = lines.__aiter__()

    while True:
        try:
            if deadline is None:
                line = await iterator.__anext__()
            else:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    raise asyncio.TimeoutError
                line = await asyncio.wait_for(iterator.__anext__(), timeout=remaining)
        except StopAsyncIteration:
            break
        except asyncio.TimeoutError:
            logger.warning("multiplexer: stream exceeded %ss", timeout_sec)
            yield error_event(StreamTimeout())
            return
        except ItineraryError as exc:
            logger.error("multiplexer: stream processing error: %s", exc)
            yield error_event(exc)
            return
        except httpx.HTTPError as exc:
            logger.error("multiplexer: stream processing error: %s", exc)
            yield error_event(StreamReadFailure(f"Stream read failed: {exc}"))
            return

        delta = decode_delta(line)
        if not delta:
            continue
        extractor.add_chunk(delta)
        for event in extractor.poll_completed_sections():
            yield event

    logger.info("multiplexer: stream finished sections=%s", len(extractor.emitted_keys))
    yield CompleteEvent()
