from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

from itinerary_stream.config import Settings
from itinerary_stream.llm_client import OpenAIChatClient
from itinerary_stream.multiplexer import multiplex
from itinerary_stream.prompts import build_prompt
from itinerary_stream.repair import parse_itinerary_response
from itinerary_stream.schemas import SectionEvent, TripPreferences


logger = logging.getLogger("itinerary-stream")


class ItineraryPipeline:
    """One LLM client wired to the streaming and buffered generation paths.

    Sessions share nothing but the HTTP connection pool; every
    ``open_stream`` call gets its own extractor.
    """

    def __init__(
        self,
        client: OpenAIChatClient,
        stream_timeout_sec: float | None = 120,
        diagnostic_prefix_chars: int = 1000,
    ) -> None:
        self.client = client
        self.stream_timeout_sec = stream_timeout_sec
        self.diagnostic_prefix_chars = diagnostic_prefix_chars

    @classmethod
    def from_settings(cls, settings: Settings) -> "ItineraryPipeline":
        client = OpenAIChatClient(
            api_key=settings.openai_api_key,
            base_url=settings.openai_base_url,
            model=settings.openai_model,
            temperature=settings.temperature,
            max_tokens=settings.max_tokens,
            timeout=settings.llm_timeout_sec,
            max_attempts=settings.llm_max_attempts,
            backoff_base=settings.retry_backoff_base,
        )
        return cls(
            client,
            stream_timeout_sec=settings.stream_timeout_sec,
            diagnostic_prefix_chars=settings.diagnostic_prefix_chars,
        )

    async def aclose(self) -> None:
        await self.client.aclose()

    @asynccontextmanager
    async def open_stream(self, preferences: TripPreferences) -> AsyncIterator[AsyncIterator[SectionEvent]]:
        system_prompt, user_prompt = build_prompt(preferences, streaming=True)
        logger.info("pipeline: streaming destination=%s days=%s", preferences.destination, preferences.duration_days)
        async with self.client.stream(system_prompt, user_prompt) as lines:
            yield multiplex(lines, timeout_sec=self.stream_timeout_sec)

    async def fetch_itinerary(self, preferences: TripPreferences) -> dict[str, Any]:
        system_prompt, user_prompt = build_prompt(preferences, streaming=False)
        logger.info("pipeline: buffered destination=%s days=%s", preferences.destination, preferences.duration_days)
        completion = await self.client.complete(system_prompt, user_prompt)
        return parse_itinerary_response(
            completion.content,
            truncated=completion.truncated,
            prefix_chars=self.diagnostic_prefix_chars,
        )
