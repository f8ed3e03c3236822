from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, AsyncIterator, Awaitable, Callable

import httpx

from itinerary_stream.errors import (
    MalformedOutput,
    RateLimited,
    StreamReadFailure,
    StreamTimeout,
    UpstreamUnavailable,
    classify_status,
)


logger = logging.getLogger("itinerary-stream")


@dataclass
class Completion:
    content: str
    finish_reason: str | None = None

    @property
    def truncated(self) -> bool:
        return self.finish_reason == "length"


class OpenAIChatClient:
    """Chat-completions client with buffered and streaming modes."""

    def __init__(
        self,
        api_key: str,
        base_url: str = "https://api.openai.com/v1",
        model: str = "gpt-4o-mini",
        temperature: float = 0.7,
        max_tokens: int = 8000,
        timeout: float = 60.0,
        max_attempts: int = 3,
        backoff_base: float = 2.0,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.model = model
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.max_attempts = max_attempts
        self.backoff_base = backoff_base
        self._sleep = sleep
        self._client = httpx.AsyncClient(
            base_url=base_url,
            timeout=timeout,
            transport=transport,
            headers={"Authorization": f"Bearer {api_key}"},
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    def _body(self, system_prompt: str, user_prompt: str, stream: bool) -> dict[str, Any]:
        body: dict[str, Any] = {
            "model": self.model,
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ],
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
        }
        if stream:
            body["stream"] = True
        return body

    async def complete(self, system_prompt: str, user_prompt: str) -> Completion:
        """Buffered request; 429 responses are retried with ``backoff_base ** attempt`` waits."""
        body = self._body(system_prompt, user_prompt, stream=False)
        for attempt in range(1, self.max_attempts + 1):
            try:
                resp = await self._client.post("/chat/completions", json=body)
            except httpx.TimeoutException as exc:
                raise StreamTimeout(f"Request timeout: {exc}") from exc
            except httpx.RequestError as exc:
                raise UpstreamUnavailable(f"Network error: {exc}") from exc

            if resp.is_success:
                return _parse_completion(resp)

            if resp.status_code == 429 and attempt < self.max_attempts:
                delay = self.backoff_base ** attempt
                logger.warning(
                    "llm: rate limit hit (attempt %s/%s), retrying in %.1fs",
                    attempt,
                    self.max_attempts,
                    delay,
                )
                await self._sleep(delay)
                continue

            raise classify_status(resp.status_code, resp.reason_phrase)

        raise RateLimited()

    @asynccontextmanager
    async def stream(self, system_prompt: str, user_prompt: str) -> AsyncIterator[AsyncIterator[str]]:
        """Open a streaming request and yield its SSE lines.

        A non-2xx status raises the typed error before anything is yielded;
        the connection is released when the context exits.
        """
        request = self._client.build_request(
            "POST", "/chat/completions", json=self._body(system_prompt, user_prompt, stream=True)
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
                raise classify_status(response.status_code, response.reason_phrase)
            logger.info("llm: stream opened model=%s", self.model)
            yield _read_lines(response)
        finally:
            await response.aclose()


async def _read_lines(response: httpx.Response) -> AsyncIterator[str]:
    try:
        async for line in response.aiter_lines():
            yield line
    except httpx.TimeoutException as exc:
        raise StreamTimeout(f"Stream read timeout: {exc}") from exc
    except (httpx.HTTPError, httpx.StreamError) as exc:
        raise StreamReadFailure(f"Stream read failed: {exc}") from exc


def _parse_completion(resp: httpx.Response) -> Completion:
    try:
        data = resp.json()
        choice = data["choices"][0]
    except (ValueError, KeyError, IndexError, TypeError) as exc:
        raise MalformedOutput(truncated=False, raw_prefix=resp.text[:1000]) from exc

    content = (choice.get("message") or {}).get("content") or ""
    finish_reason = choice.get("finish_reason")
    logger.info("llm: response received length=%s finish_reason=%s", len(content), finish_reason)
    if finish_reason == "length":
        logger.warning("llm: response was truncated due to token limit")
    return Completion(content=content, finish_reason=finish_reason)
