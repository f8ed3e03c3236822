from __future__ import annotations

import asyncio
import logging
from contextlib import aclosing
from enum import Enum
from typing import Any, Awaitable, Callable, TypedDict

from langgraph.graph import END, START, StateGraph
from pydantic import ValidationError

from itinerary_stream.config import Settings
from itinerary_stream.errors import AuthInvalid, ItineraryError, StreamTimeout
from itinerary_stream.schemas import (
    CompleteEvent,
    DayEvent,
    DayPlan,
    DestinationEvent,
    ErrorEvent,
    ItineraryDraft,
    SectionEvent,
    SummaryEvent,
    TripPreferences,
)
from itinerary_stream.transport import ItineraryTransport


logger = logging.getLogger("itinerary-stream")


class ConsumerPhase(str, Enum):
    idle = "idle"
    connecting = "connecting"
    streaming = "streaming"
    complete = "complete"
    fallback_pending = "fallback_pending"
    fallback_requesting = "fallback_requesting"
    failed = "failed"


TERMINAL_PHASES = frozenset({ConsumerPhase.complete, ConsumerPhase.failed})


class SessionState(TypedDict):
    entry: str
    retries: int
    outcome: str
    error: str | None


class ItineraryConsumer:
    """Folds section events into an ``ItineraryDraft`` for one planning session.

    Streaming is attempted first; a broken stream is re-opened up to
    ``max_retries`` times, keeping the days already folded. When retries run
    out, or the stream cannot be opened at all, the buffered path is used.
    """

    def __init__(
        self,
        transport: ItineraryTransport,
        preferences: TripPreferences,
        prefer_streaming: bool = True,
        max_retries: int = 3,
        retry_delay_sec: float = 2.0,
        attempt_timeout_sec: float | None = None,
        on_update: Callable[[ItineraryDraft], None] | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.transport = transport
        self.preferences = preferences
        self.prefer_streaming = prefer_streaming
        self.max_retries = max_retries
        self.retry_delay_sec = retry_delay_sec
        self.attempt_timeout_sec = attempt_timeout_sec
        self.on_update = on_update
        self._sleep = sleep

        self.draft = ItineraryDraft()
        self.phase = ConsumerPhase.idle
        self.retries = 0
        self._abandoned = False
        self._inflight: asyncio.Future | None = None
        self._graph = self._build_graph()

    @classmethod
    def from_settings(
        cls,
        transport: ItineraryTransport,
        preferences: TripPreferences,
        settings: Settings,
        **kwargs: Any,
    ) -> "ItineraryConsumer":
        return cls(
            transport,
            preferences,
            max_retries=settings.stream_max_retries,
            retry_delay_sec=settings.stream_retry_delay_sec,
            attempt_timeout_sec=settings.stream_timeout_sec,
            **kwargs,
        )

    @property
    def abandoned(self) -> bool:
        return self._abandoned

    async def run(self) -> ItineraryDraft:
        return await self._invoke("stream" if self.prefer_streaming else "fallback")

    async def _invoke(self, entry: str) -> ItineraryDraft:
        if self._abandoned:
            raise RuntimeError("session was abandoned")
        initial: SessionState = {"entry": entry, "retries": 0, "outcome": "", "error": None}
        await self._graph.ainvoke(initial, config={"recursion_limit": 2 * self.max_retries + 10})
        return self.draft

    async def retry(self) -> ItineraryDraft:
        """Start over after a failure, keeping whatever was already folded."""
        self._reset()
        return await self.run()

    async def use_fallback(self) -> ItineraryDraft:
        """Run buffered generation only, folding its result over what is already in the draft."""
        self._reset()
        return await self._invoke("fallback")

    def _reset(self) -> None:
        self.retries = 0
        self.draft.error = None
        self.draft.is_complete = False
        self.phase = ConsumerPhase.idle

    def abandon(self) -> None:
        """Stop the session; in-flight events are discarded and the stream is released."""
        if self._abandoned:
            return
        self._abandoned = True
        logger.info("consumer: session abandoned in phase=%s", self.phase.value)
        if self._inflight is not None and not self._inflight.done():
            self._inflight.cancel()

    async def _cancellable(self, coro: Awaitable[Any], timeout: float | None = None) -> Any:
        # The awaited work runs in its own task so abandon() can cancel it
        # without touching the task that drives the graph.
        task = asyncio.ensure_future(coro)
        self._inflight = task
        try:
            return await asyncio.wait_for(task, timeout=timeout)
        finally:
            self._inflight = None

    def _build_graph(self):
        async def stream_node(state: SessionState) -> SessionState:
            if self._abandoned:
                return {**state, "outcome": "abandoned"}
            self._set_phase(ConsumerPhase.connecting)
            try:
                outcome, error = await self._cancellable(self._stream_once(), timeout=self.attempt_timeout_sec)
            except asyncio.TimeoutError:
                logger.warning("consumer: streaming attempt exceeded %ss", self.attempt_timeout_sec)
                outcome, error = "stream_error", StreamTimeout().message
            except asyncio.CancelledError:
                if not self._abandoned:
                    raise
                outcome, error = "abandoned", None

            if outcome == "complete":
                self._finish()
            elif outcome == "fatal":
                self._fail(error or "Generation failed")
            elif outcome != "abandoned":
                logger.warning("consumer: stream %s: %s", outcome, error)
            return {**state, "outcome": outcome, "error": error}

        async def retry_wait_node(state: SessionState) -> SessionState:
            retries = state["retries"] + 1
            self.retries = retries
            self.draft.progress = f"Connection lost. Retrying... ({retries}/{self.max_retries})"
            self._notify()
            logger.info("consumer: retry %s/%s in %ss", retries, self.max_retries, self.retry_delay_sec)
            try:
                await self._cancellable(self._sleep(self.retry_delay_sec))
            except asyncio.CancelledError:
                if not self._abandoned:
                    raise
            return {**state, "retries": retries}

        async def fallback_node(state: SessionState) -> SessionState:
            if self._abandoned:
                return {**state, "outcome": "abandoned"}
            self._set_phase(ConsumerPhase.fallback_pending)
            self.draft.progress = "Switching to standard generation..."
            self._set_phase(ConsumerPhase.fallback_requesting)
            try:
                document = await self._cancellable(self.transport.fetch_itinerary(self.preferences))
            except asyncio.CancelledError:
                if not self._abandoned:
                    raise
                return {**state, "outcome": "abandoned"}
            except ItineraryError as exc:
                logger.error("consumer: fallback generation failed: %s", exc)
                self._fail(exc.message)
                return {**state, "outcome": "failed", "error": exc.message}

            self._fold_document(document)
            self._finish()
            return {**state, "outcome": "complete", "error": None}

        def route_start(state: SessionState) -> str:
            return state["entry"]

        def route_after_stream(state: SessionState) -> str:
            outcome = state["outcome"]
            if outcome in ("complete", "fatal", "abandoned"):
                return END
            if outcome == "stream_error" and state["retries"] < self.max_retries:
                return "retry_wait"
            return "fallback"

        graph = StateGraph(SessionState)
        graph.add_node("stream", stream_node)
        graph.add_node("retry_wait", retry_wait_node)
        graph.add_node("fallback", fallback_node)

        graph.add_conditional_edges(START, route_start, {"stream": "stream", "fallback": "fallback"})
        graph.add_conditional_edges(
            "stream",
            route_after_stream,
            {END: END, "retry_wait": "retry_wait", "fallback": "fallback"},
        )
        graph.add_edge("retry_wait", "stream")
        graph.add_edge("fallback", END)

        return graph.compile()

    async def _stream_once(self) -> tuple[str, str | None]:
        opened = False
        try:
            async with self.transport.open_stream(self.preferences) as events:
                opened = True
                async with aclosing(events) as stream:
                    async for event in stream:
                        if self._abandoned:
                            return "abandoned", None
                        if self.phase is ConsumerPhase.connecting:
                            self._set_phase(ConsumerPhase.streaming)
                        if isinstance(event, ErrorEvent):
                            if event.code == AuthInvalid.code:
                                return "fatal", event.error
                            return "stream_error", event.error
                        if isinstance(event, CompleteEvent):
                            return "complete", None
                        self.fold(event)
        except AuthInvalid as exc:
            return "fatal", exc.message
        except ItineraryError as exc:
            return ("stream_error" if opened else "connect_error"), exc.message
        return "stream_error", "Stream ended before the itinerary was complete."

    def fold(self, event: SectionEvent) -> None:
        """Apply one section event to the draft."""
        if self._abandoned or self.phase in TERMINAL_PHASES:
            return
        draft = self.draft
        if isinstance(event, DestinationEvent):
            draft.destination = event.data
            draft.progress = f"Exploring {event.data}..."
        elif isinstance(event, SummaryEvent):
            draft.summary = event.data
            draft.progress = "Creating trip overview..."
        elif isinstance(event, DayEvent):
            day = self._validate_day(event.data)
            if day is None or not draft.add_day(day):
                return
            draft.progress = f"Day {day.day} planned! Creating day {day.day + 1}..."
        elif isinstance(event, CompleteEvent):
            self._finish()
            return
        elif isinstance(event, ErrorEvent):
            self._fail(event.error)
            return
        self._notify()

    def _fold_document(self, document: dict[str, Any]) -> None:
        draft = self.draft
        if draft.destination is None and isinstance(document.get("destination"), str):
            draft.destination = document["destination"]
        if draft.summary is None and isinstance(document.get("summary"), str):
            draft.summary = document["summary"]
        for payload in document.get("days") or []:
            if isinstance(payload, dict):
                day = self._validate_day(payload)
                if day is not None:
                    draft.add_day(day)
        draft.document = document

    @staticmethod
    def _validate_day(payload: dict[str, Any]) -> DayPlan | None:
        try:
            return DayPlan.model_validate(payload)
        except ValidationError as exc:
            logger.warning("consumer: dropping unusable day payload: %s", exc.errors()[:1])
            return None

    def _set_phase(self, phase: ConsumerPhase) -> None:
        if self._abandoned:
            return
        logger.debug("consumer: %s -> %s", self.phase.value, phase.value)
        self.phase = phase
        if phase is ConsumerPhase.connecting:
            self.draft.progress = "Connecting to AI travel planner..."
        elif phase is ConsumerPhase.streaming:
            self.draft.progress = "Connected! Generating your itinerary..."
        self._notify()

    def _finish(self) -> None:
        if self._abandoned or self.phase in TERMINAL_PHASES:
            return
        self.draft.is_complete = True
        self.draft.progress = "Your itinerary is complete!"
        self._set_phase(ConsumerPhase.complete)
        logger.info("consumer: complete days=%s", len(self.draft.days))

    def _fail(self, message: str) -> None:
        if self._abandoned or self.phase in TERMINAL_PHASES:
            return
        self.draft.error = message
        self.draft.progress = "Generation failed."
        self._set_phase(ConsumerPhase.failed)
        logger.info("consumer: failed days=%s error=%s", len(self.draft.days), message)

    def _notify(self) -> None:
        if self.on_update is not None and not self._abandoned:
            self.on_update(self.draft)
