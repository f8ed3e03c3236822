from __future__ import annotations

import logging
from contextlib import AsyncExitStack

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from starlette.background import BackgroundTask

from itinerary_stream.config import get_settings
from itinerary_stream.errors import ItineraryError, MalformedOutput
from itinerary_stream.multiplexer import encode_frame
from itinerary_stream.pipeline import ItineraryPipeline
from itinerary_stream.schemas import GenerateRequest, GenerateResponse


app = FastAPI(title="Streaming Itinerary Service", version="0.1.0")
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("itinerary-stream")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["authorization", "x-client-info", "apikey", "content-type"],
)

STREAM_HEADERS = {"Cache-Control": "no-cache", "Connection": "keep-alive"}


@app.on_event("startup")
async def on_startup() -> None:
    settings = get_settings()
    logger.setLevel(settings.log_level.upper())
    app.state.settings = settings
    app.state.pipeline = ItineraryPipeline.from_settings(settings)


@app.on_event("shutdown")
async def on_shutdown() -> None:
    pipeline: ItineraryPipeline | None = getattr(app.state, "pipeline", None)
    if pipeline is not None:
        await pipeline.aclose()


@app.get("/health")
async def health() -> dict:
    return {"status": "ok"}


def _error_response(exc: ItineraryError) -> JSONResponse:
    content = {"error": exc.message, "details": exc.message, "code": exc.code}
    if isinstance(exc, MalformedOutput):
        content["details"] = exc.details
        content["truncated"] = exc.truncated
        content["rawResponse"] = exc.raw_prefix
    return JSONResponse(status_code=exc.status_code, content=content)


@app.post("/generate-itinerary", response_model=None)
async def generate_itinerary(request: GenerateRequest, stream: bool = False):
    pipeline: ItineraryPipeline = app.state.pipeline
    preferences = request.travel_data
    logger.info("request: destination=%s stream=%s", preferences.destination, stream)

    if not stream:
        try:
            itinerary = await pipeline.fetch_itinerary(preferences)
        except ItineraryError as exc:
            logger.error("request: buffered generation failed code=%s: %s", exc.code, exc)
            return _error_response(exc)
        return GenerateResponse(itinerary=itinerary)

    stack = AsyncExitStack()
    try:
        events = await stack.enter_async_context(pipeline.open_stream(preferences))
    except ItineraryError as exc:
        await stack.aclose()
        logger.error("request: could not open stream code=%s: %s", exc.code, exc)
        return _error_response(exc)

    async def frames():
        async with stack:
            async for event in events:
                yield encode_frame(event)

    return StreamingResponse(
        frames(),
        media_type="text/event-stream",
        headers=STREAM_HEADERS,
        background=BackgroundTask(stack.aclose),
    )


@app.exception_handler(Exception)
async def unhandled_exception_handler(request, exc: Exception):
    logger.exception("request: unhandled error")
    return JSONResponse(status_code=500, content={"error": str(exc)})


def run() -> None:
    import uvicorn

    uvicorn.run("itinerary_stream.main:app", host="0.0.0.0", port=8000)


if __name__ == "__main__":
    run()
