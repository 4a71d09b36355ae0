#!/usr/bin/env python3
import logging
import os

import anyio
from fastapi import FastAPI, Query, Request
from fastapi.responses import PlainTextResponse, StreamingResponse
from pydantic import BaseModel

from api.file_server import media_type_for, serve_file
from config.settings import load_settings
from engine.errors import (
    InFlightConflict,
    PipelineError,
    ResolutionError,
    TranscodeError,
)
from engine.paths import ensure_dir, sanitize_video_id
from engine.pipeline import build_pipeline
from engine.runtime import get_runtime_info

APP_NAME = "wiitube"
LOG_FORMAT = "%(asctime)s [%(levelname)s] %(message)s"
LIVE_MEDIA_TYPE = "video/x-flv"
CACHED_MEDIA_TYPE = "video/webm"
PROCESSING_MESSAGE = "Video is being processed, please try again later"


def setup_logging(level="INFO", log_dir=None):
    root = logging.getLogger("")
    root.setLevel(level)
    formatter = logging.Formatter(LOG_FORMAT)
    if not any(type(handler) is logging.StreamHandler for handler in root.handlers):
        console = logging.StreamHandler()
        console.setFormatter(formatter)
        root.addHandler(console)
    if not log_dir:
        return
    ensure_dir(log_dir)
    log_path = os.path.abspath(os.path.join(log_dir, "wiitube.log"))
    for handler in root.handlers:
        if isinstance(handler, logging.FileHandler):
            if os.path.abspath(getattr(handler, "baseFilename", "")) == log_path:
                return
    file_handler = logging.FileHandler(log_path)
    file_handler.setFormatter(formatter)
    root.addHandler(file_handler)


class HealthResponse(BaseModel):
    status: str


app = FastAPI(
    title=APP_NAME,
    description="Video delivery for clients with narrow codec support: cached WebM and live FLV.",
)


@app.on_event("startup")
async def startup():
    settings = load_settings()
    setup_logging(settings.log_level, settings.log_dir)
    app.state.settings = settings
    app.state.pipeline = build_pipeline(settings)
    app.state.production_limiter = anyio.CapacityLimiter(settings.max_productions)
    logging.info(
        "Startup runtime=%s raw_dir=%s cache_dir=%s",
        get_runtime_info(settings),
        settings.download_dir,
        settings.cache_dir,
    )


@app.exception_handler(PipelineError)
async def pipeline_error_handler(request: Request, exc: PipelineError):
    if exc.status_code >= 500:
        logging.error("Request failed path=%s error=%s", request.url.path, exc)
    return PlainTextResponse(str(exc), status_code=exc.status_code)


@app.get("/health", response_model=HealthResponse)
async def health():
    return {"status": "ok"}


@app.get("/get_video")
async def get_video(request: Request, video_id: str | None = Query(None)):
    video_id = sanitize_video_id(video_id)
    pipeline = request.app.state.pipeline
    range_header = request.headers.get("range")

    cached = pipeline.cached_artifact(video_id)
    if cached is not None:
        return serve_file(cached.path, range_header, CACHED_MEDIA_TYPE)
    if pipeline.registry.in_flight(video_id):
        return PlainTextResponse(PROCESSING_MESSAGE, status_code=202)

    try:
        # Production is not cancelled when the client leaves; the artifact is
        # cached for the next request either way. Runs under its own limiter,
        # outside the default thread pool that live relays draw from.
        artifact = await anyio.to_thread.run_sync(
            pipeline.ensure_cached,
            video_id,
            limiter=request.app.state.production_limiter,
        )
    except InFlightConflict:
        return PlainTextResponse(PROCESSING_MESSAGE, status_code=202)
    except ResolutionError as exc:
        logging.error("Failed to download video %s: %s", video_id, exc)
        return PlainTextResponse("Failed to download video", status_code=500)
    except TranscodeError as exc:
        logging.error("Failed to convert video %s: %s", video_id, exc)
        return PlainTextResponse("Failed to convert video", status_code=500)

    return serve_file(artifact.path, range_header, CACHED_MEDIA_TYPE)


async def _relay_live(stream):
    try:
        while True:
            chunk = await anyio.to_thread.run_sync(stream.next_chunk, abandon_on_cancel=True)
            if chunk is None:
                break
            yield chunk
    except Exception:
        # Headers are already sent; the status cannot change, only the connection can end.
        logging.exception("Live stream relay failed video_id=%s", stream.video_id)
        raise
    finally:
        with anyio.CancelScope(shield=True):
            await anyio.to_thread.run_sync(stream.close)


@app.get("/git_video")
async def git_video(request: Request, video_id: str | None = Query(None)):
    video_id = sanitize_video_id(video_id)
    pipeline = request.app.state.pipeline
    range_header = request.headers.get("range")

    try:
        stream = await anyio.to_thread.run_sync(pipeline.stream_live, video_id, range_header)
    except ResolutionError as exc:
        logging.error("Failed to get video url for %s: %s", video_id, exc)
        return PlainTextResponse("Failed to get video url", status_code=500)
    except TranscodeError as exc:
        logging.error("Failed to start live transcode for %s: %s", video_id, exc)
        return PlainTextResponse("Failed to start transcoder", status_code=500)

    headers = {
        "Accept-Ranges": "bytes",
        "Cache-Control": "no-cache",
    }
    return StreamingResponse(_relay_live(stream), media_type=LIVE_MEDIA_TYPE, headers=headers)


@app.get("/videos/{filename}")
async def serve_video(request: Request, filename: str):
    path = request.app.state.pipeline.find_served_file(filename)
    return serve_file(path, request.headers.get("range"), media_type_for(path))


def main():
    import uvicorn

    settings = load_settings()
    setup_logging(settings.log_level, settings.log_dir)
    uvicorn.run(app, host=settings.host, port=settings.port)


if __name__ == "__main__":
    main()
