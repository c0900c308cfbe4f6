"""HTTP front of the CosyVoice bridge.

``GET /tts/stream`` synthesises ``text`` through a pooled duplex session and
streams the audio back as a chunked response. ``GET /healthz`` reports pool
and request counters.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Awaitable, Callable, Optional

import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import PlainTextResponse, StreamingResponse
from starlette.datastructures import Headers
from starlette.types import ASGIApp, Receive, Scope, Send

from cosyvoice_bridge.api.service.bridge import RequestBridge, RequestContext, ResponseStream
from cosyvoice_bridge.api.service.logging_config import build_logging_config, configure_logging
from cosyvoice_bridge.api.service.metrics import RequestCounters
from cosyvoice_bridge.api.service.pool import SessionPool
from cosyvoice_bridge.api.service.settings import Settings, SettingsError, load_settings


SERVICE_NAME = "cosyvoice-bridge"
AUTH_HEADER = "x-sidecar-auth"
DISCONNECT_POLL_SECONDS = 0.1

logger = logging.getLogger(__name__)


class SharedTokenMiddleware:
    """Rejects HTTP requests that do not carry the shared secret header."""

    def __init__(self, app: ASGIApp, token: Optional[str]) -> None:
        self.app = app
        self.token = token

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] == "http" and self.token:
            if Headers(scope=scope).get(AUTH_HEADER) != self.token:
                response = PlainTextResponse("Unauthorized", status_code=401)
                await response(scope, receive, send)
                return
        await self.app(scope, receive, send)


async def _wait_for_first_chunk(request: Request, response: ResponseStream, ctx: RequestContext) -> None:
    while not response.started:
        try:
            await asyncio.wait_for(response.wait_started(), timeout=DISCONNECT_POLL_SECONDS)
        except asyncio.TimeoutError:
            if await request.is_disconnected():
                ctx.log.info("Client disconnected before first audio chunk")
                ctx.client_disconnected()


async def _stream_body(response: ResponseStream, ctx: Optional[RequestContext]) -> AsyncIterator[bytes]:
    try:
        async for chunk in response.chunks():
            yield chunk
    finally:
        # Closed early by the server: the client went away mid-stream.
        if ctx is not None and not ctx.closed:
            ctx.client_disconnected()


def create_app(settings: Settings, *, connect: Optional[Callable[..., Awaitable[Any]]] = None) -> FastAPI:
    upstream = settings.upstream
    pool = SessionPool(
        upstream.url,
        upstream.api_key,
        upstream.pool_capacity,
        acquire_timeout=upstream.acquire_timeout_seconds,
        poll_interval=upstream.poll_interval_seconds,
        data_inspection=upstream.data_inspection,
        connect=connect,
    )
    counters = RequestCounters()
    bridge = RequestBridge(
        pool,
        counters,
        settings.defaults,
        model=upstream.model,
        request_timeout=settings.service.request_timeout_seconds,
        discard_abandoned=upstream.discard_abandoned_sessions,
    )

    @asynccontextmanager
    async def lifespan(_: FastAPI):
        try:
            yield
        finally:
            await pool.aclose()

    app = FastAPI(lifespan=lifespan)
    app.add_middleware(SharedTokenMiddleware, token=settings.service.shared_token)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.state.settings = settings
    app.state.pool = pool
    app.state.counters = counters
    app.state.bridge = bridge

    logger.info(
        "Bridge app initialized with model=%s pool_capacity=%s upstream=%s",
        upstream.model,
        upstream.pool_capacity,
        upstream.url,
    )

    @app.get("/healthz")
    async def healthz():
        return {"ok": True, "pool": pool.stats(), "requests": counters.snapshot()}

    # GET /tts/stream?text=...&voice=...&format=mp3&sampleRate=16000&rate=1&pitch=1&volume=50
    @app.get("/tts/stream")
    async def tts_stream(request: Request):
        response = ResponseStream()
        ctx = await bridge.handle(dict(request.query_params), response)
        if ctx is not None:
            await _wait_for_first_chunk(request, response, ctx)
        return StreamingResponse(
            _stream_body(response, ctx),
            status_code=response.status_code,
            headers=response.headers,
        )

    return app


def run_bridge(settings: Settings) -> None:
    logger.info("Starting CosyVoice bridge on %s:%s", settings.service.host, settings.service.port)
    uvicorn.run(
        create_app(settings),
        host=settings.service.host,
        port=settings.service.port,
        log_config=build_logging_config(SERVICE_NAME),
    )


def main() -> None:
    configure_logging(SERVICE_NAME)
    try:
        settings = load_settings()
    except SettingsError as exc:
        logger.error("Refusing to start: %s", exc)
        raise SystemExit(1) from exc
    run_bridge(settings)


if __name__ == "__main__":
    main()
