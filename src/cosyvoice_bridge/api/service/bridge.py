"""Per-request orchestration between an HTTP response and one upstream task."""

from __future__ import annotations

import asyncio
import logging
from typing import AsyncIterator, Dict, Mapping, Optional

from cosyvoice_bridge.api.service.metrics import RequestCounters
from cosyvoice_bridge.api.service.pool import (
    SessionClosedError,
    SessionConnectError,
    SessionPool,
    Subscription,
    UpstreamSession,
)
from cosyvoice_bridge.api.service.protocol import SynthesisParams, TaskProtocolDriver
from cosyvoice_bridge.api.service.settings import SUPPORTED_FORMATS, SynthesisDefaults


CONTENT_TYPES = {"wav": "audio/wav", "pcm": "audio/L16", "mp3": "audio/mpeg"}
DEFAULT_CONTENT_TYPE = "audio/mpeg"

HTTP_OK = 200
HTTP_BAD_REQUEST = 400
HTTP_INTERNAL_ERROR = 500
HTTP_BAD_GATEWAY = 502
HTTP_GATEWAY_TIMEOUT = 504

logger = logging.getLogger(__name__)


def content_type_for(fmt: str) -> str:
    return CONTENT_TYPES.get(fmt, DEFAULT_CONTENT_TYPE)


def resolve_params(query: Mapping[str, str], defaults: SynthesisDefaults) -> SynthesisParams:
    """Merge request query parameters over ``defaults``.

    Empty values fall back to the default. Malformed numbers and unknown
    formats raise :class:`ValueError`.
    """

    def pick(name: str) -> Optional[str]:
        value = query.get(name)
        return value if value else None

    fmt = pick("format") or defaults.format
    if fmt not in SUPPORTED_FORMATS:
        raise ValueError(f"Unsupported format '{fmt}'")

    sample_rate = pick("sampleRate")
    rate = pick("rate")
    pitch = pick("pitch")
    volume = pick("volume")
    return SynthesisParams(
        voice=pick("voice") or defaults.voice,
        format=fmt,
        sample_rate=int(sample_rate) if sample_rate is not None else defaults.sample_rate,
        rate=float(rate) if rate is not None else defaults.rate,
        pitch=float(pitch) if pitch is not None else defaults.pitch,
        volume=int(volume) if volume is not None else defaults.volume,
    )


class ResponseStream:
    """Chunked HTTP response body fed by the bridge.

    Status and headers stay mutable until the first body chunk is written.
    """

    def __init__(self) -> None:
        self.status_code = HTTP_OK
        self.headers: Dict[str, str] = {}
        self.headers_sent = False
        self.finished = False
        self._queue: asyncio.Queue[Optional[bytes]] = asyncio.Queue()
        self._started = asyncio.Event()

    @property
    def started(self) -> bool:
        return self._started.is_set()

    def write(self, chunk: bytes) -> bool:
        if self.finished:
            return False
        if chunk:
            self.headers_sent = True
            self._queue.put_nowait(chunk)
            self._started.set()
        return True

    def end(self, body: bytes = b"") -> None:
        if self.finished:
            return
        if body:
            self.write(body)
        self.finished = True
        self._queue.put_nowait(None)
        self._started.set()

    async def wait_started(self) -> None:
        await self._started.wait()

    async def chunks(self) -> AsyncIterator[bytes]:
        while True:
            chunk = await self._queue.get()
            if chunk is None:
                return
            yield chunk


class RequestContext:
    """Binds one response, one leased session and one task until teardown."""

    def __init__(
        self,
        *,
        pool: SessionPool,
        session: UpstreamSession,
        response: ResponseStream,
        counters: RequestCounters,
        started_at: float,
        text: str,
        params: SynthesisParams,
        model: str,
        timeout: float,
        discard_abandoned: bool = False,
    ) -> None:
        self.pool = pool
        self.session = session
        self.response = response
        self.counters = counters
        self.started_at = started_at
        self.timeout = timeout
        self.discard_abandoned = discard_abandoned
        self.driver = TaskProtocolDriver(session, text, params, model, listener=self)
        self.log = self.driver.log
        self.closed = False
        self.outcome: Optional[str] = None
        self._timer: Optional[asyncio.TimerHandle] = None
        self._subscription: Optional[Subscription] = None

    @property
    def task_id(self) -> str:
        return self.driver.task_id

    async def start(self) -> None:
        self._subscription = self.session.subscribe(self.driver.handle_message, self._on_session_closed)
        self._timer = asyncio.get_running_loop().call_later(self.timeout, self._on_timeout)
        self.log.info(
            "Starting task (voice=%s format=%s sr=%s)",
            self.driver.params.voice,
            self.driver.params.format,
            self.driver.params.sample_rate,
        )
        await self.driver.start()

    def on_audio(self, chunk: bytes) -> None:
        if self.closed:
            return
        self.response.write(chunk)

    def on_task_finished(self) -> None:
        self.teardown(reason="finished")

    def on_task_failed(self, code: Optional[str], message: Optional[str]) -> None:
        self.teardown(HTTP_BAD_GATEWAY, reason="task-failed")

    def _on_session_closed(self, error: Optional[BaseException]) -> None:
        if self.driver.finished:
            self.teardown(reason="finished")
            return
        self.driver.abort()
        self.teardown(HTTP_BAD_GATEWAY, reason="session-errored" if error is not None else "session-closed")

    def _on_timeout(self) -> None:
        self._timer = None
        if self.driver.finished:
            return
        self.log.warning("Task timed out after %ss", self.timeout)
        self.teardown(HTTP_GATEWAY_TIMEOUT, reason="timeout")

    def client_disconnected(self) -> None:
        self.teardown(reason="client-disconnect")

    def teardown(self, status: Optional[int] = None, *, reason: str) -> bool:
        """Release everything held by this request; only the first call has effect."""

        if self.closed:
            return False
        self.closed = True
        self.outcome = reason

        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        if self._subscription is not None:
            self._subscription.cancel()
            self._subscription = None

        abandoned = not self.driver.is_terminal
        self.driver.abort()
        if abandoned and self.discard_abandoned and self.session.is_open:
            self.pool.discard(self.session)
        else:
            self.pool.release(self.session)

        if status is not None and not self.response.headers_sent:
            self.response.status_code = status
        self.response.end()

        elapsed_ms = self.counters.finish(self.started_at)
        self.log.info(
            "Request ended: reason=%s status=%s latency=%.1fms",
            reason,
            self.response.status_code,
            elapsed_ms,
        )
        return True


class RequestBridge:
    """Turns one ``GET /tts/stream`` request into one upstream task."""

    def __init__(
        self,
        pool: SessionPool,
        counters: RequestCounters,
        defaults: SynthesisDefaults,
        *,
        model: str,
        request_timeout: float,
        discard_abandoned: bool = False,
    ) -> None:
        self.pool = pool
        self.counters = counters
        self.defaults = defaults
        self.model = model
        self.request_timeout = request_timeout
        self.discard_abandoned = discard_abandoned

    async def handle(self, query: Mapping[str, str], response: ResponseStream) -> Optional[RequestContext]:
        text = (query.get("text") or "").strip()
        if not text:
            response.status_code = HTTP_BAD_REQUEST
            response.headers["Content-Type"] = "text/plain; charset=utf-8"
            response.end(b"Missing text")
            return None

        started_at = self.counters.begin()
        try:
            params = resolve_params(query, self.defaults)
            session = await self.pool.acquire()
        except SessionConnectError:
            logger.error("Could not open an upstream session")
            self._fail(response, started_at, HTTP_BAD_GATEWAY)
            return None
        except Exception:
            logger.exception("Failed to set up synthesis request")
            self._fail(response, started_at, HTTP_INTERNAL_ERROR)
            return None

        response.headers["Content-Type"] = content_type_for(params.format)
        response.headers["Cache-Control"] = "no-store"

        ctx = RequestContext(
            pool=self.pool,
            session=session,
            response=response,
            counters=self.counters,
            started_at=started_at,
            text=text,
            params=params,
            model=self.model,
            timeout=self.request_timeout,
            discard_abandoned=self.discard_abandoned,
        )
        try:
            await ctx.start()
        except SessionClosedError:
            ctx.log.warning("Session closed before run-task was sent")
            ctx.teardown(HTTP_BAD_GATEWAY, reason="session-closed")
        except Exception:
            ctx.log.exception("Failed to start upstream task")
            ctx.teardown(HTTP_INTERNAL_ERROR, reason="error")
        return ctx

    def _fail(self, response: ResponseStream, started_at: float, status: int) -> None:
        response.status_code = status
        response.end()
        self.counters.finish(started_at)
