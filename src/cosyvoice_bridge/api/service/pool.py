"""Bounded pool of persistent duplex sessions to the CosyVoice service."""

from __future__ import annotations

import asyncio
import logging
import uuid
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, Set, Union

import websockets
from websockets.exceptions import ConnectionClosed, ConnectionClosedError


DEFAULT_POLL_INTERVAL = 0.01

Message = Union[str, bytes]
MessageHandler = Callable[[Message], Awaitable[None]]
CloseHandler = Callable[[Optional[BaseException]], None]

logger = logging.getLogger(__name__)


class PoolError(RuntimeError):
    """Base class for session pool failures."""


class PoolExhausted(PoolError):
    """Raised when no session could be leased in time."""


class SessionConnectError(PoolError):
    """Raised when a new upstream session cannot be opened."""


class SessionClosedError(PoolError):
    """Raised when sending on a session that is no longer open."""


class SessionState(str, Enum):
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSED = "closed"
    ERRORED = "errored"


class Subscription:
    """Handlers registered on a session for the lifetime of one task."""

    def __init__(self, session: "UpstreamSession", on_message: MessageHandler, on_close: CloseHandler) -> None:
        self.session = session
        self.on_message = on_message
        self.on_close = on_close
        self.active = True

    def cancel(self) -> None:
        self.active = False
        self.session._detach(self)


class UpstreamSession:
    """One WebSocket to the remote service plus the task reading from it."""

    def __init__(self, on_closed: Callable[["UpstreamSession"], None]) -> None:
        self.id = uuid.uuid4().hex[:12]
        self.state = SessionState.CONNECTING
        self.leased = False
        self.close_error: Optional[BaseException] = None
        self._on_closed = on_closed
        self._connection: Any = None
        self._reader: Optional[asyncio.Task] = None
        self._subscription: Optional[Subscription] = None

    @property
    def is_open(self) -> bool:
        return self.state is SessionState.OPEN

    async def open(self, connect: Callable[..., Awaitable[Any]], url: str, headers: Dict[str, str]) -> None:
        self._connection = await connect(url, additional_headers=headers, max_size=None)
        self.state = SessionState.OPEN
        self._reader = asyncio.create_task(self._read_loop(), name=f"upstream-session-{self.id}")

    def subscribe(self, on_message: MessageHandler, on_close: CloseHandler) -> Subscription:
        if self._subscription is not None:
            raise RuntimeError(f"Session {self.id} already has a subscriber")
        subscription = Subscription(self, on_message, on_close)
        self._subscription = subscription
        return subscription

    def detach(self) -> None:
        if self._subscription is not None:
            self._subscription.active = False
            self._subscription = None

    def _detach(self, subscription: Subscription) -> None:
        if self._subscription is subscription:
            self._subscription = None

    async def send(self, message: str) -> None:
        if not self.is_open or self._connection is None:
            raise SessionClosedError(f"Session {self.id} is {self.state.value}")
        try:
            await self._connection.send(message)
        except ConnectionClosed as exc:
            raise SessionClosedError(f"Session {self.id} closed while sending") from exc

    async def _read_loop(self) -> None:
        error: Optional[BaseException] = None
        try:
            async for message in self._connection:
                subscription = self._subscription
                if subscription is None or not subscription.active:
                    logger.debug("Dropping %s frame on unsubscribed session %s", type(message).__name__, self.id)
                    continue
                await subscription.on_message(message)
        except ConnectionClosedError as exc:
            logger.warning("Session %s closed with error: %s", self.id, exc)
            error = exc
        except Exception as exc:
            logger.exception("Reader for session %s failed; closing it", self.id)
            error = exc
            try:
                await self._connection.close()
            except Exception:
                logger.warning("Closing session %s after reader failure also failed", self.id, exc_info=True)
        finally:
            self._mark_closed(error)

    def _mark_closed(self, error: Optional[BaseException]) -> None:
        if self.state in (SessionState.CLOSED, SessionState.ERRORED):
            return
        self.state = SessionState.ERRORED if error is not None else SessionState.CLOSED
        self.close_error = error
        # The pool forgets the session before any subscriber reacts, so a
        # release issued from the close handler cannot bring it back.
        self._on_closed(self)
        subscription = self._subscription
        self._subscription = None
        if subscription is not None and subscription.active:
            subscription.active = False
            subscription.on_close(error)

    async def close(self) -> None:
        if self._connection is not None:
            await self._connection.close()
        if self._reader is not None and not self._reader.done():
            self._reader.cancel()
            await asyncio.gather(self._reader, return_exceptions=True)
        self._mark_closed(None)


class SessionPool:
    """Hands out idle sessions and opens new ones up to ``capacity``."""

    def __init__(
        self,
        url: str,
        api_key: str,
        capacity: int,
        *,
        acquire_timeout: Optional[float] = None,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        data_inspection: bool = False,
        connect: Optional[Callable[..., Awaitable[Any]]] = None,
    ) -> None:
        if capacity < 1:
            raise ValueError("capacity must be >= 1")
        self.url = url
        self.capacity = capacity
        self._api_key = api_key
        self._acquire_timeout = acquire_timeout
        self._poll_interval = poll_interval
        self._data_inspection = data_inspection
        self._connect = connect or websockets.connect
        self._sessions: Dict[str, UpstreamSession] = {}
        self._closing: Set[asyncio.Task] = set()
        self._closed = False

    def _headers(self) -> Dict[str, str]:
        headers = {"Authorization": f"bearer {self._api_key}"}
        if self._data_inspection:
            headers["X-DashScope-DataInspection"] = "enable"
        return headers

    @property
    def live_count(self) -> int:
        return len(self._sessions)

    def _take_idle(self) -> Optional[UpstreamSession]:
        for session in self._sessions.values():
            if not session.leased and session.is_open:
                session.leased = True
                return session
        return None

    async def acquire(self) -> UpstreamSession:
        loop = asyncio.get_running_loop()
        deadline = None if self._acquire_timeout is None else loop.time() + self._acquire_timeout

        while True:
            if self._closed:
                raise PoolExhausted("Session pool is closed")

            session = self._take_idle()
            if session is not None:
                logger.debug("Leased idle session %s", session.id)
                return session

            if self.live_count < self.capacity:
                return await self._open_session()

            if deadline is not None and loop.time() >= deadline:
                logger.error("No upstream session became available within %ss", self._acquire_timeout)
                raise PoolExhausted(f"No upstream session available after {self._acquire_timeout}s")
            await asyncio.sleep(self._poll_interval)

    async def _open_session(self) -> UpstreamSession:
        session = UpstreamSession(on_closed=self._reap)
        session.leased = True
        # Registered before connecting so the slot counts against capacity.
        self._sessions[session.id] = session
        try:
            await session.open(self._connect, self.url, self._headers())
        except asyncio.CancelledError:
            self._sessions.pop(session.id, None)
            raise
        except Exception as exc:
            self._sessions.pop(session.id, None)
            logger.error("Failed to open upstream session to %s: %s", self.url, exc)
            raise SessionConnectError(f"Failed to connect to {self.url}") from exc

        if self._closed:
            await session.close()
            raise PoolExhausted("Session pool is closed")

        logger.info("Opened upstream session %s (%s/%s live)", session.id, self.live_count, self.capacity)
        return session

    def release(self, session: UpstreamSession) -> None:
        session.detach()
        if self._sessions.get(session.id) is not session or not session.is_open:
            logger.debug("Ignoring release of removed session %s (%s)", session.id, session.state.value)
            return
        session.leased = False
        logger.debug("Released session %s", session.id)

    def discard(self, session: UpstreamSession) -> None:
        """Drop ``session`` from the pool and close it in the background."""

        session.detach()
        if self._sessions.pop(session.id, None) is None:
            return
        session.leased = False
        logger.info("Discarding session %s", session.id)
        task = asyncio.get_running_loop().create_task(session.close())
        self._closing.add(task)
        task.add_done_callback(self._closing.discard)

    def _reap(self, session: UpstreamSession) -> None:
        session.leased = False
        if self._sessions.get(session.id) is session:
            del self._sessions[session.id]
            logger.info(
                "Removed %s session %s from pool (%s/%s live)",
                session.state.value,
                session.id,
                self.live_count,
                self.capacity,
            )

    def stats(self) -> Dict[str, int]:
        sessions = list(self._sessions.values())
        return {
            "capacity": self.capacity,
            "live": len(sessions),
            "leased": sum(1 for s in sessions if s.leased),
            "idle": sum(1 for s in sessions if not s.leased and s.is_open),
            "connecting": sum(1 for s in sessions if s.state is SessionState.CONNECTING),
        }

    async def aclose(self) -> None:
        self._closed = True
        sessions = list(self._sessions.values())
        await asyncio.gather(*(s.close() for s in sessions), *self._closing, return_exceptions=True)
        self._sessions.clear()
        logger.info("Session pool closed")
