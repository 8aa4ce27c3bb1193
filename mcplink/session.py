"""Server-side session state and the manager that keeps track of sessions."""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from typing import Any, Awaitable, Callable, Dict, Iterator, Optional, Set, Tuple

from .transport.base import (
    LackSessionError,
    SendEOFError,
    SessionClosedError,
    SessionStore,
    TransportError,
)

SEND_QUEUE_SIZE = 64
DETECTION_ATTEMPTS = 3

_logger = logging.getLogger(__name__)


class QueueNotOpenedError(TransportError):
    """The outgoing queue of the session has not been opened."""

    def __init__(self, message: str = "queue has not been opened") -> None:
        super().__init__(message)


class SessionState:
    """Everything the server keeps about one client session."""

    def __init__(self) -> None:
        self.last_active_at = time.monotonic()
        self.pending_responses: Dict[str, asyncio.Future] = {}
        self.cancel_handles: Dict[str, Callable[[], Any]] = {}
        self.client_info: Any = None
        self.client_capabilities: Any = None
        self.subscribed_resources: Set[str] = set()
        self.received_init_request = False
        self.ready = False
        self.closed = False
        self._request_id = 0
        self._send_queue: Optional[asyncio.Queue] = None
        self._closed_event = asyncio.Event()

    def set_client_info(self, client_info: Any, client_capabilities: Any) -> None:
        """Remember what the client announced when it initialized."""
        self.client_info = client_info
        self.client_capabilities = client_capabilities

    def next_request_id(self) -> int:
        """Return the id for the next request sent to the client."""
        self._request_id += 1
        return self._request_id

    def touch(self) -> None:
        """Mark the session as active now."""
        self.last_active_at = time.monotonic()

    def open_send_queue(self) -> None:
        """Create the outgoing message queue if it does not exist yet."""
        if self._send_queue is None:
            self._send_queue = asyncio.Queue(SEND_QUEUE_SIZE)

    async def enqueue(self, message: bytes) -> None:
        """Queue a message, waiting while the queue is full."""
        if self.closed:
            raise SessionClosedError("session already closed")
        queue = self._send_queue
        if queue is None:
            raise QueueNotOpenedError()
        if not queue.full():
            queue.put_nowait(message)
            return
        putter = asyncio.ensure_future(queue.put(message))
        closer = asyncio.ensure_future(self._closed_event.wait())
        try:
            await asyncio.wait({putter, closer}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            closer.cancel()
            if not putter.done():
                putter.cancel()
        if putter.done() and not putter.cancelled():
            putter.result()
            return
        raise SessionClosedError("session already closed")

    async def dequeue(self) -> bytes:
        """Wait for the next message; raise SendEOFError once closed and drained."""
        queue = self._send_queue
        if queue is None:
            raise QueueNotOpenedError()
        while True:
            if not queue.empty():
                return queue.get_nowait()
            if self.closed:
                raise SendEOFError()
            getter = asyncio.ensure_future(queue.get())
            closer = asyncio.ensure_future(self._closed_event.wait())
            try:
                await asyncio.wait({getter, closer}, return_when=asyncio.FIRST_COMPLETED)
            finally:
                closer.cancel()
                if not getter.done():
                    getter.cancel()
            if getter.done() and not getter.cancelled():
                return getter.result()

    def close(self) -> None:
        """Close the session; pending readers see the end of the queue."""
        self.closed = True
        self._closed_event.set()


Detection = Callable[[str], Awaitable[Any]]


class SessionManager(SessionStore):
    """Keeps active and closed sessions and checks that clients are alive."""

    def __init__(
        self,
        detection: Detection,
        gen_session_id: Optional[Callable[[], str]] = None,
    ) -> None:
        self._detection = detection
        self._gen_session_id = gen_session_id or (lambda: str(uuid.uuid4()))
        self._active: Dict[str, SessionState] = {}
        self._closed: Set[str] = set()
        self._stop = asyncio.Event()
        self.max_idle_time = 0.0
        self.logger = _logger

    def create_session(self) -> str:
        session_id = self._gen_session_id()
        self._active[session_id] = SessionState()
        return session_id

    def is_active(self, session_id: str) -> bool:
        return session_id in self._active

    def is_closed(self, session_id: str) -> bool:
        return session_id in self._closed

    def get_session(self, session_id: str) -> Optional[SessionState]:
        """Return the active session with this id, or None."""
        if not session_id:
            return None
        return self._active.get(session_id)

    def _require(self, session_id: str) -> SessionState:
        state = self.get_session(session_id)
        if state is None:
            raise LackSessionError()
        return state

    def open_message_queue_for_send(self, session_id: str) -> None:
        self._require(session_id).open_send_queue()

    async def enqueue_message_for_send(self, session_id: str, message: bytes) -> None:
        await self._require(session_id).enqueue(message)

    async def dequeue_message_for_send(self, session_id: str) -> bytes:
        return await self._require(session_id).dequeue()

    def update_last_active(self, session_id: str) -> None:
        state = self._active.get(session_id)
        if state is not None:
            state.touch()

    def close_session(self, session_id: str) -> None:
        state = self._active.pop(session_id, None)
        if state is None:
            return
        state.close()
        self._closed.add(session_id)

    def close_all_sessions(self) -> None:
        for session_id in list(self._active):
            self.close_session(session_id)

    async def check_sessions(self) -> None:
        """Close sessions that idled too long or fail the liveness check."""
        now = time.monotonic()
        for session_id, state in list(self._active.items()):
            if self.max_idle_time and now - state.last_active_at > self.max_idle_time:
                self.logger.info("session expire, session id: %s", session_id)
                self.close_session(session_id)
                continue

            failure: Optional[BaseException] = None
            for _ in range(DETECTION_ATTEMPTS):
                try:
                    await self._detection(session_id)
                except Exception as exc:
                    failure = exc
                else:
                    failure = None
                    break
            if failure is not None:
                self.logger.info(
                    "session detection fail, session id: %s, fail reason: %r",
                    session_id,
                    failure,
                )
                self.close_session(session_id)

    async def run_heartbeat(self, interval: float = 60.0) -> None:
        """Check sessions every ``interval`` seconds until stopped."""
        while True:
            try:
                await asyncio.wait_for(self._stop.wait(), interval)
                return
            except asyncio.TimeoutError:
                await self.check_sessions()

    def stop_heartbeat(self) -> None:
        self._stop.set()

    def sessions(self) -> Iterator[Tuple[str, SessionState]]:
        """Iterate over a snapshot of the active sessions."""
        yield from list(self._active.items())

    def is_empty(self) -> bool:
        return not self._active