"""Server-sent events transport: a GET stream down, POSTed messages up."""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, List, Optional, Sequence, Set, Tuple
from urllib.parse import urljoin, urlsplit, urlunsplit

import aiohttp
from aiohttp import web

from .base import ClientTransport, SendEOFError, ServerTransport, TransportError

ENDPOINT_WAIT = 10.0
RETRY_DELAY = 0.1

_logger = logging.getLogger(__name__)

Retry = Callable[[Callable[[], Awaitable[None]]], Awaitable[None]]
"""Runs an operation, repeating it on failure as it sees fit."""


def _clean(path: str) -> str:
    """Lexically clean a slash-separated path, resolving ``.`` and ``..``."""
    if not path:
        return "."
    rooted = path.startswith("/")
    parts: List[str] = []
    for part in path.split("/"):
        if part in ("", "."):
            continue
        if part == "..":
            if parts and parts[-1] != "..":
                parts.pop()
            elif not rooted:
                parts.append("..")
            continue
        parts.append(part)
    result = "/".join(parts)
    if rooted:
        result = "/" + result
    return result or "."


def _join(elems: Sequence[str]) -> str:
    joined = "/".join(elem for elem in elems if elem)
    return _clean(joined) if joined else ""


def join_path(url: str, *args: str) -> str:
    """Append path elements to the path of ``url`` and clean the result.

    Repeated slashes collapse and ``./`` and ``../`` elements are resolved;
    a trailing slash on the last element is kept.
    """
    parts = urlsplit(url)
    elems = [parts.path, *args]
    if not elems[0].startswith("/"):
        elems[0] = "/" + elems[0]
        path = _join(elems)[1:]
    else:
        path = _join(elems)
    if elems[-1].endswith("/") and not path.endswith("/"):
        path += "/"
    return urlunsplit(parts._replace(path=path))


def complete_message_path(url_prefix: str, message_path: str) -> str:
    """Return the full message endpoint below ``url_prefix``."""
    try:
        urlsplit(url_prefix)
    except ValueError as exc:
        raise TransportError(f"failed to parse URL prefix: {exc}") from exc
    return join_path(url_prefix, message_path)


async def _retry_forever(operation: Callable[[], Awaitable[None]]) -> None:
    while True:
        try:
            await operation()
            return
        except Exception:
            await asyncio.sleep(RETRY_DELAY)


class SSEClientTransport(ClientTransport):
    """Listens on an SSE stream and posts messages to the endpoint it announces."""

    def __init__(
        self,
        server_url: str,
        *,
        receive_timeout: float = 30.0,
        session: Optional[aiohttp.ClientSession] = None,
        logger: Optional[logging.Logger] = None,
        retry: Optional[Retry] = None,
    ) -> None:
        super().__init__()
        try:
            urlsplit(server_url)
        except ValueError as exc:
            raise TransportError(f"failed to parse server URL: {exc}") from exc
        self.server_url = server_url
        self.message_endpoint: Optional[str] = None
        self.receive_timeout = receive_timeout
        self._session = session
        self._owns_session = session is None
        self._logger = logger or _logger
        self._retry: Retry = retry or _retry_forever
        self._endpoint_ready = asyncio.Event()
        self._task: Optional[asyncio.Task] = None

    def set_receiver(self, receiver) -> None:
        """Set the coroutine function that handles messages from the server."""
        self.receiver = receiver

    async def start(self) -> None:
        if self._session is None:
            self._session = aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=None))
            self._owns_session = True
        self._task = asyncio.create_task(self._retry(self._connect_once))
        waiter = asyncio.ensure_future(self._endpoint_ready.wait())
        try:
            done, _ = await asyncio.wait(
                {waiter, self._task},
                timeout=ENDPOINT_WAIT,
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            waiter.cancel()
        if self._endpoint_ready.is_set():
            return

        task = self._task
        if task in done:
            failure = None if task.cancelled() else task.exception()
            await self.close()
            raise TransportError(f"error in SSE stream: {failure or 'stream ended'}")
        await self.close()
        raise TransportError("timeout waiting for endpoint")

    async def _connect_once(self) -> None:
        try:
            await self._start_sse()
        except Exception as exc:
            self._logger.error("startSSE: %r", exc)
            raise

    async def _start_sse(self) -> None:
        assert self._session is not None
        headers = {
            "Accept": "text/event-stream",
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
        }
        try:
            async with self._session.get(self.server_url, headers=headers) as resp:
                if resp.status != 200:
                    raise TransportError(
                        f"unexpected status code: {resp.status}, status: {resp.reason}"
                    )
                await self._read_sse(resp.content)
        except aiohttp.ClientError as exc:
            raise TransportError(f"SSE stream error: {exc}") from exc

    async def _read_sse(self, content: aiohttp.StreamReader) -> None:
        event = data = ""
        async for raw in content:
            if not raw.endswith(b"\n"):
                break
            line = raw.decode("utf-8", "replace").rstrip("\r\n")
            if not line:
                if event and data:
                    await self.handle_sse_event(event, data)
                    event = data = ""
                continue
            if line.startswith("event:"):
                event = line[len("event:"):].strip()
            elif line.startswith("data:"):
                data = line[len("data:"):].strip()
        if event and data:
            await self.handle_sse_event(event, data)
        raise TransportError("SSE stream error: EOF")

    async def handle_sse_event(self, event: str, data: str) -> None:
        """Act on one complete event: learn the endpoint or deliver a message."""
        if event == "endpoint":
            try:
                endpoint = urljoin(self.server_url, data)
            except ValueError as exc:
                self._logger.error("error parsing endpoint URL: %s", exc)
                return
            self._logger.debug("received endpoint: %s", endpoint)
            self.message_endpoint = endpoint
            self._endpoint_ready.set()
        elif event == "message":
            if self.receiver is None:
                self._logger.error("no receiver set, dropping message")
                return
            try:
                await asyncio.wait_for(self.receiver(data.encode()), self.receive_timeout)
            except Exception as exc:
                self._logger.error("error receive message: %r", exc)

    async def send(self, msg: bytes) -> None:
        if self.message_endpoint is None or self._session is None:
            raise TransportError("transport not started")
        self._logger.debug("sending message: %r to %s", msg, self.message_endpoint)
        try:
            async with self._session.post(
                self.message_endpoint,
                data=bytes(msg),
                headers={"Content-Type": "application/json"},
            ) as resp:
                if not 200 <= resp.status < 300:
                    raise TransportError(
                        f"unexpected status code: {resp.status}, status: {resp.reason}"
                    )
        except aiohttp.ClientError as exc:
            raise TransportError(f"failed to send message: {exc}") from exc

    async def close(self) -> None:
        task, self._task = self._task, None
        if task is not None:
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None


def _split_addr(addr: str) -> Tuple[Optional[str], int]:
    host, sep, port = addr.rpartition(":")
    if not sep:
        raise TransportError(f"invalid listen address: {addr}")
    try:
        port_number = int(port)
    except ValueError as exc:
        raise TransportError(f"invalid listen address: {addr}") from exc
    return host.strip("[]") or None, port_number


class SSEServerTransport(ServerTransport):
    """Serves an SSE stream per session and accepts messages by POST."""

    def __init__(
        self,
        addr: Optional[str],
        *,
        sse_path: str = "/sse",
        message_path: str = "/message",
        url_prefix: str = "",
        logger: Optional[logging.Logger] = None,
    ) -> None:
        super().__init__()
        self._addr = addr
        self._sse_path = sse_path
        self._message_path = message_path
        self._logger = logger or _logger
        self.message_endpoint_url = message_path
        if url_prefix:
            try:
                self.message_endpoint_url = complete_message_path(url_prefix, message_path)
            except TransportError as exc:
                raise TransportError(f"completeMessagePath failed: {exc}") from exc
        self._cancelled = asyncio.Event()
        self._done = asyncio.Event()
        self._idle = asyncio.Event()
        self._idle.set()
        self._in_flight = 0
        self._forwarders: Set[asyncio.Task] = set()
        self._runner: Optional[web.AppRunner] = None

    @classmethod
    def for_handler(
        cls, message_endpoint_url: str, *, logger: Optional[logging.Logger] = None
    ) -> "SSEServerTransport":
        """A transport without its own HTTP server.

        Route requests to :meth:`handle_sse` and :meth:`handle_message` from
        an application of your own; ``message_endpoint_url`` is announced to
        clients as the place to post messages.
        """
        transport = cls(None, logger=logger)
        transport.message_endpoint_url = message_endpoint_url
        return transport

    def set_receiver(self, receiver) -> None:
        """Set the coroutine function that handles messages from clients."""
        self.receiver = receiver

    def set_session_manager(self, manager) -> None:
        """Set the store that owns sessions and their outgoing queues."""
        self.session_manager = manager

    async def run(self) -> None:
        if self._addr is None:
            await self._done.wait()
            return
        host, port = _split_addr(self._addr)
        app = web.Application()
        app.router.add_route("*", self._sse_path, self.handle_sse)
        app.router.add_route("*", self._message_path, self.handle_message)
        runner = web.AppRunner(app)
        await runner.setup()
        site = web.TCPSite(runner, host, port)
        try:
            await site.start()
        except OSError as exc:
            await runner.cleanup()
            raise TransportError(f"failed to start HTTP server: {exc}") from exc
        self._runner = runner
        print(f"starting mcp server at http://{self._addr}{self._sse_path}", flush=True)
        await self._done.wait()

    async def send(self, session_id: str, msg: bytes) -> None:
        if self._cancelled.is_set():
            raise TransportError("transport closed")
        if self.session_manager is None:
            raise TransportError("session manager not set")
        self._in_flight += 1
        self._idle.clear()
        try:
            await self.session_manager.enqueue_message_for_send(session_id, bytes(msg))
        finally:
            self._in_flight -= 1
            if not self._in_flight:
                self._idle.set()

    async def handle_sse(self, request: web.Request) -> web.StreamResponse:
        """Open a session and stream its outgoing messages as events."""
        manager = self.session_manager
        if manager is None:
            return self._write_error(500, "Internal server error")
        response = web.StreamResponse(
            status=200,
            headers={
                "Content-Type": "text/event-stream",
                "Cache-Control": "no-cache",
                "Connection": "keep-alive",
            },
        )
        await response.prepare(request)

        session_id = manager.create_session()
        try:
            uri = f"{self.message_endpoint_url}?sessionID={session_id}"
            try:
                await response.write(f"event: endpoint\ndata: {uri}\n\n".encode())
            except (ConnectionError, RuntimeError):
                self._logger.error("send endpoint message fail")
                return response

            try:
                manager.open_message_queue_for_send(session_id)
            except TransportError as exc:
                self._logger.error(
                    "handleSSE sessionID=%s open message queue fail: %s", session_id, exc
                )
                return response

            while True:
                try:
                    msg = await manager.dequeue_message_for_send(session_id)
                except SendEOFError:
                    return response
                except TransportError as exc:
                    self._logger.debug(
                        "sse connect dequeue message err: %s, sessionID=%s", exc, session_id
                    )
                    return response
                self._logger.debug("sending message: %r", msg)
                try:
                    await response.write(b"event: message\ndata: " + msg + b"\n\n")
                except (ConnectionError, RuntimeError) as exc:
                    self._logger.error("failed to write message: %s", exc)
                    return response
        finally:
            manager.close_session(session_id)

    async def handle_message(self, request: web.Request) -> web.StreamResponse:
        """Accept one posted message; replies travel over the session's stream."""
        if request.method != "POST":
            return self._write_error(405, "Method not allowed")
        session_id = request.query.get("sessionID", "")
        if not session_id:
            return self._write_error(400, "Missing session ID")
        try:
            body = await request.read()
        except Exception as exc:
            return self._write_error(400, f"Invalid request: {exc}")
        if self.receiver is None:
            return self._write_error(500, "Internal server error")
        try:
            outputs = await self.receiver(session_id, body)
        except Exception as exc:
            return self._write_error(400, f"Failed to receive: {exc}")

        self._logger.debug("received message: %r", body)
        if outputs is not None:
            task = asyncio.create_task(self._forward(session_id, outputs))
            self._forwarders.add(task)
            task.add_done_callback(self._forwarders.discard)
        return web.Response(status=202)

    async def _forward(self, session_id: str, outputs) -> None:
        try:
            async for msg in outputs:
                try:
                    await self.send(session_id, msg)
                except TransportError as exc:
                    self._logger.error("failed to send message: %s", exc)
        except Exception as exc:
            self._logger.error("reply stream failed: %s", exc)

    def _write_error(self, code: int, message: str) -> web.Response:
        self._logger.error("sseServerTransport error: code: %d, message: %s", code, message)
        return web.Response(status=code, text=message, content_type="text/plain")

    async def shutdown(self, server_done: asyncio.Event) -> None:
        await server_done.wait()
        self._cancelled.set()
        await self._idle.wait()
        if self.session_manager is not None:
            self.session_manager.close_all_sessions()
        runner, self._runner = self._runner, None
        if runner is not None:
            await runner.cleanup()
        self._done.set()