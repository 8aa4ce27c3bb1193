"""Newline-delimited JSON-RPC over a child process's or our own stdio."""

from __future__ import annotations

import asyncio
import logging
import os
import sys
from typing import Any, Mapping, Optional, Sequence, Set

from .base import ClientTransport, ServerTransport, TransportError

MESSAGE_DELIMITER = b"\n"
_LINE_LIMIT = 16 * 1024 * 1024

_logger = logging.getLogger(__name__)


class StdioClientTransport(ClientTransport):
    """Starts a command and talks to it over its stdin and stdout."""

    def __init__(
        self,
        command: str,
        args: Sequence[str] = (),
        *,
        env: Optional[Mapping[str, str]] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        super().__init__()
        self._command = command
        self._args = list(args)
        self._env = dict(os.environ)
        if env:
            self._env.update(env)
        self._logger = logger or _logger
        self._process: Optional[asyncio.subprocess.Process] = None
        self._receive_task: Optional[asyncio.Task] = None
        self._closing = False

    async def start(self) -> None:
        try:
            self._process = await asyncio.create_subprocess_exec(
                self._command,
                *self._args,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                env=self._env,
                limit=_LINE_LIMIT,
            )
        except OSError as exc:
            raise TransportError(f"failed to start command: {exc}") from exc
        self._closing = False
        self._receive_task = asyncio.create_task(self._receive_loop())

    async def send(self, msg: bytes) -> None:
        if self._process is None or self._process.stdin is None:
            raise TransportError("transport not started")
        try:
            self._process.stdin.write(bytes(msg) + MESSAGE_DELIMITER)
            await self._process.stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as exc:
            raise TransportError(f"failed to write: {exc}") from exc

    def set_receiver(self, receiver) -> None:
        """Set the coroutine function that handles each incoming line."""
        super().set_receiver(receiver)

    async def close(self) -> None:
        process = self._process
        if process is None:
            return
        self._closing = True
        if process.stdin is not None:
            process.stdin.close()
            try:
                await process.stdin.wait_closed()
            except (BrokenPipeError, ConnectionResetError):
                pass
        returncode = await process.wait()
        if self._receive_task is not None:
            await self._receive_task
        self._process = None
        self._receive_task = None
        if returncode != 0:
            raise TransportError(f"command exited with status {returncode}")

    async def _receive_loop(self) -> None:
        assert self._process is not None and self._process.stdout is not None
        stdout = self._process.stdout
        while True:
            try:
                line = await stdout.readline()
            except ValueError as exc:
                self._logger.error("client receive unexpected error reading input: %s", exc)
                return
            if not line.endswith(MESSAGE_DELIMITER):
                return
            line = line.rstrip(b"\n")
            if not line.strip(b" \t"):
                self._logger.debug("skipping empty message")
                continue
            if self._closing:
                return
            if self.receiver is None:
                self._logger.error("no receiver set, dropping message")
                continue
            try:
                await self.receiver(line)
            except Exception as exc:
                self._logger.error("receiver failed: %s", exc)


class StdioServerTransport(ServerTransport):
    """Serves one session over a reader and writer, stdin and stdout by default."""

    def __init__(
        self,
        *,
        reader: Optional[asyncio.StreamReader] = None,
        writer: Any = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        super().__init__()
        self._reader = reader
        self._writer = writer if writer is not None else sys.stdout.buffer
        self._logger = logger or _logger
        self._session_id = ""
        self._receive_task: Optional[asyncio.Task] = None
        self._forwarders: Set[asyncio.Task] = set()

    async def run(self) -> None:
        if self.session_manager is None:
            raise TransportError("session manager not set")
        if self.receiver is None:
            raise TransportError("receiver not set")
        if self._reader is None:
            self._reader = await self._open_stdin()
        self._session_id = self.session_manager.create_session()
        self._receive_task = asyncio.create_task(self._receive_loop())
        try:
            await asyncio.wait({self._receive_task})
        except asyncio.CancelledError:
            self._receive_task.cancel()
            raise
        if self._forwarders:
            await asyncio.gather(*list(self._forwarders), return_exceptions=True)

    async def send(self, session_id: str, msg: bytes) -> None:
        try:
            self._writer.write(bytes(msg) + MESSAGE_DELIMITER)
            drain = getattr(self._writer, "drain", None)
            if drain is not None:
                await drain()
            else:
                flush = getattr(self._writer, "flush", None)
                if flush is not None:
                    flush()
        except (OSError, ValueError) as exc:
            raise TransportError(f"failed to write: {exc}") from exc

    def set_receiver(self, receiver) -> None:
        """Set the coroutine function that handles each incoming line."""
        super().set_receiver(receiver)

    def set_session_manager(self, manager) -> None:
        """Set the store that creates the single stdio session."""
        super().set_session_manager(manager)

    async def shutdown(self, server_done: asyncio.Event) -> None:
        task = self._receive_task
        if task is None:
            return
        task.cancel()
        waiter = asyncio.ensure_future(server_done.wait())
        try:
            await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            waiter.cancel()

    @staticmethod
    async def _open_stdin() -> asyncio.StreamReader:
        loop = asyncio.get_running_loop()
        reader = asyncio.StreamReader(limit=_LINE_LIMIT)
        await loop.connect_read_pipe(lambda: asyncio.StreamReaderProtocol(reader), sys.stdin)
        return reader

    async def _receive_loop(self) -> None:
        assert self._reader is not None
        while True:
            try:
                line = await self._reader.readline()
            except ValueError as exc:
                self._logger.error("server receive unexpected error reading input: %s", exc)
                continue
            if not line.endswith(MESSAGE_DELIMITER):
                return
            await self._dispatch(line.rstrip(b"\n"))

    async def _dispatch(self, line: bytes) -> None:
        assert self.receiver is not None
        try:
            outputs = await self.receiver(self._session_id, line)
        except Exception as exc:
            self._logger.error("receiver failed: %s", exc)
            return
        if outputs is None:
            return
        task = asyncio.create_task(self._forward(outputs))
        self._forwarders.add(task)
        task.add_done_callback(self._forwarders.discard)

    async def _forward(self, outputs) -> None:
        try:
            async for msg in outputs:
                try:
                    await self.send(self._session_id, msg)
                except TransportError as exc:
                    self._logger.error("failed to send message: %s", exc)
        except Exception as exc:
            self._logger.error("reply stream failed: %s", exc)