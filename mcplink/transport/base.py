"""Transport abstractions shared by clients and servers."""

from __future__ import annotations

import abc
import asyncio
from typing import AsyncIterator, Awaitable, Callable, Optional

Message = bytes

ClientReceiver = Callable[[bytes], Awaitable[None]]
"""Called with every message a client transport receives from its peer."""

ServerReceiver = Callable[[str, bytes], Awaitable[Optional[AsyncIterator[bytes]]]]
"""Called with the session id and every message a server transport receives.

It returns ``None`` when there is nothing to answer, or an async iterator
yielding the messages to send back to that session.
"""


class TransportError(Exception):
    """Base class for transport and session failures."""


class LackSessionError(TransportError):
    """The session id does not name an active session."""

    def __init__(self, message: str = "lack session") -> None:
        super().__init__(message)


class SessionClosedError(TransportError):
    """The session has been closed."""

    def __init__(self, message: str = "session closed") -> None:
        super().__init__(message)


class SendEOFError(TransportError):
    """The send queue of a session is closed and drained."""

    def __init__(self, message: str = "send eof") -> None:
        super().__init__(message)


class ClientTransport(abc.ABC):
    """The client side of a connection carrying JSON-RPC messages."""

    def __init__(self) -> None:
        self.receiver: Optional[ClientReceiver] = None

    @abc.abstractmethod
    async def start(self) -> None:
        """Open the connection."""

    @abc.abstractmethod
    async def send(self, msg: bytes) -> None:
        """Transmit one message to the peer."""

    def set_receiver(self, receiver: ClientReceiver) -> None:
        """Set the handler for messages from the peer."""
        self.receiver = receiver

    @abc.abstractmethod
    async def close(self) -> None:
        """Terminate the connection."""

    async def __aenter__(self) -> "ClientTransport":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()


class ServerTransport(abc.ABC):
    """The server side of a connection carrying JSON-RPC messages."""

    def __init__(self) -> None:
        self.receiver: Optional[ServerReceiver] = None
        self.session_manager: Optional[SessionStore] = None

    @abc.abstractmethod
    async def run(self) -> None:
        """Serve until shut down; does not return before :meth:`shutdown`."""

    @abc.abstractmethod
    async def send(self, session_id: str, msg: bytes) -> None:
        """Transmit one message to the given session."""

    def set_receiver(self, receiver: ServerReceiver) -> None:
        """Set the handler for messages from peers."""
        self.receiver = receiver

    def set_session_manager(self, manager: "SessionStore") -> None:
        """Set the store that keeps sessions and their send queues."""
        self.session_manager = manager

    @abc.abstractmethod
    async def shutdown(self, server_done: asyncio.Event) -> None:
        """Stop receiving, wait for ``server_done``, then release everything.

        The caller bounds the time this may take, for example with
        :func:`asyncio.wait_for`.
        """


class SessionStore(abc.ABC):
    """What a server transport needs from the session manager."""

    @abc.abstractmethod
    def create_session(self) -> str:
        """Create a session and return its id."""

    @abc.abstractmethod
    def open_message_queue_for_send(self, session_id: str) -> None:
        """Open the outgoing queue of a session."""

    @abc.abstractmethod
    async def enqueue_message_for_send(self, session_id: str, message: bytes) -> None:
        """Queue a message for delivery to a session."""

    @abc.abstractmethod
    async def dequeue_message_for_send(self, session_id: str) -> bytes:
        """Wait for the next queued message; raise SendEOFError once closed."""

    @abc.abstractmethod
    def close_session(self, session_id: str) -> None:
        """Close one session."""

    @abc.abstractmethod
    def close_all_sessions(self) -> None:
        """Close every session."""