import pytest

from mcplink.transport.base import (
    ClientTransport,
    LackSessionError,
    SendEOFError,
    ServerTransport,
    SessionClosedError,
    SessionStore,
    TransportError,
)


class RecordingClient(ClientTransport):
    def __init__(self):
        super().__init__()
        self.events = []

    async def start(self):
        self.events.append("start")

    async def send(self, msg):
        self.events.append(msg)

    async def close(self):
        self.events.append("close")


class RecordingServer(ServerTransport):
    async def run(self):
        return None

    async def send(self, session_id, msg):
        return None

    async def shutdown(self, server_done):
        await server_done.wait()


class PartialStore(SessionStore):
    def create_session(self):
        return "only-this"


@pytest.mark.parametrize("cls", [ClientTransport, ServerTransport, SessionStore, PartialStore])
def test_abstract_classes_cannot_be_instantiated(cls):
    with pytest.raises(TypeError):
        cls()


@pytest.mark.asyncio
async def test_client_context_manager_starts_and_closes():
    client = RecordingClient()
    entered = await ClientTransport.__aenter__(client)
    assert entered is client
    await client.send(b"hello server")
    suppressed = await ClientTransport.__aexit__(client, None, None, None)
    assert not suppressed
    assert client.events == ["start", b"hello server", "close"]


@pytest.mark.asyncio
async def test_client_context_manager_closes_on_error():
    client = RecordingClient()
    await ClientTransport.__aenter__(client)
    error = RuntimeError("boom")
    suppressed = await ClientTransport.__aexit__(client, RuntimeError, error, None)
    assert not suppressed
    assert client.events == ["start", "close"]


def test_client_set_receiver_stores_handler():
    client = RecordingClient()
    assert client.receiver is None

    async def receiver(msg):
        return None

    ClientTransport.set_receiver(client, receiver)
    assert client.receiver is receiver


def test_server_setters_store_values():
    server = RecordingServer()

    async def receiver(session_id, msg):
        return None

    store = object()
    ServerTransport.set_receiver(server, receiver)
    ServerTransport.set_session_manager(server, store)
    assert server.receiver is receiver
    assert server.session_manager is store


@pytest.mark.parametrize(
    "error_cls, text",
    [
        (LackSessionError, "lack session"),
        (SessionClosedError, "session closed"),
        (SendEOFError, "send eof"),
    ],
)
def test_errors_are_transport_errors_with_default_text(error_cls, text):
    error = error_cls()
    assert issubclass(error_cls, TransportError)
    assert str(error) == text


def test_error_keeps_custom_message():
    error = SessionClosedError("session already closed")
    assert str(error) == "session already closed"