import asyncio
import itertools
import time

import pytest

from mcplink.session import (
    SEND_QUEUE_SIZE,
    QueueNotOpenedError,
    SessionManager,
    SessionState,
)
from mcplink.transport.base import LackSessionError, SendEOFError, SessionClosedError


async def _alive(session_id):
    return None


def _counting_ids():
    counter = itertools.count(1)
    return lambda: f"session-{next(counter)}"


def test_create_session_uses_generator():
    manager = SessionManager(_alive, lambda: "fixed-id")
    session_id = manager.create_session()
    assert session_id == "fixed-id"
    assert manager.is_active("fixed-id")
    assert not manager.is_closed("fixed-id")
    assert manager.get_session("fixed-id") is not None


def test_default_generator_gives_distinct_ids():
    manager = SessionManager(_alive)
    first = manager.create_session()
    second = manager.create_session()
    assert first != second
    assert manager.is_active(first) and manager.is_active(second)


def test_get_session_empty_or_unknown_is_none():
    manager = SessionManager(_alive, _counting_ids())
    manager.create_session()
    assert manager.get_session("") is None
    assert manager.get_session("missing") is None


@pytest.mark.asyncio
async def test_queue_round_trip_keeps_order():
    manager = SessionManager(_alive, _counting_ids())
    sid = manager.create_session()
    manager.open_message_queue_for_send(sid)
    messages = [b"one", b"two", b"three"]
    for msg in messages:
        await manager.enqueue_message_for_send(sid, msg)
    received = [await manager.dequeue_message_for_send(sid) for _ in messages]
    assert received == messages


@pytest.mark.asyncio
async def test_queue_must_be_opened_first():
    state = SessionState()
    with pytest.raises(QueueNotOpenedError):
        await state.enqueue(b"x")
    with pytest.raises(QueueNotOpenedError):
        await state.dequeue()


@pytest.mark.asyncio
async def test_unknown_session_operations_raise():
    manager = SessionManager(_alive, _counting_ids())
    with pytest.raises(LackSessionError):
        manager.open_message_queue_for_send("missing")
    with pytest.raises(LackSessionError):
        await manager.enqueue_message_for_send("missing", b"x")
    with pytest.raises(LackSessionError):
        await manager.dequeue_message_for_send("missing")


@pytest.mark.asyncio
async def test_close_drains_then_reports_eof():
    manager = SessionManager(_alive, _counting_ids())
    sid = manager.create_session()
    manager.open_message_queue_for_send(sid)
    state = manager.get_session(sid)
    await manager.enqueue_message_for_send(sid, b"last")
    manager.close_session(sid)
    assert manager.is_closed(sid)
    assert not manager.is_active(sid)
    assert await state.dequeue() == b"last"
    with pytest.raises(SendEOFError):
        await state.dequeue()


@pytest.mark.asyncio
async def test_blocked_dequeue_wakes_on_close():
    state = SessionState()
    state.open_send_queue()
    task = asyncio.create_task(state.dequeue())
    await asyncio.sleep(0.01)
    assert not task.done()
    state.close()
    with pytest.raises(SendEOFError):
        await asyncio.wait_for(task, 1)


@pytest.mark.asyncio
async def test_enqueue_after_close_raises():
    state = SessionState()
    state.open_send_queue()
    state.close()
    with pytest.raises(SessionClosedError):
        await state.enqueue(b"late")


@pytest.mark.asyncio
async def test_full_queue_enqueue_fails_when_closed():
    state = SessionState()
    state.open_send_queue()
    for index in range(SEND_QUEUE_SIZE):
        await state.enqueue(str(index).encode())
    task = asyncio.create_task(state.enqueue(b"overflow"))
    await asyncio.sleep(0.01)
    assert not task.done()
    state.close()
    with pytest.raises(SessionClosedError):
        await asyncio.wait_for(task, 1)


@pytest.mark.asyncio
async def test_full_queue_enqueue_resumes_after_dequeue():
    state = SessionState()
    state.open_send_queue()
    for index in range(SEND_QUEUE_SIZE):
        await state.enqueue(str(index).encode())
    task = asyncio.create_task(state.enqueue(b"overflow"))
    await asyncio.sleep(0.01)
    assert await state.dequeue() == b"0"
    await asyncio.wait_for(task, 1)
    drained = [await state.dequeue() for _ in range(SEND_QUEUE_SIZE)]
    assert drained[-1] == b"overflow"


def test_request_ids_increase_from_one():
    state = SessionState()
    ids = [state.next_request_id() for _ in range(3)]
    assert ids[0] == 1
    assert ids == sorted(set(ids))
    assert len(set(ids)) == 3


def test_touch_and_update_last_active():
    manager = SessionManager(_alive, _counting_ids())
    sid = manager.create_session()
    state = manager.get_session(sid)
    state.last_active_at = time.monotonic() - 100
    manager.update_last_active(sid)
    assert time.monotonic() - state.last_active_at < 100


def test_set_client_info_stores_values():
    state = SessionState()
    info = {"name": "client"}
    caps = {"sampling": {}}
    state.set_client_info(info, caps)
    assert state.client_info is info
    assert state.client_capabilities is caps


def test_close_all_sessions_and_is_empty():
    manager = SessionManager(_alive, _counting_ids())
    assert manager.is_empty()
    ids = [manager.create_session() for _ in range(3)]
    assert not manager.is_empty()
    manager.close_all_sessions()
    assert manager.is_empty()
    assert all(manager.is_closed(sid) for sid in ids)


def test_sessions_is_snapshot():
    manager = SessionManager(_alive, _counting_ids())
    ids = {manager.create_session() for _ in range(2)}
    seen = set()
    for sid, state in manager.sessions():
        seen.add(sid)
        manager.close_session(sid)
        assert state.closed
    assert seen == ids
    assert manager.is_empty()


@pytest.mark.asyncio
async def test_check_sessions_closes_idle_session():
    manager = SessionManager(_alive, _counting_ids())
    manager.max_idle_time = 10
    idle = manager.create_session()
    fresh = manager.create_session()
    manager.get_session(idle).last_active_at = time.monotonic() - 100
    await manager.check_sessions()
    assert manager.is_closed(idle)
    assert manager.is_active(fresh)


@pytest.mark.asyncio
async def test_check_sessions_closes_after_failed_detection():
    calls = []

    async def failing(session_id):
        calls.append(session_id)
        raise RuntimeError("no pong")

    manager = SessionManager(failing, _counting_ids())
    sid = manager.create_session()
    await manager.check_sessions()
    assert calls == [sid, sid, sid]
    assert manager.is_closed(sid)


@pytest.mark.asyncio
async def test_check_sessions_keeps_responsive_session():
    calls = []

    async def alive(session_id):
        calls.append(session_id)

    manager = SessionManager(alive, _counting_ids())
    sid = manager.create_session()
    await manager.check_sessions()
    assert calls == [sid]
    assert manager.is_active(sid)


@pytest.mark.asyncio
async def test_heartbeat_runs_until_stopped():
    calls = []

    async def alive(session_id):
        calls.append(session_id)

    manager = SessionManager(alive, _counting_ids())
    sid = manager.create_session()
    task = asyncio.create_task(manager.run_heartbeat(0.01))
    await asyncio.sleep(0.1)
    manager.stop_heartbeat()
    await asyncio.wait_for(task, 1)
    assert task.done()
    assert calls and set(calls) == {sid}