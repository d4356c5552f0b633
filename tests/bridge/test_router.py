from __future__ import annotations

import asyncio
import logging

import pytest

from d2bs_bridge.bridge.router import Connection, SessionRouter, format_peer


def _router() -> SessionRouter:
    return SessionRouter(logger=logging.getLogger("test"))


def _register(router: SessionRouter, connection_id: str, writer) -> Connection:
    connection = Connection(
        connection_id=connection_id,
        remote_address=format_peer(writer),
        writer=writer,
    )
    router.register_connection(connection)
    return connection


@pytest.mark.anyio
async def test_bound_thread_reply_is_written_to_socket(make_writer) -> None:
    router = _router()
    writer = make_writer()
    connection = _register(router, "conn-1", writer)

    assert router.bind_thread_to_socket("thread-1", "conn-1") is True
    assert connection.awaiting_reply is True

    assert await router.route_reply("thread-1", "go left") is True
    assert await router.route_reply("thread-1", "now right") is True
    assert writer.writes == [b"go left", b"now right"]


@pytest.mark.anyio
async def test_reply_without_route_is_dropped(make_writer) -> None:
    router = _router()
    writer = make_writer()
    _register(router, "conn-1", writer)

    assert await router.route_reply("thread-unknown", "hello") is False
    assert writer.writes == []


@pytest.mark.anyio
async def test_disconnect_releases_routes(make_writer) -> None:
    router = _router()
    writer = make_writer()
    _register(router, "conn-1", writer)
    router.bind_thread_to_socket("thread-1", "conn-1")
    router.bind_thread_to_socket("thread-2", "conn-1")

    removed = router.on_disconnect("conn-1")

    assert removed is not None and removed.awaiting_reply is False
    assert router.bound_connection("thread-1") is None
    assert router.has_connection("conn-1") is False
    assert await router.route_reply("thread-1", "late reply") is False
    assert writer.writes == []


def test_binding_unknown_connection_is_refused() -> None:
    router = _router()

    assert router.bind_thread_to_socket("thread-1", "gone") is False
    assert router.bound_connection("thread-1") is None


@pytest.mark.anyio
async def test_rebinding_moves_thread_to_newest_connection(make_writer) -> None:
    router = _router()
    first_writer = make_writer(("10.0.0.1", 1))
    second_writer = make_writer(("10.0.0.2", 2))
    first = _register(router, "conn-1", first_writer)
    _register(router, "conn-2", second_writer)

    router.bind_thread_to_socket("thread-1", "conn-1")
    router.bind_thread_to_socket("thread-1", "conn-2")

    assert router.bound_connection("thread-1") == "conn-2"
    assert router.threads_for("conn-1") == frozenset()
    assert first.awaiting_reply is False
    await router.route_reply("thread-1", "hi")
    assert first_writer.writes == []
    assert second_writer.writes == [b"hi"]


@pytest.mark.anyio
async def test_write_failure_is_reported_not_raised(make_writer) -> None:
    router = _router()
    writer = make_writer()
    writer.fail_with = ConnectionResetError("peer reset")
    _register(router, "conn-1", writer)
    router.bind_thread_to_socket("thread-1", "conn-1")

    assert await router.route_reply("thread-1", "hello") is False
    assert router.has_connection("conn-1") is True


@pytest.mark.anyio
async def test_closing_socket_is_not_written(make_writer) -> None:
    router = _router()
    writer = make_writer()
    _register(router, "conn-1", writer)
    router.bind_thread_to_socket("thread-1", "conn-1")
    writer.closed = True

    assert await router.route_reply("thread-1", "hello") is False
    assert writer.writes == []


@pytest.mark.anyio
async def test_close_all_closes_every_writer(make_writer) -> None:
    router = _router()
    writers = [make_writer(("127.0.0.1", port)) for port in (1, 2)]
    for index, writer in enumerate(writers):
        _register(router, f"conn-{index}", writer)

    await router.close_all()

    assert router.connection_count == 0
    assert all(writer.closed for writer in writers)


def test_format_peer(make_writer) -> None:
    assert format_peer(make_writer(("192.168.1.5", 5555))) == "192.168.1.5:5555"
    assert format_peer(object()) == "unknown"


@pytest.mark.anyio
async def test_reply_to_a_peer_that_stopped_reading_times_out(make_writer) -> None:
    class _StalledWriter(make_writer):
        async def drain(self) -> None:
            await asyncio.Event().wait()

    router = SessionRouter(logger=logging.getLogger("test"), write_timeout_seconds=0.05)
    writer = _StalledWriter()
    _register(router, "conn-1", writer)
    router.bind_thread_to_socket("thread-1", "conn-1")

    assert await router.route_reply("thread-1", "hello") is False
    assert writer.writes == [b"hello"]
    assert router.bound_connection("thread-1") == "conn-1"
