from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Optional

import pytest

from d2bs_bridge.bridge.audit import ConnectionAuditLog
from d2bs_bridge.bridge.errors import QueueUnavailable
from d2bs_bridge.bridge.queue import SqliteQueueBackend
from d2bs_bridge.bridge.router import Connection
from d2bs_bridge.bridge.service import BridgeService, build_queue_backend
from d2bs_bridge.config import BridgeConfig


class _FakeRest:
    def __init__(self) -> None:
        self.closed = False

    async def close(self) -> None:
        self.closed = True


class _FakeGateway:
    def __init__(self, events: list[tuple[str, dict[str, Any]]]) -> None:
        self.events = events
        self.stopped = False

    async def run(self, on_dispatch) -> None:
        for event_type, payload in self.events:
            await on_dispatch(event_type, payload)

    async def stop(self) -> None:
        self.stopped = True


class _FlakyBackend:
    def __init__(self, failures: int) -> None:
        self.failures = failures
        self.initialize_calls = 0
        self.closed = False

    async def initialize(self) -> None:
        self.initialize_calls += 1
        if self.initialize_calls <= self.failures:
            raise QueueUnavailable("redis queue unavailable: connection refused")

    async def push(self, payload: str) -> None:
        return None

    async def pop(self) -> Optional[str]:
        return None

    async def length(self) -> int:
        return 0

    async def close(self) -> None:
        self.closed = True


def _config(tmp_path: Path, **raw: Any) -> BridgeConfig:
    values = {
        "client_token": "token",
        "client_id": "app",
        "channel_id": "chan",
        "queue_backend": "sqlite",
        "bind_host": "127.0.0.1",
        "port": 0,
        "log_dir": str(tmp_path / "logs"),
    }
    values.update(raw)
    return BridgeConfig.from_raw(root=tmp_path, raw=values, env={})


def _service(tmp_path: Path, platform, events=()) -> BridgeService:
    config = _config(tmp_path)
    return BridgeService(
        config,
        logger=logging.getLogger("test"),
        rest_client=_FakeRest(),
        gateway_client=_FakeGateway(list(events)),
        platform=platform,
        audit_log=ConnectionAuditLog(log_dir=tmp_path / "logs"),
    )


def _message(channel_id: str, content: str, **extra: Any) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "id": "m1",
        "channel_id": channel_id,
        "content": content,
        "author": {"id": "u1", "username": "player"},
    }
    payload.update(extra)
    return payload


def test_build_queue_backend_honours_config(tmp_path: Path) -> None:
    backend = build_queue_backend(_config(tmp_path))

    assert isinstance(backend, SqliteQueueBackend)
    assert backend.path == tmp_path.resolve() / ".d2bs-bridge" / "queue.sqlite3"


@pytest.mark.anyio
async def test_thread_reply_is_routed_to_bound_socket(
    tmp_path: Path, fake_platform, make_writer
) -> None:
    service = _service(tmp_path, fake_platform)
    writer = make_writer()
    service.router.register_connection(
        Connection(connection_id="conn-1", remote_address="127.0.0.1:1", writer=writer)
    )
    service.router.bind_thread_to_socket("thread-9", "conn-1")

    await service.on_dispatch("MESSAGE_CREATE", _message("thread-9", "go"))

    assert writer.writes == [b"go"]


@pytest.mark.anyio
@pytest.mark.parametrize(
    "payload",
    [
        _message("thread-9", "from bot", author={"id": "b", "bot": True}),
        _message("thread-9", "from hook", webhook_id="w1"),
        _message("thread-9", ""),
        _message("other-thread", "unbound"),
        _message("chan", "channel chatter"),
    ],
)
async def test_messages_that_must_not_reach_the_socket(
    tmp_path: Path, fake_platform, make_writer, payload: dict[str, Any]
) -> None:
    service = _service(tmp_path, fake_platform)
    writer = make_writer()
    service.router.register_connection(
        Connection(connection_id="conn-1", remote_address="127.0.0.1:1", writer=writer)
    )
    service.router.bind_thread_to_socket("thread-9", "conn-1")

    await service.on_dispatch("MESSAGE_CREATE", payload)

    assert writer.writes == []


@pytest.mark.anyio
async def test_other_dispatch_events_are_ignored(tmp_path: Path, fake_platform) -> None:
    service = _service(tmp_path, fake_platform)

    await service.on_dispatch("READY", {"user": {"id": "1", "username": "bridge"}})
    await service.on_dispatch("GUILD_CREATE", {"id": "g"})

    assert service.router.connection_count == 0


@pytest.mark.anyio
async def test_run_forever_starts_and_shuts_down_cleanly(
    tmp_path: Path, fake_platform
) -> None:
    gateway = _FakeGateway([("READY", {"user": {"username": "bridge"}})])
    service = BridgeService(
        _config(tmp_path),
        logger=logging.getLogger("test"),
        rest_client=_FakeRest(),
        gateway_client=gateway,
        platform=fake_platform,
        audit_log=ConnectionAuditLog(log_dir=tmp_path / "logs"),
    )

    await service.run_forever()

    assert gateway.stopped is True
    assert service.server.sockets_bound == []


@pytest.mark.anyio
async def test_run_sweep_once_reports_deleted_count(tmp_path: Path, fake_platform) -> None:
    fake_platform.add_archived(
        "chan",
        "d2bs-2020-01-01-old",
        created_at=datetime.now(timezone.utc) - timedelta(days=30),
    )
    service = _service(tmp_path, fake_platform)

    assert await service.run_sweep_once() == 1


@pytest.mark.anyio
async def test_run_forever_waits_for_an_unavailable_queue(
    tmp_path: Path, fake_platform
) -> None:
    backend = _FlakyBackend(failures=2)
    gateway = _FakeGateway([])
    sleeps: list[float] = []

    async def _fake_sleep(seconds: float) -> None:
        sleeps.append(seconds)

    service = BridgeService(
        _config(tmp_path),
        logger=logging.getLogger("test"),
        rest_client=_FakeRest(),
        gateway_client=gateway,
        platform=fake_platform,
        queue_backend=backend,
        audit_log=ConnectionAuditLog(log_dir=tmp_path / "logs"),
        sleep_fn=_fake_sleep,
    )

    await service.run_forever()

    assert backend.initialize_calls == 3
    assert sleeps == [1.0, 1.0]
    assert gateway.stopped is True
    assert backend.closed is True


@pytest.mark.anyio
async def test_run_forever_shuts_down_when_startup_is_interrupted(
    tmp_path: Path, fake_platform
) -> None:
    class _Interrupted(Exception):
        pass

    backend = _FlakyBackend(failures=100)
    gateway = _FakeGateway([])

    async def _interrupting_sleep(_seconds: float) -> None:
        raise _Interrupted()

    service = BridgeService(
        _config(tmp_path),
        logger=logging.getLogger("test"),
        rest_client=_FakeRest(),
        gateway_client=gateway,
        platform=fake_platform,
        queue_backend=backend,
        audit_log=ConnectionAuditLog(log_dir=tmp_path / "logs"),
        sleep_fn=_interrupting_sleep,
    )

    with pytest.raises(_Interrupted):
        await service.run_forever()

    assert backend.initialize_calls == 1
    assert gateway.stopped is True
    assert backend.closed is True
    assert service.server.sockets_bound == []
