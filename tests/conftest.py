"""Test harness configuration.

This repo uses a `src/` layout; make sure tests import the in-repo code even
when an older installed `d2bs_bridge` is on the path.
"""

from __future__ import annotations

import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

import pytest

DEFAULT_NON_INTEGRATION_TIMEOUT_SECONDS = 60


def pytest_configure() -> None:
    repo_root = Path(__file__).resolve().parents[1]
    src_path = str(repo_root / "src")
    if sys.path[:1] != [src_path] and src_path not in sys.path:
        sys.path.insert(0, src_path)


def pytest_collection_modifyitems(
    session: pytest.Session, config: pytest.Config, items: list[pytest.Item]
) -> None:
    _ = session, config
    for item in items:
        if item.get_closest_marker("integration") is not None:
            continue
        item.add_marker(pytest.mark.timeout(DEFAULT_NON_INTEGRATION_TIMEOUT_SECONDS))


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


class FakeChatPlatform:
    """In-memory stand-in for Discord threads under one or more channels."""

    def __init__(self) -> None:
        from d2bs_bridge.bridge.platform import ThreadHandle

        self._handle_cls = ThreadHandle
        self.active: dict[str, list[ThreadHandle]] = {}
        self.archived: dict[str, list[ThreadHandle]] = {}
        self.sent: list[tuple[str, str]] = []
        self.created: list[tuple[str, str, int, str]] = []
        self.deleted: list[str] = []
        self.list_calls = 0
        self.fail_create = False
        self.fail_send = False
        self.fail_delete: set[str] = set()
        self._next_id = 1000

    def add_active(self, channel_id: str, name: str, thread_id: Optional[str] = None):
        handle = self._handle_cls(
            thread_id=thread_id or self._allocate_id(), name=name, parent_id=channel_id
        )
        self.active.setdefault(channel_id, []).append(handle)
        return handle

    def add_archived(
        self,
        channel_id: str,
        name: str,
        *,
        created_at: Optional[datetime],
        archived_at: Optional[datetime] = None,
    ):
        handle = self._handle_cls(
            thread_id=self._allocate_id(),
            name=name,
            parent_id=channel_id,
            created_at=created_at,
            archived_at=archived_at,
            archived=True,
        )
        self.archived.setdefault(channel_id, []).append(handle)
        return handle

    def _allocate_id(self) -> str:
        self._next_id += 1
        return str(self._next_id)

    async def list_active_threads(self, channel_id: str):
        self.list_calls += 1
        return list(self.active.get(channel_id, []))

    async def create_thread(
        self, channel_id: str, name: str, *, auto_archive_minutes: int, reason: str
    ):
        if self.fail_create:
            raise RuntimeError("create refused")
        self.created.append((channel_id, name, auto_archive_minutes, reason))
        handle = self._handle_cls(
            thread_id=self._allocate_id(),
            name=name,
            parent_id=channel_id,
            created_at=datetime.now(timezone.utc),
        )
        self.active.setdefault(channel_id, []).append(handle)
        return handle

    async def send(self, thread_id: str, text: str) -> str:
        if self.fail_send:
            raise RuntimeError("send refused")
        self.sent.append((thread_id, text))
        return f"msg-{len(self.sent)}"

    async def list_archived_threads(self, channel_id: str):
        return list(self.archived.get(channel_id, []))

    async def delete_thread(self, thread_id: str) -> None:
        if thread_id in self.fail_delete:
            raise RuntimeError("delete refused")
        self.deleted.append(thread_id)


class FakeWriter:
    """Minimal ``asyncio.StreamWriter`` double that records writes."""

    def __init__(self, peer: tuple[str, int] = ("127.0.0.1", 40000)) -> None:
        self.peer = peer
        self.writes: list[bytes] = []
        self.closed = False
        self.fail_with: Optional[BaseException] = None

    def get_extra_info(self, name: str):
        return self.peer if name == "peername" else None

    def write(self, data: bytes) -> None:
        if self.fail_with is not None:
            raise self.fail_with
        self.writes.append(data)

    async def drain(self) -> None:
        return None

    def is_closing(self) -> bool:
        return self.closed

    def close(self) -> None:
        self.closed = True

    async def wait_closed(self) -> None:
        return None


@pytest.fixture
def fake_platform() -> FakeChatPlatform:
    return FakeChatPlatform()


@pytest.fixture
def make_writer():
    return FakeWriter
