from __future__ import annotations

import logging

import pytest

from d2bs_bridge.bridge.errors import ThreadResolutionError
from d2bs_bridge.bridge.threads import THREAD_CREATE_REASON, ThreadResolver


def _resolver(platform) -> ThreadResolver:
    return ThreadResolver(
        platform, logger=logging.getLogger("test"), auto_archive_minutes=60
    )


@pytest.mark.anyio
async def test_existing_active_thread_is_reused(fake_platform) -> None:
    existing = fake_platform.add_active("chan", "d2bs-2026-10-18-abc", thread_id="42")
    fake_platform.add_active("other", "d2bs-2026-10-18-abc", thread_id="77")

    handle = await _resolver(fake_platform).resolve_or_create("d2bs-2026-10-18-abc", "chan")

    assert handle == existing
    assert fake_platform.created == []


@pytest.mark.anyio
async def test_missing_thread_is_created_once(fake_platform) -> None:
    resolver = _resolver(fake_platform)

    first = await resolver.resolve_or_create("d2bs-abc", "chan")
    second = await resolver.resolve_or_create("d2bs-abc", "chan")

    assert first.thread_id == second.thread_id
    assert fake_platform.created == [("chan", "d2bs-abc", 60, THREAD_CREATE_REASON)]
    assert fake_platform.list_calls == 1


@pytest.mark.anyio
async def test_same_name_in_two_channels_resolves_separately(fake_platform) -> None:
    resolver = _resolver(fake_platform)

    first = await resolver.resolve_or_create("d2bs-abc", "chan-a")
    second = await resolver.resolve_or_create("d2bs-abc", "chan-b")

    assert first.thread_id != second.thread_id
    assert first.parent_id == "chan-a"
    assert second.parent_id == "chan-b"


@pytest.mark.anyio
async def test_create_failure_raises_resolution_error(fake_platform) -> None:
    fake_platform.fail_create = True

    with pytest.raises(ThreadResolutionError) as excinfo:
        await _resolver(fake_platform).resolve_or_create("d2bs-abc", "chan")

    assert excinfo.value.thread_name == "d2bs-abc"


@pytest.mark.anyio
async def test_forget_forces_a_fresh_lookup(fake_platform) -> None:
    resolver = _resolver(fake_platform)
    handle = await resolver.resolve_or_create("d2bs-abc", "chan")
    assert resolver.cached("d2bs-abc", "chan") == handle

    resolver.forget("d2bs-abc", "chan")
    assert resolver.cached("d2bs-abc", "chan") is None
    again = await resolver.resolve_or_create("d2bs-abc", "chan")

    assert again.thread_id == handle.thread_id
    assert fake_platform.list_calls == 2
    assert len(fake_platform.created) == 1


@pytest.mark.anyio
async def test_forget_thread_id_drops_matching_entries(fake_platform) -> None:
    resolver = _resolver(fake_platform)
    handle = await resolver.resolve_or_create("d2bs-abc", "chan")
    await resolver.resolve_or_create("d2bs-def", "chan")

    resolver.forget_thread_id(handle.thread_id)

    assert resolver.cached("d2bs-abc", "chan") is None
    assert resolver.cached("d2bs-def", "chan") is not None
