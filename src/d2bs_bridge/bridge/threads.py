from __future__ import annotations

import logging
from typing import Optional

from ..core.logging_utils import log_event
from .errors import ThreadResolutionError
from .platform import ChatPlatform, ThreadHandle

DEFAULT_AUTO_ARCHIVE_MINUTES = 1440
ALLOWED_AUTO_ARCHIVE_MINUTES = (60, 1440, 4320, 10080)
THREAD_CREATE_REASON = "d2bs bridge: new message stream"


class ThreadResolver:
    """Finds or creates the thread named for a queued message.

    Discord owns thread identity; the cache only saves a lookup and is
    dropped whenever a send into the cached thread fails or the thread is
    swept.
    """

    def __init__(
        self,
        platform: ChatPlatform,
        *,
        logger: logging.Logger,
        auto_archive_minutes: int = DEFAULT_AUTO_ARCHIVE_MINUTES,
        reason: str = THREAD_CREATE_REASON,
    ) -> None:
        self._platform = platform
        self._logger = logger
        self._auto_archive_minutes = auto_archive_minutes
        self._reason = reason
        self._cache: dict[tuple[str, str], ThreadHandle] = {}

    def cached(self, thread_name: str, channel_id: str) -> Optional[ThreadHandle]:
        return self._cache.get((channel_id, thread_name))

    def forget(self, thread_name: str, channel_id: str) -> None:
        self._cache.pop((channel_id, thread_name), None)

    def forget_thread_id(self, thread_id: str) -> None:
        for key, handle in list(self._cache.items()):
            if handle.thread_id == thread_id:
                del self._cache[key]

    async def resolve_or_create(
        self, thread_name: str, channel_id: str
    ) -> ThreadHandle:
        key = (channel_id, thread_name)
        cached = self._cache.get(key)
        if cached is not None:
            return cached
        try:
            active = await self._platform.list_active_threads(channel_id)
        except Exception as exc:
            raise ThreadResolutionError(
                f"failed to list threads in channel {channel_id}: {exc}",
                thread_name=thread_name,
            ) from exc
        for handle in active:
            if handle.name == thread_name:
                self._cache[key] = handle
                return handle
        try:
            handle = await self._platform.create_thread(
                channel_id,
                thread_name,
                auto_archive_minutes=self._auto_archive_minutes,
                reason=self._reason,
            )
        except Exception as exc:
            raise ThreadResolutionError(
                f"failed to create thread {thread_name!r} in channel {channel_id}: {exc}",
                thread_name=thread_name,
            ) from exc
        log_event(
            self._logger,
            logging.INFO,
            "bridge.thread.created",
            thread_id=handle.thread_id,
            thread_name=thread_name,
            channel_id=channel_id,
        )
        self._cache[key] = handle
        return handle


__all__ = [
    "ALLOWED_AUTO_ARCHIVE_MINUTES",
    "DEFAULT_AUTO_ARCHIVE_MINUTES",
    "THREAD_CREATE_REASON",
    "ThreadResolver",
]
