from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Optional

from ..core.logging_utils import log_event
from ..core.time_utils import now_utc
from .platform import ChatPlatform, ThreadHandle
from .threads import ThreadResolver

DEFAULT_RETENTION = timedelta(days=7)
DEFAULT_SWEEP_INTERVAL_SECONDS = 3600.0


def thread_age_reference(thread: ThreadHandle) -> Optional[datetime]:
    return thread.created_at or thread.archived_at


class ArchivalSweeper:
    """Deletes archived bridge threads once they pass the retention window."""

    def __init__(
        self,
        platform: ChatPlatform,
        *,
        channel_id: str,
        thread_prefix: str,
        logger: logging.Logger,
        retention: timedelta = DEFAULT_RETENTION,
        interval_seconds: float = DEFAULT_SWEEP_INTERVAL_SECONDS,
        resolver: Optional[ThreadResolver] = None,
        now_fn: Callable[[], datetime] = now_utc,
        sleep_fn: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._platform = platform
        self._channel_id = channel_id
        self._name_prefix = f"{thread_prefix}-"
        self._logger = logger
        self._retention = retention
        self._interval = max(interval_seconds, 1.0)
        self._resolver = resolver
        self._now = now_fn
        self._sleep = sleep_fn

    def is_expired(self, thread: ThreadHandle, *, now: datetime) -> bool:
        if not thread.name.startswith(self._name_prefix):
            return False
        reference = thread_age_reference(thread)
        if reference is None:
            return False
        return now - reference > self._retention

    async def sweep(self, channel_id: Optional[str] = None) -> int:
        target = channel_id or self._channel_id
        archived = await self._platform.list_archived_threads(target)
        now = self._now()
        deleted = 0
        for thread in archived:
            if not self.is_expired(thread, now=now):
                continue
            try:
                await self._platform.delete_thread(thread.thread_id)
            except Exception as exc:
                log_event(
                    self._logger,
                    logging.WARNING,
                    "bridge.sweep.delete_failed",
                    thread_id=thread.thread_id,
                    thread_name=thread.name,
                    exc=exc,
                )
                continue
            if self._resolver is not None:
                self._resolver.forget_thread_id(thread.thread_id)
            deleted += 1
            log_event(
                self._logger,
                logging.INFO,
                "bridge.sweep.thread_deleted",
                thread_id=thread.thread_id,
                thread_name=thread.name,
            )
        log_event(
            self._logger,
            logging.INFO,
            "bridge.sweep.completed",
            channel_id=target,
            archived=len(archived),
            deleted=deleted,
        )
        return deleted

    async def run_loop(self) -> None:
        while True:
            try:
                await self.sweep()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                log_event(
                    self._logger,
                    logging.WARNING,
                    "bridge.sweep.failed",
                    channel_id=self._channel_id,
                    exc=exc,
                )
            await self._sleep(self._interval)


__all__ = [
    "ArchivalSweeper",
    "DEFAULT_RETENTION",
    "DEFAULT_SWEEP_INTERVAL_SECONDS",
    "thread_age_reference",
]
