from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable

from ..core.logging_utils import log_event
from ..integrations.discord.chunking import chunk_message
from .errors import DeliverySendError, QueueUnavailable, ThreadResolutionError
from .messages import QueueItem
from .platform import ChatPlatform
from .queue import WorkQueue
from .router import SessionRouter
from .threads import ThreadResolver

DEQUEUE_TIMEOUT_SECONDS = 1.0
ERROR_BACKOFF_SECONDS = 1.0


class DeliveryWorker:
    """The single consumer of the work queue.

    pop -> resolve thread -> send -> bind route (bidirectional only). A
    failed item is logged and dropped; the loop itself never stops on error.
    """

    def __init__(
        self,
        queue: WorkQueue,
        *,
        platform: ChatPlatform,
        resolver: ThreadResolver,
        router: SessionRouter,
        default_channel_id: str,
        logger: logging.Logger,
        dequeue_timeout_seconds: float = DEQUEUE_TIMEOUT_SECONDS,
        error_backoff_seconds: float = ERROR_BACKOFF_SECONDS,
        max_message_length: int = 2000,
        sleep_fn: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._queue = queue
        self._platform = platform
        self._resolver = resolver
        self._router = router
        self._default_channel_id = default_channel_id
        self._logger = logger
        self._dequeue_timeout = dequeue_timeout_seconds
        self._error_backoff = error_backoff_seconds
        self._max_message_length = max_message_length
        self._sleep = sleep_fn

    async def run_loop(self) -> None:
        while True:
            await self.run_once()

    async def run_once(self) -> bool:
        """Handle at most one queued item; return whether one was delivered."""
        try:
            item = await self._queue.dequeue_blocking(self._dequeue_timeout)
        except QueueUnavailable as exc:
            log_event(
                self._logger,
                logging.WARNING,
                "bridge.delivery.dequeue_failed",
                exc=exc,
            )
            await self._sleep(self._error_backoff)
            return False
        if item is None:
            return False
        try:
            return await self.process_item(item)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            log_event(
                self._logger,
                logging.ERROR,
                "bridge.delivery.unexpected_error",
                item_id=item.item_id,
                thread_name=item.thread_name,
                exc=exc,
            )
            await self._sleep(self._error_backoff)
            return False

    async def process_item(self, item: QueueItem) -> bool:
        channel_id = item.destination_override or self._default_channel_id
        try:
            thread = await self._resolver.resolve_or_create(item.thread_name, channel_id)
        except ThreadResolutionError as exc:
            log_event(
                self._logger,
                logging.WARNING,
                "bridge.delivery.thread_resolution_failed",
                item_id=item.item_id,
                thread_name=item.thread_name,
                channel_id=channel_id,
                exc=exc,
            )
            return False
        try:
            await self._send(thread.thread_id, item.text)
        except DeliverySendError as exc:
            self._resolver.forget(item.thread_name, channel_id)
            log_event(
                self._logger,
                logging.WARNING,
                "bridge.delivery.send_failed",
                item_id=item.item_id,
                thread_id=thread.thread_id,
                thread_name=item.thread_name,
                exc=exc,
            )
            return False
        bound = False
        if item.is_bidirectional:
            bound = self._router.bind_thread_to_socket(
                thread.thread_id, item.source_connection_id
            )
        log_event(
            self._logger,
            logging.INFO,
            "bridge.delivery.sent",
            item_id=item.item_id,
            thread_id=thread.thread_id,
            thread_name=item.thread_name,
            connection_id=item.source_connection_id,
            bidirectional=item.is_bidirectional,
            route_bound=bound,
        )
        return True

    async def _send(self, thread_id: str, text: str) -> None:
        for chunk in chunk_message(text, max_len=self._max_message_length):
            try:
                await self._platform.send(thread_id, chunk)
            except Exception as exc:
                raise DeliverySendError(
                    f"failed to send to thread {thread_id}: {exc}", thread_id=thread_id
                ) from exc


__all__ = ["DEQUEUE_TIMEOUT_SECONDS", "ERROR_BACKOFF_SECONDS", "DeliveryWorker"]
