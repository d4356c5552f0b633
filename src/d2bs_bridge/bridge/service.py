from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import Any, Awaitable, Callable, Optional

from ..config import BridgeConfig
from ..core.logging_utils import log_event
from ..integrations.discord.constants import DEFAULT_INTENTS
from ..integrations.discord.gateway import DiscordGatewayClient
from ..integrations.discord.platform import DiscordChatPlatform
from ..integrations.discord.rest import DiscordRestClient
from .audit import ConnectionAuditLog
from .delivery import ERROR_BACKOFF_SECONDS, DeliveryWorker
from .errors import QueueUnavailable
from .platform import ChatPlatform
from .queue import QueueBackend, RedisQueueBackend, SqliteQueueBackend, WorkQueue
from .router import SessionRouter
from .server import BridgeServer
from .sweeper import ArchivalSweeper
from .threads import ThreadResolver


def build_queue_backend(config: BridgeConfig) -> QueueBackend:
    if config.queue_backend == "sqlite":
        return SqliteQueueBackend(config.queue_state_file, queue_name=config.queue_name)
    return RedisQueueBackend(
        queue_name=config.queue_name,
        host=config.redis_host,
        port=config.redis_port,
    )


class BridgeService:
    def __init__(
        self,
        config: BridgeConfig,
        *,
        logger: logging.Logger,
        rest_client: Optional[DiscordRestClient] = None,
        gateway_client: Optional[Any] = None,
        platform: Optional[ChatPlatform] = None,
        queue_backend: Optional[QueueBackend] = None,
        audit_log: Optional[ConnectionAuditLog] = None,
        sleep_fn: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._config = config
        self._logger = logger
        self._sleep = sleep_fn

        self._rest = (
            rest_client
            if rest_client is not None
            else DiscordRestClient(bot_token=config.client_token)
        )
        self._owns_rest = rest_client is None
        self._gateway = (
            gateway_client
            if gateway_client is not None
            else DiscordGatewayClient(
                bot_token=config.client_token,
                intents=DEFAULT_INTENTS,
                logger=logger,
            )
        )
        self._platform: ChatPlatform = (
            platform
            if platform is not None
            else DiscordChatPlatform(self._rest, logger=logger)
        )
        self._queue = WorkQueue(
            queue_backend if queue_backend is not None else build_queue_backend(config),
            logger=logger,
        )
        self._audit = (
            audit_log
            if audit_log is not None
            else ConnectionAuditLog(
                log_dir=config.log_dir, console=config.containerized
            )
        )
        self._router = SessionRouter(logger=logger)
        self._resolver = ThreadResolver(
            self._platform,
            logger=logger,
            auto_archive_minutes=config.thread_auto_archive_minutes,
        )
        self._worker = DeliveryWorker(
            self._queue,
            platform=self._platform,
            resolver=self._resolver,
            router=self._router,
            default_channel_id=config.channel_id,
            logger=logger,
        )
        self._sweeper = ArchivalSweeper(
            self._platform,
            channel_id=config.channel_id,
            thread_prefix=config.thread_prefix,
            logger=logger,
            retention=config.retention,
            interval_seconds=float(config.sweep_interval_seconds),
            resolver=self._resolver,
        )
        self._server = BridgeServer(
            queue=self._queue,
            router=self._router,
            logger=logger,
            thread_prefix=config.thread_prefix,
            host=config.bind_host,
            port=config.port,
            date_bucket=config.thread_date_bucket,
            max_frame_bytes=config.max_frame_bytes,
            audit_log=self._audit,
        )

    @property
    def router(self) -> SessionRouter:
        return self._router

    @property
    def server(self) -> BridgeServer:
        return self._server

    @property
    def sweeper(self) -> ArchivalSweeper:
        return self._sweeper

    async def _initialize_queue(self) -> None:
        # Redis may still be starting next to us; wait for it rather than exit.
        while True:
            try:
                await self._queue.initialize()
                return
            except QueueUnavailable as exc:
                log_event(
                    self._logger,
                    logging.WARNING,
                    "bridge.service.queue_unavailable",
                    retry_in_seconds=ERROR_BACKOFF_SECONDS,
                    exc=exc,
                )
            await self._sleep(ERROR_BACKOFF_SECONDS)

    async def run_forever(self) -> None:
        tasks: list[asyncio.Task[None]] = []
        try:
            await self._initialize_queue()
            await self._server.start()
            tasks.append(asyncio.create_task(self._worker.run_loop()))
            tasks.append(asyncio.create_task(self._sweeper.run_loop()))
            log_event(
                self._logger,
                logging.INFO,
                "bridge.service.starting",
                channel_id=self._config.channel_id,
                queue_backend=self._config.queue_backend,
                port=self._config.port,
            )
            await self._gateway.run(self.on_dispatch)
        finally:
            for task in tasks:
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task
            await self._shutdown()

    async def run_sweep_once(self) -> int:
        try:
            return await self._sweeper.sweep()
        finally:
            await self._shutdown()

    async def on_dispatch(self, event_type: str, payload: dict[str, Any]) -> None:
        if event_type == "READY":
            user = payload.get("user")
            user = user if isinstance(user, dict) else {}
            log_event(
                self._logger,
                logging.INFO,
                "bridge.discord.ready",
                user=user.get("username"),
                user_id=user.get("id"),
            )
            return
        if event_type == "MESSAGE_CREATE":
            await self._handle_message_create(payload)

    async def _handle_message_create(self, payload: dict[str, Any]) -> None:
        author = payload.get("author")
        author = author if isinstance(author, dict) else {}
        if author.get("bot") or payload.get("webhook_id"):
            return
        channel_id = payload.get("channel_id")
        content = payload.get("content")
        if not isinstance(channel_id, str) or not isinstance(content, str):
            return
        if not content:
            return
        if self._router.bound_connection(channel_id) is None:
            # Plain channel chatter or a thread nobody is waiting on.
            log_event(
                self._logger,
                logging.DEBUG,
                "bridge.router.no_matching_socket",
                thread_id=channel_id,
            )
            return
        await self._router.route_reply(channel_id, content)

    async def _shutdown(self) -> None:
        try:
            await self._gateway.stop()
        except Exception as exc:
            log_event(
                self._logger,
                logging.WARNING,
                "bridge.service.gateway_stop_failed",
                exc=exc,
            )
        await self._server.stop()
        try:
            await self._queue.close()
        except Exception as exc:
            log_event(
                self._logger,
                logging.WARNING,
                "bridge.service.queue_close_failed",
                exc=exc,
            )
        if self._owns_rest:
            await self._rest.close()
        self._audit.close()


def create_bridge_service(config: BridgeConfig, *, logger: logging.Logger) -> BridgeService:
    return BridgeService(config, logger=logger)


__all__ = ["BridgeService", "build_queue_backend", "create_bridge_service"]
