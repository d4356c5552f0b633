from __future__ import annotations

import asyncio
import logging
import uuid
from datetime import date
from typing import Callable, Optional

from ..core.logging_utils import log_event
from ..core.time_utils import now_utc
from .audit import ConnectionAuditLog
from .errors import FrameTooLarge, QueueUnavailable
from .framing import DEFAULT_MAX_FRAME_BYTES, FrameExtractor
from .messages import QueueItem, normalize_frame
from .queue import WorkQueue
from .router import Connection, SessionRouter, format_peer

READ_CHUNK_BYTES = 64 * 1024


def utc_today() -> date:
    return now_utc().date()


class BridgeServer:
    """TCP listener for d2bs clients.

    Every accepted socket gets its own frame buffer. Frames are normalized
    and pushed onto the work queue; nothing on this path waits on Discord.
    """

    def __init__(
        self,
        *,
        queue: WorkQueue,
        router: SessionRouter,
        logger: logging.Logger,
        thread_prefix: str,
        host: str = "0.0.0.0",
        port: int = 12345,
        date_bucket: bool = True,
        max_frame_bytes: int = DEFAULT_MAX_FRAME_BYTES,
        audit_log: Optional[ConnectionAuditLog] = None,
        today_fn: Callable[[], date] = utc_today,
    ) -> None:
        self._queue = queue
        self._router = router
        self._logger = logger
        self._thread_prefix = thread_prefix
        self._host = host
        self._port = port
        self._date_bucket = date_bucket
        self._max_frame_bytes = max_frame_bytes
        self._audit = audit_log
        self._today = today_fn
        self._server: Optional[asyncio.AbstractServer] = None

    @property
    def sockets_bound(self) -> list[tuple[str, int]]:
        if self._server is None:
            return []
        bound: list[tuple[str, int]] = []
        for sock in self._server.sockets or ():
            name = sock.getsockname()
            bound.append((str(name[0]), int(name[1])))
        return bound

    async def start(self) -> None:
        self._server = await asyncio.start_server(
            self.handle_client, host=self._host, port=self._port
        )
        log_event(
            self._logger,
            logging.INFO,
            "bridge.server.listening",
            addresses=[f"{host}:{port}" for host, port in self.sockets_bound],
        )

    async def stop(self) -> None:
        if self._server is None:
            return
        self._server.close()
        await self._router.close_all()
        await self._server.wait_closed()
        self._server = None

    async def handle_client(
        self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter
    ) -> None:
        connection = Connection(
            connection_id=uuid.uuid4().hex,
            remote_address=format_peer(writer),
            writer=writer,
            extractor=FrameExtractor(self._max_frame_bytes),
        )
        self._router.register_connection(connection)
        log_event(
            self._logger,
            logging.INFO,
            "bridge.server.client_connected",
            connection_id=connection.connection_id,
            remote=connection.remote_address,
        )
        try:
            while True:
                data = await reader.read(READ_CHUNK_BYTES)
                if not data:
                    break
                if self._audit is not None:
                    self._audit.record(connection.remote_address, data)
                try:
                    frames = connection.extractor.feed(data)
                except FrameTooLarge as exc:
                    await self._enqueue_frames(connection, exc.frames)
                    log_event(
                        self._logger,
                        logging.WARNING,
                        "bridge.server.frame_too_large",
                        connection_id=connection.connection_id,
                        remote=connection.remote_address,
                        exc=exc,
                    )
                    break
                await self._enqueue_frames(connection, frames)
        except (ConnectionError, OSError) as exc:
            log_event(
                self._logger,
                logging.WARNING,
                "bridge.server.client_error",
                connection_id=connection.connection_id,
                remote=connection.remote_address,
                exc=exc,
            )
        finally:
            self._router.on_disconnect(connection.connection_id)
            writer.close()
            try:
                await writer.wait_closed()
            except (ConnectionError, OSError):
                pass
            log_event(
                self._logger,
                logging.INFO,
                "bridge.server.client_disconnected",
                connection_id=connection.connection_id,
                remote=connection.remote_address,
            )

    async def _enqueue_frames(self, connection: Connection, frames: list[str]) -> None:
        day = self._today() if self._date_bucket else None
        for frame in frames:
            record = normalize_frame(frame)
            item = QueueItem.from_record(
                record,
                connection_id=connection.connection_id,
                thread_prefix=self._thread_prefix,
                day=day,
            )
            try:
                await self._queue.enqueue(item)
            except QueueUnavailable as exc:
                log_event(
                    self._logger,
                    logging.ERROR,
                    "bridge.server.enqueue_failed",
                    connection_id=connection.connection_id,
                    thread_name=item.thread_name,
                    exc=exc,
                )
                continue
            log_event(
                self._logger,
                logging.DEBUG,
                "bridge.server.enqueued",
                connection_id=connection.connection_id,
                item_id=item.item_id,
                thread_name=item.thread_name,
                bidirectional=item.is_bidirectional,
            )


__all__ = ["BridgeServer", "READ_CHUNK_BYTES", "utc_today"]
