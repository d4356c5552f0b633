from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Optional

from ..core.logging_utils import log_event
from .errors import SocketWriteError
from .framing import DEFAULT_MAX_FRAME_BYTES, FrameExtractor

REPLY_WRITE_TIMEOUT_SECONDS = 10.0


@dataclass
class Connection:
    connection_id: str
    remote_address: str
    writer: Any
    extractor: FrameExtractor = field(
        default_factory=lambda: FrameExtractor(DEFAULT_MAX_FRAME_BYTES)
    )
    awaiting_reply: bool = False


def format_peer(writer: Any) -> str:
    peer = None
    get_extra_info = getattr(writer, "get_extra_info", None)
    if callable(get_extra_info):
        peer = get_extra_info("peername")
    if isinstance(peer, (tuple, list)) and len(peer) >= 2:
        return f"{peer[0]}:{peer[1]}"
    if peer:
        return str(peer)
    return "unknown"


class SessionRouter:
    """Maps Discord threads to the TCP connections waiting for replies.

    A thread binding lives until its connection goes away and may carry any
    number of replies. All mutation happens on the event loop thread.
    """

    def __init__(
        self,
        *,
        logger: logging.Logger,
        write_timeout_seconds: float = REPLY_WRITE_TIMEOUT_SECONDS,
    ) -> None:
        self._logger = logger
        self._write_timeout = write_timeout_seconds
        self._connections: dict[str, Connection] = {}
        self._thread_routes: dict[str, str] = {}
        self._connection_threads: dict[str, set[str]] = {}

    def register_connection(self, connection: Connection) -> None:
        self._connections[connection.connection_id] = connection
        self._connection_threads.setdefault(connection.connection_id, set())

    def get_connection(self, connection_id: str) -> Optional[Connection]:
        return self._connections.get(connection_id)

    def has_connection(self, connection_id: str) -> bool:
        return connection_id in self._connections

    @property
    def connection_count(self) -> int:
        return len(self._connections)

    def bound_connection(self, thread_id: str) -> Optional[str]:
        return self._thread_routes.get(thread_id)

    def threads_for(self, connection_id: str) -> frozenset[str]:
        return frozenset(self._connection_threads.get(connection_id, ()))

    def bind_thread_to_socket(self, thread_id: str, connection_id: str) -> bool:
        connection = self._connections.get(connection_id)
        if connection is None:
            log_event(
                self._logger,
                logging.INFO,
                "bridge.router.bind_skipped",
                thread_id=thread_id,
                connection_id=connection_id,
                reason="connection_closed",
            )
            return False
        previous = self._thread_routes.get(thread_id)
        if previous is not None and previous != connection_id:
            self._drop_thread_from(previous, thread_id)
        self._thread_routes[thread_id] = connection_id
        self._connection_threads.setdefault(connection_id, set()).add(thread_id)
        connection.awaiting_reply = True
        return True

    def _drop_thread_from(self, connection_id: str, thread_id: str) -> None:
        threads = self._connection_threads.get(connection_id)
        if threads is None:
            return
        threads.discard(thread_id)
        previous = self._connections.get(connection_id)
        if previous is not None and not threads:
            previous.awaiting_reply = False

    async def route_reply(self, thread_id: str, text: str) -> bool:
        connection_id = self._thread_routes.get(thread_id)
        connection = (
            self._connections.get(connection_id) if connection_id is not None else None
        )
        if connection is None:
            log_event(
                self._logger,
                logging.INFO,
                "bridge.router.no_matching_socket",
                thread_id=thread_id,
            )
            return False
        writer = connection.writer
        if writer.is_closing():
            log_event(
                self._logger,
                logging.INFO,
                "bridge.router.no_matching_socket",
                thread_id=thread_id,
                connection_id=connection.connection_id,
                reason="socket_closing",
            )
            return False
        try:
            writer.write(text.encode("utf-8"))
            # A peer that stops reading must not stall the gateway loop.
            await asyncio.wait_for(writer.drain(), timeout=self._write_timeout)
        except asyncio.TimeoutError:
            log_event(
                self._logger,
                logging.WARNING,
                "bridge.router.reply_write_timed_out",
                thread_id=thread_id,
                connection_id=connection.connection_id,
                timeout_seconds=self._write_timeout,
            )
            return False
        except (OSError, RuntimeError) as exc:
            # The connection stays registered; its reader decides when it ends.
            log_event(
                self._logger,
                logging.WARNING,
                "bridge.router.reply_write_failed",
                thread_id=thread_id,
                connection_id=connection.connection_id,
                exc=SocketWriteError(str(exc)),
            )
            return False
        log_event(
            self._logger,
            logging.INFO,
            "bridge.router.reply_delivered",
            thread_id=thread_id,
            connection_id=connection.connection_id,
            chars=len(text),
        )
        return True

    def unregister_connection(self, connection_id: str) -> Optional[Connection]:
        return self.on_disconnect(connection_id)

    def on_disconnect(self, connection_id: str) -> Optional[Connection]:
        connection = self._connections.pop(connection_id, None)
        self._connection_threads.pop(connection_id, None)
        stale = [
            thread_id
            for thread_id, owner in self._thread_routes.items()
            if owner == connection_id
        ]
        for thread_id in stale:
            del self._thread_routes[thread_id]
        if connection is not None:
            connection.awaiting_reply = False
            connection.extractor.reset()
            log_event(
                self._logger,
                logging.INFO,
                "bridge.router.connection_removed",
                connection_id=connection_id,
                released_threads=len(stale),
            )
        return connection

    async def close_all(self) -> None:
        for connection_id in list(self._connections):
            connection = self.on_disconnect(connection_id)
            if connection is None:
                continue
            connection.writer.close()
            try:
                await connection.writer.wait_closed()
            except (OSError, asyncio.CancelledError):
                pass


__all__ = ["Connection", "SessionRouter", "format_peer"]
