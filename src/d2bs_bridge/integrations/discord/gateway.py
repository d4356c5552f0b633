from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import math
import platform
import random
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

import websockets
from websockets.exceptions import ConnectionClosed

from ...core.logging_utils import log_event
from .constants import DISCORD_GATEWAY_URL
from .errors import DiscordAPIError, DiscordPermanentError
from .rest import DiscordRestClient

# Bad token, bad shard, or intents the application may not request.
FATAL_GATEWAY_CLOSE_CODES = {4004, 4010, 4011, 4012, 4013, 4014}
# Sent by us when heartbeats stop being acknowledged; Discord keeps the
# session resumable for any close code other than 1000/1001.
ZOMBIE_CLOSE_CODE = 4000
GATEWAY_QUERY = "v=10&encoding=json"

OP_DISPATCH = 0
OP_HEARTBEAT = 1
OP_IDENTIFY = 2
OP_RESUME = 6
OP_RECONNECT = 7
OP_INVALID_SESSION = 9
OP_HELLO = 10
OP_HEARTBEAT_ACK = 11

DispatchHandler = Callable[[str, dict[str, Any]], Awaitable[None]]


@dataclass(frozen=True)
class GatewayFrame:
    op: int
    d: Any = None
    s: Optional[int] = None
    t: Optional[str] = None


@dataclass
class GatewaySession:
    """What Discord needs to resume a dropped connection without IDENTIFY."""

    session_id: str
    resume_url: Optional[str] = None


def build_identify_payload(*, bot_token: str, intents: int) -> dict[str, Any]:
    return {
        "op": OP_IDENTIFY,
        "d": {
            "token": bot_token,
            "intents": intents,
            "properties": {
                "os": platform.system().lower() or "unknown",
                "browser": "d2bs-bridge",
                "device": "d2bs-bridge",
            },
        },
    }


def build_resume_payload(
    *, bot_token: str, session_id: str, sequence: Optional[int]
) -> dict[str, Any]:
    return {
        "op": OP_RESUME,
        "d": {"token": bot_token, "session_id": session_id, "seq": sequence},
    }


def parse_gateway_frame(frame: str | bytes | dict[str, Any]) -> GatewayFrame:
    if isinstance(frame, bytes):
        frame = frame.decode("utf-8")
    payload = json.loads(frame) if isinstance(frame, str) else dict(frame)
    if not isinstance(payload, dict):
        raise DiscordAPIError("Discord gateway frame must be a JSON object")
    op = payload.get("op")
    if not isinstance(op, int):
        raise DiscordAPIError(f"Discord gateway frame missing numeric op: {payload!r}")
    seq = payload.get("s")
    event_type = payload.get("t")
    return GatewayFrame(
        op=op,
        d=payload.get("d"),
        s=seq if isinstance(seq, int) else None,
        t=event_type if isinstance(event_type, str) else None,
    )


def with_gateway_query(url: str) -> str:
    if "?" in url:
        return url
    return f"{url.rstrip('/')}/?{GATEWAY_QUERY}"


def calculate_reconnect_backoff(
    attempt: int,
    *,
    base_seconds: float = 1.0,
    max_seconds: float = 30.0,
    rand_float: Callable[[], float] = random.random,
) -> float:
    """Exponential backoff with +/-20% jitter, capped at ``max_seconds``."""
    if max_seconds <= 0.0 or base_seconds <= 0.0:
        return 0.0
    attempt = max(attempt, 0)
    if attempt >= max(math.ceil(math.log2(max_seconds / (base_seconds * 0.8))), 0):
        return max_seconds
    jitter = 0.8 + 0.4 * min(max(rand_float(), 0.0), 1.0)
    return float(min(max_seconds, base_seconds * (2**attempt) * jitter))


def gateway_close_code(exc: BaseException) -> int | None:
    code = getattr(exc, "code", None)
    if isinstance(code, int):
        return code
    received_code = getattr(getattr(exc, "rcvd", None), "code", None)
    if isinstance(received_code, int):
        return received_code
    return None


class DiscordGatewayClient:
    """Receives gateway dispatch events and hands them to a callback.

    Dropped connections are resumed when Discord still holds the session and
    re-identified otherwise, with jittered backoff between attempts. Fatal
    close codes (bad token, disallowed intents) halt the client until
    ``stop()`` is called.
    """

    def __init__(
        self,
        *,
        bot_token: str,
        intents: int,
        logger: logging.Logger,
        gateway_url: str | None = None,
    ) -> None:
        self._bot_token = bot_token
        self._intents = intents
        self._logger = logger
        self._gateway_url = gateway_url
        self._sequence: Optional[int] = None
        self._session: Optional[GatewaySession] = None
        self._awaiting_ack = False
        self._ready_in_connection = False
        self._stop_event = asyncio.Event()
        self._heartbeat_task: Optional[asyncio.Task[None]] = None
        self._websocket: Any = None

    @property
    def session(self) -> Optional[GatewaySession]:
        return self._session

    async def stop(self) -> None:
        self._stop_event.set()
        await self._cancel_heartbeat()
        websocket = self._websocket
        if websocket is not None:
            try:
                await websocket.close()
            except (ConnectionClosed, OSError) as exc:
                log_event(
                    self._logger, logging.DEBUG, "discord.gateway.close_failed", exc=exc
                )

    async def run(self, on_dispatch: DispatchHandler) -> None:
        attempt = 0
        while not self._stop_event.is_set():
            self._ready_in_connection = False
            fatal_reason: Optional[str] = None
            try:
                url = await self._connect_url()
                async with websockets.connect(url) as websocket:
                    self._websocket = websocket
                    await self._run_connection(websocket, on_dispatch)
            except asyncio.CancelledError:
                raise
            except DiscordPermanentError as exc:
                fatal_reason = str(exc)
            except ConnectionClosed as exc:
                close_code = gateway_close_code(exc)
                if close_code in FATAL_GATEWAY_CLOSE_CODES:
                    fatal_reason = f"gateway_close_code={close_code}"
                else:
                    log_event(
                        self._logger,
                        logging.INFO,
                        "discord.gateway.closed",
                        close_code=close_code,
                        resumable=self._session is not None,
                    )
            except Exception as exc:
                log_event(
                    self._logger, logging.WARNING, "discord.gateway.error", exc=exc
                )
            finally:
                self._websocket = None
                await self._cancel_heartbeat()

            if self._stop_event.is_set():
                break
            if fatal_reason is not None:
                self._session = None
                log_event(
                    self._logger,
                    logging.ERROR,
                    "discord.gateway.halted",
                    reason=fatal_reason,
                    hint="fix CLIENT_TOKEN or the bot's privileged intents, then restart",
                )
                await self._stop_event.wait()
                break
            if self._ready_in_connection:
                attempt = 0
            delay = calculate_reconnect_backoff(attempt)
            attempt += 1
            await asyncio.sleep(delay)

    async def _connect_url(self) -> str:
        if self._session is not None and self._session.resume_url:
            return with_gateway_query(self._session.resume_url)
        return await self._resolve_gateway_url()

    async def _resolve_gateway_url(self) -> str:
        if self._gateway_url:
            return self._gateway_url
        async with DiscordRestClient(bot_token=self._bot_token) as rest:
            payload = await rest.get_gateway_bot()
        url = payload.get("url") if isinstance(payload, dict) else None
        if not isinstance(url, str) or not url:
            return DISCORD_GATEWAY_URL
        return with_gateway_query(url)

    def _handshake_payload(self) -> dict[str, Any]:
        if self._session is not None:
            return build_resume_payload(
                bot_token=self._bot_token,
                session_id=self._session.session_id,
                sequence=self._sequence,
            )
        return build_identify_payload(bot_token=self._bot_token, intents=self._intents)

    def _remember_session(self, ready: dict[str, Any]) -> None:
        session_id = ready.get("session_id")
        if not isinstance(session_id, str) or not session_id:
            return
        resume_url = ready.get("resume_gateway_url")
        self._session = GatewaySession(
            session_id=session_id,
            resume_url=resume_url if isinstance(resume_url, str) else None,
        )

    async def _run_connection(self, websocket: Any, on_dispatch: DispatchHandler) -> bool:
        """Drive one websocket until it asks to reconnect; return whether READY was seen."""
        hello = parse_gateway_frame(await websocket.recv())
        if hello.op != OP_HELLO:
            raise DiscordAPIError("Discord gateway expected HELLO before IDENTIFY")
        hello_data = hello.d if isinstance(hello.d, dict) else {}
        heartbeat_ms = hello_data.get("heartbeat_interval")
        if not isinstance(heartbeat_ms, (int, float)) or heartbeat_ms <= 0:
            raise DiscordAPIError("Discord gateway HELLO missing heartbeat_interval")

        self._awaiting_ack = False
        self._heartbeat_task = asyncio.create_task(
            self._heartbeat_loop(websocket, float(heartbeat_ms) / 1000.0)
        )
        await websocket.send(json.dumps(self._handshake_payload()))

        async for raw_message in websocket:
            frame = parse_gateway_frame(raw_message)
            if frame.s is not None:
                self._sequence = frame.s
            if frame.op == OP_DISPATCH:
                if frame.t == "READY":
                    self._ready_in_connection = True
                    if isinstance(frame.d, dict):
                        self._remember_session(frame.d)
                elif frame.t == "RESUMED":
                    self._ready_in_connection = True
                    log_event(
                        self._logger,
                        logging.INFO,
                        "discord.gateway.resumed",
                        sequence=self._sequence,
                    )
                if frame.t and isinstance(frame.d, dict):
                    await on_dispatch(frame.t, frame.d)
            elif frame.op == OP_HEARTBEAT:
                await self._send_heartbeat(websocket)
            elif frame.op == OP_HEARTBEAT_ACK:
                self._awaiting_ack = False
            elif frame.op == OP_RECONNECT:
                log_event(
                    self._logger, logging.INFO, "discord.gateway.reconnect_requested"
                )
                break
            elif frame.op == OP_INVALID_SESSION:
                # ``d`` is true only when the session may still be resumed.
                if frame.d is not True:
                    self._session = None
                    self._sequence = None
                log_event(
                    self._logger,
                    logging.WARNING,
                    "discord.gateway.invalid_session",
                    resumable=frame.d is True,
                )
                break
        return self._ready_in_connection

    async def _send_heartbeat(self, websocket: Any) -> None:
        self._awaiting_ack = True
        await websocket.send(json.dumps({"op": OP_HEARTBEAT, "d": self._sequence}))

    async def _heartbeat_loop(self, websocket: Any, interval_seconds: float) -> None:
        # First beat is jittered per Discord's guidance.
        await asyncio.sleep(interval_seconds * random.random())
        while not self._stop_event.is_set():
            if self._awaiting_ack:
                log_event(
                    self._logger,
                    logging.WARNING,
                    "discord.gateway.heartbeat_not_acknowledged",
                    interval_seconds=interval_seconds,
                )
                await websocket.close(code=ZOMBIE_CLOSE_CODE)
                return
            await self._send_heartbeat(websocket)
            await asyncio.sleep(interval_seconds)

    async def _cancel_heartbeat(self) -> None:
        task = self._heartbeat_task
        if task is None:
            return
        self._heartbeat_task = None
        if not task.done():
            task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            try:
                await task
            except Exception as exc:
                # The socket is usually already gone; never block reconnect.
                log_event(
                    self._logger,
                    logging.DEBUG,
                    "discord.gateway.heartbeat_ended",
                    exc=exc,
                )


__all__ = [
    "DispatchHandler",
    "DiscordGatewayClient",
    "GatewayFrame",
    "GatewaySession",
    "build_identify_payload",
    "build_resume_payload",
    "calculate_reconnect_backoff",
    "gateway_close_code",
    "parse_gateway_frame",
    "with_gateway_query",
]
