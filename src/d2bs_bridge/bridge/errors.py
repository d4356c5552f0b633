from __future__ import annotations

from typing import Optional


class BridgeError(Exception):
    """Base error for the TCP to Discord bridge."""


class FrameParseError(BridgeError):
    """Malformed or incomplete frame."""


class FrameTooLarge(FrameParseError):
    """A connection buffered more bytes than a single frame may hold."""

    def __init__(
        self, buffered: int, limit: int, *, frames: Optional[list[str]] = None
    ) -> None:
        super().__init__(
            f"buffered {buffered} bytes without a complete frame (limit {limit})"
        )
        self.buffered = buffered
        self.limit = limit
        # Frames completed by the same read, before the overflow.
        self.frames = list(frames or [])


class ValidationError(BridgeError):
    """Decoded payload does not match the inbound message schema."""


class QueueUnavailable(BridgeError):
    """The work queue backend could not be reached."""


class ThreadResolutionError(BridgeError):
    """A thread could not be found or created."""

    def __init__(self, message: str, *, thread_name: Optional[str] = None) -> None:
        super().__init__(message)
        self.thread_name = thread_name


class DeliverySendError(BridgeError):
    """Sending a message into a thread failed."""

    def __init__(self, message: str, *, thread_id: Optional[str] = None) -> None:
        super().__init__(message)
        self.thread_id = thread_id


class SocketWriteError(BridgeError):
    """Writing a routed reply to a TCP peer failed."""


__all__ = [
    "BridgeError",
    "DeliverySendError",
    "FrameParseError",
    "FrameTooLarge",
    "QueueUnavailable",
    "SocketWriteError",
    "ThreadResolutionError",
    "ValidationError",
]
