from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Protocol


@dataclass(frozen=True)
class ThreadHandle:
    thread_id: str
    name: str
    parent_id: Optional[str] = None
    created_at: Optional[datetime] = None
    archived_at: Optional[datetime] = None
    archived: bool = False


class ChatPlatform(Protocol):
    """What the bridge needs from the chat service."""

    async def list_active_threads(self, channel_id: str) -> list[ThreadHandle]: ...

    async def create_thread(
        self,
        channel_id: str,
        name: str,
        *,
        auto_archive_minutes: int,
        reason: str,
    ) -> ThreadHandle: ...

    async def send(self, thread_id: str, text: str) -> str: ...

    async def list_archived_threads(self, channel_id: str) -> list[ThreadHandle]: ...

    async def delete_thread(self, thread_id: str) -> None: ...


__all__ = ["ChatPlatform", "ThreadHandle"]
