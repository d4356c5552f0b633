from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Optional

from ...bridge.platform import ThreadHandle
from ...core.logging_utils import log_event
from ...core.time_utils import parse_iso
from .constants import DISCORD_EPOCH_MS
from .errors import DiscordAPIError, DiscordNotFoundError
from .rest import DiscordRestClient

ARCHIVED_PAGE_LIMIT = 100
MAX_ARCHIVED_PAGES = 20
THREAD_DELETE_REASON = "d2bs bridge: retention window elapsed"


def snowflake_time(snowflake: str) -> Optional[datetime]:
    try:
        value = int(snowflake)
    except (TypeError, ValueError):
        return None
    millis = (value >> 22) + DISCORD_EPOCH_MS
    return datetime.fromtimestamp(millis / 1000.0, tz=timezone.utc)


def thread_from_payload(payload: dict[str, Any]) -> Optional[ThreadHandle]:
    thread_id = payload.get("id")
    name = payload.get("name")
    if not isinstance(thread_id, str) or not isinstance(name, str):
        return None
    metadata = payload.get("thread_metadata")
    metadata = metadata if isinstance(metadata, dict) else {}
    parent_id = payload.get("parent_id")
    # Threads created before 2022-01-09 carry no create_timestamp.
    created_at = parse_iso(metadata.get("create_timestamp")) or snowflake_time(
        thread_id
    )
    return ThreadHandle(
        thread_id=thread_id,
        name=name,
        parent_id=parent_id if isinstance(parent_id, str) else None,
        created_at=created_at,
        archived_at=parse_iso(metadata.get("archive_timestamp")),
        archived=bool(metadata.get("archived", False)),
    )


class DiscordChatPlatform:
    """``ChatPlatform`` on top of the Discord REST API."""

    def __init__(self, rest: DiscordRestClient, *, logger: logging.Logger) -> None:
        self._rest = rest
        self._logger = logger
        self._guild_ids: dict[str, str] = {}

    async def _guild_id_for(self, channel_id: str) -> str:
        guild_id = self._guild_ids.get(channel_id)
        if guild_id is not None:
            return guild_id
        channel = await self._rest.get_channel(channel_id=channel_id)
        guild_id = channel.get("guild_id")
        if not isinstance(guild_id, str) or not guild_id:
            raise DiscordAPIError(f"Discord channel {channel_id} is not a guild channel")
        self._guild_ids[channel_id] = guild_id
        return guild_id

    async def list_active_threads(self, channel_id: str) -> list[ThreadHandle]:
        guild_id = await self._guild_id_for(channel_id)
        payloads = await self._rest.list_active_guild_threads(guild_id=guild_id)
        threads: list[ThreadHandle] = []
        for payload in payloads:
            if payload.get("parent_id") != channel_id:
                continue
            handle = thread_from_payload(payload)
            if handle is not None:
                threads.append(handle)
        return threads

    async def create_thread(
        self,
        channel_id: str,
        name: str,
        *,
        auto_archive_minutes: int,
        reason: str,
    ) -> ThreadHandle:
        payload = await self._rest.start_thread(
            channel_id=channel_id,
            name=name,
            auto_archive_duration=auto_archive_minutes,
            reason=reason,
        )
        handle = thread_from_payload(payload)
        if handle is None:
            raise DiscordAPIError(
                f"Discord returned an unexpected thread payload for {name!r}"
            )
        return handle

    async def send(self, thread_id: str, text: str) -> str:
        response = await self._rest.create_channel_message(
            channel_id=thread_id,
            payload={"content": text, "allowed_mentions": {"parse": []}},
        )
        message_id = response.get("id")
        return message_id if isinstance(message_id, str) else ""

    async def list_archived_threads(self, channel_id: str) -> list[ThreadHandle]:
        threads: list[ThreadHandle] = []
        before: Optional[str] = None
        for _ in range(MAX_ARCHIVED_PAGES):
            page = await self._rest.list_public_archived_threads(
                channel_id=channel_id, before=before, limit=ARCHIVED_PAGE_LIMIT
            )
            raw_threads = page.get("threads")
            if not isinstance(raw_threads, list) or not raw_threads:
                break
            for payload in raw_threads:
                if isinstance(payload, dict):
                    handle = thread_from_payload(payload)
                    if handle is not None:
                        threads.append(handle)
            if not page.get("has_more"):
                break
            oldest = threads[-1].archived_at if threads else None
            if oldest is None:
                break
            before = oldest.isoformat()
        else:
            log_event(
                self._logger,
                logging.INFO,
                "discord.threads.archived_listing_truncated",
                channel_id=channel_id,
                pages=MAX_ARCHIVED_PAGES,
            )
        return threads

    async def delete_thread(self, thread_id: str) -> None:
        try:
            await self._rest.delete_channel(
                channel_id=thread_id, reason=THREAD_DELETE_REASON
            )
        except DiscordNotFoundError:
            # Someone removed it by hand; the end state is the same.
            log_event(
                self._logger,
                logging.INFO,
                "discord.threads.already_deleted",
                thread_id=thread_id,
            )


__all__ = ["DiscordChatPlatform", "snowflake_time", "thread_from_payload"]
