from __future__ import annotations

import json
import re
import uuid
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Optional

from ..core.time_utils import now_iso
from .errors import ValidationError

DEFAULT_THREAD_KEY = "default"
# Discord rejects thread names longer than this.
MAX_THREAD_NAME_LENGTH = 100

_WHITESPACE_RUN = re.compile(r"\s+")


@dataclass(frozen=True)
class MessageRecord:
    text: str
    thread_key: str = DEFAULT_THREAD_KEY
    is_bidirectional: bool = False
    destination_override: Optional[str] = None


def plain_text_record(raw: str) -> MessageRecord:
    return MessageRecord(text=raw)


def _optional_str(value: Any) -> Optional[str]:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return str(value)
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def validate_payload(payload: dict[str, Any]) -> MessageRecord:
    """Validate an inbound object against the wire schema.

    ``message`` is required; ``thread``, ``isBidirectional`` and ``channelId``
    fall back to defaults when absent or mistyped.
    """
    text = payload.get("message")
    if not isinstance(text, str):
        raise ValidationError("payload field 'message' must be a string")
    if not text.strip():
        raise ValidationError("payload field 'message' must be non-empty")
    thread_key = payload.get("thread")
    if not isinstance(thread_key, str) or not thread_key.strip():
        thread_key = DEFAULT_THREAD_KEY
    bidirectional = payload.get("isBidirectional")
    return MessageRecord(
        text=text,
        thread_key=thread_key.strip(),
        is_bidirectional=bidirectional if isinstance(bidirectional, bool) else False,
        destination_override=_optional_str(payload.get("channelId")),
    )


def normalize_frame(raw: str) -> MessageRecord:
    """Turn one raw frame into exactly one record.

    Anything that is not a well-formed message object or a JSON
    string with visible text degrades to a plain-text record carrying the raw frame.
    """
    try:
        payload = json.loads(raw)
    except ValueError:
        return plain_text_record(raw)
    if isinstance(payload, str):
        return MessageRecord(text=payload) if payload.strip() else plain_text_record(raw)
    if not isinstance(payload, dict):
        return plain_text_record(raw)
    try:
        return validate_payload(payload)
    except ValidationError:
        return plain_text_record(raw)


def build_thread_name(
    prefix: str, thread_key: str, day: Optional[date] = None
) -> str:
    key = _WHITESPACE_RUN.sub(" ", thread_key).strip() or DEFAULT_THREAD_KEY
    parts = [prefix.strip()] if prefix.strip() else []
    if day is not None:
        parts.append(day.isoformat())
    parts.append(key)
    return "-".join(parts)[:MAX_THREAD_NAME_LENGTH]


@dataclass(frozen=True)
class QueueItem:
    thread_name: str
    text: str
    source_connection_id: str
    is_bidirectional: bool = False
    destination_override: Optional[str] = None
    item_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    created_at: str = field(default_factory=now_iso)

    @classmethod
    def from_record(
        cls,
        record: MessageRecord,
        *,
        connection_id: str,
        thread_prefix: str,
        day: Optional[date] = None,
    ) -> "QueueItem":
        return cls(
            thread_name=build_thread_name(thread_prefix, record.thread_key, day),
            text=record.text,
            source_connection_id=connection_id,
            is_bidirectional=record.is_bidirectional,
            destination_override=record.destination_override,
        )

    def to_json(self) -> str:
        return json.dumps(
            {
                "item_id": self.item_id,
                "thread_name": self.thread_name,
                "text": self.text,
                "source_connection_id": self.source_connection_id,
                "is_bidirectional": self.is_bidirectional,
                "destination_override": self.destination_override,
                "created_at": self.created_at,
            },
            ensure_ascii=False,
        )

    @classmethod
    def from_json(cls, raw: str | bytes) -> "QueueItem":
        try:
            data = json.loads(raw)
        except ValueError as exc:
            raise ValidationError(f"queue item is not valid JSON: {exc}") from exc
        if not isinstance(data, dict):
            raise ValidationError("queue item must be a JSON object")
        thread_name = data.get("thread_name")
        text = data.get("text")
        connection_id = data.get("source_connection_id")
        if not isinstance(thread_name, str) or not thread_name:
            raise ValidationError("queue item missing thread_name")
        if not isinstance(text, str):
            raise ValidationError("queue item missing text")
        if not isinstance(connection_id, str):
            raise ValidationError("queue item missing source_connection_id")
        item_id = data.get("item_id")
        created_at = data.get("created_at")
        return cls(
            thread_name=thread_name,
            text=text,
            source_connection_id=connection_id,
            is_bidirectional=bool(data.get("is_bidirectional", False)),
            destination_override=_optional_str(data.get("destination_override")),
            item_id=item_id if isinstance(item_id, str) and item_id else uuid.uuid4().hex,
            created_at=created_at if isinstance(created_at, str) else now_iso(),
        )


__all__ = [
    "DEFAULT_THREAD_KEY",
    "MAX_THREAD_NAME_LENGTH",
    "MessageRecord",
    "QueueItem",
    "build_thread_name",
    "normalize_frame",
    "plain_text_record",
    "validate_payload",
]
