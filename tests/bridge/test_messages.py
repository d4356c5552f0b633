from __future__ import annotations

from datetime import date

import pytest

from d2bs_bridge.bridge.errors import ValidationError
from d2bs_bridge.bridge.messages import (
    MAX_THREAD_NAME_LENGTH,
    MessageRecord,
    QueueItem,
    build_thread_name,
    normalize_frame,
)


def test_full_object_is_normalized() -> None:
    record = normalize_frame(
        '{"thread":"abc","message":"hello","isBidirectional":true,"channelId":"999"}'
    )

    assert record == MessageRecord(
        text="hello",
        thread_key="abc",
        is_bidirectional=True,
        destination_override="999",
    )


def test_bare_string_becomes_default_thread_text() -> None:
    assert normalize_frame('"ping"') == MessageRecord(
        text="ping", thread_key="default", is_bidirectional=False
    )


def test_optional_fields_default_when_missing_or_mistyped() -> None:
    record = normalize_frame('{"message":"hi","thread":5,"isBidirectional":"yes"}')

    assert record.thread_key == "default"
    assert record.is_bidirectional is False
    assert record.destination_override is None


def test_numeric_channel_id_is_kept_as_string() -> None:
    record = normalize_frame('{"message":"hi","channelId":123456789012345678}')

    assert record.destination_override == "123456789012345678"


@pytest.mark.parametrize(
    "raw",
    [
        '{"thread":"abc"}',
        '{"message":""}',
        '{"message":42}',
        "[1, 2, 3]",
        "17",
        '""',
        '" "',
        '"\\n\\t"',
        '{"message":"   "}',
        "{not json}",
        "just some text",
    ],
)
def test_unusable_frames_degrade_to_raw_plain_text(raw: str) -> None:
    record = normalize_frame(raw)

    assert record == MessageRecord(text=raw)


def test_thread_name_with_and_without_day_bucket() -> None:
    assert build_thread_name("d2bs", "abc", date(2026, 10, 18)) == "d2bs-2026-10-18-abc"
    assert build_thread_name("d2bs", "abc") == "d2bs-abc"


def test_thread_name_collapses_whitespace_and_caps_length() -> None:
    assert build_thread_name("d2bs", "  bot \n one ") == "d2bs-bot one"
    assert build_thread_name("d2bs", "   ") == "d2bs-default"
    assert len(build_thread_name("d2bs", "x" * 300)) == MAX_THREAD_NAME_LENGTH


def test_queue_item_from_record_and_json_round_trip() -> None:
    record = MessageRecord(text="hello", thread_key="abc", is_bidirectional=True)

    item = QueueItem.from_record(
        record, connection_id="conn-1", thread_prefix="d2bs", day=date(2026, 1, 2)
    )
    restored = QueueItem.from_json(item.to_json())

    assert item.thread_name == "d2bs-2026-01-02-abc"
    assert restored == item


@pytest.mark.parametrize(
    "raw",
    ["not json", "[]", '{"text":"x","source_connection_id":"c"}', '{"thread_name":"t"}'],
)
def test_queue_item_rejects_malformed_entries(raw: str) -> None:
    with pytest.raises(ValidationError):
        QueueItem.from_json(raw)
