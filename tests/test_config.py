from __future__ import annotations

import logging
from pathlib import Path

import pytest

from d2bs_bridge.config import (
    BridgeConfig,
    BridgeConfigError,
    load_bridge_config,
)

REQUIRED_ENV = {
    "CLIENT_TOKEN": "bot-token-value",
    "CLIENT_ID": "1234",
    "CHANNEL_ID": "5678",
}


def test_defaults_from_required_env_only(tmp_path: Path) -> None:
    config = BridgeConfig.from_raw(root=tmp_path, env=REQUIRED_ENV)

    assert config.port == 12345
    assert config.queue_backend == "redis"
    assert config.redis_host == "localhost" and config.redis_port == 6379
    assert config.thread_prefix == "d2bs"
    assert config.thread_date_bucket is True
    assert config.thread_auto_archive_minutes == 1440
    assert config.retention.days == 7
    assert config.sweep_interval_seconds == 3600
    assert config.max_frame_bytes == 1024 * 1024
    assert config.log_dir == (tmp_path / "logs").resolve()
    assert config.containerized is False


@pytest.mark.parametrize("missing", sorted(REQUIRED_ENV))
def test_missing_required_setting_is_reported_by_env_name(
    tmp_path: Path, missing: str
) -> None:
    env = {key: value for key, value in REQUIRED_ENV.items() if key != missing}

    with pytest.raises(BridgeConfigError, match=missing):
        BridgeConfig.from_raw(root=tmp_path, env=env)


def test_env_overrides_yaml_section(tmp_path: Path) -> None:
    (tmp_path / "d2bs-bridge.yml").write_text(
        "bridge:\n"
        "  port: 4000\n"
        "  queue_backend: sqlite\n"
        "  thread_prefix: bot\n"
        "  retention_days: 3\n",
        encoding="utf-8",
    )
    env = dict(REQUIRED_ENV, PORT="4100", LOG_LEVEL="debug")

    config = load_bridge_config(tmp_path, env=env)

    assert config.port == 4100
    assert config.queue_backend == "sqlite"
    assert config.thread_prefix == "bot"
    assert config.retention_days == 3
    assert config.log_level == logging.DEBUG
    assert config.queue_state_file == (
        tmp_path / ".d2bs-bridge" / "queue.sqlite3"
    ).resolve()


def test_dotenv_is_loaded_without_overriding_real_env(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    for key in (*REQUIRED_ENV, "THREAD_PREFIX"):
        # Record the key so values loaded from .env are removed on teardown.
        monkeypatch.setenv(key, "unset")
        monkeypatch.delenv(key)
    monkeypatch.setenv("CHANNEL_ID", "from-process")
    (tmp_path / ".env").write_text(
        "CLIENT_TOKEN=from-dotenv\nCLIENT_ID=1\nCHANNEL_ID=from-dotenv\nTHREAD_PREFIX=dot\n",
        encoding="utf-8",
    )

    config = load_bridge_config(tmp_path)

    assert config.client_token == "from-dotenv"
    assert config.channel_id == "from-process"
    assert config.thread_prefix == "dot"


@pytest.mark.parametrize(
    ("key", "value"),
    [
        ("QUEUE_BACKEND", "kafka"),
        ("HOST_ENV", "cloud"),
        ("THREAD_AUTO_ARCHIVE_MINUTES", "30"),
        ("PORT", "70000"),
        ("PORT", "abc"),
        ("RETENTION_DAYS", "0"),
        ("THREAD_DATE_BUCKET", "maybe"),
    ],
)
def test_invalid_values_are_rejected(tmp_path: Path, key: str, value: str) -> None:
    with pytest.raises(BridgeConfigError, match=key):
        BridgeConfig.from_raw(root=tmp_path, env=dict(REQUIRED_ENV, **{key: value}))


def test_docker_host_env_is_containerized(tmp_path: Path) -> None:
    config = BridgeConfig.from_raw(
        root=tmp_path, env=dict(REQUIRED_ENV, HOST_ENV="Docker", THREAD_DATE_BUCKET="off")
    )

    assert config.containerized is True
    assert config.thread_date_bucket is False


def test_redacted_summary_hides_token(tmp_path: Path) -> None:
    summary = BridgeConfig.from_raw(root=tmp_path, env=REQUIRED_ENV).redacted_summary()

    assert "bot-token-value" not in str(summary)
    assert summary["client_token"].startswith("bot-")
    assert summary["queue"] == "redis://localhost:6379/d2bs:outbound"


def test_yaml_must_be_a_mapping(tmp_path: Path) -> None:
    config_path = tmp_path / "custom.yml"
    config_path.write_text("- just\n- a list\n", encoding="utf-8")

    with pytest.raises(BridgeConfigError):
        load_bridge_config(tmp_path, config_path=config_path, env=REQUIRED_ENV)
