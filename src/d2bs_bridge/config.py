"""Bridge configuration.

Values are layered: ``.env`` files under the root are loaded into the
process environment first, an optional YAML file (``bridge:`` mapping)
supplies defaults, and environment variables win over both.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path
from typing import Any, Mapping, Optional

import yaml
from dotenv import load_dotenv

from .bridge.framing import DEFAULT_MAX_FRAME_BYTES
from .bridge.queue import DEFAULT_QUEUE_NAME
from .bridge.threads import ALLOWED_AUTO_ARCHIVE_MINUTES, DEFAULT_AUTO_ARCHIVE_MINUTES
from .core.logging_utils import parse_log_level

logger = logging.getLogger("d2bs_bridge.config")

CONFIG_FILENAME = "d2bs-bridge.yml"
DEFAULT_PORT = 12345
DEFAULT_BIND_HOST = "0.0.0.0"
DEFAULT_REDIS_HOST = "localhost"
DEFAULT_REDIS_PORT = 6379
DEFAULT_QUEUE_STATE_FILE = ".d2bs-bridge/queue.sqlite3"
DEFAULT_LOG_DIR = "logs"
DEFAULT_THREAD_PREFIX = "d2bs"
DEFAULT_RETENTION_DAYS = 7
DEFAULT_SWEEP_INTERVAL_SECONDS = 3600
QUEUE_BACKENDS = {"redis", "sqlite"}
HOST_ENVS = {"local", "docker"}

# Option name -> environment variable.
ENV_KEYS = {
    "client_token": "CLIENT_TOKEN",
    "client_id": "CLIENT_ID",
    "channel_id": "CHANNEL_ID",
    "port": "PORT",
    "bind_host": "BIND_HOST",
    "redis_host": "REDIS_HOST",
    "redis_port": "REDIS_PORT",
    "queue_backend": "QUEUE_BACKEND",
    "queue_name": "QUEUE_NAME",
    "queue_state_file": "QUEUE_STATE_FILE",
    "host_env": "HOST_ENV",
    "log_dir": "LOG_DIR",
    "log_level": "LOG_LEVEL",
    "thread_prefix": "THREAD_PREFIX",
    "thread_date_bucket": "THREAD_DATE_BUCKET",
    "thread_auto_archive_minutes": "THREAD_AUTO_ARCHIVE_MINUTES",
    "retention_days": "RETENTION_DAYS",
    "sweep_interval_seconds": "SWEEP_INTERVAL_SECONDS",
    "max_frame_bytes": "MAX_FRAME_BYTES",
}


class BridgeConfigError(Exception):
    """Raised when bridge configuration is missing or invalid."""


@dataclass(frozen=True)
class BridgeConfig:
    root: Path
    client_token: str
    client_id: str
    channel_id: str
    port: int = DEFAULT_PORT
    bind_host: str = DEFAULT_BIND_HOST
    redis_host: str = DEFAULT_REDIS_HOST
    redis_port: int = DEFAULT_REDIS_PORT
    queue_backend: str = "redis"
    queue_name: str = DEFAULT_QUEUE_NAME
    queue_state_file: Path = Path(DEFAULT_QUEUE_STATE_FILE)
    host_env: str = "local"
    log_dir: Path = Path(DEFAULT_LOG_DIR)
    log_level: int = logging.INFO
    thread_prefix: str = DEFAULT_THREAD_PREFIX
    thread_date_bucket: bool = True
    thread_auto_archive_minutes: int = DEFAULT_AUTO_ARCHIVE_MINUTES
    retention_days: int = DEFAULT_RETENTION_DAYS
    sweep_interval_seconds: int = DEFAULT_SWEEP_INTERVAL_SECONDS
    max_frame_bytes: int = DEFAULT_MAX_FRAME_BYTES

    @property
    def retention(self) -> timedelta:
        return timedelta(days=self.retention_days)

    @property
    def containerized(self) -> bool:
        return self.host_env == "docker"

    def redacted_summary(self) -> dict[str, Any]:
        token = self.client_token
        return {
            "client_token": f"{token[:4]}...({len(token)} chars)" if token else "",
            "client_id": self.client_id,
            "channel_id": self.channel_id,
            "listen": f"{self.bind_host}:{self.port}",
            "queue_backend": self.queue_backend,
            "queue": (
                f"redis://{self.redis_host}:{self.redis_port}/{self.queue_name}"
                if self.queue_backend == "redis"
                else f"sqlite:{self.queue_state_file}#{self.queue_name}"
            ),
            "host_env": self.host_env,
            "log_dir": str(self.log_dir),
            "thread_prefix": self.thread_prefix,
            "thread_date_bucket": self.thread_date_bucket,
            "thread_auto_archive_minutes": self.thread_auto_archive_minutes,
            "retention_days": self.retention_days,
            "sweep_interval_seconds": self.sweep_interval_seconds,
            "max_frame_bytes": self.max_frame_bytes,
        }

    @classmethod
    def from_raw(
        cls,
        *,
        root: Path,
        raw: Optional[Mapping[str, Any]] = None,
        env: Optional[Mapping[str, str]] = None,
    ) -> "BridgeConfig":
        cfg: dict[str, Any] = dict(raw) if isinstance(raw, Mapping) else {}
        environ = os.environ if env is None else env
        for option, env_key in ENV_KEYS.items():
            value = environ.get(env_key)
            if value is not None and value.strip():
                cfg[option] = value.strip()

        client_token = _required_str(cfg, "client_token")
        client_id = _required_str(cfg, "client_id")
        channel_id = _required_str(cfg, "channel_id")

        queue_backend = str(cfg.get("queue_backend", "redis")).strip().lower()
        if queue_backend not in QUEUE_BACKENDS:
            raise BridgeConfigError(
                f"{ENV_KEYS['queue_backend']} must be one of {sorted(QUEUE_BACKENDS)}"
            )
        host_env = str(cfg.get("host_env", "local")).strip().lower()
        if host_env not in HOST_ENVS:
            raise BridgeConfigError(
                f"{ENV_KEYS['host_env']} must be one of {sorted(HOST_ENVS)}"
            )
        auto_archive = _parse_int(
            cfg, "thread_auto_archive_minutes", DEFAULT_AUTO_ARCHIVE_MINUTES
        )
        if auto_archive not in ALLOWED_AUTO_ARCHIVE_MINUTES:
            raise BridgeConfigError(
                f"{ENV_KEYS['thread_auto_archive_minutes']} must be one of "
                f"{list(ALLOWED_AUTO_ARCHIVE_MINUTES)}"
            )
        port = _parse_int(cfg, "port", DEFAULT_PORT, minimum=0)
        if port > 65535:
            raise BridgeConfigError(f"{ENV_KEYS['port']} must be <= 65535")
        thread_prefix = str(cfg.get("thread_prefix", DEFAULT_THREAD_PREFIX)).strip()
        if not thread_prefix:
            raise BridgeConfigError(f"{ENV_KEYS['thread_prefix']} must be non-empty")

        return cls(
            root=root,
            client_token=client_token,
            client_id=client_id,
            channel_id=channel_id,
            port=port,
            bind_host=str(cfg.get("bind_host", DEFAULT_BIND_HOST)).strip()
            or DEFAULT_BIND_HOST,
            redis_host=str(cfg.get("redis_host", DEFAULT_REDIS_HOST)).strip()
            or DEFAULT_REDIS_HOST,
            redis_port=_parse_int(cfg, "redis_port", DEFAULT_REDIS_PORT),
            queue_backend=queue_backend,
            queue_name=str(cfg.get("queue_name", DEFAULT_QUEUE_NAME)).strip()
            or DEFAULT_QUEUE_NAME,
            queue_state_file=_resolve_path(
                root, cfg.get("queue_state_file", DEFAULT_QUEUE_STATE_FILE)
            ),
            host_env=host_env,
            log_dir=_resolve_path(root, cfg.get("log_dir", DEFAULT_LOG_DIR)),
            log_level=parse_log_level(cfg.get("log_level")),
            thread_prefix=thread_prefix,
            thread_date_bucket=_parse_bool(cfg, "thread_date_bucket", True),
            thread_auto_archive_minutes=auto_archive,
            retention_days=_parse_int(cfg, "retention_days", DEFAULT_RETENTION_DAYS),
            sweep_interval_seconds=_parse_int(
                cfg, "sweep_interval_seconds", DEFAULT_SWEEP_INTERVAL_SECONDS
            ),
            max_frame_bytes=_parse_int(cfg, "max_frame_bytes", DEFAULT_MAX_FRAME_BYTES),
        )


def _required_str(cfg: Mapping[str, Any], option: str) -> str:
    value = cfg.get(option)
    text = str(value).strip() if value is not None else ""
    if not text:
        raise BridgeConfigError(f"Missing required setting {ENV_KEYS[option]}")
    return text


def _parse_int(
    cfg: Mapping[str, Any], option: str, default: int, *, minimum: int = 1
) -> int:
    value = cfg.get(option)
    if value is None:
        return default
    if isinstance(value, bool):
        raise BridgeConfigError(f"{ENV_KEYS[option]} must be an integer")
    try:
        parsed = int(value)
    except (TypeError, ValueError) as exc:
        raise BridgeConfigError(f"{ENV_KEYS[option]} must be an integer") from exc
    if parsed < minimum:
        raise BridgeConfigError(f"{ENV_KEYS[option]} must be >= {minimum}")
    return parsed


def _parse_bool(cfg: Mapping[str, Any], option: str, default: bool) -> bool:
    value = cfg.get(option)
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in {"1", "true", "yes", "on"}:
        return True
    if text in {"0", "false", "no", "off"}:
        return False
    raise BridgeConfigError(f"{ENV_KEYS[option]} must be a boolean")


def _resolve_path(root: Path, value: Any) -> Path:
    path = Path(str(value)).expanduser()
    if not path.is_absolute():
        path = root / path
    return path.resolve()


def load_dotenv_for_root(root: Path) -> None:
    """Load ``.env`` from the root without overriding the real environment."""
    candidate = root.resolve() / ".env"
    try:
        if candidate.is_file():
            load_dotenv(dotenv_path=candidate, override=False)
    except OSError as exc:
        logger.debug("Failed to load .env file: %s", exc)


def load_config_file(path: Path) -> dict[str, Any]:
    try:
        raw = yaml.safe_load(path.read_text(encoding="utf-8"))
    except (OSError, yaml.YAMLError) as exc:
        raise BridgeConfigError(f"Failed to read config file {path}: {exc}") from exc
    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise BridgeConfigError(f"Config file {path} must contain a mapping")
    section = raw.get("bridge", raw)
    if not isinstance(section, dict):
        raise BridgeConfigError(f"Config file {path}: 'bridge' must be a mapping")
    return section


def load_bridge_config(
    root: Optional[Path] = None,
    *,
    config_path: Optional[Path] = None,
    env: Optional[Mapping[str, str]] = None,
) -> BridgeConfig:
    root = (root or Path.cwd()).resolve()
    if env is None:
        load_dotenv_for_root(root)
    raw: dict[str, Any] = {}
    if config_path is not None:
        raw = load_config_file(config_path)
    elif (root / CONFIG_FILENAME).is_file():
        raw = load_config_file(root / CONFIG_FILENAME)
    return BridgeConfig.from_raw(root=root, raw=raw, env=env)


__all__ = [
    "BridgeConfig",
    "BridgeConfigError",
    "CONFIG_FILENAME",
    "ENV_KEYS",
    "load_bridge_config",
    "load_config_file",
    "load_dotenv_for_root",
]
