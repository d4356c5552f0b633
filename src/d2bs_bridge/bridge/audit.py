from __future__ import annotations

import logging
import sys
from pathlib import Path
from typing import Optional

from ..core.time_utils import now_utc

AUDIT_LOGGER_NAME = "d2bs_bridge.audit"
AUDIT_FILE_NAME = "connections.log"


class ConnectionAuditLog:
    """Append-only trail of every inbound chunk, one line per read."""

    def __init__(self, *, log_dir: Optional[Path], console: bool = False) -> None:
        self._logger = logging.getLogger(AUDIT_LOGGER_NAME)
        self._logger.setLevel(logging.INFO)
        self._logger.propagate = False
        self._handler: logging.Handler
        if console or log_dir is None:
            self._handler = logging.StreamHandler(sys.stdout)
        else:
            log_dir.mkdir(parents=True, exist_ok=True)
            self._handler = logging.FileHandler(
                log_dir / AUDIT_FILE_NAME, mode="a", encoding="utf-8"
            )
        self._handler.setFormatter(logging.Formatter("%(message)s"))
        self._logger.addHandler(self._handler)

    def record(self, remote_address: str, data: bytes) -> None:
        timestamp = now_utc().isoformat(timespec="milliseconds")
        text = data.decode("utf-8", errors="replace")
        self._logger.info("[%s] %s: %s", timestamp, remote_address, text)

    def close(self) -> None:
        self._logger.removeHandler(self._handler)
        self._handler.close()


__all__ = ["AUDIT_FILE_NAME", "ConnectionAuditLog"]
