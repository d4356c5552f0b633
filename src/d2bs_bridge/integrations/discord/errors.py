from __future__ import annotations

from typing import Optional

from ...core.exceptions import PermanentError, TransientError


class DiscordError(Exception):
    """Base Discord integration error."""


class DiscordAPIError(DiscordError):
    """A Discord REST or gateway call failed.

    ``status_code`` is the HTTP status when the failure came from a response;
    ``retry_after`` is only set for rate limits.
    """

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        retry_after: Optional[float] = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.retry_after = retry_after


class DiscordNotFoundError(DiscordAPIError):
    """The channel, thread or message no longer exists."""


class DiscordTransientError(DiscordAPIError, TransientError):
    """Rate limited, 5xx, or the connection dropped; worth trying again."""


class DiscordPermanentError(DiscordAPIError, PermanentError):
    """The bot token or its permissions were rejected."""

    recoverable = PermanentError.recoverable
    severity = PermanentError.severity
