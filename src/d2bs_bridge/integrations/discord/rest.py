from __future__ import annotations

import asyncio
import logging
import random
from typing import Any, Optional
from urllib.parse import quote

import httpx

from ...core.logging_utils import log_event
from .constants import DISCORD_API_BASE_URL, DISCORD_PUBLIC_THREAD_TYPE
from .errors import (
    DiscordAPIError,
    DiscordNotFoundError,
    DiscordPermanentError,
    DiscordTransientError,
)

logger = logging.getLogger(__name__)

AUDIT_LOG_REASON_HEADER = "X-Audit-Log-Reason"
MAX_AUDIT_REASON_CHARS = 512

_RETRYABLE_NETWORK_ERRORS = (
    httpx.ConnectError,
    httpx.ReadError,
    httpx.WriteError,
    httpx.ConnectTimeout,
    httpx.ReadTimeout,
    httpx.WriteTimeout,
)


def parse_retry_after(response: httpx.Response) -> Optional[float]:
    raw = response.headers.get("Retry-After")
    if raw is None:
        return None
    try:
        return max(float(raw), 0.0)
    except ValueError:
        return 0.0


def _body_preview(response: httpx.Response) -> str:
    return (response.text or "").strip().replace("\n", " ")[:200]


class DiscordRestClient:
    """Minimal Discord REST client for thread and message endpoints.

    Rate limits honour ``Retry-After``; 5xx responses and connection errors
    are retried with jittered exponential backoff. Everything else is raised
    immediately as a ``DiscordAPIError`` subclass.
    """

    def __init__(
        self,
        *,
        bot_token: str,
        timeout_seconds: float = 10.0,
        base_url: str = DISCORD_API_BASE_URL,
        max_retries: int = 3,
        retry_base_delay: float = 1.0,
        retry_max_delay: float = 30.0,
    ) -> None:
        self._client = httpx.AsyncClient(base_url=base_url, timeout=timeout_seconds)
        self._authorization_header = f"Bot {bot_token}"
        self._max_retries = max_retries
        self._retry_base_delay = retry_base_delay
        self._retry_max_delay = retry_max_delay

    async def close(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> "DiscordRestClient":
        return self

    async def __aexit__(self, *_exc_info: object) -> None:
        await self.close()

    def _backoff_delay(self, attempt: int) -> float:
        delay = self._retry_base_delay * (2**attempt) + random.uniform(0, 1)
        return float(min(delay, self._retry_max_delay))

    def _headers(self, reason: Optional[str]) -> dict[str, str]:
        headers = {"Authorization": self._authorization_header}
        if reason:
            # Discord expects the audit reason URL-encoded.
            headers[AUDIT_LOG_REASON_HEADER] = quote(
                reason[:MAX_AUDIT_REASON_CHARS], safe=" "
            )
        return headers

    def _status_error(
        self, method: str, path: str, response: httpx.Response
    ) -> DiscordAPIError:
        status_code = response.status_code
        detail = f"{method} {path}: status={status_code} body={_body_preview(response)!r}"
        if status_code == 429:
            return DiscordTransientError(
                f"Discord API rate limit exceeded for {method} {path}",
                status_code=status_code,
                retry_after=parse_retry_after(response) or 0.0,
            )
        if status_code >= 500:
            return DiscordTransientError(
                f"Discord API server error for {detail}", status_code=status_code
            )
        if status_code in {401, 403}:
            return DiscordPermanentError(
                f"Discord API authentication failure for {detail}",
                status_code=status_code,
            )
        if status_code == 404:
            return DiscordNotFoundError(
                f"Discord resource not found for {detail}", status_code=status_code
            )
        return DiscordAPIError(
            f"Discord API request failed for {detail}", status_code=status_code
        )

    async def _request(
        self,
        method: str,
        path: str,
        *,
        payload: dict[str, Any] | None = None,
        params: dict[str, Any] | None = None,
        reason: Optional[str] = None,
        expect_json: bool = True,
    ) -> Any:
        rate_limited = 0
        failures = 0
        while True:
            try:
                response = await self._client.request(
                    method,
                    path,
                    json=payload,
                    params=params,
                    headers=self._headers(reason),
                )
            except httpx.HTTPError as exc:
                retryable = isinstance(exc, _RETRYABLE_NETWORK_ERRORS)
                if retryable and failures < self._max_retries:
                    failures += 1
                    delay = self._backoff_delay(failures)
                    log_event(
                        logger,
                        logging.WARNING,
                        "discord.rest.network_retry",
                        method=method,
                        path=path,
                        attempt=failures,
                        delay_seconds=round(delay, 2),
                        exc=exc,
                    )
                    await asyncio.sleep(delay)
                    continue
                raise DiscordTransientError(
                    f"Discord API network error for {method} {path}: {exc}"
                ) from exc

            if response.is_success:
                break
            error = self._status_error(method, path, response)
            retry_after = parse_retry_after(response)
            if (
                response.status_code == 429
                and retry_after is not None
                and rate_limited < self._max_retries
            ):
                rate_limited += 1
                log_event(
                    logger,
                    logging.INFO,
                    "discord.rest.rate_limited",
                    method=method,
                    path=path,
                    attempt=rate_limited,
                    retry_after=retry_after,
                )
                await asyncio.sleep(retry_after)
                continue
            if response.status_code >= 500 and failures < self._max_retries:
                failures += 1
                delay = self._backoff_delay(failures)
                log_event(
                    logger,
                    logging.WARNING,
                    "discord.rest.server_error_retry",
                    method=method,
                    path=path,
                    status_code=response.status_code,
                    attempt=failures,
                    delay_seconds=round(delay, 2),
                )
                await asyncio.sleep(delay)
                continue
            raise error

        if not expect_json:
            return None
        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError as exc:
            raise DiscordAPIError(
                f"Discord API returned non-JSON success response for {method} {path}"
            ) from exc

    async def get_gateway_bot(self) -> dict[str, Any]:
        payload = await self._request("GET", "/gateway/bot")
        return payload if isinstance(payload, dict) else {}

    async def get_channel(self, *, channel_id: str) -> dict[str, Any]:
        payload = await self._request("GET", f"/channels/{channel_id}")
        return payload if isinstance(payload, dict) else {}

    async def list_active_guild_threads(self, *, guild_id: str) -> list[dict[str, Any]]:
        payload = await self._request("GET", f"/guilds/{guild_id}/threads/active")
        threads = payload.get("threads") if isinstance(payload, dict) else None
        if not isinstance(threads, list):
            return []
        return [item for item in threads if isinstance(item, dict)]

    async def start_thread(
        self,
        *,
        channel_id: str,
        name: str,
        auto_archive_duration: int,
        reason: Optional[str] = None,
        thread_type: int = DISCORD_PUBLIC_THREAD_TYPE,
    ) -> dict[str, Any]:
        response = await self._request(
            "POST",
            f"/channels/{channel_id}/threads",
            payload={
                "name": name,
                "auto_archive_duration": auto_archive_duration,
                "type": thread_type,
            },
            reason=reason,
        )
        return response if isinstance(response, dict) else {}

    async def create_channel_message(
        self,
        *,
        channel_id: str,
        payload: dict[str, Any],
    ) -> dict[str, Any]:
        response = await self._request(
            "POST",
            f"/channels/{channel_id}/messages",
            payload=payload,
        )
        return response if isinstance(response, dict) else {}

    async def list_public_archived_threads(
        self,
        *,
        channel_id: str,
        before: Optional[str] = None,
        limit: int = 100,
    ) -> dict[str, Any]:
        params: dict[str, Any] = {"limit": limit}
        if before:
            params["before"] = before
        response = await self._request(
            "GET",
            f"/channels/{channel_id}/threads/archived/public",
            params=params,
        )
        return response if isinstance(response, dict) else {}

    async def delete_channel(
        self, *, channel_id: str, reason: Optional[str] = None
    ) -> None:
        await self._request(
            "DELETE",
            f"/channels/{channel_id}",
            reason=reason,
            expect_json=False,
        )


__all__ = ["AUDIT_LOG_REASON_HEADER", "DiscordRestClient", "parse_retry_after"]
