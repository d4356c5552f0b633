"""Discord REST and gateway clients used by the bridge."""

from .chunking import chunk_message
from .constants import (
    DEFAULT_INTENTS,
    DISCORD_API_BASE_URL,
    DISCORD_GATEWAY_URL,
    DISCORD_MAX_MESSAGE_LENGTH,
)
from .errors import (
    DiscordAPIError,
    DiscordError,
    DiscordNotFoundError,
    DiscordPermanentError,
    DiscordTransientError,
)
from .gateway import (
    DiscordGatewayClient,
    GatewayFrame,
    build_identify_payload,
    calculate_reconnect_backoff,
    parse_gateway_frame,
)
from .platform import DiscordChatPlatform, snowflake_time, thread_from_payload
from .rest import DiscordRestClient

__all__ = [
    "DEFAULT_INTENTS",
    "DISCORD_API_BASE_URL",
    "DISCORD_GATEWAY_URL",
    "DISCORD_MAX_MESSAGE_LENGTH",
    "DiscordAPIError",
    "DiscordChatPlatform",
    "DiscordError",
    "DiscordGatewayClient",
    "DiscordNotFoundError",
    "DiscordPermanentError",
    "DiscordRestClient",
    "DiscordTransientError",
    "GatewayFrame",
    "build_identify_payload",
    "calculate_reconnect_backoff",
    "chunk_message",
    "parse_gateway_frame",
    "snowflake_time",
    "thread_from_payload",
]
