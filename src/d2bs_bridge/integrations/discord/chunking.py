from __future__ import annotations

from .constants import DISCORD_MAX_MESSAGE_LENGTH


def _cut_point(text: str, limit: int) -> int:
    cut = text.rfind("\n", 0, limit + 1)
    if cut <= 0:
        cut = text.rfind(" ", 0, limit + 1)
    if cut <= 0:
        cut = limit
    return cut


def chunk_message(text: str, *, max_len: int = DISCORD_MAX_MESSAGE_LENGTH) -> list[str]:
    """Split ``text`` into pieces Discord accepts, preferring line then word breaks."""
    if max_len <= 0:
        raise ValueError("max_len must be positive")
    if not text:
        return []
    chunks: list[str] = []
    remaining = text
    while len(remaining) > max_len:
        cut = _cut_point(remaining, max_len)
        chunks.append(remaining[:cut])
        remaining = remaining[cut:]
        # Drop the single separator the cut landed on.
        if remaining[:1] in ("\n", " "):
            remaining = remaining[1:]
    if remaining:
        chunks.append(remaining)
    return chunks
