"""Frame extraction for the d2bs TCP stream.

Clients write JSON objects, bare JSON strings, or newline-terminated plain
text onto the same socket with no length prefix, and a single read can carry
any number of partial or complete frames.

A frame starting with ``{`` or ``"`` is scanned as JSON. The scanner checks
object syntax as the bytes arrive (keys, colons, commas, nesting, string
escapes) and gives up at the first byte that cannot continue a JSON value,
or at a raw newline inside a string. A frame it gives up on, like a value
followed by more text on the same line, becomes plain text up to the end of
that line. Anything else is a text line closed by ``\\n``.

A JSON value is committed as soon as its closing byte arrives if nothing
follows it yet, so a client that sends one object per write is not kept
waiting for a newline. Whitespace between frames is skipped.

The scan position and parser state persist between reads, so every byte is
examined once however finely the stream is fragmented.
"""

from __future__ import annotations

import re
from typing import Optional

from .errors import FrameTooLarge

DEFAULT_MAX_FRAME_BYTES = 1024 * 1024

_OPEN_BRACE = ord("{")
_CLOSE_BRACE = ord("}")
_OPEN_BRACKET = ord("[")
_CLOSE_BRACKET = ord("]")
_QUOTE = ord('"')
_BACKSLASH = ord("\\")
_COLON = ord(":")
_COMMA = ord(",")
_NEWLINE = ord("\n")
_WHITESPACE = frozenset(b" \t\r\n")
_SCALAR_START = frozenset(b"-0123456789tfn")
_MATCHING_CLOSE = {_OPEN_BRACE: _CLOSE_BRACE, _OPEN_BRACKET: _CLOSE_BRACKET}
# Bytes that may follow a committed value on the same line.
_FRAME_FOLLOWERS = frozenset((_NEWLINE, _OPEN_BRACE, _QUOTE))

_BLANK = re.compile(rb"[ \t\r\n]+")
_INLINE_BLANK = re.compile(rb"[ \t\r]*")
_STRING_BODY = re.compile(rb'[^"\\\n]+')
_SCALAR_BODY = re.compile(rb"[A-Za-z0-9+\-.]*")

# What the frame scanner is in the middle of.
_IDLE = 0
_OBJECT = 1
_STRING = 2
_TRAILER = 3
_LINE = 4

# What an object or array accepts next.
_KEY_OR_END = 0
_KEY = 1
_COLON_NEXT = 2
_VALUE = 3
_VALUE_OR_END = 4
_COMMA_OR_END = 5


def _decode(chunk: bytes) -> str:
    return chunk.decode("utf-8", errors="replace")


def _text_lines(chunk: bytes) -> list[str]:
    lines: list[str] = []
    for index, line in enumerate(chunk.split(b"\n")):
        line = line.rstrip(b"\r")
        if index:
            line = line.lstrip(b" \t")
        if line.strip():
            lines.append(_decode(line))
    return lines


class FrameExtractor:
    """Per-connection buffer that turns raw reads into frames."""

    def __init__(self, max_frame_bytes: int = DEFAULT_MAX_FRAME_BYTES) -> None:
        if max_frame_bytes <= 0:
            raise ValueError("max_frame_bytes must be positive")
        self._max_frame_bytes = max_frame_bytes
        self._buffer = bytearray()
        self._reset_scan()

    def _reset_scan(self) -> None:
        # Offsets are relative to the start of the pending frame.
        self._pos = 0
        self._mode = _IDLE
        self._stack: list[int] = []
        self._expect = _VALUE
        self._in_string = False
        self._in_scalar = False
        self._escaped = False

    @property
    def pending(self) -> bytes:
        return bytes(self._buffer)

    def reset(self) -> None:
        self._buffer = bytearray()
        self._reset_scan()

    def feed(self, data: bytes) -> list[str]:
        buf = self._buffer
        buf += data
        frames: list[str] = []
        size = len(buf)
        start = 0
        value_end = 0
        # A value ending exactly at the end of the read is committed right away.
        while self._pos < size or self._mode == _TRAILER:
            mode = self._mode
            if mode == _IDLE:
                match = _BLANK.match(buf, self._pos)
                pos = match.end() if match else self._pos
                start = self._pos = pos
                if pos >= size:
                    break
                byte = buf[pos]
                self._pos = pos + 1
                if byte == _OPEN_BRACE:
                    self._mode = _OBJECT
                    self._stack = [byte]
                    self._expect = _KEY_OR_END
                elif byte == _QUOTE:
                    self._mode = _STRING
                else:
                    self._mode = _LINE
            elif mode == _LINE:
                newline = buf.find(b"\n", self._pos)
                if newline == -1:
                    self._pos = size
                    break
                frames.extend(_text_lines(bytes(buf[start:newline])))
                self._mode = _IDLE
                start = self._pos = newline + 1
            elif mode == _TRAILER:
                pos = _INLINE_BLANK.match(buf, self._pos).end()
                if pos < size and buf[pos] not in _FRAME_FOLLOWERS:
                    # More text on the line: the value was part of it.
                    self._mode = _LINE
                    self._pos = pos
                    continue
                frames.append(_decode(bytes(buf[start:value_end])))
                self._mode = _IDLE
                start = self._pos = pos
            else:
                if mode == _STRING:
                    pos, closed = self._scan_string(buf, self._pos)
                else:
                    pos, closed = self._scan_object(buf, self._pos)
                self._pos = pos
                if closed is None:
                    break
                if closed:
                    self._mode = _TRAILER
                    value_end = pos
                else:
                    self._reset_value_state()
                    self._mode = _LINE

        if start:
            del buf[:start]
            self._pos -= start
        if len(buf) > self._max_frame_bytes:
            buffered = len(buf)
            self.reset()
            raise FrameTooLarge(buffered, self._max_frame_bytes, frames=frames)
        return frames

    def _reset_value_state(self) -> None:
        self._stack = []
        self._in_string = False
        self._in_scalar = False
        self._escaped = False

    def _scan_string(self, buf: bytearray, pos: int) -> tuple[int, Optional[bool]]:
        """Advance through a string body.

        Returns ``True`` past the closing quote, ``False`` at a raw newline,
        ``None`` when the buffer ran out first.
        """
        size = len(buf)
        while pos < size:
            if self._escaped:
                if buf[pos] == _NEWLINE:
                    return pos, False
                self._escaped = False
                pos += 1
                continue
            match = _STRING_BODY.match(buf, pos)
            if match:
                pos = match.end()
                continue
            byte = buf[pos]
            if byte == _QUOTE:
                return pos + 1, True
            if byte == _BACKSLASH:
                self._escaped = True
                pos += 1
                continue
            return pos, False
        return pos, None

    def _scan_object(self, buf: bytearray, pos: int) -> tuple[int, Optional[bool]]:
        size = len(buf)
        while pos < size:
            if self._in_string:
                pos, closed = self._scan_string(buf, pos)
                if not closed:
                    return pos, closed
                self._in_string = False
                continue
            if self._in_scalar:
                pos = _SCALAR_BODY.match(buf, pos).end()
                if pos >= size:
                    return pos, None
                self._in_scalar = False
                continue
            byte = buf[pos]
            if byte in _WHITESPACE:
                pos = _BLANK.match(buf, pos).end()
                continue
            expect = self._expect
            pos += 1
            if expect in (_KEY_OR_END, _KEY) and byte == _QUOTE:
                self._in_string = True
                self._expect = _COLON_NEXT
            elif expect == _COLON_NEXT and byte == _COLON:
                self._expect = _VALUE
            elif expect in (_VALUE, _VALUE_OR_END) and byte == _QUOTE:
                self._in_string = True
                self._expect = _COMMA_OR_END
            elif expect in (_VALUE, _VALUE_OR_END) and byte in _MATCHING_CLOSE:
                self._stack.append(byte)
                self._expect = _KEY_OR_END if byte == _OPEN_BRACE else _VALUE_OR_END
            elif expect in (_VALUE, _VALUE_OR_END) and byte in _SCALAR_START:
                self._in_scalar = True
                self._expect = _COMMA_OR_END
            elif expect == _COMMA_OR_END and byte == _COMMA:
                self._expect = _KEY if self._stack[-1] == _OPEN_BRACE else _VALUE
            elif (
                expect in (_KEY_OR_END, _VALUE_OR_END, _COMMA_OR_END)
                and byte == _MATCHING_CLOSE[self._stack[-1]]
            ):
                self._stack.pop()
                if not self._stack:
                    return pos, True
                self._expect = _COMMA_OR_END
            else:
                return pos - 1, False
        return pos, None


def split_frames(buffer: bytes) -> tuple[list[str], bytes]:
    """Split ``buffer`` into complete frames and the unconsumed remainder."""
    extractor = FrameExtractor(max_frame_bytes=len(buffer) + 1)
    frames = extractor.feed(buffer)
    return frames, extractor.pending


__all__ = ["DEFAULT_MAX_FRAME_BYTES", "FrameExtractor", "split_frames"]
