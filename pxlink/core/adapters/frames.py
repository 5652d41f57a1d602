"""STOMP 1.2 frame codec."""

import re
from dataclasses import dataclass, field
from typing import Optional

from pxlink.core.domain.models import BusError

NULL = b"\x00"
HEARTBEAT = b"\n"

# Header values of these frames are sent verbatim
_UNESCAPED_COMMANDS = frozenset({"CONNECT", "CONNECTED"})

_ESCAPES = {"\\": "\\\\", "\r": "\\r", "\n": "\\n", ":": "\\c"}
_UNESCAPES = {"\\": "\\", "r": "\r", "n": "\n", "c": ":"}

_HEADER_END = re.compile(rb"\r?\n\r?\n")


class FrameError(BusError):
    """Malformed STOMP frame."""

    pass


def escape_header(value: str) -> str:
    return "".join(_ESCAPES.get(ch, ch) for ch in value)


def unescape_header(value: str) -> str:
    out: list[str] = []
    chars = iter(value)
    for ch in chars:
        if ch != "\\":
            out.append(ch)
            continue
        nxt = next(chars, "")
        if nxt not in _UNESCAPES:
            raise FrameError(f"Invalid header escape sequence: \\{nxt}")
        out.append(_UNESCAPES[nxt])
    return "".join(out)


@dataclass
class StompFrame:
    """A single STOMP frame."""

    command: str
    headers: dict[str, str] = field(default_factory=dict)
    body: bytes = b""

    def encode(self) -> bytes:
        """Serialize to wire bytes, adding ``content-length`` for non-empty bodies."""
        escape = self.command not in _UNESCAPED_COMMANDS
        headers = dict(self.headers)
        if self.body and "content-length" not in headers:
            headers["content-length"] = str(len(self.body))

        lines = [self.command]
        for key, value in headers.items():
            if escape:
                key, value = escape_header(key), escape_header(str(value))
            lines.append(f"{key}:{value}")
        head = ("\n".join(lines) + "\n\n").encode("utf-8")
        return head + self.body + NULL

    def text(self) -> str:
        return self.body.decode("utf-8")


def _decode_line(raw: bytes) -> str:
    try:
        return raw.rstrip(b"\r").decode("utf-8")
    except UnicodeDecodeError as e:
        raise FrameError(f"Frame header is not valid UTF-8: {e}") from e


def _parse_one(buffer: bytes) -> tuple[Optional[StompFrame], int]:
    """Parse the frame at the start of buffer. Returns (None, 0) if incomplete."""
    match = _HEADER_END.search(buffer)
    if match is None:
        return None, 0

    lines = buffer[: match.start()].split(b"\n")
    command = _decode_line(lines[0])
    if not command:
        raise FrameError("Frame has no command")
    escaped = command not in _UNESCAPED_COMMANDS

    headers: dict[str, str] = {}
    for raw in lines[1:]:
        line = _decode_line(raw)
        key, sep, value = line.partition(":")
        if not sep:
            raise FrameError(f"Invalid header line: {line!r}")
        if escaped:
            key, value = unescape_header(key), unescape_header(value)
        # Repeated headers: the first occurrence wins
        headers.setdefault(key, value)

    body_start = match.end()
    if "content-length" in headers:
        try:
            length = int(headers["content-length"])
        except ValueError:
            raise FrameError(f"Invalid content-length: {headers['content-length']}")
        end = body_start + length
        if len(buffer) < end + 1:
            return None, 0
        if buffer[end:end + 1] != NULL:
            raise FrameError("Frame body is not NULL terminated")
        return StompFrame(command, headers, buffer[body_start:end]), end + 1

    end = buffer.find(NULL, body_start)
    if end == -1:
        return None, 0
    return StompFrame(command, headers, buffer[body_start:end]), end + 1


class FrameParser:
    """
    Incremental frame parser.

    Feed it the payload of every WebSocket message; it returns the frames
    completed so far and drops heart-beat EOLs between frames.
    """

    def __init__(self) -> None:
        self._buffer = b""

    def feed(self, data: bytes) -> list[StompFrame]:
        self._buffer += data
        frames: list[StompFrame] = []
        while True:
            self._buffer = self._buffer.lstrip(b"\r\n")
            if not self._buffer:
                break
            frame, consumed = _parse_one(self._buffer)
            if frame is None:
                break
            frames.append(frame)
            self._buffer = self._buffer[consumed:]
        return frames

    def reset(self) -> None:
        self._buffer = b""


def decode(data: bytes) -> list[StompFrame]:
    """Decode every complete frame in data."""
    return FrameParser().feed(data)
