"""Wire framing for the two hops.

Native messaging (extension host <-> relay): 4-byte little-endian length prefix
followed by UTF-8 JSON. A zero-length frame means end of stream.

Broker socket (relay/client <-> broker): one JSON object per line.
"""

from __future__ import annotations

import json
import logging
import os
import struct
from typing import Any

from .errors import FramingError

logger = logging.getLogger("mcp.browser_broker.framing")

MAX_FRAME_BYTES = 8_000_000
# asyncio stream buffer limit for the line hop; screenshots travel as one line.
STREAM_LIMIT = 4 * MAX_FRAME_BYTES
_HEADER = struct.Struct("<I")


def _dumps(msg: dict[str, Any]) -> bytes:
    return json.dumps(msg, ensure_ascii=False, separators=(",", ":")).encode("utf-8")


def encode_native_message(msg: dict[str, Any]) -> bytes:
    raw = _dumps(msg)
    if len(raw) > MAX_FRAME_BYTES:
        raise FramingError(f"native frame too large: {len(raw)} bytes")
    return _HEADER.pack(len(raw)) + raw


END_OF_STREAM = _HEADER.pack(0)


class NativeMessageDecoder:
    """Resumable decoder: feed arbitrary chunks, get back every complete message.

    Partial headers and partial bodies stay buffered until the next `feed()`.
    Once a zero-length frame is seen `closed` becomes true and further input is
    ignored.
    """

    def __init__(self, *, max_frame_bytes: int = MAX_FRAME_BYTES) -> None:
        self._buf = bytearray()
        self._max = max_frame_bytes
        self.closed = False

    def feed(self, chunk: bytes) -> list[dict[str, Any]]:
        if self.closed:
            return []
        self._buf.extend(chunk)
        out: list[dict[str, Any]] = []
        while len(self._buf) >= _HEADER.size:
            (length,) = _HEADER.unpack_from(self._buf, 0)
            if length == 0:
                self.closed = True
                self._buf.clear()
                break
            if length > self._max:
                raise FramingError(f"invalid native frame length: {length}")
            end = _HEADER.size + length
            if len(self._buf) < end:
                break
            raw = bytes(self._buf[_HEADER.size : end])
            del self._buf[:end]
            try:
                obj = json.loads(raw.decode("utf-8"))
            except (UnicodeDecodeError, ValueError):
                logger.debug("dropping undecodable native frame (%d bytes)", length)
                continue
            if isinstance(obj, dict):
                out.append(obj)
        return out

    @property
    def pending_bytes(self) -> int:
        return len(self._buf)


def write_native_fd(fd: int, msg: dict[str, Any]) -> None:
    data = encode_native_message(msg)
    view = memoryview(data)
    while view:
        n = os.write(fd, view)
        view = view[n:]


def encode_json_line(msg: dict[str, Any]) -> bytes:
    return _dumps(msg) + b"\n"


class JsonLineParser:
    """Newline-delimited JSON with per-line recovery.

    A line that fails to parse (or is not an object) is dropped; the following
    lines are still delivered.
    """

    def __init__(self) -> None:
        self._buf = bytearray()
        self.dropped = 0

    def feed(self, chunk: bytes) -> list[dict[str, Any]]:
        self._buf.extend(chunk)
        out: list[dict[str, Any]] = []
        while True:
            idx = self._buf.find(b"\n")
            if idx < 0:
                break
            line = bytes(self._buf[:idx]).strip()
            del self._buf[: idx + 1]
            msg = parse_json_line(line)
            if msg is not None:
                out.append(msg)
            elif line:
                self.dropped += 1
        return out


def parse_json_line(line: bytes | str) -> dict[str, Any] | None:
    if isinstance(line, bytes):
        line = line.decode("utf-8", errors="replace")
    line = line.strip()
    if not line:
        return None
    try:
        obj = json.loads(line)
    except ValueError:
        logger.debug("dropping malformed line: %.200s", line)
        return None
    return obj if isinstance(obj, dict) else None
