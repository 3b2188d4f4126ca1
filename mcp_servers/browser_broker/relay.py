"""Native messaging host.

Launched by the browser side (Chrome's `connectNative()`, or the Python
extension host) with native framing on stdin/stdout. Bridges every frame to the
broker socket as `from_extension` lines and writes every `to_extension` line
back as a frame. Starts the broker when nobody is listening.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
from typing import Any

from .autostart import connect_to_broker
from .config import BrokerConfig, configure_logging
from .errors import BrokerError, FramingError
from .framing import STREAM_LIMIT, NativeMessageDecoder, encode_json_line, parse_json_line, write_native_fd

logger = logging.getLogger("mcp.browser_broker.relay")

_READ_CHUNK = 65536


class Relay:
    def __init__(self, config: BrokerConfig | None = None, *, stdin_fd: int = 0, stdout_fd: int = 1) -> None:
        self.config = config or BrokerConfig.from_env()
        self._stdin_fd = stdin_fd
        self._stdout_fd = stdout_fd
        self._stdout_lock = asyncio.Lock()
        self._broker_lock = asyncio.Lock()
        self._decoder = NativeMessageDecoder()

    async def _write_frame(self, msg: dict[str, Any]) -> None:
        async with self._stdout_lock:
            await asyncio.to_thread(write_native_fd, self._stdout_fd, msg)

    async def _send_broker(self, writer: asyncio.StreamWriter, msg: dict[str, Any]) -> None:
        async with self._broker_lock:
            writer.write(encode_json_line(msg))
            await writer.drain()

    async def _open_stdin(self) -> asyncio.StreamReader:
        loop = asyncio.get_running_loop()
        reader = asyncio.StreamReader(limit=STREAM_LIMIT)
        pipe = os.fdopen(self._stdin_fd, "rb", buffering=0, closefd=False)
        await loop.connect_read_pipe(lambda: asyncio.StreamReaderProtocol(reader), pipe)
        return reader

    async def _pump_native(self, stdin: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        while True:
            chunk = await stdin.read(_READ_CHUNK)
            if not chunk:
                logger.info("native stdin closed")
                return
            for msg in self._decoder.feed(chunk):
                await self._send_broker(writer, {"type": "from_extension", "message": msg})
            if self._decoder.closed:
                logger.info("native end-of-stream frame received")
                return

    async def _pump_broker(self, reader: asyncio.StreamReader) -> None:
        while True:
            line = await reader.readline()
            if not line:
                logger.info("broker closed the connection")
                return
            msg = parse_json_line(line)
            if msg is None:
                continue
            mtype = msg.get("type")
            if mtype == "to_extension" and isinstance(msg.get("message"), dict):
                await self._write_frame(msg["message"])
            elif mtype == "host_ready":
                await self._write_frame(msg)

    async def run(self) -> int:
        try:
            reader, writer = await connect_to_broker(self.config)
        except BrokerError as exc:
            logger.error("%s", exc)
            return 1

        stdin = await self._open_stdin()
        await self._send_broker(writer, {"type": "hello", "role": "native-host", "pid": os.getpid()})
        tasks = {
            asyncio.create_task(self._pump_native(stdin, writer)),
            asyncio.create_task(self._pump_broker(reader)),
        }
        code = 0
        try:
            done, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
            for task in pending:
                task.cancel()
            for task in done:
                exc = task.exception()
                if isinstance(exc, FramingError):
                    logger.error("native framing error: %s", exc)
                    code = 1
                elif exc is not None and not isinstance(exc, ConnectionError):
                    raise exc
        finally:
            writer.close()
            with contextlib.suppress(Exception):
                await writer.wait_closed()
        return code


def main() -> None:
    # Native messaging requires strict stdout framing. Never write logs to stdout.
    config = BrokerConfig.from_env()
    configure_logging(config)
    try:
        raise SystemExit(asyncio.run(Relay(config).run()))
    except KeyboardInterrupt:
        raise SystemExit(0) from None


if __name__ == "__main__":
    main()
