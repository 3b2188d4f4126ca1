"""Extension host: the browser-side end of the native messaging port.

Attaches to the user's browser over its remote-debugging endpoint and opens a
native port exactly the way the browser does for `connectNative()`: it spawns
the relay as a child process and speaks length-prefixed frames on the child's
stdin/stdout. Each `tool_request` runs concurrently through the
`ToolExecutor`; the reply is a `tool_response` carrying either `result` or
`error.content`. The port is re-opened with backoff whenever the relay exits.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import sys
from typing import Any

from .cdp import DevToolsEndpoint
from .config import BrokerConfig, configure_logging
from .errors import BrokerError, UpstreamDisconnectedError
from .executor import ToolExecutor
from .framing import END_OF_STREAM, NativeMessageDecoder, encode_native_message
from .paths import default_download_dir
from .tabs import CdpBrowser

logger = logging.getLogger("mcp.browser_broker.extension_host")

KEEPALIVE_S = 20.0
_BACKOFF_START_S = 1.0
_BACKOFF_MAX_S = 30.0


class NativePort:
    """A native messaging port to a spawned relay process."""

    def __init__(self, proc: asyncio.subprocess.Process) -> None:
        self.proc = proc
        self._decoder = NativeMessageDecoder()
        self._write_lock = asyncio.Lock()

    @classmethod
    async def open(cls, argv: list[str]) -> NativePort:
        proc = await asyncio.create_subprocess_exec(
            *argv,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
        )
        return cls(proc)

    async def post(self, msg: dict[str, Any]) -> None:
        if self.proc.stdin is None or self.proc.stdin.is_closing():
            raise UpstreamDisconnectedError("Native port is closed")
        async with self._write_lock:
            self.proc.stdin.write(encode_native_message(msg))
            await self.proc.stdin.drain()

    async def messages(self):  # noqa: ANN201
        if self.proc.stdout is None:
            raise UpstreamDisconnectedError("Native port has no output stream")
        while True:
            chunk = await self.proc.stdout.read(65536)
            if not chunk:
                return
            for msg in self._decoder.feed(chunk):
                yield msg
            if self._decoder.closed:
                return

    async def disconnect(self) -> None:
        if self.proc.stdin is not None and not self.proc.stdin.is_closing():
            with contextlib.suppress(ConnectionError):
                self.proc.stdin.write(END_OF_STREAM)
                await self.proc.stdin.drain()
            self.proc.stdin.close()
        try:
            await asyncio.wait_for(self.proc.wait(), timeout=2.0)
        except asyncio.TimeoutError:
            self.proc.kill()
            await self.proc.wait()


def relay_argv() -> list[str]:
    return [sys.executable, "-m", "mcp_servers.browser_broker.relay"]


class ExtensionHost:
    def __init__(self, executor: ToolExecutor, *, argv: list[str] | None = None) -> None:
        self.executor = executor
        self.argv = argv or relay_argv()
        self._tasks: set[asyncio.Task] = set()

    async def handle_request(self, port: NativePort, msg: dict[str, Any]) -> None:
        req_id = msg.get("id")
        try:
            result = await self.executor.execute(msg.get("tool"), msg.get("args"))
            reply: dict[str, Any] = {"type": "tool_response", "id": req_id, "result": result}
        except BrokerError as exc:
            reply = {"type": "tool_response", "id": req_id, "error": {"content": str(exc)}}
        except Exception as exc:
            logger.exception("tool %s failed", msg.get("tool"))
            reply = {"type": "tool_response", "id": req_id, "error": {"content": str(exc) or type(exc).__name__}}
        try:
            await port.post(reply)
        except (ConnectionError, BrokerError):
            logger.info("port closed before response id=%s", req_id)

    async def _keepalive(self, port: NativePort) -> None:
        while True:
            await asyncio.sleep(KEEPALIVE_S)
            await port.post({"type": "ping"})

    async def serve_port(self, port: NativePort) -> None:
        keepalive = asyncio.create_task(self._keepalive(port))
        try:
            async for msg in port.messages():
                mtype = msg.get("type")
                if mtype == "tool_request":
                    task = asyncio.create_task(self.handle_request(port, msg))
                    self._tasks.add(task)
                    task.add_done_callback(self._tasks.discard)
                elif mtype == "host_ready":
                    logger.info("broker ready claims=%d", len(msg.get("claims") or []))
                else:
                    logger.debug("ignoring native message type=%r", mtype)
        finally:
            keepalive.cancel()
            with contextlib.suppress(asyncio.CancelledError, ConnectionError, UpstreamDisconnectedError):
                await keepalive

    async def run(self) -> int:
        backoff = _BACKOFF_START_S
        while True:
            port = await NativePort.open(self.argv)
            logger.info("native port open pid=%s", port.proc.pid)
            started = asyncio.get_running_loop().time()
            try:
                await self.serve_port(port)
            finally:
                await port.disconnect()
            logger.info("native port closed code=%s", port.proc.returncode)
            if asyncio.get_running_loop().time() - started > _BACKOFF_MAX_S:
                backoff = _BACKOFF_START_S
            await asyncio.sleep(backoff)
            backoff = min(backoff * 2, _BACKOFF_MAX_S)


async def _amain(config: BrokerConfig) -> int:
    browser = CdpBrowser(DevToolsEndpoint(config.cdp_url))
    executor = ToolExecutor(browser, download_dir=config.download_dir or default_download_dir())
    try:
        return await ExtensionHost(executor).run()
    finally:
        await browser.close()


def main() -> None:
    config = BrokerConfig.from_env()
    configure_logging(config)
    try:
        raise SystemExit(asyncio.run(_amain(config)))
    except KeyboardInterrupt:
        raise SystemExit(0) from None


if __name__ == "__main__":
    main()
