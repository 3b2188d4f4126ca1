from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import uuid
from typing import Any

from .autostart import connect_to_broker
from .config import BrokerConfig
from .errors import BrokerError, UpstreamDisconnectedError
from .framing import encode_json_line, parse_json_line
from .pending import PendingTable

logger = logging.getLogger("mcp.browser_broker.client")


def new_session_id() -> str:
    return f"session-{uuid.uuid4().hex[:12]}"


class BrokerClient:
    """One client session: a single broker connection plus request correlation.

    Connects lazily (starting the broker if needed) and reconnects on the next
    request after the broker goes away. Claims are released by the broker when
    this connection closes.
    """

    def __init__(
        self,
        config: BrokerConfig | None = None,
        *,
        session_id: str | None = None,
        autostart: bool = True,
    ) -> None:
        self.config = config or BrokerConfig.from_env()
        self.session_id = session_id or new_session_id()
        self._autostart = autostart
        self._pending = PendingTable()
        self._writer: asyncio.StreamWriter | None = None
        self._reader_task: asyncio.Task | None = None
        self._connect_lock = asyncio.Lock()
        self._write_lock = asyncio.Lock()

    @property
    def connected(self) -> bool:
        return self._writer is not None

    async def connect(self) -> None:
        async with self._connect_lock:
            if self._writer is not None:
                return
            reader, writer = await connect_to_broker(self.config, autostart=self._autostart)
            hello = {"type": "hello", "role": "plugin", "sessionId": self.session_id, "pid": os.getpid()}
            writer.write(encode_json_line(hello))
            await writer.drain()
            self._writer = writer
            self._reader_task = asyncio.create_task(self._read_loop(reader, writer))
            logger.info("connected to broker session=%s", self.session_id)

    async def _read_loop(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        try:
            while True:
                try:
                    line = await reader.readline()
                except (ConnectionError, ValueError):
                    break
                if not line:
                    break
                msg = parse_json_line(line)
                if msg is None or msg.get("type") != "response":
                    continue
                if msg.get("ok"):
                    self._pending.resolve(msg.get("id"), msg.get("data"))
                else:
                    self._pending.fail(msg.get("id"), BrokerError(str(msg.get("error") or "Broker request failed")))
        finally:
            if self._writer is writer:
                self._writer = None
            self._pending.fail_all(lambda: UpstreamDisconnectedError("Broker connection closed"))
            with contextlib.suppress(Exception):
                writer.close()

    async def request(self, op: str, **fields: Any) -> Any:
        await self.connect()
        writer = self._writer
        if writer is None:
            raise UpstreamDisconnectedError("Broker connection closed")
        entry = self._pending.create(session_id=self.session_id)
        payload = {"type": "request", "id": entry.id, "op": op, **fields}
        try:
            async with self._write_lock:
                writer.write(encode_json_line(payload))
                await writer.drain()
        except OSError:
            self._pending.fail(entry.id, UpstreamDisconnectedError("Broker connection closed"))
        return await self._pending.wait(
            entry, self.config.request_timeout, message="Timed out waiting for broker response"
        )

    async def status(self) -> dict[str, Any]:
        return await self.request("status")

    async def list_claims(self) -> list[dict[str, Any]]:
        data = await self.request("list_claims")
        return list((data or {}).get("claims") or [])

    async def claim_tab(self, tab_id: int, *, force: bool = False) -> dict[str, Any]:
        return await self.request("claim_tab", tabId=tab_id, force=force)

    async def release_tab(self, tab_id: int) -> dict[str, Any]:
        return await self.request("release_tab", tabId=tab_id)

    async def tool(self, name: str, args: dict[str, Any] | None = None) -> Any:
        return await self.request("tool", tool=name, args=dict(args or {}))

    async def close(self) -> None:
        writer = self._writer
        self._writer = None
        if writer is not None:
            writer.close()
            with contextlib.suppress(Exception):
                await writer.wait_closed()
        if self._reader_task is not None:
            with contextlib.suppress(asyncio.CancelledError, Exception):
                await self._reader_task
            self._reader_task = None
