"""Async Chrome DevTools Protocol plumbing for the extension host.

`/json/*` discovery endpoints are plain HTTP (urllib, run in a worker thread);
target sessions are websocket connections (`websockets`).
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from collections.abc import Callable
from typing import Any
from urllib.error import URLError
from urllib.parse import quote
from urllib.request import Request, urlopen

import websockets

from .errors import RequestTimeoutError, UpstreamDisconnectedError
from .pending import PendingTable

logger = logging.getLogger("mcp.browser_broker.cdp")

DEFAULT_CDP_TIMEOUT = 30.0
_MAX_EVENT_QUEUE = 2000


class CdpError(Exception):
    """A DevTools command returned an error object."""

    def __init__(self, method: str, error: dict[str, Any]) -> None:
        self.method = method
        self.error = error
        self.code = error.get("code")
        super().__init__(f"{method}: {error.get('message') or error}")


def _http_json(url: str, *, method: str = "GET", timeout: float = 2.0) -> Any:
    req = Request(url, method=method, headers={"User-Agent": "browser-broker"})
    try:
        with urlopen(req, timeout=timeout) as resp:
            payload = resp.read()
    except (URLError, TimeoutError, OSError) as exc:
        raise UpstreamDisconnectedError(f"DevTools endpoint not reachable at {url}: {exc}") from exc
    text = payload.decode("utf-8", errors="replace").strip()
    if not text:
        return None
    try:
        return json.loads(text)
    except ValueError:
        return text


class DevToolsEndpoint:
    """The browser's remote-debugging HTTP endpoint (`http://host:port`)."""

    def __init__(self, base_url: str, *, timeout: float = 2.0) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    async def _get(self, path: str, *, method: str = "GET") -> Any:
        return await asyncio.to_thread(_http_json, f"{self.base_url}{path}", method=method, timeout=self.timeout)

    async def version(self) -> dict[str, Any]:
        data = await self._get("/json/version")
        return data if isinstance(data, dict) else {}

    async def list_targets(self) -> list[dict[str, Any]]:
        data = await self._get("/json/list")
        return [t for t in data if isinstance(t, dict)] if isinstance(data, list) else []

    async def list_pages(self) -> list[dict[str, Any]]:
        return [t for t in await self.list_targets() if t.get("type") == "page"]

    async def activate(self, target_id: str) -> None:
        await self._get(f"/json/activate/{quote(target_id, safe='')}")

    async def browser_ws_url(self) -> str:
        ws_url = (await self.version()).get("webSocketDebuggerUrl")
        if not isinstance(ws_url, str) or not ws_url:
            raise UpstreamDisconnectedError("DevTools browser websocket URL not found")
        return ws_url


class EventWaiter:
    """Interest in one DevTools event, registered before the command that triggers it."""

    def __init__(self, conn: CdpConnection, method: str, predicate: Callable[[dict[str, Any]], bool]) -> None:
        self.method = method
        self.predicate = predicate
        self.future: asyncio.Future = asyncio.get_running_loop().create_future()
        self._conn = conn

    def offer(self, method: str, params: dict[str, Any]) -> bool:
        if method != self.method or self.future.done() or not self.predicate(params):
            return False
        self.future.set_result(params)
        return True

    async def wait(self, *, timeout: float) -> dict[str, Any]:
        try:
            return await asyncio.wait_for(self.future, timeout=timeout)
        except asyncio.TimeoutError:
            raise RequestTimeoutError(f"Timed out waiting for {self.method}") from None
        finally:
            self.cancel()

    def cancel(self) -> None:
        self._conn._drop_waiter(self)
        if not self.future.done():
            self.future.cancel()


class CdpConnection:
    """One DevTools websocket (browser or page target).

    Commands are correlated by id through a `PendingTable`; events are queued
    (bounded) and handed to waiters registered with `wait_for_event` or
    `expect_event`.
    """

    def __init__(self, ws_url: str, *, timeout: float = DEFAULT_CDP_TIMEOUT) -> None:
        self.ws_url = ws_url
        self.timeout = timeout
        self._ws: Any = None
        self._reader: asyncio.Task | None = None
        self._pending = PendingTable()
        self._events: list[dict[str, Any]] = []
        self._waiters: list[EventWaiter] = []
        self.closed = False

    @classmethod
    async def open(cls, ws_url: str, *, timeout: float = DEFAULT_CDP_TIMEOUT) -> CdpConnection:
        conn = cls(ws_url, timeout=timeout)
        conn._ws = await websockets.connect(ws_url, max_size=None, ping_interval=None)
        conn._reader = asyncio.create_task(conn._read_loop())
        return conn

    async def _read_loop(self) -> None:
        try:
            async for raw in self._ws:
                try:
                    msg = json.loads(raw)
                except ValueError:
                    continue
                if not isinstance(msg, dict):
                    continue
                if "id" in msg:
                    if "error" in msg and isinstance(msg["error"], dict):
                        self._pending.fail(msg["id"], CdpError("cdp", msg["error"]))
                    else:
                        self._pending.resolve(msg["id"], msg.get("result") or {})
                elif isinstance(msg.get("method"), str):
                    self._push_event(msg)
        except websockets.ConnectionClosed:
            pass
        finally:
            self.closed = True
            logger.debug("devtools connection closed url=%s", self.ws_url)
            self._pending.fail_all(lambda: UpstreamDisconnectedError("DevTools connection closed"))
            for waiter in self._waiters:
                if not waiter.future.done():
                    waiter.future.set_exception(UpstreamDisconnectedError("DevTools connection closed"))
            self._waiters.clear()

    def _push_event(self, event: dict[str, Any]) -> None:
        params = event.get("params") if isinstance(event.get("params"), dict) else {}
        for waiter in list(self._waiters):
            if waiter.offer(event["method"], params):
                self._waiters.remove(waiter)
                return
        self._events.append(event)
        if len(self._events) > _MAX_EVENT_QUEUE:
            del self._events[: len(self._events) - _MAX_EVENT_QUEUE]

    async def send(self, method: str, params: dict[str, Any] | None = None, *, timeout: float | None = None) -> dict[str, Any]:
        if self.closed or self._ws is None:
            raise UpstreamDisconnectedError("DevTools connection closed")
        entry = self._pending.create()
        payload: dict[str, Any] = {"id": entry.id, "method": method}
        if params:
            payload["params"] = params
        await self._ws.send(json.dumps(payload))
        try:
            return await self._pending.wait(entry, timeout or self.timeout, message=f"DevTools command timed out: {method}")
        except CdpError as exc:
            raise CdpError(method, exc.error) from None

    def pop_event(self, method: str, predicate: Callable[[dict[str, Any]], bool] | None = None) -> dict[str, Any] | None:
        for i, ev in enumerate(self._events):
            params = ev.get("params") if isinstance(ev.get("params"), dict) else {}
            if ev.get("method") == method and (predicate is None or predicate(params)):
                self._events.pop(i)
                return params
        return None

    async def wait_for_event(
        self, method: str, predicate: Callable[[dict[str, Any]], bool] | None = None, *, timeout: float
    ) -> dict[str, Any]:
        pred = predicate or (lambda _params: True)
        queued = self.pop_event(method, pred)
        if queued is not None:
            return queued
        waiter = EventWaiter(self, method, pred)
        self._waiters.append(waiter)
        return await waiter.wait(timeout=timeout)

    def expect_event(self, method: str, predicate: Callable[[dict[str, Any]], bool] | None = None) -> EventWaiter:
        """Register for the next `method` event before sending the command that causes it.

        Already-queued events of that kind belong to earlier commands and are dropped.
        """
        pred = predicate or (lambda _params: True)
        self._events = [
            ev
            for ev in self._events
            if not (ev.get("method") == method and pred(ev.get("params") if isinstance(ev.get("params"), dict) else {}))
        ]
        waiter = EventWaiter(self, method, pred)
        if self.closed:
            waiter.future.set_exception(UpstreamDisconnectedError("DevTools connection closed"))
        else:
            self._waiters.append(waiter)
        return waiter

    def _drop_waiter(self, waiter: EventWaiter) -> None:
        if waiter in self._waiters:
            self._waiters.remove(waiter)

    async def close(self) -> None:
        self.closed = True
        if self._ws is not None:
            with contextlib.suppress(Exception):
                await self._ws.close()
        if self._reader is not None:
            with contextlib.suppress(asyncio.CancelledError, Exception):
                await self._reader
