"""Shared-browser broker.

One long-lived process per user. Client sessions (role `plugin`) and the native
messaging relay (role `native-host`) connect to the same unix socket and speak
newline-delimited JSON. The broker owns all cross-session state: tab claims,
per-session default tabs and the table of requests in flight to the extension.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import signal
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from .claims import ClaimTable
from .config import BrokerConfig, configure_logging
from .errors import (
    BrokerError,
    InvalidRequestError,
    OwnershipConflictError,
    TransportError,
    UpstreamDisconnectedError,
)
from .framing import STREAM_LIMIT, encode_json_line, parse_json_line
from .pending import PendingTable
from .tools import tool_spec

logger = logging.getLogger("mcp.browser_broker.broker")

ROLE_NATIVE_HOST = "native-host"
ROLE_CLIENT = "plugin"

NO_DEFAULT_TAB_HINT = "No default tab for this session; open a new tab or claim one"


@dataclass(slots=True)
class _Conn:
    conn_id: int
    role: str
    writer: asyncio.StreamWriter
    session_id: str | None = None
    pid: int | None = None
    write_lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    closed: bool = False


def _parse_tab_id(raw: Any) -> int:
    if isinstance(raw, bool):
        raise InvalidRequestError("tabId must be an integer")
    if isinstance(raw, int):
        return raw
    if isinstance(raw, str) and raw.strip().lstrip("-").isdigit():
        return int(raw.strip())
    raise InvalidRequestError("tabId must be an integer")


class Broker:
    def __init__(self, config: BrokerConfig | None = None, *, clock: Callable[[], int] | None = None) -> None:
        self.config = config or BrokerConfig.from_env()
        if clock is None:
            self.claims = ClaimTable(ttl_ms=self.config.claim_ttl_ms)
        else:
            self.claims = ClaimTable(ttl_ms=self.config.claim_ttl_ms, clock=clock)
        self._pending = PendingTable()
        self._upstream: _Conn | None = None
        self._clients: dict[int, _Conn] = {}
        self._next_conn_id = 1
        self._server: asyncio.AbstractServer | None = None
        self._sweep_task: asyncio.Task | None = None
        self._tasks: set[asyncio.Task] = set()

    @property
    def host_connected(self) -> bool:
        return self._upstream is not None and not self._upstream.closed

    # -- lifecycle --------------------------------------------------------

    async def start(self) -> None:
        path = self.config.socket_path
        path.parent.mkdir(parents=True, exist_ok=True)
        if path.exists():
            if await _socket_in_use(str(path)):
                raise BrokerError(f"Another broker is already listening on {path}")
            path.unlink()
        self._server = await asyncio.start_unix_server(self._handle_connection, path=str(path), limit=STREAM_LIMIT)
        with contextlib.suppress(OSError):
            os.chmod(path, 0o600)
        if self.config.leases_enabled:
            self._sweep_task = asyncio.create_task(self._sweep_loop())
        logger.info(
            "broker listening socket=%s ttl_ms=%d sweep_ms=%s",
            path,
            self.config.claim_ttl_ms,
            self.config.sweep_interval_ms if self.config.leases_enabled else "off",
        )

    async def close(self) -> None:
        if self._sweep_task is not None:
            self._sweep_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._sweep_task
            self._sweep_task = None
        for task in list(self._tasks):
            task.cancel()
        conns = list(self._clients.values())
        if self._upstream is not None:
            conns.append(self._upstream)
        for conn in conns:
            conn.closed = True
            conn.writer.close()
        self._pending.fail_all(lambda: UpstreamDisconnectedError("Broker shutting down"))
        if self._server is not None:
            self._server.close()
            await self._server.wait_closed()
            self._server = None
        with contextlib.suppress(FileNotFoundError):
            self.config.socket_path.unlink()

    async def run(self) -> int:
        try:
            await self.start()
        except BrokerError as exc:
            logger.info("%s; exiting", exc)
            return 0
        stop = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            with contextlib.suppress(NotImplementedError, RuntimeError):
                loop.add_signal_handler(sig, stop.set)
        try:
            await stop.wait()
        finally:
            await self.close()
        return 0

    async def _sweep_loop(self) -> None:
        interval = self.config.sweep_interval_ms / 1000.0
        while True:
            await asyncio.sleep(interval)
            self.sweep()

    def sweep(self) -> None:
        report = self.claims.sweep()
        for claim in report.released:
            logger.info("lease expired tab=%d session=%s", claim.tab_id, claim.session_id)
        if report.sessions_dropped:
            logger.debug("dropped idle sessions: %s", ", ".join(report.sessions_dropped))

    # -- connections ------------------------------------------------------

    async def _send(self, conn: _Conn, payload: dict[str, Any]) -> None:
        if conn.closed:
            raise UpstreamDisconnectedError("Connection closed")
        async with conn.write_lock:
            conn.writer.write(encode_json_line(payload))
            await conn.writer.drain()

    async def _handle_connection(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        conn: _Conn | None = None
        try:
            while True:
                try:
                    line = await reader.readline()
                except (ConnectionError, asyncio.IncompleteReadError, ValueError) as exc:
                    logger.debug("connection read failed: %s", exc)
                    break
                if not line:
                    break
                msg = parse_json_line(line)
                if msg is None:
                    continue
                if conn is None:
                    if msg.get("type") != "hello":
                        logger.debug("ignoring %r before hello", msg.get("type"))
                        continue
                    conn = await self._register(msg, writer)
                    if conn is None:
                        break
                    continue
                if conn.role == ROLE_NATIVE_HOST:
                    await self._on_upstream_message(conn, msg)
                else:
                    self._spawn(self._on_client_message(conn, msg))
        finally:
            if conn is not None:
                self._on_disconnect(conn)
            with contextlib.suppress(Exception):
                writer.close()

    def _spawn(self, coro) -> None:  # noqa: ANN001
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _register(self, hello: dict[str, Any], writer: asyncio.StreamWriter) -> _Conn | None:
        role = str(hello.get("role") or "")
        conn_id = self._next_conn_id
        self._next_conn_id += 1

        if role == ROLE_NATIVE_HOST:
            conn = _Conn(conn_id=conn_id, role=role, writer=writer)
            previous = self._upstream
            self._upstream = conn
            if previous is not None and not previous.closed:
                # The newest native host is authoritative.
                failed = self._pending.fail_where(
                    lambda entry: entry.upstream is previous,
                    lambda: UpstreamDisconnectedError("Native host replaced by a newer connection"),
                )
                logger.info("native host replaced conn=%d failed_pending=%d", previous.conn_id, failed)
                previous.closed = True
                previous.writer.close()
            logger.info("native host connected conn=%d", conn_id)
            with contextlib.suppress(ConnectionError, TransportError):
                await self._send(conn, {"type": "host_ready", "claims": self.claims.snapshot()})
            return conn

        if role == ROLE_CLIENT:
            session_id = str(hello.get("sessionId") or "").strip()
            if not session_id:
                logger.info("rejecting client hello without sessionId")
                return None
            pid = hello.get("pid") if isinstance(hello.get("pid"), int) else None
            conn = _Conn(conn_id=conn_id, role=role, writer=writer, session_id=session_id, pid=pid)
            self._clients[conn_id] = conn
            self.claims.touch_session(session_id)
            logger.info("client connected conn=%d session=%s pid=%s", conn_id, session_id, pid)
            return conn

        logger.info("rejecting hello with unknown role %r", role)
        return None

    def _on_disconnect(self, conn: _Conn) -> None:
        conn.closed = True
        if conn.role == ROLE_NATIVE_HOST:
            if self._upstream is conn:
                self._upstream = None
            failed = self._pending.fail_where(
                lambda entry: entry.upstream is conn,
                lambda: UpstreamDisconnectedError("Native host disconnected"),
            )
            logger.info("native host disconnected conn=%d failed_pending=%d", conn.conn_id, failed)
            return

        self._clients.pop(conn.conn_id, None)
        sid = conn.session_id or ""
        if any(c.session_id == sid for c in self._clients.values()):
            logger.info("client disconnected conn=%d session=%s (session still attached)", conn.conn_id, sid)
            return
        released = self.claims.release_session(sid)
        logger.info(
            "client disconnected conn=%d session=%s released=%s",
            conn.conn_id,
            sid,
            [c.tab_id for c in released],
        )

    # -- upstream (native host) -------------------------------------------

    async def _on_upstream_message(self, conn: _Conn, msg: dict[str, Any]) -> None:
        if msg.get("type") != "from_extension":
            return
        inner = msg.get("message")
        if not isinstance(inner, dict):
            return
        mtype = inner.get("type")
        if mtype == "tool_response":
            error = inner.get("error")
            if error is not None:
                text = error.get("content") if isinstance(error, dict) else error
                self._pending.fail(inner.get("id"), BrokerError(str(text or "Tool failed")))
            else:
                self._pending.resolve(inner.get("id"), inner.get("result"))
            return
        if mtype == "ping":
            with contextlib.suppress(ConnectionError, TransportError):
                await self._send(conn, {"type": "to_extension", "message": {"type": "pong"}})
            return
        logger.debug("ignoring extension message type=%r", mtype)

    async def call_extension(self, tool: str, args: dict[str, Any], *, session_id: str | None = None) -> Any:
        upstream = self._upstream
        if upstream is None or upstream.closed:
            raise UpstreamDisconnectedError("Browser extension is not connected (native host offline)")
        entry = self._pending.create(session_id=session_id, upstream=upstream)
        request = {"type": "tool_request", "id": entry.id, "tool": tool, "args": args}
        try:
            await self._send(upstream, {"type": "to_extension", "message": request})
        except (OSError, TransportError):
            self._pending.fail(entry.id, UpstreamDisconnectedError("Native host disconnected"))
        return await self._pending.wait(
            entry, self.config.request_timeout, message="Timed out waiting for browser extension"
        )

    # -- client ops -------------------------------------------------------

    async def _on_client_message(self, conn: _Conn, msg: dict[str, Any]) -> None:
        if msg.get("type") != "request":
            return
        req_id = msg.get("id")
        try:
            data = await self.handle_request(conn.session_id or "", msg)
            reply: dict[str, Any] = {"type": "response", "id": req_id, "ok": True, "data": data}
        except BrokerError as exc:
            reply = {"type": "response", "id": req_id, "ok": False, "error": str(exc)}
        except Exception as exc:
            logger.exception("request failed op=%s", msg.get("op"))
            reply = {"type": "response", "id": req_id, "ok": False, "error": str(exc) or type(exc).__name__}
        try:
            await self._send(conn, reply)
        except (ConnectionError, TransportError):
            logger.debug("client conn=%d went away before response id=%s", conn.conn_id, req_id)

    async def handle_request(self, session_id: str, msg: dict[str, Any]) -> Any:
        op = msg.get("op")
        if op == "status":
            return self.status(session_id)
        if op == "list_claims":
            return {"claims": self.claims.snapshot()}
        if op == "claim_tab":
            if msg.get("tabId") is None:
                raise InvalidRequestError("tabId is required")
            tab_id = _parse_tab_id(msg.get("tabId"))
            self.claims.claim(tab_id, session_id, force=bool(msg.get("force")))
            return {"ok": True, "tabId": tab_id, "sessionId": session_id}
        if op == "release_tab":
            if msg.get("tabId") is None:
                raise InvalidRequestError("tabId is required")
            tab_id = _parse_tab_id(msg.get("tabId"))
            released = self.claims.release(tab_id, session_id)
            return {"ok": True, "tabId": tab_id, "released": released}
        if op == "tool":
            args = msg.get("args")
            if args is None:
                args = {}
            if not isinstance(args, dict):
                raise InvalidRequestError("args must be an object")
            return await self.route_tool(session_id, msg.get("tool"), args)
        raise InvalidRequestError(f"Unknown op: {op}")

    def status(self, session_id: str) -> dict[str, Any]:
        state = self.claims.session(session_id)
        return {
            "broker": True,
            "hostConnected": self.host_connected,
            "claims": self.claims.snapshot(),
            "leaseTtlMs": self.config.claim_ttl_ms,
            "session": state.to_dict() if state else {"sessionId": session_id, "defaultTabId": None},
        }

    async def _active_tab_id(self, session_id: str) -> int | None:
        result = await self.call_extension("get_active_tab", {}, session_id=session_id)
        content = result.get("content") if isinstance(result, dict) else None
        tab_ref = content.get("tabId") if isinstance(content, dict) else None
        if isinstance(tab_ref, int) and not isinstance(tab_ref, bool):
            return tab_ref
        return None

    async def _resolve_tab(self, session_id: str, args: dict[str, Any]) -> int:
        if args.get("tabId") is not None:
            tab_id = _parse_tab_id(args["tabId"])
            self.claims.check(tab_id, session_id)
            return tab_id

        default = self.claims.default_tab(session_id)
        if default is not None and self.claims.owner(default) in (None, session_id):
            return default

        active = await self._active_tab_id(session_id)
        if active is None:
            raise BrokerError(f"No active tab. {NO_DEFAULT_TAB_HINT}")
        owner = self.claims.owner(active)
        if owner is not None and owner != session_id:
            raise OwnershipConflictError(active, owner, hint=NO_DEFAULT_TAB_HINT)
        return active

    async def route_tool(self, session_id: str, tool: Any, args: dict[str, Any]) -> Any:
        spec = tool_spec(tool)
        args = dict(args)
        self.claims.touch_session(session_id)

        if spec.name == "open_tab" and args.get("active") is not False:
            try:
                active = await self._active_tab_id(session_id)
            except TransportError:
                raise
            except BrokerError:
                active = None
            if active is not None and self.claims.owner(active) not in (None, session_id):
                # Never steal focus from a tab another session is driving.
                args["active"] = False

        tab_id: int | None = None
        if spec.requires_tab:
            tab_id = await self._resolve_tab(session_id, args)
            args["tabId"] = tab_id
            # Ownership may have changed while the active tab was being looked up.
            self.claims.check(tab_id, session_id)

        result = await self.call_extension(spec.name, args, session_id=session_id)

        used = result.get("tabId") if isinstance(result, dict) else None
        if not isinstance(used, int) or isinstance(used, bool):
            used = tab_id
        if spec.name == "close_tab":
            if used is not None:
                self.claims.forget_tab(used)
        elif used is not None and spec.name not in ("get_tabs", "get_active_tab", "list_downloads"):
            if self.claims.touch(used, session_id) is not None:
                self.claims.set_default(session_id, used)
        return result


async def _socket_in_use(path: str) -> bool:
    try:
        _reader, writer = await asyncio.open_unix_connection(path)
    except OSError:
        return False
    writer.close()
    with contextlib.suppress(Exception):
        await writer.wait_closed()
    return True


def main() -> None:
    config = BrokerConfig.from_env()
    configure_logging(config)
    try:
        raise SystemExit(asyncio.run(Broker(config).run()))
    except KeyboardInterrupt:
        raise SystemExit(0) from None


if __name__ == "__main__":
    main()
