from __future__ import annotations

import asyncio
import json
import time

import pytest
import websockets

from mcp_servers.browser_broker.cdp import CdpConnection, CdpError
from mcp_servers.browser_broker.cdp_page import CdpPage
from mcp_servers.browser_broker.errors import RequestTimeoutError, UpstreamDisconnectedError


async def _devtools_stub(ws) -> None:  # noqa: ANN001
    async for raw in ws:
        msg = json.loads(raw)
        method = msg.get("method")
        if method == "Broken.command":
            await ws.send(json.dumps({"id": msg["id"], "error": {"code": -32601, "message": "'Broken.command' wasn't found"}}))
        elif method == "Page.navigate":
            await ws.send(json.dumps({"id": msg["id"], "result": {"frameId": "F", "loaderId": "L"}}))
            await ws.send(json.dumps({"method": "Page.loadEventFired", "params": {"timestamp": 1.5}}))
        elif method == "Hang.forever":
            continue
        elif method == "Close.socket":
            await ws.close()
            return
        else:
            await ws.send(json.dumps({"method": "Log.noise", "params": {}}))
            await ws.send(json.dumps({"id": msg["id"], "result": {"echo": msg.get("params") or {}}}))


def test_cdp_connection_commands_events_and_errors() -> None:
    async def _main() -> None:
        async with websockets.serve(_devtools_stub, "127.0.0.1", 0) as server:
            port = next(iter(server.sockets)).getsockname()[1]
            conn = await CdpConnection.open(f"ws://127.0.0.1:{port}/devtools/page/T1", timeout=2.0)
            try:
                assert await conn.send("Runtime.evaluate", {"expression": "1"}) == {"echo": {"expression": "1"}}

                with pytest.raises(CdpError) as exc:
                    await conn.send("Broken.command")
                assert exc.value.method == "Broken.command"
                assert exc.value.code == -32601

                await conn.send("Page.navigate", {"url": "https://x.test/"})
                loaded = await conn.wait_for_event("Page.loadEventFired", timeout=2.0)
                assert loaded == {"timestamp": 1.5}

                with pytest.raises(RequestTimeoutError, match="Hang.forever"):
                    await conn.send("Hang.forever", timeout=0.05)
                with pytest.raises(RequestTimeoutError):
                    await conn.wait_for_event("Never.happens", timeout=0.05)
            finally:
                await conn.close()

    asyncio.run(_main())


def test_cdp_connection_fails_pending_when_socket_closes() -> None:
    async def _main() -> None:
        async with websockets.serve(_devtools_stub, "127.0.0.1", 0) as server:
            port = next(iter(server.sockets)).getsockname()[1]
            conn = await CdpConnection.open(f"ws://127.0.0.1:{port}/", timeout=2.0)
            try:
                with pytest.raises(UpstreamDisconnectedError):
                    await conn.send("Close.socket")
                with pytest.raises(UpstreamDisconnectedError):
                    await conn.send("Runtime.enable")
            finally:
                await conn.close()

    asyncio.run(_main())


def _reply(msg: dict, result: dict | None = None) -> str:
    return json.dumps({"id": msg["id"], "result": result or {}})


async def _leftover_events_stub(ws) -> None:  # noqa: ANN001
    async for raw in ws:
        msg = json.loads(raw)
        method = msg.get("method")
        if method == "Page.enable":
            # Events from before this command, queued ahead of its reply.
            await ws.send(json.dumps({"method": "Page.loadEventFired", "params": {"timestamp": 1.0}}))
            await ws.send(json.dumps({"method": "Page.downloadWillBegin", "params": {"guid": "g-old", "url": "https://x.test/old.bin", "suggestedFilename": "old.bin"}}))
            await ws.send(_reply(msg))
        elif method == "Page.navigate":
            await ws.send(_reply(msg, {"frameId": "F", "loaderId": "L2"}))
            await asyncio.sleep(0.3)
            await ws.send(json.dumps({"method": "Page.loadEventFired", "params": {"timestamp": 2.0}}))
        elif method == "Target.getTargetInfo":
            await ws.send(_reply(msg, {"targetInfo": {"url": "https://x.test/next", "title": "Next"}}))
        elif method == "DOM.getDocument":
            await ws.send(_reply(msg, {"root": {"nodeId": 1, "backendNodeId": 1}}))
        elif method == "DOM.resolveNode":
            await ws.send(_reply(msg, {"object": {"objectId": "doc"}}))
        elif method == "Runtime.callFunctionOn":
            await ws.send(_reply(msg, {"result": {"type": "boolean", "value": True}}))
            await ws.send(json.dumps({"method": "Page.downloadWillBegin", "params": {"guid": "g-new", "url": "https://x.test/r.pdf", "suggestedFilename": "r.pdf"}}))
            await ws.send(json.dumps({"method": "Page.downloadProgress", "params": {"guid": "g-new", "state": "completed"}}))
        else:
            await ws.send(_reply(msg))


def test_navigate_ignores_load_events_from_before_the_command() -> None:
    async def _main() -> None:
        async with websockets.serve(_leftover_events_stub, "127.0.0.1", 0) as server:
            port = next(iter(server.sockets)).getsockname()[1]
            conn = await CdpConnection.open(f"ws://127.0.0.1:{port}/devtools/page/T1", timeout=2.0)
            try:
                page = CdpPage(conn, target_id="T1")
                started = time.monotonic()
                info = await page.navigate("https://x.test/next", timeout=2.0)
                assert time.monotonic() - started >= 0.25
                assert info == {"url": "https://x.test/next", "title": "Next"}
            finally:
                await conn.close()

    asyncio.run(_main())


def test_download_ignores_download_events_from_before_the_click(tmp_path) -> None:
    async def _main() -> None:
        async with websockets.serve(_leftover_events_stub, "127.0.0.1", 0) as server:
            port = next(iter(server.sockets)).getsockname()[1]
            conn = await CdpConnection.open(f"ws://127.0.0.1:{port}/devtools/page/T1", timeout=2.0)
            try:
                page = CdpPage(conn, target_id="T1")
                record = await page.download("https://x.test/r.pdf", download_dir=tmp_path, timeout=2.0)
                assert record["id"] == "g-new"
                assert record["filename"] == "r.pdf"
                assert record["state"] == "completed"
            finally:
                await conn.close()

    asyncio.run(_main())


def test_expect_event_fails_fast_on_closed_connection() -> None:
    async def _main() -> None:
        async with websockets.serve(_devtools_stub, "127.0.0.1", 0) as server:
            port = next(iter(server.sockets)).getsockname()[1]
            conn = await CdpConnection.open(f"ws://127.0.0.1:{port}/", timeout=2.0)
            await conn.close()
            waiter = conn.expect_event("Page.loadEventFired")
            with pytest.raises(UpstreamDisconnectedError):
                await waiter.wait(timeout=1.0)

    asyncio.run(_main())
