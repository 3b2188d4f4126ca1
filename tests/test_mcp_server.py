from __future__ import annotations

import asyncio
import json
from typing import Any

from mcp_servers.browser_broker.config import BrokerConfig
from mcp_servers.browser_broker.errors import BrokerError
from mcp_servers.browser_broker.main import AGENT_BACKEND_ERROR, McpServer
from mcp_servers.browser_broker.server.contract import DEFAULT_PROTOCOL_VERSION


class FakeClient:
    session_id = "session-test"

    def __init__(self) -> None:
        self.calls: list[tuple[str, Any]] = []
        self.closed = False

    async def status(self) -> dict[str, Any]:
        return {"hostConnected": True, "clients": 1, "claims": 0}

    async def list_claims(self) -> list[dict[str, Any]]:
        return [{"tabId": 4, "sessionId": self.session_id}]

    async def claim_tab(self, tab_id: int, *, force: bool = False) -> dict[str, Any]:
        self.calls.append(("claim_tab", (tab_id, force)))
        if tab_id == 9:
            raise BrokerError("Tab 9 is claimed by another session (session-other)")
        return {"tabId": tab_id, "sessionId": self.session_id}

    async def release_tab(self, tab_id: int) -> dict[str, Any]:
        self.calls.append(("release_tab", tab_id))
        return {"released": True}

    async def tool(self, name: str, args: dict[str, Any] | None = None) -> Any:
        self.calls.append((name, args))
        if name == "screenshot":
            return {"content": {"data": (args or {}).get("fake", "QUJD"), "mimeType": "image/png"}, "tabId": 1}
        if name == "scroll":
            raise ValueError("unexpected")
        return {"content": {"url": "https://x.test/"}, "tabId": 1}

    async def close(self) -> None:
        self.closed = True


def _server(tmp_path, **overrides) -> tuple[McpServer, FakeClient, list[dict[str, Any]]]:
    out: list[dict[str, Any]] = []
    client = FakeClient()
    config = BrokerConfig(socket_path=tmp_path / "b.sock", **overrides)
    return McpServer(config, client=client, write=out.append), client, out  # type: ignore[arg-type]


def _call(server: McpServer, name: str, arguments: Any = None, request_id: int = 1) -> None:
    params: dict[str, Any] = {"name": name}
    if arguments is not None:
        params["arguments"] = arguments
    asyncio.run(server.dispatch({"jsonrpc": "2.0", "id": request_id, "method": "tools/call", "params": params}))


def test_initialize_negotiates_protocol(tmp_path) -> None:
    server, _, out = _server(tmp_path)
    asyncio.run(server.dispatch({"jsonrpc": "2.0", "id": 1, "method": "initialize", "params": {"protocolVersion": "2024-11-05"}}))
    asyncio.run(server.dispatch({"jsonrpc": "2.0", "id": 2, "method": "initialize", "params": {"protocolVersion": "1999-01-01"}}))

    assert out[0]["result"]["protocolVersion"] == "2024-11-05"
    assert out[0]["result"]["serverInfo"]["name"] == "browser-broker"
    assert "tools" in out[0]["result"]["capabilities"]
    assert out[1]["result"]["protocolVersion"] == DEFAULT_PROTOCOL_VERSION


def test_tools_list_exposes_session_and_browser_tools(tmp_path) -> None:
    server, _, out = _server(tmp_path)
    asyncio.run(server.dispatch({"jsonrpc": "2.0", "id": 1, "method": "tools/list"}))

    tools = out[0]["result"]["tools"]
    names = {t["name"] for t in tools}
    assert len(tools) == 21
    assert {"browser_status", "browser_claim_tab", "browser_click", "browser_list_downloads"} <= names
    assert all(t["inputSchema"]["type"] == "object" for t in tools)


def test_browser_tool_call_forwards_arguments(tmp_path) -> None:
    server, client, out = _server(tmp_path)
    _call(server, "browser_navigate", {"tabId": 1, "url": "https://x.test/"})

    assert client.calls == [("navigate", {"tabId": 1, "url": "https://x.test/"})]
    result = out[0]["result"]
    assert result["isError"] is False
    assert json.loads(result["content"][0]["text"]) == {"content": {"url": "https://x.test/"}, "tabId": 1}


def test_screenshot_becomes_image_content(tmp_path) -> None:
    server, _, out = _server(tmp_path)
    _call(server, "browser_screenshot", {"tabId": 1})
    _call(server, "browser_screenshot", {"tabId": 1, "fake": ""}, request_id=2)

    assert out[0]["result"]["content"] == [{"type": "image", "data": "QUJD", "mimeType": "image/png"}]
    assert out[1]["result"]["isError"] is True
    assert out[1]["result"]["content"][0]["text"] == "Screenshot data is empty"


def test_session_tools(tmp_path) -> None:
    server, client, out = _server(tmp_path)
    _call(server, "browser_status", {})
    _call(server, "browser_list_claims", {}, request_id=2)
    _call(server, "browser_claim_tab", {"tabId": "4", "force": True}, request_id=3)
    _call(server, "browser_release_tab", {"tabId": 4}, request_id=4)
    _call(server, "browser_version", {}, request_id=5)

    assert json.loads(out[0]["result"]["content"][0]["text"])["hostConnected"] is True
    assert json.loads(out[1]["result"]["content"][0]["text"]) == {"claims": [{"tabId": 4, "sessionId": "session-test"}]}
    assert client.calls[:2] == [("claim_tab", (4, True)), ("release_tab", 4)]
    version = json.loads(out[4]["result"]["content"][0]["text"])
    assert version["backend"] == "extension"
    assert version["sessionId"] == "session-test"


def test_errors_are_reported_as_tool_errors(tmp_path) -> None:
    server, _, out = _server(tmp_path)
    _call(server, "browser_claim_tab", {"tabId": 9})
    _call(server, "browser_claim_tab", {}, request_id=2)
    _call(server, "browser_fly", {}, request_id=3)
    _call(server, "", {}, request_id=4)
    _call(server, "browser_scroll", {"tabId": 1}, request_id=5)

    texts = [(m["result"]["isError"], m["result"]["content"][0]["text"]) for m in out]
    assert texts == [
        (True, "Tab 9 is claimed by another session (session-other)"),
        (True, "tabId is required"),
        (True, "Unknown tool: browser_fly"),
        (True, "Missing tool name"),
        (True, "unexpected"),
    ]


def test_agent_backend_is_refused_but_version_answers(tmp_path) -> None:
    server, client, out = _server(tmp_path, backend="agent")
    _call(server, "browser_get_tabs", {})
    _call(server, "browser_version", None, request_id=2)

    assert out[0]["result"] == {"content": [{"type": "text", "text": AGENT_BACKEND_ERROR}], "isError": True}
    assert json.loads(out[1]["result"]["content"][0]["text"])["backend"] == "agent"
    assert client.calls == []


def test_unknown_method_ping_and_notifications(tmp_path) -> None:
    server, _, out = _server(tmp_path)

    async def _main() -> None:
        await server.dispatch({"jsonrpc": "2.0", "method": "notifications/initialized"})
        await server.dispatch({"jsonrpc": "2.0", "id": 7, "method": "ping"})
        await server.dispatch({"jsonrpc": "2.0", "id": 8, "method": "resources/list"})
        await server.dispatch({"jsonrpc": "2.0", "method": "resources/list"})

    asyncio.run(_main())

    assert out == [
        {"jsonrpc": "2.0", "id": 7, "result": {}},
        {"jsonrpc": "2.0", "id": 8, "error": {"code": -32601, "message": "Method resources/list not found"}},
    ]


def test_serve_reads_until_eof_and_closes_client(tmp_path) -> None:
    server, client, out = _server(tmp_path)
    lines = [
        b'{"jsonrpc":"2.0","id":1,"method":"tools/list"}\n',
        b"not json\n",
        b"\n",
        b'{"jsonrpc":"2.0","id":2,"method":"tools/call","params":{"name":"browser_get_tabs","arguments":[1]}}\n',
        b"",
    ]

    asyncio.run(server.serve(lambda: lines.pop(0)))

    assert [m["id"] for m in out] == [1, 2]
    assert client.calls == [("get_tabs", {})]
    assert client.closed is True
