"""
MCP server for one client session of the browser broker.

Speaks line-delimited JSON-RPC on stdin/stdout and forwards `browser_*` tool
calls to the broker through a `BrokerClient`. Logging goes to stderr only.
"""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from collections.abc import Callable
from typing import Any

from .client import BrokerClient
from .config import BrokerConfig, configure_logging
from .errors import BrokerError
from .server.contract import SERVER_VERSION, initialize_result, select_protocol, tools_list
from .server.definitions import broker_tool_name
from .server.types import ToolResult

logger = logging.getLogger("mcp.browser_broker")

AGENT_BACKEND_ERROR = "Backend 'agent' is not available in this build; set MCP_BROWSER_BACKEND=extension"

__all__ = ["McpServer", "main"]


def _write_message(payload: dict[str, Any]) -> None:
    """Write JSON-RPC message to stdout."""
    data = json.dumps(payload, ensure_ascii=False)
    sys.stdout.buffer.write((data + "\n").encode())
    sys.stdout.buffer.flush()


def _parse_message(line: bytes) -> dict[str, Any] | None:
    line = line.strip()
    if not line:
        return None
    try:
        msg = json.loads(line.decode())
    except (UnicodeDecodeError, json.JSONDecodeError):
        logger.warning("dropping malformed JSON-RPC line (%d bytes)", len(line))
        return None
    return msg if isinstance(msg, dict) else None


def _tab_id_arg(arguments: dict[str, Any]) -> int:
    raw = arguments.get("tabId")
    if isinstance(raw, bool) or not isinstance(raw, (int, str)):
        raise BrokerError("tabId is required")
    try:
        return int(raw)
    except ValueError:
        raise BrokerError("tabId must be an integer") from None


class McpServer:
    """JSON-RPC front end bound to a single broker session."""

    def __init__(
        self,
        config: BrokerConfig | None = None,
        *,
        client: BrokerClient | None = None,
        write: Callable[[dict[str, Any]], None] = _write_message,
    ) -> None:
        self.config = config or BrokerConfig.from_env()
        self.client = client or BrokerClient(self.config)
        self._write = write

    def handle_initialize(self, request_id: Any, params: dict[str, Any] | None = None) -> None:
        requested = (params or {}).get("protocolVersion") if isinstance(params, dict) else None
        protocol = select_protocol(requested)
        self._write({"jsonrpc": "2.0", "id": request_id, "result": initialize_result(protocol)})

    def handle_list_tools(self, request_id: Any) -> None:
        self._write({"jsonrpc": "2.0", "id": request_id, "result": {"tools": tools_list()}})

    async def call_tool(self, name: str, arguments: dict[str, Any]) -> ToolResult:
        if not name:
            return ToolResult.error("Missing tool name")
        if name == "browser_version":
            return ToolResult.json(
                {"version": SERVER_VERSION, "backend": self.config.backend, "sessionId": self.client.session_id}
            )
        if self.config.backend == "agent":
            return ToolResult.error(AGENT_BACKEND_ERROR)

        if name == "browser_status":
            return ToolResult.json(await self.client.status())
        if name == "browser_list_claims":
            return ToolResult.json({"claims": await self.client.list_claims()})
        if name == "browser_claim_tab":
            force = arguments.get("force") is True
            return ToolResult.json(await self.client.claim_tab(_tab_id_arg(arguments), force=force))
        if name == "browser_release_tab":
            return ToolResult.json(await self.client.release_tab(_tab_id_arg(arguments)))

        tool = broker_tool_name(name)
        if tool is None:
            return ToolResult.error(f"Unknown tool: {name}")
        data = await self.client.tool(tool, arguments)
        if tool == "screenshot" and isinstance(data, dict):
            image = data.get("content") or {}
            return ToolResult.image(image.get("data") or "", image.get("mimeType") or "image/png")
        return ToolResult.json(data)

    async def handle_call_tool(self, request_id: Any, name: str, arguments: dict[str, Any]) -> None:
        logger.info("tool=%s args=%s", name, sorted(arguments))
        try:
            result = await self.call_tool(name, arguments)
        except BrokerError as exc:
            logger.info("tool_error tool=%s reason=%s", name, exc)
            result = ToolResult.error(str(exc))
        except Exception as exc:
            logger.exception("tool_call_failed")
            result = ToolResult.error(str(exc) or type(exc).__name__)
        self._write(
            {
                "jsonrpc": "2.0",
                "id": request_id,
                "result": {"content": result.to_content_list(), "isError": result.is_error},
            }
        )

    async def dispatch(self, message: dict[str, Any]) -> None:
        """Dispatch incoming JSON-RPC message to appropriate handler."""
        if not message:
            return

        method = message.get("method")
        request_id = message.get("id")
        params = message.get("params") or {}

        if method == "initialize":
            self.handle_initialize(request_id, params)
        elif method == "notifications/initialized" or (method or "").startswith("notifications/"):
            return
        elif method == "tools/list":
            self.handle_list_tools(request_id)
        elif method == "tools/call":
            arguments = params.get("arguments") or {}
            if not isinstance(arguments, dict):
                arguments = {}
            await self.handle_call_tool(request_id, params.get("name") or "", arguments)
        elif method == "ping":
            self._write({"jsonrpc": "2.0", "id": request_id, "result": {}})
        elif request_id is not None:
            self._write(
                {
                    "jsonrpc": "2.0",
                    "id": request_id,
                    "error": {"code": -32601, "message": f"Method {method} not found"},
                }
            )

    async def serve(self, readline: Callable[[], bytes] | None = None) -> None:
        readline = readline or sys.stdin.buffer.readline
        try:
            while True:
                line = await asyncio.to_thread(readline)
                if not line:
                    break
                message = _parse_message(line)
                if message is not None:
                    await self.dispatch(message)
        finally:
            # Closing the session releases every claim it holds.
            await self.client.close()


def main() -> None:
    """Main entry point for MCP server."""
    config = BrokerConfig.from_env()
    configure_logging(config)
    try:
        asyncio.run(McpServer(config).serve())
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
