"""Protocol versions, server identity and the advertised tool list."""

from __future__ import annotations

from typing import Any

from .definitions import tool_definitions

SERVER_VERSION = "0.1.0"
SERVER_INFO: dict[str, str] = {"name": "browser-broker", "version": SERVER_VERSION}

SUPPORTED_PROTOCOL_VERSIONS = ["2025-06-18", "2025-03-26", "2024-11-05"]
DEFAULT_PROTOCOL_VERSION = SUPPORTED_PROTOCOL_VERSIONS[0]

CAPABILITIES: dict[str, Any] = {"tools": {"listChanged": False}}


def select_protocol(requested: Any) -> str:
    if isinstance(requested, str) and requested in SUPPORTED_PROTOCOL_VERSIONS:
        return requested
    return DEFAULT_PROTOCOL_VERSION


def initialize_result(protocol: str) -> dict[str, Any]:
    return {
        "protocolVersion": protocol,
        "serverInfo": SERVER_INFO,
        "capabilities": CAPABILITIES,
        "instructions": (
            "Drives the user's own browser. Tabs used by this session are claimed for it; "
            "tabs claimed by other sessions are refused. Open a new tab when the active one is taken."
        ),
    }


def tools_list() -> list[dict[str, Any]]:
    return tool_definitions()
