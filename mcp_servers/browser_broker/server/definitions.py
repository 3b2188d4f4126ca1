"""MCP tool schemas for a client session.

`browser_<tool>` names map one-to-one onto broker tools; `browser_status`,
`browser_version`, `browser_claim_tab`, `browser_release_tab` and
`browser_list_claims` are answered by the broker or the server itself.
"""

from __future__ import annotations

from typing import Any

from ..tools import TOOLS

_TAB_ID: dict[str, Any] = {
    "type": "integer",
    "description": "Target tab. Defaults to this session's last used tab, then the active tab.",
}
_SELECTOR: dict[str, Any] = {
    "description": (
        "Locator: CSS selector or prefixed `label:`, `aria:`, `placeholder:`, `name:`, `role:`, `text:`, `id:`, "
        "`css:`. Comma-separated (or a list) candidates are tried in order; the first one with a match wins."
    ),
    "oneOf": [{"type": "string"}, {"type": "array", "items": {"type": "string"}}],
}
_INDEX: dict[str, Any] = {"type": "integer", "minimum": 0, "default": 0, "description": "Which match to use (visible first)"}
_TIMEOUT: dict[str, Any] = {"type": "integer", "minimum": 0, "description": "Keep polling for the locator this long (ms)"}
_POLL: dict[str, Any] = {"type": "integer", "minimum": 1, "default": 200, "description": "Poll interval (ms)"}


def _schema(properties: dict[str, Any], required: list[str] | None = None) -> dict[str, Any]:
    schema: dict[str, Any] = {
        "$schema": "http://json-schema.org/draft-07/schema#",
        "type": "object",
        "properties": properties,
        "additionalProperties": False,
    }
    if required:
        schema["required"] = required
    return schema


def _locator_props(**extra: Any) -> dict[str, Any]:
    return {
        "tabId": _TAB_ID,
        "selector": _SELECTOR,
        "index": _INDEX,
        "timeoutMs": _TIMEOUT,
        "pollMs": _POLL,
        **extra,
    }


BROKER_TOOL_SCHEMAS: dict[str, dict[str, Any]] = {
    "get_tabs": _schema({}),
    "get_active_tab": _schema({}),
    "open_tab": _schema(
        {
            "url": {"type": "string", "description": "URL to open (default about:blank)"},
            "active": {"type": "boolean", "default": True, "description": "Focus the new tab"},
        }
    ),
    "close_tab": _schema({"tabId": _TAB_ID}),
    "navigate": _schema({"tabId": _TAB_ID, "url": {"type": "string"}}, ["url"]),
    "click": _schema(_locator_props(), ["selector"]),
    "type": _schema(
        _locator_props(
            text={"type": "string"},
            clear={"type": "boolean", "default": False, "description": "Replace the current value"},
        ),
        ["selector", "text"],
    ),
    "select": _schema(
        _locator_props(
            value={"type": "string", "description": "Option value"},
            label={"type": "string", "description": "Visible option text"},
            optionIndex={"type": "integer", "minimum": 0},
        ),
        ["selector"],
    ),
    "screenshot": _schema({"tabId": _TAB_ID, "maxWidth": {"type": "integer", "minimum": 1}}),
    "snapshot": _schema({"tabId": _TAB_ID}),
    "scroll": _schema(_locator_props(x={"type": "number"}, y={"type": "number"})),
    "wait": _schema(_locator_props(ms={"type": "integer", "minimum": 0, "description": "Plain sleep (ms)"})),
    "query": _schema(
        _locator_props(
            mode={
                "type": "string",
                "enum": ["text", "value", "attribute", "property", "html", "list", "exists", "page_text"],
                "default": "text",
            },
            attribute={"type": "string"},
            property={"type": "string"},
            limit={"type": "integer", "minimum": 1, "description": "list: items (max 200); page_text: characters"},
            pattern={"type": "string", "description": "page_text: regular expression"},
            flags={"type": "string", "description": "page_text: regex flags (g, i, m, s); default i"},
        )
    ),
    "download": _schema(
        _locator_props(url={"type": "string"}, filename={"type": "string"}),
    ),
    "list_downloads": _schema({}),
    "set_file_input": _schema(
        _locator_props(files={"type": "array", "items": {"type": "string"}, "minItems": 1}),
        ["selector", "files"],
    ),
}

SESSION_TOOL_DEFINITIONS: list[dict[str, Any]] = [
    {
        "name": "browser_status",
        "description": "Broker status: extension connection, all tab claims, lease TTL, this session.",
        "inputSchema": _schema({}),
    },
    {
        "name": "browser_version",
        "description": "Version of this browser broker client.",
        "inputSchema": _schema({}),
    },
    {
        "name": "browser_claim_tab",
        "description": "Claim a tab for this session and make it the default tab.",
        "inputSchema": _schema({"tabId": {"type": "integer"}, "force": {"type": "boolean", "default": False}}, ["tabId"]),
    },
    {
        "name": "browser_release_tab",
        "description": "Release this session's claim on a tab.",
        "inputSchema": _schema({"tabId": {"type": "integer"}}, ["tabId"]),
    },
    {
        "name": "browser_list_claims",
        "description": "List every tab claim held by any session.",
        "inputSchema": _schema({}),
    },
]


def broker_tool_name(mcp_name: str) -> str | None:
    if not mcp_name.startswith("browser_"):
        return None
    name = mcp_name[len("browser_") :]
    return name if name in TOOLS else None


def tool_definitions() -> list[dict[str, Any]]:
    tools = list(SESSION_TOOL_DEFINITIONS)
    for name, spec in TOOLS.items():
        tools.append({"name": f"browser_{name}", "description": spec.description, "inputSchema": BROKER_TOOL_SCHEMAS[name]})
    return tools
