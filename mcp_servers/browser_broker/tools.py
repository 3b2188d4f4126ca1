"""The closed set of tools routed through the broker.

Every tool is declared once here; the broker uses `requires_tab` for routing
and the extension host refuses to start unless it handles every name.
"""

from __future__ import annotations

from dataclasses import dataclass

from .errors import InvalidRequestError


@dataclass(slots=True, frozen=True)
class ToolSpec:
    name: str
    requires_tab: bool = True
    description: str = ""


_SPECS = (
    ToolSpec("get_tabs", requires_tab=False, description="List open tabs"),
    ToolSpec("get_active_tab", requires_tab=False, description="Describe the focused tab"),
    ToolSpec("open_tab", requires_tab=False, description="Open a tab (foreground unless active=false)"),
    ToolSpec("close_tab", description="Close a tab"),
    ToolSpec("navigate", description="Navigate a tab to a URL"),
    ToolSpec("click", description="Click an element"),
    ToolSpec("type", description="Type into an input or editable element"),
    ToolSpec("select", description="Choose an option of a <select>"),
    ToolSpec("screenshot", description="Capture the visible viewport"),
    ToolSpec("snapshot", description="Structured outline of interactive elements"),
    ToolSpec("scroll", description="Scroll an element into view or the viewport by x/y"),
    ToolSpec("wait", description="Sleep, or wait for a locator to appear"),
    ToolSpec("query", description="Read from the page (text/value/attribute/property/html/list/exists/page_text)"),
    ToolSpec("download", description="Download a URL or the target of a link"),
    ToolSpec("list_downloads", requires_tab=False, description="Recent downloads"),
    ToolSpec("set_file_input", description="Attach local files to a file input"),
)

TOOLS: dict[str, ToolSpec] = {spec.name: spec for spec in _SPECS}


def tool_spec(name: object) -> ToolSpec:
    if not isinstance(name, str) or not name.strip():
        raise InvalidRequestError("tool is required")
    spec = TOOLS.get(name.strip())
    if spec is None:
        raise InvalidRequestError(f"Unknown tool: {name}")
    return spec
