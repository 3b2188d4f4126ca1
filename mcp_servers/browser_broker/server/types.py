"""
Type definitions for MCP server responses.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any


@dataclass(slots=True)
class ToolContent:
    """Single content item in tool response."""

    type: str  # "text" or "image"
    text: str | None = None
    data: str | None = None  # base64 for images
    mime_type: str | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to MCP content format."""
        if self.type == "image":
            return {"type": "image", "data": self.data, "mimeType": self.mime_type}
        return {"type": "text", "text": self.text}


@dataclass(slots=True)
class ToolResult:
    """Result of a tool execution."""

    content: list[ToolContent] = field(default_factory=list)
    is_error: bool = False

    @classmethod
    def text(cls, text: str) -> ToolResult:
        return cls(content=[ToolContent(type="text", text=text or "")])

    @classmethod
    def json(cls, data: Any) -> ToolResult:
        if isinstance(data, str):
            return cls.text(data)
        return cls.text(json.dumps(data, ensure_ascii=False, indent=2))

    @classmethod
    def error(cls, message: str) -> ToolResult:
        return cls(content=[ToolContent(type="text", text=message)], is_error=True)

    @classmethod
    def image(cls, data_b64: str, mime_type: str = "image/png") -> ToolResult:
        """Single image content. Falls back to an error if data is empty."""
        if not data_b64:
            return cls.error("Screenshot data is empty")
        return cls(content=[ToolContent(type="image", data=data_b64, mime_type=mime_type)])

    def to_content_list(self) -> list[dict[str, Any]]:
        return [c.to_dict() for c in self.content]
