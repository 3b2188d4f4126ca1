"""MCP front end: protocol contract, tool definitions and result types.

Keep this package import light; `main.py` pulls in the pieces it needs.
"""

from __future__ import annotations
