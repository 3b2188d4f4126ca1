from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Any, Protocol
from urllib.parse import urljoin

from .errors import BrokerError, InvalidRequestError
from .locator import actions
from .locator.actions import Page
from .tools import TOOLS, tool_spec

logger = logging.getLogger("mcp.browser_broker.executor")

MAX_DOWNLOADS = 50
DEFAULT_WAIT_MS = 1000
DEFAULT_WAIT_FOR_SELECTOR_MS = 10_000
MAX_WAIT_MS = 60_000


class TabPage(Page, Protocol):
    async def info(self) -> dict[str, Any]: ...

    async def navigate(self, url: str) -> dict[str, Any]: ...

    async def screenshot(self, *, max_width: int | None = None) -> str: ...

    async def download(self, url: str, *, download_dir: Path, filename: str | None = None) -> dict[str, Any]: ...


class Browser(Protocol):
    async def list_tabs(self) -> list[dict[str, Any]]: ...

    async def active_tab(self) -> dict[str, Any] | None: ...

    async def open_tab(self, url: str, *, active: bool = True) -> dict[str, Any]: ...

    async def close_tab(self, tab_id: int) -> dict[str, Any]: ...

    async def page(self, tab_id: int) -> TabPage: ...


Handler = Callable[[dict[str, Any]], Awaitable[dict[str, Any]]]


def _required_str(args: dict[str, Any], key: str) -> str:
    value = args.get(key)
    if not isinstance(value, str) or not value.strip():
        raise InvalidRequestError(f"{key} is required")
    return value.strip()


class ToolExecutor:
    """Runs broker tool requests against a browser.

    Results are `{content, tabId?}` envelopes; `tabId` is present whenever a
    specific tab was acted on.
    """

    def __init__(self, browser: Browser, *, download_dir: Path) -> None:
        self.browser = browser
        self.download_dir = download_dir
        self.downloads: deque[dict[str, Any]] = deque(maxlen=MAX_DOWNLOADS)
        self._handlers: dict[str, Handler] = {
            "get_tabs": self._get_tabs,
            "get_active_tab": self._get_active_tab,
            "open_tab": self._open_tab,
            "close_tab": self._close_tab,
            "navigate": self._navigate,
            "click": self._locator_action(actions.click),
            "type": self._locator_action(actions.type_text),
            "select": self._locator_action(actions.select_option),
            "scroll": self._locator_action(actions.scroll),
            "query": self._locator_action(actions.query),
            "set_file_input": self._locator_action(actions.set_file_input),
            "screenshot": self._screenshot,
            "snapshot": self._snapshot,
            "wait": self._wait,
            "download": self._download,
            "list_downloads": self._list_downloads,
        }
        missing = sorted(set(TOOLS) - set(self._handlers))
        extra = sorted(set(self._handlers) - set(TOOLS))
        if missing or extra:
            raise RuntimeError(f"tool handlers out of sync: missing={missing} extra={extra}")

    async def execute(self, tool: Any, args: Any) -> dict[str, Any]:
        spec = tool_spec(tool)
        if args is None:
            args = {}
        if not isinstance(args, dict):
            raise InvalidRequestError("args must be an object")
        started = time.monotonic()
        result = await self._handlers[spec.name](dict(args))
        logger.debug("tool=%s tab=%s ms=%d", spec.name, result.get("tabId"), (time.monotonic() - started) * 1000)
        return result

    # -- helpers ----------------------------------------------------------

    @staticmethod
    def _tab_id(args: dict[str, Any]) -> int:
        raw = args.get("tabId")
        if isinstance(raw, bool) or not isinstance(raw, (int, str)):
            raise InvalidRequestError("tabId is required")
        try:
            return int(raw)
        except ValueError:
            raise InvalidRequestError("tabId must be an integer") from None

    async def _page(self, args: dict[str, Any]) -> tuple[int, TabPage]:
        tab_id = self._tab_id(args)
        return tab_id, await self.browser.page(tab_id)

    def _locator_action(self, action: Callable[[Page, dict[str, Any]], Awaitable[dict[str, Any]]]) -> Handler:
        async def handler(args: dict[str, Any]) -> dict[str, Any]:
            tab_id, page = await self._page(args)
            return {"content": await action(page, args), "tabId": tab_id}

        return handler

    # -- tabs -------------------------------------------------------------

    async def _get_tabs(self, args: dict[str, Any]) -> dict[str, Any]:
        return {"content": {"tabs": await self.browser.list_tabs()}}

    async def _get_active_tab(self, args: dict[str, Any]) -> dict[str, Any]:
        tab = await self.browser.active_tab()
        if tab is None:
            raise BrokerError("No active tab")
        return {"content": {"tabId": tab["tabId"], "url": tab.get("url", ""), "title": tab.get("title", "")}}

    async def _open_tab(self, args: dict[str, Any]) -> dict[str, Any]:
        url = args.get("url") or "about:blank"
        if not isinstance(url, str):
            raise InvalidRequestError("url must be a string")
        opened = await self.browser.open_tab(url, active=args.get("active") is not False)
        return {"content": opened, "tabId": opened["tabId"]}

    async def _close_tab(self, args: dict[str, Any]) -> dict[str, Any]:
        tab_id = self._tab_id(args)
        return {"content": await self.browser.close_tab(tab_id), "tabId": tab_id}

    async def _navigate(self, args: dict[str, Any]) -> dict[str, Any]:
        url = _required_str(args, "url")
        tab_id, page = await self._page(args)
        return {"content": await page.navigate(url), "tabId": tab_id}

    # -- page -------------------------------------------------------------

    async def _screenshot(self, args: dict[str, Any]) -> dict[str, Any]:
        tab_id, page = await self._page(args)
        max_width = args.get("maxWidth")
        if max_width is not None and (isinstance(max_width, bool) or not isinstance(max_width, int) or max_width <= 0):
            raise InvalidRequestError("maxWidth must be a positive integer")
        data = await page.screenshot(max_width=max_width)
        return {"content": {"data": data, "mimeType": "image/png"}, "tabId": tab_id}

    async def _snapshot(self, args: dict[str, Any]) -> dict[str, Any]:
        tab_id, page = await self._page(args)
        document = await page.snapshot()
        info = await page.info()
        nodes = actions.outline(document)
        content = {
            "url": info.get("url") or document.url,
            "title": info.get("title") or document.title,
            "nodes": nodes,
            "truncated": len(nodes) >= actions.MAX_OUTLINE_NODES,
        }
        return {"content": content, "tabId": tab_id}

    async def _wait(self, args: dict[str, Any]) -> dict[str, Any]:
        tab_id, page = await self._page(args)
        if args.get("selector"):
            args.setdefault("timeoutMs", DEFAULT_WAIT_FOR_SELECTOR_MS)
            res = await actions.find(page, args)
            content = {"found": res.found, "selector": res.selector, "count": res.count, "state": res.state}
            return {"content": content, "tabId": tab_id}
        raw = args.get("ms", DEFAULT_WAIT_MS)
        if isinstance(raw, bool) or not isinstance(raw, (int, float)) or raw < 0:
            raise InvalidRequestError("ms must be a non-negative number")
        ms = min(int(raw), MAX_WAIT_MS)
        await asyncio.sleep(ms / 1000.0)
        return {"content": {"waited": ms}, "tabId": tab_id}

    async def _download(self, args: dict[str, Any]) -> dict[str, Any]:
        tab_id, page = await self._page(args)
        url = args.get("url")
        selector_used = None
        if not url:
            if not args.get("selector"):
                raise InvalidRequestError("url or selector is required")
            el, res = await actions.locate(page, args)
            href = el.get("href") or el.get("src")
            if not href:
                raise InvalidRequestError(f"Element matched by {res.selector} has no href")
            document_url = (await page.info()).get("url") or ""
            url = urljoin(document_url, href)
            selector_used = res.selector
        if not isinstance(url, str):
            raise InvalidRequestError("url must be a string")
        filename = args.get("filename") if isinstance(args.get("filename"), str) else None
        record = await page.download(url, download_dir=self.download_dir, filename=filename)
        record = {**record, "tabId": tab_id, "startedAt": int(time.time() * 1000)}
        self.downloads.append(record)
        content = dict(record)
        if selector_used:
            content["selector"] = selector_used
        return {"content": content, "tabId": tab_id}

    async def _list_downloads(self, args: dict[str, Any]) -> dict[str, Any]:
        return {"content": {"downloads": list(reversed(self.downloads))}}
