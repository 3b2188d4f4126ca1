from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import Any

from .cdp import CdpConnection, DevToolsEndpoint
from .cdp_page import CdpPage
from .errors import BrokerError, InvalidRequestError

logger = logging.getLogger("mcp.browser_broker.tabs")


class TabRegistry:
    """Stable small-integer tab ids for DevTools target ids (first seen, first numbered)."""

    def __init__(self) -> None:
        self._by_target: dict[str, int] = {}
        self._by_tab: dict[int, str] = {}
        self._next = 1

    def tab_id(self, target_id: str) -> int:
        tab_id = self._by_target.get(target_id)
        if tab_id is None:
            tab_id = self._next
            self._next += 1
            self._by_target[target_id] = tab_id
            self._by_tab[tab_id] = target_id
        return tab_id

    def target_id(self, tab_id: int) -> str | None:
        return self._by_tab.get(tab_id)

    def forget(self, target_id: str) -> None:
        tab_id = self._by_target.pop(target_id, None)
        if tab_id is not None:
            self._by_tab.pop(tab_id, None)

    def prune(self, live: set[str]) -> None:
        for target_id in list(self._by_target):
            if target_id not in live:
                self.forget(target_id)


class CdpBrowser:
    """Tabs of the user's browser, reached through its remote-debugging endpoint."""

    def __init__(self, endpoint: DevToolsEndpoint) -> None:
        self.endpoint = endpoint
        self.registry = TabRegistry()
        self._pages: dict[str, CdpPage] = {}
        self._lock = asyncio.Lock()

    def _describe(self, target: dict[str, Any], active_target: str | None) -> dict[str, Any]:
        target_id = str(target.get("id") or "")
        return {
            "tabId": self.registry.tab_id(target_id),
            "url": target.get("url") or "",
            "title": target.get("title") or "",
            "active": target_id == active_target,
        }

    async def _targets(self) -> list[dict[str, Any]]:
        pages = await self.endpoint.list_pages()
        self.registry.prune({str(t.get("id")) for t in pages})
        for stale in [tid for tid in self._pages if tid not in {str(t.get("id")) for t in pages}]:
            page = self._pages.pop(stale)
            await page.conn.close()
        return pages

    async def list_tabs(self) -> list[dict[str, Any]]:
        pages = await self._targets()
        # /json/list reports the most recently focused page first; re-read every call.
        active_target = str(pages[0].get("id")) if pages else None
        return [self._describe(t, active_target) for t in pages]

    async def active_tab(self) -> dict[str, Any] | None:
        tabs = await self.list_tabs()
        for tab in tabs:
            if tab["active"]:
                return tab
        return tabs[0] if tabs else None

    async def _browser_call(self, method: str, params: dict[str, Any]) -> dict[str, Any]:
        conn = await CdpConnection.open(await self.endpoint.browser_ws_url())
        try:
            return await conn.send(method, params)
        finally:
            await conn.close()

    async def open_tab(self, url: str, *, active: bool = True) -> dict[str, Any]:
        result = await self._browser_call("Target.createTarget", {"url": url, "background": not active})
        target_id = str(result.get("targetId") or "")
        if not target_id:
            raise BrokerError("Browser did not return a target id for the new tab")
        if active:
            with contextlib.suppress(BrokerError):
                await self.endpoint.activate(target_id)
        return {"tabId": self.registry.tab_id(target_id), "url": url, "active": active}

    async def close_tab(self, tab_id: int) -> dict[str, Any]:
        target_id = self._target(tab_id)
        await self._browser_call("Target.closeTarget", {"targetId": target_id})
        page = self._pages.pop(target_id, None)
        if page is not None:
            await page.conn.close()
        self.registry.forget(target_id)
        return {"tabId": tab_id, "closed": True}

    def _target(self, tab_id: int) -> str:
        target_id = self.registry.target_id(tab_id)
        if target_id is None:
            raise InvalidRequestError(f"Unknown tab: {tab_id}")
        return target_id

    async def page(self, tab_id: int) -> CdpPage:
        async with self._lock:
            target_id = self.registry.target_id(tab_id)
            if target_id is None:
                await self._targets()
                target_id = self._target(tab_id)
            page = self._pages.get(target_id)
            if page is not None and not page.conn.closed:
                return page
            targets = {str(t.get("id")): t for t in await self._targets()}
            target = targets.get(target_id)
            ws_url = (target or {}).get("webSocketDebuggerUrl")
            if not ws_url:
                raise BrokerError(f"Tab {tab_id} is not attachable (is DevTools already open on it?)")
            page = CdpPage(await CdpConnection.open(ws_url), target_id=target_id)
            self._pages[target_id] = page
            logger.debug("attached tab=%d target=%s", tab_id, target_id)
            return page

    async def close(self) -> None:
        for page in list(self._pages.values()):
            await page.conn.close()
        self._pages.clear()
