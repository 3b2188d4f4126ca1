"""Per-tab execution context over DevTools.

Reads come from `DOMSnapshot.captureSnapshot` turned into the locator DOM model
(open/closed shadow roots, frame documents, computed visibility styles, layout
boxes). Effects go through the fixed functions below, bound to an element with
`DOM.resolveNode` + `Runtime.callFunctionOn`. No caller-provided script is ever
evaluated.
"""

from __future__ import annotations

import base64
import contextlib
import logging
from io import BytesIO
from pathlib import Path
from typing import Any

from .cdp import CdpConnection, CdpError
from .errors import BrokerError, InvalidRequestError, RequestTimeoutError, ResolutionError
from .locator.dom import Document, Element, Node, Rect, Text

logger = logging.getLogger("mcp.browser_broker.cdp_page")

COMPUTED_STYLES = ["display", "visibility", "opacity", "content"]

CLICK_JS = """function () {
  const el = this;
  const win = el.ownerDocument.defaultView;
  const r = el.getBoundingClientRect();
  const x = r.left + r.width / 2;
  const y = r.top + r.height / 2;
  const base = {bubbles: true, cancelable: true, composed: true, clientX: x, clientY: y, view: win, button: 0};
  const pointer = Object.assign({pointerId: 1, pointerType: "mouse", isPrimary: true}, base);
  el.dispatchEvent(new win.PointerEvent("pointerover", pointer));
  el.dispatchEvent(new win.MouseEvent("mouseover", base));
  el.dispatchEvent(new win.PointerEvent("pointermove", pointer));
  el.dispatchEvent(new win.MouseEvent("mousemove", base));
  el.dispatchEvent(new win.PointerEvent("pointerdown", Object.assign({buttons: 1}, pointer)));
  el.dispatchEvent(new win.MouseEvent("mousedown", Object.assign({buttons: 1}, base)));
  if (typeof el.focus === "function") el.focus();
  el.dispatchEvent(new win.PointerEvent("pointerup", pointer));
  el.dispatchEvent(new win.MouseEvent("mouseup", base));
  el.click();
  return true;
}"""

TYPE_JS = """function (text, clear) {
  const el = this;
  const doc = el.ownerDocument;
  const win = doc.defaultView;
  if (typeof el.focus === "function") el.focus();
  const tag = el.tagName.toLowerCase();
  if (tag === "input" || tag === "textarea") {
    const proto = tag === "input" ? win.HTMLInputElement.prototype : win.HTMLTextAreaElement.prototype;
    const setter = Object.getOwnPropertyDescriptor(proto, "value").set;
    setter.call(el, clear ? text : String(el.value || "") + text);
    el.dispatchEvent(new win.Event("input", {bubbles: true, composed: true}));
    el.dispatchEvent(new win.Event("change", {bubbles: true}));
    return {ok: true, value: el.value};
  }
  if (el.isContentEditable) {
    const sel = win.getSelection();
    const range = doc.createRange();
    range.selectNodeContents(el);
    if (!clear) range.collapse(false);
    sel.removeAllRanges();
    sel.addRange(range);
    doc.execCommand("insertText", false, text);
    el.dispatchEvent(new win.InputEvent("input", {bubbles: true, composed: true, data: text, inputType: "insertText"}));
    return {ok: true};
  }
  return {ok: false, error: "Element is not typable"};
}"""

SELECT_JS = """function (index) {
  const el = this;
  const win = el.ownerDocument.defaultView;
  if (el.tagName.toLowerCase() !== "select") return {ok: false, error: "Element is not a select"};
  if (index < 0 || index >= el.options.length) return {ok: false, error: "Option not found"};
  el.selectedIndex = index;
  el.dispatchEvent(new win.Event("input", {bubbles: true, composed: true}));
  el.dispatchEvent(new win.Event("change", {bubbles: true}));
  const opt = el.options[index];
  return {ok: true, value: opt.value, label: (opt.label || opt.textContent || "").trim()};
}"""

SCROLL_INTO_VIEW_JS = """function () {
  this.scrollIntoView({block: "center", inline: "center"});
  return true;
}"""

SCROLL_BY_JS = """function (x, y) {
  const win = this.defaultView || this.ownerDocument.defaultView;
  win.scrollBy(x, y);
  return {scrollX: win.scrollX, scrollY: win.scrollY};
}"""

READ_PROPERTY_JS = """function (name) {
  const v = this[name];
  if (v === undefined || typeof v === "function") return null;
  try { return JSON.parse(JSON.stringify(v)); } catch (e) { return String(v); }
}"""

DOWNLOAD_JS = """function (url, filename) {
  const doc = this.ownerDocument || this;
  const a = doc.createElement("a");
  a.href = url;
  a.download = filename || "";
  a.style.display = "none";
  (doc.body || doc.documentElement).appendChild(a);
  a.click();
  a.remove();
  return true;
}"""


def _rare_strings(data: Any, strings: list[str]) -> dict[int, str]:
    if not isinstance(data, dict):
        return {}
    out: dict[int, str] = {}
    for idx, value in zip(data.get("index") or [], data.get("value") or []):
        if isinstance(value, int) and 0 <= value < len(strings):
            out[idx] = strings[value]
    return out


def _rare_ints(data: Any) -> dict[int, int]:
    if not isinstance(data, dict):
        return {}
    return dict(zip(data.get("index") or [], data.get("value") or []))


def _rare_bools(data: Any) -> set[int]:
    if not isinstance(data, dict):
        return set()
    return set(data.get("index") or [])


def _css_content(raw: str) -> str:
    raw = (raw or "").strip()
    if len(raw) >= 2 and raw[0] == raw[-1] and raw[0] in "\"'":
        return raw[1:-1].replace('\\"', '"').replace("\\'", "'")
    return ""


def _build_document(snap: dict[str, Any], strings: list[str]) -> tuple[Document, dict[int, Element]]:
    def s(idx: Any) -> str:
        return strings[idx] if isinstance(idx, int) and 0 <= idx < len(strings) else ""

    nodes = snap.get("nodes") or {}
    parents = nodes.get("parentIndex") or []
    types = nodes.get("nodeType") or []
    names = nodes.get("nodeName") or []
    values = nodes.get("nodeValue") or []
    backend_ids = nodes.get("backendNodeId") or []
    attributes = nodes.get("attributes") or []
    shadow_types = _rare_strings(nodes.get("shadowRootType"), strings)
    input_values = _rare_strings(nodes.get("inputValue"), strings)
    text_values = _rare_strings(nodes.get("textValue"), strings)
    pseudo_types = _rare_strings(nodes.get("pseudoType"), strings)
    checked = _rare_bools(nodes.get("inputChecked"))
    selected = _rare_bools(nodes.get("optionSelected"))
    frame_docs = _rare_ints(nodes.get("contentDocumentIndex"))

    layout = snap.get("layout") or {}
    styles_by_node: dict[int, dict[str, str]] = {}
    rect_by_node: dict[int, Rect] = {}
    for pos, node_index in enumerate(layout.get("nodeIndex") or []):
        if node_index in rect_by_node:
            continue
        style_row = (layout.get("styles") or [])[pos] if pos < len(layout.get("styles") or []) else []
        styles_by_node[node_index] = {name: s(v) for name, v in zip(COMPUTED_STYLES, style_row)}
        bounds = (layout.get("bounds") or [])[pos] if pos < len(layout.get("bounds") or []) else None
        if isinstance(bounds, list) and len(bounds) >= 4:
            rect_by_node[node_index] = Rect(*(float(b) for b in bounds[:4]))

    def ref(i: int) -> Any:
        return backend_ids[i] if i < len(backend_ids) else None

    doc = Document(url=s(snap.get("documentURL")), title=s(snap.get("title")), node_ref=ref(0))
    built: list[Node | None] = []
    frames: dict[int, Element] = {}
    for i, node_type in enumerate(types):
        parent_idx = parents[i] if i < len(parents) else -1
        parent = built[parent_idx] if 0 <= parent_idx < len(built) else None
        obj: Node | None = None
        if node_type == 9:
            obj = doc if i == 0 else None
        elif node_type == 1 and i in pseudo_types:
            if isinstance(parent, Element):
                content = _css_content(styles_by_node.get(i, {}).get("content", ""))
                if content:
                    parent.pseudo[pseudo_types[i]] = content
        elif node_type == 1:
            raw_attrs = attributes[i] if i < len(attributes) else []
            attrs = {s(raw_attrs[k]): s(raw_attrs[k + 1]) for k in range(0, len(raw_attrs) - 1, 2)}
            el = Element(s(names[i]), attrs, node_ref=ref(i))
            el.style = styles_by_node.get(i, {})
            el.rect = rect_by_node.get(i)
            if i in input_values:
                el.props["value"] = input_values[i]
            elif i in text_values:
                el.props["value"] = text_values[i]
            if el.tag == "input":
                el.props["checked"] = i in checked
            if el.tag == "option":
                el.props["selected"] = i in selected
            if i in frame_docs:
                frames[frame_docs[i]] = el
            obj = el
        elif node_type == 3:
            obj = Text(s(values[i]) if i < len(values) else "")
        elif node_type == 11 and isinstance(parent, Element) and i in shadow_types:
            # Shadow roots hang off their host, not off its light children.
            mode = "open" if shadow_types[i] == "open" else "closed"
            built.append(parent.attach_shadow(mode, node_ref=ref(i)))
            continue
        built.append(obj)
        if obj is not None and obj is not doc and parent is not None:
            parent.append(obj)
    return doc, frames


def document_from_snapshot(result: dict[str, Any]) -> Document:
    strings = [str(v) for v in result.get("strings") or []]
    docs = [d for d in result.get("documents") or [] if isinstance(d, dict)]
    if not docs:
        return Document()
    built = [_build_document(d, strings) for d in docs]
    for _doc, frames in built:
        for doc_index, frame_el in frames.items():
            if 0 <= doc_index < len(built):
                frame_el.content_document = built[doc_index][0]
    return built[0][0]


def _index_dom_tree(root: dict[str, Any]) -> tuple[dict[Any, int], dict[int, Any]]:
    """backendNodeId -> nodeId and back, over a pierced `DOM.getDocument` tree."""
    node_ids: dict[Any, int] = {}
    backend_ids: dict[int, Any] = {}
    stack = [root]
    while stack:
        node = stack.pop()
        if "nodeId" in node and "backendNodeId" in node:
            node_ids[node["backendNodeId"]] = node["nodeId"]
            backend_ids[node["nodeId"]] = node["backendNodeId"]
        stack.extend(node.get("children") or [])
        stack.extend(node.get("shadowRoots") or [])
        if isinstance(node.get("contentDocument"), dict):
            stack.append(node["contentDocument"])
    return node_ids, backend_ids


def downscale_png(data_b64: str, max_width: int) -> str:
    from PIL import Image

    raw = base64.b64decode(data_b64)
    with Image.open(BytesIO(raw)) as img:
        if img.width <= max_width:
            return data_b64
        height = max(1, round(img.height * max_width / img.width))
        resized = img.resize((max_width, height), Image.LANCZOS)
        buf = BytesIO()
        resized.save(buf, format="PNG")
    return base64.b64encode(buf.getvalue()).decode("ascii")


class CdpPage:
    """The `Page` used by the locator actions, bound to one DevTools page target."""

    def __init__(self, conn: CdpConnection, *, target_id: str) -> None:
        self.conn = conn
        self.target_id = target_id
        self._page_enabled = False

    async def _enable_page(self) -> None:
        if not self._page_enabled:
            await self.conn.send("Page.enable")
            self._page_enabled = True

    async def info(self) -> dict[str, Any]:
        result = await self.conn.send("Target.getTargetInfo", {"targetId": self.target_id})
        info = result.get("targetInfo") or {}
        return {"url": info.get("url") or "", "title": info.get("title") or ""}

    async def snapshot(self) -> Document:
        result = await self.conn.send(
            "DOMSnapshot.captureSnapshot", {"computedStyles": COMPUTED_STYLES, "includeDOMRects": True}
        )
        return document_from_snapshot(result)

    async def query_css(self, roots: list[Node], selector: str) -> list[Element]:
        """Run `selector` through the browser's own `querySelectorAll` on each root.

        Hits are mapped back to snapshot elements by backendNodeId; nodes the
        snapshot does not know (added since it was taken) are dropped.
        """
        tree = await self.conn.send("DOM.getDocument", {"depth": -1, "pierce": True})
        node_ids, backend_ids = _index_dom_tree(tree.get("root") or {})
        out: list[Element] = []
        for root in roots:
            node_id = node_ids.get(root.node_ref)
            if node_id is None:
                continue
            by_backend = {el.node_ref: el for el in root.iter_elements() if el.node_ref is not None}
            try:
                found = await self.conn.send("DOM.querySelectorAll", {"nodeId": node_id, "selector": selector})
            except CdpError as exc:
                logger.debug("querySelectorAll failed selector=%r err=%s", selector, exc)
                raise InvalidRequestError(f"Invalid selector: {selector}") from None
            for hit in found.get("nodeIds") or []:
                el = by_backend.get(backend_ids.get(hit))
                if el is not None:
                    out.append(el)
        return out

    async def _call_on_object(self, object_id: str, function: str, *args: Any) -> Any:
        try:
            res = await self.conn.send(
                "Runtime.callFunctionOn",
                {
                    "objectId": object_id,
                    "functionDeclaration": function,
                    "arguments": [{"value": a} for a in args],
                    "returnByValue": True,
                    "awaitPromise": True,
                },
            )
        finally:
            with contextlib.suppress(CdpError, BrokerError):
                await self.conn.send("Runtime.releaseObject", {"objectId": object_id})
        details = res.get("exceptionDetails")
        if details:
            text = (details.get("exception") or {}).get("description") or details.get("text") or "script error"
            raise BrokerError(f"In-page call failed: {text}")
        return (res.get("result") or {}).get("value")

    async def _call(self, el: Element, function: str, *args: Any) -> Any:
        try:
            resolved = await self.conn.send("DOM.resolveNode", {"backendNodeId": el.node_ref})
        except CdpError as exc:
            raise ResolutionError(f"Element is gone from the page: {exc}") from None
        object_id = (resolved.get("object") or {}).get("objectId")
        if not object_id:
            raise ResolutionError("Element is gone from the page")
        return await self._call_on_object(object_id, function, *args)

    async def _call_on_document(self, function: str, *args: Any) -> Any:
        root = await self.conn.send("DOM.getDocument", {"depth": 0})
        backend_id = (root.get("root") or {}).get("backendNodeId")
        resolved = await self.conn.send("DOM.resolveNode", {"backendNodeId": backend_id})
        object_id = (resolved.get("object") or {}).get("objectId")
        if not object_id:
            raise BrokerError("Document is not available")
        return await self._call_on_object(object_id, function, *args)

    async def scroll_into_view(self, el: Element) -> None:
        try:
            await self.conn.send("DOM.scrollIntoViewIfNeeded", {"backendNodeId": el.node_ref})
        except CdpError:
            await self._call(el, SCROLL_INTO_VIEW_JS)

    async def click(self, el: Element) -> None:
        await self.scroll_into_view(el)
        await self._call(el, CLICK_JS)

    async def type_text(self, el: Element, text: str, *, clear: bool) -> None:
        await self.scroll_into_view(el)
        out = await self._call(el, TYPE_JS, text, bool(clear))
        if not isinstance(out, dict) or not out.get("ok"):
            raise ResolutionError(str((out or {}).get("error") or "Element is not typable"))

    async def select_option(self, el: Element, option_index: int) -> None:
        out = await self._call(el, SELECT_JS, int(option_index))
        if not isinstance(out, dict) or not out.get("ok"):
            raise ResolutionError(str((out or {}).get("error") or "Option not found"))

    async def scroll_by(self, x: float, y: float) -> dict[str, Any]:
        out = await self._call_on_document(SCROLL_BY_JS, x, y)
        return out if isinstance(out, dict) else {}

    async def outer_html(self, el: Element) -> str:
        result = await self.conn.send("DOM.getOuterHTML", {"backendNodeId": el.node_ref})
        return str(result.get("outerHTML") or "")

    async def read_property(self, el: Element, name: str) -> Any:
        return await self._call(el, READ_PROPERTY_JS, name)

    async def set_files(self, el: Element, paths: list[str]) -> None:
        resolved = [str(Path(p).expanduser().resolve()) for p in paths]
        missing = [p for p in resolved if not Path(p).is_file()]
        if missing:
            raise InvalidRequestError(f"File not found: {missing[0]}")
        await self.conn.send("DOM.setFileInputFiles", {"files": resolved, "backendNodeId": el.node_ref})

    async def navigate(self, url: str, *, timeout: float = 30.0) -> dict[str, Any]:
        await self._enable_page()
        loaded = self.conn.expect_event("Page.loadEventFired")
        try:
            result = await self.conn.send("Page.navigate", {"url": url})
        except BaseException:
            loaded.cancel()
            raise
        if result.get("errorText"):
            loaded.cancel()
            raise BrokerError(f"Navigation failed: {result['errorText']}")
        if result.get("loaderId"):
            try:
                await loaded.wait(timeout=timeout)
            except RequestTimeoutError:
                logger.info("load event not seen within %.0fs url=%s", timeout, url)
        else:
            # Same-document navigation: no load event follows.
            loaded.cancel()
        return await self.info()

    async def screenshot(self, *, max_width: int | None = None) -> str:
        result = await self.conn.send("Page.captureScreenshot", {"format": "png"})
        data = str(result.get("data") or "")
        if not data:
            raise BrokerError("Screenshot data is empty")
        if max_width and max_width > 0:
            data = downscale_png(data, int(max_width))
        return data

    async def download(
        self, url: str, *, download_dir: Path, filename: str | None = None, timeout: float = 60.0
    ) -> dict[str, Any]:
        await self._enable_page()
        download_dir.mkdir(parents=True, exist_ok=True)
        await self.conn.send("Page.setDownloadBehavior", {"behavior": "allow", "downloadPath": str(download_dir)})
        starting = self.conn.expect_event("Page.downloadWillBegin")
        try:
            await self._call_on_document(DOWNLOAD_JS, url, filename or "")
        except BaseException:
            starting.cancel()
            raise
        began = await starting.wait(timeout=min(timeout, 15.0))
        guid = began.get("guid")
        name = began.get("suggestedFilename") or filename or ""
        state = "in_progress"
        try:
            progress = await self.conn.wait_for_event(
                "Page.downloadProgress",
                lambda p: p.get("guid") == guid and p.get("state") in ("completed", "canceled"),
                timeout=timeout,
            )
            state = str(progress.get("state"))
        except RequestTimeoutError:
            logger.info("download still running guid=%s", guid)
        return {
            "id": guid,
            "url": began.get("url") or url,
            "filename": name,
            "path": str(download_dir / name) if name else None,
            "state": state,
        }
