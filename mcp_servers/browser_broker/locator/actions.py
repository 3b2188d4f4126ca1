"""Locator-driven page actions and reads.

The engine decides *which* element; a `Page` performs the effect through its
fixed in-page primitives (never caller-supplied code). Every result names the
literal locator candidate that matched under `selector`.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Protocol

from ..errors import InvalidRequestError, ResolutionError
from .dom import Document, Element, Node, inner_text, normalize_space
from .parse import parse_locators
from .resolve import DEFAULT_POLL_MS, Resolution, wait_for
from .strategies import accessible_name, implicit_role
from .traverse import collect_roots
from .visibility import is_visible

DEFAULT_PAGE_TEXT_LIMIT = 20_000
DEFAULT_LIST_LIMIT = 50
MAX_LIST_ITEMS = 200
MAX_ITEM_TEXT = 200
MAX_PATTERN_MATCHES = 50
MAX_OUTLINE_NODES = 500

QUERY_MODES = ("text", "value", "attribute", "property", "html", "list", "exists", "page_text")

_TYPABLE_INPUTS = frozenset({"", "text", "search", "email", "url", "tel", "password", "number"})
_INTERACTIVE_TAGS = frozenset({"a", "button", "input", "select", "textarea", "summary", "option"})
_INTERACTIVE_ROLES = frozenset(
    {"button", "link", "checkbox", "radio", "textbox", "combobox", "listbox", "option", "tab", "menuitem", "switch", "slider", "searchbox"}
)
_JS_FLAGS = {"i": re.IGNORECASE, "m": re.MULTILINE, "s": re.DOTALL}


class Page(Protocol):
    async def snapshot(self) -> Document: ...

    async def query_css(self, roots: list[Node], selector: str) -> list[Element]: ...

    async def click(self, el: Element) -> None: ...

    async def type_text(self, el: Element, text: str, *, clear: bool) -> None: ...

    async def select_option(self, el: Element, option_index: int) -> None: ...

    async def scroll_into_view(self, el: Element) -> None: ...

    async def scroll_by(self, x: float, y: float) -> dict[str, Any]: ...

    async def outer_html(self, el: Element) -> str: ...

    async def read_property(self, el: Element, name: str) -> Any: ...

    async def set_files(self, el: Element, paths: list[str]) -> None: ...


def _int_arg(args: dict[str, Any], key: str, default: int, *, minimum: int = 0) -> int:
    raw = args.get(key)
    if raw is None:
        return default
    if isinstance(raw, bool):
        raise InvalidRequestError(f"{key} must be a number")
    try:
        value = int(raw)
    except (TypeError, ValueError):
        raise InvalidRequestError(f"{key} must be a number") from None
    return max(minimum, value)


@dataclass(slots=True)
class WaitOptions:
    index: int = 0
    timeout_ms: int = 0
    poll_ms: int = DEFAULT_POLL_MS

    @classmethod
    def from_args(cls, args: dict[str, Any]) -> WaitOptions:
        return cls(
            index=_int_arg(args, "index", 0),
            timeout_ms=_int_arg(args, "timeoutMs", 0),
            poll_ms=_int_arg(args, "pollMs", DEFAULT_POLL_MS, minimum=1),
        )


async def find(page: Page, args: dict[str, Any]) -> Resolution:
    locators = parse_locators(args.get("selector"))
    opts = WaitOptions.from_args(args)
    return await wait_for(
        page.snapshot,
        locators,
        index=opts.index,
        timeout_ms=opts.timeout_ms,
        poll_ms=opts.poll_ms,
        css=page.query_css,
    )


async def locate(page: Page, args: dict[str, Any]) -> tuple[Element, Resolution]:
    res = await find(page, args)
    return res.require(), res


def is_typable(el: Element) -> bool:
    if el.tag == "textarea":
        return True
    if el.tag == "input":
        return (el.get("type") or "").strip().lower() in _TYPABLE_INPUTS
    return el.content_editable


async def click(page: Page, args: dict[str, Any]) -> dict[str, Any]:
    el, res = await locate(page, args)
    await page.click(el)
    return {"ok": True, "selector": res.selector}


async def type_text(page: Page, args: dict[str, Any]) -> dict[str, Any]:
    text = args.get("text")
    if not isinstance(text, str):
        raise InvalidRequestError("text is required")
    el, res = await locate(page, args)
    if not is_typable(el):
        raise ResolutionError(f"Element is not typable: <{el.tag}>", locators=[res.selector or ""])
    await page.type_text(el, text, clear=bool(args.get("clear")))
    return {"ok": True, "selector": res.selector, "typed": len(text)}


def choose_option(el: Element, args: dict[str, Any]) -> int:
    """Option position by value, then trimmed label, then optionIndex."""
    options = el.options
    value = args.get("value")
    if value is not None:
        for i, opt in enumerate(options):
            if opt.option_value == str(value):
                return i
    label = args.get("label")
    if label is not None:
        want = normalize_space(str(label))
        for i, opt in enumerate(options):
            if opt.option_label == want:
                return i
    if args.get("optionIndex") is not None:
        idx = _int_arg(args, "optionIndex", -1, minimum=-1)
        if 0 <= idx < len(options):
            return idx
    if value is None and label is None and args.get("optionIndex") is None:
        raise InvalidRequestError("value, label or optionIndex is required")
    raise ResolutionError("Option not found")


async def select_option(page: Page, args: dict[str, Any]) -> dict[str, Any]:
    el, res = await locate(page, args)
    if el.tag != "select":
        raise ResolutionError("Element is not a select", locators=[res.selector or ""])
    idx = choose_option(el, args)
    option = el.options[idx]
    await page.select_option(el, idx)
    return {
        "ok": True,
        "selector": res.selector,
        "value": option.option_value,
        "label": option.option_label,
        "optionIndex": idx,
    }


async def scroll(page: Page, args: dict[str, Any]) -> dict[str, Any]:
    if args.get("selector"):
        el, res = await locate(page, args)
        await page.scroll_into_view(el)
        return {"ok": True, "selector": res.selector}
    try:
        x = float(args.get("x") or 0)
        y = float(args.get("y") or 0)
    except (TypeError, ValueError):
        raise InvalidRequestError("x and y must be numbers") from None
    position = await page.scroll_by(x, y)
    return {"ok": True, **(position or {})}


async def set_file_input(page: Page, args: dict[str, Any]) -> dict[str, Any]:
    files = args.get("files")
    if isinstance(files, str):
        files = [files]
    if not isinstance(files, list) or not files or not all(isinstance(f, str) and f for f in files):
        raise InvalidRequestError("files must be a non-empty list of paths")
    el, res = await locate(page, args)
    if el.tag != "input" or (el.get("type") or "").lower() != "file":
        raise ResolutionError("Element is not a file input", locators=[res.selector or ""])
    await page.set_files(el, list(files))
    return {"ok": True, "selector": res.selector, "count": len(files)}


def list_item(el: Element) -> dict[str, Any]:
    return {
        "text": normalize_space(inner_text(el))[:MAX_ITEM_TEXT],
        "tag": el.tag,
        "label": (el.get("aria-label") or el.get("title") or accessible_name(el))[:MAX_ITEM_TEXT],
    }


def compile_js_pattern(pattern: str, flags: str | None) -> tuple[re.Pattern[str], bool]:
    """JS-style `pattern` + `flags` (`g i m s`). Flags default to `i`."""
    raw_flags = "i" if flags is None else str(flags)
    py_flags = 0
    global_ = False
    for ch in raw_flags:
        if ch == "g":
            global_ = True
        elif ch in _JS_FLAGS:
            py_flags |= _JS_FLAGS[ch]
        elif ch in "uy":
            continue
        else:
            raise InvalidRequestError(f"Invalid regex flag: {ch}")
    try:
        return re.compile(pattern, py_flags), global_
    except re.error as exc:
        raise InvalidRequestError(f"Invalid pattern: {exc}") from None


def page_text(document: Document) -> str:
    """Visible text, form field values and generated content of the page and its same-origin frames."""
    parts: list[str] = []
    for root in collect_roots(document):
        if not isinstance(root, Document):
            continue
        body = root.body
        if body is not None:
            parts.append(inner_text(body, generated=True))
        for el in root.iter_elements():
            if el.tag in ("input", "textarea", "select") and (el.get("type") or "").lower() not in ("hidden", "password"):
                value = el.value
                if value:
                    parts.append(value)
    return "\n".join(p for p in parts if p)


async def query(page: Page, args: dict[str, Any]) -> dict[str, Any]:
    mode = str(args.get("mode") or "text")
    if mode not in QUERY_MODES:
        raise InvalidRequestError(f"Unknown query mode: {mode}")

    if mode == "page_text":
        limit = _int_arg(args, "limit", DEFAULT_PAGE_TEXT_LIMIT)
        document = await page.snapshot()
        full = page_text(document)
        text = full[:limit]
        out: dict[str, Any] = {"text": text, "truncated": len(full) > limit}
        pattern = args.get("pattern")
        if pattern:
            regex, global_ = compile_js_pattern(str(pattern), args.get("flags"))
            found = []
            for m in regex.finditer(text):
                found.append(m.group(0))
                if not global_ or len(found) >= MAX_PATTERN_MATCHES:
                    break
            out["matches"] = found
        return out

    if mode in ("list", "exists"):
        res = await find(page, args)
        if mode == "exists":
            return {"exists": res.count > 0, "count": res.count, "selector": res.selector}
        limit = min(max(1, _int_arg(args, "limit", DEFAULT_LIST_LIMIT, minimum=1)), MAX_LIST_ITEMS)
        items = [list_item(el) for el in res.matches[:limit]]
        return {"items": items, "count": res.count, "selector": res.selector}

    el, res = await locate(page, args)
    out = {"selector": res.selector}
    if mode == "text":
        out["value"] = inner_text(el)
    elif mode == "value":
        out["value"] = el.value
    elif mode == "attribute":
        name = args.get("attribute") or args.get("name")
        if not isinstance(name, str) or not name:
            raise InvalidRequestError("attribute is required for mode=attribute")
        out["value"] = el.get(name)
    elif mode == "property":
        name = args.get("property") or args.get("name")
        if not isinstance(name, str) or not name:
            raise InvalidRequestError("property is required for mode=property")
        out["value"] = await page.read_property(el, name)
    else:
        out["value"] = await page.outer_html(el)
    return out


def _css_path(el: Element) -> str:
    if el.get("id"):
        return f"#{el.get('id')}"
    if el.get("name") and el.tag in ("input", "select", "textarea", "button"):
        return f'{el.tag}[name="{el.get("name")}"]'
    parts: list[str] = []
    node: Element | None = el
    while node is not None:
        if node.get("id"):
            parts.append(f"#{node.get('id')}")
            break
        sibs = [s for s in (node.parent.element_children if node.parent else [node]) if s.tag == node.tag]
        if len(sibs) > 1:
            parts.append(f"{node.tag}:nth-of-type({sibs.index(node) + 1})")
        else:
            parts.append(node.tag)
        node = node.parent_element
    return " > ".join(reversed(parts))


def _interactive(el: Element) -> bool:
    if el.tag == "input" and (el.get("type") or "").lower() == "hidden":
        return False
    if el.tag in _INTERACTIVE_TAGS:
        return el.tag != "a" or el.get("href") is not None
    if implicit_role(el) in _INTERACTIVE_ROLES:
        return True
    return el.content_editable and el.get("contenteditable") is not None


def outline(document: Document, *, limit: int = MAX_OUTLINE_NODES) -> list[dict[str, Any]]:
    """Visible interactive elements: role, accessible name and a selector to reach each one."""
    nodes: list[dict[str, Any]] = []
    for root in collect_roots(document):
        for el in root.iter_elements():
            if len(nodes) >= limit:
                return nodes
            if not _interactive(el) or not is_visible(el):
                continue
            node: dict[str, Any] = {
                "uid": f"n{len(nodes)}",
                "role": implicit_role(el) or el.tag,
                "name": accessible_name(el, root)[:MAX_ITEM_TEXT],
                "tag": el.tag,
                "selector": _css_path(el),
            }
            if el.tag == "a" and el.get("href"):
                node["href"] = el.get("href")
            if el.tag in ("input", "select", "textarea"):
                node["type"] = el.get("type") or el.tag
                if (el.get("type") or "").lower() != "password":
                    node["value"] = el.value
            nodes.append(node)
    return nodes
