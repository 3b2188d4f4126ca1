"""In-memory DOM model the locator engine runs over.

Built from a `DOMSnapshot.captureSnapshot` result in production and by hand in
tests. Nodes keep the light tree (`children`), open/closed shadow roots hang off
their host (`Element.shadow_root`) and frame documents off the frame element
(`Element.content_document`, `None` when the frame is not accessible).
"""

from __future__ import annotations

from collections.abc import Iterator
from dataclasses import dataclass
from typing import Any


@dataclass(slots=True)
class Rect:
    x: float
    y: float
    width: float
    height: float

    @property
    def empty(self) -> bool:
        return self.width <= 0 or self.height <= 0

    @property
    def center(self) -> tuple[float, float]:
        return (self.x + self.width / 2, self.y + self.height / 2)


class Node:
    __slots__ = ("parent", "children", "node_ref")

    def __init__(self, *, node_ref: Any = None) -> None:
        self.parent: Node | None = None
        self.children: list[Node] = []
        # DevTools backendNodeId when built from a snapshot.
        self.node_ref = node_ref

    def append(self, *nodes: Node | str) -> Node:
        for node in nodes:
            child = Text(node) if isinstance(node, str) else node
            child.parent = self
            self.children.append(child)
        return self

    @property
    def element_children(self) -> list[Element]:
        return [c for c in self.children if isinstance(c, Element)]

    def iter_elements(self) -> Iterator[Element]:
        """Descendant elements in document order, staying inside this tree."""
        stack = list(reversed(self.element_children))
        while stack:
            el = stack.pop()
            yield el
            stack.extend(reversed(el.element_children))

    def get_element_by_id(self, element_id: str) -> Element | None:
        for el in self.iter_elements():
            if el.attrs.get("id") == element_id:
                return el
        return None

    @property
    def root(self) -> Node:
        node: Node = self
        while node.parent is not None:
            node = node.parent
        return node


class Text(Node):
    __slots__ = ("data",)

    def __init__(self, data: str) -> None:
        super().__init__()
        self.data = data


class Element(Node):
    __slots__ = ("tag", "attrs", "style", "rect", "props", "pseudo", "shadow_root", "content_document")

    def __init__(
        self,
        tag: str,
        attrs: dict[str, str] | None = None,
        *children: Node | str,
        style: dict[str, str] | None = None,
        rect: Rect | None = None,
        props: dict[str, Any] | None = None,
        node_ref: Any = None,
    ) -> None:
        super().__init__(node_ref=node_ref)
        self.tag = tag.lower()
        self.attrs = {k.lower(): v for k, v in (attrs or {}).items()}
        self.style = dict(style or {})
        self.rect = rect
        self.props = dict(props or {})
        self.pseudo: dict[str, str] = {}
        self.shadow_root: ShadowRoot | None = None
        self.content_document: Document | None = None
        self.append(*children)

    def __repr__(self) -> str:
        ident = f"#{self.attrs['id']}" if self.attrs.get("id") else ""
        return f"<{self.tag}{ident}>"

    def get(self, name: str) -> str | None:
        return self.attrs.get(name.lower())

    @property
    def classes(self) -> list[str]:
        return (self.attrs.get("class") or "").split()

    @property
    def parent_element(self) -> Element | None:
        return self.parent if isinstance(self.parent, Element) else None

    @property
    def value(self) -> str:
        if "value" in self.props:
            return str(self.props["value"] if self.props["value"] is not None else "")
        if self.tag == "select":
            option = self.selected_option
            return option.option_value if option is not None else ""
        if self.tag == "textarea":
            return text_content(self)
        return self.attrs.get("value") or ""

    @property
    def checked(self) -> bool:
        if "checked" in self.props:
            return bool(self.props["checked"])
        if self.tag == "option":
            return self.selected
        return self.tag == "input" and "checked" in self.attrs

    @property
    def selected(self) -> bool:
        if "selected" in self.props:
            return bool(self.props["selected"])
        return "selected" in self.attrs

    @property
    def disabled(self) -> bool:
        if "disabled" in self.props:
            return bool(self.props["disabled"])
        return self.tag in _FORM_CONTROLS and "disabled" in self.attrs

    @property
    def options(self) -> list[Element]:
        return [el for el in self.iter_elements() if el.tag == "option"]

    @property
    def selected_option(self) -> Element | None:
        options = self.options
        for option in options:
            if option.selected:
                return option
        return options[0] if options else None

    @property
    def option_value(self) -> str:
        if "value" in self.attrs:
            return self.attrs["value"]
        return normalize_space(text_content(self))

    @property
    def option_label(self) -> str:
        return normalize_space(self.attrs.get("label") or text_content(self))

    @property
    def content_editable(self) -> bool:
        el: Element | None = self
        while el is not None:
            raw = el.attrs.get("contenteditable")
            if raw is not None:
                return raw.strip().lower() in ("", "true", "plaintext-only")
            el = el.parent_element
        return False

    def attach_shadow(self, mode: str = "open", *, node_ref: Any = None) -> ShadowRoot:
        root = ShadowRoot(self, mode=mode, node_ref=node_ref)
        self.shadow_root = root
        return root


class ShadowRoot(Node):
    __slots__ = ("host", "mode")

    def __init__(self, host: Element, *, mode: str = "open", node_ref: Any = None) -> None:
        super().__init__(node_ref=node_ref)
        self.host = host
        self.mode = mode


class Document(Node):
    __slots__ = ("url", "origin", "title")

    def __init__(
        self,
        *children: Node | str,
        url: str = "about:blank",
        origin: str | None = None,
        title: str = "",
        node_ref: Any = None,
    ) -> None:
        super().__init__(node_ref=node_ref)
        self.url = url
        self.origin = origin if origin is not None else origin_of(url)
        self.title = title
        self.append(*children)

    @property
    def document_element(self) -> Element | None:
        kids = self.element_children
        return kids[0] if kids else None

    @property
    def body(self) -> Element | None:
        for el in self.iter_elements():
            if el.tag == "body":
                return el
        return self.document_element


_FORM_CONTROLS = frozenset({"button", "input", "select", "textarea", "optgroup", "option", "fieldset"})

_NON_RENDERED = frozenset({"script", "style", "head", "template", "noscript", "title", "meta", "link"})

_BLOCK_TAGS = frozenset(
    {
        "address", "article", "aside", "blockquote", "body", "dd", "details", "dialog", "div", "dl", "dt",
        "fieldset", "figcaption", "figure", "footer", "form", "h1", "h2", "h3", "h4", "h5", "h6", "header",
        "hr", "html", "li", "main", "nav", "ol", "p", "pre", "section", "summary", "table", "tr", "ul",
    }
)  # fmt: skip


def origin_of(url: str) -> str:
    scheme, sep, rest = (url or "").partition("://")
    if not sep:
        return "null"
    host = rest.split("/", 1)[0].split("?", 1)[0].split("#", 1)[0]
    return f"{scheme.lower()}://{host.lower()}"


def normalize_space(text: str) -> str:
    return " ".join((text or "").split())


def text_content(node: Node) -> str:
    parts: list[str] = []
    stack: list[Node] = [node]
    while stack:
        cur = stack.pop()
        if isinstance(cur, Text):
            parts.append(cur.data)
        else:
            stack.extend(reversed(cur.children))
    return "".join(parts)


def _rendered(el: Element) -> bool:
    return el.tag not in _NON_RENDERED and el.style.get("display") != "none"


def inner_text(node: Node, *, generated: bool = False) -> str:
    """Approximation of `innerText`: rendered text only, block boundaries become newlines.

    Shadow trees render in place of their host's children; `<slot>` renders the
    host's light children. With `generated=True` CSS `::before`/`::after`
    content is included as well. The walk is an explicit stack, so nesting
    depth is bounded by memory only.
    """
    lines: list[str] = []
    current: list[str] = []

    def flush() -> None:
        text = normalize_space("".join(current))
        current.clear()
        if text:
            lines.append(text)

    # (node, slot host, leaving): `leaving` marks the close of an element.
    stack: list[tuple[Node, Element | None, bool]] = []
    if isinstance(node, Element) and node.shadow_root is not None:
        stack.extend((child, node, False) for child in reversed(node.shadow_root.children))
    else:
        stack.append((node, None, False))

    while stack:
        n, slot_host, leaving = stack.pop()
        if isinstance(n, Text):
            current.append(n.data)
            continue
        if not isinstance(n, Element):
            stack.extend((child, slot_host, False) for child in reversed(n.children))
            continue
        block = n.tag in _BLOCK_TAGS or n.style.get("display") in ("block", "flex", "grid", "list-item", "table")
        if leaving:
            if generated and n.pseudo.get("after"):
                current.append(n.pseudo["after"])
            if n.tag in ("td", "th"):
                current.append(" ")
            elif block:
                flush()
            continue
        if not _rendered(n):
            continue
        if n.tag == "br":
            flush()
            continue
        if block:
            flush()
        if generated and n.pseudo.get("before"):
            current.append(n.pseudo["before"])
        stack.append((n, None, True))
        if n.tag == "slot" and slot_host is not None:
            stack.extend((child, None, False) for child in reversed(slot_host.children))
        elif n.shadow_root is not None:
            stack.extend((child, n, False) for child in reversed(n.shadow_root.children))
        else:
            stack.extend((child, slot_host, False) for child in reversed(n.children))
    flush()
    return "\n".join(lines)
