from __future__ import annotations

from collections import deque

from .dom import Document, Element, Node, ShadowRoot

MAX_DEPTH = 6
MAX_ROOTS = 512

_FRAME_TAGS = ("iframe", "frame")


def collect_roots(document: Document, *, max_depth: int = MAX_DEPTH, max_roots: int = MAX_ROOTS) -> list[Node]:
    """Search roots breadth-first: the document, open shadow roots, same-origin frame documents.

    Closed shadow roots and frames from another origin are never entered.
    """
    origin = document.origin
    roots: list[Node] = []
    queue: deque[tuple[Node, int]] = deque([(document, 0)])
    while queue and len(roots) < max_roots:
        root, depth = queue.popleft()
        roots.append(root)
        if depth >= max_depth:
            continue
        for el in root.iter_elements():
            shadow = el.shadow_root
            if shadow is not None and shadow.mode == "open":
                queue.append((shadow, depth + 1))
            if el.tag in _FRAME_TAGS:
                child = el.content_document
                if child is not None and child.origin == origin:
                    queue.append((child, depth + 1))
    return roots


def owner_document(el: Element) -> Document | None:
    node: Node = el.root
    while isinstance(node, ShadowRoot):
        node = node.host.root
    return node if isinstance(node, Document) else None
