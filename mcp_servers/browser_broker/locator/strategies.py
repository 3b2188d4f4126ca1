"""Per-kind element finders.

Each finder returns matches for one search root. Semantic kinds compare
case-insensitively after whitespace normalisation and run in two passes over
all roots: exact matches first, substring matches only when no exact match
exists anywhere.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable

from ..errors import InvalidRequestError
from .dom import Element, Node, inner_text, normalize_space, text_content
from .parse import Locator

_LABELABLE = frozenset({"input", "select", "textarea", "button", "meter", "output", "progress"})

_IMPLICIT_ROLES = {
    "button": "button",
    "summary": "button",
    "select": "combobox",
    "textarea": "textbox",
    "h1": "heading",
    "h2": "heading",
    "h3": "heading",
    "h4": "heading",
    "h5": "heading",
    "h6": "heading",
    "img": "img",
    "ul": "list",
    "ol": "list",
    "li": "listitem",
    "option": "option",
    "table": "table",
    "tr": "row",
    "td": "cell",
    "th": "columnheader",
    "nav": "navigation",
    "main": "main",
    "form": "form",
    "dialog": "dialog",
    "progress": "progressbar",
    "article": "article",
    "header": "banner",
    "footer": "contentinfo",
    "aside": "complementary",
}

_INPUT_ROLES = {
    "button": "button",
    "submit": "button",
    "reset": "button",
    "image": "button",
    "checkbox": "checkbox",
    "radio": "radio",
    "range": "slider",
    "number": "spinbutton",
    "search": "searchbox",
}

_NAME_FROM_CONTENT = frozenset(
    {"button", "link", "heading", "cell", "columnheader", "option", "listitem", "tab", "menuitem", "checkbox", "radio"}
)

_SKIP_TEXT_TAGS = frozenset({"html", "head", "script", "style", "template", "noscript", "title"})

TextMatch = Callable[[str], bool]

# Native selector query: (search roots, selector) -> matches in root order.
CssQuery = Callable[[list[Node], str], Awaitable[list[Element]]]


def text_matcher(value: str, *, exact: bool) -> TextMatch:
    want = normalize_space(value).lower()
    if exact:
        return lambda candidate: normalize_space(candidate).lower() == want
    return lambda candidate: bool(want) and want in normalize_space(candidate).lower()


def implicit_role(el: Element) -> str | None:
    explicit = (el.get("role") or "").strip().split()
    if explicit:
        return explicit[0].lower()
    if el.tag == "a" and el.get("href") is not None:
        return "link"
    if el.tag == "input":
        kind = (el.get("type") or "text").lower()
        if kind == "hidden":
            return None
        if kind in _INPUT_ROLES:
            return _INPUT_ROLES[kind]
        return "combobox" if el.get("list") else "textbox"
    if el.tag == "select":
        size = el.get("size") or "1"
        if el.get("multiple") is not None or (size.isdigit() and int(size) > 1):
            return "listbox"
    return _IMPLICIT_ROLES.get(el.tag)


def _labelled_by_text(el: Element, root: Node) -> str | None:
    ids = (el.get("aria-labelledby") or "").split()
    if not ids:
        return None
    parts = []
    for ref in ids:
        target = root.get_element_by_id(ref)
        if target is not None:
            parts.append(inner_text(target) or text_content(target))
    return normalize_space(" ".join(parts)) or None


def _label_texts(el: Element, root: Node) -> list[str]:
    out: list[str] = []
    el_id = el.get("id")
    if el_id:
        for label in root.iter_elements():
            if label.tag == "label" and label.get("for") == el_id:
                out.append(inner_text(label) or text_content(label))
    parent = el.parent_element
    while parent is not None:
        if parent.tag == "label":
            out.append(inner_text(parent) or text_content(parent))
            break
        parent = parent.parent_element
    return out


def accessible_name(el: Element, root: Node | None = None) -> str:
    root = root or el.root
    aria = el.get("aria-label")
    if aria and aria.strip():
        return normalize_space(aria)
    labelled = _labelled_by_text(el, root)
    if labelled:
        return labelled
    if el.tag in _LABELABLE:
        labels = [normalize_space(t) for t in _label_texts(el, root) if t.strip()]
        if labels:
            return " ".join(labels)
    if el.tag == "input" and (el.get("type") or "").lower() in ("button", "submit", "reset"):
        return normalize_space(el.get("value") or "")
    if el.tag == "img":
        return normalize_space(el.get("alt") or el.get("title") or "")
    role = implicit_role(el)
    if role in _NAME_FROM_CONTENT or el.tag in ("a", "button"):
        text = normalize_space(inner_text(el) or text_content(el))
        if text:
            return text
    if el.get("title"):
        return normalize_space(el.get("title") or "")
    if el.get("placeholder"):
        return normalize_space(el.get("placeholder") or "")
    return ""


def _first_labelable(label: Element) -> Element | None:
    for el in label.iter_elements():
        if el.tag in _LABELABLE and not (el.tag == "input" and (el.get("type") or "").lower() == "hidden"):
            return el
    return None


def find_by_label(root: Node, match: TextMatch) -> list[Element]:
    out: list[Element] = []
    for el in root.iter_elements():
        if el.tag == "label" and match(inner_text(el) or text_content(el)):
            target_id = el.get("for")
            target = root.get_element_by_id(target_id) if target_id else _first_labelable(el)
            if target is not None and target not in out:
                out.append(target)
        elif el.get("aria-labelledby"):
            labelled = _labelled_by_text(el, root)
            if labelled and match(labelled) and el not in out:
                out.append(el)
    return out


def _find_by_attr(attr: str) -> Callable[[Node, TextMatch], list[Element]]:
    def finder(root: Node, match: TextMatch) -> list[Element]:
        return [el for el in root.iter_elements() if el.get(attr) is not None and match(el.get(attr) or "")]

    return finder


def find_by_text(root: Node, match: TextMatch) -> list[Element]:
    hits = [el for el in root.iter_elements() if el.tag not in _SKIP_TEXT_TAGS and match(inner_text(el))]
    hit_ids = {id(el) for el in hits}
    # Innermost only: drop any hit that has a matching descendant.
    return [el for el in hits if not any(id(d) in hit_ids for d in el.iter_elements())]


def split_role(value: str) -> tuple[str, str]:
    role, _sep, name = value.strip().partition(" ")
    return role.strip().lower(), name.strip()


def find_by_role(root: Node, role: str, name_match: TextMatch | None) -> list[Element]:
    out = []
    for el in root.iter_elements():
        if implicit_role(el) != role:
            continue
        if name_match is not None and not name_match(accessible_name(el, root)):
            continue
        out.append(el)
    return out


SEMANTIC_FINDERS: dict[str, Callable[[Node, TextMatch], list[Element]]] = {
    "label": find_by_label,
    "aria": _find_by_attr("aria-label"),
    "placeholder": _find_by_attr("placeholder"),
    "text": find_by_text,
}


def _exact_attr(root: Node, attr: str, value: str) -> list[Element]:
    hits = [el for el in root.iter_elements() if el.get(attr) == value]
    if hits:
        return hits
    lowered = value.lower()
    return [el for el in root.iter_elements() if (el.get(attr) or "").lower() == lowered and el.get(attr) is not None]


async def find_in_roots(roots: list[Node], locator: Locator, *, css: CssQuery | None = None) -> list[Element]:
    """All matches of one locator across every search root, in root order.

    `css` candidates go to the page's own selector engine; the other kinds run
    over the DOM model.
    """
    kind = locator.kind
    if kind == "css":
        if css is None:
            raise InvalidRequestError(f"CSS selectors need a live page: {locator.raw}")
        return await css(roots, locator.value)
    if kind in ("id", "name"):
        return [el for root in roots for el in _exact_attr(root, kind, locator.value)]
    if kind == "role":
        role, name = split_role(locator.value)
        if not name:
            return [el for root in roots for el in find_by_role(root, role, None)]
        for exact in (True, False):
            found = [el for root in roots for el in find_by_role(root, role, text_matcher(name, exact=exact))]
            if found:
                return found
        return []
    finder = SEMANTIC_FINDERS[kind]
    for exact in (True, False):
        found = [el for root in roots for el in finder(root, text_matcher(locator.value, exact=exact))]
        if found:
            return found
    return []
