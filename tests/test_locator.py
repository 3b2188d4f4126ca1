from __future__ import annotations

import asyncio

import pytest

from mcp_servers.browser_broker.errors import InvalidRequestError, ResolutionError
from mcp_servers.browser_broker.locator.dom import Document, Element, Node, Rect, inner_text
from mcp_servers.browser_broker.locator.parse import parse_locator, parse_locators, split_candidates
from mcp_servers.browser_broker.locator.resolve import MATCHED, TIMED_OUT, resolve, wait_for
from mcp_servers.browser_broker.locator.strategies import accessible_name, implicit_role
from mcp_servers.browser_broker.locator.traverse import collect_roots, owner_document
from mcp_servers.browser_broker.locator.visibility import is_visible, pick

BOX = Rect(0, 0, 100, 20)


def _el(tag: str, attrs: dict | None = None, *children, **kw) -> Element:
    kw.setdefault("rect", BOX)
    return Element(tag, attrs, *children, **kw)


def _page(*body_children, url: str = "https://app.test/form") -> Document:
    return Document(_el("html", None, _el("body", None, *body_children)), url=url)


# -- parse -------------------------------------------------------------------


def test_split_candidates_respects_brackets_and_quotes() -> None:
    assert split_candidates("label:Email, #email") == ["label:Email", "#email"]
    assert split_candidates('a[title="x, y"], :is(b, i)') == ['a[title="x, y"]', ":is(b, i)"]
    assert split_candidates(" , ") == []


def test_parse_locator_prefixes() -> None:
    assert parse_locator("label: Email ").kind == "label"
    assert parse_locator("label: Email ").value == "Email"
    assert parse_locator("ROLE:button Save").kind == "role"
    assert parse_locator("css:#a").value == "#a"
    assert parse_locator("a:hover").kind == "css"
    assert parse_locator("li:nth-child(2)").kind == "css"
    with pytest.raises(InvalidRequestError):
        parse_locator("text:")
    with pytest.raises(InvalidRequestError):
        parse_locator("   ")


def test_parse_locators_list_entries_are_not_split() -> None:
    locs = parse_locators(["text:Hello, world", "#b"])
    assert [(l.kind, l.value) for l in locs] == [("text", "Hello, world"), ("css", "#b")]
    with pytest.raises(InvalidRequestError, match="selector is required"):
        parse_locators(None)
    with pytest.raises(InvalidRequestError):
        parse_locators(42)  # type: ignore[arg-type]


# -- css ---------------------------------------------------------------------


def test_locator_package_reexports_the_engine() -> None:
    from mcp_servers.browser_broker import locator

    assert locator.resolve is resolve
    assert locator.wait_for is wait_for
    assert locator.parse_locators is parse_locators


SEEN_CSS: list[tuple[list[Node], str]] = []


async def _by_id(roots: list[Node], selector: str) -> list[Element]:
    # querySelectorAll stand-in: bare `#id` only.
    SEEN_CSS.append((roots, selector))
    return [el for root in roots for el in root.iter_elements() if el.get("id") == selector.removeprefix("#")]


def _resolve(document: Document, spec: str, **kw):  # noqa: ANN003, ANN202
    return asyncio.run(resolve(document, spec, css=_by_id, **kw))


def test_css_candidates_go_to_the_page_query_with_every_root() -> None:
    host = _el("x-panel")
    shadow = host.attach_shadow("open")
    deep = _el("button", {"id": "deep"})
    shadow.append(deep)
    doc = _page(host)
    SEEN_CSS.clear()

    res = _resolve(doc, "css:#deep")

    assert res.element is deep
    assert res.selector == "css:#deep"
    roots, selector = SEEN_CSS[0]
    assert selector == "#deep"
    assert roots == [doc, shadow]


def test_css_candidate_without_a_page_query_is_rejected() -> None:
    doc = _page(_el("button", {"id": "go"}, "Go"))
    with pytest.raises(InvalidRequestError, match="CSS selectors need a live page: #go"):
        asyncio.run(resolve(doc, "#go"))
    # Prefixed kinds never touch the selector engine.
    assert asyncio.run(resolve(doc, "text:Go")).found


# -- traversal ---------------------------------------------------------------


def test_collect_roots_enters_open_shadow_and_same_origin_frames() -> None:
    host = _el("my-widget")
    shadow = host.attach_shadow("open")
    shadow.append(_el("button", {"id": "in-shadow"}, "Deep"))

    closed_host = _el("closed-widget")
    closed_host.attach_shadow("closed").append(_el("button", {"id": "hidden-away"}))

    same = _el("iframe", {"src": "/inner"})
    same.content_document = Document(_el("html", None, _el("body", None, _el("input", {"id": "inner"}))), url="https://app.test/inner")
    cross = _el("iframe", {"src": "https://ads.test/"})
    cross.content_document = Document(_el("html", None, _el("body", None, _el("input", {"id": "ad"}))), url="https://ads.test/")

    doc = _page(host, closed_host, same, cross)
    roots = collect_roots(doc)

    assert roots[0] is doc
    assert shadow in roots
    assert same.content_document in roots
    assert cross.content_document not in roots
    assert closed_host.shadow_root not in roots

    assert _resolve(doc, "#in-shadow").found
    assert _resolve(doc, "#inner").found
    assert not _resolve(doc, "#ad").found
    assert not _resolve(doc, "#hidden-away").found


def test_collect_roots_depth_is_bounded() -> None:
    outer = _el("div")
    doc = _page(outer)
    host = outer
    for level in range(8):
        inner = _el("x-level", {"id": f"lvl{level}"})
        host.attach_shadow("open").append(inner)
        host = inner

    roots = collect_roots(doc, max_depth=6)

    assert len(roots) == 7
    assert _resolve(doc, "#lvl5").found
    assert not _resolve(doc, "#lvl6").found


def test_owner_document_walks_out_of_shadow_roots() -> None:
    host = _el("x-host")
    btn = _el("button")
    host.attach_shadow().append(btn)
    doc = _page(host)
    assert owner_document(btn) is doc


# -- visibility and index ----------------------------------------------------


def test_is_visible() -> None:
    assert is_visible(_el("div"))
    assert not is_visible(_el("div", rect=Rect(0, 0, 0, 10)))
    assert not is_visible(_el("div", rect=None))
    assert not is_visible(_el("div", style={"display": "none"}))
    assert not is_visible(_el("div", style={"visibility": "hidden"}))
    assert not is_visible(_el("div", style={"opacity": "0"}))
    assert is_visible(_el("div", style={"opacity": "0.5"}))


def test_pick_prefers_visible_then_falls_back() -> None:
    hidden = _el("button", style={"display": "none"})
    a = _el("button")
    b = _el("button")
    assert pick([hidden, a, b], 0) is a
    assert pick([hidden, a, b], 1) is b
    # Not enough visible matches: fall back to the raw position.
    assert pick([hidden, a, b], 2) is b
    assert pick([hidden], 0) is hidden
    assert pick([a], 3) is None


# -- strategies --------------------------------------------------------------


def test_label_locator_finds_control_by_for_and_by_nesting() -> None:
    email = _el("input", {"id": "em", "type": "email"})
    pw = _el("input", {"type": "password"})
    doc = _page(
        _el("label", {"for": "em"}, "Email"),
        email,
        _el("label", None, "Password ", pw),
    )

    res = _resolve(doc, "label:Email")
    assert res.element is email
    assert res.selector == "label:Email"
    assert _resolve(doc, "label:password").element is pw


def test_semantic_exact_beats_substring() -> None:
    save_all = _el("button", None, "Save all")
    save = _el("button", None, "Save")
    doc = _page(save_all, save)

    assert _resolve(doc, "text:save").element is save
    assert _resolve(doc, "role:button Save").element is save
    assert _resolve(doc, "role:button all").element is save_all


def test_text_locator_returns_innermost_element() -> None:
    span = _el("span", None, "Checkout")
    doc = _page(_el("div", None, _el("p", None, span)))
    assert _resolve(doc, "text:Checkout").element is span


def test_attribute_kinds() -> None:
    a = _el("input", {"aria-label": "Search site", "placeholder": "Type here", "name": "q", "id": "Query"})
    doc = _page(a)
    assert _resolve(doc, "aria:search site").element is a
    assert _resolve(doc, "placeholder:type").element is a
    assert _resolve(doc, "name:q").element is a
    assert _resolve(doc, "id:query").element is a
    assert not _resolve(doc, "name:qq").found


def test_implicit_role_and_accessible_name() -> None:
    link = _el("a", {"href": "/x"}, " Docs ")
    submit = _el("input", {"type": "submit", "value": "Send"})
    img = _el("img", {"alt": "Logo"})
    box = _el("input", {"type": "checkbox", "aria-label": "Agree"})
    _page(link, submit, img, box)

    assert implicit_role(link) == "link"
    assert accessible_name(link) == "Docs"
    assert implicit_role(submit) == "button"
    assert accessible_name(submit) == "Send"
    assert accessible_name(img) == "Logo"
    assert implicit_role(box) == "checkbox"
    assert implicit_role(_el("a")) is None
    assert implicit_role(_el("div", {"role": "tab"})) == "tab"


def test_first_candidate_with_a_match_wins() -> None:
    one = _el("button", {"id": "one"})
    two = _el("button", {"id": "two"})
    doc = _page(one, two)

    res = _resolve(doc, "#missing, #two, #one")
    assert res.selector == "#two"
    assert res.element is two

    miss = _resolve(doc, "#a, text:nothing")
    assert not miss.found
    with pytest.raises(ResolutionError, match=r"No matches for locator\(s\): #a, text:nothing"):
        miss.require()


def test_inner_text_renders_shadow_slots_and_skips_hidden() -> None:
    host = _el("x-card", None, _el("span", None, "light"))
    host.attach_shadow().append(_el("div", None, "[", _el("slot"), "]"))
    doc = _page(host, _el("div", None, "gone", style={"display": "none"}), _el("script", None, "var x"))
    assert inner_text(doc.body) == "[light]"  # type: ignore[arg-type]


def test_deeply_nested_text_resolves() -> None:
    save = _el("span", None, "Save")
    inner: Element = save
    for _ in range(1200):
        inner = _el("div", None, inner)
    doc = _page(inner)

    assert _resolve(doc, "text:Save").element is save
    assert inner_text(doc.body) == "Save"  # type: ignore[arg-type]
    assert save.content_editable is False


# -- waiting -----------------------------------------------------------------


class _FakeTime:
    def __init__(self) -> None:
        self.now = 100.0
        self.sleeps: list[float] = []

    def clock(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


def test_wait_for_times_out_no_earlier_than_the_budget() -> None:
    fake = _FakeTime()
    doc = _page(_el("input", {"id": "other"}))
    snapshots = []

    async def snapshot() -> Document:
        snapshots.append(fake.now)
        return doc

    res = asyncio.run(
        wait_for(snapshot, parse_locators("label:Email"), timeout_ms=1000, poll_ms=300, sleep=fake.sleep, clock=fake.clock)
    )

    assert res.state == TIMED_OUT
    assert not res.found
    assert fake.now - 100.0 == pytest.approx(1.0)
    assert fake.sleeps == pytest.approx([0.3, 0.3, 0.3, 0.1])
    assert len(snapshots) == 5


def test_wait_for_matches_when_element_appears() -> None:
    fake = _FakeTime()
    empty = _page()
    email = _el("input", {"id": "em"})
    ready = _page(_el("label", {"for": "em"}, "Email"), email)
    pages = [empty, empty, ready]

    async def snapshot() -> Document:
        return pages.pop(0)

    res = asyncio.run(
        wait_for(snapshot, parse_locators("label:Email"), timeout_ms=5000, poll_ms=200, sleep=fake.sleep, clock=fake.clock)
    )

    assert res.state == MATCHED
    assert res.element is email
    assert fake.sleeps == pytest.approx([0.2, 0.2])


def test_wait_for_without_timeout_tries_once() -> None:
    fake = _FakeTime()

    async def snapshot() -> Document:
        return _page()

    res = asyncio.run(wait_for(snapshot, parse_locators("#x"), sleep=fake.sleep, clock=fake.clock, css=_by_id))
    assert res.state == TIMED_OUT
    assert fake.sleeps == []
