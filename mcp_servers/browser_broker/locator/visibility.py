from __future__ import annotations

from collections.abc import Sequence

from .dom import Element


def _opacity(raw: str | None) -> float:
    if raw is None or not raw.strip():
        return 1.0
    try:
        return float(raw)
    except ValueError:
        return 1.0


def is_visible(el: Element) -> bool:
    """Non-empty box, not display:none, not visibility:hidden/collapse, opacity above zero."""
    if el.rect is None or el.rect.empty:
        return False
    if el.style.get("display") == "none":
        return False
    if el.style.get("visibility") in ("hidden", "collapse"):
        return False
    return _opacity(el.style.get("opacity")) > 0


def pick(matches: Sequence[Element], index: int = 0) -> Element | None:
    """The index-th visible match, falling back to the index-th match overall."""
    if index < 0:
        return None
    visible = [el for el in matches if is_visible(el)]
    if index < len(visible):
        return visible[index]
    if index < len(matches):
        return matches[index]
    return None
