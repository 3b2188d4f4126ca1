from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass

from ..errors import InvalidRequestError

KINDS = ("css", "label", "aria", "placeholder", "name", "role", "text", "id")


@dataclass(slots=True, frozen=True)
class Locator:
    kind: str
    value: str
    raw: str

    def __str__(self) -> str:
        return self.raw


def split_candidates(text: str) -> list[str]:
    """Split on top-level commas only; brackets, parentheses and quotes protect commas."""
    out: list[str] = []
    depth = 0
    quote = ""
    start = 0
    i = 0
    while i < len(text):
        ch = text[i]
        if quote:
            if ch == "\\":
                i += 1
            elif ch == quote:
                quote = ""
        elif ch in "\"'":
            quote = ch
        elif ch in "([":
            depth += 1
        elif ch in ")]" and depth > 0:
            depth -= 1
        elif ch == "," and depth == 0:
            out.append(text[start:i])
            start = i + 1
        i += 1
    out.append(text[start:])
    return [part.strip() for part in out if part.strip()]


def parse_locator(text: str) -> Locator:
    raw = text.strip()
    if not raw:
        raise InvalidRequestError("Empty locator")
    prefix, sep, rest = raw.partition(":")
    kind = prefix.strip().lower() if sep else ""
    if kind not in KINDS:
        return Locator(kind="css", value=raw, raw=raw)
    value = rest.strip()
    if not value:
        raise InvalidRequestError(f"Empty {kind} locator: {raw}")
    return Locator(kind=kind, value=value, raw=raw)


def parse_locators(spec: str | Iterable[str] | None) -> list[Locator]:
    """Accepts `"a, b"` or `["a", "b"]`; list entries are taken whole (no comma split)."""
    if spec is None:
        raise InvalidRequestError("selector is required")
    if isinstance(spec, str):
        parts = split_candidates(spec)
    elif isinstance(spec, (list, tuple)):
        parts = [str(p).strip() for p in spec if isinstance(p, str) and p.strip()]
    else:
        raise InvalidRequestError("selector must be a string or a list of strings")
    if not parts:
        raise InvalidRequestError("selector is required")
    return [parse_locator(p) for p in parts]
