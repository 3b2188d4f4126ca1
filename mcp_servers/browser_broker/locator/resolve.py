from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field

from ..errors import ResolutionError
from .dom import Document, Element
from .parse import Locator, parse_locators
from .strategies import CssQuery, find_in_roots
from .traverse import collect_roots
from .visibility import pick

DEFAULT_POLL_MS = 200

# Wait states
INITIAL = "initial"
POLL = "poll"
MATCHED = "matched"
TIMED_OUT = "timed_out"


@dataclass(slots=True)
class Resolution:
    locators: list[Locator]
    selector: str | None = None
    matches: list[Element] = field(default_factory=list)
    element: Element | None = None
    state: str = INITIAL

    @property
    def count(self) -> int:
        return len(self.matches)

    @property
    def found(self) -> bool:
        return self.element is not None

    def require(self) -> Element:
        if self.element is None:
            raise ResolutionError.no_match([loc.raw for loc in self.locators])
        return self.element


async def resolve(
    document: Document, locators: Sequence[Locator] | str, *, index: int = 0, css: CssQuery | None = None
) -> Resolution:
    """First candidate with any match wins; the index-th element of that candidate is selected.

    `css` runs plain selectors against the live page; without it only the
    prefixed kinds can resolve.
    """
    locs = parse_locators(locators) if isinstance(locators, str) else list(locators)
    roots = collect_roots(document)
    for loc in locs:
        found = await find_in_roots(roots, loc, css=css)
        if found:
            return Resolution(locators=locs, selector=loc.raw, matches=found, element=pick(found, index))
    return Resolution(locators=locs)


async def wait_for(
    snapshot: Callable[[], Awaitable[Document]],
    locators: Sequence[Locator],
    *,
    index: int = 0,
    timeout_ms: int = 0,
    poll_ms: int = DEFAULT_POLL_MS,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    clock: Callable[[], float] = time.monotonic,
    css: CssQuery | None = None,
) -> Resolution:
    """Poll until the locator resolves or the budget runs out.

    INITIAL -> POLL -> MATCHED | TIMED_OUT. The first attempt is immediate; a
    timed-out wait returns the last (empty) result instead of raising and never
    returns before `timeout_ms` has elapsed.
    """
    deadline = clock() + max(0, timeout_ms) / 1000.0
    poll = max(1, poll_ms) / 1000.0
    while True:
        result = await resolve(await snapshot(), locators, index=index, css=css)
        if result.found:
            result.state = MATCHED
            return result
        remaining = deadline - clock()
        if remaining <= 0:
            result.state = TIMED_OUT
            return result
        result.state = POLL
        await sleep(min(poll, remaining))
