"""Error taxonomy shared by the broker, relay, client session and extension host.

`str(exc)` is always the short text shown to the agent; every hop forwards it
verbatim inside an explicit error result.
"""

from __future__ import annotations

from collections.abc import Sequence


class BrokerError(Exception):
    pass


class InvalidRequestError(BrokerError):
    """Malformed input: missing fields, unknown op/tool, bad selector or pattern."""


class OwnershipConflictError(BrokerError):
    def __init__(self, tab_id: int, owner: str, *, hint: str | None = None) -> None:
        self.tab_id = tab_id
        self.owner = owner
        message = f"Tab {tab_id} is owned by another session ({owner})"
        if hint:
            message = f"{message}. {hint}"
        super().__init__(message)


class ResolutionError(BrokerError):
    """No element matched, or the matched element does not support the action."""

    def __init__(self, message: str, *, locators: Sequence[str] = ()) -> None:
        self.locators = list(locators)
        super().__init__(message)

    @classmethod
    def no_match(cls, locators: Sequence[str]) -> ResolutionError:
        shown = ", ".join(locators) if locators else "(empty)"
        return cls(f"No matches for locator(s): {shown}", locators=locators)


class TransportError(BrokerError):
    pass


class UpstreamDisconnectedError(TransportError):
    """The extension side is offline or went away while a request was in flight."""


class RequestTimeoutError(TransportError):
    """The extension side is connected but did not answer in time."""


class ConnectFailedError(TransportError):
    pass


class FramingError(TransportError):
    pass
