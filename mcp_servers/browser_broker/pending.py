from __future__ import annotations

import asyncio
import itertools
import time
from dataclasses import dataclass, field
from typing import Any

from .errors import RequestTimeoutError


@dataclass(slots=True)
class PendingRequest:
    id: int
    future: asyncio.Future
    created_at: float = field(default_factory=time.monotonic)
    session_id: str | None = None
    upstream: object | None = None


class PendingTable:
    """Correlation ids -> waiting futures.

    Every completion path (response, failure, timeout) goes through `_pop`, so
    each entry is retired exactly once. Responses for unknown ids are ignored.
    """

    def __init__(self) -> None:
        self._ids = itertools.count(1)
        self._entries: dict[int, PendingRequest] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, request_id: object) -> bool:
        return request_id in self._entries

    def create(self, *, session_id: str | None = None, upstream: object | None = None) -> PendingRequest:
        loop = asyncio.get_running_loop()
        entry = PendingRequest(
            id=next(self._ids), future=loop.create_future(), session_id=session_id, upstream=upstream
        )
        self._entries[entry.id] = entry
        return entry

    def _pop(self, request_id: object) -> PendingRequest | None:
        if isinstance(request_id, bool) or not isinstance(request_id, (int, str)):
            return None
        try:
            key = int(request_id)
        except ValueError:
            return None
        return self._entries.pop(key, None)

    def resolve(self, request_id: object, value: Any) -> bool:
        entry = self._pop(request_id)
        if entry is None or entry.future.done():
            return False
        entry.future.set_result(value)
        return True

    def fail(self, request_id: object, exc: BaseException) -> bool:
        entry = self._pop(request_id)
        if entry is None or entry.future.done():
            return False
        entry.future.set_exception(exc)
        return True

    def fail_where(self, predicate, exc_factory) -> int:  # noqa: ANN001
        failed = 0
        for request_id, entry in list(self._entries.items()):
            if predicate(entry) and self.fail(request_id, exc_factory()):
                failed += 1
        return failed

    def fail_all(self, exc_factory) -> int:  # noqa: ANN001
        return self.fail_where(lambda _entry: True, exc_factory)

    async def wait(self, entry: PendingRequest, timeout: float, *, message: str = "Request timed out") -> Any:
        """Await `entry`; on timeout the entry is retired and late responses are dropped."""
        try:
            return await asyncio.wait_for(entry.future, timeout=timeout)
        except asyncio.TimeoutError:
            raise RequestTimeoutError(message) from None
        finally:
            self._entries.pop(entry.id, None)
