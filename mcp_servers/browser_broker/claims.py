"""Tab ownership leases.

`ClaimTable` is a plain state machine with an injectable clock; the broker owns
one instance and mutates it from its event loop only.
"""

from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from .errors import OwnershipConflictError


def _now_ms() -> int:
    return int(time.time() * 1000)


def _iso(ms: int) -> str:
    return datetime.fromtimestamp(ms / 1000, tz=timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


@dataclass(slots=True)
class Claim:
    tab_id: int
    session_id: str
    claimed_at_ms: int
    last_seen_ms: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "tabId": self.tab_id,
            "sessionId": self.session_id,
            "claimedAt": _iso(self.claimed_at_ms),
            "lastSeenAt": _iso(self.last_seen_ms),
        }


@dataclass(slots=True)
class SessionState:
    session_id: str
    last_seen_ms: int
    default_tab_id: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "sessionId": self.session_id,
            "defaultTabId": self.default_tab_id,
            "lastSeenAt": _iso(self.last_seen_ms),
        }


@dataclass(slots=True)
class SweepReport:
    released: list[Claim] = field(default_factory=list)
    sessions_dropped: list[str] = field(default_factory=list)


class ClaimTable:
    def __init__(self, *, ttl_ms: int = 300_000, clock: Callable[[], int] = _now_ms) -> None:
        self.ttl_ms = int(ttl_ms)
        self._clock = clock
        self._claims: dict[int, Claim] = {}
        self._sessions: dict[str, SessionState] = {}

    # -- sessions ---------------------------------------------------------

    def touch_session(self, session_id: str) -> SessionState:
        now = self._clock()
        state = self._sessions.get(session_id)
        if state is None:
            state = SessionState(session_id=session_id, last_seen_ms=now)
            self._sessions[session_id] = state
        else:
            state.last_seen_ms = now
        return state

    def session(self, session_id: str) -> SessionState | None:
        return self._sessions.get(session_id)

    def default_tab(self, session_id: str) -> int | None:
        state = self._sessions.get(session_id)
        return state.default_tab_id if state else None

    def set_default(self, session_id: str, tab_id: int) -> None:
        self.touch_session(session_id).default_tab_id = tab_id

    def _clear_default(self, session_id: str, tab_id: int) -> None:
        state = self._sessions.get(session_id)
        if state is not None and state.default_tab_id == tab_id:
            state.default_tab_id = None

    # -- claims -----------------------------------------------------------

    def get(self, tab_id: int) -> Claim | None:
        return self._claims.get(tab_id)

    def owner(self, tab_id: int) -> str | None:
        claim = self._claims.get(tab_id)
        return claim.session_id if claim else None

    def list_claims(self) -> list[Claim]:
        return [self._claims[k] for k in sorted(self._claims)]

    def claims_of(self, session_id: str) -> list[Claim]:
        return [c for c in self.list_claims() if c.session_id == session_id]

    def check(self, tab_id: int, session_id: str) -> None:
        """Raise if another session owns `tab_id`. Unclaimed tabs pass."""
        claim = self._claims.get(tab_id)
        if claim is not None and claim.session_id != session_id:
            raise OwnershipConflictError(tab_id, claim.session_id)

    def claim(self, tab_id: int, session_id: str, *, force: bool = False) -> Claim:
        now = self._clock()
        existing = self._claims.get(tab_id)
        if existing is not None and existing.session_id != session_id:
            if not force:
                raise OwnershipConflictError(tab_id, existing.session_id)
            self._clear_default(existing.session_id, tab_id)
            existing = None
        if existing is None:
            claim = Claim(tab_id=tab_id, session_id=session_id, claimed_at_ms=now, last_seen_ms=now)
            self._claims[tab_id] = claim
        else:
            # Re-claim keeps the original claimedAt.
            existing.last_seen_ms = now
            claim = existing
        self.set_default(session_id, tab_id)
        return claim

    def touch(self, tab_id: int, session_id: str) -> Claim | None:
        """Create or refresh `session_id`'s claim; no-op when another session holds the tab."""
        now = self._clock()
        claim = self._claims.get(tab_id)
        if claim is None:
            claim = Claim(tab_id=tab_id, session_id=session_id, claimed_at_ms=now, last_seen_ms=now)
            self._claims[tab_id] = claim
        elif claim.session_id != session_id:
            return None
        else:
            claim.last_seen_ms = now
        self.touch_session(session_id)
        return claim

    def release(self, tab_id: int, session_id: str) -> bool:
        """Returns False when the tab was not claimed at all."""
        claim = self._claims.get(tab_id)
        if claim is None:
            return False
        if claim.session_id != session_id:
            raise OwnershipConflictError(tab_id, claim.session_id)
        del self._claims[tab_id]
        self._clear_default(session_id, tab_id)
        return True

    def forget_tab(self, tab_id: int) -> Claim | None:
        """Drop the claim on a tab that no longer exists, whoever owns it."""
        claim = self._claims.pop(tab_id, None)
        if claim is not None:
            self._clear_default(claim.session_id, tab_id)
        return claim

    def release_session(self, session_id: str) -> list[Claim]:
        released = [c for c in self._claims.values() if c.session_id == session_id]
        for claim in released:
            del self._claims[claim.tab_id]
        self._sessions.pop(session_id, None)
        return released

    def sweep(self) -> SweepReport:
        """Release claims idle longer than the TTL, then drop idle claimless sessions."""
        report = SweepReport()
        if self.ttl_ms <= 0:
            return report
        now = self._clock()
        for claim in list(self._claims.values()):
            if now - claim.last_seen_ms > self.ttl_ms:
                del self._claims[claim.tab_id]
                self._clear_default(claim.session_id, claim.tab_id)
                report.released.append(claim)
        owners = {c.session_id for c in self._claims.values()}
        for sid, state in list(self._sessions.items()):
            if sid not in owners and now - state.last_seen_ms > self.ttl_ms:
                del self._sessions[sid]
                report.sessions_dropped.append(sid)
        return report

    def snapshot(self) -> list[dict[str, Any]]:
        return [c.to_dict() for c in self.list_claims()]
