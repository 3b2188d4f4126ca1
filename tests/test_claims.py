from __future__ import annotations

import pytest

from mcp_servers.browser_broker.claims import ClaimTable
from mcp_servers.browser_broker.errors import OwnershipConflictError


class _Clock:
    def __init__(self, now: int = 1_700_000_000_000) -> None:
        self.now = now

    def __call__(self) -> int:
        return self.now


def test_claim_is_unique_per_tab() -> None:
    table = ClaimTable(ttl_ms=1000, clock=_Clock())
    table.claim(7, "A")

    with pytest.raises(OwnershipConflictError) as exc:
        table.claim(7, "B")

    assert exc.value.owner == "A"
    assert "Tab 7 is owned by another session (A)" in str(exc.value)
    assert [c.session_id for c in table.list_claims()] == ["A"]


def test_reclaim_by_owner_keeps_claimed_at() -> None:
    clock = _Clock()
    table = ClaimTable(ttl_ms=1000, clock=clock)
    first = table.claim(3, "A")
    claimed_at = first.claimed_at_ms

    clock.now += 500
    again = table.claim(3, "A")

    assert again.claimed_at_ms == claimed_at
    assert again.last_seen_ms == clock.now
    assert table.default_tab("A") == 3


def test_force_claim_takes_over_and_clears_previous_default() -> None:
    table = ClaimTable(ttl_ms=1000, clock=_Clock())
    table.claim(5, "A")
    assert table.default_tab("A") == 5

    table.claim(5, "B", force=True)

    assert table.owner(5) == "B"
    assert table.default_tab("A") is None
    assert table.default_tab("B") == 5


def test_touch_does_not_steal_foreign_claim() -> None:
    table = ClaimTable(ttl_ms=1000, clock=_Clock())
    table.claim(1, "A")

    assert table.touch(1, "B") is None
    assert table.owner(1) == "A"

    created = table.touch(2, "B")
    assert created is not None and created.session_id == "B"


def test_sweep_releases_only_stale_claims() -> None:
    clock = _Clock()
    table = ClaimTable(ttl_ms=1000, clock=clock)
    table.claim(1, "A")
    table.claim(2, "B")

    clock.now += 800
    table.touch(2, "B")
    clock.now += 400

    report = table.sweep()

    assert [c.tab_id for c in report.released] == [1]
    assert table.owner(1) is None
    assert table.owner(2) == "B"
    assert table.default_tab("A") is None


def test_sweep_drops_idle_sessions_without_claims() -> None:
    clock = _Clock()
    table = ClaimTable(ttl_ms=1000, clock=clock)
    table.touch_session("idle")
    table.claim(4, "busy")

    clock.now += 1500
    table.touch(4, "busy")
    report = table.sweep()

    assert report.sessions_dropped == ["idle"]
    assert table.session("idle") is None
    assert table.session("busy") is not None


def test_zero_ttl_disables_expiry() -> None:
    clock = _Clock()
    table = ClaimTable(ttl_ms=0, clock=clock)
    table.claim(1, "A")
    clock.now += 10**9

    assert table.sweep().released == []
    assert table.owner(1) == "A"


def test_release_by_other_session_fails_and_leaves_table_unchanged() -> None:
    table = ClaimTable(ttl_ms=1000, clock=_Clock())
    table.claim(9, "A")
    before = table.snapshot()

    with pytest.raises(OwnershipConflictError):
        table.release(9, "B")

    assert table.snapshot() == before
    assert table.release(9, "A") is True
    assert table.release(9, "A") is False


def test_release_session_drops_all_its_claims() -> None:
    table = ClaimTable(ttl_ms=1000, clock=_Clock())
    table.claim(1, "A")
    table.claim(2, "A")
    table.claim(3, "B")

    released = table.release_session("A")

    assert sorted(c.tab_id for c in released) == [1, 2]
    assert [c.tab_id for c in table.list_claims()] == [3]
    assert table.session("A") is None


def test_claim_to_dict_uses_iso_timestamps() -> None:
    table = ClaimTable(ttl_ms=1000, clock=_Clock(0))
    data = table.claim(1, "A").to_dict()

    assert data == {
        "tabId": 1,
        "sessionId": "A",
        "claimedAt": "1970-01-01T00:00:00.000Z",
        "lastSeenAt": "1970-01-01T00:00:00.000Z",
    }
