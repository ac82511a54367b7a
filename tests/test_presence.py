import pytest

from stockledger.presence import PresenceTracker, diff_presence
from stockledger.registry import presence_topic


def test_diff_join_and_leave():
    joins, leaves = diff_presence(
        {"alice": {"screen": "inventory"}, "bob": {"screen": "sales"}},
        {"alice": {"screen": "inventory"}, "carol": {"screen": "imports"}},
    )
    assert joins == {"carol": {"screen": "imports"}}
    assert leaves == {"bob": {"screen": "sales"}}


def test_diff_metadata_change_is_leave_plus_join():
    joins, leaves = diff_presence({"alice": {"screen": "inventory"}}, {"alice": {"screen": "reports"}})
    assert joins == {"alice": {"screen": "reports"}}
    assert leaves == {"alice": {"screen": "inventory"}}


def test_diff_identical_snapshots():
    assert diff_presence({"a": {}}, {"a": {}}) == ({}, {})


@pytest.mark.asyncio
async def test_track_and_untrack_publish_events(registry):
    tracker = PresenceTracker(registry)
    sub = registry.subscribe(presence_topic("inventory-screen"))

    tracker.track("inventory-screen", "alice", {"name": "Alice"})
    tracker.track("inventory-screen", "bob", {"name": "Bob"})
    tracker.untrack("inventory-screen", "alice")

    events = [await sub.receive(timeout=1) for _ in range(sub.pending())]
    actions = [(e.action, e.participant_id) for e in events]
    assert actions == [
        ("join", "alice"),
        ("sync", None),
        ("join", "bob"),
        ("sync", None),
        ("leave", "alice"),
        ("sync", None),
    ]
    assert events[-1].state == {"bob": {"name": "Bob"}}
    assert tracker.state("inventory-screen") == {"bob": {"name": "Bob"}}


@pytest.mark.asyncio
async def test_sync_without_changes_is_silent(registry):
    tracker = PresenceTracker(registry)
    tracker.sync("room", {"alice": {}})
    sub = registry.subscribe(presence_topic("room"))

    assert tracker.sync("room", {"alice": {}}) == []
    assert sub.pending() == 0


@pytest.mark.asyncio
async def test_empty_room_is_forgotten(registry):
    tracker = PresenceTracker(registry)
    tracker.track("room", "alice", {})
    tracker.untrack("room", "alice")

    assert tracker.rooms() == []


@pytest.mark.asyncio
async def test_second_tab_keeps_participant_present(registry):
    tracker = PresenceTracker(registry)
    tracker.track("room", "alice", {"screen": "stock"})
    sub = registry.subscribe(presence_topic("room"))

    assert tracker.track("room", "alice", {"screen": "stock"}) == []
    assert tracker.untrack("room", "alice") == []
    assert tracker.state("room") == {"alice": {"screen": "stock"}}
    assert sub.pending() == 0

    [leave, sync] = tracker.untrack("room", "alice")
    assert (leave.action, leave.participant_id) == ("leave", "alice")
    assert sync.state == {}
    assert tracker.rooms() == []
