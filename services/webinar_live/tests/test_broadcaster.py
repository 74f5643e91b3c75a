from __future__ import annotations

import pytest

from services.webinar_live.app.broadcaster import BroadcastHub, SyncBroadcaster, next_tick


class FailingConnection:
    async def send_json(self, data):
        raise RuntimeError("socket closed")

    async def close(self, code: int = 1000) -> None:
        return None


class ManualMonotonic:
    def __init__(self) -> None:
        self.value = 1000.0

    def __call__(self) -> float:
        return self.value


def test_next_tick_follows_absolute_deadlines():
    assert next_tick(origin=0.0, now=2.4, interval=1.0, tick=2) == (3, 0)


def test_next_tick_skips_missed_deadlines():
    tick, missed = next_tick(origin=0.0, now=6.2, interval=1.0, tick=3)

    assert (tick, missed) == (7, 3)
    assert tick * 1.0 > 6.2


@pytest.mark.asyncio
async def test_hub_emit_respects_exclude_and_counts(new_connection):
    hub = BroadcastHub()
    sender, other = new_connection(), new_connection()
    assert await hub.join("w-1", sender) == 1
    assert await hub.join("w-1", other) == 2

    delivered = await hub.emit("w-1", "chat:message", {"content": "hi"}, exclude=sender)

    assert delivered == 1
    assert sender.messages == []
    assert other.messages == [{"event": "chat:message", "data": {"content": "hi"}}]


@pytest.mark.asyncio
async def test_hub_drops_connections_that_fail(new_connection):
    hub = BroadcastHub()
    healthy = new_connection()
    await hub.join("w-1", healthy)
    await hub.join("w-1", FailingConnection())

    await hub.emit("w-1", "sync", {"elapsedSeconds": 1})

    assert hub.viewer_count("w-1") == 1
    assert healthy.events("sync") == [{"elapsedSeconds": 1}]


@pytest.mark.asyncio
async def test_tick_syncs_only_live_sessions(core, make_webinar, new_connection):
    live_id = make_webinar()
    idle_id = make_webinar()
    live_viewer, idle_viewer = new_connection(), new_connection()
    await core.hub.join(live_id, live_viewer)
    await core.hub.join(idle_id, idle_viewer)
    await core.go_live(live_id, elapsed=75.5)
    broadcaster = SyncBroadcaster(core.hub, core.store, core.clock)

    synced = await broadcaster.tick()

    assert synced == 1
    assert live_viewer.events("sync") == [
        {"elapsedSeconds": 75, "serverTime": int(core.now.current.timestamp() * 1000)}
    ]
    assert idle_viewer.events("sync") == []


@pytest.mark.asyncio
async def test_stopped_session_is_no_longer_synced(core, make_webinar, new_connection):
    webinar_id = make_webinar()
    viewer = new_connection()
    await core.hub.join(webinar_id, viewer)
    await core.lifecycle.start(webinar_id)
    broadcaster = SyncBroadcaster(core.hub, core.store, core.clock)
    await core.lifecycle.stop(webinar_id, reason="ended")

    assert await broadcaster.tick() == 0
    assert viewer.events("sync") == []


@pytest.mark.asyncio
async def test_offset_persistence_is_coalesced(core, make_webinar):
    webinar_id = make_webinar()
    await core.go_live(webinar_id, elapsed=10)
    monotonic = ManualMonotonic()
    broadcaster = SyncBroadcaster(
        core.hub, core.store, core.clock, persist_interval_seconds=5.0, monotonic=monotonic
    )

    await broadcaster.tick()
    assert (await core.webinars.get_state(webinar_id)).last_known_offset_seconds == 10

    core.now.advance(2)
    monotonic.value += 2
    await broadcaster.tick()
    assert (await core.webinars.get_state(webinar_id)).last_known_offset_seconds == 10

    core.now.advance(4)
    monotonic.value += 4
    await broadcaster.tick()
    assert (await core.webinars.get_state(webinar_id)).last_known_offset_seconds == 16
