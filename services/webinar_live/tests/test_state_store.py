from __future__ import annotations

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from services.webinar_live.app.cache import RedisKeyValueCache
from services.webinar_live.app.errors import TransientStoreError
from services.webinar_live.app.state_store import SessionStateStore, state_key, webinar_id_from_key


class UnreachableRedis:
    async def get(self, key):
        raise RedisConnectionError("connection refused")

    async def set(self, key, value):
        raise RedisConnectionError("connection refused")

    async def delete(self, key):
        raise RedisConnectionError("connection refused")

    async def scan_iter(self, match=None):
        raise RedisConnectionError("connection refused")
        yield  # pragma: no cover

    async def aclose(self):
        return None


def test_state_key_round_trip():
    assert state_key("abc") == "webinar:abc:state"
    assert webinar_id_from_key("webinar:abc:state") == "abc"
    assert webinar_id_from_key("webinar::state") is None
    assert webinar_id_from_key("other:abc") is None


@pytest.mark.asyncio
async def test_miss_reads_through_and_caches_live_sessions(core, make_webinar):
    webinar_id = make_webinar()
    await core.webinars.mark_live(webinar_id, started_at=core.now.current, actor_id="tester")
    assert await core.cache.get(state_key(webinar_id)) is None

    state = await core.store.get(webinar_id)

    assert state.is_live
    assert await core.cache.get(state_key(webinar_id)) is not None
    assert await core.store.live_webinar_ids() == [webinar_id]


@pytest.mark.asyncio
async def test_offline_sessions_are_not_cached(core, make_webinar):
    webinar_id = make_webinar()

    state = await core.store.get(webinar_id)

    assert state is not None and not state.is_live
    assert await core.cache.get(state_key(webinar_id)) is None
    assert await core.store.live_webinar_ids() == []


@pytest.mark.asyncio
async def test_unknown_webinar_has_no_state(core):
    assert await core.store.get("missing") is None


@pytest.mark.asyncio
async def test_unreadable_cache_entry_is_discarded(core, make_webinar):
    webinar_id = make_webinar()
    await core.go_live(webinar_id, elapsed=30)
    await core.cache.set(state_key(webinar_id), "{not json")

    state = await core.store.get(webinar_id)

    assert state.is_live
    assert state.started_at is not None
    assert await core.cache.get(state_key(webinar_id)) == state.to_cache()


@pytest.mark.asyncio
async def test_persist_offset_only_while_live(core, make_webinar):
    webinar_id = make_webinar()
    live = await core.go_live(webinar_id, elapsed=30)

    updated = await core.store.persist_offset(live, 30)
    assert updated.last_known_offset_seconds == 30
    assert (await core.webinars.get_state(webinar_id)).last_known_offset_seconds == 30

    await core.lifecycle.stop(webinar_id, reason="ended")
    ended = await core.webinars.get_state(webinar_id)
    await core.store.persist_offset(live, 999)

    assert (await core.webinars.get_state(webinar_id)).last_known_offset_seconds == ended.last_known_offset_seconds
    assert await core.cache.get(state_key(webinar_id)) is None


@pytest.mark.asyncio
async def test_redis_errors_surface_as_transient():
    cache = RedisKeyValueCache(UnreachableRedis())

    with pytest.raises(TransientStoreError):
        await cache.get("webinar:abc:state")
    with pytest.raises(TransientStoreError):
        await cache.keys("webinar:")


@pytest.mark.asyncio
async def test_store_falls_back_to_database_when_cache_is_down(core, make_webinar):
    webinar_id = make_webinar()
    await core.webinars.mark_live(webinar_id, started_at=core.now.current, actor_id="tester")
    store = SessionStateStore(core.webinars, RedisKeyValueCache(UnreachableRedis()))

    state = await store.get(webinar_id)
    await store.clear(webinar_id)

    assert state.is_live
    with pytest.raises(TransientStoreError):
        await store.live_webinar_ids()
