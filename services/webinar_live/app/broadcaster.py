from __future__ import annotations

import asyncio
import contextlib
import logging
import math
import time
from collections.abc import Callable
from typing import Any, Protocol

from libs.observability.logging import bind_webinar
from libs.observability.metrics import SYNC_TICKS, SYNC_TICKS_SKIPPED, VIEWERS

from .clock import ClockEngine
from .errors import TransientStoreError
from .state_store import SessionStateStore

logger = logging.getLogger(__name__)


class LiveConnection(Protocol):
    async def send_json(self, data: Any) -> None:
        ...

    async def close(self, code: int = 1000) -> None:
        ...


def _forget_viewers(webinar_id: str) -> None:
    with contextlib.suppress(KeyError):
        VIEWERS.remove(webinar_id)


def envelope(event: str, data: dict[str, Any]) -> dict[str, Any]:
    return {"event": event, "data": data}


class BroadcastHub:
    """Broadcast groups of viewer connections, one group per webinar."""

    def __init__(self) -> None:
        self._groups: dict[str, set[LiveConnection]] = {}
        self._lock = asyncio.Lock()

    async def join(self, webinar_id: str, connection: LiveConnection) -> int:
        async with self._lock:
            members = self._groups.setdefault(webinar_id, set())
            members.add(connection)
            count = len(members)
        VIEWERS.labels(webinar_id=webinar_id).set(count)
        return count

    async def leave(self, webinar_id: str, connection: LiveConnection) -> int:
        async with self._lock:
            members = self._groups.get(webinar_id)
            if not members:
                return 0
            members.discard(connection)
            count = len(members)
            if not members:
                self._groups.pop(webinar_id, None)
        if count:
            VIEWERS.labels(webinar_id=webinar_id).set(count)
        else:
            _forget_viewers(webinar_id)
        return count

    def viewer_count(self, webinar_id: str) -> int:
        return len(self._groups.get(webinar_id, ()))

    async def send(self, connection: LiveConnection, event: str, data: dict[str, Any]) -> None:
        await connection.send_json(envelope(event, data))

    async def emit(
        self,
        webinar_id: str,
        event: str,
        data: dict[str, Any],
        *,
        exclude: LiveConnection | None = None,
    ) -> int:
        """Send ``event`` to every member of the group except ``exclude``.

        Members whose socket fails are dropped from the group.
        """

        async with self._lock:
            members = [conn for conn in self._groups.get(webinar_id, ()) if conn is not exclude]
        message = envelope(event, data)
        delivered = 0
        for connection in members:
            try:
                await connection.send_json(message)
                delivered += 1
            except Exception:
                logger.warning(
                    "Dropping viewer connection after failed send",
                    extra={"webinar_id": webinar_id, "live_event": event},
                )
                await self.leave(webinar_id, connection)
        return delivered

    async def emit_viewers(self, webinar_id: str) -> None:
        await self.emit(webinar_id, "viewers", {"count": self.viewer_count(webinar_id)})

    async def aclose(self) -> None:
        async with self._lock:
            groups = list(self._groups.items())
            self._groups.clear()
        for webinar_id, connections in groups:
            _forget_viewers(webinar_id)
            for connection in connections:
                try:
                    await connection.close()
                except RuntimeError:
                    logger.debug("Viewer connection already closed", extra={"webinar_id": webinar_id})


def next_tick(origin: float, now: float, interval: float, tick: int) -> tuple[int, int]:
    """Return the index of the next tick due after ``now`` and how many were missed.

    Tick ``n`` is due at ``origin + n * interval``; deadlines already behind
    ``now`` are skipped rather than run back to back.
    """

    candidate = tick + 1
    lag = now - (origin + candidate * interval)
    if lag <= 0:
        return candidate, 0
    missed = math.floor(lag / interval) + 1
    return candidate + missed, missed


class SyncBroadcaster:
    """Push the authoritative elapsed time of every live session to its viewers."""

    def __init__(
        self,
        hub: BroadcastHub,
        store: SessionStateStore,
        clock: ClockEngine,
        *,
        interval_seconds: float = 1.0,
        persist_interval_seconds: float = 5.0,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self._hub = hub
        self._store = store
        self._clock = clock
        self._interval = interval_seconds
        self._persist_interval = persist_interval_seconds
        self._monotonic = monotonic
        self._last_persisted: dict[str, float] = {}
        self._stop_event = asyncio.Event()
        self._task: asyncio.Task[None] | None = None

    async def start(self) -> None:
        if self._task is not None:
            return
        self._stop_event.clear()
        self._task = asyncio.create_task(self._run(), name="webinar-sync-broadcaster")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._stop_event.set()
        await self._task
        self._task = None

    async def tick(self) -> int:
        """Run one sync pass and return how many sessions were synced."""

        SYNC_TICKS.inc()
        try:
            webinar_ids = await self._store.live_webinar_ids()
        except TransientStoreError:
            logger.warning("Live session index unavailable, skipping sync tick")
            return 0
        for stale in set(self._last_persisted) - set(webinar_ids):
            self._last_persisted.pop(stale, None)
        synced = 0
        for webinar_id in webinar_ids:
            with bind_webinar(webinar_id):
                try:
                    if await self._sync(webinar_id):
                        synced += 1
                except Exception:
                    logger.exception("Failed to sync live session")
        return synced

    async def _sync(self, webinar_id: str) -> bool:
        state = await self._store.get(webinar_id)
        if state is None or not state.is_live:
            return False
        elapsed = self._clock.elapsed(state)
        await self._hub.emit(
            webinar_id,
            "sync",
            {"elapsedSeconds": elapsed, "serverTime": int(self._clock.now().timestamp() * 1000)},
        )
        now = self._monotonic()
        last = self._last_persisted.get(webinar_id)
        if last is None or now - last >= self._persist_interval:
            await self._store.persist_offset(state, elapsed)
            self._last_persisted[webinar_id] = now
        return True

    async def _run(self) -> None:
        loop = asyncio.get_running_loop()
        origin = loop.time()
        tick = 0
        while not self._stop_event.is_set():
            tick, missed = next_tick(origin, loop.time(), self._interval, tick)
            if missed:
                SYNC_TICKS_SKIPPED.inc(missed)
                logger.debug("Skipped %d missed sync ticks", missed)
            delay = max(0.0, origin + tick * self._interval - loop.time())
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=delay)
                break
            except asyncio.TimeoutError:
                pass
            await self.tick()


__all__ = ["BroadcastHub", "LiveConnection", "SyncBroadcaster", "envelope", "next_tick"]
