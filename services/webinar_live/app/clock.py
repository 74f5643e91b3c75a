"""Authoritative playback position of live sessions."""

from __future__ import annotations

import math
from collections.abc import Callable
from datetime import datetime, timezone

from .schemas import SessionState, as_utc
from .state_store import SessionStateStore


def utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)


class ClockEngine:
    """Derive elapsed seconds from ``now - started_at``.

    Elapsed time is never stored as a running counter: a live session's
    position is recomputed on every read, a stopped session reports the offset
    frozen when it ended.
    """

    def __init__(self, store: SessionStateStore, now: Callable[[], datetime] = utcnow) -> None:
        self._store = store
        self._now = now

    def now(self) -> datetime:
        return as_utc(self._now())  # type: ignore[return-value]

    def elapsed(self, state: SessionState) -> int:
        if not state.is_live or state.started_at is None:
            return max(0, state.last_known_offset_seconds)
        delta = (self.now() - state.started_at).total_seconds()
        return max(0, math.floor(delta))

    def seconds_until(self, state: SessionState, offset_seconds: float) -> float:
        """Fractional delay until ``offset_seconds`` is reached (0 when past)."""

        if not state.is_live or state.started_at is None:
            return 0.0
        delta = (self.now() - state.started_at).total_seconds()
        return max(0.0, offset_seconds - delta)

    async def elapsed_for(self, webinar_id: str) -> int:
        state = await self._store.get(webinar_id)
        if state is None:
            return 0
        return self.elapsed(state)


__all__ = ["ClockEngine", "utcnow"]
