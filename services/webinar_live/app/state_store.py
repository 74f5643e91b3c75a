"""Session state with a cache mirror in front of the relational store."""

from __future__ import annotations

import logging

from pydantic import ValidationError

from .cache import KeyValueCache
from .errors import TransientStoreError
from .repository import WebinarRepository
from .schemas import SessionState

logger = logging.getLogger(__name__)

STATE_KEY_PREFIX = "webinar:"
STATE_KEY_SUFFIX = ":state"


def state_key(webinar_id: str) -> str:
    return f"{STATE_KEY_PREFIX}{webinar_id}{STATE_KEY_SUFFIX}"


def webinar_id_from_key(key: str) -> str | None:
    if not (key.startswith(STATE_KEY_PREFIX) and key.endswith(STATE_KEY_SUFFIX)):
        return None
    webinar_id = key[len(STATE_KEY_PREFIX) : -len(STATE_KEY_SUFFIX)]
    return webinar_id or None


class SessionStateStore:
    """Read and write session state, cache first.

    The cache only ever holds live sessions, so its key set doubles as the
    index of live sessions used by the sync broadcaster.
    """

    def __init__(self, repository: WebinarRepository, cache: KeyValueCache) -> None:
        self._repository = repository
        self._cache = cache

    async def get(self, webinar_id: str) -> SessionState | None:
        cached = await self._read_cache(webinar_id)
        if cached is not None:
            return cached
        state = await self._repository.get_state(webinar_id)
        if state is not None and state.is_live:
            await self._write_cache(state)
        return state

    async def cache_live(self, state: SessionState) -> None:
        await self._write_cache(state)

    async def clear(self, webinar_id: str) -> None:
        try:
            await self._cache.delete(state_key(webinar_id))
        except TransientStoreError:
            logger.warning("Unable to clear cached state", extra={"webinar_id": webinar_id})

    async def persist_offset(self, state: SessionState, offset_seconds: int) -> SessionState:
        """Record the last known offset of a live session in both stores."""

        updated = state.model_copy(update={"last_known_offset_seconds": offset_seconds})
        if await self._repository.persist_offset(state.webinar_id, offset_seconds):
            await self._write_cache(updated)
        return updated

    async def live_webinar_ids(self) -> list[str]:
        keys = await self._cache.keys(STATE_KEY_PREFIX)
        ids = []
        for key in keys:
            webinar_id = webinar_id_from_key(key)
            if webinar_id is not None:
                ids.append(webinar_id)
        return ids

    async def _read_cache(self, webinar_id: str) -> SessionState | None:
        try:
            raw = await self._cache.get(state_key(webinar_id))
        except TransientStoreError:
            logger.warning("Session cache unavailable, reading durable store", extra={"webinar_id": webinar_id})
            return None
        if raw is None:
            return None
        try:
            return SessionState.from_cache(raw)
        except ValidationError:
            logger.warning("Discarding unreadable cached state", extra={"webinar_id": webinar_id})
            await self.clear(webinar_id)
            return None

    async def _write_cache(self, state: SessionState) -> None:
        try:
            await self._cache.set(state_key(state.webinar_id), state.to_cache())
        except TransientStoreError:
            logger.warning("Unable to mirror session state", extra={"webinar_id": state.webinar_id})


__all__ = ["SessionStateStore", "state_key", "webinar_id_from_key"]
