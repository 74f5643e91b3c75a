"""Automation timeline scheduler.

Each live webinar owns a table of armed timers, one per pending automation
event. The table is only a cache of what is armed: the ``fired_at`` claim in
the durable store decides whether an event actually runs, so a timer, a
reconciliation pass and an operator trigger can race without double firing.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable

from libs.observability.logging import bind_webinar
from libs.observability.metrics import AUTOMATION_CLAIM_CONFLICTS, AUTOMATION_FIRED

from .broadcaster import BroadcastHub
from .clock import ClockEngine
from .errors import ClaimConflictError, InvalidStateError, NotFoundError
from .models import WebinarStatus
from .payloads import (
    AutomationPayload,
    CtaPopupPayload,
    KeywordReplyPayload,
    OfferBannerPayload,
    TimedMessagePayload,
)
from .repository import AutomationRepository, ChatRepository, WebinarRepository
from .schemas import AutomationEvent, ChatMessageRead
from .state_store import SessionStateStore

logger = logging.getLogger(__name__)


class AutomationScheduler:
    def __init__(
        self,
        *,
        automations: AutomationRepository,
        webinars: WebinarRepository,
        chat: ChatRepository,
        store: SessionStateStore,
        clock: ClockEngine,
        hub: BroadcastHub,
        reconcile_interval_seconds: float = 5.0,
        cleanup_interval_seconds: float = 3600.0,
        keyword_reply_delay_seconds: float = 1.0,
    ) -> None:
        self._automations = automations
        self._webinars = webinars
        self._chat = chat
        self._store = store
        self._clock = clock
        self._hub = hub
        self._reconcile_interval = reconcile_interval_seconds
        self._cleanup_interval = cleanup_interval_seconds
        self._reply_delay = keyword_reply_delay_seconds
        self._armed: dict[str, dict[str, asyncio.Task[None]]] = {}
        self._replies: dict[str, set[asyncio.Task[None]]] = {}
        self._inflight: dict[str, set[asyncio.Task[bool]]] = {}
        self._detach_epoch = 0
        self._detached_at: dict[str, int] = {}
        self._stop_event = asyncio.Event()
        self._tasks: list[asyncio.Task[None]] = []

    def is_attached(self, webinar_id: str) -> bool:
        return webinar_id in self._armed

    def armed_event_ids(self, webinar_id: str) -> set[str]:
        return set(self._armed.get(webinar_id, {}))

    async def attach(self, webinar_id: str, *, since: int | None = None) -> int:
        """Arm timers for the pending timeline of a live webinar.

        Events whose offset already passed are skipped for this session.
        Returns the number of armed timers; attaching twice is a no-op.

        ``since`` is the detach epoch the caller observed before deciding the
        webinar was live. If the webinar was detached after that point the
        caller's view is stale and nothing is armed.
        """

        if since is None:
            since = self._detach_epoch
        if webinar_id in self._armed:
            return 0
        timers: dict[str, asyncio.Task[None]] = {}
        self._armed[webinar_id] = timers
        try:
            state = await self._store.get(webinar_id)
            events = await self._automations.list_pending(webinar_id) if state and state.is_live else []
        except Exception:
            self._release(webinar_id, timers)
            raise
        if state is None or not state.is_live:
            self._release(webinar_id, timers)
            return 0
        if self._armed.get(webinar_id) is not timers:
            # Detached while the timeline was loading.
            return 0
        if self._detached_at.get(webinar_id, -1) > since:
            self._release(webinar_id, timers)
            logger.info("Stale attach ignored", extra={"webinar_id": webinar_id})
            return 0

        elapsed = self._clock.elapsed(state)
        skipped = 0
        with bind_webinar(webinar_id):
            for event in events:
                if event.trigger_offset_seconds < elapsed:
                    skipped += 1
                    continue
                delay = self._clock.seconds_until(state, event.trigger_offset_seconds)
                timers[event.id] = asyncio.create_task(
                    self._fire_later(event, delay), name=f"automation-{event.id}"
                )
            logger.info(
                "Attached automation timeline",
                extra={"armed": len(timers), "skipped": skipped, "elapsed_seconds": elapsed},
            )
        return len(timers)

    def detach(self, webinar_id: str) -> int:
        """Cancel every armed timer and pending reply of ``webinar_id``."""

        self._detach_epoch += 1
        self._detached_at[webinar_id] = self._detach_epoch
        timers = self._armed.pop(webinar_id, {})
        replies = self._replies.pop(webinar_id, set())
        for task in [*timers.values(), *replies]:
            task.cancel()
        if timers or replies:
            logger.info(
                "Detached automation timeline",
                extra={"webinar_id": webinar_id, "cancelled": len(timers) + len(replies)},
            )
        return len(timers)

    async def drain(self, webinar_id: str) -> int:
        """Detach ``webinar_id`` and wait for fires that are already dispatching."""

        cancelled = self.detach(webinar_id)
        inflight = list(self._inflight.pop(webinar_id, ()))
        if inflight:
            await asyncio.gather(*inflight, return_exceptions=True)
        return cancelled

    async def execute(self, event: AutomationEvent) -> bool:
        """Claim ``event`` and dispatch it.

        Returns ``False`` when the event was already fired, was disabled, or
        its webinar is no longer live.
        """

        with bind_webinar(event.webinar_id):
            try:
                await self._automations.claim(event.id, self._clock.now(), live_only=True)
            except ClaimConflictError:
                AUTOMATION_CLAIM_CONFLICTS.inc()
                logger.info("Automation not claimed", extra={"automation_id": event.id})
                return False
            AUTOMATION_FIRED.labels(kind=event.kind.value).inc()
            try:
                await self._dispatch(event.webinar_id, event.payload)
            except Exception:
                logger.exception("Automation dispatch failed", extra={"automation_id": event.id})
            return True

    async def fire_now(self, event_id: str) -> bool:
        event = await self._automations.get(event_id)
        if event is None:
            raise NotFoundError("automation", event_id)
        if not event.enabled:
            raise InvalidStateError(event.webinar_id, "DISABLED", f"fire automation {event_id} of")
        webinar = await self._webinars.get(event.webinar_id)
        if webinar is None:
            raise NotFoundError("webinar", event.webinar_id)
        if webinar.status != WebinarStatus.LIVE.value:
            raise InvalidStateError(event.webinar_id, webinar.status, "fire automations of")
        timer =self._armed.get(event.webinar_id, {}).pop(event_id, None)
        if timer is not None:
            timer.cancel()
        return await self.execute(event)

    async def on_chat_received(self, webinar_id: str, text: str) -> int:
        """Schedule a reply for every keyword rule ``text`` matches."""

        rules = await self._automations.list_keyword_rules(webinar_id)
        matched = 0
        for rule in rules:
            payload = rule.payload
            if not isinstance(payload, KeywordReplyPayload) or not payload.matches(text):
                continue
            matched += 1
            self._schedule_reply(webinar_id, payload.as_reply())
        return matched

    async def reconcile(self) -> None:
        """Align armed timelines with the set of webinars currently live."""

        epoch = self._detach_epoch
        live = set(await self._webinars.list_live_ids())
        for webinar_id in list(self._armed):
            if webinar_id not in live:
                self.detach(webinar_id)
        for webinar_id in sorted(live):
            with bind_webinar(webinar_id):
                try:
                    if webinar_id in self._armed:
                        # Refills the cached live index if the entry was lost.
                        await self._store.get(webinar_id)
                    else:
                        await self.attach(webinar_id, since=epoch)
                except Exception:
                    logger.exception("Failed to reconcile automation timeline")

    async def cleanup(self) -> int:
        reset = await self._automations.reset_fired_for_ended()
        if reset:
            logger.info("Reset fired automations of ended webinars", extra={"reset": reset})
        return reset

    async def start(self) -> None:
        if self._tasks:
            return
        self._stop_event.clear()
        self._tasks = [
            asyncio.create_task(
                self._run_periodic(self.reconcile, self._reconcile_interval, run_first=True),
                name="automation-reconcile",
            ),
            asyncio.create_task(
                self._run_periodic(self.cleanup, self._cleanup_interval, run_first=False),
                name="automation-cleanup",
            ),
        ]

    async def stop(self) -> None:
        self._stop_event.set()
        if self._tasks:
            await asyncio.gather(*self._tasks)
            self._tasks = []
        pending: list[asyncio.Task[None]] = []
        for webinar_id in list(self._armed):
            pending.extend(self._armed[webinar_id].values())
            pending.extend(self._replies.get(webinar_id, ()))
            self.detach(webinar_id)
        for webinar_id in list(self._replies):
            pending.extend(self._replies.pop(webinar_id))
        for webinar_id in list(self._inflight):
            pending.extend(self._inflight.pop(webinar_id))
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    async def _run_periodic(
        self, job: Callable[[], Awaitable[object]], interval: float, *, run_first: bool
    ) -> None:
        if not run_first:
            if await self._wait_or_stop(interval):
                return
        while not self._stop_event.is_set():
            try:
                await job()
            except Exception:
                logger.exception("Periodic automation job failed")
            if await self._wait_or_stop(interval):
                return

    async def _wait_or_stop(self, timeout: float) -> bool:
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            return False
        return True

    async def _fire_later(self, event: AutomationEvent, delay: float) -> None:
        try:
            await asyncio.sleep(delay)
            fire = asyncio.create_task(self.execute(event), name=f"automation-fire-{event.id}")
            inflight = self._inflight.setdefault(event.webinar_id, set())
            inflight.add(fire)
            fire.add_done_callback(inflight.discard)
            await asyncio.shield(fire)
        except Exception:
            logger.exception(
                "Automation fire failed",
                extra={"webinar_id": event.webinar_id, "automation_id": event.id},
            )
        finally:
            timers = self._armed.get(event.webinar_id)
            if timers is not None and timers.get(event.id) is asyncio.current_task():
                timers.pop(event.id, None)

    def _schedule_reply(self, webinar_id: str, reply: TimedMessagePayload) -> None:
        task = asyncio.create_task(self._reply_later(webinar_id, reply), name=f"keyword-reply-{webinar_id}")
        replies = self._replies.setdefault(webinar_id, set())
        replies.add(task)
        task.add_done_callback(replies.discard)

    async def _reply_later(self, webinar_id: str, reply: TimedMessagePayload) -> None:
        await asyncio.sleep(self._reply_delay)
        with bind_webinar(webinar_id):
            try:
                await self._send_message(webinar_id, reply)
            except Exception:
                logger.exception("Keyword reply failed")

    async def _dispatch(self, webinar_id: str, payload: AutomationPayload) -> None:
        if isinstance(payload, TimedMessagePayload):
            await self._send_message(webinar_id, payload)
        elif isinstance(payload, KeywordReplyPayload):
            await self._send_message(webinar_id, payload.as_reply())
        elif isinstance(payload, CtaPopupPayload):
            await self._hub.emit(webinar_id, "automation:cta", payload.to_event())
        elif isinstance(payload, OfferBannerPayload):
            await self._hub.emit(webinar_id, "automation:banner", payload.to_event())

    async def _send_message(self, webinar_id: str, payload: TimedMessagePayload) -> ChatMessageRead:
        offset = await self._clock.elapsed_for(webinar_id)
        message = await self._chat.create(
            webinar_id,
            sender_name=payload.sender_name,
            content=payload.message,
            offset_seconds=offset,
            automated=True,
        )
        await self._hub.emit(webinar_id, "chat:message", message.to_wire())
        return message

    def _release(self, webinar_id: str, timers: dict[str, asyncio.Task[None]]) -> None:
        if self._armed.get(webinar_id) is timers:
            self._armed.pop(webinar_id, None)


__all__ = ["AutomationScheduler"]
