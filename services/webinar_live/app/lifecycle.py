from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta
from urllib.parse import quote

from libs.observability.logging import bind_webinar

from .automation import AutomationScheduler
from .broadcaster import BroadcastHub
from .clock import ClockEngine
from .errors import InvalidStateError, NotFoundError
from .models import WebinarStatus
from .payloads import CtaPopupPayload
from .repository import WebinarRepository
from .schemas import SessionState, SessionStateResponse, WebinarSummary
from .state_store import SessionStateStore

logger = logging.getLogger(__name__)

SYSTEM_ACTOR = "system"


class SessionLifecycleController:
    """Drive webinars through SCHEDULED -> LIVE -> ENDED and own the side effects."""

    def __init__(
        self,
        *,
        webinars: WebinarRepository,
        store: SessionStateStore,
        clock: ClockEngine,
        hub: BroadcastHub,
        scheduler: AutomationScheduler,
        redirect_template: str = "/webinar-ended/{webinar_id}",
    ) -> None:
        self._webinars = webinars
        self._store = store
        self._clock = clock
        self._hub = hub
        self._scheduler = scheduler
        self._redirect_template = redirect_template

    async def start(
        self, webinar_id: str, *, actor_id: str = SYSTEM_ACTOR, automatic: bool = False
    ) -> SessionState:
        with bind_webinar(webinar_id):
            state, changed = await self._webinars.mark_live(
                webinar_id, started_at=self._clock.now(), actor_id=actor_id, automatic=automatic
            )
            if not changed:
                logger.info("Webinar already live, start ignored")
                return state
            await self._store.cache_live(state)
            await self._hub.emit(
                webinar_id,
                "started",
                {"webinarId": webinar_id, "startedAt": state.started_at.isoformat() if state.started_at else None},
            )
            try:
                await self._scheduler.attach(webinar_id)
            except Exception:
                logger.exception("Timeline attach failed, reconciliation will retry")
            logger.info("Webinar live", extra={"automatic": automatic, "actor_id": actor_id})
            return state

    async def stop(self, webinar_id: str, *, reason: str, actor_id: str = SYSTEM_ACTOR) -> SessionState:
        with bind_webinar(webinar_id):
            webinar = await self._webinars.get(webinar_id)
            if webinar is None:
                raise NotFoundError("webinar", webinar_id)
            if webinar.status != WebinarStatus.LIVE.value:
                raise InvalidStateError(webinar_id, webinar.status, "stop")
            await self._scheduler.drain(webinar_id)
            current = await self._webinars.get_state(webinar_id) or SessionState(webinar_id=webinar_id)
            ended_at = self._clock.now()
            state = await self._webinars.mark_ended(
                webinar_id,
                ended_at=ended_at,
                offset_seconds=self._clock.elapsed(current),
                reason=reason,
                actor_id=actor_id,
            )
            await self._store.clear(webinar_id)
            # A reconcile pass that read the session as live may have re-armed it meanwhile.
            await self._scheduler.drain(webinar_id)
            await self._hub.emit(
                webinar_id,
                "ended",
                {
                    "webinarId": webinar_id,
                    "endedAt": ended_at.isoformat(),
                    "reason": reason,
                    "redirectTarget": self.redirect_target(webinar_id, reason),
                },
            )
            logger.info(
                "Webinar ended",
                extra={"reason": reason, "actor_id": actor_id, "offset_seconds": state.last_known_offset_seconds},
            )
            return state

    async def reschedule(
        self, webinar_id: str, *, scheduled_at: datetime, actor_id: str = SYSTEM_ACTOR
    ) -> WebinarSummary:
        with bind_webinar(webinar_id):
            summary = await self._webinars.reschedule(
                webinar_id, scheduled_at=scheduled_at, actor_id=actor_id
            )
            self._scheduler.detach(webinar_id)
            await self._store.clear(webinar_id)
            logger.info("Webinar rescheduled", extra={"scheduled_at": scheduled_at.isoformat()})
            return summary

    async def describe(self, webinar_id: str) -> SessionStateResponse:
        webinar = await self._webinars.get(webinar_id)
        if webinar is None:
            raise NotFoundError("webinar", webinar_id)
        state = await self._store.get(webinar_id) or SessionState(webinar_id=webinar_id)
        return SessionStateResponse(
            webinar_id=webinar_id,
            status=webinar.status,
            is_live=state.is_live,
            started_at=state.started_at,
            ended_at=state.ended_at,
            last_known_offset_seconds=state.last_known_offset_seconds,
            elapsed_seconds=self._clock.elapsed(state),
            viewer_count=self._hub.viewer_count(webinar_id),
        )

    async def broadcast_cta(self, webinar_id: str, payload: CtaPopupPayload) -> int:
        if await self._webinars.get(webinar_id) is None:
            raise NotFoundError("webinar", webinar_id)
        return await self._hub.emit(webinar_id, "automation:cta", payload.to_event())

    def redirect_target(self, webinar_id: str, reason: str) -> str:
        base = self._redirect_template.format(webinar_id=webinar_id)
        return f"{base}?reason={quote(reason, safe='')}"


class AutoStartWatcher:
    """Start scheduled webinars when their time comes.

    Every sweep looks one interval ahead and arms a one-shot task per due
    webinar, so start times are honoured to the second rather than to the
    sweep period.
    """

    def __init__(
        self,
        *,
        webinars: WebinarRepository,
        controller: SessionLifecycleController,
        clock: ClockEngine,
        interval_seconds: float = 30.0,
    ) -> None:
        self._webinars = webinars
        self._controller = controller
        self._clock = clock
        self._interval = interval_seconds
        self._pending: dict[str, tuple[datetime, asyncio.Task[None]]] = {}
        self._stop_event = asyncio.Event()
        self._task: asyncio.Task[None] | None = None

    def pending_ids(self) -> set[str]:
        return set(self._pending)

    async def sweep(self) -> int:
        now = self._clock.now()
        due = await self._webinars.list_due_scheduled(now + timedelta(seconds=self._interval))
        due_at = {webinar.id: webinar.scheduled_at for webinar in due if webinar.scheduled_at}

        for webinar_id, (scheduled_at, task) in list(self._pending.items()):
            if due_at.get(webinar_id) != scheduled_at:
                task.cancel()
                self._pending.pop(webinar_id, None)
                logger.info("Cancelled auto-start", extra={"webinar_id": webinar_id})

        armed = 0
        for webinar_id, scheduled_at in due_at.items():
            if webinar_id in self._pending:
                continue
            delay = max(0.0, (scheduled_at - now).total_seconds())
            task = asyncio.create_task(self._start_later(webinar_id, delay), name=f"auto-start-{webinar_id}")
            self._pending[webinar_id] = (scheduled_at, task)
            armed += 1
            logger.info("Armed auto-start", extra={"webinar_id": webinar_id, "delay_seconds": delay})
        return armed

    async def start(self) -> None:
        if self._task is not None:
            return
        self._stop_event.clear()
        self._task = asyncio.create_task(self._run(), name="webinar-auto-start")

    async def stop(self) -> None:
        if self._task is not None:
            self._stop_event.set()
            await self._task
            self._task = None
        tasks = [task for _, task in self._pending.values()]
        self._pending.clear()
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def _run(self) -> None:
        while not self._stop_event.is_set():
            try:
                await self.sweep()
            except Exception:
                logger.exception("Auto-start sweep failed")
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self._interval)
            except asyncio.TimeoutError:
                continue

    async def _start_later(self, webinar_id: str, delay: float) -> None:
        try:
            await asyncio.sleep(delay)
            await asyncio.shield(
                self._controller.start(webinar_id, actor_id=SYSTEM_ACTOR, automatic=True)
            )
        except (InvalidStateError, NotFoundError) as exc:
            logger.info("Auto-start skipped: %s", exc, extra={"webinar_id": webinar_id})
        except Exception:
            logger.exception("Auto-start failed", extra={"webinar_id": webinar_id})
        finally:
            entry = self._pending.get(webinar_id)
            if entry is not None and entry[1] is asyncio.current_task():
                self._pending.pop(webinar_id, None)


__all__ = ["AutoStartWatcher", "SYSTEM_ACTOR", "SessionLifecycleController"]
