from __future__ import annotations

import asyncio
from collections.abc import Iterable, Mapping
from datetime import datetime
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.orm import Session, sessionmaker

from infra import AuditLog
from libs.audit import list_audit_entries, record_audit

from .errors import ClaimConflictError, InvalidStateError, NotFoundError
from .models import (
    Automation,
    AutomationKind,
    ChatMessage,
    Registration,
    Webinar,
    WebinarState,
    WebinarStatus,
)
from .payloads import parse_payload
from .schemas import (
    AuditLogRead,
    AutomationEvent,
    AutomationRead,
    ChatMessageRead,
    RegistrationRead,
    SessionState,
    WebinarSummary,
    as_utc,
)

AUDIT_SERVICE = "webinar-live"


def _bulk_update(session: Session, stmt: Any) -> Any:
    return session.execute(stmt.execution_options(synchronize_session=False))


def _state_of(webinar: Webinar) -> SessionState:
    if webinar.state is None:
        return SessionState(webinar_id=webinar.id)
    return SessionState.model_validate(webinar.state)


def _to_event(row: Automation) -> AutomationEvent:
    return AutomationEvent(
        id=row.id,
        webinar_id=row.webinar_id,
        kind=AutomationKind(row.kind),
        trigger_offset_seconds=row.trigger_offset_seconds,
        enabled=row.enabled,
        fired_at=as_utc(row.fired_at),
        payload=parse_payload(row.kind, row.content),
    )


class _Repository:
    def __init__(self, session_factory: sessionmaker[Session]) -> None:
        self._session_factory = session_factory


class WebinarRepository(_Repository):
    """Persistence of webinars and their session state rows."""

    async def get(self, webinar_id: str) -> WebinarSummary | None:
        def _get() -> WebinarSummary | None:
            with self._session_factory() as session:
                webinar = session.get(Webinar, webinar_id)
                return WebinarSummary.model_validate(webinar) if webinar else None

        return await asyncio.to_thread(_get)

    async def get_state(self, webinar_id: str) -> SessionState | None:
        def _get() -> SessionState | None:
            with self._session_factory() as session:
                webinar = session.get(Webinar, webinar_id)
                return _state_of(webinar) if webinar else None

        return await asyncio.to_thread(_get)

    async def list_live_ids(self) -> list[str]:
        def _query() -> list[str]:
            with self._session_factory() as session:
                stmt = select(Webinar.id).where(Webinar.status == WebinarStatus.LIVE.value)
                return list(session.execute(stmt).scalars().all())

        return await asyncio.to_thread(_query)

    async def list_due_scheduled(self, until: datetime) -> list[WebinarSummary]:
        def _query() -> list[WebinarSummary]:
            with self._session_factory() as session:
                stmt = (
                    select(Webinar)
                    .where(
                        Webinar.status == WebinarStatus.SCHEDULED.value,
                        Webinar.scheduled_at.is_not(None),
                        Webinar.scheduled_at <= until,
                    )
                    .order_by(Webinar.scheduled_at)
                )
                return [WebinarSummary.model_validate(row) for row in session.execute(stmt).scalars()]

        return await asyncio.to_thread(_query)

    async def mark_live(
        self,
        webinar_id: str,
        *,
        started_at: datetime,
        actor_id: str,
        automatic: bool = False,
    ) -> tuple[SessionState, bool]:
        """Flip a scheduled webinar to live.

        Returns the session state and whether this call performed the
        transition; a webinar that is already live is returned untouched.
        """

        def _start() -> tuple[SessionState, bool]:
            with self._session_factory.begin() as session:
                webinar = session.get(Webinar, webinar_id)
                if webinar is None:
                    raise NotFoundError("webinar", webinar_id)
                if webinar.status == WebinarStatus.LIVE.value:
                    return _state_of(webinar), False
                if webinar.status != WebinarStatus.SCHEDULED.value:
                    raise InvalidStateError(webinar_id, webinar.status, "start")
                result = _bulk_update(
                    session,
                    update(Webinar)
                    .where(Webinar.id == webinar_id, Webinar.status == WebinarStatus.SCHEDULED.value)
                    .values(status=WebinarStatus.LIVE.value)
                )
                if result.rowcount == 0:
                    session.refresh(webinar)
                    if webinar.status == WebinarStatus.LIVE.value:
                        return _state_of(webinar), False
                    raise InvalidStateError(webinar_id, webinar.status, "start")
                state = webinar.state
                if state is None:
                    state = WebinarState(webinar_id=webinar_id)
                    session.add(state)
                state.is_live = True
                state.started_at = started_at
                state.ended_at = None
                state.last_known_offset_seconds = 0
                record_audit(
                    session,
                    service=AUDIT_SERVICE,
                    action="WEBINAR_STARTED_AUTOMATICALLY" if automatic else "WEBINAR_STARTED",
                    actor_id=actor_id,
                    subject_id=webinar_id,
                    details={"startedAt": started_at.isoformat(), "automatic": automatic},
                    message=f"Webinar '{webinar.title}' went live",
                )
                session.flush()
                return SessionState.model_validate(state), True

        return await asyncio.to_thread(_start)

    async def mark_ended(
        self,
        webinar_id: str,
        *,
        ended_at: datetime,
        offset_seconds: int,
        reason: str,
        actor_id: str,
    ) -> SessionState:
        """End a live webinar, freeze its offset and re-arm its timeline flags."""

        def _stop() -> SessionState:
            with self._session_factory.begin() as session:
                webinar = session.get(Webinar, webinar_id)
                if webinar is None:
                    raise NotFoundError("webinar", webinar_id)
                result = _bulk_update(
                    session,
                    update(Webinar)
                    .where(Webinar.id == webinar_id, Webinar.status == WebinarStatus.LIVE.value)
                    .values(status=WebinarStatus.ENDED.value)
                )
                if result.rowcount == 0:
                    session.refresh(webinar)
                    raise InvalidStateError(webinar_id, webinar.status, "stop")
                state = webinar.state
                if state is None:
                    state = WebinarState(webinar_id=webinar_id)
                    session.add(state)
                state.is_live = False
                state.ended_at = ended_at
                state.last_known_offset_seconds = max(0, offset_seconds)
                _bulk_update(
                    session,
                    update(Automation).where(Automation.webinar_id == webinar_id).values(fired_at=None)
                )
                record_audit(
                    session,
                    service=AUDIT_SERVICE,
                    action="WEBINAR_STOPPED",
                    actor_id=actor_id,
                    subject_id=webinar_id,
                    details={
                        "reason": reason,
                        "endedAt": ended_at.isoformat(),
                        "lastKnownOffsetSeconds": state.last_known_offset_seconds,
                    },
                    message=f"Webinar '{webinar.title}' ended: {reason}",
                )
                session.flush()
                return SessionState.model_validate(state)

        return await asyncio.to_thread(_stop)

    async def reschedule(
        self, webinar_id: str, *, scheduled_at: datetime, actor_id: str
    ) -> WebinarSummary:
        def _reschedule() -> WebinarSummary:
            with self._session_factory.begin() as session:
                webinar = session.get(Webinar, webinar_id)
                if webinar is None:
                    raise NotFoundError("webinar", webinar_id)
                if webinar.status == WebinarStatus.LIVE.value:
                    raise InvalidStateError(webinar_id, webinar.status, "reschedule")
                previous = webinar.status
                webinar.status = WebinarStatus.SCHEDULED.value
                webinar.scheduled_at = scheduled_at
                state = webinar.state
                if state is None:
                    state = WebinarState(webinar_id=webinar_id)
                    session.add(state)
                state.is_live = False
                state.started_at = None
                state.ended_at = None
                state.last_known_offset_seconds = 0
                _bulk_update(
                    session,
                    update(Automation).where(Automation.webinar_id == webinar_id).values(fired_at=None)
                )
                record_audit(
                    session,
                    service=AUDIT_SERVICE,
                    action="WEBINAR_RESCHEDULED",
                    actor_id=actor_id,
                    subject_id=webinar_id,
                    details={"previousStatus": previous, "scheduledAt": scheduled_at.isoformat()},
                )
                session.flush()
                return WebinarSummary.model_validate(webinar)

        return await asyncio.to_thread(_reschedule)

    async def persist_offset(self, webinar_id: str, offset_seconds: int) -> bool:
        def _persist() -> bool:
            with self._session_factory.begin() as session:
                result = _bulk_update(
                    session,
                    update(WebinarState)
                    .where(WebinarState.webinar_id == webinar_id, WebinarState.is_live.is_(True))
                    .values(last_known_offset_seconds=max(0, offset_seconds))
                )
                return result.rowcount > 0

        return await asyncio.to_thread(_persist)


class AutomationRepository(_Repository):
    """Persistence of automation timelines, including the at-most-once claim."""

    async def get(self, event_id: str) -> AutomationEvent | None:
        def _get() -> AutomationEvent | None:
            with self._session_factory() as session:
                row = session.get(Automation, event_id)
                return _to_event(row) if row else None

        return await asyncio.to_thread(_get)

    async def list_pending(self, webinar_id: str) -> list[AutomationEvent]:
        def _query() -> list[AutomationEvent]:
            with self._session_factory() as session:
                stmt = (
                    select(Automation)
                    .where(
                        Automation.webinar_id == webinar_id,
                        Automation.enabled.is_(True),
                        Automation.fired_at.is_(None),
                        Automation.kind != AutomationKind.KEYWORD_REPLY.value,
                    )
                    .order_by(Automation.trigger_offset_seconds, Automation.created_at)
                )
                return [_to_event(row) for row in session.execute(stmt).scalars()]

        return await asyncio.to_thread(_query)

    async def list_keyword_rules(self, webinar_id: str) -> list[AutomationEvent]:
        def _query() -> list[AutomationEvent]:
            with self._session_factory() as session:
                stmt = (
                    select(Automation)
                    .where(
                        Automation.webinar_id == webinar_id,
                        Automation.enabled.is_(True),
                        Automation.kind == AutomationKind.KEYWORD_REPLY.value,
                    )
                    .order_by(Automation.created_at)
                )
                return [_to_event(row) for row in session.execute(stmt).scalars()]

        return await asyncio.to_thread(_query)

    async def claim(self, event_id: str, fired_at: datetime, *, live_only: bool = False) -> None:
        """Mark an event fired; raise :class:`ClaimConflictError` if it already was.

        With ``live_only`` the claim also requires the event to be enabled and
        its webinar to be LIVE, so nothing is claimed once a stop has committed.
        """

        def _claim() -> int:
            with self._session_factory.begin() as session:
                stmt = update(Automation).where(Automation.id == event_id, Automation.fired_at.is_(None))
                if live_only:
                    live = select(Webinar.id).where(Webinar.status == WebinarStatus.LIVE.value)
                    stmt = stmt.where(Automation.enabled.is_(True), Automation.webinar_id.in_(live))
                result = _bulk_update(session, stmt.values(fired_at=fired_at))
                return result.rowcount

        if await asyncio.to_thread(_claim) == 0:
            raise ClaimConflictError(event_id)

    async def reset_fired_for_ended(self) -> int:
        def _reset() -> int:
            with self._session_factory.begin() as session:
                ended = select(Webinar.id).where(Webinar.status == WebinarStatus.ENDED.value)
                result = _bulk_update(
                    session,
                    update(Automation)
                    .where(Automation.webinar_id.in_(ended), Automation.fired_at.is_not(None))
                    .values(fired_at=None)
                )
                return result.rowcount

        return await asyncio.to_thread(_reset)

    async def list_for_webinar(self, webinar_id: str) -> list[AutomationRead]:
        def _query() -> list[AutomationRead]:
            with self._session_factory() as session:
                if session.get(Webinar, webinar_id) is None:
                    raise NotFoundError("webinar", webinar_id)
                stmt = (
                    select(Automation)
                    .where(Automation.webinar_id == webinar_id)
                    .order_by(Automation.trigger_offset_seconds, Automation.created_at)
                )
                return [AutomationRead.model_validate(row) for row in session.execute(stmt).scalars()]

        return await asyncio.to_thread(_query)

    async def create(
        self,
        webinar_id: str,
        *,
        kind: AutomationKind,
        trigger_offset_seconds: int,
        content: str,
        enabled: bool = True,
    ) -> AutomationRead:
        def _create() -> AutomationRead:
            with self._session_factory.begin() as session:
                if session.get(Webinar, webinar_id) is None:
                    raise NotFoundError("webinar", webinar_id)
                row = Automation(
                    webinar_id=webinar_id,
                    kind=kind.value,
                    trigger_offset_seconds=trigger_offset_seconds,
                    content=content,
                    enabled=enabled,
                )
                session.add(row)
                session.flush()
                return AutomationRead.model_validate(row)

        return await asyncio.to_thread(_create)

    async def update(self, event_id: str, values: Mapping[str, Any]) -> AutomationRead:
        def _update() -> AutomationRead:
            with self._session_factory.begin() as session:
                row = session.get(Automation, event_id)
                if row is None:
                    raise NotFoundError("automation", event_id)
                for field, value in values.items():
                    setattr(row, field, value)
                session.flush()
                return AutomationRead.model_validate(row)

        return await asyncio.to_thread(_update)

    async def delete(self, event_id: str) -> AutomationRead:
        def _delete() -> AutomationRead:
            with self._session_factory.begin() as session:
                row = session.get(Automation, event_id)
                if row is None:
                    raise NotFoundError("automation", event_id)
                deleted = AutomationRead.model_validate(row)
                session.delete(row)
                return deleted

        return await asyncio.to_thread(_delete)

    async def replace_for_webinar(
        self,
        webinar_id: str,
        rows: Iterable[Mapping[str, Any]],
        *,
        actor_id: str,
    ) -> int:
        """Swap the whole timeline of a webinar for ``rows`` in one transaction."""

        def _replace() -> int:
            with self._session_factory.begin() as session:
                if session.get(Webinar, webinar_id) is None:
                    raise NotFoundError("webinar", webinar_id)
                for existing in session.execute(
                    select(Automation).where(Automation.webinar_id == webinar_id)
                ).scalars():
                    session.delete(existing)
                count = 0
                for values in rows:
                    session.add(Automation(webinar_id=webinar_id, **values))
                    count += 1
                record_audit(
                    session,
                    service=AUDIT_SERVICE,
                    action="AUTOMATIONS_IMPORTED",
                    actor_id=actor_id,
                    subject_id=webinar_id,
                    details={"imported": count},
                )
                return count

        return await asyncio.to_thread(_replace)


class ChatRepository(_Repository):
    """Persistence of chat messages and the single pinned message of a webinar."""

    async def create(
        self,
        webinar_id: str,
        *,
        sender_name: str,
        content: str,
        offset_seconds: int,
        user_id: str | None = None,
        automated: bool = False,
    ) -> ChatMessageRead:
        def _create() -> ChatMessageRead:
            with self._session_factory.begin() as session:
                message = ChatMessage(
                    webinar_id=webinar_id,
                    user_id=user_id,
                    sender_name=sender_name,
                    content=content,
                    offset_seconds=max(0, offset_seconds),
                    is_automated=automated,
                )
                session.add(message)
                session.flush()
                return ChatMessageRead.model_validate(message)

        return await asyncio.to_thread(_create)

    async def recent(self, webinar_id: str, limit: int = 100) -> list[ChatMessageRead]:
        """Return the ``limit`` newest visible messages, oldest first."""

        def _query() -> list[ChatMessageRead]:
            with self._session_factory() as session:
                stmt = (
                    select(ChatMessage)
                    .where(ChatMessage.webinar_id == webinar_id, ChatMessage.is_deleted.is_(False))
                    .order_by(ChatMessage.created_at.desc(), ChatMessage.id.desc())
                    .limit(limit)
                )
                rows = [ChatMessageRead.model_validate(row) for row in session.execute(stmt).scalars()]
                rows.reverse()
                return rows

        return await asyncio.to_thread(_query)

    async def pinned(self, webinar_id: str) -> ChatMessageRead | None:
        def _query() -> ChatMessageRead | None:
            with self._session_factory() as session:
                stmt = select(ChatMessage).where(
                    ChatMessage.webinar_id == webinar_id,
                    ChatMessage.is_pinned.is_(True),
                    ChatMessage.is_deleted.is_(False),
                )
                row = session.execute(stmt).scalars().first()
                return ChatMessageRead.model_validate(row) if row else None

        return await asyncio.to_thread(_query)

    async def pin(self, message_id: str, *, actor_id: str) -> ChatMessageRead:
        def _pin() -> ChatMessageRead:
            with self._session_factory.begin() as session:
                message = session.get(ChatMessage, message_id)
                if message is None or message.is_deleted:
                    raise NotFoundError("chat message", message_id)
                # Serialise concurrent pins of the same webinar.
                session.execute(
                    select(Webinar.id).where(Webinar.id == message.webinar_id).with_for_update()
                )
                _bulk_update(
                    session,
                    update(ChatMessage)
                    .where(
                        ChatMessage.webinar_id == message.webinar_id,
                        ChatMessage.id != message_id,
                        ChatMessage.is_pinned.is_(True),
                    )
                    .values(is_pinned=False)
                )
                message.is_pinned = True
                record_audit(
                    session,
                    service=AUDIT_SERVICE,
                    action="CHAT_MESSAGE_PINNED",
                    actor_id=actor_id,
                    subject_id=message.webinar_id,
                    details={"messageId": message_id},
                )
                session.flush()
                return ChatMessageRead.model_validate(message)

        return await asyncio.to_thread(_pin)

    async def unpin(self, message_id: str, *, actor_id: str) -> ChatMessageRead:
        def _unpin() -> ChatMessageRead:
            with self._session_factory.begin() as session:
                message = session.get(ChatMessage, message_id)
                if message is None:
                    raise NotFoundError("chat message", message_id)
                message.is_pinned = False
                record_audit(
                    session,
                    service=AUDIT_SERVICE,
                    action="CHAT_MESSAGE_UNPINNED",
                    actor_id=actor_id,
                    subject_id=message.webinar_id,
                    details={"messageId": message_id},
                )
                session.flush()
                return ChatMessageRead.model_validate(message)

        return await asyncio.to_thread(_unpin)

    async def soft_delete(self, message_id: str, *, actor_id: str) -> ChatMessageRead:
        def _delete() -> ChatMessageRead:
            with self._session_factory.begin() as session:
                message = session.get(ChatMessage, message_id)
                if message is None or message.is_deleted:
                    raise NotFoundError("chat message", message_id)
                was_pinned = message.is_pinned
                message.is_deleted = True
                message.is_pinned = False
                record_audit(
                    session,
                    service=AUDIT_SERVICE,
                    action="CHAT_MESSAGE_DELETED",
                    actor_id=actor_id,
                    subject_id=message.webinar_id,
                    details={"messageId": message_id, "wasPinned": was_pinned},
                )
                session.flush()
                return ChatMessageRead.model_validate(message)

        return await asyncio.to_thread(_delete)

    async def list_all(self, webinar_id: str, *, include_deleted: bool = False) -> list[ChatMessageRead]:
        def _query() -> list[ChatMessageRead]:
            with self._session_factory() as session:
                if session.get(Webinar, webinar_id) is None:
                    raise NotFoundError("webinar", webinar_id)
                stmt = select(ChatMessage).where(ChatMessage.webinar_id == webinar_id)
                if not include_deleted:
                    stmt = stmt.where(ChatMessage.is_deleted.is_(False))
                stmt = stmt.order_by(ChatMessage.created_at, ChatMessage.id)
                return [ChatMessageRead.model_validate(row) for row in session.execute(stmt).scalars()]

        return await asyncio.to_thread(_query)


class RegistrationRepository(_Repository):
    async def find_by_link(self, unique_link: str) -> RegistrationRead | None:
        def _query() -> RegistrationRead | None:
            with self._session_factory() as session:
                stmt = select(Registration).where(Registration.unique_link == unique_link)
                row = session.execute(stmt).scalars().first()
                return RegistrationRead.model_validate(row) if row else None

        return await asyncio.to_thread(_query)


class AuditRepository(_Repository):
    async def list_entries(
        self, *, webinar_id: str | None = None, limit: int = 100
    ) -> list[AuditLogRead]:
        def _query() -> list[AuditLogRead]:
            with self._session_factory() as session:
                entries: Iterable[AuditLog] = list_audit_entries(
                    session, service=AUDIT_SERVICE, subject_id=webinar_id, limit=limit
                )
                return [AuditLogRead.model_validate(entry) for entry in entries]

        return await asyncio.to_thread(_query)


__all__ = [
    "AUDIT_SERVICE",
    "AuditRepository",
    "AutomationRepository",
    "ChatRepository",
    "RegistrationRepository",
    "WebinarRepository",
]
