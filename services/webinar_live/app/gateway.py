"""Per-viewer websocket channel of a webinar."""

from __future__ import annotations

import json
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from fastapi import WebSocket, WebSocketDisconnect, status

from libs.observability.logging import bind_webinar

from .auth import InvalidOperatorToken, ViewerAuthenticator, ViewerIdentity
from .automation import AutomationScheduler
from .broadcaster import BroadcastHub, LiveConnection
from .clock import ClockEngine
from .repository import ChatRepository, WebinarRepository
from .schemas import SessionState
from .state_store import SessionStateStore

logger = logging.getLogger(__name__)

MAX_MESSAGE_LENGTH = 2000
MAX_EMOJI_LENGTH = 16
QA_PREFIX = "[Q&A] "


@dataclass
class ViewerSession:
    identity: ViewerIdentity
    webinar_id: str | None = None


Handler = Callable[[LiveConnection, ViewerSession, dict[str, Any]], Awaitable[None]]


class LiveChannelGateway:
    def __init__(
        self,
        *,
        hub: BroadcastHub,
        store: SessionStateStore,
        clock: ClockEngine,
        scheduler: AutomationScheduler,
        webinars: WebinarRepository,
        chat: ChatRepository,
        authenticator: ViewerAuthenticator,
        history_limit: int = 100,
    ) -> None:
        self._hub = hub
        self._store = store
        self._clock = clock
        self._scheduler = scheduler
        self._webinars = webinars
        self._chat = chat
        self._authenticator = authenticator
        self._history_limit = history_limit
        self._handlers: dict[str, Handler] = {
            "join": self._on_join,
            "chat:send": self._on_chat_send,
            "reaction:send": self._on_reaction,
            "qa:submit": self._on_question,
            "chat:typing": self._on_typing,
            "chat:stopTyping": self._on_stop_typing,
        }

    async def serve(self, websocket: WebSocket) -> None:
        params = websocket.query_params
        try:
            identity = await self._authenticator.identify(
                token=params.get("token"),
                registration_id=params.get("registrationId"),
                guest_name=params.get("guestName"),
            )
        except InvalidOperatorToken:
            logger.info("Rejected websocket with invalid operator token")
            await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
            return

        await websocket.accept()
        session = ViewerSession(identity=identity)
        try:
            while True:
                raw = await websocket.receive_text()
                await self.handle_raw(websocket, session, raw)
        except WebSocketDisconnect:
            pass
        finally:
            await self.leave(websocket, session)

    async def handle_raw(self, connection: LiveConnection, session: ViewerSession, raw: str) -> None:
        try:
            message = json.loads(raw)
        except ValueError:
            await self._error(connection, "invalid_message", "Messages must be JSON")
            return
        if not isinstance(message, dict):
            await self._error(connection, "invalid_message", "Messages must be JSON objects")
            return
        await self.handle(connection, session, message)

    async def handle(self, connection: LiveConnection, session: ViewerSession, message: dict[str, Any]) -> None:
        event = message.get("event")
        data = message.get("data")
        handler = self._handlers.get(event) if isinstance(event, str) else None
        if handler is None:
            await self._error(connection, "invalid_message", f"Unknown event {event!r}")
            return
        if data is None:
            data = {}
        if not isinstance(data, dict):
            await self._error(connection, "invalid_message", "Event data must be an object")
            return
        with bind_webinar(session.webinar_id):
            await handler(connection, session, data)

    async def leave(self, connection: LiveConnection, session: ViewerSession) -> None:
        webinar_id = session.webinar_id
        if webinar_id is None:
            return
        session.webinar_id = None
        await self._hub.leave(webinar_id, connection)
        await self._hub.emit_viewers(webinar_id)

    async def _on_join(self, connection: LiveConnection, session: ViewerSession, data: dict[str, Any]) -> None:
        webinar_id = data.get("webinarId")
        if not isinstance(webinar_id, str) or not webinar_id:
            await self._error(connection, "invalid_message", "webinarId is required")
            return
        webinar = await self._webinars.get(webinar_id)
        if webinar is None:
            await self._error(connection, "not_found", f"Webinar {webinar_id} not found")
            return
        if session.webinar_id is not None and session.webinar_id != webinar_id:
            await self.leave(connection, session)

        count = await self._hub.join(webinar_id, connection)
        session.webinar_id = webinar_id
        state = await self._store.get(webinar_id) or SessionState(webinar_id=webinar_id)
        messages = await self._chat.recent(webinar_id, limit=self._history_limit)
        pinned = await self._chat.pinned(webinar_id)
        await self._hub.send(
            connection,
            "state",
            {
                "webinarId": webinar_id,
                "status": webinar.status,
                "isLive": state.is_live,
                "startedAt": state.started_at.isoformat() if state.started_at else None,
                "elapsedSeconds": self._clock.elapsed(state),
                "lastKnownOffsetSeconds": state.last_known_offset_seconds,
                "viewerCount": count,
                "messages": [message.to_wire() for message in messages],
                "pinnedMessage": pinned.to_wire() if pinned else None,
                "role": session.identity.role,
            },
        )
        await self._hub.emit_viewers(webinar_id)
        logger.info(
            "Viewer joined",
            extra={"webinar_id": webinar_id, "role": session.identity.role, "viewers": count},
        )

    async def _on_chat_send(self, connection: LiveConnection, session: ViewerSession, data: dict[str, Any]) -> None:
        webinar_id = await self._require_joined(connection, session)
        if webinar_id is None:
            return
        content = self._text(data.get("content"))
        if not content or len(content) > MAX_MESSAGE_LENGTH:
            await self._error(connection, "invalid_message", "Message content is empty or too long")
            return
        message = await self._chat.create(
            webinar_id,
            sender_name=session.identity.display_name,
            content=content,
            offset_seconds=await self._clock.elapsed_for(webinar_id),
            user_id=session.identity.user_id,
        )
        await self._hub.emit(webinar_id, "chat:message", message.to_wire(), exclude=connection)
        await self._scheduler.on_chat_received(webinar_id, content)

    async def _on_reaction(self, connection: LiveConnection, session: ViewerSession, data: dict[str, Any]) -> None:
        webinar_id = await self._require_joined(connection, session)
        if webinar_id is None:
            return
        emoji = self._text(data.get("emoji"))
        if not emoji or len(emoji) > MAX_EMOJI_LENGTH:
            await self._error(connection, "invalid_message", "Reaction emoji is empty or too long")
            return
        await self._hub.emit(
            webinar_id, "reaction:received", {"emoji": emoji, "userName": session.identity.display_name}
        )

    async def _on_question(self, connection: LiveConnection, session: ViewerSession, data: dict[str, Any]) -> None:
        webinar_id = await self._require_joined(connection, session)
        if webinar_id is None:
            return
        question = self._text(data.get("question"))
        if not question or len(question) > MAX_MESSAGE_LENGTH:
            await self._error(connection, "invalid_message", "Question is empty or too long")
            return
        message = await self._chat.create(
            webinar_id,
            sender_name=session.identity.display_name,
            content=f"{QA_PREFIX}{question}",
            offset_seconds=await self._clock.elapsed_for(webinar_id),
            user_id=session.identity.user_id,
        )
        await self._hub.emit(
            webinar_id,
            "qa:new",
            {
                "id": message.id,
                "question": question,
                "askedBy": session.identity.display_name,
                "createdAt": message.created_at.isoformat(),
            },
        )

    async def _on_typing(self, connection: LiveConnection, session: ViewerSession, data: dict[str, Any]) -> None:
        if session.webinar_id is None:
            return
        await self._hub.emit(
            session.webinar_id,
            "chat:userTyping",
            {"userName": session.identity.display_name},
            exclude=connection,
        )

    async def _on_stop_typing(
        self, connection: LiveConnection, session: ViewerSession, data: dict[str, Any]
    ) -> None:
        if session.webinar_id is None:
            return
        await self._hub.emit(
            session.webinar_id,
            "chat:userStoppedTyping",
            {"userName": session.identity.display_name},
            exclude=connection,
        )

    async def _require_joined(self, connection: LiveConnection, session: ViewerSession) -> str | None:
        if session.webinar_id is None:
            await self._error(connection, "invalid_message", "Join a webinar first")
        return session.webinar_id

    async def _error(self, connection: LiveConnection, code: str, message: str) -> None:
        await self._hub.send(connection, "error", {"code": code, "message": message})

    @staticmethod
    def _text(value: Any) -> str:
        return value.strip() if isinstance(value, str) else ""


__all__ = ["LiveChannelGateway", "ViewerSession"]
