from __future__ import annotations

import json
import os
import tempfile
from collections.abc import Iterator
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any

os.environ.setdefault(
    "WEBINAR_LIVE_DATABASE_URL",
    f"sqlite+pysqlite:///{os.path.join(tempfile.gettempdir(), 'webinar_live_tests.db')}",
)

import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402
from sqlalchemy.orm import Session, sessionmaker  # noqa: E402

from services.webinar_live.app.auth import create_operator_token  # noqa: E402
from services.webinar_live.app.automation import AutomationScheduler  # noqa: E402
from services.webinar_live.app.broadcaster import BroadcastHub  # noqa: E402
from services.webinar_live.app.cache import InMemoryKeyValueCache  # noqa: E402
from services.webinar_live.app.clock import ClockEngine  # noqa: E402
from services.webinar_live.app.config import Settings  # noqa: E402
from services.webinar_live.app.database import create_session_factory  # noqa: E402
from services.webinar_live.app.lifecycle import SessionLifecycleController  # noqa: E402
from services.webinar_live.app.main import create_app  # noqa: E402
from services.webinar_live.app.models import (  # noqa: E402
    Automation,
    ChatMessage,
    Registration,
    Webinar,
    WebinarState,
)
from services.webinar_live.app.repository import (  # noqa: E402
    AutomationRepository,
    ChatRepository,
    WebinarRepository,
)
from services.webinar_live.app.schemas import SessionState  # noqa: E402
from services.webinar_live.app.state_store import SessionStateStore  # noqa: E402


class FakeClock:
    def __init__(self, start: datetime | None = None) -> None:
        self.current = start or datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.current

    def advance(self, seconds: float) -> None:
        self.current += timedelta(seconds=seconds)


class RecordingConnection:
    def __init__(self) -> None:
        self.messages: list[dict[str, Any]] = []
        self.closed = False

    async def send_json(self, data: Any) -> None:
        self.messages.append(data)

    async def close(self, code: int = 1000) -> None:
        self.closed = True

    def events(self, name: str) -> list[dict[str, Any]]:
        return [message["data"] for message in self.messages if message["event"] == name]


@dataclass
class LiveCore:
    now: FakeClock
    webinars: WebinarRepository
    automations: AutomationRepository
    chat: ChatRepository
    cache: InMemoryKeyValueCache
    store: SessionStateStore
    clock: ClockEngine
    hub: BroadcastHub
    scheduler: AutomationScheduler
    lifecycle: SessionLifecycleController

    async def go_live(self, webinar_id: str, elapsed: float) -> SessionState:
        """Put a webinar live as if it had started ``elapsed`` seconds ago."""

        state, _ = await self.webinars.mark_live(
            webinar_id, started_at=self.now.current - timedelta(seconds=elapsed), actor_id="tester"
        )
        await self.store.cache_live(state)
        return state


@pytest.fixture()
def settings(tmp_path) -> Settings:
    return Settings(
        database_url=f"sqlite+pysqlite:///{tmp_path / 'webinar.db'}",
        cache_backend="memory",
        keyword_reply_delay_seconds=0.05,
        jwt_secret="test-secret",
    )


@pytest.fixture()
def session_factory(settings: Settings) -> Iterator[sessionmaker[Session]]:
    factory = create_session_factory(settings)
    yield factory
    factory.kw["bind"].dispose()


@pytest.fixture()
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest_asyncio.fixture()
async def core(session_factory: sessionmaker[Session], fake_clock: FakeClock, settings: Settings):
    webinars = WebinarRepository(session_factory)
    automations = AutomationRepository(session_factory)
    chat = ChatRepository(session_factory)
    cache = InMemoryKeyValueCache()
    store = SessionStateStore(webinars, cache)
    clock = ClockEngine(store, now=fake_clock)
    hub = BroadcastHub()
    scheduler = AutomationScheduler(
        automations=automations,
        webinars=webinars,
        chat=chat,
        store=store,
        clock=clock,
        hub=hub,
        keyword_reply_delay_seconds=settings.keyword_reply_delay_seconds,
    )
    lifecycle = SessionLifecycleController(
        webinars=webinars, store=store, clock=clock, hub=hub, scheduler=scheduler
    )
    yield LiveCore(
        now=fake_clock,
        webinars=webinars,
        automations=automations,
        chat=chat,
        cache=cache,
        store=store,
        clock=clock,
        hub=hub,
        scheduler=scheduler,
        lifecycle=lifecycle,
    )
    await scheduler.stop()


@pytest.fixture()
def make_webinar(session_factory: sessionmaker[Session]):
    def _make(
        status: str = "SCHEDULED",
        scheduled_at: datetime | None = None,
        title: str = "Evergreen launch",
    ) -> str:
        with session_factory.begin() as session:
            webinar = Webinar(title=title, status=status, scheduled_at=scheduled_at)
            session.add(webinar)
            session.flush()
            session.add(WebinarState(webinar_id=webinar.id))
            return webinar.id

    return _make


@pytest.fixture()
def make_automation(session_factory: sessionmaker[Session]):
    def _make(
        webinar_id: str,
        kind: str = "TIMED_MESSAGE",
        offset: int = 0,
        content: dict[str, Any] | str | None = None,
        enabled: bool = True,
    ) -> str:
        if content is None:
            content = {"senderName": "Host", "message": f"Message at {offset}s"}
        raw = content if isinstance(content, str) else json.dumps(content)
        with session_factory.begin() as session:
            automation = Automation(
                webinar_id=webinar_id,
                kind=kind,
                trigger_offset_seconds=offset,
                content=raw,
                enabled=enabled,
            )
            session.add(automation)
            session.flush()
            return automation.id

    return _make


@pytest.fixture()
def make_message(session_factory: sessionmaker[Session]):
    base = datetime(2026, 3, 1, 11, 0, tzinfo=timezone.utc)

    def _make(webinar_id: str, content: str, *, index: int = 0, sender: str = "Viewer", deleted: bool = False) -> str:
        with session_factory.begin() as session:
            message = ChatMessage(
                webinar_id=webinar_id,
                sender_name=sender,
                content=content,
                offset_seconds=index,
                is_deleted=deleted,
                created_at=base + timedelta(seconds=index),
            )
            session.add(message)
            session.flush()
            return message.id

    return _make


@pytest.fixture()
def make_registration(session_factory: sessionmaker[Session]):
    def _make(webinar_id: str, name: str = "Ada Attendee", email: str = "ada@example.com") -> str:
        with session_factory.begin() as session:
            registration = Registration(webinar_id=webinar_id, name=name, email=email)
            session.add(registration)
            session.flush()
            return registration.unique_link

    return _make


@pytest.fixture()
def load_automation(session_factory: sessionmaker[Session]):
    def _load(automation_id: str) -> Automation | None:
        with session_factory() as session:
            return session.get(Automation, automation_id)

    return _load


@pytest.fixture()
def new_connection():
    return RecordingConnection


@pytest.fixture()
def client(settings: Settings, session_factory: sessionmaker[Session], fake_clock: FakeClock):
    app = create_app(settings, session_factory, now=fake_clock, start_background_tasks=False)
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture()
def operator_headers(settings: Settings) -> dict[str, str]:
    token = create_operator_token(settings, "op-1", name="Jane Host")
    return {"Authorization": f"Bearer {token}"}
