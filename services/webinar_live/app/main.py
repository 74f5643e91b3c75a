from __future__ import annotations

from collections.abc import Callable
from contextlib import asynccontextmanager
from datetime import datetime

from fastapi import FastAPI, Request, WebSocket, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session, sessionmaker

from libs.observability.logging import RequestContextMiddleware, configure_logging
from libs.observability.metrics import setup_metrics

from .auth import ViewerAuthenticator
from .automation import AutomationScheduler
from .broadcaster import BroadcastHub, SyncBroadcaster
from .cache import KeyValueCache, create_cache
from .clock import ClockEngine, utcnow
from .config import Settings, get_settings
from .database import create_session_factory
from .errors import InvalidStateError, NotFoundError
from .gateway import LiveChannelGateway
from .lifecycle import AutoStartWatcher, SessionLifecycleController
from .repository import (
    AuditRepository,
    AutomationRepository,
    ChatRepository,
    RegistrationRepository,
    WebinarRepository,
)
from .routers import audit, automations, chat, sessions
from .state_store import SessionStateStore

configure_logging("webinar-live")


def create_app(
    settings: Settings | None = None,
    session_factory: sessionmaker[Session] | None = None,
    cache: KeyValueCache | None = None,
    now: Callable[[], datetime] = utcnow,
    start_background_tasks: bool = True,
) -> FastAPI:
    settings = settings or get_settings()
    session_factory = session_factory or create_session_factory(settings)
    cache = cache or create_cache(settings)

    webinars = WebinarRepository(session_factory)
    automation_repository = AutomationRepository(session_factory)
    chat_repository = ChatRepository(session_factory)
    registrations = RegistrationRepository(session_factory)
    audit_repository = AuditRepository(session_factory)

    store = SessionStateStore(webinars, cache)
    clock = ClockEngine(store, now=now)
    hub = BroadcastHub()
    scheduler = AutomationScheduler(
        automations=automation_repository,
        webinars=webinars,
        chat=chat_repository,
        store=store,
        clock=clock,
        hub=hub,
        reconcile_interval_seconds=settings.reconcile_interval_seconds,
        cleanup_interval_seconds=settings.cleanup_interval_seconds,
        keyword_reply_delay_seconds=settings.keyword_reply_delay_seconds,
    )
    lifecycle = SessionLifecycleController(
        webinars=webinars,
        store=store,
        clock=clock,
        hub=hub,
        scheduler=scheduler,
        redirect_template=settings.ended_redirect_template,
    )
    watcher = AutoStartWatcher(
        webinars=webinars,
        controller=lifecycle,
        clock=clock,
        interval_seconds=settings.auto_start_interval_seconds,
    )
    broadcaster = SyncBroadcaster(
        hub,
        store,
        clock,
        interval_seconds=settings.sync_interval_seconds,
        persist_interval_seconds=settings.offset_persist_interval_seconds,
    )
    gateway = LiveChannelGateway(
        hub=hub,
        store=store,
        clock=clock,
        scheduler=scheduler,
        webinars=webinars,
        chat=chat_repository,
        authenticator=ViewerAuthenticator(settings, registrations),
        history_limit=settings.chat_history_limit,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if start_background_tasks:
            await scheduler.start()
            await watcher.start()
            await broadcaster.start()
        try:
            yield
        finally:
            # Timers armed by request handlers exist even without the loops.
            await broadcaster.stop()
            await watcher.stop()
            await scheduler.stop()
            await hub.aclose()
            await cache.aclose()

    app = FastAPI(title="Webinar Live Service", lifespan=lifespan)
    app.state.settings = settings
    app.state.session_factory = session_factory
    app.state.cache = cache
    app.state.store = store
    app.state.clock = clock
    app.state.hub = hub
    app.state.scheduler = scheduler
    app.state.lifecycle = lifecycle
    app.state.watcher = watcher
    app.state.broadcaster = broadcaster
    app.state.gateway = gateway
    app.state.webinars = webinars
    app.state.automations = automation_repository
    app.state.chat = chat_repository
    app.state.audit = audit_repository

    app.add_middleware(RequestContextMiddleware, service_name=settings.app_name)
    setup_metrics(app, service_name=settings.app_name)

    @app.exception_handler(NotFoundError)
    async def _not_found(request: Request, exc: NotFoundError) -> JSONResponse:
        return JSONResponse(status_code=status.HTTP_404_NOT_FOUND, content={"detail": str(exc)})

    @app.exception_handler(InvalidStateError)
    async def _invalid_state(request: Request, exc: InvalidStateError) -> JSONResponse:
        return JSONResponse(
            status_code=status.HTTP_409_CONFLICT,
            content={"detail": str(exc), "status": exc.status},
        )

    @app.get("/health", tags=["system"])
    async def health() -> dict[str, str]:
        return {"status": "ok"}

    app.include_router(sessions.router)
    app.include_router(automations.router)
    app.include_router(chat.router)
    app.include_router(audit.router)

    @app.websocket("/ws/webinars")
    async def webinar_socket(websocket: WebSocket) -> None:
        await gateway.serve(websocket)

    return app


app = create_app()


__all__ = ["app", "create_app"]
