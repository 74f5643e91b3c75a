from __future__ import annotations

from fastapi import Request

from .automation import AutomationScheduler
from .broadcaster import BroadcastHub
from .lifecycle import SessionLifecycleController
from .repository import AuditRepository, AutomationRepository, ChatRepository


def get_controller(request: Request) -> SessionLifecycleController:
    return request.app.state.lifecycle


def get_scheduler(request: Request) -> AutomationScheduler:
    return request.app.state.scheduler


def get_hub(request: Request) -> BroadcastHub:
    return request.app.state.hub


def get_automation_repository(request: Request) -> AutomationRepository:
    return request.app.state.automations


def get_chat_repository(request: Request) -> ChatRepository:
    return request.app.state.chat


def get_audit_repository(request: Request) -> AuditRepository:
    return request.app.state.audit


__all__ = [
    "get_audit_repository",
    "get_automation_repository",
    "get_chat_repository",
    "get_controller",
    "get_hub",
    "get_scheduler",
]
