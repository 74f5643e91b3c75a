from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from .models import AutomationKind
from .payloads import AutomationPayload


def as_utc(value: datetime | None) -> datetime | None:
    """Return ``value`` as an aware UTC datetime (SQLite drops tzinfo)."""

    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _isoformat(value: datetime | None) -> str | None:
    value = as_utc(value)
    return value.isoformat() if value is not None else None


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)


class SessionState(_CamelModel):
    """Snapshot of a webinar's live session, mirrored in the cache as JSON."""

    webinar_id: str
    is_live: bool = False
    started_at: datetime | None = None
    ended_at: datetime | None = None
    last_known_offset_seconds: int = 0

    @field_validator("started_at", "ended_at")
    @classmethod
    def _normalise_timezone(cls, value: datetime | None) -> datetime | None:
        return as_utc(value)

    def to_cache(self) -> str:
        return self.model_dump_json(by_alias=True)

    @classmethod
    def from_cache(cls, raw: str | bytes) -> "SessionState":
        return cls.model_validate_json(raw)


class WebinarSummary(_CamelModel):
    id: str
    title: str
    status: str
    scheduled_at: datetime | None = None

    @field_validator("scheduled_at")
    @classmethod
    def _normalise_timezone(cls, value: datetime | None) -> datetime | None:
        return as_utc(value)


class AutomationEvent(BaseModel):
    """A timeline entry with its content already read into a payload variant."""

    id: str
    webinar_id: str
    kind: AutomationKind
    trigger_offset_seconds: int
    enabled: bool = True
    fired_at: datetime | None = None
    payload: AutomationPayload


class ChatMessageRead(_CamelModel):
    id: str
    webinar_id: str
    user_id: str | None = None
    sender_name: str
    content: str
    offset_seconds: int = 0
    is_pinned: bool = False
    is_deleted: bool = False
    is_automated: bool = False
    created_at: datetime

    @field_validator("created_at")
    @classmethod
    def _normalise_timezone(cls, value: datetime) -> datetime:
        return as_utc(value)  # type: ignore[return-value]

    def to_wire(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "webinarId": self.webinar_id,
            "userId": self.user_id,
            "senderName": self.sender_name,
            "content": self.content,
            "offsetSeconds": self.offset_seconds,
            "isPinned": self.is_pinned,
            "isAutomated": self.is_automated,
            "createdAt": _isoformat(self.created_at),
        }


class RegistrationRead(_CamelModel):
    id: str
    webinar_id: str
    name: str
    email: str
    unique_link: str


class StopRequest(_CamelModel):
    reason: str = Field("ended", min_length=1, max_length=255)


class RescheduleRequest(_CamelModel):
    scheduled_at: datetime

    @field_validator("scheduled_at")
    @classmethod
    def _normalise_timezone(cls, value: datetime) -> datetime:
        return as_utc(value)  # type: ignore[return-value]


class CtaBroadcastRequest(_CamelModel):
    title: str = "Special Offer"
    description: str = ""
    button_text: str = "Learn More"
    button_url: str = "#"
    duration: int = Field(30, ge=1, le=3600)


class ElapsedResponse(_CamelModel):
    webinar_id: str
    elapsed_seconds: int
    is_live: bool


class SessionStateResponse(_CamelModel):
    webinar_id: str
    status: str
    is_live: bool
    started_at: datetime | None = None
    ended_at: datetime | None = None
    last_known_offset_seconds: int = 0
    elapsed_seconds: int = 0
    viewer_count: int = 0


class AutomationCreate(_CamelModel):
    kind: AutomationKind
    trigger_offset_seconds: int = Field(0, ge=0)
    content: dict[str, Any] | str = Field(default_factory=dict)
    enabled: bool = True


class AutomationUpdate(_CamelModel):
    kind: AutomationKind | None = None
    trigger_offset_seconds: int | None = Field(None, ge=0)
    content: dict[str, Any] | str | None = None
    enabled: bool | None = None


class AutomationRead(_CamelModel):
    id: str
    webinar_id: str
    kind: AutomationKind
    trigger_offset_seconds: int
    content: str
    enabled: bool
    fired_at: datetime | None = None
    created_at: datetime | None = None


class ImportResult(_CamelModel):
    webinar_id: str
    imported: int


class FireResult(_CamelModel):
    automation_id: str
    fired: bool


class AuditLogRead(_CamelModel):
    id: int
    service: str
    action: str
    actor_id: str
    subject_id: str | None = None
    details: dict[str, Any] | None = None
    message: str | None = None
    created_at: datetime | None = None


__all__ = [
    "AuditLogRead",
    "AutomationCreate",
    "AutomationEvent",
    "AutomationRead",
    "AutomationUpdate",
    "ChatMessageRead",
    "CtaBroadcastRequest",
    "ElapsedResponse",
    "FireResult",
    "ImportResult",
    "RegistrationRead",
    "RescheduleRequest",
    "SessionState",
    "SessionStateResponse",
    "StopRequest",
    "WebinarSummary",
    "as_utc",
]
