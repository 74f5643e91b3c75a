"""Typed automation payloads.

Automation content is stored as JSON text; each automation kind reads it into
its own payload model. Content that cannot be read falls back to a plain text
message so one bad row never breaks a timeline.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel

from .models import AutomationKind

logger = logging.getLogger(__name__)

DEFAULT_BOT_NAME = "Webinar Bot"


class _Payload(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    def to_content(self) -> str:
        return self.model_dump_json(by_alias=True, exclude={"kind"})


class TimedMessagePayload(_Payload):
    kind: Literal["TIMED_MESSAGE"] = "TIMED_MESSAGE"
    sender_name: str = DEFAULT_BOT_NAME
    message: str = ""


class CtaPopupPayload(_Payload):
    kind: Literal["CTA_POPUP"] = "CTA_POPUP"
    title: str = "Special Offer"
    description: str = ""
    button_text: str = "Learn More"
    button_url: str = "#"
    duration: int = Field(30, ge=1)

    def to_event(self) -> dict[str, Any]:
        return {
            "type": self.kind,
            "title": self.title,
            "description": self.description,
            "buttonText": self.button_text,
            "buttonUrl": self.button_url,
            "duration": self.duration,
        }


class OfferBannerPayload(_Payload):
    kind: Literal["OFFER_BANNER"] = "OFFER_BANNER"
    text: str = "Limited Time Offer!"
    background_color: str = "#6366f1"
    text_color: str = "#ffffff"
    duration: int = Field(60, ge=1)

    def to_event(self) -> dict[str, Any]:
        return {
            "type": self.kind,
            "text": self.text,
            "backgroundColor": self.background_color,
            "textColor": self.text_color,
            "duration": self.duration,
        }


class KeywordReplyPayload(_Payload):
    kind: Literal["KEYWORD_REPLY"] = "KEYWORD_REPLY"
    keyword: str | None = None
    reply_message: str = ""
    reply_sender_name: str = DEFAULT_BOT_NAME

    def matches(self, text: str) -> bool:
        keyword = (self.keyword or "").strip().lower()
        return bool(keyword) and keyword in text.lower()

    def as_reply(self) -> TimedMessagePayload:
        return TimedMessagePayload(sender_name=self.reply_sender_name, message=self.reply_message)


AutomationPayload = Union[TimedMessagePayload, CtaPopupPayload, OfferBannerPayload, KeywordReplyPayload]

_PAYLOAD_TYPES: dict[str, type[_Payload]] = {
    AutomationKind.TIMED_MESSAGE.value: TimedMessagePayload,
    AutomationKind.CTA_POPUP.value: CtaPopupPayload,
    AutomationKind.OFFER_BANNER.value: OfferBannerPayload,
    AutomationKind.KEYWORD_REPLY.value: KeywordReplyPayload,
}


def _fallback(kind: str, raw: str) -> AutomationPayload:
    if kind == AutomationKind.KEYWORD_REPLY.value:
        return KeywordReplyPayload()
    return TimedMessagePayload(message=raw)


def parse_payload(kind: str, raw: str | None) -> AutomationPayload:
    """Read stored ``raw`` content as the payload variant of ``kind``."""

    raw = raw or ""
    try:
        data = json.loads(raw) if raw.strip() else {}
    except ValueError:
        logger.debug("Automation content is not JSON, treating it as text", extra={"kind": kind})
        return _fallback(kind, raw)

    if isinstance(data, str):
        return _fallback(kind, data)
    payload_type = _PAYLOAD_TYPES.get(kind)
    if payload_type is None or not isinstance(data, dict):
        return _fallback(kind, raw)
    try:
        return payload_type.model_validate(data)  # type: ignore[return-value]
    except ValidationError:
        logger.warning("Malformed %s automation content, using text fallback", kind)
        return _fallback(kind, raw)


def serialize_content(kind: str, content: dict[str, Any] | str) -> str:
    """Normalise API supplied content into the stored JSON text."""

    if isinstance(content, str):
        return content
    payload_type = _PAYLOAD_TYPES.get(kind)
    if payload_type is None:
        return json.dumps(content)
    return payload_type.model_validate(content).to_content()


__all__ = [
    "AutomationPayload",
    "CtaPopupPayload",
    "DEFAULT_BOT_NAME",
    "KeywordReplyPayload",
    "OfferBannerPayload",
    "TimedMessagePayload",
    "parse_payload",
    "serialize_content",
]
