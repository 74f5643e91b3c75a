"""Viewer classification and operator token checks."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Literal

from fastapi import Header, HTTPException, Request
from jose import JWTError, jwt

from .config import Settings, get_settings
from .repository import RegistrationRepository

ViewerRole = Literal["operator", "attendee", "guest"]

ANONYMOUS_NAME = "Anonymous"


class InvalidOperatorToken(Exception):
    """An operator token was supplied but could not be verified."""


@dataclass(frozen=True, slots=True)
class ViewerIdentity:
    role: ViewerRole
    display_name: str
    user_id: str | None = None

    @property
    def is_operator(self) -> bool:
        return self.role == "operator"


def create_operator_token(
    settings: Settings, subject: str, *, name: str | None = None, expires_minutes: int = 60
) -> str:
    now = datetime.now(timezone.utc)
    claims: dict[str, object] = {
        "sub": subject,
        "roles": ["operator"],
        "iat": int(now.timestamp()),
        "exp": int((now + timedelta(minutes=expires_minutes)).timestamp()),
    }
    if name:
        claims["name"] = name
    return jwt.encode(claims, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def decode_operator_token(settings: Settings, token: str) -> dict:
    try:
        payload = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except JWTError as exc:
        raise InvalidOperatorToken(str(exc)) from exc
    if not payload.get("sub"):
        raise InvalidOperatorToken("Token has no subject")
    return payload


class ViewerAuthenticator:
    """Classify a websocket caller once, at connect time."""

    def __init__(self, settings: Settings, registrations: RegistrationRepository) -> None:
        self._settings = settings
        self._registrations = registrations

    async def identify(
        self,
        *,
        token: str | None = None,
        registration_id: str | None = None,
        guest_name: str | None = None,
    ) -> ViewerIdentity:
        if token:
            payload = decode_operator_token(self._settings, token)
            subject = str(payload["sub"])
            return ViewerIdentity(
                role="operator", display_name=str(payload.get("name") or "Host"), user_id=subject
            )
        if registration_id:
            registration = await self._registrations.find_by_link(registration_id)
            if registration is not None:
                return ViewerIdentity(
                    role="attendee", display_name=registration.name, user_id=registration.id
                )
        name = (guest_name or "").strip()[:100]
        return ViewerIdentity(role="guest", display_name=name or ANONYMOUS_NAME)


def require_operator(request: Request, authorization: str | None = Header(default=None)) -> str:
    """Return the operator id carried by the bearer token."""

    settings: Settings = getattr(request.app.state, "settings", None) or get_settings()
    if settings.auth_bypass:
        return request.headers.get("x-operator-id") or "operator"
    parts = (authorization or "").split()
    if len(parts) != 2 or parts[0].lower() != "bearer":
        raise HTTPException(status_code=401, detail="Missing token")
    token = parts[1]
    try:
        payload = decode_operator_token(settings, token)
    except InvalidOperatorToken as exc:
        raise HTTPException(status_code=401, detail="Invalid token") from exc
    return str(payload["sub"])


__all__ = [
    "ANONYMOUS_NAME",
    "InvalidOperatorToken",
    "ViewerAuthenticator",
    "ViewerIdentity",
    "create_operator_token",
    "decode_operator_token",
    "require_operator",
]
