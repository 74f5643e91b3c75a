"""Error taxonomy of the live-session core."""

from __future__ import annotations


class WebinarLiveError(Exception):
    """Base class for errors raised by the live-session core."""


class NotFoundError(WebinarLiveError):
    """A webinar, automation event or chat message does not exist."""

    def __init__(self, kind: str, identifier: str) -> None:
        super().__init__(f"{kind} {identifier} not found")
        self.kind = kind
        self.identifier = identifier


class InvalidStateError(WebinarLiveError):
    """A lifecycle transition is not allowed from the current status."""

    def __init__(self, webinar_id: str, status: str, action: str) -> None:
        super().__init__(f"Cannot {action} webinar {webinar_id} while {status}")
        self.webinar_id = webinar_id
        self.status = status
        self.action = action


class ClaimConflictError(WebinarLiveError):
    """The automation event was already fired by another path."""

    def __init__(self, event_id: str) -> None:
        super().__init__(f"Automation {event_id} already fired")
        self.event_id = event_id


class TransientStoreError(WebinarLiveError):
    """The durable store or the cache could not be reached."""


__all__ = [
    "ClaimConflictError",
    "InvalidStateError",
    "NotFoundError",
    "TransientStoreError",
    "WebinarLiveError",
]
