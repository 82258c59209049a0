"""Exception taxonomy shared by the engine, the write path and the API."""

from __future__ import annotations


class EventScopeError(Exception):
    """Base class for EventScope errors."""


class PolicyConfigurationError(EventScopeError):
    """Raised (or logged) when a tier or permission value is not recognised.

    Evaluators never raise it: they log it and deny. Write paths and catalog
    loading raise it so bad configuration is rejected at the door.
    """


class UpstreamFetchError(EventScopeError):
    """Raised when the friend graph or event storage could not be read."""


class InvalidActorState(EventScopeError):
    """Raised when an event is malformed (for example it has no host)."""


class AccessDenied(EventScopeError):
    """Raised by write paths when the actor may not perform an action."""

    def __init__(self, action: str, event_id: str | None = None) -> None:
        self.action = action
        self.event_id = event_id
        target = f" on event {event_id}" if event_id else ""
        super().__init__(f"Not allowed to {action}{target}")


class NotFound(EventScopeError):
    """Raised when a referenced event, user or guest pass does not exist."""
