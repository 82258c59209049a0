"""Event snapshots and per-request actor facts."""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any

from .errors import InvalidActorState
from .policy import NO_OVERRIDES, PermissionOverrides
from .utils import id_set, normalize_id


@dataclass(frozen=True)
class EventRecord:
    """Point-in-time view of an event as the engine sees it.

    ``privacy_tier`` is kept as the raw stored string so an unknown tier is
    resolved (and reported) by the catalog instead of failing here.
    """

    id: str | None
    host_id: str | None
    privacy_tier: str | None
    title: str = ""
    description: str = ""
    location: str = ""
    co_host_ids: frozenset[str] = frozenset()
    attendee_ids: frozenset[str] = frozenset()
    invited_ids: frozenset[str] = frozenset()
    requested_ids: frozenset[str] = frozenset()
    overrides: PermissionOverrides = NO_OVERRIDES
    start_time: datetime | None = None
    category: str | None = None
    tags: tuple[str, ...] = field(default_factory=tuple)

    @property
    def attendee_count(self) -> int:
        return len(self.attendee_ids)

    def as_document(self) -> dict[str, Any]:
        """Return the field vocabulary discovery predicates are written against."""
        return {
            "id": self.id,
            "host_id": self.host_id,
            "privacy_tier": self.privacy_tier,
            "co_host_ids": self.co_host_ids,
            "attendee_ids": self.attendee_ids,
            "invited_ids": self.invited_ids,
            "view_override": self.overrides.can_view,
            "feed_override": self.overrides.appear_in_feed,
            "search_override": self.overrides.appear_in_search,
            "start_time": self.start_time,
            "category": self.category,
            "tags": self.tags,
        }


@dataclass(frozen=True)
class EventActorFacts:
    """Relationship between one actor and one event, derived per request."""

    is_host: bool = False
    is_co_host: bool = False
    is_attendee: bool = False
    is_invited: bool = False
    is_friend_of_host: bool = False
    is_guest_token_holder: bool = False
    has_account: bool = True

    @property
    def is_staff(self) -> bool:
        return self.is_host or self.is_co_host

    @property
    def is_participant(self) -> bool:
        return self.is_staff or self.is_attendee

    def without_guest(self) -> EventActorFacts:
        if not self.is_guest_token_holder:
            return self
        return replace(self, is_guest_token_holder=False)


def derive_actor_facts(
    event: EventRecord,
    user_id: object,
    *,
    friend_ids: Iterable[object] | None,
    guest_event_id: object = None,
) -> EventActorFacts:
    """Compute actor facts for ``user_id`` on ``event`` from current state.

    ``friend_ids`` is the user's accepted friend set; ``None`` is treated as
    no friends. ``guest_event_id`` is the event a validated guest token was
    issued for, if any.
    """
    if not normalize_id(event.id):
        raise InvalidActorState("Event has no id")
    if not normalize_id(event.host_id):
        raise InvalidActorState(f"Event {event.id} has no host")

    guest_holder = (
        guest_event_id is not None and normalize_id(guest_event_id) == event.id
    )
    user = normalize_id(user_id)
    if user is None:
        return EventActorFacts(is_guest_token_holder=guest_holder, has_account=False)

    return EventActorFacts(
        is_host=user == event.host_id,
        is_co_host=user in event.co_host_ids,
        is_attendee=user in event.attendee_ids,
        is_invited=user in event.invited_ids,
        is_friend_of_host=event.host_id in id_set(friend_ids),
        is_guest_token_holder=guest_holder,
    )
