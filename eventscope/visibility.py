"""Visibility filter applied to candidate events."""

from __future__ import annotations

import logging
from collections.abc import Iterable
from enum import StrEnum

from .domain import EventActorFacts, EventRecord, derive_actor_facts
from .errors import InvalidActorState
from .permissions import can_view, can_view_attendees
from .policy import DEFAULT_CATALOG, PolicyCatalog

logger = logging.getLogger("uvicorn.error")


class Surface(StrEnum):
    DIRECT = "direct"
    SEARCH = "search"
    FEED = "feed"


def is_visible(
    event: EventRecord,
    facts: EventActorFacts,
    surface: Surface = Surface.DIRECT,
    *,
    catalog: PolicyCatalog = DEFAULT_CATALOG,
) -> bool:
    """Return whether ``event`` should appear for the actor on ``surface``.

    Participants always see their events. Everyone else needs view access,
    and on search or feed must either be invited or the event must be
    flagged to appear there.
    """
    if facts.is_participant:
        return True
    if not can_view(event, facts, catalog=catalog):
        return False
    if surface is Surface.DIRECT:
        return True
    if facts.is_invited:
        return True
    bundle = catalog.bundle_for(event)
    if surface is Surface.SEARCH:
        return bundle.appear_in_search
    return bundle.appear_in_feed


def filter_visible(
    events: Iterable[EventRecord],
    user_id: object,
    *,
    friend_ids: Iterable[object] | None,
    surface: Surface = Surface.DIRECT,
    catalog: PolicyCatalog = DEFAULT_CATALOG,
    guest_event_id: object = None,
) -> list[EventRecord]:
    """Return the events visible to ``user_id``, preserving input order."""
    friends = frozenset(friend_ids or ())
    visible: list[EventRecord] = []
    for event in events:
        try:
            facts = derive_actor_facts(
                event, user_id, friend_ids=friends, guest_event_id=guest_event_id
            )
        except InvalidActorState as exc:
            logger.warning("Excluding malformed event %s: %s", event.id, exc)
            continue
        if is_visible(event, facts, surface, catalog=catalog):
            visible.append(event)
    return visible


def visible_attendees(
    event: EventRecord,
    facts: EventActorFacts,
    *,
    catalog: PolicyCatalog = DEFAULT_CATALOG,
) -> frozenset[str]:
    if can_view_attendees(event, facts, catalog=catalog):
        return event.attendee_ids
    return frozenset()
