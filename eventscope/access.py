"""Request-level entry points tying storage, the graph and the engine together.

Every call reads the current event and friend state at its start and makes
no decision from anything cached across requests.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import replace
from datetime import datetime
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from .config import settings
from .domain import EventActorFacts, EventRecord, derive_actor_facts
from .errors import AccessDenied, NotFound
from .graph import SqlFriendGraph, fetch_following_ids, fetch_friend_ids
from .guest import validate_guest_token
from .models import Event, EventMember, User
from .permissions import Action, can_view_attendees, can_view_photos, evaluate
from .policy import PolicyCatalog, catalog_from_mapping
from .predicates import (
    Compare,
    Contains,
    DiscoveryOptions,
    all_of,
    any_of,
    build_discovery_predicate,
)
from .ranking import (
    FeedCandidate,
    FeedContext,
    RankingWeights,
    candidates_after,
    encode_cursor,
    paginate_candidates,
    rank_feed,
)
from .storage import fetch_events, load_event
from .utils import normalize_id, utcnow
from .visibility import Surface, filter_visible, visible_attendees


def active_catalog() -> PolicyCatalog:
    """Return the catalog configured in the ``[policy]`` settings table."""
    return catalog_from_mapping(settings.policy)


def _guest_event_id(session: Session, guest_token: str | None) -> str | None:
    grant = validate_guest_token(session, guest_token)
    return grant.event_id if grant else None


def _load_facts(
    session: Session,
    event_id: str,
    user_id: object,
    guest_token: str | None,
) -> tuple[EventRecord | None, EventActorFacts | None]:
    event = load_event(session, event_id)
    if event is None:
        return None, None
    friend_ids = fetch_friend_ids(SqlFriendGraph(session), user_id)
    facts = derive_actor_facts(
        event,
        user_id,
        friend_ids=friend_ids,
        guest_event_id=_guest_event_id(session, guest_token),
    )
    return event, facts


def evaluate_permission(
    session: Session,
    event_id: str,
    user_id: object,
    action: object,
    *,
    guest_token: str | None = None,
    catalog: PolicyCatalog | None = None,
) -> bool:
    """Decide whether ``user_id`` may perform ``action`` on the event right now.

    Missing events and unknown actions are denied. A malformed event raises
    :class:`InvalidActorState`.
    """
    event, facts = _load_facts(session, event_id, user_id, guest_token)
    if event is None:
        return False
    return evaluate(event, facts, action, catalog=catalog or active_catalog())


def permission_summary(
    session: Session,
    event_id: str,
    user_id: object,
    *,
    guest_token: str | None = None,
    catalog: PolicyCatalog | None = None,
) -> dict[str, bool]:
    event, facts = _load_facts(session, event_id, user_id, guest_token)
    if event is None:
        raise NotFound(f"Event {event_id} not found")
    catalog = catalog or active_catalog()
    summary = {
        action.value: evaluate(event, facts, action, catalog=catalog) for action in Action
    }
    summary["view_attendees"] = can_view_attendees(event, facts, catalog=catalog)
    summary["view_photos"] = can_view_photos(event, facts, catalog=catalog)
    return summary


def event_detail(
    session: Session,
    event_id: str,
    user_id: object,
    *,
    guest_token: str | None = None,
    catalog: PolicyCatalog | None = None,
) -> dict[str, Any]:
    """Return the event as the actor may see it, or raise ``NotFound``.

    Events the actor may not view are reported as missing.
    """
    event, facts = _load_facts(session, event_id, user_id, guest_token)
    catalog = catalog or active_catalog()
    if event is None or not evaluate(event, facts, Action.VIEW, catalog=catalog):
        raise NotFound(f"Event {event_id} not found")
    return {
        "event": event,
        "attendee_ids": sorted(visible_attendees(event, facts, catalog=catalog)),
        "attendee_count": event.attendee_count,
    }


def filter_visible_events(
    session: Session,
    events: Iterable[EventRecord],
    user_id: object,
    *,
    surface: Surface = Surface.DIRECT,
    guest_token: str | None = None,
    catalog: PolicyCatalog | None = None,
) -> list[EventRecord]:
    friend_ids = fetch_friend_ids(SqlFriendGraph(session), user_id)
    return filter_visible(
        events,
        user_id,
        friend_ids=friend_ids,
        surface=surface,
        catalog=catalog or active_catalog(),
        guest_event_id=_guest_event_id(session, guest_token),
    )


def discover_events(
    session: Session,
    user_id: object,
    options: DiscoveryOptions | None = None,
    *,
    text_query: str | None = None,
    limit: int | None = None,
    catalog: PolicyCatalog | None = None,
) -> list[EventRecord]:
    """Push the discovery predicate to storage, then re-check every result."""
    options = options or DiscoveryOptions()
    catalog = catalog or active_catalog()
    friend_ids = fetch_friend_ids(SqlFriendGraph(session), user_id)
    predicate = build_discovery_predicate(user_id, friend_ids, options, catalog=catalog)
    candidates = fetch_events(session, predicate, text_query=text_query, limit=limit)
    return filter_visible(
        candidates,
        user_id,
        friend_ids=friend_ids,
        surface=options.surface,
        catalog=catalog,
    )


def search_events(
    session: Session,
    user_id: object,
    query: str | None,
    options: DiscoveryOptions | None = None,
    *,
    catalog: PolicyCatalog | None = None,
) -> list[EventRecord]:
    options = replace(options or DiscoveryOptions(), surface=Surface.SEARCH)
    return discover_events(
        session,
        user_id,
        options,
        text_query=(query or "").strip() or None,
        catalog=catalog,
    )


def _attended_labels(session: Session, user_id: str) -> set[str]:
    """Categories and tags of every event the user attends or attended."""
    stmt = (
        select(Event.category, Event.tags)
        .join(EventMember, EventMember.event_id == Event.id)
        .where(EventMember.user_id == user_id, EventMember.role == "attendee")
    )
    labels: set[str] = set()
    for category, tags in session.execute(stmt):
        labels.update(label for label in (category, *(tags or ())) if label)
    return labels


def ranked_feed(
    session: Session,
    user_id: object,
    *,
    page: int = 1,
    per_page: int | None = None,
    cursor: str | None = None,
    now: datetime | None = None,
    weights: RankingWeights | None = None,
    catalog: PolicyCatalog | None = None,
) -> tuple[list[FeedCandidate], dict[str, Any]]:
    """Rank the upcoming events visible to ``user_id`` and return one page.

    The whole candidate set is scored once; pages are cut from that snapshot.
    With ``cursor`` the page starts right after the cursor's position.
    """
    current = now or utcnow()
    per_page = per_page or settings.feed_per_page
    catalog = catalog or active_catalog()
    user = normalize_id(user_id)
    graph = SqlFriendGraph(session)
    friend_ids = fetch_friend_ids(graph, user)
    options = DiscoveryOptions(surface=Surface.FEED, upcoming_only=True, now=current)
    predicate = build_discovery_predicate(user, friend_ids, options, catalog=catalog)
    candidates = fetch_events(session, predicate, limit=settings.max_feed_candidates)
    events = filter_visible(
        candidates, user, friend_ids=friend_ids, surface=Surface.FEED, catalog=catalog
    )

    interests: list[str] = []
    if user is not None:
        account = session.get(User, user)
        interests = list(account.interests or []) if account is not None else []
        interests.extend(_attended_labels(session, user))
    context = FeedContext.build(
        friend_ids=friend_ids,
        attending_event_ids=[event.id for event in events if user in event.attendee_ids],
        following_ids=fetch_following_ids(graph, user),
        interests=interests,
        now=current,
    )
    ranked = rank_feed(
        events, user, context, weights=weights or RankingWeights.from_settings(settings)
    )

    if cursor:
        remaining = candidates_after(ranked, cursor)
        items = remaining[:per_page]
        has_next = len(remaining) > per_page
        pagination = {
            "per_page": per_page,
            "total_events": len(ranked),
            "has_next": has_next,
            "next_cursor": encode_cursor(items[-1]) if items and has_next else None,
        }
        return items, pagination
    return paginate_candidates(ranked, page=page, per_page=per_page)


def profile_events(
    session: Session,
    owner_id: str,
    viewer_id: object,
    *,
    include_past: bool = False,
    now: datetime | None = None,
    catalog: PolicyCatalog | None = None,
) -> list[EventRecord]:
    """Events ``owner_id`` hosts, co-hosts or attends, as ``viewer_id`` may see them."""
    owner = normalize_id(owner_id)
    if owner is None or session.get(User, owner) is None:
        raise NotFound(f"User {owner_id} not found")
    predicate = any_of(
        [
            Compare("host_id", "eq", owner),
            Contains("co_host_ids", owner),
            Contains("attendee_ids", owner),
        ]
    )
    if not include_past:
        predicate = all_of(predicate, Compare("start_time", "gte", now or utcnow()))
    events = fetch_events(session, predicate)
    return filter_visible_events(
        session, events, viewer_id, surface=Surface.DIRECT, catalog=catalog
    )


def require_permission(
    session: Session,
    event_id: str,
    user_id: object,
    action: object,
    *,
    catalog: PolicyCatalog | None = None,
) -> EventRecord:
    """Re-check ``action`` against current state; raise ``AccessDenied`` if refused."""
    event, facts = _load_facts(session, event_id, user_id, None)
    if event is None:
        raise NotFound(f"Event {event_id} not found")
    if not evaluate(event, facts, action, catalog=catalog or active_catalog()):
        raise AccessDenied(str(action), event_id)
    return event
