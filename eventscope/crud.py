"""Write helpers for users, events, memberships and the social graph.

Every permission check here reloads the event inside the caller's session
right before mutating it, so a decision never rests on stale state.
"""

from __future__ import annotations

from collections.abc import Iterable
from datetime import datetime
from typing import Sequence

from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from .domain import EventActorFacts, EventRecord, derive_actor_facts
from .errors import AccessDenied, NotFound, PolicyConfigurationError
from .graph import SqlFriendGraph, fetch_friend_ids
from .models import Event, EventMember, Follow, FriendEdge, User
from .permissions import can_invite, can_join
from .policy import (
    DEFAULT_CATALOG,
    PERMISSION_DIMENSIONS,
    JoinPermission,
    PermissionBundle,
    PermissionOverrides,
    PolicyCatalog,
    PrivacyTier,
    is_narrowing,
    parse_enum,
    parse_tier,
)
from .storage import load_event
from .utils import id_set, normalize_id, to_naive_utc, utcnow

OVERRIDE_COLUMNS = {
    "can_view": "view_override",
    "can_join": "join_override",
    "can_share": "share_override",
    "can_invite": "invite_override",
    "appear_in_feed": "feed_override",
    "appear_in_search": "search_override",
    "show_attendees_to_public": "show_attendees_override",
}


def _now() -> datetime:
    return utcnow()


def get_user(session: Session, user_id: str) -> User:
    user = session.get(User, user_id)
    if user is None:
        raise NotFound(f"User {user_id} not found")
    return user


def get_user_by_username(session: Session, username: str) -> User | None:
    normalized = (username or "").strip().lower()
    if not normalized:
        return None
    return session.scalars(select(User).where(User.username == normalized)).first()


def create_user(
    session: Session,
    *,
    username: str,
    display_name: str | None = None,
    interests: Iterable[str] | None = None,
) -> User:
    normalized = (username or "").strip().lower()
    if not normalized:
        raise ValueError("Username is required")
    user = User(
        username=normalized,
        display_name=display_name,
        interests=sorted({item.strip().lower() for item in interests or () if item}),
    )
    session.add(user)
    session.flush()
    return user


def _validated_tier(raw: object) -> PrivacyTier:
    tier = parse_tier(raw)
    if tier is None:
        raise PolicyConfigurationError(f"Unknown privacy tier {raw!r}")
    return tier


def _validated_overrides(
    bundle: PermissionBundle, overrides: PermissionOverrides
) -> dict[str, object]:
    """Return column values for ``overrides``; reject unknown or widening ones."""
    values: dict[str, object] = {}
    for dimension, column in OVERRIDE_COLUMNS.items():
        raw = getattr(overrides, dimension)
        if raw is None:
            values[column] = None
            continue
        if dimension in PERMISSION_DIMENSIONS:
            member = parse_enum(PERMISSION_DIMENSIONS[dimension], raw)
            if member is None:
                raise PolicyConfigurationError(
                    f"Unknown {dimension} override {raw!r}"
                )
            raw = member.value
        elif not isinstance(raw, bool):
            raise PolicyConfigurationError(f"{dimension} override must be a boolean")
        if not is_narrowing(dimension, getattr(bundle, dimension), raw):
            raise PolicyConfigurationError(
                f"{dimension} override {raw!r} would widen the tier default"
            )
        values[column] = raw
    return values


def _actor_facts(
    session: Session, event_id: str, actor_id: str
) -> tuple[EventRecord, EventActorFacts]:
    event = load_event(session, event_id)
    if event is None:
        raise NotFound(f"Event {event_id} not found")
    friend_ids = fetch_friend_ids(SqlFriendGraph(session), actor_id)
    return event, derive_actor_facts(event, actor_id, friend_ids=friend_ids)


def _event_row(session: Session, event_id: str) -> Event:
    row = session.get(Event, event_id)
    if row is None:
        raise NotFound(f"Event {event_id} not found")
    return row


def _membership(session: Session, event_id: str, user_id: str) -> EventMember | None:
    stmt = select(EventMember).where(
        EventMember.event_id == event_id, EventMember.user_id == user_id
    )
    return session.scalars(stmt).first()


def create_event(
    session: Session,
    *,
    host_id: str,
    title: str,
    start_time: datetime | None,
    privacy_tier: str = PrivacyTier.PUBLIC.value,
    description: str | None = None,
    location: str | None = None,
    category: str | None = None,
    tags: Iterable[str] | None = None,
    overrides: PermissionOverrides | None = None,
    catalog: PolicyCatalog = DEFAULT_CATALOG,
) -> Event:
    """Create and persist a new event hosted by ``host_id``."""
    get_user(session, host_id)
    tier = _validated_tier(privacy_tier)
    override_values = _validated_overrides(
        catalog.resolve(tier), overrides or PermissionOverrides()
    )
    event = Event(
        host_id=host_id,
        privacy_tier=tier.value,
        title=title,
        description=description,
        location=location,
        category=(category or "").strip().lower() or None,
        tags=sorted({tag.strip().lower() for tag in tags or () if tag}),
        start_time=to_naive_utc(start_time),
        **override_values,
    )
    session.add(event)
    session.flush()
    return event


def change_privacy_tier(
    session: Session,
    event_id: str,
    actor_id: str,
    privacy_tier: str,
    *,
    catalog: PolicyCatalog = DEFAULT_CATALOG,
) -> Event:
    """Switch an event's tier; overrides that would widen the new tier are cleared."""
    tier = _validated_tier(privacy_tier)
    _, facts = _actor_facts(session, event_id, actor_id)
    if not facts.is_staff:
        raise AccessDenied("change the privacy tier", event_id)
    row = _event_row(session, event_id)
    bundle = catalog.resolve(tier)
    row.privacy_tier = tier.value
    for dimension, column in OVERRIDE_COLUMNS.items():
        value = getattr(row, column)
        if value is not None and not is_narrowing(
            dimension, getattr(bundle, dimension), value
        ):
            setattr(row, column, None)
    row.last_modified = _now()
    session.flush()
    return row


def set_overrides(
    session: Session,
    event_id: str,
    actor_id: str,
    overrides: PermissionOverrides,
    *,
    catalog: PolicyCatalog = DEFAULT_CATALOG,
) -> Event:
    """Replace the event's overrides; unset fields clear the override."""
    event, facts = _actor_facts(session, event_id, actor_id)
    if not facts.is_staff:
        raise AccessDenied("change permissions", event_id)
    values = _validated_overrides(catalog.resolve(_validated_tier(event.privacy_tier)), overrides)
    row = _event_row(session, event_id)
    for column, value in values.items():
        setattr(row, column, value)
    row.last_modified = _now()
    session.flush()
    return row


def add_co_host(session: Session, event_id: str, actor_id: str, user_id: str) -> EventMember:
    event, facts = _actor_facts(session, event_id, actor_id)
    if not facts.is_host:
        raise AccessDenied("add co-hosts", event_id)
    get_user(session, user_id)
    if user_id == event.host_id:
        raise ValueError("The host cannot also be a co-host")
    member = _membership(session, event_id, user_id)
    if member is None:
        member = EventMember(event_id=event_id, user_id=user_id, role="co_host")
        session.add(member)
    else:
        member.role = "co_host"
        member.updated_at = _now()
    session.flush()
    return member


def remove_co_host(session: Session, event_id: str, actor_id: str, user_id: str) -> None:
    _, facts = _actor_facts(session, event_id, actor_id)
    if not facts.is_host:
        raise AccessDenied("remove co-hosts", event_id)
    member = _membership(session, event_id, user_id)
    if member is None or member.role != "co_host":
        raise NotFound(f"User {user_id} is not a co-host of event {event_id}")
    session.delete(member)
    session.flush()


def join_event(
    session: Session,
    event_id: str,
    user_id: str,
    *,
    catalog: PolicyCatalog = DEFAULT_CATALOG,
) -> EventMember | None:
    """Join an event, or file a pending request when approval is required.

    Returns ``None`` for the host, who is implicitly part of the event.
    """
    event, facts = _actor_facts(session, event_id, user_id)
    if facts.is_host:
        return None
    member = _membership(session, event_id, user_id)
    if facts.is_participant:
        return member
    if not can_join(event, facts, catalog=catalog):
        raise AccessDenied("join", event_id)
    bundle = catalog.bundle_for(event)
    role = (
        "requested"
        if bundle.can_join == JoinPermission.APPROVAL_REQUIRED.value
        else "attendee"
    )
    if member is None:
        member = EventMember(event_id=event_id, user_id=user_id, role=role)
        session.add(member)
    else:
        member.role = role
        member.updated_at = _now()
    session.flush()
    return member


def approve_join_request(
    session: Session, event_id: str, actor_id: str, user_id: str
) -> EventMember:
    _, facts = _actor_facts(session, event_id, actor_id)
    if not facts.is_staff:
        raise AccessDenied("approve join requests", event_id)
    member = _membership(session, event_id, user_id)
    if member is None or member.role != "requested":
        raise NotFound(f"No pending join request from {user_id}")
    member.role = "attendee"
    member.updated_at = _now()
    session.flush()
    return member


def invite_users(
    session: Session,
    event_id: str,
    inviter_id: str,
    invitee_ids: Iterable[str],
    *,
    catalog: PolicyCatalog = DEFAULT_CATALOG,
) -> Sequence[EventMember]:
    """Invite users to an event.

    On friends-tier events every invitee must be an accepted friend of the
    inviter. Existing participants are skipped.
    """
    event = load_event(session, event_id)
    if event is None:
        raise NotFound(f"Event {event_id} not found")
    inviter_friends = fetch_friend_ids(SqlFriendGraph(session), inviter_id)
    facts = derive_actor_facts(event, inviter_id, friend_ids=inviter_friends)
    if not can_invite(event, facts, catalog=catalog):
        raise AccessDenied("invite", event_id)

    invitees = id_set(invitee_ids)
    if parse_tier(event.privacy_tier, exact=True) is PrivacyTier.FRIENDS:
        strangers = invitees - inviter_friends
        if strangers:
            raise AccessDenied("invite users who are not your friends", event_id)

    created: list[EventMember] = []
    for invitee in sorted(invitees):
        get_user(session, invitee)
        if invitee == event.host_id:
            continue
        member = _membership(session, event_id, invitee)
        if member is None:
            member = EventMember(
                event_id=event_id,
                user_id=invitee,
                role="invited",
                invited_by=normalize_id(inviter_id),
            )
            session.add(member)
        elif member.role == "requested":
            member.role = "invited"
            member.invited_by = normalize_id(inviter_id)
            member.updated_at = _now()
        else:
            continue
        created.append(member)
    session.flush()
    return created


def leave_event(session: Session, event_id: str, user_id: str) -> None:
    event = load_event(session, event_id)
    if event is None:
        raise NotFound(f"Event {event_id} not found")
    if event.host_id == user_id:
        raise ValueError("The host cannot leave their own event")
    member = _membership(session, event_id, user_id)
    if member is None:
        raise NotFound(f"User {user_id} is not part of event {event_id}")
    session.delete(member)
    session.flush()


def _friend_edge(session: Session, user_id: str, friend_id: str) -> FriendEdge | None:
    stmt = select(FriendEdge).where(
        FriendEdge.user_id == user_id, FriendEdge.friend_id == friend_id
    )
    return session.scalars(stmt).first()


def send_friend_request(session: Session, requester_id: str, target_id: str) -> FriendEdge:
    """Record a pending friendship as two directed records.

    If the target already asked the requester, both records become accepted.
    """
    if requester_id == target_id:
        raise ValueError("Users cannot befriend themselves")
    get_user(session, requester_id)
    get_user(session, target_id)
    outgoing = _friend_edge(session, requester_id, target_id)
    incoming = _friend_edge(session, target_id, requester_id)
    if outgoing is not None and incoming is not None:
        if outgoing.status == "pending" and outgoing.initiated_by == target_id:
            return accept_friend_request(session, requester_id, target_id)
        return outgoing
    if outgoing is None:
        outgoing = FriendEdge(
            user_id=requester_id, friend_id=target_id, initiated_by=requester_id
        )
        session.add(outgoing)
    if incoming is None:
        session.add(
            FriendEdge(
                user_id=target_id, friend_id=requester_id, initiated_by=requester_id
            )
        )
    outgoing.status = "pending"
    session.flush()
    return outgoing


def accept_friend_request(session: Session, user_id: str, requester_id: str) -> FriendEdge:
    """Accept ``requester_id``'s request; both directed records become accepted."""
    mine = _friend_edge(session, user_id, requester_id)
    theirs = _friend_edge(session, requester_id, user_id)
    if mine is None or theirs is None or mine.initiated_by != requester_id:
        raise NotFound(f"No friend request from {requester_id}")
    accepted_at = _now()
    for edge in (mine, theirs):
        edge.status = "accepted"
        edge.accepted_at = accepted_at
    session.flush()
    return mine


def remove_friend(session: Session, user_id: str, other_id: str) -> int:
    result = session.execute(
        delete(FriendEdge).where(
            ((FriendEdge.user_id == user_id) & (FriendEdge.friend_id == other_id))
            | ((FriendEdge.user_id == other_id) & (FriendEdge.friend_id == user_id))
        )
    )
    session.flush()
    return result.rowcount or 0


def follow_user(session: Session, follower_id: str, followee_id: str) -> Follow:
    if follower_id == followee_id:
        raise ValueError("Users cannot follow themselves")
    get_user(session, followee_id)
    existing = session.scalars(
        select(Follow).where(
            Follow.follower_id == follower_id, Follow.followee_id == followee_id
        )
    ).first()
    if existing is not None:
        return existing
    follow = Follow(follower_id=follower_id, followee_id=followee_id)
    session.add(follow)
    session.flush()
    return follow


def unfollow_user(session: Session, follower_id: str, followee_id: str) -> None:
    session.execute(
        delete(Follow).where(
            Follow.follower_id == follower_id, Follow.followee_id == followee_id
        )
    )
    session.flush()
