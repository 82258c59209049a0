"""Development helpers for populating fake users, friendships and events."""

from __future__ import annotations

import random
from datetime import datetime, timedelta

from faker import Faker
from sqlalchemy import select
from sqlalchemy.orm import Session

from .crud import (
    accept_friend_request,
    add_co_host,
    create_event,
    create_user,
    follow_user,
    get_user_by_username,
    invite_users,
    send_friend_request,
)
from .database import get_session
from .graph import SqlFriendGraph
from .models import EventMember, User
from .policy import PermissionOverrides, PrivacyTier
from .storage import init_db
from .utils import utcnow

_event_types = [
    "Mixer",
    "Hangout",
    "Workshop",
    "Game Night",
    "Field Trip",
    "Meet & Greet",
    "Dinner",
    "Discussion",
]
_categories = ["music", "food", "sports", "tech", "art", "outdoors", "games"]
_tiers = [PrivacyTier.PUBLIC, PrivacyTier.PUBLIC, PrivacyTier.FRIENDS, PrivacyTier.PRIVATE]


def seed_fake_data(
    *,
    user_count: int = 20,
    event_count: int = 40,
    max_attendees: int = 8,
    friend_probability: float = 0.2,
    follow_probability: float = 0.1,
) -> dict[str, int]:
    """Populate the database with synthetic users, a social graph and events."""
    if user_count < 2:
        raise ValueError("user_count must be >= 2")
    if event_count < 0:
        raise ValueError("event_count must be >= 0")
    if max_attendees < 0:
        raise ValueError("max_attendees must be >= 0")
    if not 0 <= friend_probability <= 1 or not 0 <= follow_probability <= 1:
        raise ValueError("probabilities must be between 0 and 1")

    init_db()
    fake = Faker()
    stats = {"users": 0, "friendships": 0, "follows": 0, "events": 0, "members": 0}

    with get_session() as session:
        users = [_create_user(session, fake) for _ in range(user_count)]
        stats["users"] = len(users)

        for index, user in enumerate(users):
            for other in users[index + 1 :]:
                if random.random() < friend_probability:
                    send_friend_request(session, user.id, other.id)
                    accept_friend_request(session, other.id, user.id)
                    stats["friendships"] += 1
                elif random.random() < follow_probability:
                    follow_user(session, user.id, other.id)
                    stats["follows"] += 1

        for _ in range(event_count):
            stats["members"] += _create_event(session, fake, users, max_attendees)
            stats["events"] += 1

    return stats


def _create_user(session: Session, fake: Faker) -> User:
    for _ in range(20):
        username = fake.user_name()
        if get_user_by_username(session, username):
            continue
        return create_user(
            session,
            username=username,
            display_name=fake.name_nonbinary(),
            interests=random.sample(_categories, k=random.randint(0, 3)),
        )
    raise RuntimeError("Failed to create a unique username")


def _create_event(
    session: Session, fake: Faker, users: list[User], max_attendees: int
) -> int:
    host = random.choice(users)
    tier = random.choice(_tiers)
    overrides = None
    if tier is PrivacyTier.PUBLIC and random.random() < 0.1:
        overrides = PermissionOverrides(appear_in_feed=False)
    event = create_event(
        session,
        host_id=host.id,
        title=f"{fake.city()} {random.choice(_event_types)}",
        description="\n\n".join(fake.paragraphs(nb=2)),
        location=fake.address().replace("\n", ", "),
        category=random.choice(_categories),
        tags=fake.words(nb=random.randint(0, 3)),
        start_time=_random_start_time(),
        privacy_tier=tier.value,
        overrides=overrides,
    )
    others = [user for user in users if user.id != host.id]
    created = 0

    if others and random.random() < 0.3:
        add_co_host(session, event.id, host.id, random.choice(others).id)
        created += 1

    if tier is PrivacyTier.FRIENDS:
        friends = SqlFriendGraph(session).get_accepted_friends(host.id)
        pool = [user for user in others if user.id in friends]
    else:
        pool = others
    if tier is not PrivacyTier.PUBLIC and pool:
        invitees = random.sample(pool, k=random.randint(1, min(len(pool), 5)))
        created += len(invite_users(session, event.id, host.id, [u.id for u in invitees]))

    member_ids = set(
        session.scalars(
            select(EventMember.user_id).where(EventMember.event_id == event.id)
        ).all()
    )
    candidates = [user for user in pool if user.id not in member_ids]
    total = min(len(candidates), random.randint(0, max_attendees))
    for attendee in random.sample(candidates, k=total):
        session.add(EventMember(event_id=event.id, user_id=attendee.id, role="attendee"))
        created += 1
    session.flush()
    return created


def _random_start_time() -> datetime:
    day_offset = random.randint(-7, 60)
    minute_offset = random.randint(0, 23 * 60)
    return utcnow() + timedelta(days=day_offset, minutes=minute_offset)
