"""Feed ranking.

Scores are a weighted sum of independent signals. Ranking is a pure function
of the candidate set, the context and ``now``; ``now`` is read once per call.
Ties break on earliest start time, then on event id, so the order is total
and keyset cursors over ``(score, start_time, id)`` stay stable.
"""

from __future__ import annotations

import base64
import binascii
import json
import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any

from .domain import EventRecord
from .policy import PrivacyTier, parse_tier
from .utils import id_set, normalize_id, to_naive_utc, utcnow

logger = logging.getLogger("uvicorn.error")

SECONDS_PER_DAY = 86400.0


@dataclass(frozen=True)
class RankingWeights:
    attending: float = 100.0
    friend_host: float = 60.0
    private_invited: float = 30.0
    friends_tier: float = 20.0
    per_attendee: float = 2.0
    attendee_cap: float = 20.0
    within_week: float = 15.0
    within_day: float = 25.0
    per_mutual_friend: float = 5.0
    distant_penalty: float = -10.0
    distant_after_days: int = 30
    followed_host: float = 10.0
    interest_match: float = 5.0
    interest_match_cap: int = 3

    @classmethod
    def from_settings(cls, settings) -> RankingWeights:
        return cls(
            attending=settings.weight_attending,
            friend_host=settings.weight_friend_host,
            private_invited=settings.weight_private_invited,
            friends_tier=settings.weight_friends_tier,
            per_attendee=settings.weight_per_attendee,
            attendee_cap=settings.attendee_score_cap,
            within_week=settings.weight_within_week,
            within_day=settings.weight_within_day,
            per_mutual_friend=settings.weight_per_mutual_friend,
            distant_penalty=settings.weight_distant_penalty,
            distant_after_days=settings.distant_after_days,
            followed_host=settings.weight_followed_host,
            interest_match=settings.weight_interest_match,
            interest_match_cap=settings.interest_match_cap,
        )


DEFAULT_WEIGHTS = RankingWeights()


@dataclass(frozen=True)
class FeedContext:
    """Per-user inputs to the scorer, fetched once at request start."""

    friend_ids: frozenset[str] = frozenset()
    attending_event_ids: frozenset[str] = frozenset()
    co_attendance: Mapping[str, int] | None = None
    following_ids: frozenset[str] = frozenset()
    interests: frozenset[str] = frozenset()
    now: datetime | None = None

    @classmethod
    def build(
        cls,
        *,
        friend_ids: Iterable[object] | None = None,
        attending_event_ids: Iterable[object] | None = None,
        co_attendance: Mapping[str, int] | None = None,
        following_ids: Iterable[object] | None = None,
        interests: Iterable[str] | None = None,
        now: datetime | None = None,
    ) -> FeedContext:
        return cls(
            friend_ids=id_set(friend_ids),
            attending_event_ids=id_set(attending_event_ids),
            co_attendance=dict(co_attendance) if co_attendance is not None else None,
            following_ids=id_set(following_ids),
            interests=frozenset(item.strip().lower() for item in interests or () if item),
            now=now,
        )


@dataclass(frozen=True)
class FeedCandidate:
    event: EventRecord
    score: float
    signals: Mapping[str, float] = field(default_factory=dict)

    @property
    def sort_key(self) -> tuple[float, datetime, str]:
        return (-self.score, self.event.start_time, self.event.id or "")


def _interest_matches(event: EventRecord, interests: frozenset[str]) -> int:
    if not interests:
        return 0
    labels = {label.strip().lower() for label in (event.category, *event.tags) if label}
    return len(labels & interests)


def score_event(
    event: EventRecord,
    user_id: object,
    context: FeedContext,
    now: datetime,
    weights: RankingWeights = DEFAULT_WEIGHTS,
) -> FeedCandidate:
    """Score one event for ``user_id``. ``event.start_time`` must be set."""
    user = normalize_id(user_id)
    tier = parse_tier(event.privacy_tier, exact=True)
    signals: dict[str, float] = {}

    attending = event.id in context.attending_event_ids or (
        user is not None and user in event.attendee_ids
    )
    if attending:
        signals["attending"] = weights.attending
    friend_host = event.host_id in context.friend_ids
    if friend_host:
        signals["friend_host"] = weights.friend_host
    elif event.host_id in context.following_ids:
        signals["followed_host"] = weights.followed_host
    if tier is PrivacyTier.PRIVATE and user is not None and (
        user in event.invited_ids or attending
    ):
        signals["private_invited"] = weights.private_invited
    if tier is PrivacyTier.FRIENDS:
        signals["friends_tier"] = weights.friends_tier
    if event.attendee_count:
        signals["popularity"] = min(
            event.attendee_count * weights.per_attendee, weights.attendee_cap
        )

    days_until = (event.start_time - now).total_seconds() / SECONDS_PER_DAY
    if 0 <= days_until <= 7:
        signals["within_week"] = weights.within_week
    if 0 <= days_until <= 1:
        signals["within_day"] = weights.within_day
    if days_until > weights.distant_after_days:
        signals["distant"] = weights.distant_penalty

    if context.co_attendance is not None:
        mutual = context.co_attendance.get(event.id or "", 0)
    else:
        mutual = len(event.attendee_ids & context.friend_ids)
    if mutual > 0:
        signals["mutual_friends"] = mutual * weights.per_mutual_friend

    matched = min(_interest_matches(event, context.interests), weights.interest_match_cap)
    if matched:
        signals["interest"] = matched * weights.interest_match

    return FeedCandidate(event=event, score=sum(signals.values()), signals=signals)


def rank_feed(
    events: Iterable[EventRecord],
    user_id: object,
    context: FeedContext,
    *,
    weights: RankingWeights = DEFAULT_WEIGHTS,
) -> list[FeedCandidate]:
    """Score and order ``events`` for ``user_id``, highest score first.

    Events without a usable start time are skipped with a warning.
    """
    now = to_naive_utc(context.now) or utcnow()
    candidates: list[FeedCandidate] = []
    for event in events:
        if not isinstance(event.start_time, datetime):
            logger.warning(
                "Skipping event %s in feed ranking: missing start time", event.id
            )
            continue
        if event.start_time.tzinfo is not None:
            event = replace(event, start_time=to_naive_utc(event.start_time))
        candidates.append(score_event(event, user_id, context, now, weights))
    candidates.sort(key=lambda candidate: candidate.sort_key)
    return candidates


def build_pagination(*, page: int, per_page: int, total_events: int) -> dict[str, Any]:
    total_pages = (
        max(1, (total_events + per_page - 1) // per_page) if total_events else 1
    )
    page = max(1, min(page, total_pages)) if total_events else 1
    return {
        "page": page,
        "per_page": per_page,
        "total_pages": total_pages,
        "total_events": total_events,
        "has_prev": page > 1,
        "has_next": page < total_pages and total_events > 0,
        "prev_page": page - 1 if page > 1 else None,
        "next_page": page + 1 if page < total_pages and total_events > 0 else None,
    }


def paginate_candidates(
    candidates: list[FeedCandidate], *, page: int = 1, per_page: int = 20
) -> tuple[list[FeedCandidate], dict[str, Any]]:
    """Slice an already ranked snapshot into a page plus pagination metadata."""
    if per_page < 1:
        raise ValueError("per_page must be positive")
    pagination = build_pagination(
        page=page, per_page=per_page, total_events=len(candidates)
    )
    offset = (pagination["page"] - 1) * per_page
    items = candidates[offset : offset + per_page]
    pagination["next_cursor"] = (
        encode_cursor(items[-1]) if items and pagination["has_next"] else None
    )
    return items, pagination


def encode_cursor(candidate: FeedCandidate) -> str:
    """Return an opaque cursor positioned just after ``candidate``."""
    payload = [
        candidate.score,
        candidate.event.start_time.isoformat(),
        candidate.event.id or "",
    ]
    raw = json.dumps(payload, separators=(",", ":")).encode("utf-8")
    return base64.urlsafe_b64encode(raw).decode("ascii")


def decode_cursor(cursor: str) -> tuple[float, datetime, str]:
    """Return the ``(-score, start_time, id)`` sort key a cursor points at."""
    try:
        raw = base64.urlsafe_b64decode(cursor.encode("ascii"))
        score, start, event_id = json.loads(raw)
        return (-float(score), to_naive_utc(datetime.fromisoformat(start)), str(event_id))
    except (binascii.Error, UnicodeError, TypeError, ValueError) as exc:
        raise ValueError("Invalid feed cursor") from exc


def candidates_after(
    candidates: list[FeedCandidate], cursor: str, *, limit: int | None = None
) -> list[FeedCandidate]:
    """Return the ranked candidates strictly after ``cursor``.

    Items whose key did not change since the cursor was issued are never
    repeated, even if other events were added or rescored in between.
    """
    key = decode_cursor(cursor)
    remaining = [candidate for candidate in candidates if candidate.sort_key > key]
    return remaining[:limit] if limit is not None else remaining
