"""Database initialization and the event storage adapter."""

from __future__ import annotations

from typing import Any

from sqlalchemy import and_, exists, false, or_, select, true
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, selectinload

from .database import engine, get_session
from .domain import EventRecord
from .errors import UpstreamFetchError
from .models import Base, Event, EventMember, Meta
from .policy import PermissionOverrides
from .predicates import And, Compare, Contains, In, MatchNone, NotIn, Or, Predicate
from .utils import utcnow

SCHEMA_VERSION = "1"

COLUMNS: dict[str, Any] = {
    "id": Event.id,
    "host_id": Event.host_id,
    "privacy_tier": Event.privacy_tier,
    "view_override": Event.view_override,
    "feed_override": Event.feed_override,
    "search_override": Event.search_override,
    "start_time": Event.start_time,
    "category": Event.category,
}

MEMBER_FIELDS: dict[str, str] = {
    "co_host_ids": "co_host",
    "attendee_ids": "attendee",
    "invited_ids": "invited",
}


def init_db() -> None:
    Base.metadata.create_all(bind=engine)
    with get_session() as session:
        meta = session.get(Meta, "schema_version")
        if meta is None:
            session.add(Meta(key="schema_version", value=SCHEMA_VERSION))
        else:
            meta.value = SCHEMA_VERSION
            meta.updated_at = utcnow()


def _column(field: str):
    try:
        return COLUMNS[field]
    except KeyError:
        raise ValueError(f"Field {field!r} cannot be queried in storage") from None


def compile_predicate(predicate: Predicate):
    """Translate a discovery predicate into a SQLAlchemy clause over ``Event``."""
    if isinstance(predicate, MatchNone):
        return false()
    if isinstance(predicate, And):
        if not predicate.children:
            return true()
        return and_(*(compile_predicate(child) for child in predicate.children))
    if isinstance(predicate, Or):
        if not predicate.children:
            return false()
        return or_(*(compile_predicate(child) for child in predicate.children))
    if isinstance(predicate, Contains):
        role = MEMBER_FIELDS.get(predicate.field)
        if role is None:
            raise ValueError(f"Field {predicate.field!r} cannot be queried in storage")
        return exists().where(
            EventMember.event_id == Event.id,
            EventMember.user_id == predicate.value,
            EventMember.role == role,
        )
    if isinstance(predicate, In):
        return _column(predicate.field).in_(list(predicate.values))
    if isinstance(predicate, NotIn):
        column = _column(predicate.field)
        if not predicate.values:
            return true()
        return or_(column.is_(None), column.not_in(list(predicate.values)))
    if isinstance(predicate, Compare):
        column = _column(predicate.field)
        if predicate.op == "ne":
            return or_(column.is_(None), column != predicate.value)
        if predicate.value is None:
            return false()
        if predicate.op == "eq":
            return column == predicate.value
        if predicate.op == "gt":
            return column > predicate.value
        if predicate.op == "gte":
            return column >= predicate.value
        if predicate.op == "lt":
            return column < predicate.value
        return column <= predicate.value
    raise TypeError(f"Unknown predicate node {predicate!r}")


def to_record(event: Event) -> EventRecord:
    return EventRecord(
        id=event.id,
        host_id=event.host_id,
        privacy_tier=event.privacy_tier,
        title=event.title or "",
        description=event.description or "",
        location=event.location or "",
        co_host_ids=frozenset(event.member_ids("co_host")),
        attendee_ids=frozenset(event.member_ids("attendee")),
        invited_ids=frozenset(event.member_ids("invited")),
        requested_ids=frozenset(event.member_ids("requested")),
        overrides=PermissionOverrides(
            can_view=event.view_override,
            can_join=event.join_override,
            can_share=event.share_override,
            can_invite=event.invite_override,
            appear_in_feed=event.feed_override,
            appear_in_search=event.search_override,
            show_attendees_to_public=event.show_attendees_override,
        ),
        start_time=event.start_time,
        category=event.category,
        tags=tuple(event.tags or ()),
    )


def fetch_events(
    session: Session,
    predicate: Predicate,
    *,
    text_query: str | None = None,
    limit: int | None = None,
) -> list[EventRecord]:
    """Return events matching ``predicate`` (and ``text_query`` if given)."""
    stmt = (
        select(Event)
        .options(selectinload(Event.members))
        .where(compile_predicate(predicate))
        .order_by(Event.start_time.asc(), Event.id.asc())
    )
    if text_query:
        pattern = f"%{text_query.strip()}%"
        stmt = stmt.where(
            or_(
                Event.title.ilike(pattern),
                Event.description.ilike(pattern),
                Event.location.ilike(pattern),
            )
        )
    if limit is not None:
        stmt = stmt.limit(limit)
    try:
        rows = session.scalars(stmt).all()
    except SQLAlchemyError as exc:
        raise UpstreamFetchError("Could not load events from storage") from exc
    return [to_record(row) for row in rows]


def load_event(session: Session, event_id: str) -> EventRecord | None:
    """Load the current state of one event, or ``None`` if it does not exist."""
    try:
        row = session.scalars(
            select(Event)
            .options(selectinload(Event.members))
            .where(Event.id == event_id)
            .execution_options(populate_existing=True)
        ).first()
    except SQLAlchemyError as exc:
        raise UpstreamFetchError(f"Could not load event {event_id}") from exc
    return to_record(row) if row is not None else None


def load_events(session: Session, event_ids: list[str]) -> list[EventRecord]:
    if not event_ids:
        return []
    try:
        rows = session.scalars(
            select(Event)
            .options(selectinload(Event.members))
            .where(Event.id.in_(event_ids))
            .order_by(Event.start_time.asc(), Event.id.asc())
        ).all()
    except SQLAlchemyError as exc:
        raise UpstreamFetchError("Could not load events from storage") from exc
    return [to_record(row) for row in rows]
