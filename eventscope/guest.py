"""Signed guest passes granting view access to a single event."""

from __future__ import annotations

import hashlib
import hmac
import logging
import secrets
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta

import jwt
from sqlalchemy import select
from sqlalchemy.orm import Session

from .config import settings
from .domain import derive_actor_facts
from .errors import AccessDenied, NotFound
from .graph import SqlFriendGraph, fetch_friend_ids
from .models import GuestPass
from .permissions import can_invite
from .policy import DEFAULT_CATALOG, PolicyCatalog
from .storage import load_event
from .utils import ensure_aware, normalize_id, utcnow

logger = logging.getLogger("uvicorn.error")

ALGORITHM = "HS256"
ACTIVE_STATUSES = ("pending", "confirmed", "used")
REQUIRED_CLAIMS = ("pid", "eid", "nonce", "exp")


@dataclass(frozen=True)
class GuestGrant:
    event_id: str
    guest_identity: str
    pass_id: str


def hash_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def issue_guest_pass(
    session: Session,
    event_id: str,
    issuer_id: str,
    guest_name: str,
    *,
    ttl_hours: int | None = None,
    secret: str | None = None,
    catalog: PolicyCatalog = DEFAULT_CATALOG,
    now: datetime | None = None,
) -> tuple[GuestPass, str]:
    """Create a guest pass and return it with its signed token.

    Only actors who may invite to the event (checked against its current
    state) can issue passes. The token itself is never stored, only its hash.
    """
    name = (guest_name or "").strip()
    if not name:
        raise ValueError("Guest name is required")
    event = load_event(session, event_id)
    if event is None:
        raise NotFound(f"Event {event_id} not found")
    friend_ids = fetch_friend_ids(SqlFriendGraph(session), issuer_id)
    facts = derive_actor_facts(event, issuer_id, friend_ids=friend_ids)
    if not can_invite(event, facts, catalog=catalog):
        raise AccessDenied("issue guest passes", event_id)

    issued_at = now or utcnow()
    hours = ttl_hours if ttl_hours is not None else settings.guest_pass_ttl_hours
    expires_at = issued_at + timedelta(hours=hours)
    pass_id = str(uuid.uuid4())
    nonce = secrets.token_hex(16)
    token = jwt.encode(
        {
            "pid": pass_id,
            "eid": event.id,
            "nonce": nonce,
            "iat": ensure_aware(issued_at),
            "exp": ensure_aware(expires_at),
        },
        secret or settings.guest_token_secret,
        algorithm=ALGORITHM,
    )
    guest_pass = GuestPass(
        id=pass_id,
        event_id=event.id,
        created_by=normalize_id(issuer_id),
        guest_name=name,
        token_hash=hash_token(token),
        nonce=nonce,
        status="pending",
        expires_at=expires_at,
    )
    session.add(guest_pass)
    session.flush()
    logger.info("Issued guest pass %s for event %s", pass_id, event.id)
    return guest_pass, token


def validate_guest_token(
    session: Session,
    token: str | None,
    *,
    secret: str | None = None,
    now: datetime | None = None,
) -> GuestGrant | None:
    """Return the grant carried by ``token`` or ``None`` if it is not valid."""
    if not token:
        return None
    try:
        payload = jwt.decode(
            token,
            secret or settings.guest_token_secret,
            algorithms=[ALGORITHM],
            options={
                "verify_exp": False,
                "verify_iat": False,
                "require": list(REQUIRED_CLAIMS),
            },
        )
    except jwt.InvalidTokenError as exc:
        logger.warning("Rejected guest token: %s", exc)
        return None

    guest_pass = session.get(GuestPass, str(payload["pid"]))
    if guest_pass is None:
        return None
    if not hmac.compare_digest(guest_pass.token_hash, hash_token(token)):
        return None
    if not hmac.compare_digest(guest_pass.nonce, str(payload["nonce"])):
        return None
    if guest_pass.event_id != payload["eid"]:
        return None
    if guest_pass.status not in ACTIVE_STATUSES:
        return None

    current = now or utcnow()
    if (
        guest_pass.expires_at <= current
        or payload["exp"] <= ensure_aware(current).timestamp()
    ):
        guest_pass.status = "expired"
        session.flush()
        return None
    return GuestGrant(
        event_id=guest_pass.event_id,
        guest_identity=guest_pass.guest_name,
        pass_id=guest_pass.id,
    )


def cancel_guest_pass(
    session: Session,
    pass_id: str,
    actor_id: str,
    *,
    catalog: PolicyCatalog = DEFAULT_CATALOG,
) -> GuestPass:
    guest_pass = session.get(GuestPass, pass_id)
    if guest_pass is None:
        raise NotFound(f"Guest pass {pass_id} not found")
    actor = normalize_id(actor_id)
    if actor != guest_pass.created_by:
        event = load_event(session, guest_pass.event_id)
        if event is None:
            raise NotFound(f"Event {guest_pass.event_id} not found")
        facts = derive_actor_facts(event, actor, friend_ids=())
        if not facts.is_staff:
            raise AccessDenied("cancel guest passes", guest_pass.event_id)
    guest_pass.status = "cancelled"
    session.flush()
    return guest_pass


def expire_guest_passes(session: Session, now: datetime | None = None) -> int:
    """Mark every active pass past its expiry as expired."""
    current = now or utcnow()
    stale = session.scalars(
        select(GuestPass).where(
            GuestPass.status.in_(("pending", "confirmed")),
            GuestPass.expires_at <= current,
        )
    ).all()
    for guest_pass in stale:
        guest_pass.status = "expired"
    session.flush()
    if stale:
        logger.info("Expired %s guest passes", len(stale))
    return len(stale)
