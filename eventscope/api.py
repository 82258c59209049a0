"""FastAPI application for EventScope."""

from __future__ import annotations

import logging
import tomllib
from contextlib import asynccontextmanager
from datetime import datetime
from importlib.metadata import PackageNotFoundError, version as pkg_version
from pathlib import Path
from typing import Any

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session
from starlette.exceptions import HTTPException as StarletteHTTPException

from .access import (
    active_catalog,
    discover_events,
    evaluate_permission,
    event_detail,
    permission_summary,
    profile_events,
    ranked_feed,
    search_events,
)
from .config import settings
from .crud import (
    accept_friend_request,
    change_privacy_tier,
    create_event,
    create_user,
    invite_users,
    join_event,
    send_friend_request,
    set_overrides,
)
from .database import SessionLocal
from .domain import EventRecord
from .errors import (
    AccessDenied,
    InvalidActorState,
    NotFound,
    PolicyConfigurationError,
    UpstreamFetchError,
)
from .guest import issue_guest_pass
from .policy import PermissionOverrides
from .predicates import DiscoveryOptions
from .ranking import FeedCandidate
from .scheduler import start_scheduler, stop_scheduler
from .storage import init_db, load_event
from .utils import to_naive_utc
from .visibility import Surface

# Use uvicorn's error logger so messages get the level prefix in the default log
# format.
logger = logging.getLogger("uvicorn.error")


def _load_app_version() -> str:
    """Return the current package version, falling back to pyproject for dev runs."""
    try:
        return pkg_version("eventscope")
    except PackageNotFoundError:
        pyproject_path = Path(__file__).resolve().parent.parent / "pyproject.toml"
        if pyproject_path.exists():
            data = tomllib.loads(pyproject_path.read_text())
            project = data.get("project") or {}
            return str(project.get("version") or "dev")
    return "dev"


APP_VERSION = _load_app_version()


@asynccontextmanager
async def lifespan(_: FastAPI):
    init_db()
    if settings.enable_scheduler:
        start_scheduler()
    try:
        yield
    finally:
        stop_scheduler()


app = FastAPI(title="EventScope", version=APP_VERSION, lifespan=lifespan)


def get_db():
    db = SessionLocal()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def current_user_id(x_user_id: str | None = Header(None)) -> str | None:
    cleaned = (x_user_id or "").strip()
    return cleaned or None


def require_user_id(user_id: str | None = Depends(current_user_id)) -> str:
    if user_id is None:
        raise HTTPException(status_code=401, detail="Missing X-User-Id header")
    return user_id


def guest_token(
    x_guest_token: str | None = Header(None),
    token: str | None = Query(None, alias="guest_token"),
) -> str | None:
    return (x_guest_token or token or "").strip() or None


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse({"detail": exc.detail}, status_code=exc.status_code)


@app.exception_handler(AccessDenied)
async def access_denied_handler(request: Request, exc: AccessDenied):
    return JSONResponse({"detail": str(exc)}, status_code=403)


@app.exception_handler(NotFound)
async def not_found_handler(request: Request, exc: NotFound):
    return JSONResponse({"detail": str(exc)}, status_code=404)


@app.exception_handler(PolicyConfigurationError)
async def policy_error_handler(request: Request, exc: PolicyConfigurationError):
    return JSONResponse({"detail": str(exc)}, status_code=400)


@app.exception_handler(InvalidActorState)
async def invalid_state_handler(request: Request, exc: InvalidActorState):
    logger.error(
        "Malformed event state on %s %s: %s", request.method, request.url.path, exc
    )
    return JSONResponse({"detail": "Event data is inconsistent"}, status_code=500)


@app.exception_handler(UpstreamFetchError)
async def upstream_error_handler(request: Request, exc: UpstreamFetchError):
    logger.error(
        "Upstream fetch failed on %s %s: %s", request.method, request.url.path, exc
    )
    return JSONResponse(
        {"detail": "A required service is unavailable. Please try again."},
        status_code=503,
    )


@app.exception_handler(OperationalError)
async def operational_error_handler(request: Request, exc: OperationalError):
    raw = str(exc.orig) if getattr(exc, "orig", None) else str(exc)
    if "database is locked" in raw.lower():
        logger.error(
            "SQLite database is locked while handling %s %s",
            request.method,
            request.url.path,
        )
        return JSONResponse(
            {"detail": "The database is busy at the moment. Please try again."},
            status_code=503,
        )
    logger.error(
        "Operational database error on %s %s: %s",
        request.method,
        request.url.path,
        raw,
    )
    return JSONResponse({"detail": "We hit a database issue."}, status_code=500)


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    return JSONResponse({"detail": exc.errors()}, status_code=422)


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception):
    logger.exception(
        "Unhandled error while processing %s %s", request.method, request.url.path
    )
    return JSONResponse({"detail": "Internal server error"}, status_code=500)


class UserCreatePayload(BaseModel):
    username: str
    display_name: str | None = None
    interests: list[str] = Field(default_factory=list)


class OverridesPayload(BaseModel):
    can_view: str | None = None
    can_join: str | None = None
    can_share: str | None = None
    can_invite: str | None = None
    appear_in_feed: bool | None = None
    appear_in_search: bool | None = None
    show_attendees_to_public: bool | None = None

    def to_overrides(self) -> PermissionOverrides:
        return PermissionOverrides(**self.model_dump())


class EventCreatePayload(BaseModel):
    title: str
    start_time: datetime
    privacy_tier: str = "public"
    description: str | None = None
    location: str | None = None
    category: str | None = None
    tags: list[str] = Field(default_factory=list)
    overrides: OverridesPayload | None = None


class PrivacyPayload(BaseModel):
    privacy_tier: str


class InvitePayload(BaseModel):
    user_ids: list[str]


class GuestPassPayload(BaseModel):
    guest_name: str
    ttl_hours: int | None = Field(None, ge=1)


def _serialize_event(
    event: EventRecord, *, attendee_ids: list[str] | None = None
) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "id": event.id,
        "title": event.title,
        "description": event.description,
        "location": event.location,
        "host_id": event.host_id,
        "privacy_tier": event.privacy_tier,
        "start_time": event.start_time.isoformat() if event.start_time else None,
        "category": event.category,
        "tags": list(event.tags),
        "attendee_count": event.attendee_count,
    }
    if attendee_ids is not None:
        payload["attendee_ids"] = attendee_ids
    return payload


def _serialize_candidate(candidate: FeedCandidate) -> dict[str, Any]:
    return {
        "event": _serialize_event(candidate.event),
        "score": candidate.score,
        "signals": dict(candidate.signals),
    }


def _discovery_options(
    surface: Surface, *, upcoming: bool, category: list[str] | None
) -> DiscoveryOptions:
    return DiscoveryOptions(
        surface=surface,
        upcoming_only=upcoming,
        categories=tuple(item.strip().lower() for item in category or () if item),
    )


@app.post("/api/v1/users", status_code=201)
def api_create_user(payload: UserCreatePayload, db: Session = Depends(get_db)):
    try:
        user = create_user(
            db,
            username=payload.username,
            display_name=payload.display_name,
            interests=payload.interests,
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {"user": {"id": user.id, "username": user.username}}


@app.post("/api/v1/events", status_code=201)
def api_create_event(
    payload: EventCreatePayload,
    user_id: str = Depends(require_user_id),
    db: Session = Depends(get_db),
):
    event = create_event(
        db,
        host_id=user_id,
        title=payload.title,
        start_time=to_naive_utc(payload.start_time),
        privacy_tier=payload.privacy_tier,
        description=payload.description,
        location=payload.location,
        category=payload.category,
        tags=payload.tags,
        overrides=payload.overrides.to_overrides() if payload.overrides else None,
        catalog=active_catalog(),
    )
    record = load_event(db, event.id)
    return {"event": _serialize_event(record)}


@app.get("/api/v1/events/{event_id}")
def api_get_event(
    event_id: str,
    user_id: str | None = Depends(current_user_id),
    token: str | None = Depends(guest_token),
    db: Session = Depends(get_db),
):
    detail = event_detail(db, event_id, user_id, guest_token=token)
    return {
        "event": _serialize_event(detail["event"], attendee_ids=detail["attendee_ids"])
    }


@app.get("/api/v1/events/{event_id}/permissions")
def api_permission_summary(
    event_id: str,
    user_id: str | None = Depends(current_user_id),
    token: str | None = Depends(guest_token),
    db: Session = Depends(get_db),
):
    return {
        "event_id": event_id,
        "permissions": permission_summary(db, event_id, user_id, guest_token=token),
    }


@app.get("/api/v1/events/{event_id}/permissions/{action}")
def api_check_permission(
    event_id: str,
    action: str,
    user_id: str | None = Depends(current_user_id),
    token: str | None = Depends(guest_token),
    db: Session = Depends(get_db),
):
    allowed = evaluate_permission(db, event_id, user_id, action, guest_token=token)
    return {"event_id": event_id, "action": action, "allowed": allowed}


@app.post("/api/v1/events/{event_id}/privacy")
def api_change_privacy(
    event_id: str,
    payload: PrivacyPayload,
    user_id: str = Depends(require_user_id),
    db: Session = Depends(get_db),
):
    change_privacy_tier(
        db, event_id, user_id, payload.privacy_tier, catalog=active_catalog()
    )
    return {"event": _serialize_event(load_event(db, event_id))}


@app.put("/api/v1/events/{event_id}/overrides")
def api_set_overrides(
    event_id: str,
    payload: OverridesPayload,
    user_id: str = Depends(require_user_id),
    db: Session = Depends(get_db),
):
    set_overrides(db, event_id, user_id, payload.to_overrides(), catalog=active_catalog())
    record = load_event(db, event_id)
    return {"event_id": event_id, "overrides": record.overrides.as_dict()}


@app.post("/api/v1/events/{event_id}/join")
def api_join_event(
    event_id: str,
    user_id: str = Depends(require_user_id),
    db: Session = Depends(get_db),
):
    member = join_event(db, event_id, user_id, catalog=active_catalog())
    return {"event_id": event_id, "role": member.role if member else "host"}


@app.post("/api/v1/events/{event_id}/invitations", status_code=201)
def api_invite(
    event_id: str,
    payload: InvitePayload,
    user_id: str = Depends(require_user_id),
    db: Session = Depends(get_db),
):
    members = invite_users(db, event_id, user_id, payload.user_ids, catalog=active_catalog())
    return {"event_id": event_id, "invited": [member.user_id for member in members]}


@app.post("/api/v1/events/{event_id}/guest-passes", status_code=201)
def api_issue_guest_pass(
    event_id: str,
    payload: GuestPassPayload,
    user_id: str = Depends(require_user_id),
    db: Session = Depends(get_db),
):
    try:
        guest_pass, token = issue_guest_pass(
            db,
            event_id,
            user_id,
            payload.guest_name,
            ttl_hours=payload.ttl_hours,
            catalog=active_catalog(),
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {
        "guest_pass": {
            "id": guest_pass.id,
            "event_id": guest_pass.event_id,
            "guest_name": guest_pass.guest_name,
            "expires_at": guest_pass.expires_at.isoformat(),
        },
        "token": token,
    }


@app.get("/api/v1/discover")
def api_discover(
    category: list[str] | None = Query(None),
    upcoming: bool = Query(True),
    user_id: str | None = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    options = _discovery_options(Surface.FEED, upcoming=upcoming, category=category)
    events = discover_events(db, user_id, options)
    return {"events": [_serialize_event(event) for event in events]}


@app.get("/api/v1/search")
def api_search(
    q: str = Query("", max_length=200),
    category: list[str] | None = Query(None),
    upcoming: bool = Query(False),
    user_id: str | None = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    options = _discovery_options(Surface.SEARCH, upcoming=upcoming, category=category)
    events = search_events(db, user_id, q, options)
    return {"query": q, "events": [_serialize_event(event) for event in events]}


@app.get("/api/v1/feed")
def api_feed(
    page: int = Query(1, ge=1),
    per_page: int | None = Query(None, ge=1, le=100),
    cursor: str | None = Query(None),
    user_id: str | None = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    try:
        items, pagination = ranked_feed(
            db, user_id, page=page, per_page=per_page, cursor=cursor
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {
        "events": [_serialize_candidate(item) for item in items],
        "pagination": pagination,
    }


@app.get("/api/v1/users/{owner_id}/events")
def api_profile_events(
    owner_id: str,
    include_past: bool = Query(False),
    user_id: str | None = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    events = profile_events(db, owner_id, user_id, include_past=include_past)
    return {"events": [_serialize_event(event) for event in events]}


@app.post("/api/v1/friends/{other_id}/request", status_code=201)
def api_friend_request(
    other_id: str,
    user_id: str = Depends(require_user_id),
    db: Session = Depends(get_db),
):
    try:
        edge = send_friend_request(db, user_id, other_id)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {"user_id": user_id, "friend_id": other_id, "status": edge.status}


@app.post("/api/v1/friends/{other_id}/accept")
def api_friend_accept(
    other_id: str,
    user_id: str = Depends(require_user_id),
    db: Session = Depends(get_db),
):
    edge = accept_friend_request(db, user_id, other_id)
    return {"user_id": user_id, "friend_id": other_id, "status": edge.status}
