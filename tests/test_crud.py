from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from eventscope import crud
from eventscope.errors import AccessDenied, NotFound, PolicyConfigurationError
from eventscope.models import Event
from eventscope.policy import PermissionOverrides
from eventscope.storage import load_event


def _users(session, *names):
    users = [crud.create_user(session, username=name) for name in names]
    return [user.id for user in users]


def _befriend(session, first, second):
    crud.send_friend_request(session, first, second)
    crud.accept_friend_request(session, second, first)


def test_create_user_normalizes_username(session):
    user = crud.create_user(
        session, username="  Alice ", interests=["Music", "music", " Food "]
    )
    assert user.username == "alice"
    assert user.interests == ["food", "music"]
    assert crud.get_user_by_username(session, "ALICE").id == user.id
    assert crud.get_user_by_username(session, "") is None
    with pytest.raises(ValueError):
        crud.create_user(session, username="   ")
    with pytest.raises(NotFound):
        crud.get_user(session, "missing")


def test_create_event_normalizes_fields(session):
    (host,) = _users(session, "host")
    start = datetime(2030, 5, 1, 18, 0, tzinfo=timezone(timedelta(hours=2)))
    event = crud.create_event(
        session,
        host_id=host,
        title="Jam session",
        start_time=start,
        privacy_tier=" Friends ",
        category=" Music ",
        tags=["Jazz", "jazz", "Live"],
    )
    assert event.privacy_tier == "friends"
    assert event.category == "music"
    assert event.tags == ["jazz", "live"]
    assert event.start_time == datetime(2030, 5, 1, 16, 0)


def test_create_event_rejects_bad_policy_input(session):
    (host,) = _users(session, "host")
    with pytest.raises(PolicyConfigurationError):
        crud.create_event(session, host_id=host, title="x", start_time=None, privacy_tier="secret")
    with pytest.raises(PolicyConfigurationError):
        crud.create_event(
            session,
            host_id=host,
            title="x",
            start_time=None,
            privacy_tier="private",
            overrides=PermissionOverrides(can_view="anyone"),
        )
    with pytest.raises(PolicyConfigurationError):
        crud.create_event(
            session,
            host_id=host,
            title="x",
            start_time=None,
            overrides=PermissionOverrides(can_join="whenever"),
        )
    with pytest.raises(PolicyConfigurationError):
        crud.create_event(
            session,
            host_id=host,
            title="x",
            start_time=None,
            privacy_tier="private",
            overrides=PermissionOverrides(appear_in_feed=True),
        )
    with pytest.raises(NotFound):
        crud.create_event(session, host_id="missing", title="x", start_time=None)


def test_tier_change_clears_widening_overrides(session):
    host, stranger = _users(session, "host", "stranger")
    event = crud.create_event(
        session,
        host_id=host,
        title="Picnic",
        start_time=None,
        overrides=PermissionOverrides(can_view="followers", can_join="approval-required"),
    )
    with pytest.raises(AccessDenied):
        crud.change_privacy_tier(session, event.id, stranger, "private")

    crud.change_privacy_tier(session, event.id, host, "private")
    row = session.get(Event, event.id)
    assert row.privacy_tier == "private"
    assert row.view_override is None
    assert row.join_override is None


def test_set_overrides_is_staff_only_and_narrowing(session):
    host, cohost, stranger = _users(session, "host", "cohost", "stranger")
    event = crud.create_event(session, host_id=host, title="Picnic", start_time=None)
    crud.add_co_host(session, event.id, host, cohost)

    with pytest.raises(AccessDenied):
        crud.set_overrides(session, event.id, stranger, PermissionOverrides(can_view="invitees"))
    crud.set_overrides(session, event.id, cohost, PermissionOverrides(appear_in_feed=False))
    assert load_event(session, event.id).overrides.appear_in_feed is False

    crud.set_overrides(session, event.id, host, PermissionOverrides())
    assert load_event(session, event.id).overrides.is_empty


def test_co_host_management(session):
    host, cohost, other = _users(session, "host", "cohost", "other")
    event = crud.create_event(session, host_id=host, title="Picnic", start_time=None)

    with pytest.raises(AccessDenied):
        crud.add_co_host(session, event.id, other, cohost)
    crud.add_co_host(session, event.id, host, cohost)
    assert load_event(session, event.id).co_host_ids == frozenset({cohost})

    with pytest.raises(AccessDenied):
        crud.add_co_host(session, event.id, cohost, other)
    with pytest.raises(ValueError):
        crud.add_co_host(session, event.id, host, host)

    crud.remove_co_host(session, event.id, host, cohost)
    assert load_event(session, event.id).co_host_ids == frozenset()
    with pytest.raises(NotFound):
        crud.remove_co_host(session, event.id, host, cohost)


def test_join_rules_follow_current_state(session):
    host, pal, stranger = _users(session, "host", "pal", "stranger")
    event = crud.create_event(
        session, host_id=host, title="Game night", start_time=None, privacy_tier="friends"
    )
    with pytest.raises(AccessDenied):
        crud.join_event(session, event.id, pal)

    _befriend(session, host, pal)
    member = crud.join_event(session, event.id, pal)
    assert member.role == "attendee"
    assert crud.join_event(session, event.id, pal).id == member.id
    assert crud.join_event(session, event.id, host) is None

    with pytest.raises(AccessDenied):
        crud.join_event(session, event.id, stranger)


def test_approval_required_files_a_request(session):
    host, guest = _users(session, "host", "guest")
    event = crud.create_event(
        session,
        host_id=host,
        title="Workshop",
        start_time=None,
        overrides=PermissionOverrides(can_join="approval-required"),
    )
    member = crud.join_event(session, event.id, guest)
    assert member.role == "requested"
    assert load_event(session, event.id).attendee_ids == frozenset()

    with pytest.raises(AccessDenied):
        crud.approve_join_request(session, event.id, guest, guest)
    crud.approve_join_request(session, event.id, host, guest)
    assert load_event(session, event.id).attendee_ids == frozenset({guest})


def test_public_attendees_may_invite(session):
    host, attendee, friend, outsider = _users(session, "host", "attendee", "friend", "outsider")
    event = crud.create_event(session, host_id=host, title="Open air", start_time=None)
    crud.join_event(session, event.id, attendee)

    created = crud.invite_users(session, event.id, attendee, [friend, host])
    assert [member.user_id for member in created] == [friend]
    assert created[0].invited_by == attendee
    assert crud.invite_users(session, event.id, attendee, [friend]) == []
    assert load_event(session, event.id).invited_ids == frozenset({friend})

    with pytest.raises(AccessDenied):
        crud.invite_users(session, event.id, None, [outsider])


def test_private_attendees_may_not_invite(session):
    host, attendee, friend = _users(session, "host", "attendee", "friend")
    event = crud.create_event(
        session, host_id=host, title="Dinner", start_time=None, privacy_tier="private"
    )
    crud.invite_users(session, event.id, host, [attendee])
    crud.join_event(session, event.id, attendee)
    assert load_event(session, event.id).attendee_ids == frozenset({attendee})

    with pytest.raises(AccessDenied):
        crud.invite_users(session, event.id, attendee, [friend])


def test_friends_tier_invitees_must_be_friends(session):
    host, pal, stranger = _users(session, "host", "pal", "stranger")
    _befriend(session, host, pal)
    event = crud.create_event(
        session, host_id=host, title="BBQ", start_time=None, privacy_tier="friends"
    )
    with pytest.raises(AccessDenied):
        crud.invite_users(session, event.id, host, [pal, stranger])
    created = crud.invite_users(session, event.id, host, [pal])
    assert [member.user_id for member in created] == [pal]


def test_invitation_upgrades_pending_request(session):
    host, guest = _users(session, "host", "guest")
    event = crud.create_event(
        session,
        host_id=host,
        title="Workshop",
        start_time=None,
        overrides=PermissionOverrides(can_join="approval-required"),
    )
    crud.join_event(session, event.id, guest)
    created = crud.invite_users(session, event.id, host, [guest])
    assert created[0].role == "invited"


def test_leave_event(session):
    host, guest = _users(session, "host", "guest")
    event = crud.create_event(session, host_id=host, title="Run", start_time=None)
    crud.join_event(session, event.id, guest)
    crud.leave_event(session, event.id, guest)
    assert load_event(session, event.id).attendee_ids == frozenset()

    with pytest.raises(NotFound):
        crud.leave_event(session, event.id, guest)
    with pytest.raises(ValueError):
        crud.leave_event(session, event.id, host)
