from __future__ import annotations

import logging

import pytest
from sqlalchemy.exc import OperationalError

from eventscope.crud import (
    accept_friend_request,
    create_user,
    follow_user,
    remove_friend,
    send_friend_request,
    unfollow_user,
)
from eventscope.errors import NotFound, UpstreamFetchError
from eventscope.graph import SqlFriendGraph, fetch_following_ids, fetch_friend_ids
from eventscope.models import FriendEdge


@pytest.fixture()
def people(session):
    users = {name: create_user(session, username=name) for name in ("ana", "bo", "cy")}
    session.commit()
    return {name: user.id for name, user in users.items()}


def test_friendship_requires_acceptance(session, people):
    graph = SqlFriendGraph(session)
    send_friend_request(session, people["ana"], people["bo"])

    assert graph.get_accepted_friends(people["ana"]) == frozenset()
    assert graph.get_pending_requests(people["bo"]) == frozenset({people["ana"]})
    assert graph.get_pending_requests(people["ana"]) == frozenset()

    accept_friend_request(session, people["bo"], people["ana"])
    assert graph.get_accepted_friends(people["ana"]) == frozenset({people["bo"]})
    assert graph.get_accepted_friends(people["bo"]) == frozenset({people["ana"]})
    assert graph.get_pending_requests(people["bo"]) == frozenset()


def test_crossing_requests_auto_accept(session, people):
    send_friend_request(session, people["ana"], people["cy"])
    send_friend_request(session, people["cy"], people["ana"])
    assert SqlFriendGraph(session).get_accepted_friends(people["cy"]) == frozenset(
        {people["ana"]}
    )


def test_only_the_target_can_accept(session, people):
    send_friend_request(session, people["ana"], people["bo"])
    with pytest.raises(NotFound):
        accept_friend_request(session, people["ana"], people["bo"])
    with pytest.raises(ValueError):
        send_friend_request(session, people["ana"], people["ana"])


def test_one_sided_edges_are_ignored(session, people, caplog):
    session.add(
        FriendEdge(
            user_id=people["ana"],
            friend_id=people["bo"],
            initiated_by=people["ana"],
            status="accepted",
        )
    )
    session.commit()
    with caplog.at_level(logging.WARNING, logger="uvicorn.error"):
        friends = SqlFriendGraph(session).get_accepted_friends(people["ana"])
    assert friends == frozenset()
    assert "Asymmetric friendship" in caplog.text


def test_remove_friend_deletes_both_edges(session, people):
    send_friend_request(session, people["ana"], people["bo"])
    accept_friend_request(session, people["bo"], people["ana"])
    assert remove_friend(session, people["bo"], people["ana"]) == 2
    assert SqlFriendGraph(session).get_accepted_friends(people["ana"]) == frozenset()


def test_follows(session, people):
    graph = SqlFriendGraph(session)
    first = follow_user(session, people["ana"], people["cy"])
    assert follow_user(session, people["ana"], people["cy"]).id == first.id
    follow_user(session, people["bo"], people["cy"])

    assert graph.get_following(people["ana"]) == frozenset({people["cy"]})
    assert graph.get_followers(people["cy"]) == frozenset({people["ana"], people["bo"]})

    unfollow_user(session, people["ana"], people["cy"])
    assert graph.get_following(people["ana"]) == frozenset()
    with pytest.raises(ValueError):
        follow_user(session, people["ana"], people["ana"])


class BrokenGraph:
    def get_accepted_friends(self, user_id):
        raise UpstreamFetchError("graph offline")

    def get_following(self, user_id):
        raise UpstreamFetchError("graph offline")

    def get_followers(self, user_id):
        raise UpstreamFetchError("graph offline")


def test_fetch_helpers_fail_closed(caplog):
    with caplog.at_level(logging.WARNING, logger="uvicorn.error"):
        assert fetch_friend_ids(BrokenGraph(), "ana") == frozenset()
        assert fetch_following_ids(BrokenGraph(), "ana") == frozenset()
    assert "treating as no friends" in caplog.text
    assert fetch_friend_ids(BrokenGraph(), None) == frozenset()


def test_sql_errors_are_wrapped(session, monkeypatch):
    def boom(*args, **kwargs):
        raise OperationalError("SELECT", {}, Exception("database is locked"))

    monkeypatch.setattr(session, "scalars", boom)
    graph = SqlFriendGraph(session)
    with pytest.raises(UpstreamFetchError):
        graph.get_accepted_friends("ana")
    with pytest.raises(UpstreamFetchError):
        graph.get_following("ana")
