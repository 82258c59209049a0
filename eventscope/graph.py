"""Friend and follow graph accessors."""

from __future__ import annotations

import logging
from typing import Protocol

from sqlalchemy import or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .errors import UpstreamFetchError
from .models import Follow, FriendEdge
from .utils import normalize_id

logger = logging.getLogger("uvicorn.error")


class FriendGraph(Protocol):
    def get_accepted_friends(self, user_id: str) -> frozenset[str]: ...

    def get_following(self, user_id: str) -> frozenset[str]: ...

    def get_followers(self, user_id: str) -> frozenset[str]: ...


class SqlFriendGraph:
    """Read-only view of the friend and follow tables.

    Friendships are stored as two directed records. A friend is only counted
    when both records are accepted; a one-sided accepted record is reported
    and ignored.
    """

    def __init__(self, session: Session) -> None:
        self.session = session

    def get_accepted_friends(self, user_id: str) -> frozenset[str]:
        try:
            edges = self.session.scalars(
                select(FriendEdge).where(
                    FriendEdge.status == "accepted",
                    or_(FriendEdge.user_id == user_id, FriendEdge.friend_id == user_id),
                )
            ).all()
        except SQLAlchemyError as exc:
            raise UpstreamFetchError(f"Could not load friends of {user_id}") from exc

        outgoing = {edge.friend_id for edge in edges if edge.user_id == user_id}
        incoming = {edge.user_id for edge in edges if edge.friend_id == user_id}
        for other in sorted(outgoing ^ incoming):
            logger.warning(
                "Asymmetric friendship between %s and %s; ignoring", user_id, other
            )
        return frozenset(outgoing & incoming)

    def get_pending_requests(self, user_id: str) -> frozenset[str]:
        """Return users who asked ``user_id`` to be friends and await an answer."""
        try:
            rows = self.session.scalars(
                select(FriendEdge.initiated_by).where(
                    FriendEdge.user_id == user_id,
                    FriendEdge.status == "pending",
                    FriendEdge.initiated_by != user_id,
                )
            ).all()
        except SQLAlchemyError as exc:
            raise UpstreamFetchError(
                f"Could not load friend requests of {user_id}"
            ) from exc
        return frozenset(rows)

    def get_following(self, user_id: str) -> frozenset[str]:
        try:
            rows = self.session.scalars(
                select(Follow.followee_id).where(Follow.follower_id == user_id)
            ).all()
        except SQLAlchemyError as exc:
            raise UpstreamFetchError(f"Could not load follows of {user_id}") from exc
        return frozenset(rows)

    def get_followers(self, user_id: str) -> frozenset[str]:
        try:
            rows = self.session.scalars(
                select(Follow.follower_id).where(Follow.followee_id == user_id)
            ).all()
        except SQLAlchemyError as exc:
            raise UpstreamFetchError(f"Could not load followers of {user_id}") from exc
        return frozenset(rows)


def fetch_friend_ids(graph: FriendGraph, user_id: object) -> frozenset[str]:
    """Return the accepted friends of ``user_id``, or nobody if the fetch fails."""
    user = normalize_id(user_id)
    if user is None:
        return frozenset()
    try:
        return graph.get_accepted_friends(user)
    except UpstreamFetchError as exc:
        logger.warning("Friend lookup failed for %s; treating as no friends: %s", user, exc)
        return frozenset()


def fetch_following_ids(graph: FriendGraph, user_id: object) -> frozenset[str]:
    user = normalize_id(user_id)
    if user is None:
        return frozenset()
    try:
        return graph.get_following(user)
    except UpstreamFetchError as exc:
        logger.warning("Follow lookup failed for %s; ignoring follows: %s", user, exc)
        return frozenset()
