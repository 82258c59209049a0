"""Permission evaluator.

Each decision is a lookup in an immutable table keyed by permission value.
A value missing from the table is reported as a policy configuration defect
and denied. Host and co-host short-circuit every check.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from enum import StrEnum
from types import MappingProxyType

from .domain import EventActorFacts, EventRecord
from .policy import (
    DEFAULT_CATALOG,
    InvitePermission,
    JoinPermission,
    PermissionBundle,
    PolicyCatalog,
    PrivacyTier,
    SharePermission,
    ViewPermission,
    parse_enum,
    parse_tier,
    report_policy_defect,
)

logger = logging.getLogger("uvicorn.error")

Rule = Callable[[EventActorFacts], bool]


class Action(StrEnum):
    VIEW = "view"
    JOIN = "join"
    INVITE = "invite"
    SHARE = "share"


def _allow(facts: EventActorFacts) -> bool:
    return True


def _deny(facts: EventActorFacts) -> bool:
    return False


VIEW_RULES: Mapping[str, Rule] = MappingProxyType(
    {
        ViewPermission.ANYONE.value: _allow,
        ViewPermission.FOLLOWERS.value: lambda f: f.is_friend_of_host
        or f.is_guest_token_holder,
        ViewPermission.INVITEES.value: lambda f: f.is_invited or f.is_guest_token_holder,
        ViewPermission.HOST_ONLY.value: _deny,
    }
)

JOIN_RULES: Mapping[str, Rule] = MappingProxyType(
    {
        JoinPermission.ANYONE.value: _allow,
        JoinPermission.APPROVAL_REQUIRED.value: _allow,
        JoinPermission.FOLLOWERS.value: lambda f: f.is_friend_of_host,
        JoinPermission.INVITED.value: lambda f: f.is_invited,
    }
)

INVITE_RULES: Mapping[str, Rule] = MappingProxyType(
    {
        InvitePermission.ANYONE.value: _allow,
        InvitePermission.ATTENDEES.value: lambda f: f.is_attendee,
        InvitePermission.HOST_COHOST.value: _deny,
        InvitePermission.HOST_ONLY.value: _deny,
    }
)

SHARE_RULES: Mapping[str, Rule] = MappingProxyType(
    {
        SharePermission.ANYONE.value: _allow,
        SharePermission.ATTENDEES.value: lambda f: f.is_attendee,
        SharePermission.CO_HOSTS.value: _deny,
        SharePermission.HOST_ONLY.value: _deny,
    }
)


def _decide(
    table: Mapping[str, Rule],
    dimension: str,
    value: object,
    facts: EventActorFacts,
    event_id: str | None,
) -> bool:
    rule = table.get(value) if isinstance(value, str) else None
    if rule is None:
        report_policy_defect(
            "event %s has unknown %s value %r; denying", event_id, dimension, value
        )
        return False
    return rule(facts)


def _viewable(
    bundle: PermissionBundle,
    facts: EventActorFacts,
    event_id: str | None,
) -> bool:
    if facts.is_participant:
        return True
    return _decide(VIEW_RULES, "can_view", bundle.can_view, facts, event_id)


def can_view(
    event: EventRecord,
    facts: EventActorFacts,
    *,
    catalog: PolicyCatalog = DEFAULT_CATALOG,
) -> bool:
    """Host, co-host and attendees always see the event; others per the bundle."""
    if facts.is_participant:
        return True
    return _viewable(catalog.bundle_for(event), facts, event.id)


def can_join(
    event: EventRecord,
    facts: EventActorFacts,
    *,
    catalog: PolicyCatalog = DEFAULT_CATALOG,
) -> bool:
    """Return join eligibility; ``approval-required`` is eligible for any viewer."""
    if facts.is_staff:
        return True
    if not facts.has_account:
        return False
    member = facts.without_guest()
    bundle = catalog.bundle_for(event)
    if not _viewable(bundle, member, event.id):
        return False
    return _decide(JOIN_RULES, "can_join", bundle.can_join, member, event.id)


def can_invite(
    event: EventRecord,
    facts: EventActorFacts,
    *,
    catalog: PolicyCatalog = DEFAULT_CATALOG,
) -> bool:
    """Only the public tier lets non-staff invite, whatever the bundle says."""
    if facts.is_staff:
        return True
    if not facts.has_account:
        return False
    member = facts.without_guest()
    bundle = catalog.bundle_for(event)
    if parse_tier(event.privacy_tier, exact=True) is not PrivacyTier.PUBLIC:
        return False
    if not _viewable(bundle, member, event.id):
        return False
    return _decide(INVITE_RULES, "can_invite", bundle.can_invite, member, event.id)


def can_share(
    event: EventRecord,
    facts: EventActorFacts,
    *,
    catalog: PolicyCatalog = DEFAULT_CATALOG,
) -> bool:
    if facts.is_staff:
        return True
    if not facts.has_account:
        return False
    member = facts.without_guest()
    bundle = catalog.bundle_for(event)
    if not _viewable(bundle, member, event.id):
        return False
    return _decide(SHARE_RULES, "can_share", bundle.can_share, member, event.id)


def can_view_attendees(
    event: EventRecord,
    facts: EventActorFacts,
    *,
    catalog: PolicyCatalog = DEFAULT_CATALOG,
) -> bool:
    if facts.is_participant:
        return True
    bundle = catalog.bundle_for(event)
    if not _viewable(bundle, facts, event.id):
        return False
    return bundle.show_attendees_to_public


def can_view_photos(
    event: EventRecord,
    facts: EventActorFacts,
    *,
    catalog: PolicyCatalog = DEFAULT_CATALOG,
) -> bool:
    # Photos follow the event itself; guests only see them with view access.
    return can_view(event, facts, catalog=catalog)


EVALUATORS: Mapping[Action, Callable[..., bool]] = MappingProxyType(
    {
        Action.VIEW: can_view,
        Action.JOIN: can_join,
        Action.INVITE: can_invite,
        Action.SHARE: can_share,
    }
)


def evaluate(
    event: EventRecord,
    facts: EventActorFacts,
    action: object,
    *,
    catalog: PolicyCatalog = DEFAULT_CATALOG,
) -> bool:
    """Dispatch to the evaluator for ``action``; unknown actions are denied."""
    parsed = parse_enum(Action, action)
    if parsed is None:
        logger.warning("Unknown action %r on event %s; denying", action, event.id)
        return False
    return EVALUATORS[parsed](event, facts, catalog=catalog)
