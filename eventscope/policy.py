"""Privacy tiers, permission bundles and the policy catalog.

The catalog is the single source of truth for what each privacy tier allows.
The evaluator, the visibility filter, the discovery predicate builder and the
write path all receive the same :class:`PolicyCatalog` instance, which is
immutable and passed in explicitly so tests can substitute their own tables.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass, fields, replace
from enum import StrEnum
from types import MappingProxyType
from typing import Any, Protocol, TypeVar

from .errors import PolicyConfigurationError

logger = logging.getLogger("uvicorn.error")


class PrivacyTier(StrEnum):
    PUBLIC = "public"
    FRIENDS = "friends"
    PRIVATE = "private"


# Permission members are declared least restrictive first; override narrowing
# and the predicate builder both rely on that order.


class ViewPermission(StrEnum):
    ANYONE = "anyone"
    FOLLOWERS = "followers"
    INVITEES = "invitees"
    HOST_ONLY = "host-only"


class JoinPermission(StrEnum):
    ANYONE = "anyone"
    APPROVAL_REQUIRED = "approval-required"
    FOLLOWERS = "followers"
    INVITED = "invited"


class SharePermission(StrEnum):
    ANYONE = "anyone"
    ATTENDEES = "attendees"
    CO_HOSTS = "co-hosts"
    HOST_ONLY = "host-only"


class InvitePermission(StrEnum):
    ANYONE = "anyone"
    ATTENDEES = "attendees"
    HOST_COHOST = "host-cohost"
    HOST_ONLY = "host-only"


E = TypeVar("E", bound=StrEnum)

PERMISSION_DIMENSIONS: Mapping[str, type[StrEnum]] = MappingProxyType(
    {
        "can_view": ViewPermission,
        "can_join": JoinPermission,
        "can_share": SharePermission,
        "can_invite": InvitePermission,
    }
)
VISIBILITY_FLAGS = ("appear_in_feed", "appear_in_search", "show_attendees_to_public")


def parse_enum(enum_cls: type[E], raw: object, *, exact: bool = False) -> E | None:
    """Return the enum member for ``raw`` or ``None`` when it is not recognised.

    Input is trimmed and lowercased unless ``exact`` is set. Stored values are
    read exactly so every consumer, SQL included, sees the same spelling.
    """
    if isinstance(raw, enum_cls):
        return raw
    if not isinstance(raw, str):
        return None
    try:
        return enum_cls(raw if exact else raw.strip().lower())
    except ValueError:
        return None


def parse_tier(raw: object, *, exact: bool = False) -> PrivacyTier | None:
    return parse_enum(PrivacyTier, raw, exact=exact)


def restrictiveness(enum_cls: type[StrEnum], raw: object) -> int | None:
    member = parse_enum(enum_cls, raw)
    if member is None:
        return None
    return list(enum_cls).index(member)


def stricter_values(enum_cls: type[E], raw: object) -> tuple[E, ...]:
    """Return the members strictly more restrictive than ``raw``."""
    rank = restrictiveness(enum_cls, raw)
    if rank is None:
        return ()
    return tuple(list(enum_cls)[rank + 1 :])


def report_policy_defect(message: str, *args: object) -> None:
    """Log a policy configuration defect; callers deny after reporting."""
    logger.error(
        "%s: " + message, PolicyConfigurationError.__name__, *args
    )


@dataclass(frozen=True)
class PermissionBundle:
    """Permission values plus discovery flags attached to a privacy tier.

    Values are kept as plain strings so an unrecognised value reaches the
    evaluator intact and is denied there instead of being coerced.
    """

    can_view: str
    can_join: str
    can_share: str
    can_invite: str
    appear_in_feed: bool
    appear_in_search: bool
    show_attendees_to_public: bool


LOCKED_BUNDLE = PermissionBundle(
    can_view=ViewPermission.HOST_ONLY.value,
    can_join=JoinPermission.INVITED.value,
    can_share=SharePermission.HOST_ONLY.value,
    can_invite=InvitePermission.HOST_ONLY.value,
    appear_in_feed=False,
    appear_in_search=False,
    show_attendees_to_public=False,
)


@dataclass(frozen=True)
class PermissionOverrides:
    """Optional per-event adjustments; they may only narrow the tier default."""

    can_view: str | None = None
    can_join: str | None = None
    can_share: str | None = None
    can_invite: str | None = None
    appear_in_feed: bool | None = None
    appear_in_search: bool | None = None
    show_attendees_to_public: bool | None = None

    @property
    def is_empty(self) -> bool:
        return all(getattr(self, item.name) is None for item in fields(self))

    def as_dict(self) -> dict[str, Any]:
        return {
            item.name: getattr(self, item.name)
            for item in fields(self)
            if getattr(self, item.name) is not None
        }


NO_OVERRIDES = PermissionOverrides()


def is_narrowing(dimension: str, base: object, override: object) -> bool:
    """Return whether ``override`` is at least as restrictive as ``base``."""
    if dimension in VISIBILITY_FLAGS:
        return override is False or override == base
    enum_cls = PERMISSION_DIMENSIONS[dimension]
    base_rank = restrictiveness(enum_cls, base)
    new_rank = restrictiveness(enum_cls, override)
    if base_rank is None or new_rank is None:
        return False
    return new_rank >= base_rank


def apply_overrides(
    bundle: PermissionBundle,
    overrides: PermissionOverrides | None,
    *,
    event_id: str | None = None,
) -> PermissionBundle:
    """Return ``bundle`` narrowed by ``overrides``.

    Widening overrides are ignored and logged. Unrecognised override values
    are kept verbatim so every decision that reads them denies.
    """
    if overrides is None or overrides.is_empty:
        return bundle
    changes: dict[str, Any] = {}
    for dimension, enum_cls in PERMISSION_DIMENSIONS.items():
        override = getattr(overrides, dimension)
        if override is None:
            continue
        member = parse_enum(enum_cls, override, exact=True)
        if member is None:
            report_policy_defect(
                "event %s has unknown %s override %r", event_id, dimension, override
            )
            changes[dimension] = str(override)
            continue
        base = getattr(bundle, dimension)
        if restrictiveness(enum_cls, base) is None:
            continue
        if not is_narrowing(dimension, base, member):
            logger.warning(
                "Ignoring widening %s override %r on event %s (tier default %r)",
                dimension,
                member.value,
                event_id,
                base,
            )
            continue
        changes[dimension] = member.value
    for flag in VISIBILITY_FLAGS:
        override = getattr(overrides, flag)
        if override is None:
            continue
        if override is False:
            changes[flag] = False
        elif not getattr(bundle, flag):
            logger.warning(
                "Ignoring widening %s override on event %s", flag, event_id
            )
    return replace(bundle, **changes) if changes else bundle


class _HasPolicyFields(Protocol):
    id: str | None
    privacy_tier: str | None
    overrides: PermissionOverrides


class PolicyCatalog:
    """Immutable, total mapping from privacy tier to permission bundle."""

    __slots__ = ("_bundles",)

    def __init__(self, bundles: Mapping[PrivacyTier | str, PermissionBundle]) -> None:
        normalized: dict[PrivacyTier, PermissionBundle] = {}
        for raw_tier, bundle in bundles.items():
            tier = parse_tier(raw_tier)
            if tier is None:
                raise PolicyConfigurationError(f"Unknown privacy tier {raw_tier!r}")
            normalized[tier] = bundle
        missing = [tier.value for tier in PrivacyTier if tier not in normalized]
        if missing:
            raise PolicyConfigurationError(
                f"Policy catalog is missing tiers: {', '.join(missing)}"
            )
        self._bundles: Mapping[PrivacyTier, PermissionBundle] = MappingProxyType(
            normalized
        )

    def __repr__(self) -> str:
        return f"PolicyCatalog({dict(self._bundles)!r})"

    def items(self):
        return self._bundles.items()

    def resolve(self, tier: object) -> PermissionBundle:
        """Return the bundle for ``tier``; unknown tiers get the locked bundle."""
        parsed = parse_tier(tier, exact=True)
        if parsed is None:
            report_policy_defect("unknown privacy tier %r", tier)
            return LOCKED_BUNDLE
        return self._bundles[parsed]

    def bundle_for(self, event: _HasPolicyFields) -> PermissionBundle:
        """Return the effective bundle for an event: tier default plus overrides."""
        return apply_overrides(
            self.resolve(event.privacy_tier), event.overrides, event_id=event.id
        )

    def with_bundle(
        self, tier: PrivacyTier | str, bundle: PermissionBundle
    ) -> PolicyCatalog:
        parsed = parse_tier(tier)
        if parsed is None:
            raise PolicyConfigurationError(f"Unknown privacy tier {tier!r}")
        return PolicyCatalog({**self._bundles, parsed: bundle})


DEFAULT_CATALOG = PolicyCatalog(
    {
        PrivacyTier.PUBLIC: PermissionBundle(
            can_view=ViewPermission.ANYONE.value,
            can_join=JoinPermission.ANYONE.value,
            can_share=SharePermission.ATTENDEES.value,
            can_invite=InvitePermission.ANYONE.value,
            appear_in_feed=True,
            appear_in_search=True,
            show_attendees_to_public=True,
        ),
        PrivacyTier.FRIENDS: PermissionBundle(
            can_view=ViewPermission.FOLLOWERS.value,
            can_join=JoinPermission.FOLLOWERS.value,
            can_share=SharePermission.ATTENDEES.value,
            can_invite=InvitePermission.HOST_COHOST.value,
            appear_in_feed=True,
            appear_in_search=True,
            show_attendees_to_public=False,
        ),
        PrivacyTier.PRIVATE: PermissionBundle(
            can_view=ViewPermission.INVITEES.value,
            can_join=JoinPermission.INVITED.value,
            can_share=SharePermission.ATTENDEES.value,
            can_invite=InvitePermission.HOST_COHOST.value,
            appear_in_feed=False,
            appear_in_search=False,
            show_attendees_to_public=False,
        ),
    }
)


def _coerce_bundle_value(tier: str, key: str, value: Any) -> Any:
    if key in VISIBILITY_FLAGS:
        if not isinstance(value, bool):
            raise PolicyConfigurationError(
                f"policy.{tier}.{key} must be a boolean, got {value!r}"
            )
        return value
    enum_cls = PERMISSION_DIMENSIONS.get(key)
    if enum_cls is None:
        raise PolicyConfigurationError(f"Unknown policy key policy.{tier}.{key}")
    member = parse_enum(enum_cls, value)
    if member is None:
        raise PolicyConfigurationError(
            f"policy.{tier}.{key} has unknown value {value!r}"
        )
    return member.value


def catalog_from_mapping(
    raw: Mapping[str, Mapping[str, Any]] | None,
    *,
    base: PolicyCatalog = DEFAULT_CATALOG,
) -> PolicyCatalog:
    """Build a catalog from configuration tables layered over ``base``."""
    if not raw:
        return base
    bundles = dict(base.items())
    for raw_tier, values in raw.items():
        tier = parse_tier(raw_tier)
        if tier is None:
            raise PolicyConfigurationError(f"Unknown privacy tier {raw_tier!r}")
        if not isinstance(values, Mapping):
            raise PolicyConfigurationError(f"policy.{raw_tier} must be a table")
        changes = {
            key: _coerce_bundle_value(tier.value, key, value)
            for key, value in values.items()
        }
        bundles[tier] = replace(bundles[tier], **changes)
    return PolicyCatalog(bundles)
