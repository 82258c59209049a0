"""Storage-agnostic discovery predicates.

The builder turns the policy catalog into a disjunction of clauses that a
storage adapter can push down. ``matches`` is the in-memory reference
semantics every adapter has to agree with: ``ne`` and ``NotIn`` match missing
or null values, the way a document store treats absent fields.
"""

from __future__ import annotations

import operator
from collections.abc import Callable, Iterable, Iterator, Mapping
from dataclasses import dataclass, field
from datetime import datetime
from types import MappingProxyType
from typing import Any, Union

from .policy import (
    DEFAULT_CATALOG,
    PermissionBundle,
    PolicyCatalog,
    ViewPermission,
    parse_enum,
    stricter_values,
)
from .utils import id_set, normalize_id, to_naive_utc, utcnow
from .visibility import Surface

COMPARATORS: Mapping[str, Callable[[Any, Any], bool]] = MappingProxyType(
    {
        "eq": operator.eq,
        "ne": operator.ne,
        "gt": operator.gt,
        "gte": operator.ge,
        "lt": operator.lt,
        "lte": operator.le,
    }
)

# Fields holding id collections; membership is tested with ``Contains``.
COLLECTION_FIELDS = frozenset({"co_host_ids", "attendee_ids", "invited_ids", "tags"})


@dataclass(frozen=True)
class Compare:
    field: str
    op: str
    value: Any

    def __post_init__(self) -> None:
        if self.op not in COMPARATORS:
            raise ValueError(f"Unsupported comparison operator {self.op!r}")


@dataclass(frozen=True)
class In:
    field: str
    values: tuple[Any, ...]


@dataclass(frozen=True)
class NotIn:
    field: str
    values: tuple[Any, ...]


@dataclass(frozen=True)
class Contains:
    field: str
    value: Any

    def __post_init__(self) -> None:
        if self.field not in COLLECTION_FIELDS:
            raise ValueError(f"{self.field!r} is not a collection field")


@dataclass(frozen=True, init=False)
class And:
    children: tuple[Predicate, ...]

    def __init__(self, *children: Predicate) -> None:
        object.__setattr__(self, "children", tuple(children))


@dataclass(frozen=True, init=False)
class Or:
    children: tuple[Predicate, ...]

    def __init__(self, *children: Predicate) -> None:
        object.__setattr__(self, "children", tuple(children))


@dataclass(frozen=True)
class MatchNone:
    pass


MATCH_NONE = MatchNone()

Predicate = Union[Compare, In, NotIn, Contains, And, Or, MatchNone]


def all_of(*children: Predicate) -> Predicate:
    if any(isinstance(child, MatchNone) for child in children):
        return MATCH_NONE
    if len(children) == 1:
        return children[0]
    return And(*children)


def any_of(children: Iterable[Predicate]) -> Predicate:
    kept = [child for child in children if not isinstance(child, MatchNone)]
    if not kept:
        return MATCH_NONE
    if len(kept) == 1:
        return kept[0]
    return Or(*kept)


def matches(predicate: Predicate, document: Mapping[str, Any]) -> bool:
    """Evaluate ``predicate`` against a document produced by ``as_document``."""
    if isinstance(predicate, MatchNone):
        return False
    if isinstance(predicate, And):
        return all(matches(child, document) for child in predicate.children)
    if isinstance(predicate, Or):
        return any(matches(child, document) for child in predicate.children)
    if isinstance(predicate, Contains):
        return predicate.value in (document.get(predicate.field) or ())
    if isinstance(predicate, In):
        return document.get(predicate.field) in predicate.values
    if isinstance(predicate, NotIn):
        return document.get(predicate.field) not in predicate.values
    if isinstance(predicate, Compare):
        value = document.get(predicate.field)
        if predicate.op == "ne":
            return value != predicate.value
        if value is None:
            return False
        return COMPARATORS[predicate.op](value, predicate.value)
    raise TypeError(f"Unknown predicate node {predicate!r}")


@dataclass(frozen=True)
class DiscoveryOptions:
    surface: Surface = Surface.FEED
    upcoming_only: bool = False
    now: datetime | None = None
    categories: tuple[str, ...] = field(default_factory=tuple)

    def __post_init__(self) -> None:
        surface = parse_enum(Surface, self.surface)
        if surface not in (Surface.SEARCH, Surface.FEED):
            raise ValueError(f"Discovery runs on search or feed, not {self.surface!r}")
        object.__setattr__(self, "surface", surface)
        object.__setattr__(self, "categories", tuple(self.categories))

    @property
    def flag_field(self) -> str:
        return "search_override" if self.surface is Surface.SEARCH else "feed_override"

    def surfaced_by_default(self, bundle: PermissionBundle) -> bool:
        if self.surface is Surface.SEARCH:
            return bundle.appear_in_search
        return bundle.appear_in_feed


def _view_variants(default: str) -> Iterator[tuple[ViewPermission, Predicate]]:
    """Yield each effective view value an event of a tier can carry.

    The tier default applies unless a stricter override is stored; widening
    or unrecognised overrides leave the default in place (or deny), so the
    default clause stays a superset.
    """
    base = parse_enum(ViewPermission, default)
    if base is None:
        return
    stricter = stricter_values(ViewPermission, base)
    yield base, NotIn("view_override", tuple(value.value for value in stricter))
    for value in stricter:
        yield value, Compare("view_override", "eq", value.value)


def _audience(
    view: ViewPermission,
    user: str | None,
    friends: frozenset[str],
    surfaced: Predicate,
) -> Predicate:
    invited = Contains("invited_ids", user) if user else MATCH_NONE
    reachable = any_of([surfaced, invited])
    if view is ViewPermission.ANYONE:
        return reachable
    if view is ViewPermission.FOLLOWERS:
        if not friends:
            return MATCH_NONE
        return all_of(In("host_id", tuple(sorted(friends))), reachable)
    if view is ViewPermission.INVITEES:
        return invited
    return MATCH_NONE


def build_discovery_predicate(
    user_id: object,
    friend_ids: Iterable[object] | None,
    options: DiscoveryOptions | None = None,
    *,
    catalog: PolicyCatalog = DEFAULT_CATALOG,
) -> Predicate:
    """Build the predicate selecting every event ``user_id`` may discover.

    ``friend_ids`` of ``None`` means the friend set is unknown and is treated
    as empty. Anonymous users only get events surfaced to everyone.
    """
    options = options or DiscoveryOptions()
    user = normalize_id(user_id)
    friends = id_set(friend_ids) if user else frozenset()

    clauses: list[Predicate] = []
    for tier, bundle in catalog.items():
        surfaced: Predicate = MATCH_NONE
        if options.surfaced_by_default(bundle):
            surfaced = Compare(options.flag_field, "ne", False)
        for view, override_clause in _view_variants(bundle.can_view):
            audience = _audience(view, user, friends, surfaced)
            if isinstance(audience, MatchNone):
                continue
            clauses.append(
                all_of(Compare("privacy_tier", "eq", tier.value), override_clause, audience)
            )
    if user:
        clauses.extend(
            [
                Compare("host_id", "eq", user),
                Contains("co_host_ids", user),
                Contains("attendee_ids", user),
            ]
        )

    filters: list[Predicate] = []
    if options.upcoming_only:
        filters.append(Compare("start_time", "gte", to_naive_utc(options.now) or utcnow()))
    if options.categories:
        filters.append(In("category", options.categories))
    return all_of(any_of(clauses), *filters)
