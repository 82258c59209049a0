from __future__ import annotations

import logging
from dataclasses import replace

import pytest

from eventscope.errors import PolicyConfigurationError
from eventscope.policy import (
    DEFAULT_CATALOG,
    LOCKED_BUNDLE,
    PermissionOverrides,
    PolicyCatalog,
    PrivacyTier,
    ViewPermission,
    apply_overrides,
    catalog_from_mapping,
    stricter_values,
)


def test_default_catalog_matches_tier_table():
    public = DEFAULT_CATALOG.resolve("public")
    friends = DEFAULT_CATALOG.resolve("friends")
    private = DEFAULT_CATALOG.resolve("private")

    assert (public.can_view, public.can_join, public.can_invite) == (
        "anyone",
        "anyone",
        "anyone",
    )
    assert public.appear_in_feed and public.appear_in_search
    assert public.show_attendees_to_public

    assert (friends.can_view, friends.can_join, friends.can_invite) == (
        "followers",
        "followers",
        "host-cohost",
    )
    assert friends.appear_in_feed and not friends.show_attendees_to_public

    assert (private.can_view, private.can_join) == ("invitees", "invited")
    assert not private.appear_in_feed
    assert not private.appear_in_search


def test_resolve_accepts_enum_and_loose_strings():
    assert DEFAULT_CATALOG.resolve(PrivacyTier.FRIENDS) is DEFAULT_CATALOG.resolve(
        " Friends "
    )


@pytest.mark.parametrize("tier", ["secret", "", None, 42])
def test_unknown_tier_resolves_to_locked_bundle(tier, caplog):
    with caplog.at_level(logging.ERROR, logger="uvicorn.error"):
        bundle = DEFAULT_CATALOG.resolve(tier)
    assert bundle == LOCKED_BUNDLE
    assert not bundle.appear_in_feed
    assert not bundle.appear_in_search
    assert "PolicyConfigurationError" in caplog.text


def test_catalog_must_cover_every_tier():
    partial = {PrivacyTier.PUBLIC: DEFAULT_CATALOG.resolve("public")}
    with pytest.raises(PolicyConfigurationError):
        PolicyCatalog(partial)


def test_catalog_rejects_unknown_tier_keys():
    bundles = dict(DEFAULT_CATALOG.items())
    bundles["secret"] = LOCKED_BUNDLE
    with pytest.raises(PolicyConfigurationError):
        PolicyCatalog(bundles)


def test_with_bundle_leaves_original_untouched():
    looser = replace(DEFAULT_CATALOG.resolve("friends"), can_invite="attendees")
    custom = DEFAULT_CATALOG.with_bundle("friends", looser)
    assert custom.resolve("friends").can_invite == "attendees"
    assert DEFAULT_CATALOG.resolve("friends").can_invite == "host-cohost"


def test_stricter_values_follow_declaration_order():
    assert stricter_values(ViewPermission, "followers") == (
        ViewPermission.INVITEES,
        ViewPermission.HOST_ONLY,
    )
    assert stricter_values(ViewPermission, "host-only") == ()
    assert stricter_values(ViewPermission, "bogus") == ()


def test_overrides_can_narrow():
    bundle = apply_overrides(
        DEFAULT_CATALOG.resolve("public"),
        PermissionOverrides(can_view="invitees", can_join="approval-required"),
    )
    assert bundle.can_view == "invitees"
    assert bundle.can_join == "approval-required"


def test_widening_overrides_are_ignored(caplog):
    base = DEFAULT_CATALOG.resolve("private")
    with caplog.at_level(logging.WARNING, logger="uvicorn.error"):
        bundle = apply_overrides(
            base,
            PermissionOverrides(can_view="anyone", appear_in_feed=True),
            event_id="evt-1",
        )
    assert bundle == base
    assert "widening" in caplog.text


def test_unknown_override_value_is_kept_for_the_evaluator(caplog):
    with caplog.at_level(logging.ERROR, logger="uvicorn.error"):
        bundle = apply_overrides(
            DEFAULT_CATALOG.resolve("public"), PermissionOverrides(can_view="everyone")
        )
    assert bundle.can_view == "everyone"
    assert "PolicyConfigurationError" in caplog.text


def test_boolean_overrides_only_switch_off():
    bundle = apply_overrides(
        DEFAULT_CATALOG.resolve("public"),
        PermissionOverrides(appear_in_feed=False, show_attendees_to_public=False),
    )
    assert bundle.appear_in_feed is False
    assert bundle.appear_in_search is True
    assert bundle.show_attendees_to_public is False


def test_empty_overrides_return_same_bundle():
    base = DEFAULT_CATALOG.resolve("friends")
    assert apply_overrides(base, PermissionOverrides()) is base
    assert apply_overrides(base, None) is base


def test_catalog_from_mapping_layers_over_defaults():
    catalog = catalog_from_mapping(
        {"friends": {"can_invite": "attendees", "appear_in_search": False}}
    )
    assert catalog.resolve("friends").can_invite == "attendees"
    assert catalog.resolve("friends").appear_in_search is False
    assert catalog.resolve("public") == DEFAULT_CATALOG.resolve("public")


def test_catalog_from_empty_mapping_is_default():
    assert catalog_from_mapping({}) is DEFAULT_CATALOG
    assert catalog_from_mapping(None) is DEFAULT_CATALOG


@pytest.mark.parametrize(
    "raw",
    [
        {"secret": {"can_view": "anyone"}},
        {"public": {"can_view": "everyone"}},
        {"public": {"appear_in_feed": "yes"}},
        {"public": {"can_fly": "anyone"}},
        {"public": "anyone"},
    ],
)
def test_catalog_from_mapping_rejects_bad_configuration(raw):
    with pytest.raises(PolicyConfigurationError):
        catalog_from_mapping(raw)
