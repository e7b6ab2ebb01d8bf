from __future__ import annotations

import pytest

from tests.utils import ACADEMY_PRO_LINK, SERIOUS_LINK, STARTER_LINK
from tiergate.core.tiers import (
    ADMIN_RANK,
    UNSATISFIABLE_RANK,
    get_tier_model,
    load_tier_model,
)


@pytest.fixture()
def model():
    return load_tier_model()


def test_rank_defaults_are_asymmetric(model):
    assert model.rank("starter") == 1
    assert model.rank("elite") == 3
    assert model.rank("admin") == ADMIN_RANK
    # held unknown tier grants nothing, required unknown tier is never satisfied
    assert model.rank("platinum") == 0
    assert model.rank(None) == 0
    assert model.required_rank("platinum") == UNSATISFIABLE_RANK
    assert model.required_rank(None) == UNSATISFIABLE_RANK
    assert not model.covers("admin", "platinum")


def test_covers_across_families(model):
    assert model.covers("serious", "starter")
    assert model.covers("academy_pro", "serious")
    assert not model.covers("academy_starter", "serious")
    assert model.covers("admin", "elite")
    assert not model.covers("guest", "starter")


def test_persistable_tiers(model):
    assert model.is_persistable_tier("guest")
    assert model.is_persistable_tier("academy_premium")
    assert not model.is_persistable_tier("admin")
    assert not model.is_persistable_tier("platinum")
    assert not model.is_persistable_tier(None)
    assert "guest" not in model.paid_tiers()
    assert "admin" not in model.paid_tiers()
    assert set(model.paid_tiers()) >= {"starter", "serious", "elite", "academy_pro"}


def test_highest_tier(model):
    assert model.highest_tier(["starter", None, "elite", "serious"]) == "elite"
    assert model.highest_tier([None, "guest", "platinum"]) is None


def test_tool_lookup(model):
    assert model.required_tier_for_tool("offer") == "starter"
    assert model.required_tier_for_tool("dealcheck") == "serious"
    assert model.required_tier_for_tool("commercial") == "elite"
    assert model.required_tier_for_tool("nope") is None
    assert model.tool_product_key("dealcheck") == "tool_dealcheck"
    assert model.tool_product_key("rehab") == "tool_rehabtracker"
    assert model.tool_product_key("investor_buy_box") == "internal_investor_buy_box"
    assert model.is_internal_tool("investor_buy_box")
    assert not model.is_known_tool("nope")


@pytest.mark.parametrize(
    ("path", "expected"),
    [
        ("/tools/dealcheck.html", "dealcheck"),
        ("/tools/offer.html?x=1", "offer"),
        ("https://site.test/tools/investorbuy-box.html", "investor_buy_box"),
        ("/tools/unknown.html", None),
        ("/tools/", None),
        ("/dashboard.html", None),
        ("", None),
        (None, None),
    ],
)
def test_tool_id_for_path(model, path, expected):
    assert model.tool_id_for_path(path) == expected


def test_payment_link_mapping(model):
    starter = model.product_for_payment_link(STARTER_LINK)
    assert starter is not None
    assert starter.product_key == "tier_starter"
    assert starter.tier == "starter"
    assert starter.expires_days == 30

    academy = model.product_for_payment_link(ACADEMY_PRO_LINK)
    assert academy is not None
    assert academy.tier == "academy_pro"
    assert academy.expires_days is None

    assert model.product_for_payment_link("UNKNOWN") is None
    assert model.product_for_payment_link(None) is None


def test_explicit_payment_link_entry(x1_model):
    product = x1_model.product_for_payment_link("X1")
    assert product is not None
    assert product.product_key == "tier_starter"
    assert product.tier == "starter"
    assert product.expires_days == 30


def test_product_keys(model):
    assert model.product_key_for_tier("serious") == "tier_serious"
    assert model.product_key_for_tier("guest") is None
    assert model.product_key_for_tier("admin") is None
    assert model.tier_for_product_key("tier_elite") == "elite"
    assert model.tier_for_product_key("tool_offer") is None

    assert model.is_known_product_key("tier_starter")
    assert model.is_known_product_key("tool_offer")
    assert model.is_known_product_key("tool_rehabtracker")
    assert model.is_known_product_key("feature_whitelabel")
    assert model.is_known_product_key("internal_investor_buy_box")
    assert not model.is_known_product_key("tier_admin")
    assert not model.is_known_product_key("tier_guest")
    assert not model.is_known_product_key("tool_rehab")
    assert not model.is_known_product_key("bogus")


def test_calculator_tiers(model):
    assert model.calculator_product_keys() == ["tier_elite", "tier_serious", "tier_starter"]
    assert model.expires_days_for_product_key("tier_serious") == 30
    assert model.expires_days_for_product_key("tier_academy_pro") is None
    assert model.expires_days_for_product_key("tool_offer") is None


def test_renewal_link(model):
    base = model.renewal_link_base
    assert model.renewal_link("serious") == f"{base}{SERIOUS_LINK}"
    # unknown tier falls back to the cheapest monthly tier
    assert model.renewal_link("platinum") == f"{base}{STARTER_LINK}"


def test_tier_model_is_immutable(model):
    with pytest.raises(TypeError):
        model.ranks["starter"] = 99  # type: ignore[index]
    with pytest.raises(AttributeError):
        model.calculator_entitlement_days = 1  # type: ignore[misc]


def test_get_tier_model_is_singleton():
    assert get_tier_model() is get_tier_model()
