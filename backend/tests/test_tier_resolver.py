from __future__ import annotations

import json
from datetime import timedelta

import jwt
import pytest

from tests.utils import make_profile
from tiergate import crud
from tiergate.core.config import settings
from tiergate.core.security import ALGORITHM, Identity, decode_identity
from tiergate.enums import Role, TierSource
from tiergate.models import Profile, TierOverride, utc_now
from tiergate.services.tier_cache import get_cached_tier, invalidate_tier_cache
from tiergate.services.tier_resolver import decide_effective_tier, resolve_effective_tier


def _profile(**kwargs) -> Profile:
    kwargs.setdefault("id", "u1")
    kwargs.setdefault("email", "u1@example.com")
    return Profile(**kwargs)


def _decide(identity=None, profile=None, override=None, **kwargs):
    return decide_effective_tier(
        identity=identity or Identity(id="u1"),
        profile=profile,
        override=override,
        now=kwargs.pop("now", utc_now()),
        **kwargs,
    )


# ------------------------------------------------------------------
# precedence
# ------------------------------------------------------------------


@pytest.mark.parametrize("status", [None, "active", "past_due", "canceled", "weird"])
def test_admin_beats_everything(status):
    now = utc_now()
    override = TierOverride(user_id="u1", override_tier="starter", expires_at=now + timedelta(days=1))
    profile = _profile(tier="guest", role=Role.admin, subscription_status=status)

    result = _decide(profile=profile, override=override, now=now)

    assert result.tier == "admin"
    assert result.source == TierSource.admin
    assert result.is_admin


def test_admin_from_identity_claim():
    result = _decide(identity=Identity(id="u1", role="admin"), profile=_profile(tier="starter"))
    assert result.tier == "admin"


def test_user_metadata_role_never_yields_admin():
    token = jwt.encode(
        {"sub": "u1", "user_metadata": {"role": "admin", "tier": "elite"}},
        settings.SECRET_KEY,
        algorithm=ALGORITHM,
    )
    identity = decode_identity(token)

    result = _decide(identity=identity, profile=_profile(tier=None))

    assert result.source != TierSource.admin
    assert result.tier == "guest"


def test_override_outranks_stored_tier_until_it_expires():
    now = utc_now()
    profile = _profile(tier="starter", subscription_status="active")
    override = TierOverride(user_id="u1", override_tier="elite", expires_at=now + timedelta(hours=1))

    active = _decide(profile=profile, override=override, now=now)
    assert (active.tier, active.source) == ("elite", TierSource.override)

    later = _decide(profile=profile, override=override, now=now + timedelta(hours=2))
    assert (later.tier, later.source) == ("starter", TierSource.subscription_active)


def test_override_beats_canceled_subscription():
    profile = _profile(tier="serious", subscription_status="canceled")
    override = TierOverride(user_id="u1", override_tier="serious", expires_at=None)
    assert _decide(profile=profile, override=override).tier == "serious"


def test_override_with_unknown_tier_is_ignored():
    profile = _profile(tier="starter")
    override = TierOverride(user_id="u1", override_tier="platinum")
    result = _decide(profile=profile, override=override)
    assert result.tier == "starter"
    assert result.source == TierSource.subscription_trial_or_null


# ------------------------------------------------------------------
# subscription status
# ------------------------------------------------------------------


def test_grace_period_boundary():
    now = utc_now()
    inside = _profile(tier="elite", subscription_status="past_due", grace_until=now + timedelta(hours=1))
    outside = _profile(tier="elite", subscription_status="past_due", grace_until=now - timedelta(hours=1))
    missing = _profile(tier="elite", subscription_status="past_due", grace_until=None)

    assert _decide(profile=inside, now=now).tier == "elite"
    assert _decide(profile=inside, now=now).source == TierSource.grace_period
    assert _decide(profile=outside, now=now).tier == "guest"
    assert _decide(profile=outside, now=now).source == TierSource.past_due_grace_exceeded
    assert _decide(profile=missing, now=now).tier == "guest"


@pytest.mark.parametrize(
    ("status", "tier", "source"),
    [
        ("active", "serious", TierSource.subscription_active),
        ("ACTIVE", "serious", TierSource.subscription_active),
        ("trial", "serious", TierSource.subscription_trial_or_null),
        (None, "serious", TierSource.subscription_trial_or_null),
        ("", "serious", TierSource.subscription_trial_or_null),
        ("canceled", "guest", TierSource.subscription_canceled),
        ("paused", "serious", TierSource.unknown_status_keep_access),
    ],
)
def test_subscription_status_branches(status, tier, source):
    result = _decide(profile=_profile(tier="serious", subscription_status=status))
    assert (result.tier, result.source) == (tier, source)


def test_stored_tier_falls_back_to_identity_claim_then_guest():
    claimed = _decide(identity=Identity(id="u1", tier="serious"), profile=_profile(tier=None))
    assert claimed.tier == "serious"

    nothing = _decide(profile=_profile(tier=None))
    assert nothing.tier == "guest"


def test_stored_admin_tier_is_not_trusted():
    result = _decide(profile=_profile(tier="admin", role=Role.user))
    assert result.tier == "guest"


def test_missing_profile_uses_default_branch():
    result = _decide(identity=Identity(id="u1"), profile=None)
    assert (result.tier, result.source) == ("guest", TierSource.default)


def test_profile_error_is_failsafe_guest():
    result = _decide(identity=Identity(id="u1", tier="elite"), profile=None, profile_error=True)
    assert (result.tier, result.source) == ("guest", TierSource.error_failsafe)


# ------------------------------------------------------------------
# store-backed resolution
# ------------------------------------------------------------------


def test_resolve_reads_latest_active_override(db):
    now = utc_now()
    make_profile(db, "u1", "u1@example.com", tier="starter", subscription_status="active")
    db.add(TierOverride(user_id="u1", override_tier="serious", created_at=now - timedelta(days=2)))
    db.add(TierOverride(user_id="u1", override_tier="elite", created_at=now - timedelta(days=1)))
    db.add(
        TierOverride(
            user_id="u1",
            override_tier="academy_pro",
            created_at=now,
            expires_at=now - timedelta(minutes=1),
        )
    )
    db.commit()

    result = resolve_effective_tier(db, Identity(id="u1"), now=now)

    assert (result.tier, result.source) == ("elite", TierSource.override)


def test_resolve_profile_read_failure(db, monkeypatch):
    def boom(**_):
        raise RuntimeError("store down")

    monkeypatch.setattr(crud, "get_profile", boom)
    result = resolve_effective_tier(db, Identity(id="u1", tier="elite"))
    assert (result.tier, result.source) == ("guest", TierSource.error_failsafe)


def test_resolve_override_read_failure_is_skipped(db, monkeypatch):
    make_profile(db, "u1", "u1@example.com", tier="serious")

    def boom(**_):
        raise RuntimeError("override table missing")

    monkeypatch.setattr(crud, "get_active_override", boom)
    result = resolve_effective_tier(db, Identity(id="u1"))
    assert result.tier == "serious"


def test_resolve_without_profile(db):
    result = resolve_effective_tier(db, Identity(id="ghost", tier="starter"))
    assert (result.tier, result.source) == ("starter", TierSource.default)


# ------------------------------------------------------------------
# UI cache
# ------------------------------------------------------------------


def test_cached_tier_hit_and_revalidate(db, fake_redis):
    make_profile(db, "u1", "u1@example.com", tier="starter")
    identity = Identity(id="u1")

    first, cached = get_cached_tier(db, identity)
    assert (first.tier, cached) == ("starter", False)
    assert json.loads(fake_redis.store["tiergate:effective_tier:u1"])["tier"] == "starter"

    second, cached = get_cached_tier(db, identity)
    assert (second.tier, second.source, cached) == ("starter", TierSource.cache, True)

    fresh, cached = get_cached_tier(db, identity, revalidate=True)
    assert (fresh.source, cached) == (TierSource.subscription_trial_or_null, False)

    invalidate_tier_cache("u1")
    assert "tiergate:effective_tier:u1" not in fake_redis.store


def test_cached_tier_survives_redis_failure(db, monkeypatch):
    class BrokenRedis:
        def get(self, *_):
            raise ConnectionError("redis down")

        def set(self, *_, **__):
            raise ConnectionError("redis down")

        def delete(self, *_):
            raise ConnectionError("redis down")

    monkeypatch.setattr("tiergate.services.tier_cache.get_redis", lambda: BrokenRedis())
    make_profile(db, "u1", "u1@example.com", tier="elite")

    result, cached = get_cached_tier(db, Identity(id="u1"))
    assert (result.tier, cached) == ("elite", False)
    invalidate_tier_cache("u1")


def test_malformed_cache_entry_is_ignored(db, fake_redis):
    make_profile(db, "u1", "u1@example.com", tier="serious")
    fake_redis.store["tiergate:effective_tier:u1"] = "not-json"

    result, cached = get_cached_tier(db, Identity(id="u1"))
    assert (result.tier, cached) == ("serious", False)
