from __future__ import annotations

import asyncio
import json
from datetime import timedelta
from urllib.parse import quote

import httpx
import jwt
import pytest
import redis
from fastapi import HTTPException
from sqlmodel import select

from tests.utils import STARTER_LINK, auth_headers, make_entitlement, make_profile
from tiergate import backend_pre_start
from tiergate.core import db as core_db
from tiergate.core.config import Settings, settings
from tiergate.core.security import (
    ALGORITHM,
    create_access_token,
    decode_identity,
    token_from_cookies,
)
from tiergate.enums import AuditAction, EntitlementStatus, Role
from tiergate.models import AuditLog, Entitlement, Profile, utc_now
from tiergate.services.notifier import (
    EmailMessage,
    LogNotifier,
    MockNotifier,
    ResendNotifier,
    get_notifier,
)
from tiergate.services.square_service import SquareService
from tiergate.worker import scheduler as worker_scheduler
from tiergate.worker import tasks as worker_tasks


def test_health_check(client):
    r = client.get("/api/v1/utils/health-check/")
    assert r.status_code == 200
    assert r.json() is True


def test_validation_error_handler(client):
    r = client.post(
        "/api/v1/members/claim",
        json={"email": ""},
        headers=auth_headers("u1", email="u1@example.com"),
    )
    assert r.status_code == 422
    body = r.json()
    assert body["code"] == 422000
    assert body["data"]["errors"]


def test_http_exception_handler_dict_branch():
    from tiergate import main as app_main

    exc = HTTPException(status_code=418, detail={"code": 418001, "message": "teapot"})
    resp = asyncio.run(app_main.http_error_handler(None, exc))  # type: ignore[arg-type]
    assert resp.status_code == 418
    assert json.loads(resp.body) == {"code": 418001, "message": "teapot", "data": None}


# ------------------------------------------------------------------
# identity
# ------------------------------------------------------------------


def test_decode_identity_claims():
    token = jwt.encode(
        {
            "sub": "u1",
            "email": "U1@Example.com",
            "user_metadata": {"role": "admin", "tier": "starter"},
            "app_metadata": {"tier": "elite"},
        },
        settings.SECRET_KEY,
        algorithm=ALGORITHM,
    )
    identity = decode_identity(token)
    assert identity is not None
    assert identity.id == "u1"
    assert identity.normalized_email == "u1@example.com"
    # user_metadata is writable by the user, only app_metadata counts
    assert identity.role is None
    assert identity.tier == "elite"


def test_decode_identity_ignores_user_metadata_only_claims():
    token = jwt.encode(
        {"sub": "u1", "user_metadata": {"role": "admin", "tier": "elite"}},
        settings.SECRET_KEY,
        algorithm=ALGORITHM,
    )
    identity = decode_identity(token)
    assert identity is not None
    assert identity.role is None
    assert identity.tier is None


def test_decode_identity_rejects_bad_tokens():
    assert decode_identity("not-a-jwt") is None
    no_sub = jwt.encode({"email": "x@example.com"}, settings.SECRET_KEY, algorithm=ALGORITHM)
    assert decode_identity(no_sub) is None
    wrong_key = jwt.encode({"sub": "u1"}, "another-secret-key-0123456789abcdef", algorithm=ALGORITHM)
    assert decode_identity(wrong_key) is None
    expired = create_access_token("u1", expires_delta=timedelta(seconds=-10))
    assert decode_identity(expired) is None


def test_token_from_cookies_variants():
    assert token_from_cookies({"sb-access-token": "tok"}) == "tok"
    assert token_from_cookies({"sb-ref-auth-token": json.dumps({"access_token": "a1"})}) == "a1"
    assert token_from_cookies({"sb-ref-auth-token": quote(json.dumps(["a2", "refresh"]))}) == "a2"
    assert token_from_cookies({"sb-ref-auth-token": "raw.jwt.value"}) == "raw.jwt.value"
    assert token_from_cookies({"other": "x"}) is None


# ------------------------------------------------------------------
# session hook / members
# ------------------------------------------------------------------


def test_session_hook_creates_profile_once(client, db, fake_redis):
    headers = auth_headers("u1", email="U1@Example.com")
    fake_redis.store["tiergate:effective_tier:u1"] = '{"tier": "elite", "source": "cache"}'

    r = client.post("/api/v1/auth/session", json={"redirect": "/tools/offer.html"}, headers=headers)

    assert r.status_code == 200
    assert r.json()["data"] == {
        "user_id": "u1",
        "profile_created": True,
        "redirect": "/tools/offer.html",
    }
    assert "tiergate:effective_tier:u1" not in fake_redis.store

    r = client.post("/api/v1/auth/session", json={"redirect": "https://evil.example.com"}, headers=headers)
    assert r.json()["data"]["profile_created"] is False
    assert r.json()["data"]["redirect"] == "/dashboard.html"

    db.expire_all()
    profile = db.get(Profile, "u1")
    assert profile.email == "u1@example.com"
    assert profile.tier is None
    assert profile.role == Role.user
    created = db.exec(
        select(AuditLog).where(AuditLog.action == AuditAction.profile_created.value)
    ).all()
    assert len(created) == 1


def test_session_hook_without_body(client):
    r = client.post("/api/v1/auth/session", headers=auth_headers("u1", email="u1@example.com"))
    assert r.status_code == 200
    assert r.json()["data"]["redirect"] == "/dashboard.html"


def test_logout_invalidates_cache(client, fake_redis):
    fake_redis.store["tiergate:effective_tier:u1"] = '{"tier": "elite", "source": "cache"}'
    r = client.post("/api/v1/auth/logout", headers=auth_headers("u1"))
    assert r.status_code == 200
    assert "tiergate:effective_tier:u1" not in fake_redis.store


def test_member_tier_is_cached(client, db):
    make_profile(db, "u1", "u1@example.com", tier="serious")
    headers = auth_headers("u1", email="u1@example.com")

    first = client.get("/api/v1/members/tier", headers=headers).json()["data"]
    second = client.get("/api/v1/members/tier", headers=headers).json()["data"]

    assert first == {"tier": "serious", "source": "subscription_trial_or_null", "cached": False}
    assert second == {"tier": "serious", "source": "cache", "cached": True}


def test_member_entitlements_summary(client, db):
    make_profile(db, "u1", "u1@example.com", tier="starter", subscription_status="active")
    make_entitlement(db, user_id="u1", product_key="tool_dealcheck", expires_in=timedelta(days=5))
    make_entitlement(
        db,
        user_id="u1",
        product_key="tool_commercial",
        status=EntitlementStatus.expired,
        expires_at=utc_now() - timedelta(days=1),
    )

    r = client.get("/api/v1/members/entitlements", headers=auth_headers("u1", email="u1@example.com"))

    assert r.status_code == 200
    data = r.json()["data"]
    assert data["tier"] == "starter"
    assert data["source"] == "subscription_active"
    assert data["subscription_status"] == "active"
    assert data["white_label"] is False
    assert data["permissions"]["offer"]["source"] == "tier"
    assert data["permissions"]["dealcheck"] == {
        "allowed": True,
        "source": "addon",
        "required_tier": "serious",
    }
    assert data["permissions"]["commercial"]["allowed"] is False
    assert [e["product_key"] for e in data["entitlements"]] == ["tool_dealcheck"]
    assert data["entitlements"][0]["status"] == "active"
    assert data["entitlements"][0]["source"] == "webhook"


# ------------------------------------------------------------------
# request-routing probe / gate
# ------------------------------------------------------------------


def test_probe_without_identity_is_denied(client):
    r = client.get("/api/v1/internal/verify-tool-access", params={"path": "/tools/offer.html"})
    assert r.status_code == 200
    assert r.json()["data"] == {
        "ok": False,
        "tool": "offer",
        "reason": "no_identity",
        "required_tier": None,
    }


def test_probe_ignores_user_metadata_claims(client, db):
    make_profile(db, "u1", "u1@example.com")
    token = jwt.encode(
        {"sub": "u1", "user_metadata": {"role": "admin", "tier": "elite"}},
        settings.SECRET_KEY,
        algorithm=ALGORITHM,
    )

    r = client.get(
        "/api/v1/internal/verify-tool-access",
        params={"path": "/tools/commercial.html"},
        headers={"Authorization": f"Bearer {token}"},
    )

    data = r.json()["data"]
    assert (data["ok"], data["reason"], data["required_tier"]) == (False, "insufficient_tier", "elite")


def test_probe_with_bearer(client, db):
    make_profile(db, "u1", "u1@example.com", tier="starter")
    headers = auth_headers("u1")

    ok = client.get(
        "/api/v1/internal/verify-tool-access", params={"path": "/tools/offer.html"}, headers=headers
    ).json()["data"]
    denied = client.get(
        "/api/v1/internal/verify-tool-access", params={"path": "/tools/dealcheck.html"}, headers=headers
    ).json()["data"]

    assert (ok["ok"], ok["reason"]) == (True, "tier")
    assert (denied["ok"], denied["reason"], denied["required_tier"]) == (
        False,
        "insufficient_tier",
        "serious",
    )


def test_probe_with_session_cookie(client, db):
    make_profile(db, "u1", "u1@example.com", tier="elite")
    cookie = quote(json.dumps({"access_token": create_access_token("u1")}))

    r = client.get(
        "/api/v1/internal/verify-tool-access",
        params={"path": "/tools/commercial.html"},
        headers={"Cookie": f"sb-ref-auth-token={cookie}"},
    )

    assert r.json()["data"]["ok"] is True
    assert r.json()["data"]["reason"] == "tier"


def test_probe_non_tool_path(client):
    r = client.get("/api/v1/internal/verify-tool-access", params={"path": "/pricing.html"})
    assert r.json()["data"]["ok"] is True
    assert r.json()["data"]["reason"] == "not_a_tool"


def test_gate_redirects_to_login(client):
    r = client.get(
        "/api/v1/internal/gate", params={"path": "/tools/offer.html"}, follow_redirects=False
    )
    assert r.status_code == 302
    assert r.headers["location"] == "/login.html?redirect=%2Ftools%2Foffer.html"


def test_gate_redirects_to_pricing(client, db):
    make_profile(db, "u1", "u1@example.com", tier="starter")
    r = client.get(
        "/api/v1/internal/gate",
        params={"path": "/tools/commercial.html"},
        headers=auth_headers("u1"),
        follow_redirects=False,
    )
    assert r.status_code == 302
    assert r.headers["location"] == "/pricing.html?tool=commercial&required=elite"


def test_gate_allows(client, db):
    make_profile(db, "u1", "u1@example.com", tier="elite")
    r = client.get(
        "/api/v1/internal/gate",
        params={"path": "/tools/commercial.html"},
        headers=auth_headers("u1"),
        follow_redirects=False,
    )
    assert r.status_code == 200
    assert r.json()["data"]["ok"] is True


# ------------------------------------------------------------------
# cron triggers / worker
# ------------------------------------------------------------------


def test_cron_requires_secret_when_configured(client, monkeypatch, notifier):
    monkeypatch.setattr(settings, "CRON_SECRET", "cron-secret")

    denied = client.get("/api/v1/cron/expiring-entitlements")
    wrong = client.get(
        "/api/v1/cron/expiring-entitlements", headers={"Authorization": "Bearer nope"}
    )
    near_misses = [
        client.get("/api/v1/cron/expiring-entitlements", headers={"Authorization": value})
        for value in ("cron-secret", "Bearer cron-secret-2", "Bearer cron-secre")
    ]
    allowed = client.post(
        "/api/v1/cron/expiring-entitlements", headers={"Authorization": "Bearer cron-secret"}
    )

    assert denied.status_code == 401
    assert wrong.status_code == 401
    assert [r.status_code for r in near_misses] == [401, 401, 401]
    assert allowed.status_code == 200
    assert allowed.json()["data"] == {"ok": True, "notified": {"7d": 0, "1d": 0}, "errors": 0}


def test_cron_subscription_renewal(client, db, notifier):
    make_profile(db, "u1", "u1@example.com", tier="elite")
    make_entitlement(
        db,
        user_id="u1",
        product_key="tier_elite",
        status=EntitlementStatus.expired,
        expires_at=utc_now() - timedelta(days=31),
    )

    r = client.get("/api/v1/cron/subscription-renewal")

    assert r.status_code == 200
    data = r.json()["data"]
    assert data["downgraded_count"] == 1
    assert data["renewal_emails_sent"] == 1
    assert notifier.sent_to("renewal") == ["u1@example.com"]


def test_cron_skips_while_locked(client, fake_redis, notifier):
    fake_redis.store["tiergate:cron:subscription_renewal:lock"] = "other-worker"

    r = client.get("/api/v1/cron/subscription-renewal")

    assert r.json()["data"] == {"ok": True, "skipped": True}
    assert fake_redis.store["tiergate:cron:subscription_renewal:lock"] == "other-worker"


def _redis_down(*_, **__):
    raise redis.ConnectionError("connection refused")


def test_cron_reports_lock_outage(client, db, fake_redis, monkeypatch, notifier):
    make_profile(db, "u1", "u1@example.com", tier="starter")
    make_entitlement(
        db, user_id="u1", product_key="tier_starter", expires_at=utc_now() - timedelta(days=1)
    )
    monkeypatch.setattr(fake_redis, "set", _redis_down)

    r = client.get("/api/v1/cron/subscription-renewal")

    assert r.status_code == 503
    assert r.json()["code"] == 503001
    assert notifier.sent_messages == []


def test_run_locked_raises_when_redis_is_down(fake_redis, monkeypatch, caplog):
    monkeypatch.setattr(fake_redis, "set", _redis_down)
    calls = []

    with pytest.raises(worker_tasks.LockUnavailableError):
        worker_tasks.run_locked("demo", lambda: calls.append(1))

    assert calls == []
    assert any(
        rec.levelname == "ERROR" and "lock unavailable" in rec.getMessage() for rec in caplog.records
    )


def test_run_locked_releases_lock(fake_redis):
    assert worker_tasks.run_locked("demo", lambda: 42) == 42
    assert "tiergate:cron:demo:lock" not in fake_redis.store

    def nested():
        return worker_tasks.run_locked("demo", lambda: "inner")

    assert worker_tasks.run_locked("demo", nested) is None
    assert fake_redis.store == {}


def test_worker_job_uses_own_session(engine, db, monkeypatch, notifier):
    monkeypatch.setattr(worker_tasks, "engine", engine)
    make_profile(db, "u1", "u1@example.com")
    row = make_entitlement(db, user_id="u1", product_key="tier_starter", expires_at=utc_now() - timedelta(hours=2))

    worker_tasks.downgrade_stale_subscriptions()
    worker_tasks.notify_expiring_entitlements()

    db.expire_all()
    assert db.get(Entitlement, row.id).status == EntitlementStatus.expired
    assert notifier.sent_to("access_expired") == ["u1@example.com"]


def test_scheduler_jobs():
    scheduler = worker_scheduler.build_scheduler()
    jobs = {job.id: job for job in scheduler.get_jobs()}
    assert set(jobs) == {"expiring_entitlements", "subscription_renewal"}
    assert jobs["expiring_entitlements"].func is worker_tasks.notify_expiring_entitlements
    assert jobs["subscription_renewal"].func is worker_tasks.downgrade_stale_subscriptions


# ------------------------------------------------------------------
# payment verification
# ------------------------------------------------------------------


def _square_handler(payment: dict, *, status: int = 200):
    def handler(request: httpx.Request) -> httpx.Response:
        path = request.url.path
        assert request.headers["Authorization"] == "Bearer sq-token"
        if path == "/v2/checkouts/chk_1":
            return httpx.Response(200, json={"checkout": {"order_id": "ord_1"}})
        if path == "/v2/orders/ord_1":
            return httpx.Response(
                200,
                json={"order": {"tenders": [{"payment_id": "pay_1"}], "source": {"name": STARTER_LINK}}},
            )
        if path == "/v2/payments/pay_1":
            return httpx.Response(status, json={"payment": payment})
        if path == "/v2/customers/cust_1":
            return httpx.Response(200, json={"customer": {"email_address": "Customer@Example.com"}})
        return httpx.Response(404, json={"errors": [{"code": "NOT_FOUND"}]})

    return handler


def _use_square(monkeypatch, handler) -> None:
    service = SquareService(
        access_token="sq-token",
        base_url="https://square.test",
        api_version="2023-10-18",
        transport=httpx.MockTransport(handler),
    )
    monkeypatch.setattr("tiergate.api.routes.payments.get_square_service", lambda: service)


def test_payment_verify_from_checkout(client, monkeypatch):
    payment = {
        "id": "pay_1",
        "order_id": "ord_1",
        "buyer_email_address": "Buyer@Example.com",
        "amount_money": {"amount": 2900, "currency": "USD"},
    }
    _use_square(monkeypatch, _square_handler(payment))

    r = client.get("/api/v1/payments/verify", params={"checkoutId": "chk_1"})

    assert r.status_code == 200
    assert r.json()["data"] == {
        "email": "buyer@example.com",
        "link_id": STARTER_LINK,
        "tier": "starter",
        "transaction_id": "pay_1",
        "amount": 2900,
        "currency": "USD",
    }


def test_payment_verify_email_from_customer(client, monkeypatch):
    payment = {"id": "pay_1", "customer_id": "cust_1", "metadata": {"link_id": "SOMETHING"}}
    _use_square(monkeypatch, _square_handler(payment))

    r = client.get("/api/v1/payments/verify", params={"transactionId": "pay_1"})

    data = r.json()["data"]
    assert data["email"] == "customer@example.com"
    assert data["link_id"] == "SOMETHING"
    assert data["tier"] is None


def test_payment_verify_without_email(client, monkeypatch):
    _use_square(monkeypatch, _square_handler({"id": "pay_1"}))
    r = client.get("/api/v1/payments/verify", params={"transactionId": "pay_1"})
    assert r.status_code == 400
    assert r.json()["code"] == 400021


def test_payment_verify_upstream_failure(client, monkeypatch):
    _use_square(monkeypatch, _square_handler({}, status=500))
    r = client.get("/api/v1/payments/verify", params={"transactionId": "pay_1"})
    assert r.status_code == 502
    assert r.json()["code"] == 502001


def test_payment_verify_unresolvable_checkout(client, monkeypatch):
    _use_square(monkeypatch, _square_handler({}))
    r = client.get("/api/v1/payments/verify", params={"checkoutId": "chk_missing"})
    assert r.status_code == 502


def test_payment_verify_requires_an_id(client):
    r = client.get("/api/v1/payments/verify")
    assert r.status_code == 400
    assert r.json()["code"] == 400001


def test_payment_verify_not_configured(client, monkeypatch):
    monkeypatch.setattr(settings, "SQUARE_ACCESS_TOKEN", None)
    r = client.get("/api/v1/payments/verify", params={"transactionId": "pay_1"})
    assert r.status_code == 500
    assert r.json()["code"] == 500001


# ------------------------------------------------------------------
# notifier
# ------------------------------------------------------------------


def test_resend_notifier_payload():
    captured: list[dict] = []

    def handler(request: httpx.Request) -> httpx.Response:
        assert request.headers["Authorization"] == "Bearer re_key"
        captured.append(json.loads(request.content))
        return httpx.Response(200, json={"id": "email_1"})

    notifier = ResendNotifier("re_key", "from@example.com", transport=httpx.MockTransport(handler))

    assert notifier.send_renewal("u@example.com", "starter", "https://pay.test/link")
    assert captured[0]["to"] == ["u@example.com"]
    assert captured[0]["from"] == "from@example.com"
    assert "https://pay.test/link" in captured[0]["html"]
    assert captured[0]["tags"] == [{"name": "category", "value": "renewal"}]


def test_resend_notifier_error_returns_false():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(422, json={"message": "invalid"})

    def broken(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectTimeout("timed out", request=request)

    assert not ResendNotifier("k", "f@example.com", transport=httpx.MockTransport(handler)).send_access_expired(
        "u@example.com", "tier_starter"
    )
    assert not ResendNotifier("k", "f@example.com", transport=httpx.MockTransport(broken)).send_expiry_reminder(
        "u@example.com", "tier_starter", 7
    )


def test_get_notifier_selection(monkeypatch):
    monkeypatch.setattr(settings, "RESEND_API_KEY", None)
    assert isinstance(get_notifier(), LogNotifier)
    monkeypatch.setattr(settings, "RESEND_API_KEY", "re_key")
    assert isinstance(get_notifier(), ResendNotifier)


def test_stub_and_mock_notifiers():
    assert LogNotifier().send(EmailMessage("u@example.com", "s", "<p>b</p>"))
    mock = MockNotifier(fail_for={"x@example.com"})
    assert mock.send_expiry_reminder("u@example.com", "tier_elite", 1)
    assert not mock.send_expiry_reminder("x@example.com", "tier_elite", 1)
    assert mock.sent_to("expiry_reminder") == ["u@example.com"]


# ------------------------------------------------------------------
# settings / scripts
# ------------------------------------------------------------------


def test_settings_reject_placeholder_secret_outside_local():
    with pytest.raises(ValueError):
        Settings(
            PROJECT_NAME="t",
            POSTGRES_SERVER="db",
            POSTGRES_USER="u",
            ENVIRONMENT="production",
            SECRET_KEY="changethis",
        )


def test_settings_warn_for_placeholder_secret_locally():
    with pytest.warns(UserWarning):
        Settings(PROJECT_NAME="t", POSTGRES_SERVER="db", POSTGRES_USER="u", CRON_SECRET="changethis")


def test_settings_computed_fields():
    s = Settings(
        PROJECT_NAME="t",
        POSTGRES_SERVER="db",
        POSTGRES_USER="u",
        SQUARE_ENVIRONMENT="sandbox",
        BACKEND_CORS_ORIGINS="http://a.test/, http://b.test",
    )
    assert s.square_api_base_url == "https://connect.squareupsandbox.com"
    assert s.all_cors_origins == ["http://a.test", "http://b.test"]
    assert str(s.SQLALCHEMY_DATABASE_URI).startswith("postgresql+psycopg://u")


def test_init_db_seeds_admin(db, monkeypatch):
    monkeypatch.setattr(settings, "FIRST_ADMIN_USER_ID", "admin-seed")
    monkeypatch.setattr(settings, "FIRST_ADMIN_EMAIL", "Admin@Example.com")

    core_db.init_db(db)
    core_db.init_db(db)

    profile = db.get(Profile, "admin-seed")
    assert profile.role == Role.admin
    assert profile.email == "admin@example.com"


def test_init_db_promotes_existing_profile(db, monkeypatch):
    make_profile(db, "u1", "u1@example.com")
    monkeypatch.setattr(settings, "FIRST_ADMIN_USER_ID", "u1")
    monkeypatch.setattr(settings, "FIRST_ADMIN_EMAIL", "u1@example.com")

    core_db.init_db(db)

    db.expire_all()
    assert db.get(Profile, "u1").role == Role.admin


def test_init_db_noop_without_config(db, monkeypatch):
    monkeypatch.setattr(settings, "FIRST_ADMIN_USER_ID", None)
    core_db.init_db(db)
    assert db.exec(select(Profile)).all() == []


def test_backend_pre_start(engine):
    backend_pre_start.init(engine)
