from __future__ import annotations

import json
from datetime import timedelta

from fastapi.testclient import TestClient
from sqlmodel import Session

from tiergate.core.config import settings
from tiergate.core.security import create_access_token
from tiergate.enums import EntitlementSource, EntitlementStatus, Role
from tiergate.models import Entitlement, Profile, utc_now
from tiergate.services.square_service import SIGNATURE_HEADER, compute_signature

STARTER_LINK = "5L6KRBG7XEBJWAM3QQTKTQRM"
SERIOUS_LINK = "7YCAILWUHUOSLA4AB4FDON63"
ELITE_LINK = "YY2K4SD2IEAQT7WT633D4ARV"
ACADEMY_PRO_LINK = "EZ5TGODGBBAHDZP6WY7JCFW7"


def auth_headers(user_id: str, email: str | None = None, role: str | None = None) -> dict[str, str]:
    token = create_access_token(user_id, email=email, role=role)
    return {"Authorization": f"Bearer {token}"}


def make_profile(
    db: Session,
    user_id: str,
    email: str,
    tier: str | None = None,
    role: Role = Role.user,
    subscription_status: str | None = None,
    grace_until=None,
) -> Profile:
    profile = Profile(
        id=user_id,
        email=email,
        tier=tier,
        role=role,
        subscription_status=subscription_status,
        grace_until=grace_until,
    )
    db.add(profile)
    db.commit()
    db.refresh(profile)
    return profile


def make_entitlement(
    db: Session,
    *,
    user_id: str | None,
    product_key: str,
    email: str | None = None,
    status: EntitlementStatus = EntitlementStatus.active,
    expires_in: timedelta | None = None,
    expires_at=None,
    source: EntitlementSource = EntitlementSource.webhook,
) -> Entitlement:
    if expires_in is not None:
        expires_at = utc_now() + expires_in
    row = Entitlement(
        user_id=user_id,
        email=email,
        product_key=product_key,
        status=status,
        expires_at=expires_at,
        source=source,
    )
    db.add(row)
    db.commit()
    db.refresh(row)
    return row


def payment_event(
    event_id: str = "evt_1",
    *,
    link_id: str | None = STARTER_LINK,
    email: str | None = "buyer@example.com",
    payment_id: str | None = "pay_1",
    event_type: str = "payment.updated",
    status: str = "COMPLETED",
) -> dict:
    payment: dict = {"id": payment_id, "status": status, "order_id": f"ord_{payment_id}"}
    if email:
        payment["buyer_email_address"] = email
    obj: dict = {"payment": payment}
    if link_id:
        obj["payment_link_id"] = link_id
    return {"event_id": event_id, "type": event_type, "data": {"id": payment_id, "object": obj}}


def subscription_event(
    event_id: str,
    event_type: str,
    *,
    plan_id: str = STARTER_LINK,
    email: str = "buyer@example.com",
    status: str | None = None,
) -> dict:
    subscription: dict = {"id": f"sub_{event_id}", "plan_variation_id": plan_id}
    if status:
        subscription["status"] = status
    return {
        "event_id": event_id,
        "type": event_type,
        "data": {
            "object": {
                "subscription": subscription,
                "customer": {"id": "cust_1", "email_address": email},
            }
        },
    }


def post_webhook(client: TestClient, payload: dict | bytes, *, signature: str | None = None):
    body = payload if isinstance(payload, bytes) else json.dumps(payload).encode()
    if signature is None:
        signature = compute_signature(settings.SQUARE_WEBHOOK_SIGNATURE_KEY or "", body)
    return client.post(
        "/api/v1/webhooks/square",
        content=body,
        headers={SIGNATURE_HEADER: signature, "Content-Type": "application/json"},
    )
