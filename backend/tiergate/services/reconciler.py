"""
支付事件对账

webhook 处理状态机（括号内为终态）：

    已验签 -> 幂等检查 (duplicate) -> 类型检查 (ignored) -> 产品映射 (unmapped)
    -> 按邮箱查找用户 -> [已知用户 | 未知用户 (pending)] -> 写入权益 -> 写审计 (processed)

顺序约束：
- 事件 ID 记录在任何权益变更之前提交
- 权益变更在审计写入之前提交（中途崩溃会留下“有事件无审计”的可检测缺口）

支付事件只会提升 profile 等级，永远不会降低；降级只来自取消事件或定时任务。
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from sqlmodel import Session

from tiergate import crud
from tiergate.core.tiers import GUEST_TIER, CatalogProduct, TierModel, get_tier_model
from tiergate.enums import AuditAction, EntitlementSource, SubscriptionStatus, WebhookOutcome
from tiergate.models import Profile, as_utc, utc_now
from tiergate.services.square_service import SquareEvent, parse_webhook_event

logger = logging.getLogger(__name__)

WEBHOOK_ACTOR = "webhook"
UNKNOWN_PAYMENT_LINK = "unknown_payment_link"


@dataclass(frozen=True)
class ReconcileResult:
    outcome: WebhookOutcome
    event_id: str | None = None
    product_key: str | None = None
    user_id: str | None = None
    detail: str | None = None

    def as_response(self) -> dict[str, Any]:
        data: dict[str, Any] = {"received": True, "outcome": self.outcome.value}
        if self.outcome == WebhookOutcome.duplicate:
            data["duplicate"] = True
        if self.product_key:
            data["product_key"] = self.product_key
        if self.detail:
            data["detail"] = self.detail
        return data


@dataclass(frozen=True)
class ClaimResult:
    claimed: int
    tier: str


def _map_product(event: SquareEvent, model: TierModel) -> tuple[CatalogProduct | None, str | None]:
    """返回 (映射到的产品, 命中的标识)；都未命中时返回首个标识供审计"""
    identifiers = event.product_identifiers()
    for identifier in identifiers:
        product = model.product_for_payment_link(identifier)
        if product is not None:
            return product, identifier
    return None, identifiers[0] if identifiers else None


def _refs(event: SquareEvent) -> crud.PaymentRefs:
    return crud.PaymentRefs(
        payment_id=event.payment_id,
        order_id=event.order_id,
        checkout_id=event.checkout_id,
        customer_id=event.customer_id,
    )


def _raise_tier(
    session: Session, profile: Profile, tier: str | None, model: TierModel
) -> tuple[str | None, bool]:
    """只升不降；返回 (原等级, 是否提升)"""
    previous = profile.tier
    if tier and model.is_persistable_tier(tier) and model.rank(tier) > model.rank(previous):
        crud.set_profile_tier(session=session, profile=profile, tier=tier)
        return previous, True
    return previous, False


def process_webhook_event(
    session: Session,
    event_data: dict[str, Any],
    *,
    now: datetime | None = None,
    model: TierModel | None = None,
) -> ReconcileResult:
    """
    处理一条已验签的 webhook 事件

    所有业务结果（重复、忽略、未映射）都是正常返回，不抛异常。
    调用方需保证 event_id 存在。
    """
    now = now or utc_now()
    model = model or get_tier_model()
    event = parse_webhook_event(event_data)
    event_id = event.event_id or ""

    if not crud.record_webhook_event(
        session=session, event_id=event_id, event_type=event.event_type, payload=event_data
    ):
        logger.info("Duplicate webhook event %s", event_id)
        return ReconcileResult(WebhookOutcome.duplicate, event_id, detail="event_already_processed")

    if not event.is_handled:
        return ReconcileResult(WebhookOutcome.ignored, event_id, detail=event.event_type)
    if event.is_failed_payment:
        logger.info("Ignoring %s payment %s", event.payment_status, event.payment_id)
        return ReconcileResult(WebhookOutcome.ignored, event_id, detail="payment_not_completed")

    product, identifier = _map_product(event, model)
    if product is None:
        logger.info("Unmapped product identifier %s in event %s", identifier, event_id)
        crud.write_audit(
            session=session,
            actor=WEBHOOK_ACTOR,
            action=AuditAction.webhook_processed,
            target_email=event.email,
            details={
                "event_id": event_id,
                "event_type": event.event_type,
                "reason": UNKNOWN_PAYMENT_LINK,
                "payment_link_id": identifier,
                "payment_id": event.payment_id,
            },
        )
        session.commit()
        return ReconcileResult(WebhookOutcome.unmapped, event_id, detail=UNKNOWN_PAYMENT_LINK)

    profile = crud.get_profile_by_email(session=session, email=event.email) if event.email else None

    if event.is_cancellation:
        return _expire_for_cancellation(session, event, product, profile, now)

    refs = _refs(event)
    if crud.payment_already_recorded(session=session, refs=refs):
        logger.info("Payment %s already reconciled", refs.payment_id or refs.checkout_id)
        return ReconcileResult(
            WebhookOutcome.duplicate, event_id, product.product_key, detail="payment_already_recorded"
        )

    expires_at = now + timedelta(days=product.expires_days) if product.expires_days else None

    if profile is None:
        crud.create_pending(
            session=session, email=event.email, product_key=product.product_key, refs=refs
        )
        session.commit()
        crud.write_audit(
            session=session,
            actor=WEBHOOK_ACTOR,
            action=AuditAction.webhook_processed,
            target_email=event.email,
            details={
                "event_id": event_id,
                "event_type": event.event_type,
                "product_key": product.product_key,
                "tier": product.tier,
                "pending": True,
                "payment_id": refs.payment_id,
                "checkout_id": refs.checkout_id,
            },
        )
        session.commit()
        return ReconcileResult(WebhookOutcome.pending, event_id, product.product_key)

    entitlement, created = crud.upsert_active(
        session=session,
        user_id=profile.id,
        email=event.email,
        product_key=product.product_key,
        source=EntitlementSource.webhook,
        expires_at=expires_at,
        refs=refs,
        now=now,
    )
    previous_tier, raised = _raise_tier(session, profile, product.tier, model)
    previous_status = profile.subscription_status
    if product.tier and previous_status in (
        SubscriptionStatus.past_due.value,
        SubscriptionStatus.canceled.value,
    ):
        profile.subscription_status = SubscriptionStatus.active.value
        profile.grace_until = None
        profile.updated_at = now
        session.add(profile)
    session.commit()

    crud.write_audit(
        session=session,
        actor=WEBHOOK_ACTOR,
        action=AuditAction.webhook_processed,
        target_user_id=profile.id,
        target_email=event.email,
        details={
            "event_id": event_id,
            "event_type": event.event_type,
            "product_key": product.product_key,
            "entitlement_id": entitlement.id,
            "entitlement_created": created,
            "expires_at": expires_at.isoformat() if expires_at else None,
            "previous_tier": previous_tier,
            "new_tier": profile.tier,
            "tier_raised": raised,
            "previous_subscription_status": previous_status,
            "payment_id": refs.payment_id,
            "checkout_id": refs.checkout_id,
        },
    )
    session.commit()
    return ReconcileResult(WebhookOutcome.processed, event_id, product.product_key, profile.id)


def _expire_for_cancellation(
    session: Session,
    event: SquareEvent,
    product: CatalogProduct,
    profile: Profile | None,
    now: datetime,
) -> ReconcileResult:
    """取消/到期事件：只把匹配的权益置为 expired，不改动 profile 等级"""
    user_id = profile.id if profile else None
    rows = crud.list_active_matching(
        session=session, product_key=product.product_key, user_id=user_id, email=event.email
    )
    for row in rows:
        crud.expire_entitlement(session=session, entitlement=row, now=now)
    session.commit()

    crud.write_audit(
        session=session,
        actor=WEBHOOK_ACTOR,
        action=AuditAction.entitlement_expired,
        target_user_id=user_id,
        target_email=event.email,
        details={
            "event_id": event.event_id,
            "event_type": event.event_type,
            "product_key": product.product_key,
            "expired_ids": [row.id for row in rows],
            "reason": "cancellation_event",
        },
    )
    session.commit()
    return ReconcileResult(
        WebhookOutcome.expired, event.event_id, product.product_key, user_id, detail=f"expired={len(rows)}"
    )


def _later(a: datetime | None, b: datetime | None) -> datetime | None:
    """两个到期时间取较晚者；None 表示永不过期，优先"""
    if a is None or b is None:
        return None
    a, b = as_utc(a), as_utc(b)
    return a if a >= b else b  # type: ignore[operator]


def claim_pending(
    session: Session,
    *,
    user_id: str,
    email: str,
    now: datetime | None = None,
    model: TierModel | None = None,
) -> ClaimResult:
    """
    认领待处理权益

    把该邮箱下的 pending 记录和 user_id 为空的权益迁移到用户名下，
    并把 profile 等级提升到新认领产品中的最高等级（只升不降）。
    重复调用是安全的：没有可认领的记录时什么都不改。
    调用方负责校验 email 属于当前登录用户。
    """
    now = now or utc_now()
    model = model or get_tier_model()
    email = email.strip().lower()

    profile, created = crud.ensure_profile(session=session, user_id=user_id, email=email)
    if created:
        crud.write_audit(
            session=session,
            actor=user_id,
            action=AuditAction.profile_created,
            target_user_id=user_id,
            target_email=email,
            details={"via": "claim"},
        )
    session.commit()

    claimed_keys: list[str] = []

    for pending in crud.list_pending_by_email(session=session, email=email):
        days = model.expires_days_for_product_key(pending.product_key)
        crud.upsert_active(
            session=session,
            user_id=user_id,
            email=email,
            product_key=pending.product_key,
            source=EntitlementSource.claim,
            expires_at=now + timedelta(days=days) if days else None,
            refs=crud.PaymentRefs(
                payment_id=pending.payment_id,
                order_id=pending.order_id,
                checkout_id=pending.checkout_id,
                customer_id=pending.customer_id,
            ),
            now=now,
        )
        crud.delete_pending(session=session, row=pending)
        claimed_keys.append(pending.product_key)

    for row in crud.list_unclaimed_by_email(session=session, email=email):
        existing = crud.find_active(session=session, user_id=user_id, product_key=row.product_key)
        if existing is not None:
            existing.expires_at = _later(existing.expires_at, row.expires_at)
            existing.updated_at = now
            session.add(existing)
            crud.expire_entitlement(session=session, entitlement=row, now=now)
        else:
            row.user_id = user_id
            row.updated_at = now
            session.add(row)
        session.flush()
        claimed_keys.append(row.product_key)

    if not claimed_keys:
        session.rollback()
        return ClaimResult(claimed=0, tier=profile.tier or GUEST_TIER)

    best = model.highest_tier(model.tier_for_product_key(key) for key in claimed_keys)
    previous_tier, raised = _raise_tier(session, profile, best, model)
    session.commit()

    crud.write_audit(
        session=session,
        actor=user_id,
        actor_email=email,
        action=AuditAction.entitlement_claim,
        target_user_id=user_id,
        target_email=email,
        details={
            "claimed": len(claimed_keys),
            "product_keys": claimed_keys,
            "previous_tier": previous_tier,
            "new_tier": profile.tier,
            "tier_raised": raised,
        },
    )
    session.commit()
    return ClaimResult(claimed=len(claimed_keys), tier=profile.tier or GUEST_TIER)
