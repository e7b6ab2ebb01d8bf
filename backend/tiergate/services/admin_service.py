"""
管理员操作

调用方（路由层）负责确认操作者在存储中的 role 为 admin。
每个变更都同步写审计记录。
"""
from __future__ import annotations

from datetime import datetime, timedelta

from sqlmodel import Session

from tiergate import crud
from tiergate.api.errors import AppError, not_found
from tiergate.core.tiers import TierModel, get_tier_model
from tiergate.enums import AuditAction, EntitlementSource
from tiergate.models import Entitlement, Profile, TierOverride, utc_now


def _require_profile(session: Session, email: str) -> Profile:
    profile = crud.get_profile_by_email(session=session, email=email)
    if profile is None:
        raise not_found("User not found")
    return profile


def _require_tier(tier: str, model: TierModel) -> None:
    if not model.is_persistable_tier(tier):
        raise AppError(code=400011, message=f"Invalid tier: {tier}", status_code=400)


def set_tier(
    session: Session,
    *,
    actor: Profile,
    target_email: str,
    new_tier: str,
    reason: str | None = None,
    model: TierModel | None = None,
) -> Profile:
    """直接设置存储等级（可升可降）"""
    model = model or get_tier_model()
    _require_tier(new_tier, model)
    profile = _require_profile(session, target_email)
    previous = profile.tier
    crud.set_profile_tier(session=session, profile=profile, tier=new_tier)
    session.commit()
    crud.write_audit(
        session=session,
        actor=actor.id,
        actor_email=actor.email,
        action=AuditAction.tier_override,
        target_user_id=profile.id,
        target_email=profile.email,
        details={"previous_tier": previous, "new_tier": new_tier, "reason": reason},
    )
    session.commit()
    session.refresh(profile)
    return profile


def create_override(
    session: Session,
    *,
    actor: Profile,
    target_email: str,
    override_tier: str,
    expires_at: datetime | None,
    reason: str | None = None,
    model: TierModel | None = None,
) -> TierOverride:
    """新建临时（或永久）等级覆盖"""
    model = model or get_tier_model()
    _require_tier(override_tier, model)
    profile = _require_profile(session, target_email)
    row = crud.create_override(
        session=session,
        user_id=profile.id,
        override_tier=override_tier,
        expires_at=expires_at,
        reason=reason,
        created_by=actor.id,
    )
    session.commit()
    crud.write_audit(
        session=session,
        actor=actor.id,
        actor_email=actor.email,
        action=AuditAction.override_created,
        target_user_id=profile.id,
        target_email=profile.email,
        details={
            "override_id": row.id,
            "override_tier": override_tier,
            "expires_at": expires_at.isoformat() if expires_at else None,
            "reason": reason,
        },
    )
    session.commit()
    session.refresh(row)
    return row


def grant_entitlement(
    session: Session,
    *,
    actor: Profile,
    target_email: str,
    product_key: str,
    expires_at: datetime | None = None,
    model: TierModel | None = None,
) -> Entitlement:
    """
    授予任意已知产品

    用户已注册时按 (user_id, product_key) 写入并提升等级（只升不降）；
    未注册时写入按邮箱寻址的权益，待用户认领。
    未指定 expires_at 的月付等级产品默认 30 天有效期。
    """
    model = model or get_tier_model()
    if not model.is_known_product_key(product_key):
        raise AppError(code=400012, message=f"Invalid product_key: {product_key}", status_code=400)
    email = target_email.strip().lower()
    now = utc_now()
    if expires_at is None:
        days = model.expires_days_for_product_key(product_key)
        expires_at = now + timedelta(days=days) if days else None

    profile = crud.get_profile_by_email(session=session, email=email)
    row, created = crud.upsert_active(
        session=session,
        user_id=profile.id if profile else None,
        email=email,
        product_key=product_key,
        source=EntitlementSource.admin_grant,
        expires_at=expires_at,
        now=now,
    )
    previous_tier = profile.tier if profile else None
    tier = model.tier_for_product_key(product_key)
    if profile and tier and model.rank(tier) > model.rank(profile.tier):
        crud.set_profile_tier(session=session, profile=profile, tier=tier)
    session.commit()

    crud.write_audit(
        session=session,
        actor=actor.id,
        actor_email=actor.email,
        action=AuditAction.entitlement_grant,
        target_user_id=profile.id if profile else None,
        target_email=email,
        details={
            "product_key": product_key,
            "entitlement_id": row.id,
            "created": created,
            "expires_at": expires_at.isoformat() if expires_at else None,
            "previous_tier": previous_tier,
            "new_tier": profile.tier if profile else None,
        },
    )
    session.commit()
    session.refresh(row)
    return row


def revoke_entitlement(
    session: Session,
    *,
    actor: Profile,
    target_email: str,
    product_key: str,
    reason: str | None = None,
) -> int:
    """把某产品的生效权益置为 expired；不改动 profile 等级"""
    email = target_email.strip().lower()
    profile = crud.get_profile_by_email(session=session, email=email)
    rows = crud.list_active_matching(
        session=session,
        product_key=product_key,
        user_id=profile.id if profile else None,
        email=email,
    )
    if not rows:
        raise not_found("No active entitlement for product")
    for row in rows:
        crud.expire_entitlement(session=session, entitlement=row)
    session.commit()
    crud.write_audit(
        session=session,
        actor=actor.id,
        actor_email=actor.email,
        action=AuditAction.entitlement_revoke,
        target_user_id=profile.id if profile else None,
        target_email=email,
        details={
            "product_key": product_key,
            "expired_ids": [row.id for row in rows],
            "reason": reason,
        },
    )
    session.commit()
    return len(rows)
