"""
有效等级解析

按固定顺序判定，命中即返回：
1. 身份声明或 profile.role 为 admin -> admin
2. 存在生效的等级覆盖 -> 覆盖等级
3. 订阅状态 active / trial / 空 -> 存储等级（依次回退到身份声明等级、guest）
4. past_due：宽限期内保留等级，超出宽限期降为 guest
5. canceled -> guest
6. 未知状态 -> 保留存储等级（不把用户锁在门外）
7. profile 读取失败 -> guest（无法读取的 profile 不可信）

admin 与覆盖永远不会被订阅逻辑覆盖；订阅撤销永远可以压过过期缓存，
因此服务端判定每次都从存储重新解析，不读缓存。
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime

from sqlmodel import Session

from tiergate import crud
from tiergate.core.security import Identity
from tiergate.core.tiers import ADMIN_TIER, GUEST_TIER, TierModel, get_tier_model
from tiergate.enums import Role, SubscriptionStatus, TierSource
from tiergate.models import Profile, TierOverride, as_utc, utc_now

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TierResolution:
    """解析结果：有效等级 + 来源标签"""
    tier: str
    source: TierSource

    @property
    def is_admin(self) -> bool:
        return self.tier == ADMIN_TIER


def _is_admin(identity: Identity | None, profile: Profile | None) -> bool:
    if identity and (identity.role or "").lower() == Role.admin.value:
        return True
    return bool(profile and (profile.role or "") == Role.admin.value)


def _stored_tier(identity: Identity | None, profile: Profile | None, model: TierModel) -> str:
    """profile.tier -> 身份声明等级 -> guest；admin 或未知值不会被当作存储等级"""
    for candidate in (profile.tier if profile else None, identity.tier if identity else None):
        if candidate and model.is_persistable_tier(candidate):
            return candidate
    return GUEST_TIER


def decide_effective_tier(
    *,
    identity: Identity | None,
    profile: Profile | None,
    override: TierOverride | None,
    now: datetime,
    profile_error: bool = False,
    model: TierModel | None = None,
) -> TierResolution:
    """纯判定函数：输入已读取的数据，输出有效等级与来源"""
    model = model or get_tier_model()

    if _is_admin(identity, profile):
        return TierResolution(ADMIN_TIER, TierSource.admin)

    if override is not None and model.is_persistable_tier(override.override_tier):
        expires_at = as_utc(override.expires_at)
        if expires_at is None or expires_at > now:
            return TierResolution(override.override_tier, TierSource.override)

    if profile_error:
        return TierResolution(GUEST_TIER, TierSource.error_failsafe)

    if profile is None:
        return TierResolution(_stored_tier(identity, None, model), TierSource.default)

    tier = _stored_tier(identity, profile, model)
    status = (profile.subscription_status or "").strip().lower()

    if status == SubscriptionStatus.active.value:
        return TierResolution(tier, TierSource.subscription_active)
    if status in ("", SubscriptionStatus.trial.value):
        return TierResolution(tier, TierSource.subscription_trial_or_null)
    if status == SubscriptionStatus.past_due.value:
        grace_until = as_utc(profile.grace_until)
        if grace_until is not None and grace_until > now:
            return TierResolution(tier, TierSource.grace_period)
        return TierResolution(GUEST_TIER, TierSource.past_due_grace_exceeded)
    if status == SubscriptionStatus.canceled.value:
        return TierResolution(GUEST_TIER, TierSource.subscription_canceled)
    return TierResolution(tier, TierSource.unknown_status_keep_access)


def resolve_effective_tier(
    session: Session,
    identity: Identity,
    *,
    now: datetime | None = None,
    model: TierModel | None = None,
) -> TierResolution:
    """
    从存储读取数据并解析有效等级

    不会向外抛出异常：profile 读取失败降为 guest；
    覆盖读取失败则跳过覆盖这一步（覆盖只是辅助信息）。
    """
    now = now or utc_now()
    profile: Profile | None = None
    profile_error = False
    try:
        profile = crud.get_profile(session=session, user_id=identity.id)
    except Exception as e:
        logger.warning("Profile read failed for %s: %s", identity.id, e)
        session.rollback()
        profile_error = True

    override: TierOverride | None = None
    if not _is_admin(identity, profile):
        try:
            override = crud.get_active_override(session=session, user_id=identity.id, now=now)
        except Exception as e:
            logger.warning("Override read failed for %s: %s", identity.id, e)
            session.rollback()

    return decide_effective_tier(
        identity=identity,
        profile=profile,
        override=override,
        now=now,
        profile_error=profile_error,
        model=model,
    )
