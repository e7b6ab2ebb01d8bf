"""
访问判定

两种入口：
- can_access_tool / decide_tool_access: 同步判定，输入已读取好的有效等级与权益
- check_tool_access: 自行读取数据后判定（服务端强制检查使用，每次都重新解析）

判定顺序：admin -> 等级覆盖所需等级 -> 附加购买权益；未配置的工具一律拒绝。
内部工具（internal_*）不参与等级，只有 admin 或持有对应权益者可用。
"""
from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime

from sqlmodel import Session

from tiergate import crud
from tiergate.core.security import Identity
from tiergate.core.tiers import ADMIN_TIER, WHITE_LABEL_PRODUCT_KEY, TierModel, get_tier_model
from tiergate.enums import EntitlementStatus
from tiergate.models import Entitlement, as_utc, utc_now
from tiergate.services.tier_resolver import TierResolution, resolve_effective_tier

logger = logging.getLogger(__name__)

DEFAULT_REDIRECT = "/dashboard.html"
SAFE_REDIRECTS = frozenset(
    {"/dashboard.html", "/", "/index.html", "/success.html", "/protected.html"}
)


@dataclass(frozen=True)
class AccessDecision:
    """
    判定结果

    reason 取值：admin / tier / addon / internal_entitlement / unknown_tool /
    insufficient_tier / no_identity / error_fail_open
    """
    allowed: bool
    reason: str
    required_tier: str | None = None
    effective_tier: str | None = None


def has_active_entitlement(
    entitlements: Iterable[Entitlement], product_key: str | None, now: datetime | None = None
) -> bool:
    if not product_key:
        return False
    now = now or utc_now()
    for ent in entitlements:
        if ent.product_key != product_key or ent.status != EntitlementStatus.active:
            continue
        expires_at = as_utc(ent.expires_at)
        if expires_at is None or expires_at > now:
            return True
    return False


def decide_tool_access(
    effective_tier: str,
    entitlements: Iterable[Entitlement],
    tool_id: str,
    *,
    now: datetime | None = None,
    model: TierModel | None = None,
) -> AccessDecision:
    model = model or get_tier_model()
    entitlements = list(entitlements)

    if not model.is_known_tool(tool_id):
        return AccessDecision(False, "unknown_tool", effective_tier=effective_tier)

    if model.is_internal_tool(tool_id):
        if effective_tier == ADMIN_TIER:
            return AccessDecision(True, "admin", effective_tier=effective_tier)
        if has_active_entitlement(entitlements, model.tool_product_key(tool_id), now):
            return AccessDecision(True, "internal_entitlement", effective_tier=effective_tier)
        return AccessDecision(False, "insufficient_tier", effective_tier=effective_tier)

    required = model.required_tier_for_tool(tool_id)
    if effective_tier == ADMIN_TIER:
        return AccessDecision(True, "admin", required, effective_tier)
    if model.covers(effective_tier, required):
        return AccessDecision(True, "tier", required, effective_tier)
    if has_active_entitlement(entitlements, model.tool_product_key(tool_id), now):
        return AccessDecision(True, "addon", required, effective_tier)
    return AccessDecision(False, "insufficient_tier", required, effective_tier)


def can_access_tool(
    effective_tier: str,
    entitlements: Iterable[Entitlement],
    tool_id: str,
    *,
    now: datetime | None = None,
    model: TierModel | None = None,
) -> bool:
    return decide_tool_access(effective_tier, entitlements, tool_id, now=now, model=model).allowed


def can_use_white_label(
    effective_tier: str,
    entitlements: Iterable[Entitlement],
    *,
    now: datetime | None = None,
    model: TierModel | None = None,
) -> bool:
    """白标：admin、达到 elite 同级的等级，或持有 feature_whitelabel 权益"""
    model = model or get_tier_model()
    if effective_tier == ADMIN_TIER:
        return True
    if model.covers(effective_tier, model.required_tier_for_feature(WHITE_LABEL_PRODUCT_KEY)):
        return True
    return has_active_entitlement(entitlements, WHITE_LABEL_PRODUCT_KEY, now)


def tool_permissions(
    effective_tier: str,
    entitlements: Iterable[Entitlement],
    *,
    now: datetime | None = None,
    model: TierModel | None = None,
) -> dict[str, dict[str, str | bool | None]]:
    """每个工具的访问情况，source 为 tier / addon / None"""
    model = model or get_tier_model()
    entitlements = list(entitlements)
    result: dict[str, dict[str, str | bool | None]] = {}
    for tool_id in [*model.tool_access, *model.internal_tools]:
        decision = decide_tool_access(effective_tier, entitlements, tool_id, now=now, model=model)
        if not decision.allowed:
            source = None
        elif decision.reason in ("addon", "internal_entitlement"):
            source = "addon"
        else:
            source = "tier"
        result[tool_id] = {
            "allowed": decision.allowed,
            "source": source,
            "required_tier": decision.required_tier,
        }
    return result


def check_tool_access(
    session: Session,
    identity: Identity | None,
    tool_id: str,
    *,
    now: datetime | None = None,
    model: TierModel | None = None,
) -> AccessDecision:
    """
    读取数据并判定（服务端强制检查）

    无身份 -> 拒绝；内部错误 -> 放行并记录日志，避免故障变成全站封锁。
    """
    if identity is None:
        return AccessDecision(False, "no_identity")
    now = now or utc_now()
    try:
        resolution: TierResolution = resolve_effective_tier(session, identity, now=now, model=model)
        entitlements = (
            []
            if resolution.is_admin
            else crud.list_active_for_user(session=session, user_id=identity.id, now=now)
        )
        return decide_tool_access(resolution.tier, entitlements, tool_id, now=now, model=model)
    except Exception as e:
        logger.error("Tool access check failed for %s/%s: %s", identity.id, tool_id, e)
        return AccessDecision(True, "error_fail_open")


def safe_redirect(target: str | None, *, model: TierModel | None = None) -> str:
    """
    登录后跳转地址白名单

    只允许固定页面和已配置的工具页，其余一律回到 dashboard（防止开放重定向）。
    """
    if not target:
        return DEFAULT_REDIRECT
    path = target.split("#", 1)[0].split("?", 1)[0]
    if not path.startswith("/") or path.startswith("//") or "\\" in path:
        return DEFAULT_REDIRECT
    if path in SAFE_REDIRECTS:
        return path
    model = model or get_tier_model()
    if model.tool_id_for_path(path) and path.startswith("/tools/") and path.count("/") == 2:
        return path
    return DEFAULT_REDIRECT
