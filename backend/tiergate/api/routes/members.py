from fastapi import APIRouter

from tiergate import crud
from tiergate.api.deps import CurrentIdentity, SessionDep
from tiergate.api.errors import forbidden
from tiergate.api.schemas import (
    ApiEnvelope,
    ClaimData,
    ClaimRequest,
    EffectiveTierData,
    EntitlementPublic,
    MemberEntitlementsData,
    ToolPermission,
)
from tiergate.enums import EntitlementSource, EntitlementStatus
from tiergate.models import utc_now
from tiergate.services.access import can_use_white_label, tool_permissions
from tiergate.services.reconciler import claim_pending
from tiergate.services.tier_cache import get_cached_tier, invalidate_tier_cache
from tiergate.services.tier_resolver import resolve_effective_tier

router = APIRouter(prefix="/members", tags=["members"])


@router.post("/claim", response_model=ApiEnvelope)
def claim(session: SessionDep, identity: CurrentIdentity, body: ClaimRequest) -> ApiEnvelope:
    """认领付款时尚未注册而暂存的权益；只能认领自己邮箱下的记录"""
    email = body.email.strip().lower()
    if not identity.normalized_email or identity.normalized_email != email:
        raise forbidden("Email does not match the signed-in user")
    result = claim_pending(session, user_id=identity.id, email=email)
    if result.claimed:
        invalidate_tier_cache(identity.id)
    return ApiEnvelope(data=ClaimData(claimed=result.claimed, tier=result.tier))


@router.get("/tier", response_model=ApiEnvelope)
def effective_tier(
    session: SessionDep, identity: CurrentIdentity, revalidate: bool = False
) -> ApiEnvelope:
    """前端 UI 使用的有效等级（允许 60 秒缓存）"""
    resolution, cached = get_cached_tier(session, identity, revalidate=revalidate)
    return ApiEnvelope(
        data=EffectiveTierData(tier=resolution.tier, source=resolution.source.value, cached=cached)
    )


@router.get("/entitlements", response_model=ApiEnvelope)
def entitlements(session: SessionDep, identity: CurrentIdentity) -> ApiEnvelope:
    """有效等级、各工具访问情况及生效权益（实时解析，不读缓存）"""
    now = utc_now()
    resolution = resolve_effective_tier(session, identity, now=now)
    rows = crud.list_active_for_user(session=session, user_id=identity.id, now=now)
    profile = crud.get_profile(session=session, user_id=identity.id)
    permissions = tool_permissions(resolution.tier, rows, now=now)
    return ApiEnvelope(
        data=MemberEntitlementsData(
            tier=resolution.tier,
            source=resolution.source.value,
            subscription_status=profile.subscription_status if profile else None,
            white_label=can_use_white_label(resolution.tier, rows, now=now),
            permissions={k: ToolPermission(**v) for k, v in permissions.items()},  # type: ignore[arg-type]
            entitlements=[
                EntitlementPublic(
                    id=row.id,  # type: ignore[arg-type]
                    product_key=row.product_key,
                    status=EntitlementStatus(row.status).value,
                    source=EntitlementSource(row.source).value,
                    started_at=row.started_at,
                    expires_at=row.expires_at,
                )
                for row in rows
            ],
        )
    )
