"""
管理员路由

所有接口都要求操作者在存储中的 profile.role 为 admin（见 deps.AdminProfile），
不信任 token 中的声明。
"""
from fastapi import APIRouter, Query

from tiergate import crud
from tiergate.api.deps import AdminProfile, SessionDep
from tiergate.api.schemas import (
    ApiEnvelope,
    AuditLogPublic,
    GrantEntitlementRequest,
    RevokeEntitlementRequest,
    TemporaryOverrideRequest,
    TierOverrideRequest,
)
from tiergate.services import admin_service
from tiergate.services.tier_cache import invalidate_tier_cache

router = APIRouter(prefix="/admin", tags=["admin"])


@router.post("/tier-override", response_model=ApiEnvelope)
def tier_override(session: SessionDep, admin: AdminProfile, body: TierOverrideRequest) -> ApiEnvelope:
    """直接设置用户的存储等级"""
    profile = admin_service.set_tier(
        session,
        actor=admin,
        target_email=body.target_email,
        new_tier=body.new_tier,
        reason=body.reason,
    )
    invalidate_tier_cache(profile.id)
    return ApiEnvelope(data={"user_id": profile.id, "tier": profile.tier})


@router.post("/overrides", response_model=ApiEnvelope)
def create_override(
    session: SessionDep, admin: AdminProfile, body: TemporaryOverrideRequest
) -> ApiEnvelope:
    """新建临时等级覆盖"""
    row = admin_service.create_override(
        session,
        actor=admin,
        target_email=body.target_email,
        override_tier=body.override_tier,
        expires_at=body.expires_at,
        reason=body.reason,
    )
    invalidate_tier_cache(row.user_id)
    return ApiEnvelope(
        data={
            "id": row.id,
            "user_id": row.user_id,
            "override_tier": row.override_tier,
            "expires_at": row.expires_at,
        }
    )


@router.post("/entitlements", response_model=ApiEnvelope)
def grant_entitlement(
    session: SessionDep, admin: AdminProfile, body: GrantEntitlementRequest
) -> ApiEnvelope:
    row = admin_service.grant_entitlement(
        session,
        actor=admin,
        target_email=body.target_email,
        product_key=body.product_key,
        expires_at=body.expires_at,
    )
    if row.user_id:
        invalidate_tier_cache(row.user_id)
    return ApiEnvelope(
        data={
            "id": row.id,
            "product_key": row.product_key,
            "user_id": row.user_id,
            "target_email": row.email,
            "expires_at": row.expires_at,
        }
    )


@router.post("/entitlements/revoke", response_model=ApiEnvelope)
def revoke_entitlement(
    session: SessionDep, admin: AdminProfile, body: RevokeEntitlementRequest
) -> ApiEnvelope:
    revoked = admin_service.revoke_entitlement(
        session,
        actor=admin,
        target_email=body.target_email,
        product_key=body.product_key,
        reason=body.reason,
    )
    return ApiEnvelope(data={"revoked": revoked})


@router.get("/audit", response_model=ApiEnvelope)
def audit_log(
    session: SessionDep,
    admin: AdminProfile,
    limit: int = Query(default=100, ge=1, le=500),
    action: str | None = None,
) -> ApiEnvelope:
    rows = crud.list_recent_audit(session=session, limit=limit, action=action)
    return ApiEnvelope(data=[AuditLogPublic.model_validate(row, from_attributes=True) for row in rows])
