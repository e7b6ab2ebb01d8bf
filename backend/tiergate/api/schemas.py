"""
API 请求/响应数据模型（Schema）

这些模型不是数据库表，只用于 API 数据交换。
"""
from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

# ============================================================
# 通用响应模型
# ============================================================


class ApiEnvelope(BaseModel):
    """
    API 统一响应格式

    示例响应：
        {"code": 0, "message": "success", "data": {...}}
        {"code": 401001, "message": "Could not validate credentials", "data": None}
    """
    code: int = 0
    message: str = "success"
    data: Any | None = None


# ============================================================
# 会员
# ============================================================


class SessionStartRequest(BaseModel):
    """登录后回调，redirect 为登录前想去的页面"""
    redirect: str | None = Field(default=None, max_length=512)


class SessionStartData(BaseModel):
    user_id: str
    profile_created: bool
    redirect: str


class ClaimRequest(BaseModel):
    email: str = Field(min_length=3, max_length=255)


class ClaimData(BaseModel):
    claimed: int
    tier: str


class EffectiveTierData(BaseModel):
    tier: str
    source: str
    cached: bool = False


class ToolPermission(BaseModel):
    allowed: bool
    source: str | None = None  # tier | addon
    required_tier: str | None = None


class EntitlementPublic(BaseModel):
    id: int
    product_key: str
    status: str
    source: str
    started_at: datetime
    expires_at: datetime | None = None


class MemberEntitlementsData(BaseModel):
    tier: str
    source: str
    subscription_status: str | None = None
    white_label: bool
    permissions: dict[str, ToolPermission]
    entitlements: list[EntitlementPublic]


class ToolAccessData(BaseModel):
    ok: bool
    tool: str | None = None
    reason: str | None = None
    required_tier: str | None = None


# ============================================================
# 管理员
# ============================================================


class TierOverrideRequest(BaseModel):
    """直接设置用户存储等级"""
    target_email: str = Field(min_length=3, max_length=255)
    new_tier: str = Field(min_length=1, max_length=32)
    reason: str | None = Field(default=None, max_length=255)


class TemporaryOverrideRequest(BaseModel):
    """临时等级覆盖，expires_at 为空表示永久"""
    target_email: str = Field(min_length=3, max_length=255)
    override_tier: str = Field(min_length=1, max_length=32)
    expires_at: datetime | None = None
    reason: str | None = Field(default=None, max_length=255)


class GrantEntitlementRequest(BaseModel):
    target_email: str = Field(min_length=3, max_length=255)
    product_key: str = Field(min_length=1, max_length=64)
    expires_at: datetime | None = None


class RevokeEntitlementRequest(BaseModel):
    target_email: str = Field(min_length=3, max_length=255)
    product_key: str = Field(min_length=1, max_length=64)
    reason: str | None = Field(default=None, max_length=255)


class AuditLogPublic(BaseModel):
    id: int
    actor: str
    actor_email: str | None = None
    action: str
    target_user_id: str | None = None
    target_email: str | None = None
    details: dict[str, Any] | None = None
    created_at: datetime


# ============================================================
# 支付
# ============================================================


class PaymentVerifyData(BaseModel):
    email: str
    link_id: str | None = None
    tier: str | None = None
    transaction_id: str | None = None
    amount: int | None = None
    currency: str | None = None
