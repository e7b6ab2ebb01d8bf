"""
枚举类型定义模块

定义应用中使用的所有枚举类型。
所有枚举都继承自 str 和 Enum，这样既可以用作字符串，又具有枚举的特性。
"""
from enum import Enum


class Role(str, Enum):
    """
    用户角色

    - admin: 管理员（解析时覆盖为 admin 等级，不写入 profile.tier）
    - user: 普通用户
    """
    admin = "admin"
    user = "user"


class SubscriptionStatus(str, Enum):
    """
    订阅状态（profile.subscription_status）

    空值与 trial 视为正常；past_due 在宽限期内保留等级；canceled 降为 guest。
    """
    active = "active"
    trial = "trial"
    past_due = "past_due"
    canceled = "canceled"


class EntitlementStatus(str, Enum):
    """
    权益状态

    - active: 生效中
    - expired: 已过期（只由定时任务或取消事件写入，从不物理删除）
    """
    active = "active"
    expired = "expired"


class EntitlementSource(str, Enum):
    """
    权益来源

    - webhook: 支付 webhook 对账写入
    - admin_grant: 管理员手动授予
    - claim: 用户认领待处理权益
    """
    webhook = "webhook"
    admin_grant = "admin_grant"
    claim = "claim"


class TierSource(str, Enum):
    """
    有效等级来源（provenance）

    每个解析分支都有独立的标签，调用方据此记录日志。
    """
    admin = "admin"
    override = "override"
    subscription_active = "subscription_active"
    subscription_trial_or_null = "subscription_trial_or_null"
    grace_period = "grace_period"
    past_due_grace_exceeded = "past_due_grace_exceeded"
    subscription_canceled = "subscription_canceled"
    unknown_status_keep_access = "unknown_status_keep_access"
    error_failsafe = "error_failsafe"
    default = "default"
    cache = "cache"


class AuditAction(str, Enum):
    """
    审计日志动作

    所有权益/等级变更都必须写一条审计记录。
    """
    webhook_processed = "webhook_processed"
    entitlement_claim = "entitlement_claim"
    entitlement_grant = "entitlement_grant"
    entitlement_revoke = "entitlement_revoke"
    entitlement_expired = "entitlement_expired"
    tier_override = "tier_override"
    override_created = "override_created"
    profile_created = "profile_created"
    subscription_renewal_downgrade = "subscription_renewal_downgrade"


class WebhookOutcome(str, Enum):
    """webhook 处理结果（终态）"""
    processed = "processed"
    pending = "pending"
    duplicate = "duplicate"
    ignored = "ignored"
    unmapped = "unmapped"
    expired = "expired"
