"""
数据库模型定义模块

模型按功能拆分：
- profile.py: 用户资料（等级、角色、订阅状态）
- tier_override.py: 管理员等级覆盖
- entitlement.py: 权益与待认领权益
- webhook_event.py: 支付 webhook 幂等记录
- audit.py: 审计日志
"""
from sqlmodel import SQLModel

from .audit import AuditLog
from .base import as_utc, utc_now
from .entitlement import Entitlement, PendingEntitlement
from .profile import Profile
from .tier_override import TierOverride
from .webhook_event import WebhookEvent

__all__ = [
    "SQLModel",
    "as_utc",
    "utc_now",
    "AuditLog",
    "Entitlement",
    "PendingEntitlement",
    "Profile",
    "TierOverride",
    "WebhookEvent",
]
