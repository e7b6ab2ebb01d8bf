"""
权益模型模块

定义已生效的权益（Entitlement）和尚未关联用户的待认领权益（PendingEntitlement）。
"""
from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Index, String, text
from sqlmodel import Field, SQLModel

from tiergate.enums import EntitlementSource, EntitlementStatus

from .base import utc_now


class Entitlement(SQLModel, table=True):
    """
    权益记录模型

    product_key 带命名空间：
    - tier_*: 订阅等级
    - tool_*: 单个工具附加购买
    - feature_*: 功能（如白标）
    - internal_*: 管理员授予的内部工具（不参与等级）

    同一 (user_id, product_key) 同时最多一条 active 记录（部分唯一索引保证），
    对账时原地更新而不是插入重复行。记录从不物理删除，只会 active -> expired。
    用户尚未注册时 user_id 为空，由 email 寻址，等待认领。
    """
    __tablename__ = "entitlements"
    __table_args__ = (
        Index(
            "uq_entitlements_active_user_product",
            "user_id",
            "product_key",
            unique=True,
            postgresql_where=text("status = 'active'"),
            sqlite_where=text("status = 'active'"),
        ),
    )

    id: int | None = Field(default=None, primary_key=True)
    user_id: str | None = Field(
        default=None,
        sa_column=Column(String(64), ForeignKey("profiles.id"), index=True, nullable=True),
    )
    email: str | None = Field(
        default=None, sa_column=Column(String(255), index=True, nullable=True)
    )
    product_key: str = Field(sa_column=Column(String(64), index=True, nullable=False))
    status: EntitlementStatus = Field(
        default=EntitlementStatus.active, sa_column=Column(String(16), nullable=False)
    )
    started_at: datetime = Field(
        default_factory=utc_now,
        sa_column=Column(DateTime(timezone=True), nullable=False),
    )
    expires_at: datetime | None = Field(
        default=None, sa_column=Column(DateTime(timezone=True), nullable=True)
    )
    source: EntitlementSource = Field(sa_column=Column(String(32), nullable=False))

    # 支付平台关联 ID，用于去重
    payment_id: str | None = Field(
        default=None, sa_column=Column(String(64), index=True, nullable=True)
    )
    order_id: str | None = Field(default=None, max_length=64)
    checkout_id: str | None = Field(
        default=None, sa_column=Column(String(64), index=True, nullable=True)
    )
    customer_id: str | None = Field(default=None, max_length=64)

    created_at: datetime = Field(
        default_factory=utc_now,
        sa_column=Column(DateTime(timezone=True), nullable=False),
    )
    updated_at: datetime = Field(
        default_factory=utc_now,
        sa_column=Column(DateTime(timezone=True), nullable=False),
    )


class PendingEntitlement(SQLModel, table=True):
    """
    待认领权益模型

    付款时买家还没有账号：按邮箱暂存（邮箱缺失时 email 为空，留待人工处理）。
    用户登录后调用认领接口，记录迁移到 entitlements 后删除。
    """
    __tablename__ = "pending_entitlements"

    id: int | None = Field(default=None, primary_key=True)
    email: str | None = Field(
        default=None, sa_column=Column(String(255), index=True, nullable=True)
    )
    product_key: str = Field(sa_column=Column(String(64), nullable=False))
    payment_id: str | None = Field(
        default=None, sa_column=Column(String(64), index=True, nullable=True)
    )
    order_id: str | None = Field(default=None, max_length=64)
    checkout_id: str | None = Field(
        default=None, sa_column=Column(String(64), index=True, nullable=True)
    )
    customer_id: str | None = Field(default=None, max_length=64)
    created_at: datetime = Field(
        default_factory=utc_now,
        sa_column=Column(DateTime(timezone=True), nullable=False),
    )
