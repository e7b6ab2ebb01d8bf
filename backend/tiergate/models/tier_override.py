"""
等级覆盖模型模块
"""
from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, String
from sqlmodel import Field, SQLModel

from .base import utc_now


class TierOverride(SQLModel, table=True):
    """
    管理员设置的等级覆盖

    一个用户可以有多条记录；生效的是 expires_at 为空或在未来、
    且 created_at 最新的那一条。过期后自然失效，无需删除。
    """
    __tablename__ = "tier_overrides"

    id: int | None = Field(default=None, primary_key=True)
    user_id: str = Field(
        sa_column=Column(String(64), ForeignKey("profiles.id"), index=True, nullable=False)
    )
    override_tier: str = Field(sa_column=Column(String(32), nullable=False))
    expires_at: datetime | None = Field(
        default=None, sa_column=Column(DateTime(timezone=True), nullable=True)
    )
    reason: str | None = Field(default=None, max_length=255)
    created_by: str | None = Field(default=None, max_length=64)
    created_at: datetime = Field(
        default_factory=utc_now,
        sa_column=Column(DateTime(timezone=True), nullable=False),
    )
