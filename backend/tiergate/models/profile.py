"""
用户资料模型模块

Profile 由本系统维护，每个身份服务用户一行，主键即身份服务的用户 ID。
"""
from datetime import datetime

from sqlalchemy import Column, DateTime, String
from sqlmodel import Field, SQLModel

from tiergate.enums import Role

from .base import utc_now


class Profile(SQLModel, table=True):
    """
    用户资料模型

    字段说明：
    - id: 身份服务的用户 ID（不透明字符串）
    - email: 登录邮箱（小写），用于 webhook 按邮箱匹配用户
    - tier: 存储的等级（空值视为最低等级 guest）；admin 从不写入这里
    - role: admin | user，管理员权限只以这里为准
    - subscription_status: active / trial / past_due / canceled / 空
    - grace_until: past_due 状态下的宽限期截止时间
    - created_at / updated_at: 创建、更新时间

    Profile 永不删除。
    """
    __tablename__ = "profiles"

    id: str = Field(sa_column=Column(String(64), primary_key=True))
    email: str | None = Field(
        default=None, sa_column=Column(String(255), index=True, nullable=True)
    )
    tier: str | None = Field(default=None, sa_column=Column(String(32), nullable=True))
    role: Role = Field(
        default=Role.user, sa_column=Column(String(16), nullable=False, default="user")
    )
    subscription_status: str | None = Field(
        default=None, sa_column=Column(String(16), nullable=True)
    )
    grace_until: datetime | None = Field(
        default=None, sa_column=Column(DateTime(timezone=True), nullable=True)
    )

    created_at: datetime = Field(
        default_factory=utc_now,
        sa_column=Column(DateTime(timezone=True), nullable=False),
    )
    updated_at: datetime = Field(
        default_factory=utc_now,
        sa_column=Column(DateTime(timezone=True), nullable=False),
    )
