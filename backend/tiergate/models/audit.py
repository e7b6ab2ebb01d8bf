"""
审计日志模型模块
"""
from datetime import datetime

from sqlalchemy import JSON, Column, DateTime, String
from sqlmodel import Field, SQLModel

from .base import utc_now


class AuditLog(SQLModel, table=True):
    """
    审计日志（只追加）

    每一次权益/等级变更都同步写入一条记录，从不更新或删除。

    字段说明：
    - actor: 操作者（用户 ID，或 "webhook" / "system" / "cron"）
    - action: 动作标签（见 AuditAction）
    - target_user_id / target_email: 目标用户
    - details: 变更前后值等结构化信息
    """
    __tablename__ = "audit_log"

    id: int | None = Field(default=None, primary_key=True)
    actor: str = Field(sa_column=Column(String(64), nullable=False))
    actor_email: str | None = Field(default=None, max_length=255)
    action: str = Field(sa_column=Column(String(64), index=True, nullable=False))
    target_user_id: str | None = Field(
        default=None, sa_column=Column(String(64), index=True, nullable=True)
    )
    target_email: str | None = Field(default=None, max_length=255)
    details: dict | None = Field(default=None, sa_column=Column(JSON))
    created_at: datetime = Field(
        default_factory=utc_now,
        sa_column=Column(DateTime(timezone=True), index=True, nullable=False),
    )
