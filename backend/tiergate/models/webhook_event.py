"""
Webhook 事件模型模块
"""
from datetime import datetime

from sqlalchemy import JSON, Column, DateTime, String
from sqlmodel import Field, SQLModel

from .base import utc_now


class WebhookEvent(SQLModel, table=True):
    """
    支付 Webhook 事件记录模型

    只用于幂等：event_id 唯一，插入冲突即视为“已处理”。
    写入一次，从不更新。
    """
    __tablename__ = "webhook_events"

    id: int | None = Field(default=None, primary_key=True)
    event_id: str = Field(sa_column=Column(String(128), unique=True, index=True, nullable=False))
    event_type: str = Field(default="", max_length=64)
    payload: dict | None = Field(default=None, sa_column=Column(JSON))
    created_at: datetime = Field(
        default_factory=utc_now,
        sa_column=Column(DateTime(timezone=True), nullable=False),
    )
