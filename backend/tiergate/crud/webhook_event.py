"""Webhook 事件幂等记录"""
from typing import Any

from sqlalchemy.exc import IntegrityError
from sqlmodel import Session

from tiergate.models import WebhookEvent


def record(
    *, session: Session, event_id: str, event_type: str, payload: dict[str, Any] | None
) -> bool:
    """
    原子地插入事件记录并立即提交

    唯一约束冲突说明事件已处理过，此时回滚并返回 False。
    必须在任何权益变更之前调用。

    Returns:
        True 表示首次处理；False 表示重复事件
    """
    try:
        session.add(WebhookEvent(event_id=event_id, event_type=event_type, payload=payload))
        session.commit()
    except IntegrityError:
        session.rollback()
        return False
    return True
