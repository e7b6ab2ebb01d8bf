"""审计日志 CRUD 操作（只追加）"""
from typing import Any

from sqlmodel import Session, col, select

from tiergate.enums import AuditAction
from tiergate.models import AuditLog


def write(
    *,
    session: Session,
    actor: str,
    action: AuditAction,
    target_user_id: str | None = None,
    target_email: str | None = None,
    details: dict[str, Any] | None = None,
    actor_email: str | None = None,
) -> AuditLog:
    """追加一条审计记录（调用方负责提交）"""
    row = AuditLog(
        actor=actor,
        actor_email=actor_email,
        action=action.value,
        target_user_id=target_user_id,
        target_email=target_email,
        details=details,
    )
    session.add(row)
    return row


def list_recent(
    *, session: Session, limit: int = 100, action: str | None = None
) -> list[AuditLog]:
    statement = select(AuditLog)
    if action:
        statement = statement.where(AuditLog.action == action)
    statement = statement.order_by(col(AuditLog.created_at).desc(), col(AuditLog.id).desc())
    return list(session.exec(statement.limit(limit)).all())
