"""等级覆盖 CRUD 操作"""
from datetime import datetime

from sqlmodel import Session, col, or_, select

from tiergate.models import TierOverride


def get_active(*, session: Session, user_id: str, now: datetime) -> TierOverride | None:
    """
    查询当前生效的等级覆盖

    expires_at 为空或在未来；多条时取 created_at 最新的一条（id 兜底）。
    """
    statement = (
        select(TierOverride)
        .where(TierOverride.user_id == user_id)
        .where(
            or_(
                col(TierOverride.expires_at).is_(None),
                col(TierOverride.expires_at) > now,
            )
        )
        .order_by(col(TierOverride.created_at).desc(), col(TierOverride.id).desc())
    )
    return session.exec(statement).first()


def create(
    *,
    session: Session,
    user_id: str,
    override_tier: str,
    expires_at: datetime | None,
    reason: str | None,
    created_by: str | None,
) -> TierOverride:
    """新建一条覆盖记录（调用方负责提交）"""
    row = TierOverride(
        user_id=user_id,
        override_tier=override_tier,
        expires_at=expires_at,
        reason=reason,
        created_by=created_by,
    )
    session.add(row)
    session.flush()
    return row
