"""用户资料 CRUD 操作"""
from sqlmodel import Session, select

from tiergate.models import Profile, utc_now


def get_by_id(*, session: Session, user_id: str) -> Profile | None:
    """根据身份服务用户 ID 查询 profile"""
    return session.get(Profile, user_id)


def get_by_email(*, session: Session, email: str) -> Profile | None:
    """根据邮箱查询 profile（邮箱统一小写存储）"""
    statement = (
        select(Profile)
        .where(Profile.email == email.strip().lower())
        .order_by(Profile.created_at)
    )
    return session.exec(statement).first()


def ensure(*, session: Session, user_id: str, email: str | None) -> tuple[Profile, bool]:
    """
    获取或创建 profile（调用方负责提交）

    新建的 profile 等级为空、角色为 user。已存在时只补全缺失的邮箱。

    Returns:
        (profile, 是否新建)
    """
    normalized = email.strip().lower() if email else None
    profile = session.get(Profile, user_id)
    if profile:
        if normalized and profile.email != normalized:
            profile.email = normalized
            profile.updated_at = utc_now()
            session.add(profile)
        return profile, False
    profile = Profile(id=user_id, email=normalized)
    session.add(profile)
    session.flush()
    return profile, True


def set_tier(*, session: Session, profile: Profile, tier: str | None) -> None:
    """直接写入存储等级（不做升降判断，调用方负责）"""
    profile.tier = tier
    profile.updated_at = utc_now()
    session.add(profile)


def list_on_tiers(*, session: Session, tiers: list[str]) -> list[Profile]:
    """查询存储等级属于给定集合的 profile"""
    if not tiers:
        return []
    statement = select(Profile).where(Profile.tier.in_(tiers))  # type: ignore[union-attr]
    return list(session.exec(statement).all())
