"""
权益 CRUD 操作

只暴露窄接口，查询构造不外泄到服务层。调用方负责提交事务。
"""
from dataclasses import dataclass
from datetime import datetime

from sqlmodel import Session, col, func, or_, select

from tiergate.enums import EntitlementSource, EntitlementStatus
from tiergate.models import Entitlement, PendingEntitlement, as_utc, utc_now


@dataclass(frozen=True)
class PaymentRefs:
    """支付平台关联 ID"""
    payment_id: str | None = None
    order_id: str | None = None
    checkout_id: str | None = None
    customer_id: str | None = None


def find_active(*, session: Session, user_id: str, product_key: str) -> Entitlement | None:
    statement = (
        select(Entitlement)
        .where(Entitlement.user_id == user_id)
        .where(Entitlement.product_key == product_key)
        .where(Entitlement.status == EntitlementStatus.active)
    )
    return session.exec(statement).first()


def find_active_unclaimed(*, session: Session, email: str, product_key: str) -> Entitlement | None:
    """按邮箱寻址（user_id 为空）的生效权益"""
    statement = (
        select(Entitlement)
        .where(col(Entitlement.user_id).is_(None))
        .where(Entitlement.email == email)
        .where(Entitlement.product_key == product_key)
        .where(Entitlement.status == EntitlementStatus.active)
    )
    return session.exec(statement).first()


def list_active_for_user(
    *, session: Session, user_id: str, now: datetime | None = None
) -> list[Entitlement]:
    """
    用户当前有效的权益

    status=active 且未到期；已到期但尚未被定时任务标记的记录不算有效。
    """
    now = now or utc_now()
    statement = (
        select(Entitlement)
        .where(Entitlement.user_id == user_id)
        .where(Entitlement.status == EntitlementStatus.active)
        .where(or_(col(Entitlement.expires_at).is_(None), col(Entitlement.expires_at) > now))
    )
    return list(session.exec(statement).all())


def count_active_for_user(*, session: Session, user_id: str) -> int:
    """status=active 的记录数（不看到期时间）"""
    statement = (
        select(func.count())
        .select_from(Entitlement)
        .where(Entitlement.user_id == user_id)
        .where(Entitlement.status == EntitlementStatus.active)
    )
    return int(session.exec(statement).one())


def list_unclaimed_by_email(*, session: Session, email: str) -> list[Entitlement]:
    statement = (
        select(Entitlement)
        .where(col(Entitlement.user_id).is_(None))
        .where(Entitlement.email == email)
        .where(Entitlement.status == EntitlementStatus.active)
        .order_by(col(Entitlement.id))
    )
    return list(session.exec(statement).all())


def upsert_active(
    *,
    session: Session,
    user_id: str | None,
    email: str | None,
    product_key: str,
    source: EntitlementSource,
    expires_at: datetime | None,
    refs: PaymentRefs | None = None,
    now: datetime | None = None,
) -> tuple[Entitlement, bool]:
    """
    写入一条生效权益

    同一 (user_id, product_key) 已有 active 记录时原地更新（重新计算到期时间），
    否则插入。user_id 为空时按 (email, product_key) 寻址。

    Returns:
        (权益记录, 是否新建)
    """
    now = now or utc_now()
    refs = refs or PaymentRefs()
    if user_id:
        row = find_active(session=session, user_id=user_id, product_key=product_key)
    elif email:
        row = find_active_unclaimed(session=session, email=email, product_key=product_key)
    else:
        row = None

    created = row is None
    if row is None:
        row = Entitlement(
            user_id=user_id,
            email=email,
            product_key=product_key,
            status=EntitlementStatus.active,
            started_at=now,
            source=source,
        )
    row.expires_at = expires_at
    row.source = source
    if email:
        row.email = email
    row.payment_id = refs.payment_id or row.payment_id
    row.order_id = refs.order_id or row.order_id
    row.checkout_id = refs.checkout_id or row.checkout_id
    row.customer_id = refs.customer_id or row.customer_id
    row.updated_at = now
    session.add(row)
    session.flush()
    return row, created


def expire(*, session: Session, entitlement: Entitlement, now: datetime | None = None) -> None:
    """active -> expired（不物理删除）"""
    entitlement.status = EntitlementStatus.expired
    entitlement.updated_at = now or utc_now()
    session.add(entitlement)


def list_active_matching(
    *,
    session: Session,
    product_key: str,
    user_id: str | None,
    email: str | None,
) -> list[Entitlement]:
    """取消事件使用：按用户或邮箱查找某个产品的生效权益"""
    owners = []
    if user_id:
        owners.append(Entitlement.user_id == user_id)
    if email:
        owners.append(Entitlement.email == email)
    if not owners:
        return []
    statement = (
        select(Entitlement)
        .where(Entitlement.product_key == product_key)
        .where(Entitlement.status == EntitlementStatus.active)
        .where(or_(*owners))
    )
    return list(session.exec(statement).all())


def find_expiring_between(
    *, session: Session, start: datetime, end: datetime
) -> list[Entitlement]:
    """status=active 且 start < expires_at <= end"""
    statement = (
        select(Entitlement)
        .where(Entitlement.status == EntitlementStatus.active)
        .where(col(Entitlement.expires_at).is_not(None))
        .where(col(Entitlement.expires_at) > start)
        .where(col(Entitlement.expires_at) <= end)
        .order_by(col(Entitlement.expires_at))
    )
    return list(session.exec(statement).all())


def find_expired_before(*, session: Session, now: datetime) -> list[Entitlement]:
    """status 仍为 active 但 expires_at 已过"""
    statement = (
        select(Entitlement)
        .where(Entitlement.status == EntitlementStatus.active)
        .where(col(Entitlement.expires_at).is_not(None))
        .where(col(Entitlement.expires_at) <= now)
        .order_by(col(Entitlement.id))
    )
    return list(session.exec(statement).all())


def latest_expiry(
    *, session: Session, user_id: str, product_keys: list[str]
) -> datetime | None:
    """用户在给定产品上最近一次到期时间（任意状态）"""
    if not product_keys:
        return None
    statement = (
        select(func.max(Entitlement.expires_at))
        .where(Entitlement.user_id == user_id)
        .where(col(Entitlement.product_key).in_(product_keys))
    )
    return as_utc(session.exec(statement).one())


def payment_already_recorded(*, session: Session, refs: PaymentRefs) -> bool:
    """
    第二层去重：同一笔支付可能触发多种事件类型

    按 payment_id / checkout_id 同时检查 entitlements 与 pending_entitlements。
    """
    for field, value in (("payment_id", refs.payment_id), ("checkout_id", refs.checkout_id)):
        if not value:
            continue
        for model in (Entitlement, PendingEntitlement):
            statement = select(model.id).where(getattr(model, field) == value).limit(1)
            if session.exec(statement).first() is not None:
                return True
    return False
