"""待认领权益 CRUD 操作"""
from sqlmodel import Session, col, select

from tiergate.models import PendingEntitlement

from .entitlement import PaymentRefs


def create(
    *, session: Session, email: str | None, product_key: str, refs: PaymentRefs
) -> PendingEntitlement:
    row = PendingEntitlement(
        email=email,
        product_key=product_key,
        payment_id=refs.payment_id,
        order_id=refs.order_id,
        checkout_id=refs.checkout_id,
        customer_id=refs.customer_id,
    )
    session.add(row)
    session.flush()
    return row


def list_by_email(*, session: Session, email: str) -> list[PendingEntitlement]:
    statement = (
        select(PendingEntitlement)
        .where(PendingEntitlement.email == email)
        .order_by(col(PendingEntitlement.id))
    )
    return list(session.exec(statement).all())


def delete(*, session: Session, row: PendingEntitlement) -> None:
    session.delete(row)
