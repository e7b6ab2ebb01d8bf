"""
支付成功页校验

success 页拿到 transactionId 或 checkoutId 后调用这里，向 Square 确认支付，
返回买家邮箱和支付链接对应的等级，之后前端再调用认领接口。
"""
import logging

from fastapi import APIRouter, Query

from tiergate.api.errors import AppError, configuration_error, invalid_payload, upstream_error
from tiergate.api.schemas import ApiEnvelope, PaymentVerifyData
from tiergate.core.tiers import get_tier_model
from tiergate.services.square_service import SquareApiError, get_square_service

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/payments", tags=["payments"])


@router.get("/verify", response_model=ApiEnvelope)
async def verify_payment(
    transaction_id: str | None = Query(default=None, alias="transactionId"),
    checkout_id: str | None = Query(default=None, alias="checkoutId"),
) -> ApiEnvelope:
    if not transaction_id and not checkout_id:
        raise invalid_payload("Missing transactionId or checkoutId")
    service = get_square_service()
    if service is None:
        raise configuration_error("Square API not configured")

    try:
        result = await service.verify_payment(transaction_id=transaction_id, checkout_id=checkout_id)
    except SquareApiError as e:
        logger.error("Square payment verify error: %s", e)
        raise upstream_error("Failed to verify payment with Square")

    if result is None:
        raise invalid_payload("Could not resolve payment from checkout")
    if not result["email"]:
        raise AppError(
            code=400021,
            message="Could not retrieve customer email from payment. Please contact support.",
            status_code=400,
        )

    product = get_tier_model().product_for_payment_link(result["link_id"])
    return ApiEnvelope(
        data=PaymentVerifyData(
            email=result["email"],
            link_id=result["link_id"],
            tier=product.tier if product else None,
            transaction_id=result["transaction_id"],
            amount=result["amount"],
            currency=result["currency"],
        )
    )
