"""
支付 Webhook 路由

签名必须基于原始请求字节计算，所以这里直接读取 request.body()，
不能让 FastAPI 先解析 JSON。
"""
import json
import logging

from fastapi import APIRouter, Request
from starlette.concurrency import run_in_threadpool

from tiergate.api.deps import SessionDep
from tiergate.api.errors import configuration_error, invalid_payload, invalid_signature
from tiergate.api.schemas import ApiEnvelope
from tiergate.core.config import settings
from tiergate.services.reconciler import process_webhook_event
from tiergate.services.square_service import (
    SIGNATURE_HEADER,
    parse_webhook_event,
    verify_webhook_signature,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


@router.post("/square", response_model=ApiEnvelope)
async def square_webhook(request: Request, session: SessionDep) -> ApiEnvelope:
    """
    Square 支付事件

    - 未配置签名密钥 -> 500
    - 签名不匹配 -> 401（不做任何处理）
    - JSON 无法解析 / 缺少事件 ID -> 400
    - 其余业务结果（重复、忽略、未映射、待认领、已处理）一律 200
    """
    signature_key = settings.SQUARE_WEBHOOK_SIGNATURE_KEY
    if not signature_key:
        logger.error("SQUARE_WEBHOOK_SIGNATURE_KEY is not configured")
        raise configuration_error("Webhook signing key not configured")

    body = await request.body()
    if not verify_webhook_signature(signature_key, body, request.headers.get(SIGNATURE_HEADER)):
        logger.warning("Rejected Square webhook with invalid signature")
        raise invalid_signature()

    try:
        payload = json.loads(body)
    except ValueError:
        raise invalid_payload("Invalid JSON")
    if not isinstance(payload, dict):
        raise invalid_payload("Invalid webhook payload")
    if not parse_webhook_event(payload).event_id:
        raise invalid_payload("Missing event id")

    result = await run_in_threadpool(process_webhook_event, session, payload)
    return ApiEnvelope(data=result.as_response())
