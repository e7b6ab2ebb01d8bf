"""
Square 支付服务

Webhook: 签名为对原始请求体做 HMAC-SHA256 后的 base64，放在 x-square-signature 头部。
REST API: 用于支付成功页校验（checkout -> order -> tender -> payment）。
"""

import base64
import hashlib
import hmac
import logging
from dataclasses import dataclass, field
from typing import Any

import httpx

from tiergate.core.config import settings

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "x-square-signature"

PAYMENT_EVENT_TYPES = frozenset(
    {"payment.created", "payment.updated", "checkout.created", "checkout.updated"}
)
SUBSCRIPTION_EVENT_TYPES = frozenset(
    {
        "subscription.created",
        "subscription.updated",
        "subscription.canceled",
        "subscription.deactivated",
        "subscription.expired",
    }
)
HANDLED_EVENT_TYPES = PAYMENT_EVENT_TYPES | SUBSCRIPTION_EVENT_TYPES

CANCELLATION_EVENT_TYPES = frozenset(
    {"subscription.canceled", "subscription.deactivated", "subscription.expired"}
)
CANCELED_SUBSCRIPTION_STATUSES = frozenset({"CANCELED", "DEACTIVATED"})
FAILED_PAYMENT_STATUSES = frozenset({"FAILED", "CANCELED"})


def compute_signature(signature_key: str, body: bytes) -> str:
    digest = hmac.new(signature_key.encode(), body, hashlib.sha256).digest()
    return base64.b64encode(digest).decode()


def verify_webhook_signature(signature_key: str, body: bytes, signature: str | None) -> bool:
    """
    校验 webhook 签名（常量时间比较）

    Args:
        signature_key: Square 后台配置的签名密钥
        body: 请求体原始字节（不能重新序列化）
        signature: x-square-signature 头部值
    """
    if not signature:
        return False
    expected = compute_signature(signature_key, body)
    return hmac.compare_digest(signature.encode(), expected.encode())


def _dict(value: Any) -> dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _str(value: Any) -> str | None:
    if value is None or value == "":
        return None
    return str(value)


@dataclass(frozen=True)
class SquareEvent:
    """从 webhook 负载中提取出的信号"""
    event_id: str | None
    event_type: str
    email: str | None = None
    payment_id: str | None = None
    order_id: str | None = None
    checkout_id: str | None = None
    customer_id: str | None = None
    payment_link_id: str | None = None
    catalog_object_ids: tuple[str, ...] = field(default_factory=tuple)
    plan_id: str | None = None
    payment_status: str | None = None
    subscription_status: str | None = None

    @property
    def is_handled(self) -> bool:
        return self.event_type in HANDLED_EVENT_TYPES

    @property
    def is_cancellation(self) -> bool:
        if self.event_type in CANCELLATION_EVENT_TYPES:
            return True
        return (
            self.event_type == "subscription.updated"
            and (self.subscription_status or "").upper() in CANCELED_SUBSCRIPTION_STATUSES
        )

    @property
    def is_failed_payment(self) -> bool:
        return (self.payment_status or "").upper() in FAILED_PAYMENT_STATUSES

    def product_identifiers(self) -> list[str]:
        """按优先级排列的产品标识：支付链接 -> 订单行目录对象 -> 订阅计划"""
        ids: list[str] = []
        if self.payment_link_id:
            ids.append(self.payment_link_id)
        ids.extend(self.catalog_object_ids)
        if self.plan_id:
            ids.append(self.plan_id)
        return ids


def parse_webhook_event(event_data: dict[str, Any]) -> SquareEvent:
    """
    解析 webhook 事件

    邮箱优先级：payment.buyer_email_address -> checkout.buyer_email_address
    -> customer.email_address，统一小写。
    """
    data = _dict(event_data.get("data"))
    obj = _dict(data.get("object"))
    payment = _dict(obj.get("payment"))
    checkout = _dict(obj.get("checkout"))
    order = _dict(obj.get("order"))
    customer = _dict(obj.get("customer"))
    subscription = _dict(obj.get("subscription"))

    email = (
        _str(payment.get("buyer_email_address"))
        or _str(checkout.get("buyer_email_address"))
        or _str(customer.get("email_address"))
    )

    catalog_ids = tuple(
        str(item["catalog_object_id"])
        for item in order.get("line_items") or []
        if isinstance(item, dict) and item.get("catalog_object_id")
    )

    return SquareEvent(
        event_id=_str(event_data.get("event_id")) or _str(event_data.get("id")) or _str(data.get("id")),
        event_type=str(event_data.get("type") or ""),
        email=email.strip().lower() if email else None,
        payment_id=_str(payment.get("id")),
        order_id=_str(payment.get("order_id")) or _str(order.get("id")),
        checkout_id=_str(checkout.get("id")),
        customer_id=_str(payment.get("customer_id"))
        or _str(customer.get("id"))
        or _str(subscription.get("customer_id")),
        payment_link_id=_str(checkout.get("payment_link_id")) or _str(obj.get("payment_link_id")),
        catalog_object_ids=catalog_ids,
        plan_id=_str(subscription.get("plan_variation_id")) or _str(subscription.get("plan_id")),
        payment_status=_str(payment.get("status")),
        subscription_status=_str(subscription.get("status")),
    )


class SquareApiError(Exception):
    """Square REST API 调用失败"""


class SquareService:
    """Square REST API 封装（只读查询）"""

    def __init__(
        self,
        access_token: str,
        base_url: str,
        api_version: str,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = base_url
        self.timeout = timeout
        self.transport = transport
        self.headers = {
            "Square-Version": api_version,
            "Authorization": f"Bearer {access_token}",
            "Content-Type": "application/json",
        }

    async def _get(self, client: httpx.AsyncClient, path: str) -> dict[str, Any]:
        response = await client.get(f"{self.base_url}{path}", headers=self.headers)
        if response.status_code != 200:
            raise SquareApiError(f"GET {path} -> {response.status_code} {response.text}")
        return response.json()

    async def verify_payment(
        self, transaction_id: str | None = None, checkout_id: str | None = None
    ) -> dict[str, Any] | None:
        """
        查询支付信息

        只有 checkout_id 时，通过 checkout -> order -> 首个 tender 找到 payment_id。
        邮箱优先取支付记录，其次查询客户资料；支付链接 ID 优先取 metadata，其次订单来源名。

        Returns:
            {"email", "link_id", "transaction_id", "amount", "currency"}；
            无法定位支付时返回 None

        Raises:
            SquareApiError: 上游接口返回错误或请求失败
        """
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                payment_id = transaction_id
                if checkout_id and not payment_id:
                    checkout = _dict((await self._get(client, f"/v2/checkouts/{checkout_id}")).get("checkout"))
                    order_id = _str(checkout.get("order_id"))
                    if order_id:
                        order = await self._get_optional(client, f"/v2/orders/{order_id}")
                        tenders = _dict(order.get("order")).get("tenders") or []
                        if tenders and isinstance(tenders[0], dict):
                            payment_id = _str(tenders[0].get("payment_id"))
                if not payment_id:
                    return None

                payment = _dict((await self._get(client, f"/v2/payments/{payment_id}")).get("payment"))
                if not payment:
                    return None

                email = _str(payment.get("buyer_email_address"))
                customer_id = _str(payment.get("customer_id"))
                if not email and customer_id:
                    customer = await self._get_optional(client, f"/v2/customers/{customer_id}")
                    email = _str(_dict(customer.get("customer")).get("email_address"))

                metadata = _dict(payment.get("metadata"))
                link_id = _str(metadata.get("link_id")) or _str(metadata.get("payment_link_id"))
                order_id = _str(payment.get("order_id"))
                if not link_id and order_id:
                    order = await self._get_optional(client, f"/v2/orders/{order_id}")
                    link_id = _str(_dict(_dict(order.get("order")).get("source")).get("name"))
        except httpx.HTTPError as e:
            raise SquareApiError(str(e)) from e

        amount_money = _dict(payment.get("amount_money"))
        return {
            "email": email.strip().lower() if email else None,
            "link_id": link_id,
            "transaction_id": _str(payment.get("id")) or payment_id,
            "amount": amount_money.get("amount"),
            "currency": amount_money.get("currency"),
        }

    async def _get_optional(self, client: httpx.AsyncClient, path: str) -> dict[str, Any]:
        """辅助查询失败时返回空字典，不影响主流程"""
        try:
            return await self._get(client, path)
        except SquareApiError as e:
            logger.warning("Square lookup failed: %s", e)
            return {}


def get_square_service() -> SquareService | None:
    """未配置 SQUARE_ACCESS_TOKEN 时返回 None"""
    if not settings.SQUARE_ACCESS_TOKEN:
        return None
    return SquareService(
        access_token=settings.SQUARE_ACCESS_TOKEN,
        base_url=settings.square_api_base_url,
        api_version=settings.SQUARE_API_VERSION,
        timeout=settings.SQUARE_TIMEOUT_SECONDS,
    )
