"""
邮件通知服务

三类消息：到期提醒、访问已过期、续费提醒。
发送失败只记录日志并返回 False，绝不向上抛出，定时任务不会因此中断。

实现：
- ResendNotifier: Resend HTTP API（httpx，有超时上限）
- LogNotifier: 未配置 API Key 时只打印日志
- MockNotifier: 测试用，记录所有消息
"""
from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field

import httpx

from tiergate.core.config import settings

logger = logging.getLogger(__name__)

RESEND_API_URL = "https://api.resend.com/emails"
BRAND = "Elite Investor Academy"


@dataclass
class EmailMessage:
    """邮件内容"""
    to_email: str
    subject: str
    html_body: str
    tags: list[str] = field(default_factory=list)


class Notifier(ABC):
    """通知发送抽象"""

    @abstractmethod
    def send(self, message: EmailMessage) -> bool:
        """发送邮件，成功返回 True"""

    def send_expiry_reminder(self, to_email: str, product_key: str, days_left: int) -> bool:
        pricing_url = f"{settings.SITE_BASE_URL}/pricing.html"
        dashboard_url = f"{settings.SITE_BASE_URL}/dashboard.html"
        html = (
            f"<p>Your {BRAND} membership ({product_key}) expires in {days_left} day(s).</p>"
            "<p>Renew to keep access to calculators and resources.</p>"
            f'<p><a href="{pricing_url}">Renew now</a> | <a href="{dashboard_url}">Dashboard</a></p>'
            f"<p>Questions? Contact {settings.SUPPORT_EMAIL}.</p>"
        )
        return self._safe_send(
            EmailMessage(
                to_email=to_email,
                subject=f"Your {BRAND} access expires in {days_left} day(s)",
                html_body=html,
                tags=["expiry_reminder"],
            )
        )

    def send_access_expired(self, to_email: str, product_key: str) -> bool:
        pricing_url = f"{settings.SITE_BASE_URL}/pricing.html"
        html = (
            f"<p>Your {BRAND} access ({product_key}) has expired.</p>"
            "<p>Renew to continue using calculators and resources.</p>"
            f'<p><a href="{pricing_url}">Renew now</a></p>'
            f"<p>Support: {settings.SUPPORT_EMAIL}</p>"
        )
        return self._safe_send(
            EmailMessage(
                to_email=to_email,
                subject=f"{BRAND} - Your access has expired",
                html_body=html,
                tags=["access_expired"],
            )
        )

    def send_renewal(self, to_email: str, previous_tier: str, renewal_link: str | None) -> bool:
        link = renewal_link or f"{settings.SITE_BASE_URL}/pricing.html"
        html = (
            f"<p>Your {BRAND} membership has expired.</p>"
            "<p>Renew to restore access to calculators and resources.</p>"
            f'<p><a href="{link}">Renew now ({previous_tier})</a></p>'
            f"<p>Questions? Contact {settings.SUPPORT_EMAIL}.</p>"
        )
        return self._safe_send(
            EmailMessage(
                to_email=to_email,
                subject=f"{BRAND} - Renew your membership",
                html_body=html,
                tags=["renewal"],
            )
        )

    def _safe_send(self, message: EmailMessage) -> bool:
        try:
            return self.send(message)
        except Exception as e:
            logger.error("Notification to %s failed: %s", message.to_email, e)
            return False


class ResendNotifier(Notifier):
    """Resend 邮件发送"""

    def __init__(
        self,
        api_key: str,
        from_email: str,
        timeout: float = 10.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.api_key = api_key
        self.from_email = from_email
        self.timeout = timeout
        self.transport = transport

    def send(self, message: EmailMessage) -> bool:
        payload = {
            "from": self.from_email,
            "to": [message.to_email],
            "subject": message.subject,
            "html": message.html_body,
        }
        if message.tags:
            payload["tags"] = [{"name": "category", "value": t} for t in message.tags]
        try:
            with httpx.Client(timeout=self.timeout, transport=self.transport) as client:
                response = client.post(
                    RESEND_API_URL,
                    json=payload,
                    headers={"Authorization": f"Bearer {self.api_key}"},
                )
        except httpx.HTTPError as e:
            logger.error("Resend request error for %s: %s", message.to_email, e)
            return False
        if response.status_code >= 400:
            logger.error("Resend error %s: %s", response.status_code, response.text)
            return False
        return True


class LogNotifier(Notifier):
    """未配置发送服务时只记录日志"""

    def send(self, message: EmailMessage) -> bool:
        logger.info("[STUB] Would email %s: %s", message.to_email, message.subject)
        return True


class MockNotifier(Notifier):
    """测试用通知器"""

    def __init__(self, fail_for: set[str] | None = None) -> None:
        self.sent_messages: list[EmailMessage] = []
        self.fail_for = fail_for or set()

    def send(self, message: EmailMessage) -> bool:
        if message.to_email in self.fail_for:
            raise RuntimeError(f"mock send failure for {message.to_email}")
        self.sent_messages.append(message)
        return True

    def sent_to(self, tag: str) -> list[str]:
        return [m.to_email for m in self.sent_messages if tag in m.tags]


def get_notifier() -> Notifier:
    """根据配置选择通知实现"""
    if settings.RESEND_API_KEY:
        return ResendNotifier(
            api_key=settings.RESEND_API_KEY,
            from_email=settings.EMAILS_FROM_EMAIL,
            timeout=settings.NOTIFY_TIMEOUT_SECONDS,
        )
    return LogNotifier()
