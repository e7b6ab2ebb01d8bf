"""
身份令牌解析

身份服务签发 HS256 JWT，这里只负责校验签名并提取身份信息，
不维护任何会话。role / tier 只从 app_metadata 读取：user_metadata
可以由用户自己修改，其中的同名字段一律忽略。
"""
from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any
from urllib.parse import unquote

import jwt
from jwt.exceptions import InvalidTokenError

from tiergate.core.config import settings

ALGORITHM = "HS256"

ACCESS_TOKEN_COOKIE = "sb-access-token"


@dataclass(frozen=True)
class Identity:
    """身份服务中的用户（本系统只读）"""
    id: str
    email: str | None = None
    role: str | None = None
    tier: str | None = None

    @property
    def normalized_email(self) -> str | None:
        return self.email.strip().lower() if self.email else None


def _claim(payload: dict[str, Any], name: str) -> str | None:
    meta = payload.get("app_metadata")
    if isinstance(meta, dict) and meta.get(name):
        return str(meta[name])
    return None


def decode_identity(token: str) -> Identity | None:
    """
    校验并解析 Bearer token

    Returns:
        Identity；token 无效、过期或缺少 sub 时返回 None
    """
    try:
        payload = jwt.decode(
            token,
            settings.SECRET_KEY,
            algorithms=[ALGORITHM],
            options={"verify_aud": False},
        )
    except InvalidTokenError:
        return None
    sub = payload.get("sub")
    if not sub:
        return None
    email = payload.get("email")
    return Identity(
        id=str(sub),
        email=str(email) if email else None,
        role=_claim(payload, "role"),
        tier=_claim(payload, "tier"),
    )


def token_from_cookies(cookies: dict[str, str]) -> str | None:
    """
    从身份服务的会话 cookie 中取出 access token

    支持两种形式：
    - sb-access-token: 直接是 token
    - sb-<project>-auth-token: JSON（对象含 access_token，或数组首元素为 token）
    """
    direct = cookies.get(ACCESS_TOKEN_COOKIE)
    if direct:
        return direct

    for name, raw in cookies.items():
        if not (name.startswith("sb-") and name.endswith("-auth-token")) or not raw:
            continue
        value = unquote(raw)
        try:
            parsed = json.loads(value)
        except ValueError:
            return value
        if isinstance(parsed, dict) and parsed.get("access_token"):
            return str(parsed["access_token"])
        if isinstance(parsed, list) and parsed and isinstance(parsed[0], str):
            return parsed[0]
    return None


def create_access_token(
    subject: str,
    *,
    email: str | None = None,
    role: str | None = None,
    tier: str | None = None,
    expires_delta: timedelta | None = None,
) -> str:
    """签发与身份服务格式一致的 token（初始化脚本和测试使用）"""
    expire = datetime.now(timezone.utc) + (
        expires_delta or timedelta(days=settings.ACCESS_TOKEN_EXPIRE_DAYS)
    )
    app_metadata: dict[str, str] = {}
    if role:
        app_metadata["role"] = role
    if tier:
        app_metadata["tier"] = tier
    to_encode: dict[str, Any] = {"exp": expire, "sub": str(subject)}
    if email:
        to_encode["email"] = email
    if app_metadata:
        to_encode["app_metadata"] = app_metadata
    return jwt.encode(to_encode, settings.SECRET_KEY, algorithm=ALGORITHM)
