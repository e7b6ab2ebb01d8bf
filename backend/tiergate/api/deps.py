"""
FastAPI 依赖注入模块

- get_db: 数据库会话
- CurrentIdentity: 从 Bearer token 解析出的身份（必需）
- OptionalIdentity: Bearer 头部或会话 cookie 中的身份（可缺省）
- AdminProfile: 存储中 role 为 admin 的 profile（不信任客户端声明）
- CronAuth: 定时任务触发密钥校验
"""
import hmac
from collections.abc import Generator
from typing import Annotated

from fastapi import Depends, Header, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlmodel import Session

from tiergate import crud
from tiergate.api.errors import forbidden, unauthorized
from tiergate.core.config import settings
from tiergate.core.db import engine
from tiergate.core.security import Identity, decode_identity, token_from_cookies
from tiergate.enums import Role
from tiergate.models import Profile

# auto_error=False：缺少 token 时由我们返回统一格式的 401
reusable_bearer = HTTPBearer(auto_error=False)


def get_db() -> Generator[Session, None, None]:
    """获取数据库会话（请求结束后自动关闭）"""
    with Session(engine) as session:
        yield session


SessionDep = Annotated[Session, Depends(get_db)]
TokenDep = Annotated[HTTPAuthorizationCredentials | None, Depends(reusable_bearer)]


def get_current_identity(token: TokenDep) -> Identity:
    """解析 Bearer token；无效或缺失时 401"""
    if token is None:
        raise unauthorized()
    identity = decode_identity(token.credentials)
    if identity is None:
        raise unauthorized()
    return identity


CurrentIdentity = Annotated[Identity, Depends(get_current_identity)]


def get_optional_identity(request: Request, token: TokenDep) -> Identity | None:
    """
    供请求路由层使用：Bearer 头部优先，其次身份服务的会话 cookie

    无法确认身份时返回 None，由调用方决定拒绝方式。
    """
    raw = token.credentials if token else token_from_cookies(dict(request.cookies))
    if not raw:
        return None
    return decode_identity(raw)


OptionalIdentity = Annotated[Identity | None, Depends(get_optional_identity)]


def get_admin_profile(session: SessionDep, identity: CurrentIdentity) -> Profile:
    """管理员身份只以存储中的 profile.role 为准"""
    profile = crud.get_profile(session=session, user_id=identity.id)
    if profile is None or profile.role != Role.admin.value:
        raise forbidden("Admin only")
    return profile


AdminProfile = Annotated[Profile, Depends(get_admin_profile)]


def verify_cron_secret(authorization: str | None = Header(default=None)) -> None:
    """配置了 CRON_SECRET 时要求 Authorization: Bearer <secret>"""
    secret = settings.CRON_SECRET
    if not secret:
        return
    expected = f"Bearer {secret}".encode()
    if not hmac.compare_digest((authorization or "").encode(), expected):
        raise unauthorized("Unauthorized")


CronAuth = Depends(verify_cron_secret)
