"""
数据库连接模块

管理数据库引擎和会话的创建。
使用 SQLModel 的 create_engine 创建数据库连接池。

重要提示：
- 数据库表结构通过 Alembic 迁移管理，不要在这里创建表
- 每条语句都有超时上限（statement_timeout），连接池获取也有超时
"""
import logging

from sqlmodel import Session, create_engine, select

from tiergate.core.config import settings
from tiergate.enums import Role
from tiergate.models import Profile, utc_now

logger = logging.getLogger(__name__)

# 创建数据库引擎（连接池）
engine = create_engine(
    str(settings.SQLALCHEMY_DATABASE_URI),
    pool_pre_ping=True,
    pool_timeout=settings.DB_POOL_TIMEOUT_SECONDS,
    connect_args={
        "connect_timeout": settings.DB_POOL_TIMEOUT_SECONDS,
        "options": f"-c statement_timeout={settings.DB_STATEMENT_TIMEOUT_MS}",
    },
)


def init_db(session: Session) -> None:
    """
    初始化数据库种子数据

    表结构由 Alembic 迁移创建。这里只负责写入首个管理员 profile
    （FIRST_ADMIN_USER_ID + FIRST_ADMIN_EMAIL 均配置时）。
    管理员身份只来自 profile.role，不存在任何邮箱白名单。

    Args:
        session: 数据库会话
    """
    if not settings.FIRST_ADMIN_USER_ID or not settings.FIRST_ADMIN_EMAIL:
        return

    email = settings.FIRST_ADMIN_EMAIL.strip().lower()
    profile = session.exec(
        select(Profile).where(Profile.id == settings.FIRST_ADMIN_USER_ID)
    ).first()
    if profile is None:
        profile = Profile(id=settings.FIRST_ADMIN_USER_ID, email=email, role=Role.admin)
    elif profile.role == Role.admin:
        return
    profile.role = Role.admin
    profile.updated_at = utc_now()
    session.add(profile)
    session.commit()
    logger.info("Seeded admin profile %s", settings.FIRST_ADMIN_USER_ID)
