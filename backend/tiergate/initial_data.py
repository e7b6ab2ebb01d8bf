"""
初始数据脚本

在数据库迁移完成后执行，写入首个管理员 profile（FIRST_ADMIN_USER_ID / FIRST_ADMIN_EMAIL）。
"""
import logging

from sqlmodel import Session

from tiergate.core.db import engine, init_db

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


def init() -> None:
    with Session(engine) as session:
        init_db(session)


def main() -> None:
    logger.info("Creating initial data")
    init()
    logger.info("Initial data created")


if __name__ == "__main__":  # pragma: no cover
    main()
