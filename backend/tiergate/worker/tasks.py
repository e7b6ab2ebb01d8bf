"""
定时任务逻辑

每个任务先拿 Redis 锁（SET NX EX），拿不到说明另一个调度器或 HTTP 触发正在执行，
本次直接跳过。任务本身幂等，跳过的一次会在下一轮追上。
Redis 本身不可用时记 error 并抛出 LockUnavailableError。
"""

import logging
from collections.abc import Callable
from typing import TypeVar
from uuid import uuid4

import redis
from sqlmodel import Session

from tiergate.core.db import engine
from tiergate.core.redis import acquire_lock, release_lock
from tiergate.services.notifier import get_notifier
from tiergate.services.sweeps import run_downgrade_sweep, run_expiry_notifier

logger = logging.getLogger(__name__)

LOCK_KEY = "tiergate:cron:{name}:lock"
LOCK_TTL_SECONDS = 60 * 30

T = TypeVar("T")


class LockUnavailableError(Exception):
    """Redis 不可用，无法判断任务是否已在执行"""


def run_locked(name: str, job: Callable[[], T]) -> T | None:
    """
    在分布式锁内执行 job

    锁被占用时返回 None；Redis 故障时抛出 LockUnavailableError（不算跳过）。
    """
    lock_key = LOCK_KEY.format(name=name)
    lock_value = str(uuid4())
    try:
        acquired = acquire_lock(lock_key, lock_value, expire_seconds=LOCK_TTL_SECONDS)
    except redis.RedisError as e:
        logger.error("Job %s not run, lock unavailable: %s", name, e)
        raise LockUnavailableError(name) from e
    if not acquired:
        logger.info("Job %s already running, skip this run.", name)
        return None
    try:
        return job()
    finally:
        release_lock(lock_key, lock_value)


def notify_expiring_entitlements() -> None:
    """每天 14:00 UTC：7 天 / 1 天到期提醒"""
    with Session(engine) as session:
        run_locked("expiring_entitlements", lambda: run_expiry_notifier(session, get_notifier()))


def downgrade_stale_subscriptions() -> None:
    """每天 06:00 UTC：到期权益置为 expired，超过 30 天未续费的降为 guest"""
    with Session(engine) as session:
        run_locked("subscription_renewal", lambda: run_downgrade_sweep(session, get_notifier()))
