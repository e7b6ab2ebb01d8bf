"""
Redis 连接模块

Redis 在这里只承担两件事：
- 用户自身有效等级的短期缓存（仅供前端 UI 使用）
- 定时任务的分布式锁

使用 @lru_cache 实现单例，避免重复创建连接。
所有调用都设置了 socket 超时，Redis 不可用时调用方自行降级。
"""
from __future__ import annotations

import logging
from functools import lru_cache

import redis

from tiergate.core.config import settings

logger = logging.getLogger(__name__)

_RELEASE_LOCK_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
else
    return 0
end
"""


@lru_cache(maxsize=1)
def get_redis() -> redis.Redis:
    """
    获取 Redis 客户端实例（单例）

    decode_responses=True: 自动将字节响应解码为字符串
    """
    return redis.Redis(
        host=settings.REDIS_HOST,
        port=settings.REDIS_PORT,
        db=settings.REDIS_DB,
        password=settings.REDIS_PASSWORD,
        decode_responses=True,
        socket_timeout=settings.REDIS_SOCKET_TIMEOUT_SECONDS,
        socket_connect_timeout=settings.REDIS_SOCKET_TIMEOUT_SECONDS,
    )


def acquire_lock(lock_key: str, lock_value: str, expire_seconds: int = 60) -> bool:
    """
    获取分布式锁（SET NX EX）

    Returns:
        是否获取成功；False 只表示锁被他人持有

    Raises:
        redis.RedisError: Redis 不可用，由调用方决定如何上报
    """
    return bool(get_redis().set(lock_key, lock_value, ex=expire_seconds, nx=True))


def release_lock(lock_key: str, lock_value: str) -> bool:
    """释放分布式锁（Lua 脚本保证只删除自己持有的锁）"""
    try:
        return get_redis().eval(_RELEASE_LOCK_SCRIPT, 1, lock_key, lock_value) == 1
    except redis.RedisError as e:
        logger.error("Failed to release lock %s: %s", lock_key, e)
        return False
