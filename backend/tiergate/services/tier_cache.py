"""
有效等级短期缓存（Redis，默认 60 秒）

只服务于前端 UI 的显示/隐藏逻辑；中间件、访问判定、对账都必须绕过这里。
登录、登出时显式失效。Redis 不可用时直接回退到实时解析。
"""
import json
import logging

from sqlmodel import Session

from tiergate.core.config import settings
from tiergate.core.redis import get_redis
from tiergate.core.security import Identity
from tiergate.enums import TierSource
from tiergate.services.tier_resolver import TierResolution, resolve_effective_tier

logger = logging.getLogger(__name__)

CACHE_KEY = "tiergate:effective_tier:{user_id}"


def _key(user_id: str) -> str:
    return CACHE_KEY.format(user_id=user_id)


def get_cached_tier(
    session: Session, identity: Identity, *, revalidate: bool = False
) -> tuple[TierResolution, bool]:
    """
    Returns:
        (解析结果, 是否命中缓存)；命中时 source 为 cache
    """
    if not revalidate:
        try:
            raw = get_redis().get(_key(identity.id))
        except Exception as e:
            logger.warning("Tier cache read failed: %s", e)
            raw = None
        if raw:
            try:
                cached = json.loads(raw)
                return TierResolution(str(cached["tier"]), TierSource.cache), True
            except (ValueError, KeyError, TypeError):
                logger.warning("Discarding malformed tier cache entry for %s", identity.id)

    resolution = resolve_effective_tier(session, identity)
    try:
        get_redis().set(
            _key(identity.id),
            json.dumps({"tier": resolution.tier, "source": resolution.source.value}),
            ex=settings.TIER_CACHE_TTL_SECONDS,
        )
    except Exception as e:
        logger.warning("Tier cache write failed: %s", e)
    return resolution, False


def invalidate_tier_cache(user_id: str) -> None:
    try:
        get_redis().delete(_key(user_id))
    except Exception as e:
        logger.warning("Tier cache invalidation failed for %s: %s", user_id, e)
