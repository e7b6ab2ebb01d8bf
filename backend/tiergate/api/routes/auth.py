"""
会话回调路由

登录/登出本身由身份服务完成，这里只负责：
- 确保 profile 存在
- 让前端的等级缓存失效
- 返回白名单内的登录后跳转地址
"""
import logging

from fastapi import APIRouter

from tiergate import crud
from tiergate.api.deps import CurrentIdentity, SessionDep
from tiergate.api.schemas import ApiEnvelope, SessionStartData, SessionStartRequest
from tiergate.enums import AuditAction
from tiergate.services.access import safe_redirect
from tiergate.services.tier_cache import invalidate_tier_cache

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/auth", tags=["auth"])


@router.post("/session", response_model=ApiEnvelope)
def start_session(
    session: SessionDep, identity: CurrentIdentity, body: SessionStartRequest | None = None
) -> ApiEnvelope:
    profile, created = crud.ensure_profile(
        session=session, user_id=identity.id, email=identity.email
    )
    if created:
        crud.write_audit(
            session=session,
            actor=identity.id,
            actor_email=identity.normalized_email,
            action=AuditAction.profile_created,
            target_user_id=identity.id,
            target_email=identity.normalized_email,
            details={"via": "session"},
        )
        logger.info("Created profile for %s", identity.id)
    session.commit()
    invalidate_tier_cache(identity.id)
    return ApiEnvelope(
        data=SessionStartData(
            user_id=profile.id,
            profile_created=created,
            redirect=safe_redirect(body.redirect if body else None),
        )
    )


@router.post("/logout", response_model=ApiEnvelope)
def logout(identity: CurrentIdentity) -> ApiEnvelope:
    invalidate_tier_cache(identity.id)
    return ApiEnvelope(data={"logged_out": True})
