"""
请求路由层使用的内部接口

- verify-tool-access: 返回 {"ok": bool}，身份无法确认时拒绝，内部错误时放行
- gate: 直接给出 302 跳转（未登录 -> 登录页，等级不足 -> 价格页）

两者每次都从存储重新解析，不使用等级缓存。
"""
import logging
from urllib.parse import urlencode

from fastapi import APIRouter
from fastapi.responses import RedirectResponse
from sqlmodel import Session

from tiergate.api.deps import OptionalIdentity, SessionDep
from tiergate.api.schemas import ApiEnvelope, ToolAccessData
from tiergate.core.security import Identity
from tiergate.core.tiers import get_tier_model
from tiergate.services.access import AccessDecision, check_tool_access, safe_redirect

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/internal", tags=["internal"])

LOGIN_PATH = "/login.html"
PRICING_PATH = "/pricing.html"


def _probe(
    session: Session, identity: Identity | None, path: str
) -> tuple[str | None, AccessDecision]:
    try:
        tool_id = get_tier_model().tool_id_for_path(path)
    except Exception as e:
        logger.error("Tool path lookup failed for %s: %s", path, e)
        return None, AccessDecision(True, "error_fail_open")
    if tool_id is None:
        return None, AccessDecision(True, "not_a_tool")
    return tool_id, check_tool_access(session, identity, tool_id)


@router.get("/verify-tool-access", response_model=ApiEnvelope)
def verify_tool_access(session: SessionDep, identity: OptionalIdentity, path: str = "") -> ApiEnvelope:
    tool_id, decision = _probe(session, identity, path)
    return ApiEnvelope(
        data=ToolAccessData(
            ok=decision.allowed,
            tool=tool_id,
            reason=decision.reason,
            required_tier=decision.required_tier,
        )
    )


@router.get("/gate", response_model=None)
def gate(session: SessionDep, identity: OptionalIdentity, path: str = "") -> ApiEnvelope | RedirectResponse:
    tool_id, decision = _probe(session, identity, path)
    if decision.allowed:
        return ApiEnvelope(data=ToolAccessData(ok=True, tool=tool_id, reason=decision.reason))
    if decision.reason == "no_identity":
        query = urlencode({"redirect": safe_redirect(path)})
        return RedirectResponse(f"{LOGIN_PATH}?{query}", status_code=302)
    params = {"tool": tool_id or ""}
    if decision.required_tier:
        params["required"] = decision.required_tier
    return RedirectResponse(f"{PRICING_PATH}?{urlencode(params)}", status_code=302)
