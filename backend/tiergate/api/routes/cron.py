"""
定时任务 HTTP 触发

供外部调度器调用；配置了 CRON_SECRET 时要求 Authorization: Bearer <secret>。
与 worker 中的调度共用同一把 Redis 锁，重复触发不会并发执行。
Redis 故障时返回 503，调度方可据此重试或告警。
"""
from collections.abc import Callable
from typing import TypeVar

from fastapi import APIRouter

from tiergate.api.deps import CronAuth, SessionDep
from tiergate.api.errors import service_unavailable
from tiergate.api.schemas import ApiEnvelope
from tiergate.services.notifier import get_notifier
from tiergate.services.sweeps import run_downgrade_sweep, run_expiry_notifier
from tiergate.worker.tasks import LockUnavailableError, run_locked

router = APIRouter(prefix="/cron", tags=["cron"], dependencies=[CronAuth])

T = TypeVar("T")


def _run(name: str, job: Callable[[], T]) -> T | None:
    try:
        return run_locked(name, job)
    except LockUnavailableError:
        raise service_unavailable("Job lock unavailable")


@router.api_route("/expiring-entitlements", methods=["GET", "POST"], response_model=ApiEnvelope)
def expiring_entitlements(session: SessionDep) -> ApiEnvelope:
    report = _run("expiring_entitlements", lambda: run_expiry_notifier(session, get_notifier()))
    if report is None:
        return ApiEnvelope(data={"ok": True, "skipped": True})
    return ApiEnvelope(data={"ok": report.ok, "notified": report.notified, "errors": report.errors})


@router.api_route("/subscription-renewal", methods=["GET", "POST"], response_model=ApiEnvelope)
def subscription_renewal(session: SessionDep) -> ApiEnvelope:
    report = _run("subscription_renewal", lambda: run_downgrade_sweep(session, get_notifier()))
    if report is None:
        return ApiEnvelope(data={"ok": True, "skipped": True})
    return ApiEnvelope(
        data={
            "ok": report.ok,
            "entitlements_marked_expired": report.entitlements_marked_expired,
            "downgraded_count": report.downgraded_count,
            "renewal_emails_sent": report.renewal_emails_sent,
            "errors": report.errors,
        }
    )
