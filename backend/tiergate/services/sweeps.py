"""
定时对账任务

两个独立、幂等的批处理：
- run_expiry_notifier: 7 天 / 1 天两个窗口内即将到期的权益发送提醒，只读不写
- run_downgrade_sweep: 到期权益置为 expired 并通知；付费等级用户在没有任何生效权益、
  且最近一次月付权益过期超过 30 天后降为 guest

每条记录独立处理，单条失败（存储或通知）只记录日志，不中断批次。
"""
from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from sqlmodel import Session

from tiergate import crud
from tiergate.core.tiers import GUEST_TIER, TierModel, get_tier_model
from tiergate.enums import AuditAction
from tiergate.models import Entitlement, as_utc, utc_now
from tiergate.services.notifier import Notifier

logger = logging.getLogger(__name__)

CRON_ACTOR = "cron"
REMINDER_WINDOWS_DAYS = (7, 1)
DUNNING_WINDOW_DAYS = 30


@dataclass
class ExpiryNotifierReport:
    ok: bool = True
    notified: dict[str, int] = field(default_factory=dict)
    errors: int = 0


@dataclass
class DowngradeReport:
    ok: bool = True
    entitlements_marked_expired: int = 0
    expired_emails_sent: int = 0
    downgraded_count: int = 0
    renewal_emails_sent: int = 0
    errors: int = 0


def _entitlement_email(session: Session, ent: Entitlement, cache: dict[str, str | None]) -> str | None:
    """权益自带邮箱优先，否则查 profile"""
    if ent.email:
        return ent.email
    if not ent.user_id:
        return None
    if ent.user_id not in cache:
        profile = crud.get_profile(session=session, user_id=ent.user_id)
        cache[ent.user_id] = profile.email if profile else None
    return cache[ent.user_id]


def run_expiry_notifier(
    session: Session, notifier: Notifier, *, now: datetime | None = None
) -> ExpiryNotifierReport:
    now = now or utc_now()
    report = ExpiryNotifierReport()
    emails: dict[str, str | None] = {}

    for days in REMINDER_WINDOWS_DAYS:
        window = f"{days}d"
        sent_in_window: set[str] = set()
        rows = crud.find_expiring_between(session=session, start=now, end=now + timedelta(days=days))
        for ent in rows:
            try:
                email = _entitlement_email(session, ent, emails)
                if not email or email in sent_in_window:
                    continue
                sent_in_window.add(email)
                remaining = (as_utc(ent.expires_at) - now).total_seconds() / 86400  # type: ignore[operator]
                days_left = max(1, math.ceil(remaining))
                if not notifier.send_expiry_reminder(email, ent.product_key, days_left):
                    logger.error("Expiry reminder to %s was not delivered", email)
                    report.errors += 1
            except Exception as e:
                session.rollback()
                report.errors += 1
                logger.exception("failed expiry reminder for entitlement %s: %s", ent.id, e)
        report.notified[window] = len(sent_in_window)

    logger.info("expiry notifier done: notified=%s errors=%s", report.notified, report.errors)
    return report


def run_downgrade_sweep(
    session: Session,
    notifier: Notifier,
    *,
    now: datetime | None = None,
    model: TierModel | None = None,
) -> DowngradeReport:
    now = now or utc_now()
    model = model or get_tier_model()
    report = DowngradeReport()
    emails: dict[str, str | None] = {}

    # 1) 到期权益 -> expired，每个邮箱只通知一次
    expired_emails: set[str] = set()
    for ent in crud.find_expired_before(session=session, now=now):
        ent_id = ent.id
        try:
            product_key = ent.product_key
            email = _entitlement_email(session, ent, emails)
            user_id = ent.user_id
            crud.expire_entitlement(session=session, entitlement=ent, now=now)
            crud.write_audit(
                session=session,
                actor=CRON_ACTOR,
                action=AuditAction.entitlement_expired,
                target_user_id=user_id,
                target_email=email,
                details={
                    "product_key": product_key,
                    "entitlement_id": ent_id,
                    "reason": "expired_by_sweep",
                },
            )
            session.commit()
            report.entitlements_marked_expired += 1
        except Exception as e:
            session.rollback()
            report.errors += 1
            logger.exception("failed expiring entitlement %s: %s", ent_id, e)
            continue
        if email and email not in expired_emails:
            expired_emails.add(email)
            if notifier.send_access_expired(email, product_key):
                report.expired_emails_sent += 1
            else:
                report.errors += 1

    # 2) 付费等级、无生效权益、最近月付权益过期超过 30 天 -> guest
    cutoff = now - timedelta(days=DUNNING_WINDOW_DAYS)
    calculator_keys = model.calculator_product_keys()
    renewal_sent: set[str] = set()
    for profile in crud.list_profiles_on_tiers(session=session, tiers=model.paid_tiers()):
        profile_id = profile.id
        try:
            if crud.count_active_for_user(session=session, user_id=profile.id) > 0:
                continue
            last_expiry = crud.latest_expiry(
                session=session, user_id=profile.id, product_keys=calculator_keys
            )
            if last_expiry is None or last_expiry >= cutoff:
                continue
            previous_tier = profile.tier or GUEST_TIER
            email = profile.email
            crud.set_profile_tier(session=session, profile=profile, tier=GUEST_TIER)
            session.commit()
            report.downgraded_count += 1
        except Exception as e:
            session.rollback()
            report.errors += 1
            logger.exception("failed downgrading profile %s: %s", profile_id, e)
            continue

        if email and email not in renewal_sent:
            renewal_sent.add(email)
            if notifier.send_renewal(email, previous_tier, model.renewal_link(previous_tier)):
                report.renewal_emails_sent += 1
            else:
                report.errors += 1

        try:
            crud.write_audit(
                session=session,
                actor=CRON_ACTOR,
                action=AuditAction.subscription_renewal_downgrade,
                target_user_id=profile_id,
                target_email=email,
                details={
                    "previous_tier": previous_tier,
                    "new_tier": GUEST_TIER,
                    "reason": "no_payment_30_days",
                    "last_expiry": last_expiry.isoformat(),
                },
            )
            session.commit()
        except Exception as e:
            session.rollback()
            report.errors += 1
            logger.exception("failed writing downgrade audit for %s: %s", profile_id, e)

    logger.info(
        "downgrade sweep done: expired=%s downgraded=%s renewal_emails=%s errors=%s",
        report.entitlements_marked_expired,
        report.downgraded_count,
        report.renewal_emails_sent,
        report.errors,
    )
    return report
