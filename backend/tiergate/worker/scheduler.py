"""
定时任务调度器
"""

import logging
from datetime import timezone

from apscheduler.schedulers.blocking import BlockingScheduler
from apscheduler.triggers.cron import CronTrigger

from tiergate.worker.tasks import downgrade_stale_subscriptions, notify_expiring_entitlements

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


def build_scheduler() -> BlockingScheduler:
    scheduler = BlockingScheduler(timezone=timezone.utc)
    scheduler.add_job(
        notify_expiring_entitlements,
        CronTrigger(hour=14, minute=0, timezone=timezone.utc),
        id="expiring_entitlements",
        replace_existing=True,
    )
    scheduler.add_job(
        downgrade_stale_subscriptions,
        CronTrigger(hour=6, minute=0, timezone=timezone.utc),
        id="subscription_renewal",
        replace_existing=True,
    )
    return scheduler


def main() -> None:
    scheduler = build_scheduler()
    logger.info(
        "Scheduler started. Expiry reminders at 14:00 UTC, downgrade sweep at 06:00 UTC daily."
    )
    scheduler.start()


if __name__ == "__main__":
    main()
