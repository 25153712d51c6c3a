"""Grace period worker.

Runs two sweeps over PAST_DUE subscriptions:
1. Hourly: expire lapsed grace periods (downgrade to the lowest plan, cancel)
2. Daily: send the day 1, 3, 5 and 7 payment reminders
"""
from typing import Any

import structlog

from usage_billing.database import AsyncSessionLocal
from usage_billing.integrations.notification_service import NotificationService
from usage_billing.services.grace_period_service import GracePeriodService

logger = structlog.get_logger(__name__)


async def expire_grace_periods(ctx: dict[str, Any] | None = None) -> dict[str, Any]:
    """
    Expire every grace period whose window has ended.

    Returns:
        Batch summary with processed count and per-subscription errors
    """
    async with AsyncSessionLocal() as db:
        summary = await GracePeriodService(db, NotificationService()).process_expired_grace_periods()

    logger.info("grace_expiry_job_completed", processed=summary.processed, errors=len(summary.errors))
    return summary.model_dump()


async def send_grace_reminders(ctx: dict[str, Any] | None = None) -> dict[str, Any]:
    """
    Send due grace period reminders, at most one per subscription per reminder day.

    Returns:
        Batch summary with sent count and per-subscription errors
    """
    async with AsyncSessionLocal() as db:
        summary = await GracePeriodService(db, NotificationService()).send_grace_period_reminders()

    logger.info("grace_reminder_job_completed", sent=summary.processed, errors=len(summary.errors))
    return summary.model_dump()
