"""Payment-failure grace periods.

Policy:
- A failed subscription payment moves the subscription to PAST_DUE for
  GRACE_PERIOD_DAYS (7) while service continues.
- Reminders go out on days 1, 3, 5 and 7 after the failure, once per day.
- A successful payment during the window restores ACTIVE.
- When the window expires the subscription drops to the lowest-tier plan and
  is CANCELLED.
"""
from datetime import datetime, timedelta
from uuid import UUID

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from usage_billing.config import settings
from usage_billing.cost_tables import REMINDER_DAYS
from usage_billing.database import run_in_transaction
from usage_billing.exceptions import ValidationError
from usage_billing.integrations.notification_service import NotificationService, notify_safely
from usage_billing.metrics import grace_period_reminders_total, grace_period_transitions_total
from usage_billing.models.plan import Plan
from usage_billing.models.subscription import Subscription, SubscriptionStatus
from usage_billing.models.user import User
from usage_billing.schemas.common import BatchResult
from usage_billing.schemas.subscription import GracePeriodStatus, GraceReminder
from usage_billing.services.subscription_queries import (
    load_lowest_tier_plan,
    load_plan,
    load_subscription,
    lock_subscription_by_id,
)

logger = structlog.get_logger(__name__)

DAY = timedelta(days=1)


def compute_grace_status(subscription: Subscription | None, now: datetime) -> GracePeriodStatus:
    """
    Derive the grace period view of a subscription at ``now``.

    The day bucket is floor(days since failure); days remaining is rounded up
    and never negative.
    """
    if (
        subscription is None
        or subscription.status != SubscriptionStatus.PAST_DUE
        or subscription.grace_period_ends_at is None
    ):
        return GracePeriodStatus(
            is_in_grace_period=False,
            payment_failed_at=subscription.payment_failed_at if subscription else None,
        )

    ends_at = subscription.grace_period_ends_at
    remaining = ends_at - now
    days_remaining = -(-remaining // DAY)
    days_since_failure = 0
    if subscription.payment_failed_at is not None:
        days_since_failure = max((now - subscription.payment_failed_at) // DAY, 0)

    return GracePeriodStatus(
        is_in_grace_period=True,
        days_since_failure=days_since_failure,
        days_remaining=max(days_remaining, 0),
        should_send_reminder=days_since_failure in REMINDER_DAYS,
        can_retry_payment=days_remaining > 0,
        next_reminder_day=next((d for d in REMINDER_DAYS if d > days_since_failure), None),
        payment_failed_at=subscription.payment_failed_at,
        grace_period_ends_at=ends_at,
    )


class GracePeriodService:
    """Service driving ACTIVE -> PAST_DUE -> ACTIVE | CANCELLED transitions."""

    def __init__(self, db: AsyncSession, notifications: NotificationService | None = None):
        """Initialize grace period service with database session and notifier."""
        self.db = db
        self.notifications = notifications or NotificationService()

    async def get_grace_period_status(self, user_id: UUID, now: datetime | None = None) -> GracePeriodStatus:
        """Grace period status for a user; users without a subscription are not in grace."""
        result = await self.db.execute(select(Subscription).where(Subscription.user_id == user_id))
        return compute_grace_status(result.scalar_one_or_none(), now or datetime.utcnow())

    async def start_grace_period(
        self,
        user_id: UUID,
        grace_days: int | None = None,
        now: datetime | None = None,
    ) -> Subscription:
        """
        Start a grace period after a failed payment.

        A subscription already PAST_DUE keeps its original window, so repeated
        failure notifications cannot extend it.

        Args:
            user_id: User whose payment failed
            grace_days: Window length (defaults to settings.grace_period_days)
            now: Failure time (defaults to now)

        Returns:
            Updated subscription

        Raises:
            NotFoundError: If the user has no subscription
            ValidationError: If the subscription is CANCELLED or EXPIRED
        """
        now = now or datetime.utcnow()
        grace_days = settings.grace_period_days if grace_days is None else grace_days
        if grace_days <= 0:
            raise ValidationError("grace_days must be positive")

        subscription = await load_subscription(self.db, user_id, for_update=True)
        if subscription.status == SubscriptionStatus.PAST_DUE:
            logger.info("grace_period_already_started", user_id=str(user_id))
            return subscription
        if subscription.status != SubscriptionStatus.ACTIVE:
            raise ValidationError(f"Cannot start a grace period from {subscription.status.value}")

        subscription.status = SubscriptionStatus.PAST_DUE
        subscription.payment_failed_at = now
        subscription.grace_period_ends_at = now + timedelta(days=grace_days)
        subscription.grace_reminder_day = None
        await self.db.flush()

        grace_period_transitions_total.labels(transition="started").inc()
        logger.info(
            "grace_period_started",
            user_id=str(user_id),
            grace_period_ends_at=subscription.grace_period_ends_at.isoformat(),
        )
        return subscription

    async def recover_from_grace_period(self, user_id: UUID) -> Subscription:
        """
        Restore ACTIVE after a successful payment. A no-op for ACTIVE subscriptions.

        Raises:
            NotFoundError: If the user has no subscription
            ValidationError: If the subscription was already cancelled or expired
        """
        subscription = await load_subscription(self.db, user_id, for_update=True)
        if subscription.status == SubscriptionStatus.ACTIVE:
            return subscription
        if subscription.status != SubscriptionStatus.PAST_DUE:
            raise ValidationError(f"Cannot recover a {subscription.status.value} subscription")

        subscription.status = SubscriptionStatus.ACTIVE
        subscription.payment_failed_at = None
        subscription.grace_period_ends_at = None
        subscription.grace_reminder_day = None
        await self.db.flush()

        grace_period_transitions_total.labels(transition="recovered").inc()
        logger.info("grace_period_recovered", user_id=str(user_id))
        return subscription

    async def end_grace_period(self, user_id: UUID, now: datetime | None = None) -> Subscription:
        """
        Expire a grace period: move to the lowest-tier plan and cancel.

        Returns:
            Updated subscription
        """
        subscription = await load_subscription(self.db, user_id, for_update=True)
        await self._expire(subscription, now or datetime.utcnow())
        return subscription

    async def get_subscriptions_needing_reminders(self, now: datetime | None = None) -> list[GraceReminder]:
        """
        PAST_DUE subscriptions still inside their window, on a reminder day,
        whose reminder for that day has not been sent.
        """
        now = now or datetime.utcnow()
        result = await self.db.execute(
            select(Subscription, User.email)
            .join(User, User.id == Subscription.user_id)
            .where(
                Subscription.status == SubscriptionStatus.PAST_DUE,
                Subscription.grace_period_ends_at >= now,
            )
        )

        reminders = []
        for subscription, email in result.all():
            status = compute_grace_status(subscription, now)
            if status.should_send_reminder and subscription.grace_reminder_day != status.days_since_failure:
                reminders.append(
                    GraceReminder(
                        subscription_id=subscription.id,
                        user_id=subscription.user_id,
                        email=email,
                        days_since_failure=status.days_since_failure,
                        days_remaining=status.days_remaining,
                        grace_period_ends_at=subscription.grace_period_ends_at,
                    )
                )
        return reminders

    async def get_expired_grace_periods(self, now: datetime | None = None) -> list[Subscription]:
        """PAST_DUE subscriptions whose grace window has ended."""
        now = now or datetime.utcnow()
        result = await self.db.execute(
            select(Subscription).where(
                Subscription.status == SubscriptionStatus.PAST_DUE,
                Subscription.grace_period_ends_at < now,
            )
        )
        return list(result.scalars().all())

    async def process_expired_grace_periods(self, now: datetime | None = None) -> BatchResult:
        """
        Expire every lapsed grace period.

        Each subscription is locked, re-checked and committed separately; one
        failure is recorded and the sweep continues.

        Returns:
            BatchResult with processed count and per-subscription errors
        """
        now = now or datetime.utcnow()
        expired = [(s.id, s.user_id) for s in await self.get_expired_grace_periods(now)]

        summary = BatchResult()
        for subscription_id, user_id in expired:
            try:
                plan = await run_in_transaction(self.db, self._expire_if_lapsed, subscription_id, now)
            except Exception as e:
                logger.exception("grace_period_expiry_failed", subscription_id=str(subscription_id))
                summary.record_error(subscription_id, e)
                continue
            if plan is None:
                continue
            summary.processed += 1

            email = await self._email_for(user_id)
            if email:
                await notify_safely(
                    self.notifications.send_subscription_downgraded(email, plan.display_name),
                    subscription_id=str(subscription_id),
                )

        logger.info("expired_grace_periods_processed", processed=summary.processed, errors=len(summary.errors))
        return summary

    async def send_grace_period_reminders(self, now: datetime | None = None) -> BatchResult:
        """
        Send one reminder per subscription per reminder day.

        The day bucket is claimed under the subscription row lock and committed
        before sending, so overlapping sweeps never send the same bucket twice.

        Returns:
            BatchResult with sent count as processed and per-subscription errors
        """
        now = now or datetime.utcnow()
        reminders = await self.get_subscriptions_needing_reminders(now)

        summary = BatchResult()
        for reminder in reminders:
            try:
                claimed = await run_in_transaction(self.db, self._claim_reminder, reminder.subscription_id, now)
            except Exception as e:
                logger.exception("grace_reminder_claim_failed", subscription_id=str(reminder.subscription_id))
                summary.record_error(reminder.subscription_id, e)
                continue

            if not claimed:
                continue

            sent = await notify_safely(
                self.notifications.send_grace_period_reminder(
                    reminder.email, reminder.days_remaining, reminder.grace_period_ends_at
                ),
                subscription_id=str(reminder.subscription_id),
            )
            if sent:
                summary.processed += 1
                grace_period_reminders_total.labels(day=str(reminder.days_since_failure)).inc()
            else:
                summary.record_error(reminder.subscription_id, "notification delivery failed")

        logger.info("grace_period_reminders_sent", sent=summary.processed, errors=len(summary.errors))
        return summary

    async def _claim_reminder(self, subscription_id: UUID, now: datetime) -> bool:
        subscription = await lock_subscription_by_id(self.db, subscription_id)
        status = compute_grace_status(subscription, now)
        if not status.should_send_reminder or subscription.grace_reminder_day == status.days_since_failure:
            return False
        subscription.grace_reminder_day = status.days_since_failure
        await self.db.flush()
        return True

    async def _expire_if_lapsed(self, subscription_id: UUID, now: datetime) -> Plan | None:
        subscription = await lock_subscription_by_id(self.db, subscription_id)
        if subscription is None or subscription.status != SubscriptionStatus.PAST_DUE:
            return None
        if subscription.grace_period_ends_at is None or subscription.grace_period_ends_at >= now:
            return None
        return await self._expire(subscription, now)

    async def _expire(self, subscription: Subscription, now: datetime) -> Plan:
        if subscription.status == SubscriptionStatus.CANCELLED:
            logger.info("grace_period_already_ended", subscription_id=str(subscription.id))
            return await load_plan(self.db, subscription.plan_id)

        lowest = await load_lowest_tier_plan(self.db)
        subscription.plan_id = lowest.id
        subscription.status = SubscriptionStatus.CANCELLED
        subscription.grace_period_ends_at = None
        subscription.pending_plan_id = None
        subscription.plan_change_at = None
        subscription.cancel_at_period_end = True
        subscription.cancelled_at = now
        await self.db.flush()

        grace_period_transitions_total.labels(transition="expired").inc()
        logger.info("grace_period_expired", user_id=str(subscription.user_id), new_plan=lowest.name)
        return lowest

    async def _email_for(self, user_id: UUID) -> str | None:
        result = await self.db.execute(select(User.email).where(User.id == user_id))
        return result.scalar_one_or_none()
