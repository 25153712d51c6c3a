"""Integration tests for payment-failure grace periods."""
from datetime import datetime, timedelta

import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from usage_billing.exceptions import ValidationError
from usage_billing.models.subscription import Subscription, SubscriptionStatus
from usage_billing.services.grace_period_service import GracePeriodService
from utils.notifications import RecordingNotifications

FAILED_AT = datetime(2025, 2, 10, 8, 0, 0)


class BrokenDowngrade(GracePeriodService):
    """Grace service whose downgrade fails for one subscription."""

    def __init__(self, db, notifications, failing_subscription_id):
        super().__init__(db, notifications)
        self.failing_subscription_id = failing_subscription_id

    async def _expire(self, subscription, now):
        if subscription.id == self.failing_subscription_id:
            raise RuntimeError("plan catalog unavailable")
        return await super()._expire(subscription, now)


@pytest.fixture
def notifications() -> RecordingNotifications:
    return RecordingNotifications()


@pytest.fixture
def past_due(db_session: AsyncSession, make_user, plans, make_subscription, notifications):
    """Create a PRO subscriber whose payment failed at FAILED_AT."""

    async def _make():
        user = await make_user()
        subscription = await make_subscription(user, plans["PRO"])
        service = GracePeriodService(db_session, notifications)
        await service.start_grace_period(user.id, now=FAILED_AT)
        await db_session.commit()
        return user, subscription

    return _make


@pytest.mark.asyncio
async def test_start_grace_period_moves_to_past_due(db_session: AsyncSession, past_due) -> None:
    _, subscription = await past_due()
    await db_session.refresh(subscription)

    assert subscription.status == SubscriptionStatus.PAST_DUE
    assert subscription.payment_failed_at == FAILED_AT
    assert subscription.grace_period_ends_at == FAILED_AT + timedelta(days=7)


@pytest.mark.asyncio
async def test_status_on_day_three(db_session: AsyncSession, past_due) -> None:
    user, _ = await past_due()

    status = await GracePeriodService(db_session).get_grace_period_status(
        user.id, now=FAILED_AT + timedelta(days=3, hours=2)
    )

    assert status.is_in_grace_period
    assert status.days_since_failure == 3
    assert status.days_remaining == 4
    assert status.should_send_reminder
    assert status.can_retry_payment
    assert status.next_reminder_day == 5


@pytest.mark.asyncio
async def test_user_without_subscription_is_not_in_grace(db_session: AsyncSession, make_user) -> None:
    user = await make_user()

    status = await GracePeriodService(db_session).get_grace_period_status(user.id)

    assert not status.is_in_grace_period
    assert status.days_remaining == 0


@pytest.mark.asyncio
async def test_repeated_failure_keeps_original_window(db_session: AsyncSession, past_due) -> None:
    user, subscription = await past_due()

    await GracePeriodService(db_session).start_grace_period(user.id, now=FAILED_AT + timedelta(days=2))
    await db_session.commit()
    await db_session.refresh(subscription)

    assert subscription.payment_failed_at == FAILED_AT
    assert subscription.grace_period_ends_at == FAILED_AT + timedelta(days=7)


@pytest.mark.asyncio
async def test_reminders_are_sent_once_per_day_bucket(
    db_session: AsyncSession, past_due, notifications: RecordingNotifications
) -> None:
    user, _ = await past_due()
    service = GracePeriodService(db_session, notifications)

    first = await service.send_grace_period_reminders(now=FAILED_AT + timedelta(days=1, hours=1))
    repeat = await service.send_grace_period_reminders(now=FAILED_AT + timedelta(days=1, hours=5))
    off_day = await service.send_grace_period_reminders(now=FAILED_AT + timedelta(days=2, hours=1))
    day_three = await service.send_grace_period_reminders(now=FAILED_AT + timedelta(days=3, hours=1))

    assert (first.processed, repeat.processed, off_day.processed, day_three.processed) == (1, 0, 0, 1)
    reminders = [n for n in notifications.sent if n["template"] == "grace_period_reminder"]
    assert [n["vars"]["days_remaining"] for n in reminders] == [6, 4]
    assert all(n["to"] == user.email for n in reminders)


@pytest.mark.asyncio
async def test_expired_grace_period_downgrades_and_cancels(
    db_session: AsyncSession, past_due, plans, notifications: RecordingNotifications
) -> None:
    _, subscription = await past_due()
    subscription_id = subscription.id
    hobby_id = plans["HOBBY"].id
    service = GracePeriodService(db_session, notifications)

    not_yet = await service.process_expired_grace_periods(now=FAILED_AT + timedelta(days=6))
    assert not_yet.processed == 0

    expired_at = FAILED_AT + timedelta(days=8)
    summary = await service.process_expired_grace_periods(now=expired_at)

    assert summary.processed == 1
    assert summary.errors == []
    subscription = await db_session.get(Subscription, subscription_id, populate_existing=True)
    assert subscription.status == SubscriptionStatus.CANCELLED
    assert subscription.plan_id == hobby_id
    assert subscription.cancelled_at == expired_at
    assert subscription.grace_period_ends_at is None
    assert [n["template"] for n in notifications.sent] == ["subscription_downgraded"]

    rerun = await service.process_expired_grace_periods(now=expired_at + timedelta(hours=1))
    assert rerun.processed == 0


@pytest.mark.asyncio
async def test_end_grace_period_directly(db_session: AsyncSession, past_due, plans) -> None:
    user, subscription = await past_due()
    ended_at = FAILED_AT + timedelta(days=4)

    await GracePeriodService(db_session).end_grace_period(user.id, now=ended_at)
    await db_session.commit()
    await db_session.refresh(subscription)

    assert subscription.status == SubscriptionStatus.CANCELLED
    assert subscription.plan_id == plans["HOBBY"].id
    assert subscription.cancelled_at == ended_at


@pytest.mark.asyncio
async def test_recovery_restores_active(db_session: AsyncSession, past_due) -> None:
    user, subscription = await past_due()
    service = GracePeriodService(db_session)

    await service.recover_from_grace_period(user.id)
    await db_session.commit()
    await db_session.refresh(subscription)

    assert subscription.status == SubscriptionStatus.ACTIVE
    assert subscription.payment_failed_at is None
    assert subscription.grace_period_ends_at is None
    assert not (await service.get_grace_period_status(user.id)).is_in_grace_period


@pytest.mark.asyncio
async def test_cancelled_subscription_cannot_enter_or_leave_grace(
    db_session: AsyncSession, make_user, plans, make_subscription
) -> None:
    user = await make_user()
    await make_subscription(user, plans["STARTER"], status=SubscriptionStatus.CANCELLED)
    service = GracePeriodService(db_session)

    with pytest.raises(ValidationError):
        await service.start_grace_period(user.id)
    with pytest.raises(ValidationError):
        await service.recover_from_grace_period(user.id)


@pytest.mark.asyncio
async def test_expiry_sweep_continues_past_a_failing_subscription(
    db_session: AsyncSession, past_due, plans, notifications: RecordingNotifications
) -> None:
    _, healthy = await past_due()
    _, broken = await past_due()
    healthy_id, broken_id = healthy.id, broken.id
    hobby_id, pro_id = plans["HOBBY"].id, plans["PRO"].id
    service = BrokenDowngrade(db_session, notifications, broken_id)

    summary = await service.process_expired_grace_periods(now=FAILED_AT + timedelta(days=8))

    assert summary.processed == 1
    assert [error.item_id for error in summary.errors] == [str(broken_id)]
    assert summary.errors[0].error == "plan catalog unavailable"

    healthy = await db_session.get(Subscription, healthy_id, populate_existing=True)
    broken = await db_session.get(Subscription, broken_id, populate_existing=True)
    assert healthy.status == SubscriptionStatus.CANCELLED
    assert healthy.plan_id == hobby_id
    assert broken.status == SubscriptionStatus.PAST_DUE
    assert broken.plan_id == pro_id
    assert [n["template"] for n in notifications.sent] == ["subscription_downgraded"]


@pytest.mark.asyncio
async def test_reminder_sweep_reports_undeliverable_reminders(
    db_session: AsyncSession, past_due, notifications: RecordingNotifications
) -> None:
    reachable, _ = await past_due()
    unreachable, unreachable_subscription = await past_due()
    reachable_email = reachable.email
    unreachable_subscription_id = unreachable_subscription.id
    notifications.unreachable.add(unreachable.email)

    summary = await GracePeriodService(db_session, notifications).send_grace_period_reminders(
        now=FAILED_AT + timedelta(days=1, hours=1)
    )

    assert summary.processed == 1
    assert [error.item_id for error in summary.errors] == [str(unreachable_subscription_id)]
    assert summary.errors[0].error == "notification delivery failed"
    assert [n["to"] for n in notifications.sent] == [reachable_email]
