"""Tests for the scheduled billing jobs."""
from datetime import datetime, timedelta

import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from usage_billing.models.subscription import Subscription, SubscriptionStatus
from usage_billing.workers import grace_period, plan_changes, session_reaper, webhook_retry
from usage_billing.workers.scheduler import WorkerSettings


@pytest.fixture
def patch_sessions(monkeypatch, session_factory):
    for module in (grace_period, plan_changes, session_reaper, webhook_retry):
        monkeypatch.setattr(module, "AsyncSessionLocal", session_factory)


@pytest.mark.asyncio
async def test_expire_job_cancels_lapsed_subscriptions(
    db_session: AsyncSession, make_user, plans, make_subscription, patch_sessions
) -> None:
    user = await make_user()
    now = datetime.utcnow()
    subscription = await make_subscription(
        user,
        plans["PRO"],
        status=SubscriptionStatus.PAST_DUE,
        payment_failed_at=now - timedelta(days=8),
        grace_period_ends_at=now - timedelta(days=1),
    )
    subscription_id = subscription.id

    result = await grace_period.expire_grace_periods({})

    assert result == {"processed": 1, "errors": []}
    subscription = await db_session.get(Subscription, subscription_id, populate_existing=True)
    assert subscription.status == SubscriptionStatus.CANCELLED


@pytest.mark.asyncio
async def test_jobs_with_nothing_to_do(db_session: AsyncSession, patch_sessions) -> None:
    assert (await grace_period.send_grace_reminders({}))["processed"] == 0
    assert (await plan_changes.apply_pending_plan_changes({}))["processed"] == 0
    assert (await webhook_retry.retry_failed_webhooks({}))["processed"] == 0
    assert (await session_reaper.close_stale_sandbox_sessions({}))["processed"] == 0


def test_worker_schedules_every_job() -> None:
    scheduled = {job.coroutine for job in WorkerSettings.cron_jobs}

    assert scheduled == set(WorkerSettings.functions)
