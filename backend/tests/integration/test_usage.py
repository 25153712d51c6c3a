"""Integration tests for usage metering."""
from datetime import datetime, timedelta
from decimal import Decimal
from uuid import uuid4

import pytest
from prometheus_client import REGISTRY
from sqlalchemy.ext.asyncio import AsyncSession

from usage_billing.cache import InMemoryCache
from usage_billing.exceptions import InsufficientContextError, ValidationError
from usage_billing.models.balance_transaction import BalanceTransaction, TransactionType
from usage_billing.models.usage_record import SandboxUsage
from usage_billing.schemas.usage import (
    AIUsageCreate,
    DatabaseUsageCreate,
    DeploymentUsageCreate,
    SandboxUsageCreate,
    StorageUsageCreate,
)
from usage_billing.services.ledger_service import LedgerService
from usage_billing.services.model_registry import ModelRegistry
from usage_billing.services.usage_service import UsageMeteringService

START = datetime(2025, 3, 1, 12, 0, 0)


@pytest.mark.asyncio
async def test_sandbox_session_bills_whole_minutes(db_session: AsyncSession, make_user) -> None:
    """A 90 second session is billed as 2 minutes at 0.00168/min."""
    user = await make_user(balance="1")
    service = UsageMeteringService(db_session)

    session = await service.start_sandbox_session(user.id, "sbx_1", project_id="proj_1", start_time=START)
    await db_session.commit()
    charge = await service.end_sandbox_session(session.session_id, end_time=START + timedelta(seconds=90))
    await db_session.commit()

    assert charge.provider_cost_usd == Decimal("0.00336")
    assert charge.balance_after == Decimal("0.99664")

    record = await db_session.get(SandboxUsage, session.session_id)
    assert record.duration_minutes == 2
    transaction = await db_session.get(BalanceTransaction, charge.transaction_id)
    assert transaction.type == TransactionType.SANDBOX_USAGE
    assert transaction.description == "Sandbox session ended: 2 minutes"
    assert transaction.extra_metadata["duration_minutes"] == 2


@pytest.mark.asyncio
async def test_ending_a_session_twice_charges_once(db_session: AsyncSession, make_user) -> None:
    user = await make_user(balance="1")
    user_id = user.id
    service = UsageMeteringService(db_session)
    session = await service.start_sandbox_session(user_id, "sbx_2", start_time=START)

    first = await service.end_sandbox_session(session.session_id, end_time=START + timedelta(minutes=10))
    second = await service.end_sandbox_session(session.session_id, end_time=START + timedelta(minutes=20))
    await db_session.commit()

    assert second.transaction_id == first.transaction_id
    assert second.provider_cost_usd == Decimal("0.01680")
    assert await LedgerService(db_session).get_balance(user_id) == Decimal("0.98320")


@pytest.mark.asyncio
async def test_zero_length_session_costs_nothing(db_session: AsyncSession, make_user) -> None:
    user = await make_user(balance="1")
    service = UsageMeteringService(db_session)
    session = await service.start_sandbox_session(user.id, "sbx_3", start_time=START)

    charge = await service.end_sandbox_session(session.session_id, end_time=START)

    assert charge.provider_cost_usd == Decimal("0.00000")
    assert charge.transaction_id is None


@pytest.mark.asyncio
async def test_ending_unknown_session_is_insufficient_context(db_session: AsyncSession) -> None:
    with pytest.raises(InsufficientContextError):
        await UsageMeteringService(db_session).end_sandbox_session(uuid4())


@pytest.mark.asyncio
async def test_session_cannot_end_before_it_started(db_session: AsyncSession, make_user) -> None:
    user = await make_user(balance="1")
    service = UsageMeteringService(db_session)
    session = await service.start_sandbox_session(user.id, "sbx_4", start_time=START)

    with pytest.raises(ValidationError):
        await service.end_sandbox_session(session.session_id, end_time=START - timedelta(seconds=1))


@pytest.mark.asyncio
async def test_track_sandbox_usage_in_one_call(db_session: AsyncSession, make_user) -> None:
    user = await make_user(balance="1")
    charge = await UsageMeteringService(db_session).track_sandbox_usage(
        SandboxUsageCreate(user_id=user.id, sandbox_id="sbx_5", start_time=START, end_time=START + timedelta(minutes=61))
    )

    assert charge.provider_cost_usd == Decimal("0.10248")


@pytest.mark.asyncio
async def test_object_storage_charges_size_and_operations(db_session: AsyncSession, make_user) -> None:
    user = await make_user(balance="1")
    charge = await UsageMeteringService(db_session).track_storage_usage(
        StorageUsageCreate(
            user_id=user.id,
            storage_type="object",
            size_gb=Decimal("10"),
            operations=2_000_000,
            period_start=START,
            period_end=START + timedelta(days=30),
        )
    )

    # 10 GB * 0.015 + 2M ops * 0.36 / 1M
    assert charge.provider_cost_usd == Decimal("0.87000")
    assert charge.balance_after == Decimal("0.13000")


@pytest.mark.asyncio
async def test_database_storage_uses_database_rate(db_session: AsyncSession, make_user) -> None:
    user = await make_user(balance="1")
    charge = await UsageMeteringService(db_session).track_storage_usage(
        StorageUsageCreate(
            user_id=user.id,
            storage_type="database",
            size_gb=Decimal("2"),
            period_start=START,
            period_end=START + timedelta(days=30),
        )
    )

    assert charge.provider_cost_usd == Decimal("0.25000")


@pytest.mark.asyncio
async def test_deployment_is_flat_rate(db_session: AsyncSession, make_user) -> None:
    user = await make_user(balance="1")
    charge = await UsageMeteringService(db_session).track_deployment_usage(
        DeploymentUsageCreate(user_id=user.id, deployment_id="dpl_1", build_duration_minutes=3)
    )

    assert charge.provider_cost_usd == Decimal("0.01000")
    transaction = await db_session.get(BalanceTransaction, charge.transaction_id)
    assert transaction.type == TransactionType.DEPLOYMENT


@pytest.mark.asyncio
async def test_database_compute_hours(db_session: AsyncSession, make_user) -> None:
    user = await make_user(balance="1")
    charge = await UsageMeteringService(db_session).track_database_usage(
        DatabaseUsageCreate(
            user_id=user.id,
            usage_kind="compute",
            quantity=Decimal("10"),
            period_start=START,
            period_end=START + timedelta(hours=10),
        )
    )

    assert charge.provider_cost_usd == Decimal("0.13440")


@pytest.mark.asyncio
async def test_ai_usage_without_subscription_debits_full_cost(db_session: AsyncSession, make_user) -> None:
    user = await make_user(balance="1")
    service = UsageMeteringService(db_session, ModelRegistry(db_session, InMemoryCache()))

    charge = await service.track_ai_usage(
        AIUsageCreate(
            user_id=user.id,
            model_id="anthropic/claude-sonnet-4.5",
            input_tokens=10_000,
            output_tokens=2_000,
        )
    )

    # 10k * 3/1M + 2k * 15/1M
    assert charge.provider_cost_usd == Decimal("0.06000")
    assert charge.credits_consumed == 0
    assert charge.balance_charged_usd == Decimal("0.06000")
    assert charge.balance_after == Decimal("0.94000")


@pytest.mark.asyncio
async def test_ai_usage_draws_plan_credits_first(db_session: AsyncSession, make_user, plans, make_subscription) -> None:
    user = await make_user(balance="1")
    subscription = await make_subscription(user, plans["HOBBY"], monthly_credits_used=95)
    service = UsageMeteringService(db_session)

    # 10 credits needed, 5 left in the allowance: half the cost hits the balance
    charge = await service.track_ai_usage(
        AIUsageCreate(user_id=user.id, model_id="anthropic/claude-sonnet-4.5", input_tokens=10_000, output_tokens=0)
    )
    await db_session.commit()

    assert charge.provider_cost_usd == Decimal("0.03000")
    assert charge.credits_consumed == 5
    assert charge.balance_charged_usd == Decimal("0.01500")

    await db_session.refresh(subscription)
    assert subscription.monthly_credits_used == 100


@pytest.mark.asyncio
async def test_ai_usage_fully_covered_by_credits_writes_no_debit(
    db_session: AsyncSession, make_user, plans, make_subscription
) -> None:
    user = await make_user(balance="1")
    await make_subscription(user, plans["PRO"])

    charge = await UsageMeteringService(db_session).track_ai_usage(
        AIUsageCreate(user_id=user.id, model_id="openai/gpt-5-mini", input_tokens=1500, output_tokens=400)
    )

    assert charge.credits_consumed == 2
    assert charge.balance_charged_usd == Decimal("0.00000")
    assert charge.transaction_id is None
    assert charge.provider_cost_usd > 0


@pytest.mark.asyncio
async def test_stale_sessions_are_closed_at_the_cutoff(db_session: AsyncSession, make_user) -> None:
    user = await make_user(balance="5")
    user_id = user.id
    service = UsageMeteringService(db_session)
    stale = await service.start_sandbox_session(user_id, "sbx_stale", start_time=START)
    fresh = await service.start_sandbox_session(user_id, "sbx_fresh", start_time=START + timedelta(hours=4))
    await db_session.commit()

    summary = await service.close_stale_sessions(max_age_minutes=60, now=START + timedelta(hours=4, minutes=30))

    assert summary.processed == 1
    assert summary.errors == []
    stale_record = await db_session.get(SandboxUsage, stale.session_id, populate_existing=True)
    fresh_record = await db_session.get(SandboxUsage, fresh.session_id, populate_existing=True)
    assert stale_record.end_time == START + timedelta(minutes=60)
    assert stale_record.duration_minutes == 60
    assert fresh_record.end_time is None


@pytest.mark.asyncio
async def test_usage_breakdown_groups_by_resource(db_session: AsyncSession, make_user) -> None:
    user = await make_user(balance="5")
    service = UsageMeteringService(db_session)
    await service.track_deployment_usage(DeploymentUsageCreate(user_id=user.id))
    await service.track_deployment_usage(DeploymentUsageCreate(user_id=user.id))
    await service.track_sandbox_usage(
        SandboxUsageCreate(user_id=user.id, sandbox_id="sbx", start_time=START, end_time=START + timedelta(minutes=1))
    )
    await db_session.commit()

    breakdown = await service.get_usage_breakdown(user.id, since=datetime.utcnow() - timedelta(days=1))
    by_resource = {item.resource: item for item in breakdown.items}

    assert by_resource["deployment"].count == 2
    assert by_resource["deployment"].total_cost_usd == Decimal("0.02000")
    assert by_resource["sandbox"].total_cost_usd == Decimal("0.00168")
    assert breakdown.total_cost_usd == Decimal("0.02168")


@pytest.mark.asyncio
async def test_usage_charges_reconcile_with_balance(db_session: AsyncSession, make_user) -> None:
    user = await make_user(balance="2")
    service = UsageMeteringService(db_session)
    await service.track_deployment_usage(DeploymentUsageCreate(user_id=user.id))
    await service.track_ai_usage(AIUsageCreate(user_id=user.id, model_id="unknown/model", input_tokens=1, output_tokens=1))
    await db_session.commit()

    assert (await LedgerService(db_session).reconcile_balance(user.id)).is_consistent


@pytest.mark.asyncio
async def test_stale_session_sweep_isolates_failures(db_session: AsyncSession, make_user) -> None:
    """A session whose owner no longer exists fails alone; the rest are still closed."""
    user = await make_user(balance="5")
    user_id = user.id
    service = UsageMeteringService(db_session)
    healthy = await service.start_sandbox_session(user_id, "sbx_ok", start_time=START)
    orphan = SandboxUsage(
        user_id=uuid4(),
        sandbox_id="sbx_orphan",
        start_time=START - timedelta(minutes=5),
        provider_cost_usd=Decimal("0"),
    )
    db_session.add(orphan)
    await db_session.commit()
    orphan_id = orphan.id
    open_before = REGISTRY.get_sample_value("sandbox_sessions_open")

    summary = await service.close_stale_sessions(max_age_minutes=60, now=START + timedelta(hours=2))

    assert summary.processed == 1
    assert [error.item_id for error in summary.errors] == [str(orphan_id)]
    assert "not found" in summary.errors[0].error
    assert REGISTRY.get_sample_value("sandbox_sessions_open") == open_before - 1

    orphan_record = await db_session.get(SandboxUsage, orphan_id, populate_existing=True)
    healthy_record = await db_session.get(SandboxUsage, healthy.session_id, populate_existing=True)
    assert orphan_record.end_time is None
    assert healthy_record.end_time == START + timedelta(minutes=60)
    assert await LedgerService(db_session).get_balance(user_id) == Decimal("4.89920")


@pytest.mark.asyncio
async def test_zero_max_age_closes_sessions_at_their_start(db_session: AsyncSession, make_user) -> None:
    user = await make_user(balance="1")
    user_id = user.id
    service = UsageMeteringService(db_session)
    session = await service.start_sandbox_session(user_id, "sbx_zero", start_time=START)
    await db_session.commit()

    summary = await service.close_stale_sessions(max_age_minutes=0, now=START + timedelta(seconds=30))

    assert summary.processed == 1
    record = await db_session.get(SandboxUsage, session.session_id, populate_existing=True)
    assert record.end_time == START
    assert record.duration_minutes == 0
    assert await LedgerService(db_session).get_balance(user_id) == Decimal("1.00000")
