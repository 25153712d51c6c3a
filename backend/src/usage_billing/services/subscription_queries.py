"""Subscription and plan lookups shared by the subscription services."""
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from usage_billing.exceptions import NotFoundError
from usage_billing.models.plan import Plan
from usage_billing.models.subscription import Subscription


async def load_subscription(db: AsyncSession, user_id: UUID, for_update: bool = False) -> Subscription:
    """
    Load a user's subscription.

    Args:
        db: Database session
        user_id: User UUID
        for_update: Hold a row lock until the transaction ends

    Raises:
        NotFoundError: If the user has no subscription
    """
    query = select(Subscription).where(Subscription.user_id == user_id)
    if for_update:
        query = query.with_for_update().execution_options(populate_existing=True)
    result = await db.execute(query)
    subscription = result.scalar_one_or_none()
    if not subscription:
        raise NotFoundError(f"No subscription for user {user_id}")
    return subscription


async def lock_subscription_by_id(db: AsyncSession, subscription_id: UUID) -> Subscription | None:
    result = await db.execute(
        select(Subscription)
        .where(Subscription.id == subscription_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def load_plan(db: AsyncSession, plan_id: UUID) -> Plan:
    """
    Load a plan by ID.

    Raises:
        NotFoundError: If the plan doesn't exist
    """
    plan = await db.get(Plan, plan_id)
    if not plan:
        raise NotFoundError(f"Plan {plan_id} not found")
    return plan


async def load_lowest_tier_plan(db: AsyncSession) -> Plan:
    """
    Return the cheapest active plan (fewest credits breaks ties).

    Raises:
        NotFoundError: If no active plan exists
    """
    result = await db.execute(
        select(Plan)
        .where(Plan.is_active.is_(True))
        .order_by(Plan.price_monthly_usd.asc(), Plan.monthly_credits.asc())
        .limit(1)
    )
    plan = result.scalar_one_or_none()
    if not plan:
        raise NotFoundError("No active plan available for downgrade")
    return plan
