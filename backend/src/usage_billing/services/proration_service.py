"""Proration for mid-cycle plan changes."""
from datetime import datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal
from uuid import UUID

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from usage_billing.cost_tables import quantize_money
from usage_billing.database import run_in_transaction
from usage_billing.exceptions import ValidationError
from usage_billing.metrics import plan_changes_total
from usage_billing.models.payment_transaction import PaymentTransaction, PaymentTransactionStatus
from usage_billing.models.plan import Plan
from usage_billing.models.subscription import Subscription, SubscriptionStatus
from usage_billing.schemas.common import BatchResult
from usage_billing.schemas.subscription import (
    CancellationRefund,
    PendingPlanChange,
    PlanChangeOutcome,
    ProrationPreview,
    ProrationResult,
)
from usage_billing.services.subscription_queries import (
    load_plan,
    load_subscription,
    lock_subscription_by_id,
)

logger = structlog.get_logger(__name__)

DAY = timedelta(days=1)


def _ceil_days(delta: timedelta) -> int:
    return -(-delta // DAY)


def compute_proration(subscription: Subscription, old_plan: Plan, new_plan: Plan, now: datetime) -> ProrationResult:
    """
    Compute the financial effect of moving ``subscription`` to ``new_plan``.

    Upgrades charge the full monthly price difference now. The remaining share
    of the period is reported in ``prorated_percentage`` but never applied to
    the charge. Downgrades charge nothing and take effect at period end.

    Raises:
        ValidationError: Same plan, inactive target plan or non-active subscription
    """
    if subscription.status != SubscriptionStatus.ACTIVE:
        raise ValidationError(f"Plan changes require an active subscription (status: {subscription.status.value})")
    if new_plan.id == old_plan.id:
        raise ValidationError("Subscription is already on this plan")
    if not new_plan.is_active:
        raise ValidationError(f"Plan {new_plan.name} is not available")

    period_end = subscription.current_period_end
    total = period_end - subscription.current_period_start
    remaining = max(period_end - now, timedelta(0))

    days_in_period = _ceil_days(total)
    days_remaining = _ceil_days(remaining)
    if total > timedelta(0):
        percentage = (Decimal(remaining.total_seconds()) / Decimal(total.total_seconds())).quantize(
            Decimal("0.0001"), rounding=ROUND_HALF_UP
        )
    else:
        percentage = Decimal("0")

    old_price = Decimal(old_plan.price_monthly_usd)
    new_price = Decimal(new_plan.price_monthly_usd)
    credits_used = subscription.monthly_credits_used
    is_upgrade = new_price > old_price
    is_downgrade = new_price < old_price

    if is_upgrade:
        payment = quantize_money(new_price - old_price)
        available = new_plan.monthly_credits - credits_used
        effective = now
    elif is_downgrade:
        payment = quantize_money(0)
        available = old_plan.monthly_credits - credits_used
        effective = period_end
    else:
        payment = quantize_money(0)
        available = new_plan.monthly_credits - credits_used
        effective = now

    return ProrationResult(
        old_plan_id=old_plan.id,
        new_plan_id=new_plan.id,
        old_plan_name=old_plan.name,
        new_plan_name=new_plan.name,
        is_upgrade=is_upgrade,
        old_credits=old_plan.monthly_credits,
        new_credits=new_plan.monthly_credits,
        credits_used=credits_used,
        available_credits=max(available, 0),
        prorated_payment=payment,
        effective_date=effective,
        charge_immediately=is_upgrade,
        days_remaining=days_remaining,
        days_in_period=days_in_period,
        prorated_percentage=percentage,
    )


class ProrationService:
    """Service for plan changes: proration, scheduled downgrades and their sweep."""

    def __init__(self, db: AsyncSession):
        """Initialize proration service with database session."""
        self.db = db

    async def calculate_proration(
        self, user_id: UUID, new_plan_id: UUID, now: datetime | None = None
    ) -> ProrationResult:
        """
        Calculate proration for a plan change. No side effects.

        Args:
            user_id: User whose subscription changes
            new_plan_id: Target plan
            now: Evaluation time (defaults to now)

        Returns:
            ProrationResult

        Raises:
            NotFoundError: If the subscription or a plan doesn't exist
            ValidationError: If the change is not allowed
        """
        subscription = await load_subscription(self.db, user_id)
        old_plan = await load_plan(self.db, subscription.plan_id)
        new_plan = await load_plan(self.db, new_plan_id)
        return compute_proration(subscription, old_plan, new_plan, now or datetime.utcnow())

    async def apply_proration(
        self, user_id: UUID, new_plan_id: UUID, now: datetime | None = None
    ) -> PlanChangeOutcome:
        """
        Apply a plan change.

        Upgrades and same-price changes switch the plan immediately; upgrades also
        queue a PENDING payment transaction for the price difference. Downgrades
        only record the pending plan and the date it takes effect.

        Proration is recomputed under the subscription row lock, so a stale
        preview can never be applied.

        Returns:
            PlanChangeOutcome
        """
        now = now or datetime.utcnow()
        subscription = await load_subscription(self.db, user_id, for_update=True)
        old_plan = await load_plan(self.db, subscription.plan_id)
        new_plan = await load_plan(self.db, new_plan_id)
        proration = compute_proration(subscription, old_plan, new_plan, now)

        payment_id = None
        if proration.effective_date > now:
            subscription.pending_plan_id = new_plan.id
            subscription.plan_change_at = proration.effective_date
            kind = "downgrade_scheduled"
        else:
            subscription.plan_id = new_plan.id
            subscription.pending_plan_id = None
            subscription.plan_change_at = None
            if proration.is_upgrade:
                kind = "upgrade"
            elif new_plan.price_monthly_usd < old_plan.price_monthly_usd:
                # Period already over: nothing left to wait for
                kind = "downgrade_applied"
            else:
                kind = "lateral"

            if proration.charge_immediately and proration.prorated_payment > 0:
                payment = PaymentTransaction(
                    user_id=user_id,
                    amount=proration.prorated_payment,
                    currency="USD",
                    status=PaymentTransactionStatus.PENDING,
                    extra_metadata={
                        "type": "proration_upgrade",
                        "old_plan_id": str(old_plan.id),
                        "new_plan_id": str(new_plan.id),
                        "days_remaining": proration.days_remaining,
                        "credits_used": proration.credits_used,
                    },
                )
                self.db.add(payment)
                await self.db.flush()
                payment_id = payment.id

        await self.db.flush()
        plan_changes_total.labels(kind=kind).inc()
        logger.info(
            "plan_change_applied",
            user_id=str(user_id),
            kind=kind,
            old_plan=old_plan.name,
            new_plan=new_plan.name,
            prorated_payment=str(proration.prorated_payment),
            effective_date=proration.effective_date.isoformat(),
        )

        return PlanChangeOutcome(
            subscription_id=subscription.id,
            applied_immediately=kind != "downgrade_scheduled",
            plan_id=subscription.plan_id,
            pending_plan_id=subscription.pending_plan_id,
            plan_change_at=subscription.plan_change_at,
            payment_transaction_id=payment_id,
            proration=proration,
        )

    async def get_proration_preview(
        self, user_id: UUID, new_plan_id: UUID, now: datetime | None = None
    ) -> ProrationPreview:
        """Proration plus the sentence shown to the user before confirming."""
        proration = await self.calculate_proration(user_id, new_plan_id, now)

        if proration.charge_immediately:
            credits_added = proration.new_credits - proration.old_credits
            summary = (
                f"You'll be charged ${proration.prorated_payment:.2f} today for upgrading to "
                f"{proration.new_plan_name} with {proration.days_remaining} days remaining in your "
                f"billing cycle. You'll have {proration.available_credits} credits available immediately."
            )
        elif proration.effective_date > (now or datetime.utcnow()):
            credits_added = 0
            summary = (
                f"Your plan will change to {proration.new_plan_name} on "
                f"{proration.effective_date:%Y-%m-%d}. You'll keep {proration.old_plan_name} "
                "features until then."
            )
        else:
            credits_added = proration.new_credits - proration.old_credits
            summary = "Plan change will take effect immediately with no additional charges."

        return ProrationPreview(
            proration=proration,
            immediate_charge=proration.prorated_payment if proration.charge_immediately else quantize_money(0),
            credits_added=credits_added,
            effective_date=proration.effective_date,
            summary=summary,
        )

    async def process_pending_plan_changes(self, now: datetime | None = None) -> BatchResult:
        """
        Apply scheduled plan changes whose plan_change_at has passed.

        Each subscription is locked, re-checked and committed on its own, so
        overlapping runs apply each change once and a failure is isolated.
        Applying a change resets monthly_credits_used and starts a new period
        at plan_change_at.

        Returns:
            BatchResult with processed count and per-subscription errors
        """
        now = now or datetime.utcnow()
        result = await self.db.execute(
            select(Subscription.id).where(
                Subscription.pending_plan_id.is_not(None),
                Subscription.plan_change_at <= now,
            )
        )
        subscription_ids = result.scalars().all()

        summary = BatchResult()
        for subscription_id in subscription_ids:
            try:
                applied = await run_in_transaction(self.db, self._apply_pending_change, subscription_id, now)
                if applied:
                    summary.processed += 1
            except Exception as e:
                logger.exception("pending_plan_change_failed", subscription_id=str(subscription_id))
                summary.record_error(subscription_id, e)

        logger.info("pending_plan_changes_processed", processed=summary.processed, errors=len(summary.errors))
        return summary

    async def cancel_pending_plan_change(self, user_id: UUID) -> Subscription:
        """
        Drop a scheduled plan change.

        Raises:
            ValidationError: If nothing is scheduled
        """
        subscription = await load_subscription(self.db, user_id, for_update=True)
        if subscription.pending_plan_id is None:
            raise ValidationError("No pending plan change to cancel")

        subscription.pending_plan_id = None
        subscription.plan_change_at = None
        await self.db.flush()
        logger.info("pending_plan_change_cancelled", user_id=str(user_id))
        return subscription

    async def get_pending_plan_change(self, user_id: UUID) -> PendingPlanChange | None:
        subscription = await load_subscription(self.db, user_id)
        if subscription.pending_plan_id is None:
            return None
        pending_plan = await load_plan(self.db, subscription.pending_plan_id)
        return PendingPlanChange(
            subscription_id=subscription.id,
            current_plan_id=subscription.plan_id,
            pending_plan_id=pending_plan.id,
            pending_plan_name=pending_plan.name,
            plan_change_at=subscription.plan_change_at,
        )

    async def calculate_cancellation_refund(self, user_id: UUID, now: datetime | None = None) -> CancellationRefund:
        """
        Report the refund owed on cancellation.

        Cancellation takes effect at period end and the current period is not
        refunded, so should_refund is always False.
        """
        subscription = await load_subscription(self.db, user_id)
        remaining = max(subscription.current_period_end - (now or datetime.utcnow()), timedelta(0))
        return CancellationRefund(
            should_refund=False,
            refund_amount=quantize_money(0),
            days_remaining=_ceil_days(remaining),
            reason="Access continues until the end of the current billing period; no refunds are issued.",
        )

    async def _apply_pending_change(self, subscription_id: UUID, now: datetime) -> bool:
        subscription = await lock_subscription_by_id(self.db, subscription_id)
        if (
            subscription is None
            or subscription.pending_plan_id is None
            or subscription.plan_change_at is None
            or subscription.plan_change_at > now
        ):
            return False

        new_plan = await load_plan(self.db, subscription.pending_plan_id)
        old_plan_id = subscription.plan_id
        change_at = subscription.plan_change_at

        subscription.plan_id = new_plan.id
        subscription.pending_plan_id = None
        subscription.plan_change_at = None
        subscription.monthly_credits_used = 0
        subscription.period_credits_reset_at = now
        if subscription.current_period_end <= change_at:
            period_length = subscription.current_period_end - subscription.current_period_start
            subscription.current_period_start = change_at
            subscription.current_period_end = change_at + period_length
        await self.db.flush()

        plan_changes_total.labels(kind="downgrade_applied").inc()
        logger.info(
            "pending_plan_change_applied",
            subscription_id=str(subscription_id),
            old_plan_id=str(old_plan_id),
            new_plan_id=str(new_plan.id),
        )
        return True
