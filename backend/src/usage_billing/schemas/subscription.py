"""Pydantic schemas for plan changes and grace periods."""
from datetime import datetime
from decimal import Decimal
from uuid import UUID

from pydantic import BaseModel, Field


class ProrationResult(BaseModel):
    """
    Financial effect of a plan change. Computed, never persisted.

    ``prorated_payment`` is the full monthly price difference on upgrade and
    zero otherwise. ``prorated_percentage`` is informational only.
    """

    old_plan_id: UUID
    new_plan_id: UUID
    old_plan_name: str
    new_plan_name: str
    is_upgrade: bool
    old_credits: int
    new_credits: int
    credits_used: int
    available_credits: int = Field(..., description="Allowance usable right after the change")
    prorated_payment: Decimal = Field(..., description="Amount charged now")
    effective_date: datetime
    charge_immediately: bool
    days_remaining: int
    days_in_period: int
    prorated_percentage: Decimal = Field(..., description="Remaining share of the period, for display")


class ProrationPreview(BaseModel):
    """Proration result with a human-readable summary."""

    proration: ProrationResult
    immediate_charge: Decimal
    credits_added: int
    effective_date: datetime
    summary: str


class PlanChangeRequest(BaseModel):
    """Schema for requesting a plan change."""

    new_plan_id: UUID = Field(..., description="Target plan")


class PlanChangeOutcome(BaseModel):
    """Result of applying a plan change."""

    subscription_id: UUID
    applied_immediately: bool
    plan_id: UUID
    pending_plan_id: UUID | None = None
    plan_change_at: datetime | None = None
    payment_transaction_id: UUID | None = Field(default=None, description="Pending charge for an upgrade")
    proration: ProrationResult


class PendingPlanChange(BaseModel):
    """A scheduled plan change."""

    subscription_id: UUID
    current_plan_id: UUID
    pending_plan_id: UUID
    pending_plan_name: str
    plan_change_at: datetime


class CancellationRefund(BaseModel):
    """Refund owed on cancellation. Current policy never refunds."""

    should_refund: bool
    refund_amount: Decimal
    days_remaining: int
    reason: str


class GracePeriodStatus(BaseModel):
    """Snapshot of a subscription's payment-failure grace window."""

    is_in_grace_period: bool
    days_since_failure: int = 0
    days_remaining: int = 0
    should_send_reminder: bool = False
    can_retry_payment: bool = False
    next_reminder_day: int | None = None
    payment_failed_at: datetime | None = None
    grace_period_ends_at: datetime | None = None


class GraceReminder(BaseModel):
    """A subscription due a grace period reminder."""

    subscription_id: UUID
    user_id: UUID
    email: str
    days_since_failure: int
    days_remaining: int
    grace_period_ends_at: datetime
