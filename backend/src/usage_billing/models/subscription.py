"""Subscription model for per-user plan state."""
import enum
from datetime import datetime

from sqlalchemy import Boolean, Column, DateTime, Enum as SQLEnum, ForeignKey, Integer, String, Uuid

from usage_billing.models.base import Base


class SubscriptionStatus(enum.Enum):
    """Subscription lifecycle status."""

    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


class Subscription(Base):
    """
    A user's subscription to a plan.

    Carries the current billing period, credit usage for that period, a
    scheduled plan change and the payment-failure grace window.
    """

    __tablename__ = "subscriptions"

    user_id = Column(
        Uuid(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, unique=True, index=True
    )
    plan_id = Column(Uuid(as_uuid=True), ForeignKey("plans.id"), nullable=False, index=True)
    status = Column(SQLEnum(SubscriptionStatus), nullable=False, default=SubscriptionStatus.ACTIVE, index=True)
    current_period_start = Column(DateTime, nullable=False, default=datetime.utcnow)
    current_period_end = Column(DateTime, nullable=False, index=True)
    monthly_credits_used = Column(Integer, nullable=False, default=0)
    period_credits_reset_at = Column(DateTime, nullable=True)

    # Scheduled downgrade
    pending_plan_id = Column(Uuid(as_uuid=True), ForeignKey("plans.id"), nullable=True)
    plan_change_at = Column(DateTime, nullable=True, index=True)

    # Grace period
    payment_failed_at = Column(DateTime, nullable=True)
    grace_period_ends_at = Column(DateTime, nullable=True, index=True)
    grace_reminder_day = Column(Integer, nullable=True)  # Last reminder day bucket sent

    cancel_at_period_end = Column(Boolean, nullable=False, default=False)
    cancelled_at = Column(DateTime, nullable=True)
    provider_subscription_id = Column(String(255), nullable=True, unique=True)

    def __repr__(self) -> str:
        """String representation."""
        return f"<Subscription(id={self.id}, user_id={self.user_id}, status={self.status.value})>"
