"""Webhook event log for dedup and audit of provider notifications."""
import enum

from sqlalchemy import Column, DateTime, Enum as SQLEnum, Integer, String, Text

from usage_billing.models.base import Base, JSONType


class WebhookEventStatus(enum.Enum):
    """Processing status of a received provider event."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class WebhookEventLog(Base):
    """
    One received provider event, keyed by its stable event id.

    Rows are never deleted. COMPLETED is terminal.
    """

    __tablename__ = "webhook_events"

    event_id = Column(String(255), nullable=False, unique=True, index=True)
    event_type = Column(String(100), nullable=False, index=True)
    provider = Column(String(50), nullable=False, default="razorpay")
    status = Column(SQLEnum(WebhookEventStatus), nullable=False, default=WebhookEventStatus.PENDING, index=True)
    payload = Column(JSONType, nullable=False)
    error_message = Column(Text, nullable=True)
    retry_count = Column(Integer, nullable=False, default=0)
    processed_at = Column(DateTime, nullable=True)

    def __repr__(self) -> str:
        """String representation."""
        return f"<WebhookEventLog(event_id={self.event_id}, status={self.status.value}, retries={self.retry_count})>"
