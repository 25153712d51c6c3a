"""Pydantic schemas for provider webhooks."""
from pydantic import BaseModel

from usage_billing.models.webhook_event import WebhookEventStatus


class WebhookAck(BaseModel):
    """Acknowledgement returned to the provider."""

    received: bool = True
    event_id: str | None = None
    status: WebhookEventStatus | None = None
    duplicate: bool = False
