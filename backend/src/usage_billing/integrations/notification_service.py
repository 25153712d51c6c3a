"""Notification service integration for billing emails."""
from datetime import datetime
from decimal import Decimal
from typing import Any, Awaitable

import structlog

from usage_billing.config import settings

logger = structlog.get_logger(__name__)


class NotificationService:
    """
    Sends billing notifications.

    Delivery is mocked by logging; a provider integration (SES, SendGrid)
    replaces send_email without changing the callers.
    """

    def __init__(self, api_key: str | None = None):
        """
        Initialize notification service.

        Args:
            api_key: API key for notification provider
        """
        self.api_key = api_key

    async def send_email(
        self,
        to: str,
        subject: str,
        template: str,
        template_vars: dict[str, Any] | None = None,
    ) -> dict:
        """
        Send email notification.

        Args:
            to: Recipient email address
            subject: Email subject
            template: Template name
            template_vars: Template variables

        Returns:
            Dictionary with send status
        """
        logger.info(
            "email_notification",
            to=to,
            subject=subject,
            template=template,
            has_api_key=self.api_key is not None,
        )
        return {"status": "sent", "provider": "mock", "to": to, "subject": subject}

    async def send_grace_period_reminder(
        self,
        email: str,
        days_remaining: int,
        grace_period_ends_at: datetime,
    ) -> dict:
        return await self.send_email(
            to=email,
            subject=f"Action required: update your payment method ({days_remaining} days left)",
            template="grace_period_reminder",
            template_vars={
                "days_remaining": days_remaining,
                "grace_period_ends_at": grace_period_ends_at.isoformat(),
            },
        )

    async def send_subscription_downgraded(self, email: str, new_plan_name: str) -> dict:
        return await self.send_email(
            to=email,
            subject="Your subscription has been downgraded",
            template="subscription_downgraded",
            template_vars={"new_plan_name": new_plan_name},
        )

    async def send_payment_failed(self, email: str, amount: Decimal, reason: str | None) -> dict:
        return await self.send_email(
            to=email,
            subject="Your payment could not be processed",
            template="payment_failed",
            template_vars={"amount": str(amount), "reason": reason},
        )

    async def send_payment_receipt(
        self,
        email: str,
        receipt_number: str,
        amount_credited: Decimal,
        platform_fee: Decimal,
        tax: Decimal,
        total: Decimal,
        currency: str,
    ) -> dict:
        """
        Send a receipt for a completed balance top-up.

        Args:
            email: Recipient
            receipt_number: Sequential receipt number
            amount_credited: Balance credited
            platform_fee: Platform fee charged
            tax: Tax on the platform fee
            total: Total charged
            currency: Currency of the charge

        Returns:
            Send status dictionary
        """
        return await self.send_email(
            to=email,
            subject=f"{settings.company_name} receipt {receipt_number}",
            template="payment_receipt",
            template_vars={
                "company_name": settings.company_name,
                "receipt_number": receipt_number,
                "amount_credited": str(amount_credited),
                "platform_fee": str(platform_fee),
                "tax": str(tax),
                "total": str(total),
                "currency": currency,
            },
        )


async def notify_safely(notification: Awaitable[dict], **context: Any) -> bool:
    """
    Await a notification, logging instead of raising on failure.

    Returns:
        True if the notification was sent
    """
    try:
        await notification
        return True
    except Exception:
        logger.exception("notification_failed", **context)
        return False
