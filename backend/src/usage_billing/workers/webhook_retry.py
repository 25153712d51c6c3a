"""Webhook retry worker.

Re-dispatches FAILED provider events from the event log until they reach the
retry cap. Runs every 15 minutes.
"""
from typing import Any

import structlog

from usage_billing.config import settings
from usage_billing.database import AsyncSessionLocal
from usage_billing.services.webhook_processor import WebhookProcessor

logger = structlog.get_logger(__name__)


async def retry_failed_webhooks(ctx: dict[str, Any] | None = None) -> dict[str, Any]:
    """
    Retry failed webhook events.

    Returns:
        Batch summary with completed count and per-event errors
    """
    async with AsyncSessionLocal() as db:
        summary = await WebhookProcessor(db).retry_failed_events(settings.webhook_max_retries)

    logger.info("webhook_retry_job_completed", processed=summary.processed, errors=len(summary.errors))
    return summary.model_dump()
