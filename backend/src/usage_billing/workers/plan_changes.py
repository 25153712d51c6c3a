"""Scheduled plan change worker.

Applies downgrades whose effective date has passed. Runs hourly.
"""
from typing import Any

import structlog

from usage_billing.database import AsyncSessionLocal
from usage_billing.services.proration_service import ProrationService

logger = structlog.get_logger(__name__)


async def apply_pending_plan_changes(ctx: dict[str, Any] | None = None) -> dict[str, Any]:
    async with AsyncSessionLocal() as db:
        summary = await ProrationService(db).process_pending_plan_changes()

    logger.info("plan_change_job_completed", processed=summary.processed, errors=len(summary.errors))
    return summary.model_dump()
