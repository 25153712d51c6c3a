"""Stale sandbox session reaper.

Closes sandbox sessions that were opened but never ended, charging them up to
the configured maximum session length. Runs every 10 minutes.
"""
from typing import Any

import structlog

from usage_billing.config import settings
from usage_billing.database import AsyncSessionLocal
from usage_billing.services.usage_service import UsageMeteringService

logger = structlog.get_logger(__name__)


async def close_stale_sandbox_sessions(ctx: dict[str, Any] | None = None) -> dict[str, Any]:
    async with AsyncSessionLocal() as db:
        summary = await UsageMeteringService(db).close_stale_sessions(settings.stale_session_max_minutes)

    logger.info("session_reaper_job_completed", processed=summary.processed, errors=len(summary.errors))
    return summary.model_dump()
