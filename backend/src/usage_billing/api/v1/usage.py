"""Usage metering API endpoints."""
from datetime import datetime, timedelta
from uuid import UUID

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from usage_billing.api.deps import get_current_user, get_db, get_usage_service
from usage_billing.exceptions import NotFoundError
from usage_billing.models.usage_record import SandboxUsage
from usage_billing.schemas.common import to_naive_utc
from usage_billing.schemas.usage import (
    AIUsageCharge,
    AIUsageCreate,
    AIUsageRequest,
    DatabaseUsageCreate,
    DatabaseUsageRequest,
    DeploymentUsageCreate,
    DeploymentUsageRequest,
    SandboxSession,
    SandboxSessionEnd,
    SandboxSessionStart,
    StorageUsageCreate,
    StorageUsageRequest,
    UsageBreakdown,
    UsageCharge,
)
from usage_billing.services.usage_service import UsageMeteringService

router = APIRouter(prefix="/usage", tags=["usage"])


@router.post("/sandbox/sessions", response_model=SandboxSession, status_code=status.HTTP_201_CREATED)
async def start_sandbox_session(
    body: SandboxSessionStart,
    user_id: UUID = Depends(get_current_user),
    usage: UsageMeteringService = Depends(get_usage_service),
) -> SandboxSession:
    """Open a sandbox session. The cost is charged when the session ends."""
    return await usage.start_sandbox_session(user_id, body.sandbox_id, body.project_id)


@router.post("/sandbox/sessions/{session_id}/end", response_model=UsageCharge)
async def end_sandbox_session(
    session_id: UUID,
    body: SandboxSessionEnd | None = None,
    user_id: UUID = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    usage: UsageMeteringService = Depends(get_usage_service),
) -> UsageCharge:
    """
    End a sandbox session and charge whole minutes.

    Ending an already ended session returns the original charge.
    """
    session = await db.get(SandboxUsage, session_id)
    if session is not None and session.user_id != user_id:
        raise NotFoundError(f"Sandbox session {session_id} not found")
    return await usage.end_sandbox_session(session_id, body.end_time if body else None)


@router.post("/storage", response_model=UsageCharge, status_code=status.HTTP_201_CREATED)
async def track_storage_usage(
    body: StorageUsageRequest,
    user_id: UUID = Depends(get_current_user),
    usage: UsageMeteringService = Depends(get_usage_service),
) -> UsageCharge:
    return await usage.track_storage_usage(StorageUsageCreate(user_id=user_id, **body.model_dump()))


@router.post("/deployments", response_model=UsageCharge, status_code=status.HTTP_201_CREATED)
async def track_deployment_usage(
    body: DeploymentUsageRequest,
    user_id: UUID = Depends(get_current_user),
    usage: UsageMeteringService = Depends(get_usage_service),
) -> UsageCharge:
    return await usage.track_deployment_usage(DeploymentUsageCreate(user_id=user_id, **body.model_dump()))


@router.post("/database", response_model=UsageCharge, status_code=status.HTTP_201_CREATED)
async def track_database_usage(
    body: DatabaseUsageRequest,
    user_id: UUID = Depends(get_current_user),
    usage: UsageMeteringService = Depends(get_usage_service),
) -> UsageCharge:
    return await usage.track_database_usage(DatabaseUsageCreate(user_id=user_id, **body.model_dump()))


@router.post("/ai", response_model=AIUsageCharge, status_code=status.HTTP_201_CREATED)
async def track_ai_usage(
    body: AIUsageRequest,
    user_id: UUID = Depends(get_current_user),
    usage: UsageMeteringService = Depends(get_usage_service),
) -> AIUsageCharge:
    """
    Meter one AI request.

    Plan credits are consumed first; only the share not covered by credits is
    debited from the balance.
    """
    return await usage.track_ai_usage(AIUsageCreate(user_id=user_id, **body.model_dump()))


@router.get("/breakdown", response_model=UsageBreakdown)
async def get_usage_breakdown(
    since: datetime | None = Query(None, description="Start of the period (defaults to 30 days ago)"),
    user_id: UUID = Depends(get_current_user),
    usage: UsageMeteringService = Depends(get_usage_service),
) -> UsageBreakdown:
    since = to_naive_utc(since) if since else datetime.utcnow() - timedelta(days=30)
    return await usage.get_usage_breakdown(user_id, since)
