"""FastAPI dependencies for database sessions, authentication and services."""
from typing import Optional
from uuid import UUID

import jwt
import structlog
from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession

from usage_billing.auth import decode_access_token
from usage_billing.cache import Cache, InMemoryCache
from usage_billing.database import get_db
from usage_billing.integrations.notification_service import NotificationService
from usage_billing.services.grace_period_service import GracePeriodService
from usage_billing.services.ledger_service import LedgerService
from usage_billing.services.model_registry import ModelRegistry
from usage_billing.services.proration_service import ProrationService
from usage_billing.services.usage_service import UsageMeteringService
from usage_billing.services.webhook_processor import WebhookProcessor

logger = structlog.get_logger(__name__)

# HTTP Bearer token security scheme
security = HTTPBearer(auto_error=False)

_fallback_cache = InMemoryCache()

__all__ = [
    "get_db",
    "get_current_user",
    "get_cache",
    "get_ledger_service",
    "get_usage_service",
    "get_proration_service",
    "get_grace_period_service",
    "get_webhook_processor",
]


async def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> UUID:
    """
    Authenticated user id from the bearer token's ``sub`` claim.

    Raises:
        HTTPException: 401 if the token is missing, invalid or expired
    """
    if not credentials:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication required",
            headers={"WWW-Authenticate": "Bearer"},
        )

    try:
        return decode_access_token(credentials.credentials)
    except jwt.ExpiredSignatureError:
        logger.warning("token_expired")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Token has expired",
            headers={"WWW-Authenticate": "Bearer"},
        )
    except jwt.InvalidTokenError as e:
        logger.warning("invalid_token", error=str(e))
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid authentication token",
            headers={"WWW-Authenticate": "Bearer"},
        )


def get_cache(request: Request) -> Cache:
    """Application cache created at startup, or a process-local one."""
    return getattr(request.app.state, "cache", None) or _fallback_cache


def get_notifications() -> NotificationService:
    return NotificationService()


def get_ledger_service(db: AsyncSession = Depends(get_db)) -> LedgerService:
    return LedgerService(db)


def get_usage_service(
    db: AsyncSession = Depends(get_db),
    cache: Cache = Depends(get_cache),
) -> UsageMeteringService:
    return UsageMeteringService(db, ModelRegistry(db, cache))


def get_proration_service(db: AsyncSession = Depends(get_db)) -> ProrationService:
    return ProrationService(db)


def get_grace_period_service(
    db: AsyncSession = Depends(get_db),
    notifications: NotificationService = Depends(get_notifications),
) -> GracePeriodService:
    return GracePeriodService(db, notifications)


def get_webhook_processor(
    db: AsyncSession = Depends(get_db),
    notifications: NotificationService = Depends(get_notifications),
) -> WebhookProcessor:
    return WebhookProcessor(db, notifications=notifications)
