"""Idempotent processing of payment provider webhooks."""
import json
from datetime import datetime
from typing import Any

import structlog
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from usage_billing.adapters.payment_provider import PaymentProviderAdapter, verify_webhook_signature
from usage_billing.config import settings
from usage_billing.exceptions import BillingError, ValidationError
from usage_billing.integrations.notification_service import NotificationService, notify_safely
from usage_billing.metrics import webhook_events_total, webhook_retries_total
from usage_billing.models.webhook_event import WebhookEventLog, WebhookEventStatus
from usage_billing.schemas.common import BatchResult
from usage_billing.schemas.webhook import WebhookAck
from usage_billing.services.webhook_handlers import HandlerContext, PaymentEventHandlers

logger = structlog.get_logger(__name__)

MAX_ERROR_LENGTH = 1000


def parse_event(raw_body: bytes) -> dict[str, Any]:
    """
    Parse a webhook body.

    Raises:
        ValidationError: If the body isn't a JSON object with an ``event`` field
    """
    try:
        event = json.loads(raw_body)
    except (ValueError, UnicodeDecodeError) as e:
        raise ValidationError("Webhook body is not valid JSON") from e
    if not isinstance(event, dict) or not event.get("event"):
        raise ValidationError("Webhook body has no event type")
    return event


def derive_event_id(event: dict[str, Any], header_event_id: str | None = None) -> str:
    """Stable event id: the native id when present, otherwise account_created_type."""
    native = event.get("id") or header_event_id
    if native:
        return str(native)
    return f"{event.get('account_id')}_{event.get('created_at')}_{event['event']}"


class WebhookProcessor:
    """
    Verifies, records and dispatches provider webhooks.

    The event log row is committed before the handler runs. Handler effects
    and the COMPLETED status commit together; on failure they roll back and
    the row is marked FAILED for the retry sweep. Every verified delivery is
    acknowledged.
    """

    def __init__(
        self,
        db: AsyncSession,
        secret: str | None = None,
        handlers: PaymentEventHandlers | None = None,
        notifications: NotificationService | None = None,
        provider: PaymentProviderAdapter | None = None,
    ):
        self.db = db
        self.secret = secret if secret is not None else settings.provider_webhook_secret
        self.handlers = handlers or PaymentEventHandlers(db, notifications, provider)

    def verify_signature(self, raw_body: bytes, signature: str | None) -> None:
        if not self.secret:
            raise BillingError("Webhook secret is not configured")
        verify_webhook_signature(raw_body, signature, self.secret)

    async def receive(
        self,
        raw_body: bytes,
        signature: str | None,
        event_id: str | None = None,
        now: datetime | None = None,
    ) -> WebhookAck:
        """
        Handle one delivery.

        Args:
            raw_body: Request body exactly as received
            signature: Signature header value
            event_id: Optional event id header
            now: Processing time (defaults to now)

        Returns:
            WebhookAck, also for duplicates and handler failures

        Raises:
            SignatureVerificationError: Missing or mismatched signature
            ValidationError: Malformed body
        """
        self.verify_signature(raw_body, signature)
        event = parse_event(raw_body)
        event_type = event["event"]
        event_id = derive_event_id(event, event_id)
        now = now or datetime.utcnow()

        log = await self._get_log(event_id)
        if log is not None and log.status == WebhookEventStatus.COMPLETED:
            webhook_events_total.labels(event_type=event_type, outcome="duplicate").inc()
            logger.info("webhook_duplicate", event_id=event_id, event_type=event_type)
            return WebhookAck(event_id=event_id, status=log.status, duplicate=True)

        if log is None:
            log = WebhookEventLog(
                event_id=event_id,
                event_type=event_type,
                status=WebhookEventStatus.PENDING,
                payload=event,
                retry_count=0,
            )
            self.db.add(log)
            try:
                await self.db.commit()
            except IntegrityError:
                # A concurrent delivery inserted the same id first
                await self.db.rollback()
                webhook_events_total.labels(event_type=event_type, outcome="duplicate").inc()
                logger.info("webhook_duplicate_race", event_id=event_id)
                existing = await self._get_log(event_id)
                return WebhookAck(event_id=event_id, status=existing.status if existing else None, duplicate=True)

        status = await self._process(log.id, event_id, event_type, event, now)
        if status is None:
            webhook_events_total.labels(event_type=event_type, outcome="duplicate").inc()
            logger.info("webhook_in_flight", event_id=event_id, event_type=event_type)
            current = await self._get_log(event_id)
            return WebhookAck(event_id=event_id, status=current.status if current else None, duplicate=True)
        return WebhookAck(event_id=event_id, status=status)

    async def retry_failed_events(self, max_retries: int | None = None, now: datetime | None = None) -> BatchResult:
        """
        Re-dispatch FAILED events below the retry cap from their stored payload.

        Returns:
            BatchResult with completed count and per-event errors
        """
        max_retries = settings.webhook_max_retries if max_retries is None else max_retries
        now = now or datetime.utcnow()
        failed = await self.get_failed_events(max_retries)

        summary = BatchResult()
        pending = [(log.id, log.event_id, log.event_type, dict(log.payload)) for log in failed]
        for log_id, event_id, event_type, payload in pending:
            webhook_retries_total.labels(event_type=event_type).inc()
            status = await self._process(log_id, event_id, event_type, payload, now)
            if status is None:
                # Claimed by a live delivery since the query ran
                continue
            if status == WebhookEventStatus.COMPLETED:
                summary.processed += 1
            else:
                log = await self.db.get(WebhookEventLog, log_id, populate_existing=True)
                summary.record_error(event_id, log.error_message if log else "retry failed")

        logger.info("webhook_retries_processed", processed=summary.processed, errors=len(summary.errors))
        return summary

    async def get_failed_events(self, max_retries: int | None = None) -> list[WebhookEventLog]:
        query = select(WebhookEventLog).where(WebhookEventLog.status == WebhookEventStatus.FAILED)
        if max_retries is not None:
            query = query.where(WebhookEventLog.retry_count < max_retries)
        result = await self.db.execute(query.order_by(WebhookEventLog.created_at))
        return list(result.scalars().all())

    async def _claim(self, log_id) -> bool:
        """Move a PENDING or FAILED row to PROCESSING; False if another delivery holds it."""
        result = await self.db.execute(
            update(WebhookEventLog)
            .where(
                WebhookEventLog.id == log_id,
                WebhookEventLog.status.in_([WebhookEventStatus.PENDING, WebhookEventStatus.FAILED]),
            )
            .values(status=WebhookEventStatus.PROCESSING)
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        return result.rowcount == 1

    async def _process(
        self, log_id, event_id: str, event_type: str, event: dict[str, Any], now: datetime
    ) -> WebhookEventStatus | None:
        """Run the handler for a claimed row. Returns None when the row couldn't be claimed."""
        if not await self._claim(log_id):
            return None

        ctx = HandlerContext(event_id=event_id, event_type=event_type, now=now)
        handler = self.handlers.resolve(event_type)
        try:
            await handler(event, ctx)
            await self.db.execute(
                update(WebhookEventLog)
                .where(WebhookEventLog.id == log_id)
                .values(status=WebhookEventStatus.COMPLETED, error_message=None, processed_at=now)
                .execution_options(synchronize_session=False)
            )
            await self.db.commit()
            await self._sync(log_id)
        except Exception as e:
            await self.db.rollback()
            logger.exception("webhook_handler_failed", event_id=event_id, event_type=event_type)
            result = await self.db.execute(
                update(WebhookEventLog)
                .where(
                    WebhookEventLog.id == log_id,
                    WebhookEventLog.status != WebhookEventStatus.COMPLETED,
                )
                .values(
                    status=WebhookEventStatus.FAILED,
                    retry_count=WebhookEventLog.retry_count + 1,
                    error_message=f"{type(e).__name__}: {e}"[:MAX_ERROR_LENGTH],
                    processed_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            await self.db.commit()
            await self._sync(log_id)
            if result.rowcount == 0:
                # Another delivery completed the event while this one ran
                logger.info("webhook_failure_superseded", event_id=event_id, event_type=event_type)
                webhook_events_total.labels(event_type=event_type, outcome="duplicate").inc()
                return WebhookEventStatus.COMPLETED
            webhook_events_total.labels(event_type=event_type, outcome="failed").inc()
            return WebhookEventStatus.FAILED

        webhook_events_total.labels(event_type=event_type, outcome="completed").inc()
        logger.info("webhook_processed", event_id=event_id, event_type=event_type)
        for send in ctx.after_commit:
            await notify_safely(send(), event_id=event_id)
        return WebhookEventStatus.COMPLETED

    async def _get_log(self, event_id: str) -> WebhookEventLog | None:
        result = await self.db.execute(
            select(WebhookEventLog)
            .where(WebhookEventLog.event_id == event_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def _sync(self, log_id) -> None:
        """Refresh an in-session copy of the row after a bulk status write."""
        await self.db.get(WebhookEventLog, log_id, populate_existing=True)
