"""Payment provider webhook endpoint."""
import structlog
from fastapi import APIRouter, Depends, Request

from usage_billing.adapters.payment_provider import SIGNATURE_HEADER
from usage_billing.api.deps import get_webhook_processor
from usage_billing.services.webhook_processor import WebhookProcessor

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/webhooks/payments", tags=["webhooks"])


@router.post("")
async def handle_payment_webhook(
    request: Request,
    processor: WebhookProcessor = Depends(get_webhook_processor),
) -> dict[str, bool]:
    """
    Receive a payment provider event.

    The raw body is verified against the ``x-provider-signature`` header
    before it is parsed. Verified events are always acknowledged, including
    duplicates and events whose handler failed (those are retried from the
    event log).

    Raises:
        SignatureVerificationError: 401 when the header is missing, 403 on mismatch
        ValidationError: 400 when the body is malformed
    """
    body = await request.body()
    ack = await processor.receive(
        body,
        request.headers.get(SIGNATURE_HEADER),
        event_id=request.headers.get("x-provider-event-id"),
    )
    logger.info(
        "payment_webhook_acknowledged",
        event_id=ack.event_id,
        status=ack.status.value if ack.status else None,
        duplicate=ack.duplicate,
    )
    return {"received": ack.received}
