"""Handlers for payment provider webhook events.

Each handler receives the parsed event and a HandlerContext. Handlers only
flush; the processor commits their effects together with the COMPLETED event
status. Notifications are deferred to ``ctx.after_commit`` so nothing is sent
for work that is later rolled back.
"""
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Awaitable, Callable
from uuid import UUID

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from usage_billing.adapters.payment_provider import PaymentProviderAdapter
from usage_billing.cost_tables import quantize_money, to_decimal
from usage_billing.exceptions import NotFoundError, ValidationError
from usage_billing.integrations.notification_service import NotificationService
from usage_billing.models.balance_transaction import TransactionType
from usage_billing.models.payment_transaction import PaymentTransaction, PaymentTransactionStatus
from usage_billing.models.subscription import Subscription, SubscriptionStatus
from usage_billing.models.user import User
from usage_billing.services.grace_period_service import GracePeriodService
from usage_billing.services.ledger_service import LedgerService
from usage_billing.services.receipt_service import ReceiptService

logger = structlog.get_logger(__name__)

PURCHASE_TOPUP = "balance_topup"
PURCHASE_SUBSCRIPTION = "subscription"


@dataclass
class HandlerContext:
    """Per-event state shared between the processor and a handler."""

    event_id: str
    event_type: str
    now: datetime
    after_commit: list[Callable[[], Awaitable[Any]]] = field(default_factory=list)


Handler = Callable[[dict[str, Any], HandlerContext], Awaitable[None]]


def from_smallest_unit(value: Any) -> Decimal:
    """Provider amounts arrive in the smallest currency unit (cents, paise)."""
    return quantize_money(to_decimal(value or 0) / 100)


def _entity(event: dict[str, Any], name: str) -> dict[str, Any]:
    try:
        return event["payload"][name]["entity"]
    except (KeyError, TypeError) as e:
        raise ValidationError(f"Event {event.get('event')} has no {name} entity") from e


def _timestamp(value: Any) -> datetime | None:
    if value is None:
        return None
    return datetime.utcfromtimestamp(int(value))


class PaymentEventHandlers:
    """Domain handlers keyed by provider event type."""

    def __init__(
        self,
        db: AsyncSession,
        notifications: NotificationService | None = None,
        provider: PaymentProviderAdapter | None = None,
    ):
        self.db = db
        self.notifications = notifications or NotificationService()
        self.provider = provider
        self.ledger = LedgerService(db)
        self.grace = GracePeriodService(db, self.notifications)
        self.receipts = ReceiptService(db)

    def dispatch_table(self) -> dict[str, Handler]:
        return {
            "payment.captured": self.handle_payment_captured,
            "payment.failed": self.handle_payment_failed,
            "order.paid": self.handle_order_paid,
            "subscription.charged": self.handle_subscription_charged,
            "subscription.pending": self.handle_subscription_past_due,
            "subscription.halted": self.handle_subscription_past_due,
            "subscription.cancelled": self.handle_subscription_cancelled,
            "refund.processed": self.handle_refund_processed,
        }

    def resolve(self, event_type: str) -> Handler:
        return self.dispatch_table().get(event_type, self.handle_unrecognized)

    async def handle_payment_captured(self, event: dict[str, Any], ctx: HandlerContext) -> None:
        """
        A payment succeeded.

        Top-ups credit the requested balance once per provider payment id and
        get a receipt. Subscription payments clear any grace period.
        """
        payment = _entity(event, "payment")
        payment_id = payment["id"]
        notes = payment.get("notes") or {}
        purchase_type = notes.get("purchase_type", PURCHASE_TOPUP)

        user = await self._resolve_user(payment)

        if self.provider is not None:
            confirmed = await self.provider.fetch_payment(payment_id)
            if confirmed.get("status") not in ("captured", "refunded"):
                raise ValidationError(f"Payment {payment_id} is {confirmed.get('status')} at the provider")

        amount = from_smallest_unit(payment.get("amount"))
        record = await self._upsert_payment(user, payment, notes, PaymentTransactionStatus.COMPLETED)
        record.extra_metadata = {
            **(record.extra_metadata or {}),
            "method": payment.get("method"),
            "purchase_type": purchase_type,
            "notes": notes,
        }

        if purchase_type == PURCHASE_TOPUP:
            await self._credit_topup(user, payment, notes, record, amount, ctx)
        elif purchase_type == PURCHASE_SUBSCRIPTION:
            await self._recover_subscription(user.id)

        await self.db.flush()
        logger.info(
            "payment_captured_processed",
            payment_id=payment_id,
            user_id=str(user.id),
            purchase_type=purchase_type,
            amount=str(amount),
        )

    async def handle_payment_failed(self, event: dict[str, Any], ctx: HandlerContext) -> None:
        payment = _entity(event, "payment")
        notes = payment.get("notes") or {}
        user = await self._resolve_user(payment)

        record = await self._upsert_payment(user, payment, notes, PaymentTransactionStatus.FAILED)
        record.failure_code = payment.get("error_code")
        record.failure_reason = payment.get("error_description") or "Payment failed"
        record.extra_metadata = {
            **(record.extra_metadata or {}),
            "error_source": payment.get("error_source"),
            "error_step": payment.get("error_step"),
            "error_reason": payment.get("error_reason"),
        }
        await self.db.flush()

        if notes.get("purchase_type") == PURCHASE_SUBSCRIPTION:
            subscription = await self._subscription_for_user(user.id)
            if subscription is not None and subscription.status in (
                SubscriptionStatus.ACTIVE,
                SubscriptionStatus.PAST_DUE,
            ):
                await self.grace.start_grace_period(user.id, now=ctx.now)

        amount, reason, email = record.amount, record.failure_reason, user.email
        ctx.after_commit.append(lambda: self.notifications.send_payment_failed(email, amount, reason))
        logger.info("payment_failed_recorded", payment_id=payment["id"], user_id=str(user.id))

    async def handle_order_paid(self, event: dict[str, Any], ctx: HandlerContext) -> None:
        order = _entity(event, "order")
        logger.info("order_paid", order_id=order.get("id"), event_id=ctx.event_id)

    async def handle_subscription_charged(self, event: dict[str, Any], ctx: HandlerContext) -> None:
        """
        A renewal charge succeeded: clear grace and roll the billing period.

        Re-delivery of the same period leaves the subscription unchanged.
        """
        entity = _entity(event, "subscription")
        subscription = await self._resolve_subscription(entity, lock=True)

        if self.provider is not None:
            confirmed = await self.provider.fetch_subscription(entity["id"])
            if confirmed.get("status") != "active":
                raise ValidationError(f"Subscription {entity['id']} is {confirmed.get('status')} at the provider")

        if subscription.status == SubscriptionStatus.PAST_DUE:
            await self.grace.recover_from_grace_period(subscription.user_id)

        period_start = _timestamp(entity.get("current_start"))
        period_end = _timestamp(entity.get("current_end"))
        if period_start is None or period_end is None:
            raise ValidationError("subscription.charged is missing the current billing period")

        if subscription.current_period_start == period_start:
            logger.info("subscription_period_already_rolled", subscription_id=str(subscription.id))
            return

        subscription.current_period_start = period_start
        subscription.current_period_end = period_end
        subscription.monthly_credits_used = 0
        subscription.period_credits_reset_at = ctx.now
        await self.db.flush()
        logger.info(
            "subscription_period_rolled",
            subscription_id=str(subscription.id),
            current_period_end=period_end.isoformat(),
        )

    async def handle_subscription_past_due(self, event: dict[str, Any], ctx: HandlerContext) -> None:
        entity = _entity(event, "subscription")
        subscription = await self._resolve_subscription(entity)
        if subscription.status not in (SubscriptionStatus.ACTIVE, SubscriptionStatus.PAST_DUE):
            logger.info(
                "grace_period_skipped",
                subscription_id=str(subscription.id),
                status=subscription.status.value,
            )
            return
        await self.grace.start_grace_period(subscription.user_id, now=ctx.now)

    async def handle_subscription_cancelled(self, event: dict[str, Any], ctx: HandlerContext) -> None:
        entity = _entity(event, "subscription")
        subscription = await self._resolve_subscription(entity, lock=True)
        if subscription.status == SubscriptionStatus.CANCELLED:
            return
        subscription.status = SubscriptionStatus.CANCELLED
        subscription.cancelled_at = ctx.now
        subscription.grace_period_ends_at = None
        subscription.pending_plan_id = None
        subscription.plan_change_at = None
        await self.db.flush()
        logger.info("subscription_cancelled", subscription_id=str(subscription.id))

    async def handle_refund_processed(self, event: dict[str, Any], ctx: HandlerContext) -> None:
        """
        Debit the refunded share of a top-up credit.

        The share is credited * refund / total_charged, capped at what is left
        of the original credit. Each refund id is debited at most once.
        """
        refund = _entity(event, "refund")
        refund_id = refund["id"]
        payment_id = refund.get("payment_id")
        refund_amount = from_smallest_unit(refund.get("amount"))

        if await self.ledger.find_by_external_reference(refund_id) is not None:
            logger.info("refund_already_applied", refund_id=refund_id)
            return

        result = await self.db.execute(
            select(PaymentTransaction)
            .where(PaymentTransaction.provider_payment_id == payment_id)
            .with_for_update()
        )
        payment = result.scalar_one_or_none()
        if payment is None:
            raise NotFoundError(f"No payment transaction for refunded payment {payment_id}")

        metadata = dict(payment.extra_metadata or {})
        refunds = list(metadata.get("refund_ids", []))
        if refund_id in refunds:
            logger.info("refund_already_applied", refund_id=refund_id)
            return

        refunded_total = quantize_money(to_decimal(metadata.get("refunded_amount", "0")) + refund_amount)
        topup = await self.ledger.find_by_external_reference(payment_id)
        if topup is not None and payment.amount > 0:
            credited = topup.amount
            already_debited = to_decimal(metadata.get("refunded_credit", "0"))
            share = quantize_money(credited * refund_amount / payment.amount)
            share = min(share, credited - already_debited)
            if share > 0:
                await self.ledger.debit(
                    user_id=payment.user_id,
                    amount=share,
                    type=TransactionType.REFUND,
                    description=f"Refund {refund_id} for payment {payment_id}",
                    metadata={"refund_id": refund_id, "payment_id": payment_id, "refund_amount": str(refund_amount)},
                    external_reference=refund_id,
                )
                metadata["refunded_credit"] = str(quantize_money(already_debited + share))

        refunds.append(refund_id)
        metadata["refund_ids"] = refunds
        metadata["refunded_amount"] = str(refunded_total)
        payment.extra_metadata = metadata
        if refunded_total >= payment.amount:
            payment.status = PaymentTransactionStatus.REFUNDED
        await self.db.flush()
        logger.info(
            "refund_processed",
            refund_id=refund_id,
            payment_id=payment_id,
            refunded_total=str(refunded_total),
            status=payment.status.value,
        )

    async def handle_unrecognized(self, event: dict[str, Any], ctx: HandlerContext) -> None:
        logger.info("webhook_event_unhandled", event_type=ctx.event_type, event_id=ctx.event_id)

    async def _credit_topup(
        self,
        user: User,
        payment: dict[str, Any],
        notes: dict[str, Any],
        record: PaymentTransaction,
        total_charged: Decimal,
        ctx: HandlerContext,
    ) -> None:
        payment_id = payment["id"]
        if await self.ledger.find_by_external_reference(payment_id) is not None:
            logger.info("topup_already_credited", payment_id=payment_id)
            return

        requested = quantize_money(to_decimal(notes.get("requested_balance", "0")))
        if requested <= 0:
            logger.warning("topup_without_requested_balance", payment_id=payment_id)
            return

        await self.ledger.credit(
            user_id=user.id,
            amount=requested,
            type=TransactionType.TOPUP,
            description=f"Balance top-up - {payment.get('method') or 'card'}",
            metadata={
                "payment_id": payment_id,
                "order_id": payment.get("order_id"),
                "total_charged": str(total_charged),
                "platform_fee": notes.get("platform_fee"),
            },
            external_reference=payment_id,
        )

        receipt_number = await self.receipts.issue_receipt(record, ctx.now)
        fee = quantize_money(to_decimal(notes.get("platform_fee") or "0"))
        tax = quantize_money(to_decimal(notes.get("tax") or "0"))
        email, currency = user.email, record.currency
        ctx.after_commit.append(
            lambda: self.notifications.send_payment_receipt(
                email, receipt_number, requested, fee, tax, total_charged, currency
            )
        )

    async def _upsert_payment(
        self,
        user: User,
        payment: dict[str, Any],
        notes: dict[str, Any],
        status: PaymentTransactionStatus,
    ) -> PaymentTransaction:
        record = None
        pending_id = notes.get("payment_transaction_id")
        if pending_id:
            record = await self.db.get(PaymentTransaction, UUID(str(pending_id)))
        if record is None:
            result = await self.db.execute(
                select(PaymentTransaction).where(PaymentTransaction.provider_payment_id == payment["id"])
            )
            record = result.scalar_one_or_none()
        if record is None:
            record = PaymentTransaction(user_id=user.id, extra_metadata={})
            self.db.add(record)

        record.amount = from_smallest_unit(payment.get("amount"))
        record.currency = (payment.get("currency") or "USD").upper()
        record.status = status
        record.provider_payment_id = payment["id"]
        record.provider_order_id = payment.get("order_id")
        await self.db.flush()
        return record

    async def _resolve_user(self, payment: dict[str, Any]) -> User:
        """Find the paying user by notes.user_id, then email, then provider customer id."""
        notes = payment.get("notes") or {}
        user = None
        if notes.get("user_id"):
            try:
                user = await self.db.get(User, UUID(str(notes["user_id"])))
            except ValueError:
                logger.warning("invalid_user_id_in_notes", payment_id=payment.get("id"))
        if user is None and payment.get("email"):
            result = await self.db.execute(select(User).where(User.email == payment["email"]))
            user = result.scalar_one_or_none()
        if user is None and payment.get("customer_id"):
            result = await self.db.execute(
                select(User).where(User.provider_customer_id == payment["customer_id"])
            )
            user = result.scalar_one_or_none()
        if user is None:
            raise NotFoundError(f"No user for payment {payment.get('id')}", email=payment.get("email"))
        return user

    async def _resolve_subscription(self, entity: dict[str, Any], lock: bool = False) -> Subscription:
        query = select(Subscription).where(Subscription.provider_subscription_id == entity.get("id"))
        if lock:
            query = query.with_for_update().execution_options(populate_existing=True)
        result = await self.db.execute(query)
        subscription = result.scalar_one_or_none()

        user_id = (entity.get("notes") or {}).get("user_id")
        if subscription is None and user_id:
            query = select(Subscription).where(Subscription.user_id == UUID(str(user_id)))
            if lock:
                query = query.with_for_update().execution_options(populate_existing=True)
            result = await self.db.execute(query)
            subscription = result.scalar_one_or_none()

        if subscription is None:
            raise NotFoundError(f"No subscription for provider subscription {entity.get('id')}")
        return subscription

    async def _subscription_for_user(self, user_id: UUID) -> Subscription | None:
        result = await self.db.execute(select(Subscription).where(Subscription.user_id == user_id))
        return result.scalar_one_or_none()

    async def _recover_subscription(self, user_id: UUID) -> None:
        subscription = await self._subscription_for_user(user_id)
        if subscription is not None and subscription.status == SubscriptionStatus.PAST_DUE:
            await self.grace.recover_from_grace_period(user_id)
