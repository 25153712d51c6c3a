"""Sequential receipt numbering for completed top-ups."""
from datetime import datetime

import structlog
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from usage_billing.config import settings
from usage_billing.exceptions import ConcurrencyConflict
from usage_billing.models.payment_transaction import PaymentTransaction, ReceiptSequence

logger = structlog.get_logger(__name__)


def financial_year(moment: datetime) -> str:
    """Financial year label (April to March), e.g. 2024-25."""
    start = moment.year if moment.month >= 4 else moment.year - 1
    return f"{start}-{str(start + 1)[-2:]}"


class ReceiptService:
    """
    Issues receipt numbers of the form PREFIX/2024-25/INV/000001.

    Numbers restart each financial year and are allocated under a row lock on
    the year's sequence row, so they are gapless per committed transaction.
    """

    def __init__(self, db: AsyncSession, prefix: str | None = None):
        self.db = db
        self.prefix = prefix or settings.receipt_prefix

    async def next_receipt_number(self, now: datetime | None = None) -> str:
        fy = financial_year(now or datetime.utcnow())
        result = await self.db.execute(
            select(ReceiptSequence)
            .where(ReceiptSequence.financial_year == fy)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        sequence = result.scalar_one_or_none()
        if sequence is None:
            sequence = ReceiptSequence(financial_year=fy, last_number=0)
            self.db.add(sequence)

        sequence.last_number += 1
        try:
            await self.db.flush()
        except IntegrityError as e:
            # Another transaction created this year's row first
            raise ConcurrencyConflict(f"Receipt sequence for {fy} was created concurrently") from e

        return f"{self.prefix}/{fy}/INV/{sequence.last_number:06d}"

    async def issue_receipt(self, payment: PaymentTransaction, now: datetime | None = None) -> str:
        """
        Assign a receipt number to a payment. Idempotent per payment.

        Returns:
            The payment's receipt number
        """
        if payment.receipt_number:
            return payment.receipt_number

        payment.receipt_number = await self.next_receipt_number(now)
        await self.db.flush()
        logger.info("receipt_issued", payment_id=str(payment.id), receipt_number=payment.receipt_number)
        return payment.receipt_number
