"""Balance ledger: the only writer of account balances."""
from decimal import Decimal
from typing import Any
from uuid import UUID

import structlog
from sqlalchemy import func, select
from sqlalchemy.exc import DBAPIError, IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from usage_billing.cost_tables import quantize_money
from usage_billing.database import is_lock_conflict
from usage_billing.exceptions import ConcurrencyConflict, InsufficientBalanceError, NotFoundError, ValidationError
from usage_billing.metrics import ledger_amount_usd_total, ledger_conflicts_total, ledger_entries_total
from usage_billing.models.balance_transaction import BalanceTransaction, TransactionType
from usage_billing.models.user import User
from usage_billing.schemas.ledger import (
    BalanceReconciliation,
    BalanceTransactionList,
    BalanceTransactionOut,
    LedgerEntry,
)

logger = structlog.get_logger(__name__)


class LedgerService:
    """
    Service for atomic balance mutations.

    Every debit or credit locks the user row, reads the balance, writes the
    BalanceTransaction and the new balance, then flushes. The caller's commit
    (or rollback) makes the whole change visible (or discards it), so a failure
    anywhere in between leaves neither the row nor the balance changed.
    """

    def __init__(self, db: AsyncSession):
        """Initialize ledger service with database session."""
        self.db = db

    async def debit(
        self,
        user_id: UUID,
        amount: Decimal,
        type: TransactionType,
        description: str,
        metadata: dict[str, Any] | None = None,
        external_reference: str | None = None,
    ) -> LedgerEntry:
        """
        Debit a user's balance.

        The balance may go negative; minimum-balance policy belongs to callers
        (see has_sufficient_balance).

        Args:
            user_id: User to debit
            amount: Positive amount to remove
            type: Transaction type
            description: Human-readable description
            metadata: Structured context stored with the transaction
            external_reference: Optional unique idempotency key

        Returns:
            LedgerEntry with transaction id and balance after

        Raises:
            ValidationError: If amount is not positive
            NotFoundError: If the user doesn't exist
            ConcurrencyConflict: If the row lock or write conflicted
        """
        amount = self._positive(amount)
        entry = await self._apply(user_id, -amount, type, description, metadata, external_reference)
        ledger_entries_total.labels(type=type.value, direction="debit").inc()
        ledger_amount_usd_total.labels(type=type.value, direction="debit").inc(float(amount))
        logger.info(
            "balance_debited",
            user_id=str(user_id),
            amount=str(amount),
            type=type.value,
            balance_after=str(entry.balance_after),
        )
        return entry

    async def credit(
        self,
        user_id: UUID,
        amount: Decimal,
        type: TransactionType,
        description: str,
        metadata: dict[str, Any] | None = None,
        external_reference: str | None = None,
    ) -> LedgerEntry:
        """
        Credit a user's balance. Mirror of debit().

        Returns:
            LedgerEntry with transaction id and balance after
        """
        amount = self._positive(amount)
        entry = await self._apply(user_id, amount, type, description, metadata, external_reference)
        ledger_entries_total.labels(type=type.value, direction="credit").inc()
        ledger_amount_usd_total.labels(type=type.value, direction="credit").inc(float(amount))
        logger.info(
            "balance_credited",
            user_id=str(user_id),
            amount=str(amount),
            type=type.value,
            balance_after=str(entry.balance_after),
        )
        return entry

    async def get_balance(self, user_id: UUID) -> Decimal:
        """Return the user's current balance."""
        result = await self.db.execute(select(User.account_balance).where(User.id == user_id))
        balance = result.scalar_one_or_none()
        if balance is None:
            raise NotFoundError(f"User {user_id} not found")
        return quantize_money(balance)

    async def has_sufficient_balance(self, user_id: UUID, required: Decimal) -> bool:
        """Check whether the balance covers ``required``. Used before starting billable work."""
        return await self.get_balance(user_id) >= quantize_money(required)

    async def require_balance(self, user_id: UUID, required: Decimal) -> None:
        """
        Raise unless the balance covers ``required``.

        Raises:
            InsufficientBalanceError: If the balance is too low
        """
        balance = await self.get_balance(user_id)
        if balance < quantize_money(required):
            raise InsufficientBalanceError(
                f"Balance {balance} is below the required {quantize_money(required)}",
                user_id=str(user_id),
            )

    async def find_by_external_reference(self, external_reference: str) -> BalanceTransaction | None:
        """Look up the transaction created for a provider payment or refund id."""
        result = await self.db.execute(
            select(BalanceTransaction).where(BalanceTransaction.external_reference == external_reference)
        )
        return result.scalar_one_or_none()

    async def list_transactions(
        self,
        user_id: UUID,
        page: int = 1,
        page_size: int = 50,
        type: TransactionType | None = None,
    ) -> BalanceTransactionList:
        """
        List a user's transactions, newest first.

        Args:
            user_id: User UUID
            page: Page number (1-indexed)
            page_size: Items per page
            type: Optional transaction type filter

        Returns:
            Paginated transaction list
        """
        query = select(BalanceTransaction).where(BalanceTransaction.user_id == user_id)
        count_query = select(func.count(BalanceTransaction.id)).where(BalanceTransaction.user_id == user_id)
        if type is not None:
            query = query.where(BalanceTransaction.type == type)
            count_query = count_query.where(BalanceTransaction.type == type)

        total = (await self.db.execute(count_query)).scalar_one()
        query = (
            query.order_by(BalanceTransaction.created_at.desc(), BalanceTransaction.id.desc())
            .offset((page - 1) * page_size)
            .limit(page_size)
        )
        result = await self.db.execute(query)

        return BalanceTransactionList(
            items=[BalanceTransactionOut.model_validate(t) for t in result.scalars().all()],
            total=total,
            page=page,
            page_size=page_size,
        )

    async def reconcile_balance(self, user_id: UUID) -> BalanceReconciliation:
        """
        Compare the stored balance with the sum of the user's transactions.

        Returns:
            BalanceReconciliation; is_consistent is False if they diverge
        """
        stored = await self.get_balance(user_id)
        result = await self.db.execute(
            select(
                func.coalesce(func.sum(BalanceTransaction.amount), 0),
                func.count(BalanceTransaction.id),
            ).where(BalanceTransaction.user_id == user_id)
        )
        total, count = result.one()
        transaction_sum = quantize_money(str(total))

        if transaction_sum != stored:
            logger.error(
                "balance_reconciliation_mismatch",
                user_id=str(user_id),
                stored_balance=str(stored),
                transaction_sum=str(transaction_sum),
            )

        return BalanceReconciliation(
            user_id=user_id,
            stored_balance=stored,
            transaction_sum=transaction_sum,
            transaction_count=count,
            is_consistent=transaction_sum == stored,
        )

    @staticmethod
    def _positive(amount: Decimal) -> Decimal:
        try:
            amount = quantize_money(amount)
        except TypeError as e:
            raise ValidationError(str(e)) from e
        if amount <= 0:
            raise ValidationError(f"Amount must be positive, got {amount}")
        return amount

    async def _lock_user(self, user_id: UUID) -> User:
        """Load the user row with a row lock held until the transaction ends."""
        result = await self.db.execute(
            select(User).where(User.id == user_id).with_for_update().execution_options(populate_existing=True)
        )
        user = result.scalar_one_or_none()
        if not user:
            raise NotFoundError(f"User {user_id} not found")
        return user

    def _write_transaction(
        self,
        user: User,
        amount: Decimal,
        balance_before: Decimal,
        balance_after: Decimal,
        type: TransactionType,
        description: str,
        metadata: dict[str, Any] | None,
        external_reference: str | None,
    ) -> BalanceTransaction:
        transaction = BalanceTransaction(
            user_id=user.id,
            type=type,
            amount=amount,
            balance_before=balance_before,
            balance_after=balance_after,
            description=description,
            extra_metadata=metadata or {},
            external_reference=external_reference,
        )
        self.db.add(transaction)
        return transaction

    async def _apply(
        self,
        user_id: UUID,
        amount: Decimal,
        type: TransactionType,
        description: str,
        metadata: dict[str, Any] | None,
        external_reference: str | None,
    ) -> LedgerEntry:
        try:
            user = await self._lock_user(user_id)
            balance_before = quantize_money(user.account_balance)
            balance_after = quantize_money(balance_before + amount)

            transaction = self._write_transaction(
                user, amount, balance_before, balance_after, type, description, metadata, external_reference
            )
            user.account_balance = balance_after
            await self.db.flush()
        except IntegrityError as e:
            # Lost a race on external_reference; the retry will find the winner
            ledger_conflicts_total.inc()
            raise ConcurrencyConflict(
                f"Ledger write for {external_reference or user_id} conflicted", user_id=str(user_id)
            ) from e
        except DBAPIError as e:
            if is_lock_conflict(e):
                ledger_conflicts_total.inc()
                raise ConcurrencyConflict(f"Balance row for user {user_id} is locked", user_id=str(user_id)) from e
            raise

        return LedgerEntry(transaction_id=transaction.id, balance_after=balance_after)
