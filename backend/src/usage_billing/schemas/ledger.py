"""Pydantic schemas for the balance ledger."""
from datetime import datetime
from decimal import Decimal
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from usage_billing.models.balance_transaction import TransactionType


class LedgerEntry(BaseModel):
    """Result of a debit or credit."""

    transaction_id: UUID = Field(..., description="Created balance transaction")
    balance_after: Decimal = Field(..., description="Account balance after the change")


class BalanceTransactionOut(BaseModel):
    """Schema for returning a balance transaction."""

    id: UUID
    user_id: UUID
    type: TransactionType
    amount: Decimal
    balance_before: Decimal
    balance_after: Decimal
    description: str
    extra_metadata: dict[str, Any] = Field(default_factory=dict, serialization_alias="metadata")
    external_reference: str | None = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class BalanceTransactionList(BaseModel):
    """Schema for paginated transaction list."""

    items: list[BalanceTransactionOut]
    total: int
    page: int
    page_size: int


class BalanceSummary(BaseModel):
    """Current balance of a user."""

    user_id: UUID
    balance: Decimal
    currency: str = "USD"


class BalanceReconciliation(BaseModel):
    """Comparison of the stored balance against the transaction log."""

    user_id: UUID
    stored_balance: Decimal
    transaction_sum: Decimal
    transaction_count: int
    is_consistent: bool
