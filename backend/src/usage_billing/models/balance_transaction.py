"""Append-only balance transaction log."""
import enum

from sqlalchemy import Column, Enum as SQLEnum, ForeignKey, Index, String, Text, Uuid

from usage_billing.models.base import Base, JSONType, Money


class TransactionType(enum.Enum):
    """Reason a balance changed."""

    TOPUP = "topup"
    AI_USAGE = "ai_usage"
    SANDBOX_USAGE = "sandbox_usage"
    STORAGE_USAGE = "storage_usage"
    DATABASE_USAGE = "database_usage"
    DEPLOYMENT = "deployment"
    REFUND = "refund"
    ADJUSTMENT = "adjustment"


class BalanceTransaction(Base):
    """
    Immutable record of one balance change.

    balance_after = balance_before + amount. Rows are never updated or deleted.
    """

    __tablename__ = "balance_transactions"

    user_id = Column(Uuid(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    type = Column(SQLEnum(TransactionType), nullable=False, index=True)
    amount = Column(Money, nullable=False)  # Signed: negative for debits
    balance_before = Column(Money, nullable=False)
    balance_after = Column(Money, nullable=False)
    description = Column(Text, nullable=False)
    extra_metadata = Column("metadata", JSONType, nullable=False, default=dict)
    external_reference = Column(String(255), nullable=True, unique=True)  # Provider payment/refund id

    __table_args__ = (Index("ix_balance_transactions_user_created", "user_id", "created_at"),)

    def __repr__(self) -> str:
        """String representation."""
        return f"<BalanceTransaction(id={self.id}, type={self.type.value}, amount={self.amount})>"
