"""Payment transactions at the provider and receipt numbering."""
import enum

from sqlalchemy import Column, Enum as SQLEnum, ForeignKey, Integer, String, Text, Uuid

from usage_billing.database import Base as DeclarativeBase
from usage_billing.models.base import Base, JSONType, Money


class PaymentTransactionStatus(enum.Enum):
    """Payment lifecycle status."""

    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"


class PaymentTransaction(Base):
    """
    Money movement at the payment provider.

    Top-ups, subscription charges and upgrade price differences all land here.
    """

    __tablename__ = "payment_transactions"

    user_id = Column(Uuid(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    amount = Column(Money, nullable=False)
    currency = Column(String(3), nullable=False, default="USD")
    status = Column(
        SQLEnum(PaymentTransactionStatus), nullable=False, default=PaymentTransactionStatus.PENDING, index=True
    )
    payment_method = Column(String(50), nullable=False, default="razorpay")
    provider_order_id = Column(String(255), nullable=True, index=True)
    provider_payment_id = Column(String(255), nullable=True, unique=True)
    failure_code = Column(String(100), nullable=True)
    failure_reason = Column(Text, nullable=True)
    receipt_number = Column(String(50), nullable=True, unique=True)
    extra_metadata = Column("metadata", JSONType, nullable=False, default=dict)

    def __repr__(self) -> str:
        """String representation."""
        return f"<PaymentTransaction(id={self.id}, amount={self.amount}, status={self.status.value})>"


class ReceiptSequence(DeclarativeBase):
    """Last receipt number issued per financial year."""

    __tablename__ = "receipt_sequences"

    financial_year = Column(String(7), primary_key=True)  # 2024-25
    last_number = Column(Integer, nullable=False, default=0)
