"""User model holding the spendable account balance."""
from decimal import Decimal

from sqlalchemy import Column, String

from usage_billing.models.base import Base, Money


class User(Base):
    """
    Billing identity for a user.

    ``account_balance`` is only ever written by the ledger, in the same
    transaction as the BalanceTransaction that justifies the change.
    """

    __tablename__ = "users"

    email = Column(String(255), nullable=False, unique=True, index=True)
    name = Column(String(255), nullable=True)
    account_balance = Column(Money, nullable=False, default=Decimal("0"))
    billing_country = Column(String(2), nullable=True)
    provider_customer_id = Column(String(255), nullable=True, unique=True)

    def __repr__(self) -> str:
        """String representation."""
        return f"<User(id={self.id}, email={self.email}, balance={self.account_balance})>"
