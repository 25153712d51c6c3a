"""Plan model for subscription tiers."""
from sqlalchemy import Boolean, Column, Integer, Numeric, String

from usage_billing.models.base import Base, JSONType


class Plan(Base):
    """Subscription tier with a monthly credit allowance and price."""

    __tablename__ = "plans"

    name = Column(String(50), nullable=False, unique=True, index=True)
    display_name = Column(String(100), nullable=False)
    monthly_credits = Column(Integer, nullable=False)
    price_monthly_usd = Column(Numeric(10, 2), nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)
    sort_order = Column(Integer, nullable=False, default=0)
    features = Column(JSONType, nullable=False, default=list)

    def __repr__(self) -> str:
        """String representation."""
        return f"<Plan(id={self.id}, name={self.name}, price={self.price_monthly_usd})>"
