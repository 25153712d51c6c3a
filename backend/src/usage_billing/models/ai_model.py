"""AI model pricing catalog."""
from sqlalchemy import Boolean, Column, Numeric, String

from usage_billing.models.base import Base


class AIModel(Base):
    """Token pricing for one AI model, per million tokens."""

    __tablename__ = "ai_models"

    model_id = Column(String(255), nullable=False, unique=True, index=True)
    provider = Column(String(50), nullable=False)
    display_name = Column(String(255), nullable=True)
    input_price_per_million = Column(Numeric(12, 6), nullable=False)
    output_price_per_million = Column(Numeric(12, 6), nullable=False)
    is_enabled = Column(Boolean, nullable=False, default=True)
