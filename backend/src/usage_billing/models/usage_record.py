"""Usage record models, one table per metered resource class."""
from sqlalchemy import BigInteger, Column, DateTime, ForeignKey, Integer, Numeric, String, Uuid
from sqlalchemy.orm import declared_attr

from usage_billing.models.base import Base, Money


class UsageRecordMixin:
    """Columns shared by every usage table."""

    @declared_attr
    def user_id(cls):
        return Column(Uuid(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)

    project_id = Column(String(255), nullable=True, index=True)
    provider_cost_usd = Column(Money, nullable=False, default=0)

    @declared_attr
    def balance_transaction_id(cls):
        return Column(Uuid(as_uuid=True), ForeignKey("balance_transactions.id"), nullable=True)


class SandboxUsage(UsageRecordMixin, Base):
    """
    One sandbox session.

    Opened with a null ``end_time`` and zero cost, then finalized exactly once.
    """

    __tablename__ = "sandbox_usage"

    sandbox_id = Column(String(255), nullable=False, index=True)
    start_time = Column(DateTime, nullable=False)
    end_time = Column(DateTime, nullable=True, index=True)
    duration_minutes = Column(Integer, nullable=True)

    def __repr__(self) -> str:
        """String representation."""
        return f"<SandboxUsage(id={self.id}, sandbox_id={self.sandbox_id}, end_time={self.end_time})>"


class StorageUsage(UsageRecordMixin, Base):
    """Storage snapshot priced by size and operation count."""

    __tablename__ = "storage_usage"

    storage_type = Column(String(20), nullable=False)  # object, database
    size_gb = Column(Numeric(18, 6), nullable=False)
    operations = Column(BigInteger, nullable=False, default=0)
    period_start = Column(DateTime, nullable=False)
    period_end = Column(DateTime, nullable=False)


class DeploymentUsage(UsageRecordMixin, Base):
    """A single deployment event."""

    __tablename__ = "deployment_usage"

    platform = Column(String(50), nullable=False, default="vercel")
    deployment_id = Column(String(255), nullable=True)
    build_duration_minutes = Column(Integer, nullable=True)


class DatabaseUsage(UsageRecordMixin, Base):
    """Managed database compute, storage or egress for one billing window."""

    __tablename__ = "database_usage"

    usage_kind = Column(String(20), nullable=False)  # compute, storage, file_storage, egress
    quantity = Column(Numeric(18, 6), nullable=False)  # hours or GB depending on usage_kind
    period_start = Column(DateTime, nullable=False)
    period_end = Column(DateTime, nullable=False)


class AIUsage(UsageRecordMixin, Base):
    """One AI model call."""

    __tablename__ = "ai_usage"

    model_id = Column(String(255), nullable=False, index=True)
    input_tokens = Column(Integer, nullable=False)
    output_tokens = Column(Integer, nullable=False)
    credits_consumed = Column(Integer, nullable=False, default=0)  # Drawn from the subscription allowance
    endpoint = Column(String(100), nullable=True)
