"""Pydantic schemas for usage metering.

Request schemas omit ``user_id`` (the API fills it from the authenticated
caller); the matching ``*Create`` schemas are what the metering service takes.
"""
from datetime import datetime
from decimal import Decimal
from typing import Literal
from uuid import UUID

from pydantic import BaseModel, Field, model_validator

from usage_billing.schemas.common import UtcDatetime


class UsageCharge(BaseModel):
    """Result of a metered usage event."""

    id: UUID = Field(..., description="Usage record ID")
    provider_cost_usd: Decimal = Field(..., description="Computed cost, rounded to 5 places")
    balance_after: Decimal | None = Field(default=None, description="Balance after the debit, if one was made")
    transaction_id: UUID | None = Field(default=None, description="Balance transaction created for the charge")


class SandboxSessionStart(BaseModel):
    """Schema for opening a sandbox session."""

    sandbox_id: str = Field(..., min_length=1, description="Provider sandbox identifier")
    project_id: str | None = Field(default=None, description="Project the sandbox belongs to")


class SandboxSession(BaseModel):
    """Schema for an opened sandbox session."""

    session_id: UUID
    sandbox_id: str
    start_time: datetime


class SandboxSessionEnd(BaseModel):
    """Schema for closing a sandbox session."""

    end_time: UtcDatetime | None = Field(default=None, description="Session end (defaults to now)")


class SandboxUsageRequest(BaseModel):
    """Schema for metering a completed sandbox session in one call."""

    sandbox_id: str = Field(..., min_length=1)
    project_id: str | None = None
    start_time: UtcDatetime
    end_time: UtcDatetime

    @model_validator(mode="after")
    def check_window(self) -> "SandboxUsageRequest":
        if self.end_time < self.start_time:
            raise ValueError("end_time must not be before start_time")
        return self


class SandboxUsageCreate(SandboxUsageRequest):
    user_id: UUID


class StorageUsageRequest(BaseModel):
    """Schema for metering a storage snapshot."""

    project_id: str | None = None
    storage_type: Literal["object", "database"] = Field(default="object", description="Storage class")
    size_gb: Decimal = Field(..., ge=0, description="Stored size in GB")
    operations: int = Field(default=0, ge=0, description="Operations in the period")
    period_start: UtcDatetime
    period_end: UtcDatetime


class StorageUsageCreate(StorageUsageRequest):
    user_id: UUID


class DeploymentUsageRequest(BaseModel):
    """Schema for metering a deployment."""

    project_id: str | None = None
    platform: str = Field(default="vercel", description="Deployment platform")
    deployment_id: str | None = None
    build_duration_minutes: int | None = Field(default=None, ge=0)


class DeploymentUsageCreate(DeploymentUsageRequest):
    user_id: UUID


class DatabaseUsageRequest(BaseModel):
    """Schema for metering managed database usage."""

    project_id: str | None = None
    usage_kind: Literal["compute", "storage", "file_storage", "egress"]
    quantity: Decimal = Field(..., ge=0, description="Hours for compute, GB otherwise")
    period_start: UtcDatetime
    period_end: UtcDatetime


class DatabaseUsageCreate(DatabaseUsageRequest):
    user_id: UUID


class AIUsageRequest(BaseModel):
    """Schema for metering an AI call."""

    project_id: str | None = None
    model_id: str = Field(..., min_length=1, description="Model identifier, e.g. anthropic/claude-sonnet-4.5")
    input_tokens: int = Field(..., ge=0)
    output_tokens: int = Field(..., ge=0)
    endpoint: str | None = None


class AIUsageCreate(AIUsageRequest):
    user_id: UUID


class AIUsageCharge(UsageCharge):
    """Result of metering an AI call."""

    credits_consumed: int = Field(default=0, description="Subscription credits drawn")
    balance_charged_usd: Decimal = Field(default=Decimal("0"), description="Share of the cost debited from balance")


class UsageBreakdownItem(BaseModel):
    """Totals for one resource class."""

    resource: str
    total_cost_usd: Decimal
    count: int


class UsageBreakdown(BaseModel):
    """Per-resource usage totals for a period."""

    user_id: UUID
    since: datetime
    items: list[UsageBreakdownItem]
    total_cost_usd: Decimal
