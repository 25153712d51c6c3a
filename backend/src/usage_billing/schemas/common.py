"""Shared schema types: batch summaries and UTC timestamps."""
from datetime import datetime, timezone
from typing import Annotated

from pydantic import AfterValidator, BaseModel, Field


def to_naive_utc(value: datetime) -> datetime:
    """Timestamps are stored as naive UTC; offset-aware values are converted."""
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


UtcDatetime = Annotated[datetime, AfterValidator(to_naive_utc)]


class BatchItemError(BaseModel):
    """Failure of one item inside a batch operation."""

    item_id: str = Field(..., description="Identifier of the failed item (user, subscription or event)")
    error: str = Field(..., description="Error message")


class BatchResult(BaseModel):
    """Summary returned by batch operations instead of raising."""

    processed: int = Field(default=0, description="Items processed successfully")
    errors: list[BatchItemError] = Field(default_factory=list, description="Per-item failures")

    def record_error(self, item_id: object, error: Exception | str) -> None:
        """Append a failure for one item."""
        self.errors.append(BatchItemError(item_id=str(item_id), error=str(error)))
