"""
Pydantic schemas for dispatch runs.
"""

from typing import List

from pydantic import BaseModel, ConfigDict, Field


class DispatchSummaryResponse(BaseModel):
    """Result of one dispatch run."""

    model_config = ConfigDict(populate_by_name=True)

    run_id: str
    sent: int = Field(..., ge=0)
    failed: int = Field(..., ge=0)
    duplicates_skipped: int = Field(..., ge=0, alias="duplicatesSkipped")
    subscriptions_removed: int = Field(..., ge=0, alias="subscriptionsRemoved")
    already_notified: int = Field(..., ge=0, alias="alreadyNotified")
    errors: List[str] = Field(default_factory=list)
