"""
Pydantic schemas for client reminder scheduling.
"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field, field_serializer


class ScheduleReminderRequest(BaseModel):
    """
    Schema for scheduling a client reminder.

    previous_event_id is set when an appointment was rescheduled by
    deleting its calendar event and creating a new one.
    """

    event_id: str = Field(..., min_length=1, max_length=255)
    previous_event_id: Optional[str] = Field(default=None, max_length=255)
    client_phone: str = Field(..., min_length=1, max_length=50)
    client_name: str = Field(..., min_length=1, max_length=200)
    service_name: str = Field(..., min_length=1, max_length=200)
    appointment_time: datetime = Field(..., description="Appointment start (ISO 8601)")

    model_config = {
        "json_schema_extra": {
            "example": {
                "event_id": "a1b2c3d4e5",
                "client_phone": "+5511999990000",
                "client_name": "Ana Souza",
                "service_name": "Haircut",
                "appointment_time": "2026-03-02T17:00:00Z",
            }
        }
    }


class ScheduleReminderResponse(BaseModel):
    """Response schema for a schedule request."""

    scheduled: bool
    action: str = Field(..., description="created, updated, migrated or contact_only")
    reminder_id: int
    reminder_time: Optional[datetime] = None
    skip_reason: Optional[str] = None
    migrated_from: Optional[str] = None

    @field_serializer("reminder_time")
    @classmethod
    def serialize_datetime_utc(cls, v: Optional[datetime]) -> Optional[str]:
        """Serialize datetime as ISO 8601 with explicit UTC timezone."""
        return v.isoformat() + "Z" if v else None

    model_config = {"from_attributes": True}
