"""
Pydantic schemas for push subscription API request/response validation.

Provides data validation and serialization for:
- Push subscription management (subscribe, unsubscribe)
- VAPID public key retrieval
- Ad-hoc notification broadcast
"""

from datetime import datetime
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, field_serializer, field_validator


# ============================================================================
# Push Subscription Schemas
# ============================================================================


class PushSubscriptionCreate(BaseModel):
    """
    Schema for creating a push subscription.

    Required:
        endpoint: Push service endpoint URL (must be HTTPS)
        p256dh_key: Base64url-encoded ECDH public key
        auth_key: Base64url-encoded auth secret

    Optional:
        lead_time_minutes: Minutes before an appointment to notify (defaults to
                           DEFAULT_LEAD_TIME_MINUTES for new subscriptions)
        device_name: User-friendly device label
    """

    endpoint: str = Field(..., max_length=1024, description="Push service endpoint URL (must be HTTPS)")
    p256dh_key: str = Field(..., max_length=255, description="Base64url-encoded ECDH public key")
    auth_key: str = Field(..., max_length=255, description="Base64url-encoded auth secret")
    lead_time_minutes: Optional[int] = Field(default=None, ge=1, le=1440, description="Reminder lead time in minutes")
    device_name: Optional[str] = Field(default=None, max_length=100, description="Optional device name")

    @field_validator("endpoint")
    @classmethod
    def validate_endpoint_https(cls, v: str) -> str:
        """Ensure endpoint uses HTTPS."""
        if not v.startswith("https://"):
            raise ValueError("Push subscription endpoint must use HTTPS")
        return v

    model_config = {
        "json_schema_extra": {
            "example": {
                "endpoint": "https://fcm.googleapis.com/fcm/send/abc123...",
                "p256dh_key": "BNcRdreALRFXTkOOUHK1EtK2wtaz5Ry4YfYCA_0...",
                "auth_key": "tBHItJI5svbpC7htUH8g...",
                "lead_time_minutes": 15,
                "device_name": "Front desk tablet",
            }
        }
    }


class PushSubscriptionResponse(BaseModel):
    """Response schema for a push subscription."""

    id: int
    endpoint: str
    lead_time_minutes: int
    device_name: Optional[str] = None
    created_at: datetime
    last_used_at: Optional[datetime] = None

    @field_serializer("created_at", "last_used_at")
    @classmethod
    def serialize_datetime_utc(cls, v: Optional[datetime]) -> Optional[str]:
        """Serialize datetime as ISO 8601 with explicit UTC timezone."""
        return v.isoformat() + "Z" if v else None

    model_config = {"from_attributes": True}


class PushSubscriptionRemove(BaseModel):
    """Schema for removing a push subscription by endpoint."""

    endpoint: str = Field(..., description="The push service endpoint URL to unsubscribe")


class VapidKeyResponse(BaseModel):
    """Response schema for the VAPID public key."""

    vapid_public_key: str = Field(..., description="Base64url-encoded VAPID public key")


# ============================================================================
# Ad-hoc Notification Schemas
# ============================================================================


class PushNotificationRequest(BaseModel):
    """
    Schema for broadcasting a notification to every subscription.

    Title and body are validated by the service, which answers 400 with
    the field name when one is blank.
    """

    title: Optional[str] = Field(default=None, max_length=200, description="Notification title")
    body: Optional[str] = Field(default=None, max_length=1000, description="Notification text")
    data: Optional[Dict[str, Any]] = Field(default=None, description="Data passed to the service worker")

    model_config = {
        "json_schema_extra": {
            "example": {
                "title": "Studio closed tomorrow",
                "body": "All appointments move to Thursday.",
                "data": {"url": "/agenda"},
            }
        }
    }


class PushNotificationResponse(BaseModel):
    """Per-subscription result of a broadcast."""

    model_config = ConfigDict(populate_by_name=True)

    sent: int = Field(..., ge=0)
    failed: int = Field(..., ge=0)
    subscriptions_removed: int = Field(..., ge=0, alias="subscriptionsRemoved")
    message: str
