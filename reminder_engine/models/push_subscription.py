"""
PushSubscription model for Web Push notification subscriptions.

Stores the push service endpoint and encryption keys needed to deliver
push notifications to a specific device/browser, together with the
device's reminder lead-time preference.
"""

from sqlalchemy import Column, Integer, String, DateTime, CheckConstraint

from reminder_engine.models import Base
from reminder_engine.utils.time_utils import utcnow


class PushSubscription(Base):
    """
    Web Push subscription for a specific device/browser.

    Attributes:
        endpoint: Push service URL (unique per subscription)
        p256dh_key: ECDH public key for payload encryption (Base64url)
        auth_key: Auth secret for message authentication (Base64url)
        lead_time_minutes: Minutes before an event start at which to notify
        device_name: Optional user-friendly label (e.g., "Front desk tablet")
        last_used_at: Timestamp of last successful push delivery

    Lifecycle:
        Created when a device enables notifications, upserted when the same
        endpoint subscribes again. Removed on explicit unsubscribe or when
        the push service returns 404/410 for the endpoint.
    """

    __tablename__ = "push_subscriptions"

    id = Column(Integer, primary_key=True, autoincrement=True)

    # Push subscription data
    endpoint = Column(String(1024), nullable=False, unique=True)
    p256dh_key = Column(String(255), nullable=False)
    auth_key = Column(String(255), nullable=False)

    # Reminder preference
    lead_time_minutes = Column(Integer, nullable=False, default=15)

    # Optional device label
    device_name = Column(String(100), nullable=True)

    # Tracking
    last_used_at = Column(DateTime, nullable=True)

    # Timestamps
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(
        DateTime,
        default=utcnow,
        onupdate=utcnow,
        nullable=False,
    )

    __table_args__ = (
        CheckConstraint(
            "lead_time_minutes > 0 AND lead_time_minutes <= 1440",
            name="ck_push_subscriptions_lead_time",
        ),
    )

    @property
    def endpoint_short(self) -> str:
        """Endpoint prefix safe for logging."""
        return self.endpoint[:60] if self.endpoint else "?"

    def __repr__(self) -> str:
        return (
            f"<PushSubscription(id={self.id}, endpoint='{self.endpoint_short}', "
            f"lead_time_minutes={self.lead_time_minutes})>"
        )
