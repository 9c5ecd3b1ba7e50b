"""
Push subscription service for managing Web Push subscriptions.

Provides business logic for subscribing, unsubscribing and listing
subscriptions, and for pruning endpoints the push network reports gone.
"""

from datetime import datetime
from typing import Iterable, List, Optional

from sqlalchemy.orm import Session

from reminder_engine.models.push_subscription import PushSubscription
from reminder_engine.services.exceptions import KeyImportError, NotFoundError, ValidationError
from reminder_engine.utils.crypto import load_subscriber_keys
from reminder_engine.utils.logging_config import get_logger
from reminder_engine.utils.time_utils import utcnow
from reminder_engine.utils.vapid import endpoint_audience


logger = get_logger("services")

MIN_LEAD_TIME_MINUTES = 1
MAX_LEAD_TIME_MINUTES = 1440


class PushSubscriptionService:
    """
    Service for managing Web Push subscriptions.

    Handles subscription lifecycle:
    - Create (upsert by endpoint)
    - Remove (by endpoint)
    - List (optionally by lead time)
    - Record successful deliveries
    - Remove expired (404/410) endpoints in one batch
    """

    def __init__(self, db: Session, default_lead_time_minutes: int = 15):
        """
        Initialize the service.

        Args:
            db: SQLAlchemy database session
            default_lead_time_minutes: Lead time for subscriptions created
                without one
        """
        self.db = db
        self.default_lead_time_minutes = default_lead_time_minutes

    def upsert_subscription(
        self,
        endpoint: str,
        p256dh_key: str,
        auth_key: str,
        lead_time_minutes: Optional[int] = None,
        device_name: Optional[str] = None,
    ) -> PushSubscription:
        """
        Create or replace a push subscription.

        A device that subscribes again with the same endpoint updates its
        keys in place. Its lead time is replaced only when one is given; a new
        subscription without one gets the default lead time.

        Args:
            endpoint: Push service endpoint URL
            p256dh_key: ECDH public key (Base64url)
            auth_key: Auth secret (Base64url)
            lead_time_minutes: Reminder lead time (1-1440), or None
            device_name: Optional user-friendly device label

        Returns:
            Created or updated PushSubscription

        Raises:
            ValidationError: If the endpoint, keys or lead time are invalid
        """
        endpoint_audience(endpoint)
        if lead_time_minutes is not None and not (
            MIN_LEAD_TIME_MINUTES <= lead_time_minutes <= MAX_LEAD_TIME_MINUTES
        ):
            raise ValidationError(
                f"Lead time must be between {MIN_LEAD_TIME_MINUTES} and "
                f"{MAX_LEAD_TIME_MINUTES} minutes",
                field="lead_time_minutes",
            )
        try:
            load_subscriber_keys(p256dh_key, auth_key)
        except KeyImportError as e:
            raise ValidationError(str(e), field=e.key_name)

        existing = self.get_by_endpoint(endpoint)

        if existing:
            existing.p256dh_key = p256dh_key
            existing.auth_key = auth_key
            if lead_time_minutes is not None:
                existing.lead_time_minutes = lead_time_minutes
            existing.device_name = device_name
            self.db.commit()
            self.db.refresh(existing)
            logger.info(
                "Updated push subscription",
                extra={"endpoint_prefix": endpoint[:60], "lead_time_minutes": existing.lead_time_minutes},
            )
            return existing

        if lead_time_minutes is None:
            lead_time_minutes = self.default_lead_time_minutes
        subscription = PushSubscription(
            endpoint=endpoint,
            p256dh_key=p256dh_key,
            auth_key=auth_key,
            lead_time_minutes=lead_time_minutes,
            device_name=device_name,
        )
        self.db.add(subscription)
        self.db.commit()
        self.db.refresh(subscription)
        logger.info(
            "Created push subscription",
            extra={"subscription_id": subscription.id, "lead_time_minutes": lead_time_minutes},
        )
        return subscription

    def get_by_endpoint(self, endpoint: str) -> Optional[PushSubscription]:
        return (
            self.db.query(PushSubscription)
            .filter(PushSubscription.endpoint == endpoint)
            .first()
        )

    def remove_subscription(self, endpoint: str) -> bool:
        """
        Remove a push subscription by endpoint.

        Raises:
            NotFoundError: If no subscription has this endpoint
        """
        subscription = self.get_by_endpoint(endpoint)
        if not subscription:
            raise NotFoundError("PushSubscription", endpoint[:60])

        self.db.delete(subscription)
        self.db.commit()
        logger.info(
            "Removed push subscription",
            extra={"endpoint_prefix": endpoint[:60]},
        )
        return True

    def list_subscriptions(self, lead_time_minutes: Optional[int] = None) -> List[PushSubscription]:
        """
        List subscriptions, oldest first.

        Args:
            lead_time_minutes: Only subscriptions with this lead time
        """
        query = self.db.query(PushSubscription)
        if lead_time_minutes is not None:
            query = query.filter(PushSubscription.lead_time_minutes == lead_time_minutes)
        return query.order_by(PushSubscription.created_at.asc(), PushSubscription.id.asc()).all()

    def mark_used(self, endpoints: Iterable[str], now: Optional[datetime] = None) -> int:
        """
        Stamp last_used_at on subscriptions that accepted a push.

        Returns:
            Number of subscriptions updated
        """
        endpoints = list(set(endpoints))
        if not endpoints:
            return 0
        count = (
            self.db.query(PushSubscription)
            .filter(PushSubscription.endpoint.in_(endpoints))
            .update({PushSubscription.last_used_at: now or utcnow()}, synchronize_session=False)
        )
        self.db.commit()
        return count

    def remove_expired(self, endpoints: Iterable[str]) -> int:
        """
        Delete subscriptions whose endpoints the push network reported gone.

        Issues a single batched DELETE.

        Returns:
            Number of subscriptions removed
        """
        endpoints = list(set(endpoints))
        if not endpoints:
            return 0
        count = (
            self.db.query(PushSubscription)
            .filter(PushSubscription.endpoint.in_(endpoints))
            .delete(synchronize_session=False)
        )
        self.db.commit()
        if count > 0:
            logger.info(
                f"Removed {count} expired push subscriptions",
                extra={"endpoint_prefixes": [e[:60] for e in endpoints]},
            )
        return count
