"""
Push subscription API endpoints.

Provides endpoints for:
- Push subscription management (subscribe, unsubscribe)
- VAPID public key retrieval
- Ad-hoc notification broadcast
"""

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from reminder_engine.api.dispatch import get_dispatch_service
from reminder_engine.config.settings import get_settings
from reminder_engine.db.database import get_db
from reminder_engine.schemas.push import (
    PushNotificationRequest,
    PushNotificationResponse,
    PushSubscriptionCreate,
    PushSubscriptionRemove,
    PushSubscriptionResponse,
    VapidKeyResponse,
)
from reminder_engine.services.dispatch_service import DispatchService
from reminder_engine.services.exceptions import NotFoundError
from reminder_engine.services.push_subscription_service import PushSubscriptionService
from reminder_engine.utils.logging_config import get_logger


logger = get_logger("api")

router = APIRouter(
    prefix="/push",
    tags=["Push"],
)


# ============================================================================
# Dependencies
# ============================================================================


def get_push_subscription_service(
    db: Session = Depends(get_db),
) -> PushSubscriptionService:
    """Create PushSubscriptionService instance with database session."""
    return PushSubscriptionService(
        db=db,
        default_lead_time_minutes=get_settings().default_lead_time_minutes,
    )


# ============================================================================
# Push Subscription Endpoints
# ============================================================================


@router.post(
    "/subscribe",
    response_model=PushSubscriptionResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Register a push subscription",
)
async def create_push_subscription(
    body: PushSubscriptionCreate,
    service: PushSubscriptionService = Depends(get_push_subscription_service),
):
    """
    Register a Web Push subscription for the current device.

    If a subscription with the same endpoint already exists, its keys are
    replaced, and its lead time too when the request carries one.
    """
    subscription = service.upsert_subscription(
        endpoint=body.endpoint,
        p256dh_key=body.p256dh_key,
        auth_key=body.auth_key,
        lead_time_minutes=body.lead_time_minutes,
        device_name=body.device_name,
    )
    return PushSubscriptionResponse.model_validate(subscription)


@router.post(
    "/unsubscribe",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Remove a push subscription",
)
async def remove_push_subscription(
    body: PushSubscriptionRemove,
    service: PushSubscriptionService = Depends(get_push_subscription_service),
):
    """
    Remove the push subscription matching the given endpoint.
    """
    try:
        service.remove_subscription(endpoint=body.endpoint)
    except NotFoundError as err:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Subscription not found",
        ) from err


# ============================================================================
# VAPID Key Endpoint
# ============================================================================


@router.get(
    "/vapid-key",
    response_model=VapidKeyResponse,
    summary="Get VAPID public key",
)
async def get_vapid_key():
    """
    Returns the server's VAPID public key for creating push subscriptions.
    """
    settings = get_settings()
    if not settings.vapid_public_key:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Push notifications not configured",
        )
    return VapidKeyResponse(vapid_public_key=settings.vapid_public_key)


# ============================================================================
# Ad-hoc Notification Endpoint
# ============================================================================


@router.post(
    "/send",
    response_model=PushNotificationResponse,
    summary="Broadcast a notification",
    description="Send a notification to every registered subscription. "
                "Expired endpoints are removed.",
)
def send_push_notification(
    body: PushNotificationRequest,
    service: DispatchService = Depends(get_dispatch_service),
):
    """Broadcast a notification and report per-subscription counts."""
    summary = service.send_notification(body.title, body.body, body.data)
    return PushNotificationResponse(
        sent=summary.sent,
        failed=summary.failed,
        subscriptions_removed=summary.subscriptions_removed,
        message=f"Sent {summary.sent} notifications",
    )
