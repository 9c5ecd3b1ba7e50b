"""
Push delivery service.

Encrypts a payload for one subscription, signs the request with the VAPID
key and POSTs it to the subscription endpoint. Every attempt ends in a
DeliveryResult value; nothing is retried here; retry policy belongs to
the dispatch run.

Status classification:
- 2xx:           delivered
- 404 / 410:     endpoint expired (the subscription must be removed)
- anything else: delivery failed (including transport errors)
"""

import enum
import json
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional

import httpx

from reminder_engine.services.exceptions import KeyImportError, PayloadTooLargeError, ValidationError
from reminder_engine.utils.logging_config import get_logger
from reminder_engine.utils.vapid import VapidSigner
from reminder_engine.utils.webpush_encryption import encrypt_aesgcm


logger = get_logger("push")

EXPIRED_STATUS_CODES = frozenset({404, 410})
MAX_ERROR_BODY_LENGTH = 500


class DeliveryOutcome(str, enum.Enum):
    """Classification of a single push attempt."""

    DELIVERED = "delivered"
    ENDPOINT_EXPIRED = "endpoint_expired"
    DELIVERY_FAILED = "delivery_failed"


@dataclass(frozen=True)
class PushTarget:
    """
    Detached copy of a subscription, safe to hand to worker threads.

    Attributes:
        endpoint: Push service URL
        p256dh_key: Subscriber public key (base64url)
        auth_key: Subscriber auth secret (base64url)
        lead_time_minutes: Subscriber lead-time preference
    """

    endpoint: str
    p256dh_key: str
    auth_key: str
    lead_time_minutes: int = 15

    @classmethod
    def from_subscription(cls, subscription) -> "PushTarget":
        return cls(
            endpoint=subscription.endpoint,
            p256dh_key=subscription.p256dh_key,
            auth_key=subscription.auth_key,
            lead_time_minutes=subscription.lead_time_minutes,
        )

    @property
    def endpoint_short(self) -> str:
        return self.endpoint[:60] if self.endpoint else "?"


@dataclass(frozen=True)
class DeliveryResult:
    """
    Outcome of one push attempt.

    Attributes:
        endpoint: Subscription endpoint the push was sent to
        outcome: Classified outcome
        status_code: HTTP status (None for transport or encryption errors)
        body: Response body of a failed attempt, truncated
        error: Error description for failures
    """

    endpoint: str
    outcome: DeliveryOutcome
    status_code: Optional[int] = None
    body: str = ""
    error: Optional[str] = None

    @property
    def delivered(self) -> bool:
        return self.outcome == DeliveryOutcome.DELIVERED

    @property
    def expired(self) -> bool:
        return self.outcome == DeliveryOutcome.ENDPOINT_EXPIRED

    @property
    def failed(self) -> bool:
        return self.outcome == DeliveryOutcome.DELIVERY_FAILED


def classify_response(endpoint: str, status_code: int, body: str) -> DeliveryResult:
    """Map an HTTP response from a push service to a DeliveryResult."""
    if 200 <= status_code < 300:
        return DeliveryResult(endpoint=endpoint, outcome=DeliveryOutcome.DELIVERED, status_code=status_code)

    body = body[:MAX_ERROR_BODY_LENGTH]
    if status_code in EXPIRED_STATUS_CODES:
        return DeliveryResult(
            endpoint=endpoint,
            outcome=DeliveryOutcome.ENDPOINT_EXPIRED,
            status_code=status_code,
            body=body,
        )
    return DeliveryResult(
        endpoint=endpoint,
        outcome=DeliveryOutcome.DELIVERY_FAILED,
        status_code=status_code,
        body=body,
        error=f"Push service returned {status_code}",
    )


class PushDeliveryService:
    """
    Sends encrypted Web Push messages.

    Usage:
        >>> with PushDeliveryService(signer) as transport:
        ...     result = transport.send(target, {"title": "Hello"})
    """

    def __init__(
        self,
        signer: VapidSigner,
        ttl_seconds: int = 86400,
        urgency: str = "high",
        timeout_seconds: float = 10.0,
        client: Optional[httpx.Client] = None,
    ):
        """
        Initialize the transport.

        Args:
            signer: VAPID signer for the Authorization header
            ttl_seconds: TTL header value
            urgency: Urgency header value
            timeout_seconds: Request timeout when no client is supplied
            client: Pre-configured httpx client (tests inject a MockTransport)
        """
        self.signer = signer
        self.ttl_seconds = ttl_seconds
        self.urgency = urgency
        self._owns_client = client is None
        self.client = client or httpx.Client(timeout=timeout_seconds)

    def close(self) -> None:
        if self._owns_client:
            self.client.close()

    def __enter__(self) -> "PushDeliveryService":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    def build_request(
        self,
        target: PushTarget,
        payload: Dict[str, Any],
        now: Optional[datetime] = None,
    ):
        """
        Encrypt ``payload`` for ``target`` and assemble the request.

        Returns:
            (headers, body) tuple

        Raises:
            KeyImportError: If the subscriber keys are malformed
            PayloadTooLargeError: If the payload exceeds one record
            ValidationError: If the endpoint is not an absolute URL
        """
        plaintext = json.dumps(payload, ensure_ascii=False).encode("utf-8")
        encrypted = encrypt_aesgcm(plaintext, target.p256dh_key, target.auth_key)
        auth_headers = self.signer.authorization_headers(target.endpoint, now=now)

        headers = {
            "TTL": str(self.ttl_seconds),
            "Urgency": self.urgency,
            "Content-Type": "application/octet-stream",
            "Content-Encoding": "aesgcm",
            "Encryption": f"salt={encrypted.salt_b64}",
            "Crypto-Key": f"dh={encrypted.server_public_key_b64};{auth_headers['Crypto-Key']}",
            "Authorization": auth_headers["Authorization"],
        }
        return headers, encrypted.body

    def send(
        self,
        target: PushTarget,
        payload: Dict[str, Any],
        now: Optional[datetime] = None,
    ) -> DeliveryResult:
        """
        Deliver one payload to one subscription.

        Never raises for per-subscription problems; they are reported as
        DELIVERY_FAILED results.
        """
        try:
            headers, body = self.build_request(target, payload, now=now)
        except (KeyImportError, PayloadTooLargeError, ValidationError) as e:
            logger.warning(
                f"Push payload could not be prepared: {e}",
                extra={"endpoint": target.endpoint_short},
            )
            return DeliveryResult(
                endpoint=target.endpoint,
                outcome=DeliveryOutcome.DELIVERY_FAILED,
                error=str(e),
            )

        try:
            response = self.client.post(target.endpoint, content=body, headers=headers)
        except httpx.HTTPError as e:
            logger.warning(
                f"Push transport error: {e}",
                extra={"endpoint": target.endpoint_short},
            )
            return DeliveryResult(
                endpoint=target.endpoint,
                outcome=DeliveryOutcome.DELIVERY_FAILED,
                error=f"{type(e).__name__}: {e}",
            )

        result = classify_response(target.endpoint, response.status_code, response.text)
        if result.delivered:
            logger.debug(
                "Push delivered",
                extra={"endpoint": target.endpoint_short, "status_code": response.status_code},
            )
        else:
            logger.info(
                f"Push not delivered: {result.outcome.value}",
                extra={
                    "endpoint": target.endpoint_short,
                    "status_code": response.status_code,
                },
            )
        return result
