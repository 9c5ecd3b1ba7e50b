"""
VAPID (RFC 8292) assertion signing.

Produces the short-lived ES256 JWT that identifies this application server
to a push service. The audience is the origin of the subscription endpoint,
so one token is minted per push service origin.
"""

import json
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional
from urllib.parse import urlsplit

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.asymmetric.utils import (
    decode_dss_signature,
    encode_dss_signature,
)

from reminder_engine.services.exceptions import ConfigurationError, ValidationError
from reminder_engine.utils.crypto import VapidKeyPair, b64url_decode, b64url_encode
from reminder_engine.utils.time_utils import utcnow


MAX_EXPIRATION_HOURS = 24
JWT_HEADER = {"typ": "JWT", "alg": "ES256"}

_COORDINATE_LENGTH = 32


def _json_segment(data: Dict[str, Any]) -> str:
    return b64url_encode(json.dumps(data, separators=(",", ":")).encode("utf-8"))


def _epoch_seconds(value: datetime) -> int:
    return int(value.replace(tzinfo=timezone.utc).timestamp())


def endpoint_audience(endpoint: str) -> str:
    """
    Origin (scheme://host[:port]) of a push endpoint.

    Raises:
        ValidationError: If the endpoint is not an absolute http(s) URL
    """
    parts = urlsplit(endpoint)
    if parts.scheme not in ("https", "http") or not parts.netloc:
        raise ValidationError(f"Invalid push endpoint: {endpoint[:60]}", field="endpoint")
    return f"{parts.scheme}://{parts.netloc}"


class VapidSigner:
    """
    Signs VAPID assertions with the application server key.

    Usage:
        >>> signer = VapidSigner(key_pair, "mailto:ops@example.com")
        >>> headers = signer.authorization_headers(subscription.endpoint)
    """

    def __init__(
        self,
        key_pair: VapidKeyPair,
        subject: str,
        expiration_hours: int = 12,
    ):
        if not (subject.startswith("mailto:") or subject.startswith("https://")):
            raise ConfigurationError(
                "VAPID subject must start with 'mailto:' or 'https://'",
                missing=["VAPID_SUBJECT"],
            )
        if expiration_hours <= 0 or expiration_hours > MAX_EXPIRATION_HOURS:
            raise ConfigurationError(
                f"VAPID expiration must be between 1 and {MAX_EXPIRATION_HOURS} hours",
                missing=["VAPID_EXPIRATION_HOURS"],
            )
        self.key_pair = key_pair
        self.subject = subject
        self.expiration = timedelta(hours=expiration_hours)

    @property
    def public_key(self) -> str:
        """Base64url application server key, as sent in Crypto-Key p256ecdsa."""
        return self.key_pair.public_key_b64

    def sign(self, endpoint: str, now: Optional[datetime] = None) -> str:
        """
        Mint a VAPID JWT for the push service behind ``endpoint``.

        Args:
            endpoint: Subscription endpoint URL
            now: Issue time (naive UTC); defaults to the current time

        Returns:
            Compact JWS ``header.claims.signature``
        """
        issued_at = now or utcnow()
        claims = {
            "aud": endpoint_audience(endpoint),
            "iat": _epoch_seconds(issued_at),
            "exp": _epoch_seconds(issued_at + self.expiration),
            "sub": self.subject,
        }
        signing_input = f"{_json_segment(JWT_HEADER)}.{_json_segment(claims)}"

        der_signature = self.key_pair.private_key.sign(
            signing_input.encode("ascii"),
            ec.ECDSA(hashes.SHA256()),
        )
        r, s = decode_dss_signature(der_signature)
        raw_signature = r.to_bytes(_COORDINATE_LENGTH, "big") + s.to_bytes(_COORDINATE_LENGTH, "big")

        return f"{signing_input}.{b64url_encode(raw_signature)}"

    def verify(self, token: str, now: Optional[datetime] = None) -> Dict[str, Any]:
        """
        Verify a token minted by this signer and return its claims.

        Raises:
            ValidationError: If the token is malformed, the signature does not
                             verify, or the token is expired
        """
        try:
            header_b64, claims_b64, signature_b64 = token.split(".")
        except ValueError:
            raise ValidationError("VAPID token must have three segments", field="Authorization")

        try:
            header = json.loads(b64url_decode(header_b64))
            claims = json.loads(b64url_decode(claims_b64))
            raw_signature = b64url_decode(signature_b64)
        except ValueError as e:
            raise ValidationError(f"VAPID token is not decodable: {e}", field="Authorization")

        if header != JWT_HEADER:
            raise ValidationError("Unexpected VAPID token header", field="Authorization")
        if len(raw_signature) != 2 * _COORDINATE_LENGTH:
            raise ValidationError("VAPID signature must be 64 bytes", field="Authorization")

        r = int.from_bytes(raw_signature[:_COORDINATE_LENGTH], "big")
        s = int.from_bytes(raw_signature[_COORDINATE_LENGTH:], "big")
        try:
            self.key_pair.public_key.verify(
                encode_dss_signature(r, s),
                f"{header_b64}.{claims_b64}".encode("ascii"),
                ec.ECDSA(hashes.SHA256()),
            )
        except InvalidSignature:
            raise ValidationError("VAPID signature does not verify", field="Authorization")

        if claims.get("exp", 0) <= _epoch_seconds(now or utcnow()):
            raise ValidationError("VAPID token has expired", field="Authorization")

        return claims

    def authorization_headers(self, endpoint: str, now: Optional[datetime] = None) -> Dict[str, str]:
        """
        Headers authenticating a push request to ``endpoint``.

        The ``Crypto-Key`` value carries only the ``p256ecdsa`` parameter;
        the transport prepends the payload's ``dh`` parameter.
        """
        return {
            "Authorization": f"WebPush {self.sign(endpoint, now=now)}",
            "Crypto-Key": f"p256ecdsa={self.public_key}",
        }
