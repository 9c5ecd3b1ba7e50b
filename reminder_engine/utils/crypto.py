"""
Key material import for Web Push.

Decodes the base64url-encoded VAPID key pair supplied through configuration
into `cryptography` key objects, and decodes the per-subscriber key material
(p256dh public key and auth secret) used for payload encryption.

Key formats:
- VAPID public key: 65-byte uncompressed P-256 point (0x04 || X || Y)
- VAPID private key: 32-byte raw P-256 scalar
- Subscriber p256dh: 65-byte uncompressed P-256 point
- Subscriber auth: 16-byte secret

The raw private scalar is not directly importable; it is first wrapped in a
PKCS#8 PrivateKeyInfo envelope whose fixed-length DER fields are sized for a
32-byte scalar.
"""

import base64
import binascii
from dataclasses import dataclass
from typing import Tuple

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec

from reminder_engine.services.exceptions import KeyImportError


P256_PRIVATE_KEY_LENGTH = 32
P256_PUBLIC_KEY_LENGTH = 65
AUTH_SECRET_LENGTH = 16

# PrivateKeyInfo ::= SEQUENCE {
#   version INTEGER (0),
#   algorithm SEQUENCE { id-ecPublicKey, prime256v1 },
#   privateKey OCTET STRING { ECPrivateKey ::= SEQUENCE { version INTEGER (1), privateKey OCTET STRING(32) } }
# }
_PKCS8_P256_PREFIX = bytes([
    0x30, 0x41,                                                  # SEQUENCE, 65 bytes
    0x02, 0x01, 0x00,                                            # INTEGER 0
    0x30, 0x13,                                                  # SEQUENCE, 19 bytes
    0x06, 0x07, 0x2A, 0x86, 0x48, 0xCE, 0x3D, 0x02, 0x01,        # OID 1.2.840.10045.2.1
    0x06, 0x08, 0x2A, 0x86, 0x48, 0xCE, 0x3D, 0x03, 0x01, 0x07,  # OID 1.2.840.10045.3.1.7
    0x04, 0x27,                                                  # OCTET STRING, 39 bytes
    0x30, 0x25,                                                  # SEQUENCE, 37 bytes
    0x02, 0x01, 0x01,                                            # INTEGER 1
    0x04, 0x20,                                                  # OCTET STRING, 32 bytes
])


# ============================================================================
# Base64url helpers
# ============================================================================


def b64url_decode(value: str) -> bytes:
    """
    Decode base64url text, restoring any stripped '=' padding.

    Raises:
        ValueError: If the text is not valid base64url
    """
    value = value.strip()
    padding = "=" * (-len(value) % 4)
    try:
        return base64.urlsafe_b64decode(value + padding)
    except (binascii.Error, ValueError) as e:
        raise ValueError(f"Invalid base64url data: {e}") from e


def b64url_encode(data: bytes) -> str:
    """Encode bytes as unpadded base64url text."""
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


# ============================================================================
# VAPID key pair
# ============================================================================


@dataclass(frozen=True)
class VapidKeyPair:
    """
    Imported VAPID identity.

    Attributes:
        private_key: ECDSA signing key
        public_key: Matching public key
        public_key_b64: Base64url form of the raw public point (sent in Crypto-Key)
    """

    private_key: ec.EllipticCurvePrivateKey
    public_key: ec.EllipticCurvePublicKey
    public_key_b64: str


def wrap_p256_private_key(raw_scalar: bytes) -> bytes:
    """
    Wrap a raw 32-byte P-256 scalar in a DER PKCS#8 envelope.

    Args:
        raw_scalar: Private key scalar, big-endian, exactly 32 bytes

    Returns:
        DER-encoded PrivateKeyInfo (67 bytes)

    Raises:
        KeyImportError: If the scalar is not 32 bytes long
    """
    if len(raw_scalar) != P256_PRIVATE_KEY_LENGTH:
        raise KeyImportError(
            f"expected a {P256_PRIVATE_KEY_LENGTH}-byte raw scalar, got {len(raw_scalar)} bytes",
            key_name="VAPID_PRIVATE_KEY",
        )
    return _PKCS8_P256_PREFIX + raw_scalar


def load_p256_public_key(raw_point: bytes, key_name: str) -> ec.EllipticCurvePublicKey:
    """
    Load a raw uncompressed P-256 point.

    Raises:
        KeyImportError: On wrong length, wrong encoding or a point not on the curve
    """
    if len(raw_point) != P256_PUBLIC_KEY_LENGTH or raw_point[0] != 0x04:
        raise KeyImportError(
            f"expected a {P256_PUBLIC_KEY_LENGTH}-byte uncompressed P-256 point, "
            f"got {len(raw_point)} bytes",
            key_name=key_name,
        )
    try:
        return ec.EllipticCurvePublicKey.from_encoded_point(ec.SECP256R1(), raw_point)
    except ValueError as e:
        raise KeyImportError(f"not a valid P-256 point: {e}", key_name=key_name) from e


def public_key_bytes(public_key: ec.EllipticCurvePublicKey) -> bytes:
    """Raw uncompressed point for a public key."""
    return public_key.public_bytes(
        serialization.Encoding.X962,
        serialization.PublicFormat.UncompressedPoint,
    )


def import_vapid_keys(public_key_b64: str, private_key_b64: str) -> VapidKeyPair:
    """
    Import the VAPID key pair from its base64url configuration values.

    Args:
        public_key_b64: Base64url raw public point
        private_key_b64: Base64url raw private scalar

    Returns:
        VapidKeyPair ready for signing

    Raises:
        KeyImportError: If either value is malformed, the curve is not P-256,
                        or the public key does not belong to the private key
    """
    try:
        public_raw = b64url_decode(public_key_b64)
    except ValueError as e:
        raise KeyImportError(str(e), key_name="VAPID_PUBLIC_KEY") from e
    try:
        private_raw = b64url_decode(private_key_b64)
    except ValueError as e:
        raise KeyImportError(str(e), key_name="VAPID_PRIVATE_KEY") from e

    public_key = load_p256_public_key(public_raw, "VAPID_PUBLIC_KEY")

    pkcs8 = wrap_p256_private_key(private_raw)
    try:
        private_key = serialization.load_der_private_key(pkcs8, password=None)
    except (ValueError, TypeError) as e:
        raise KeyImportError(f"PKCS#8 import failed: {e}", key_name="VAPID_PRIVATE_KEY") from e

    if not isinstance(private_key, ec.EllipticCurvePrivateKey) or not isinstance(
        private_key.curve, ec.SECP256R1
    ):
        raise KeyImportError("key is not on curve P-256", key_name="VAPID_PRIVATE_KEY")

    if public_key_bytes(private_key.public_key()) != public_raw:
        raise KeyImportError(
            "public key does not match private key",
            key_name="VAPID_PUBLIC_KEY",
        )

    return VapidKeyPair(
        private_key=private_key,
        public_key=public_key,
        public_key_b64=b64url_encode(public_raw),
    )


def generate_vapid_keys() -> Tuple[str, str]:
    """
    Generate a fresh VAPID key pair.

    Returns:
        (public_key_b64, private_key_b64) in the raw base64url formats
        accepted by import_vapid_keys()
    """
    private_key = ec.generate_private_key(ec.SECP256R1())
    scalar = private_key.private_numbers().private_value.to_bytes(P256_PRIVATE_KEY_LENGTH, "big")
    return b64url_encode(public_key_bytes(private_key.public_key())), b64url_encode(scalar)


# ============================================================================
# Subscriber key material
# ============================================================================


def load_subscriber_keys(p256dh_b64: str, auth_b64: str) -> Tuple[ec.EllipticCurvePublicKey, bytes]:
    """
    Decode a subscription's p256dh public key and auth secret.

    Returns:
        (receiver public key, auth secret bytes)

    Raises:
        KeyImportError: If either value is malformed
    """
    try:
        receiver_raw = b64url_decode(p256dh_b64)
    except ValueError as e:
        raise KeyImportError(str(e), key_name="p256dh") from e
    try:
        auth_secret = b64url_decode(auth_b64)
    except ValueError as e:
        raise KeyImportError(str(e), key_name="auth") from e

    if len(auth_secret) != AUTH_SECRET_LENGTH:
        raise KeyImportError(
            f"expected a {AUTH_SECRET_LENGTH}-byte auth secret, got {len(auth_secret)} bytes",
            key_name="auth",
        )

    return load_p256_public_key(receiver_raw, "p256dh"), auth_secret
