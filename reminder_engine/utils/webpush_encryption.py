"""
Web Push payload encryption, "aesgcm" content encoding.

Each payload is encrypted for one subscriber with a fresh ephemeral P-256
key and a fresh 16-byte salt:

    shared = ECDH(ephemeral_private, subscriber_p256dh)
    ikm    = HKDF(salt=auth, ikm=shared, info="Content-Encoding: auth\\0", L=32)
    ctx    = "P-256\\0" || len(receiver) || receiver || len(sender) || sender
    cek    = HKDF(salt=salt, ikm=ikm, info="Content-Encoding: aesgcm\\0" || ctx, L=16)
    nonce  = HKDF(salt=salt, ikm=ikm, info="Content-Encoding: nonce\\0" || ctx, L=12)
    body   = AES-128-GCM(cek, nonce, pad_len(2) || padding || plaintext)

The whole payload goes into a single 4096-byte record.
"""

import os
import struct
from dataclasses import dataclass
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from reminder_engine.services.exceptions import PayloadTooLargeError, ValidationError
from reminder_engine.utils.crypto import (
    b64url_encode,
    load_p256_public_key,
    load_subscriber_keys,
    public_key_bytes,
)


RECORD_SIZE = 4096
TAG_LENGTH = 16
PAD_LENGTH_PREFIX = 2
MAX_PLAINTEXT_LENGTH = RECORD_SIZE - TAG_LENGTH - PAD_LENGTH_PREFIX  # 4078
SALT_LENGTH = 16


@dataclass(frozen=True)
class EncryptedPayload:
    """
    Ciphertext plus the parameters the receiver needs to decrypt it.

    Attributes:
        body: Request body (single AES-GCM record including the tag)
        salt: Random 16-byte salt (sent in the Encryption header)
        server_public_key: Ephemeral sender point (sent as Crypto-Key dh=)
    """

    body: bytes
    salt: bytes
    server_public_key: bytes

    @property
    def salt_b64(self) -> str:
        return b64url_encode(self.salt)

    @property
    def server_public_key_b64(self) -> str:
        return b64url_encode(self.server_public_key)


def _hkdf(salt: bytes, ikm: bytes, info: bytes, length: int) -> bytes:
    return HKDF(algorithm=hashes.SHA256(), length=length, salt=salt, info=info).derive(ikm)


def _key_context(receiver: bytes, sender: bytes) -> bytes:
    return (
        b"P-256\x00"
        + struct.pack("!H", len(receiver)) + receiver
        + struct.pack("!H", len(sender)) + sender
    )


def _derive_key_and_nonce(
    shared_secret: bytes,
    auth_secret: bytes,
    salt: bytes,
    receiver: bytes,
    sender: bytes,
):
    ikm = _hkdf(auth_secret, shared_secret, b"Content-Encoding: auth\x00", 32)
    context = _key_context(receiver, sender)
    cek = _hkdf(salt, ikm, b"Content-Encoding: aesgcm\x00" + context, 16)
    nonce = _hkdf(salt, ikm, b"Content-Encoding: nonce\x00" + context, 12)
    return cek, nonce


def encrypt_aesgcm(
    plaintext: bytes,
    p256dh_b64: str,
    auth_b64: str,
    padding_length: int = 0,
    salt: Optional[bytes] = None,
    sender_private_key: Optional[ec.EllipticCurvePrivateKey] = None,
) -> EncryptedPayload:
    """
    Encrypt a payload for one subscriber.

    Args:
        plaintext: Payload bytes (typically UTF-8 JSON)
        p256dh_b64: Subscriber public key (base64url)
        auth_b64: Subscriber auth secret (base64url)
        padding_length: Zero bytes of padding to prepend
        salt: Override the random salt (tests only)
        sender_private_key: Override the ephemeral key (tests only)

    Raises:
        PayloadTooLargeError: If plaintext plus padding exceeds one record
        KeyImportError: If the subscriber keys are malformed
    """
    if len(plaintext) + padding_length > MAX_PLAINTEXT_LENGTH:
        raise PayloadTooLargeError(len(plaintext) + padding_length, MAX_PLAINTEXT_LENGTH)

    receiver_key, auth_secret = load_subscriber_keys(p256dh_b64, auth_b64)
    salt = salt if salt is not None else os.urandom(SALT_LENGTH)
    sender_key = sender_private_key or ec.generate_private_key(ec.SECP256R1())

    receiver = public_key_bytes(receiver_key)
    sender = public_key_bytes(sender_key.public_key())
    shared_secret = sender_key.exchange(ec.ECDH(), receiver_key)
    cek, nonce = _derive_key_and_nonce(shared_secret, auth_secret, salt, receiver, sender)

    record = struct.pack("!H", padding_length) + b"\x00" * padding_length + plaintext
    body = AESGCM(cek).encrypt(nonce, record, None)

    return EncryptedPayload(body=body, salt=salt, server_public_key=sender)


def decrypt_aesgcm(
    body: bytes,
    salt: bytes,
    server_public_key: bytes,
    receiver_private_key: ec.EllipticCurvePrivateKey,
    auth_secret: bytes,
) -> bytes:
    """
    Receiver-side inverse of encrypt_aesgcm().

    Raises:
        ValidationError: If the record does not authenticate or its padding is invalid
    """
    sender_key = load_p256_public_key(server_public_key, "dh")
    receiver = public_key_bytes(receiver_private_key.public_key())
    shared_secret = receiver_private_key.exchange(ec.ECDH(), sender_key)
    cek, nonce = _derive_key_and_nonce(shared_secret, auth_secret, salt, receiver, server_public_key)

    try:
        record = AESGCM(cek).decrypt(nonce, body, None)
    except InvalidTag:
        raise ValidationError("Push record does not authenticate")

    (padding_length,) = struct.unpack("!H", record[:PAD_LENGTH_PREFIX])
    padding = record[PAD_LENGTH_PREFIX:PAD_LENGTH_PREFIX + padding_length]
    if len(padding) != padding_length or padding.strip(b"\x00"):
        raise ValidationError("Push record has invalid padding")

    return record[PAD_LENGTH_PREFIX + padding_length:]
