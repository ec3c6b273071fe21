"""
Group Cipher
Symmetric AES-256-GCM encryption for everyone who knows a shared group secret.

  secret → GroupKey   (SHA-256, or HKDF when key separation is enabled)
  secret → ChannelId  (SHA-256 hex; the public routing tag for the group)

Blob layout on the wire: nonce (12) ‖ ciphertext ‖ tag (16), hex-encoded.

In legacy mode the group key and the channel id are the same hash: anyone
who sees the channel id tag on a relay holds the key. That mode exists for
wire compatibility with groups already in use. New groups should use
``legacy=False``.
"""

import hashlib
import json
import os
import re
from dataclasses import dataclass, field

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from shroud.errors import DecryptionFailure, ValidationFailure


NONCE_SIZE = 12  # AES-256-GCM standard
TAG_SIZE = 16
KEY_SIZE = 32

# HKDF contexts, used only when key separation is on
_GROUP_KEY_CONTEXT = b"shroud-group-key-v1"
_CHANNEL_ID_CONTEXT = b"shroud-channel-id-v1"

_SECRET_PATTERN = re.compile(r"^[A-Za-z0-9_-]+$")
SECRET_MIN_LENGTH = 8
SECRET_MAX_LENGTH = 256


@dataclass(frozen=True)
class EncryptedEnvelope:
    """Ciphertext and nonce carried as separate hex fields."""

    content: str
    iv: str

    def to_dict(self) -> dict:
        return {"content": self.content, "iv": self.iv}


@dataclass(frozen=True)
class Group:
    """
    Everything derived from a group secret.

    Args:
        key: 32-byte AES key.
        channel_id: 64-char hex routing tag.
        legacy: Whether key and channel id share one derivation.
    """

    key: bytes = field(repr=False)
    channel_id: str
    legacy: bool = True

    @classmethod
    def from_secret(cls, secret: str, legacy: bool = True) -> "Group":
        """Derive the group key and channel id from a shared secret."""
        if legacy:
            return cls(key=derive_key(secret), channel_id=derive_channel_id(secret), legacy=True)
        return cls(
            key=_hkdf(secret, _GROUP_KEY_CONTEXT),
            channel_id=_hkdf(secret, _CHANNEL_ID_CONTEXT).hex(),
            legacy=False,
        )

    def encrypt(self, text: str) -> str:
        return encrypt_for_group(text, self.key)

    def decrypt(self, blob_hex: str) -> str:
        return decrypt_for_group(blob_hex, self.key)


def validate_group_secret(secret: str) -> str:
    """
    Check a user-chosen group secret and return it stripped.

    Raises:
        ValidationFailure: too short, too long, or outside ``[A-Za-z0-9_-]``.
    """
    secret = (secret or "").strip()
    if len(secret) < SECRET_MIN_LENGTH:
        raise ValidationFailure(
            f"Group secret must be at least {SECRET_MIN_LENGTH} characters", field="secret"
        )
    if len(secret) > SECRET_MAX_LENGTH:
        raise ValidationFailure(
            f"Group secret must be at most {SECRET_MAX_LENGTH} characters", field="secret"
        )
    if not _SECRET_PATTERN.match(secret):
        raise ValidationFailure("Group secret may only contain letters, digits, - and _", field="secret")
    return secret


def derive_key(secret: str) -> bytes:
    """SHA-256 of the UTF-8 secret. Deterministic."""
    if not secret:
        raise ValidationFailure("Group secret must not be empty", field="secret")
    return hashlib.sha256(secret.encode("utf-8")).digest()


def derive_channel_id(secret: str) -> str:
    """Hex SHA-256 of the secret; the group's public routing tag."""
    return derive_key(secret).hex()


def _hkdf(secret: str, context: bytes) -> bytes:
    if not secret:
        raise ValidationFailure("Group secret must not be empty", field="secret")
    hkdf = HKDF(
        algorithm=hashes.SHA256(),
        length=KEY_SIZE,
        salt=None,
        info=context,
    )
    return hkdf.derive(secret.encode("utf-8"))


def encrypt(plaintext: bytes, key: bytes) -> bytes:
    """
    Encrypt with AES-256-GCM under a fresh random nonce.

    Args:
        plaintext: Raw bytes.
        key: 32-byte group key.

    Returns:
        nonce ‖ ciphertext ‖ tag.
    """
    nonce = os.urandom(NONCE_SIZE)
    return nonce + AESGCM(key).encrypt(nonce, plaintext, None)


def decrypt(blob: bytes, key: bytes) -> bytes:
    """
    Reverse :func:`encrypt`.

    Raises:
        DecryptionFailure: blob too short, wrong key, or tampered data.
    """
    if len(blob) < NONCE_SIZE + TAG_SIZE:
        raise DecryptionFailure("Ciphertext too short", {"length": len(blob)})
    try:
        return AESGCM(key).decrypt(blob[:NONCE_SIZE], blob[NONCE_SIZE:], None)
    except InvalidTag as e:
        raise DecryptionFailure("Group decryption failed") from e


def encrypt_for_group(text: str, key: bytes) -> str:
    """Encrypt a string; returns the hex blob used as event content."""
    return encrypt(text.encode("utf-8"), key).hex()


def decrypt_for_group(blob_hex: str, key: bytes) -> str:
    """Decrypt a hex blob produced by :func:`encrypt_for_group`."""
    try:
        blob = bytes.fromhex(blob_hex)
    except (TypeError, ValueError) as e:
        raise DecryptionFailure("Ciphertext is not hex") from e
    try:
        return decrypt(blob, key).decode("utf-8")
    except UnicodeDecodeError as e:
        raise DecryptionFailure("Plaintext is not UTF-8") from e


def encrypt_metadata(metadata: dict, key: bytes) -> EncryptedEnvelope:
    """Encrypt a JSON object, keeping the nonce as a separate field."""
    blob = encrypt(json.dumps(metadata).encode("utf-8"), key)
    return EncryptedEnvelope(content=blob[NONCE_SIZE:].hex(), iv=blob[:NONCE_SIZE].hex())


def decrypt_metadata(envelope: EncryptedEnvelope | dict, key: bytes) -> dict:
    """Reverse :func:`encrypt_metadata`."""
    if isinstance(envelope, dict):
        envelope = EncryptedEnvelope(content=envelope.get("content", ""), iv=envelope.get("iv", ""))
    try:
        blob = bytes.fromhex(envelope.iv) + bytes.fromhex(envelope.content)
    except (TypeError, ValueError) as e:
        raise DecryptionFailure("Envelope is not hex") from e
    if len(blob) < NONCE_SIZE + TAG_SIZE or len(bytes.fromhex(envelope.iv)) != NONCE_SIZE:
        raise DecryptionFailure("Envelope too short")
    try:
        return json.loads(decrypt(blob, key))
    except ValueError as e:
        raise DecryptionFailure("Envelope does not contain JSON") from e
