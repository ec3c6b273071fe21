"""
Conversation Cipher (NIP-44 v2)
Authenticated encryption between two secp256k1 keys.

  ECDH(a, B).x  →  HKDF-extract(salt="nip44-v2")           = conversation key
  conversation key + random 32-byte nonce → HKDF-expand(76) = chacha key ‖ chacha nonce ‖ hmac key

Payload: base64( 0x02 ‖ nonce(32) ‖ ChaCha20(padded) ‖ HMAC-SHA256(nonce ‖ ciphertext) )

Plaintext is length-prefixed and padded to a power-of-two-ish size, so
ciphertext length only leaks a coarse bucket of the message length.
"""

import base64
import os

from coincurve import PublicKey
from cryptography.hazmat.primitives import constant_time, hashes, hmac
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms
from cryptography.hazmat.primitives.kdf.hkdf import HKDFExpand

from shroud.errors import DecryptionFailure, ValidationFailure


VERSION = 2
SALT = b"nip44-v2"
NONCE_SIZE = 32
MAC_SIZE = 32
MIN_PLAINTEXT = 1
MAX_PLAINTEXT = 65535
# base64 length bounds for the smallest and largest valid payloads
_MIN_PAYLOAD = 132
_MAX_PAYLOAD = 87472


def conversation_key(private_key: bytes, public_key_hex: str) -> bytes:
    """
    Shared key for the pair (private_key, public_key).

    Symmetric: conversation_key(a, B) == conversation_key(b, A).
    """
    try:
        point = PublicKey(b"\x02" + bytes.fromhex(public_key_hex))
    except ValueError as e:
        raise ValidationFailure("Public key is not a valid curve point", field="pubkey", value=public_key_hex) from e
    shared_x = point.multiply(private_key).format(compressed=True)[1:]

    h = hmac.HMAC(SALT, hashes.SHA256())
    h.update(shared_x)
    return h.finalize()


def calc_padded_len(unpadded_len: int) -> int:
    """Padded plaintext length for a message of ``unpadded_len`` bytes."""
    if unpadded_len <= 32:
        return 32
    next_power = 1 << ((unpadded_len - 1).bit_length())
    chunk = 32 if next_power <= 256 else next_power // 8
    return chunk * ((unpadded_len - 1) // chunk + 1)


def _message_keys(conv_key: bytes, nonce: bytes) -> tuple[bytes, bytes, bytes]:
    okm = HKDFExpand(algorithm=hashes.SHA256(), length=76, info=nonce).derive(conv_key)
    return okm[:32], okm[32:44], okm[44:76]


def _pad(plaintext: bytes) -> bytes:
    length = len(plaintext)
    if not MIN_PLAINTEXT <= length <= MAX_PLAINTEXT:
        raise ValidationFailure("Plaintext must be 1..65535 bytes", field="plaintext", value=length)
    return length.to_bytes(2, "big") + plaintext + b"\x00" * (calc_padded_len(length) - length)


def _unpad(padded: bytes) -> bytes:
    length = int.from_bytes(padded[:2], "big")
    if length < MIN_PLAINTEXT or len(padded) != 2 + calc_padded_len(length):
        raise DecryptionFailure("Invalid padding")
    return padded[2:2 + length]


def _chacha20(key: bytes, nonce: bytes, data: bytes) -> bytes:
    # cryptography takes a 16-byte nonce: 4-byte little-endian counter ‖ 12-byte nonce
    cipher = Cipher(algorithms.ChaCha20(key, b"\x00" * 4 + nonce), mode=None)
    return cipher.encryptor().update(data)


def _mac(hmac_key: bytes, nonce: bytes, ciphertext: bytes) -> bytes:
    h = hmac.HMAC(hmac_key, hashes.SHA256())
    h.update(nonce + ciphertext)
    return h.finalize()


def encrypt(plaintext: str, conv_key: bytes, nonce: bytes | None = None) -> str:
    """
    Encrypt a string under a conversation key.

    Args:
        plaintext: UTF-8 text, 1 to 65535 bytes once encoded.
        conv_key: Output of :func:`conversation_key`.
        nonce: 32 bytes; random when omitted. Only tests pass one.

    Returns:
        Base64 payload.
    """
    nonce = nonce or os.urandom(NONCE_SIZE)
    chacha_key, chacha_nonce, hmac_key = _message_keys(conv_key, nonce)
    ciphertext = _chacha20(chacha_key, chacha_nonce, _pad(plaintext.encode("utf-8")))
    mac = _mac(hmac_key, nonce, ciphertext)
    return base64.b64encode(bytes([VERSION]) + nonce + ciphertext + mac).decode("ascii")


def decrypt(payload: str, conv_key: bytes) -> str:
    """
    Decrypt a payload produced by :func:`encrypt`.

    Raises:
        DecryptionFailure: unknown version, bad length, MAC mismatch, bad padding.
    """
    if not payload or payload[0] == "#":
        raise DecryptionFailure("Unknown encryption version")
    if not _MIN_PAYLOAD <= len(payload) <= _MAX_PAYLOAD:
        raise DecryptionFailure("Invalid payload size", {"length": len(payload)})
    try:
        data = base64.b64decode(payload, validate=True)
    except ValueError as e:
        raise DecryptionFailure("Payload is not base64") from e
    if data[0] != VERSION:
        raise DecryptionFailure(f"Unknown encryption version {data[0]}")

    nonce = data[1:1 + NONCE_SIZE]
    ciphertext = data[1 + NONCE_SIZE:-MAC_SIZE]
    mac = data[-MAC_SIZE:]

    chacha_key, chacha_nonce, hmac_key = _message_keys(conv_key, nonce)
    if not constant_time.bytes_eq(_mac(hmac_key, nonce, ciphertext), mac):
        raise DecryptionFailure("Invalid MAC")

    plaintext = _unpad(_chacha20(chacha_key, chacha_nonce, ciphertext))
    try:
        return plaintext.decode("utf-8")
    except UnicodeDecodeError as e:
        raise DecryptionFailure("Plaintext is not UTF-8") from e
