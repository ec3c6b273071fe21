"""
Keypair Identity
secp256k1 identities for signing relay events.

Two ways to get an identity:
  derive_from_secret  — deterministic: SHA-256(secret) is the private key,
                        so anyone holding the secret controls the identity.
  generate_random     — a fresh single-use key from the OS CSPRNG.

Public keys are x-only (BIP-340) and travel as 64-char lowercase hex.
The NIP-19 bech32 forms (npub / nsec) are accepted at every input boundary
and normalized to hex immediately.

Offer secrets are 64-char hex strings. They are shown to users in eight
blocks of eight so they can be written down and typed back in.
"""

import hashlib
import re
import secrets
from dataclasses import dataclass, field

from coincurve import PrivateKey

from shroud.errors import ValidationFailure


KEY_SIZE = 32
SECRET_BLOCK = 8

_HEX64 = re.compile(r"^[0-9a-f]{64}$", re.IGNORECASE)

# BIP-173 bech32 alphabet and checksum generator
_CHARSET = "qpzry9x8gf2tvdw0s3jn54khce6mua7l"
_GENERATOR = [0x3B6A57B2, 0x26508E6D, 0x1EA119FA, 0x3D4233DD, 0x2A1462B3]


@dataclass(frozen=True)
class Identity:
    """
    A signing keypair.

    The private key never leaves the process except through an explicit
    SecretStore write. ``repr`` hides it.
    """

    private_key: bytes = field(repr=False)
    public_key: str

    @classmethod
    def from_private_key(cls, private_key: bytes) -> "Identity":
        """Build an identity from raw private key bytes."""
        if len(private_key) != KEY_SIZE:
            raise ValidationFailure("Private key must be 32 bytes", field="private_key")
        try:
            point = PrivateKey(private_key).public_key.format(compressed=True)
        except ValueError as e:
            raise ValidationFailure(f"Invalid secp256k1 private key: {e}", field="private_key") from e
        # Drop the parity byte: x-only public key
        return cls(private_key=private_key, public_key=point[1:].hex())

    @classmethod
    def from_hex(cls, key: str) -> "Identity":
        """Build an identity from a hex or nsec private key string."""
        return cls.from_private_key(parse_private_key(key))

    @property
    def private_hex(self) -> str:
        return self.private_key.hex()

    @property
    def npub(self) -> str:
        return npub_encode(self.public_key)

    @property
    def nsec(self) -> str:
        return nsec_encode(self.private_key)

    def sign(self, digest: bytes) -> bytes:
        """BIP-340 Schnorr signature over a 32-byte digest."""
        return PrivateKey(self.private_key).sign_schnorr(digest)


def derive_from_secret(secret: str) -> Identity:
    """
    Derive a deterministic identity from a secret string.

    Args:
        secret: Any non-empty string. Same secret, same identity.

    Returns:
        Identity whose private key is SHA-256 of the UTF-8 secret.
    """
    if not secret:
        raise ValidationFailure("Secret must not be empty", field="secret")
    return Identity.from_private_key(hashlib.sha256(secret.encode("utf-8")).digest())


def generate_random() -> Identity:
    """Generate a fresh single-use identity."""
    while True:
        candidate = secrets.token_bytes(KEY_SIZE)
        try:
            return Identity.from_private_key(candidate)
        except ValidationFailure:
            # Zero or >= curve order; vanishingly rare
            continue


# --- Offer secrets ---

def generate_secret() -> str:
    """Generate a random offer secret: 64 lowercase hex characters."""
    return secrets.token_hex(KEY_SIZE)


def validate_offer_secret(secret: str) -> bool:
    """True if ``secret`` is exactly 64 hex characters."""
    return bool(secret) and bool(_HEX64.match(secret))


def format_secret_for_display(secret: str) -> str:
    """Split a secret into blocks of eight for writing down."""
    return " ".join(secret[i:i + SECRET_BLOCK] for i in range(0, len(secret), SECRET_BLOCK))


def parse_formatted_secret(text: str) -> str:
    """
    Inverse of :func:`format_secret_for_display`.

    Whitespace and dashes are dropped. The result must be a valid secret.
    """
    secret = re.sub(r"[\s-]", "", text).lower()
    if not validate_offer_secret(secret):
        raise ValidationFailure("Offer secret must be 64 hex characters", field="secret")
    return secret


# --- Key parsing ---

def normalize_pubkey(key: str) -> str:
    """
    Canonicalize a public key to lowercase hex.

    Accepts 64-char hex (any case) or an ``npub1`` string. Whitespace
    around the key is ignored.
    """
    if not isinstance(key, str):
        raise ValidationFailure("Public key must be a string", field="pubkey", value=key)
    key = key.strip()
    if key.startswith("npub1"):
        return npub_decode(key)
    if _HEX64.match(key):
        return key.lower()
    raise ValidationFailure("Invalid public key format", field="pubkey", value=key)


def parse_private_key(key: str) -> bytes:
    """Parse a private key given as 64-char hex or ``nsec1`` string."""
    key = key.strip()
    if key.startswith("nsec1"):
        return nsec_decode(key)
    if _HEX64.match(key):
        return bytes.fromhex(key)
    raise ValidationFailure("Invalid private key format. Use nsec or 64-char hex.", field="private_key")


# --- NIP-19 bech32 ---

def npub_encode(pubkey_hex: str) -> str:
    return _bech32_encode("npub", bytes.fromhex(pubkey_hex))


def npub_decode(npub: str) -> str:
    return _bech32_decode("npub", npub).hex()


def nsec_encode(private_key: bytes) -> str:
    return _bech32_encode("nsec", private_key)


def nsec_decode(nsec: str) -> bytes:
    return _bech32_decode("nsec", nsec)


def _polymod(values: list[int]) -> int:
    chk = 1
    for value in values:
        top = chk >> 25
        chk = (chk & 0x1FFFFFF) << 5 ^ value
        for i in range(5):
            chk ^= _GENERATOR[i] if ((top >> i) & 1) else 0
    return chk


def _hrp_expand(hrp: str) -> list[int]:
    return [ord(c) >> 5 for c in hrp] + [0] + [ord(c) & 31 for c in hrp]


def _convert_bits(data, from_bits: int, to_bits: int, pad: bool) -> list[int]:
    acc = 0
    bits = 0
    out = []
    maxv = (1 << to_bits) - 1
    for value in data:
        acc = (acc << from_bits) | value
        bits += from_bits
        while bits >= to_bits:
            bits -= to_bits
            out.append((acc >> bits) & maxv)
    if pad:
        if bits:
            out.append((acc << (to_bits - bits)) & maxv)
    elif bits >= from_bits or ((acc << (to_bits - bits)) & maxv):
        raise ValidationFailure("Invalid bech32 padding", field="bech32")
    return out


def _bech32_encode(hrp: str, payload: bytes) -> str:
    data = _convert_bits(payload, 8, 5, True)
    polymod = _polymod(_hrp_expand(hrp) + data + [0] * 6) ^ 1
    checksum = [(polymod >> 5 * (5 - i)) & 31 for i in range(6)]
    return hrp + "1" + "".join(_CHARSET[d] for d in data + checksum)


def _bech32_decode(expected_hrp: str, text: str) -> bytes:
    text = text.strip()
    if text.lower() != text and text.upper() != text:
        raise ValidationFailure("Mixed-case bech32 string", field=expected_hrp)
    text = text.lower()
    pos = text.rfind("1")
    if pos < 1 or pos + 7 > len(text):
        raise ValidationFailure(f"Malformed {expected_hrp}", field=expected_hrp)

    hrp = text[:pos]
    if hrp != expected_hrp:
        raise ValidationFailure(f"Expected {expected_hrp}, got {hrp}", field=expected_hrp)
    try:
        data = [_CHARSET.index(c) for c in text[pos + 1:]]
    except ValueError as e:
        raise ValidationFailure(f"Invalid bech32 character in {expected_hrp}", field=expected_hrp) from e
    if _polymod(_hrp_expand(hrp) + data) != 1:
        raise ValidationFailure(f"Bad {expected_hrp} checksum", field=expected_hrp)

    decoded = bytes(_convert_bits(data[:-6], 5, 8, False))
    if len(decoded) != KEY_SIZE:
        raise ValidationFailure(f"{expected_hrp} must encode 32 bytes", field=expected_hrp)
    return decoded
