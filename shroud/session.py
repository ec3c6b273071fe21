"""
Session Secret Store
Where the engine keeps secrets that must outlive a single call.

  offer      → offer_id  : the offer secret (controls the offer identity)
  interest   → <offer_id>.<key prefix> : the single-use key of one interest signal

Two backends:
  MemorySecretStore        — volatile; everything is gone when the process exits.
  EncryptedFileSecretStore — AES-256-GCM at rest, key derived from a passphrase.

Passphrase → KEK (PBKDF2-HMAC-SHA256) → encrypts one JSON map per scope.
Neither the passphrase nor the KEK touches disk; only a random salt does.
"""

import base64
import json
import logging
import os
import re
from abc import ABC, abstractmethod
from pathlib import Path

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from shroud.errors import DecryptionFailure, ValidationFailure

logger = logging.getLogger(__name__)

# KEK derivation parameters
PBKDF2_ITERATIONS = 600_000  # OWASP recommended minimum
SALT_SIZE = 16
NONCE_SIZE = 12  # AES-256-GCM standard
KEY_SIZE = 32

SCOPE_OFFER = "offer"
SCOPE_INTEREST = "interest"

_NAME = re.compile(r"^[A-Za-z0-9_.-]{1,128}$")


def derive_kek(passphrase: str, salt: bytes, iterations: int = PBKDF2_ITERATIONS) -> bytes:
    """Derive a Key Encryption Key from a passphrase using PBKDF2."""
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=KEY_SIZE,
        salt=salt,
        iterations=iterations,
    )
    return kdf.derive(passphrase.encode("utf-8"))


def encrypt_data(data: bytes, key: bytes) -> dict:
    """Encrypt data with AES-256-GCM. Returns nonce + ciphertext."""
    nonce = os.urandom(NONCE_SIZE)
    ciphertext = AESGCM(key).encrypt(nonce, data, None)
    return {
        "nonce": base64.b64encode(nonce).decode(),
        "ciphertext": base64.b64encode(ciphertext).decode(),
    }


def decrypt_data(encrypted: dict, key: bytes) -> bytes:
    """Decrypt AES-256-GCM encrypted data."""
    try:
        nonce = base64.b64decode(encrypted["nonce"])
        ciphertext = base64.b64decode(encrypted["ciphertext"])
        return AESGCM(key).decrypt(nonce, ciphertext, None)
    except (InvalidTag, KeyError, ValueError) as e:
        raise DecryptionFailure("Secret store could not be decrypted") from e


def _check_name(kind: str, name: str):
    if not isinstance(name, str) or not _NAME.match(name):
        raise ValidationFailure(f"Invalid secret store {kind}", field=kind, value=name)


class SecretStore(ABC):
    """Scoped key/value storage for session secrets."""

    @abstractmethod
    def get(self, scope: str, key: str) -> str | None:
        """Return the stored value, or None."""

    @abstractmethod
    def set(self, scope: str, key: str, value: str):
        """Store or replace a value."""

    @abstractmethod
    def delete(self, scope: str, key: str) -> bool:
        """Remove a value. Returns whether it existed."""

    @abstractmethod
    def keys(self, scope: str) -> list[str]:
        """Every key stored under ``scope``."""


class MemorySecretStore(SecretStore):
    """Secrets held in a dict for the life of the process."""

    def __init__(self):
        self._data: dict[str, dict[str, str]] = {}

    def get(self, scope: str, key: str) -> str | None:
        return self._data.get(scope, {}).get(key)

    def set(self, scope: str, key: str, value: str):
        _check_name("scope", scope)
        _check_name("key", key)
        self._data.setdefault(scope, {})[key] = value

    def delete(self, scope: str, key: str) -> bool:
        return self._data.get(scope, {}).pop(key, None) is not None

    def keys(self, scope: str) -> list[str]:
        return sorted(self._data.get(scope, {}))


class EncryptedFileSecretStore(SecretStore):
    """
    Secrets encrypted at rest under a passphrase.

    One file per scope. Each write re-encrypts the whole scope with a
    fresh nonce.

    Args:
        passphrase: Unlocks the store.
        store_dir: Directory for the salt and scope files.
        iterations: PBKDF2 iterations; lower only in tests.
    """

    def __init__(self, passphrase: str, store_dir: str | Path = "./shroud-secrets",
                 iterations: int = PBKDF2_ITERATIONS):
        if not passphrase:
            raise ValidationFailure("Passphrase must not be empty", field="passphrase")
        self.store_dir = Path(store_dir)
        self.store_dir.mkdir(parents=True, exist_ok=True)

        # Load or create salt
        salt_file = self.store_dir / ".store-salt"
        if salt_file.exists():
            salt = base64.b64decode(salt_file.read_text())
        else:
            salt = os.urandom(SALT_SIZE)
            salt_file.write_text(base64.b64encode(salt).decode())

        self._kek = derive_kek(passphrase, salt, iterations)
        self._cache: dict[str, dict[str, str]] = {}

    def _scope_file(self, scope: str) -> Path:
        return self.store_dir / f"{scope}.secrets"

    def _load(self, scope: str) -> dict[str, str]:
        _check_name("scope", scope)
        if scope in self._cache:
            return self._cache[scope]
        path = self._scope_file(scope)
        if not path.exists():
            data = {}
        else:
            data = json.loads(decrypt_data(json.loads(path.read_text()), self._kek))
        self._cache[scope] = data
        return data

    def _save(self, scope: str, data: dict[str, str]):
        encrypted = encrypt_data(json.dumps(data).encode("utf-8"), self._kek)
        self._scope_file(scope).write_text(json.dumps(encrypted))
        self._cache[scope] = data

    def get(self, scope: str, key: str) -> str | None:
        return self._load(scope).get(key)

    def set(self, scope: str, key: str, value: str):
        _check_name("key", key)
        data = dict(self._load(scope))
        data[key] = value
        self._save(scope, data)
        logger.debug("Stored secret under scope %s", scope)

    def delete(self, scope: str, key: str) -> bool:
        data = dict(self._load(scope))
        if key not in data:
            return False
        del data[key]
        self._save(scope, data)
        return True

    def keys(self, scope: str) -> list[str]:
        return sorted(self._load(scope))
