"""
Errors
Exception hierarchy for every failure the privacy engine can surface.

Soft failures (a single undecryptable event, one unreachable relay, one
failed notification) never raise. They are skipped, counted or collected
into result objects. Only the conditions below escape to callers.
"""

from typing import Any


class ShroudError(Exception):
    """Base class for all Shroud errors."""

    def __init__(self, message: str, details: dict | None = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> dict:
        """Convert to a dictionary for JSON serialization."""
        return {
            "error": self.__class__.__name__,
            "message": self.message,
            "details": self.details,
        }


class DecryptionFailure(ShroudError):
    """
    Ciphertext could not be opened.

    Raised when the key is wrong, the message was not addressed to the
    caller, or the payload was tampered with. Batch operations catch it
    and skip the item.
    """


class ValidationFailure(ShroudError):
    """Malformed secret, key, URL or event shape. Raised before any I/O."""

    def __init__(self, message: str, field: str | None = None, value: Any = None):
        details = {}
        if field:
            details["field"] = field
        if value is not None:
            details["value"] = str(value)[:64]
        super().__init__(message, details)
        self.field = field
        self.value = value


class InvalidTransition(ValidationFailure):
    """An offer or deal was asked to move to a state it cannot reach."""

    def __init__(self, current: str, requested: str):
        super().__init__(
            f"Cannot move from '{current}' to '{requested}'",
            field="state",
            value=current,
        )
        self.current = current
        self.requested = requested


class NetworkFailure(ShroudError):
    """Every targeted relay failed. Partial success is not an error."""

    def __init__(self, message: str, failures: dict[str, str] | None = None):
        super().__init__(message, {"failures": dict(failures or {})})
        self.failures = dict(failures or {})
