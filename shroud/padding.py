"""
Anonymity Padding
Pad every message in an anonymity set to the same serialized size.

An observer who can see ciphertext lengths cannot tell a partner
notification (which carries a room id and a partner key) from an observer
notification (which carries neither). The filler is a throwaway field that
the receiver strips.

Send times are decorrelated separately with :func:`random_delay`.
"""

import json
import secrets


PADDING_FIELD = "_p"
DEFAULT_TARGET = 500

# Fixed target sizes for anonymity sets whose messages outgrow the default
BUCKET_SIZES = [
    256,
    512,
    1024,
    4096,
    16384,
    65536,
]

_rng = secrets.SystemRandom()


def _serialize(message: dict) -> str:
    return json.dumps(message, separators=(",", ":"))


def pad_message(message: dict, target_size: int = DEFAULT_TARGET) -> str:
    """
    Serialize a message and pad it to ``target_size`` characters.

    Output is ASCII, so characters and bytes coincide. A message already
    at or over the target only gains an empty filler field.

    Args:
        message: JSON-serializable dict without a ``_p`` key.
        target_size: Desired serialized length.

    Returns:
        Serialized, padded JSON.
    """
    base = _serialize({**message, PADDING_FIELD: ""})
    deficit = max(0, target_size - len(base))
    return _serialize({**message, PADDING_FIELD: "x" * deficit})


def remove_padding(text: str) -> dict:
    """Parse a padded message and drop the filler field."""
    message = json.loads(text)
    if isinstance(message, dict):
        message.pop(PADDING_FIELD, None)
    return message


def target_size_for(messages: list[dict], minimum: int = DEFAULT_TARGET) -> int:
    """
    Pick one padding target for a whole anonymity set.

    Returns ``minimum`` when every message fits under it, otherwise the
    smallest bucket that fits the largest message.
    """
    largest = max((len(_serialize({**m, PADDING_FIELD: ""})) for m in messages), default=0)
    if largest <= minimum:
        return minimum
    for size in BUCKET_SIZES:
        if largest <= size:
            return size
    return largest


def random_delay(max_seconds: float) -> float:
    """Uniform random delay in ``[0, max_seconds]`` seconds from a CSPRNG."""
    if max_seconds <= 0:
        return 0.0
    return _rng.uniform(0, max_seconds)
