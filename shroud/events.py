"""
Events
The relay wire format: signed, content-addressed JSON records.

  id  = SHA-256 of the canonical array [0, pubkey, created_at, kind, tags, content]
  sig = BIP-340 Schnorr over the id, by the author's key

Relays store and forward events without understanding them. Everything
the engine publishes is an Event; every domain record (whitelist, offer,
interest signal, deal) is parsed out of one with its own validating
``from_event`` constructor.
"""

import hashlib
import json
import logging
import re
import time
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Protocol

from coincurve import PublicKeyXOnly

from shroud.errors import ValidationFailure
from shroud.keys import Identity

logger = logging.getLogger(__name__)

_HEX64 = re.compile(r"^[0-9a-f]{64}$")
_HEX128 = re.compile(r"^[0-9a-f]{128}$")


class EventKind(IntEnum):
    """Wire kind numbers for every record the engine reads or writes."""

    GROUP_MESSAGE = 1
    DELETION = 5
    SEAL = 13
    DIRECT_MESSAGE = 14
    GIFT_WRAP = 1059
    WHITELIST = 30000
    INTEREST = 30078
    REJECTION = 30079
    DEAL = 30081
    OFFER = 30402

    # Aliases: same number, different record
    GROUP_CONFIG = 30000
    APP_DATA = 30078


def is_addressable(kind: int) -> bool:
    """Kinds 30000-39999 keep only the newest event per (kind, author, d-tag)."""
    return 30000 <= kind < 40000


def compute_id(pubkey: str, created_at: int, kind: int, tags: list, content: str) -> str:
    """SHA-256 of the canonical commitment array, as hex."""
    commitment = json.dumps(
        [0, pubkey, created_at, kind, tags, content],
        separators=(",", ":"),
        ensure_ascii=False,
    )
    return hashlib.sha256(commitment.encode("utf-8")).hexdigest()


@dataclass
class Event:
    """
    A relay event. ``sig`` is empty for unsigned rumors.
    """

    pubkey: str
    created_at: int
    kind: int
    tags: list[list[str]]
    content: str
    id: str = ""
    sig: str = ""

    def __post_init__(self):
        if not self.id:
            self.id = compute_id(self.pubkey, self.created_at, self.kind, self.tags, self.content)

    @classmethod
    def from_dict(cls, data: dict) -> "Event":
        """
        Parse a wire dict, rejecting malformed shapes.

        The id is recomputed and must match; the signature is not checked
        here (see :class:`SchnorrVerifier`).
        """
        if not isinstance(data, dict):
            raise ValidationFailure("Event must be an object", field="event")
        pubkey = data.get("pubkey")
        created_at = data.get("created_at")
        kind = data.get("kind")
        tags = data.get("tags")
        content = data.get("content")
        event_id = data.get("id", "")
        sig = data.get("sig", "")

        if not isinstance(pubkey, str) or not _HEX64.match(pubkey):
            raise ValidationFailure("Event pubkey must be 64 lowercase hex", field="pubkey", value=pubkey)
        if not isinstance(created_at, int) or isinstance(created_at, bool) or created_at < 0:
            raise ValidationFailure("Event created_at must be a non-negative integer", field="created_at")
        if not isinstance(kind, int) or isinstance(kind, bool) or not 0 <= kind <= 65535:
            raise ValidationFailure("Event kind must be 0..65535", field="kind", value=kind)
        if not isinstance(tags, list) or not all(
            isinstance(t, list) and all(isinstance(v, str) for v in t) for t in tags
        ):
            raise ValidationFailure("Event tags must be a list of string lists", field="tags")
        if not isinstance(content, str):
            raise ValidationFailure("Event content must be a string", field="content")
        if sig and (not isinstance(sig, str) or not _HEX128.match(sig)):
            raise ValidationFailure("Event sig must be 128 hex", field="sig")

        expected = compute_id(pubkey, created_at, kind, tags, content)
        if event_id and event_id != expected:
            raise ValidationFailure("Event id does not match its content", field="id", value=event_id)

        return cls(
            pubkey=pubkey,
            created_at=created_at,
            kind=kind,
            tags=[list(t) for t in tags],
            content=content,
            id=expected,
            sig=sig or "",
        )

    @classmethod
    def from_json(cls, text: str) -> "Event":
        try:
            data = json.loads(text)
        except ValueError as e:
            raise ValidationFailure("Event is not valid JSON", field="event") from e
        return cls.from_dict(data)

    def to_dict(self) -> dict:
        data = {
            "id": self.id,
            "pubkey": self.pubkey,
            "created_at": self.created_at,
            "kind": self.kind,
            "tags": self.tags,
            "content": self.content,
        }
        if self.sig:
            data["sig"] = self.sig
        return data

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), separators=(",", ":"), ensure_ascii=False)

    # --- tag access ---

    def tag_values(self, name: str) -> list[str]:
        """Every first value of tags called ``name``."""
        return [t[1] for t in self.tags if len(t) > 1 and t[0] == name]

    def first_tag(self, name: str) -> str | None:
        values = self.tag_values(name)
        return values[0] if values else None

    @property
    def d_tag(self) -> str:
        return self.first_tag("d") or ""

    @property
    def coordinate(self) -> str:
        """``kind:pubkey:d`` address of an addressable event."""
        return f"{self.kind}:{self.pubkey}:{self.d_tag}"

    @property
    def expiration(self) -> int | None:
        value = self.first_tag("expiration")
        if value is None:
            return None
        try:
            return int(value)
        except ValueError:
            return None


def sign_event(
    identity: Identity,
    kind: int,
    content: str,
    tags: list[list[str]] | None = None,
    created_at: int | None = None,
) -> Event:
    """
    Build and sign an event.

    Args:
        identity: Author keypair.
        kind: Event kind.
        content: Content string (already encrypted where needed).
        tags: Tag lists.
        created_at: Unix seconds; defaults to now.

    Returns:
        Signed Event.
    """
    event = Event(
        pubkey=identity.public_key,
        created_at=int(time.time()) if created_at is None else int(created_at),
        kind=int(kind),
        tags=[list(t) for t in (tags or [])],
        content=content,
    )
    event.sig = identity.sign(bytes.fromhex(event.id)).hex()
    return event


def deletion_event(target: Event, signer: Identity, reason: str = "") -> Event:
    """
    A deletion request for ``target``.

    Relays honour it only when ``signer`` authored the target.
    """
    tags = [["e", target.id], ["k", str(target.kind)]]
    if is_addressable(target.kind):
        tags.append(["a", target.coordinate])
    return sign_event(signer, EventKind.DELETION, reason, tags)


class EventVerifier(Protocol):
    """Checks that an event's signature matches its declared author."""

    def verify(self, event: Event) -> bool: ...


class SchnorrVerifier:
    """BIP-340 signature verification over the recomputed event id."""

    def verify(self, event: Event) -> bool:
        if not event.sig:
            return False
        if compute_id(event.pubkey, event.created_at, event.kind, event.tags, event.content) != event.id:
            return False
        try:
            key = PublicKeyXOnly(bytes.fromhex(event.pubkey))
            return key.verify(bytes.fromhex(event.sig), bytes.fromhex(event.id))
        except ValueError:
            logger.debug("Unparseable signature on %s", event.id[:16])
            return False


@dataclass
class Filter:
    """
    A relay subscription filter.

    ``tags`` maps single-letter tag names to accepted values, e.g.
    ``{"e": [offer_id], "t": ["bitcoin-interest"]}``.
    """

    kinds: list[int] | None = None
    authors: list[str] | None = None
    ids: list[str] | None = None
    tags: dict[str, list[str]] = field(default_factory=dict)
    since: int | None = None
    until: int | None = None
    limit: int | None = None

    def to_dict(self) -> dict:
        data: dict = {}
        if self.ids is not None:
            data["ids"] = list(self.ids)
        if self.authors is not None:
            data["authors"] = list(self.authors)
        if self.kinds is not None:
            data["kinds"] = [int(k) for k in self.kinds]
        for name, values in self.tags.items():
            data[f"#{name}"] = list(values)
        if self.since is not None:
            data["since"] = self.since
        if self.until is not None:
            data["until"] = self.until
        if self.limit is not None:
            data["limit"] = self.limit
        return data

    def matches(self, event: Event) -> bool:
        """NIP-01 matching: every present condition must hold."""
        if self.ids is not None and event.id not in self.ids:
            return False
        if self.authors is not None and event.pubkey not in self.authors:
            return False
        if self.kinds is not None and event.kind not in self.kinds:
            return False
        if self.since is not None and event.created_at < self.since:
            return False
        if self.until is not None and event.created_at > self.until:
            return False
        for name, values in self.tags.items():
            if not set(event.tag_values(name)) & set(values):
                return False
        return True


def newest_per_address(events: list[Event]) -> list[Event]:
    """
    Collapse addressable events to the newest per (kind, author, d-tag).

    Non-addressable events pass through. Ties on ``created_at`` are broken
    by the lowest id.
    """
    latest: dict[str, Event] = {}
    passthrough = []
    for event in events:
        if not is_addressable(event.kind):
            passthrough.append(event)
            continue
        current = latest.get(event.coordinate)
        if current is None or (event.created_at, _neg(event.id)) > (current.created_at, _neg(current.id)):
            latest[event.coordinate] = event
    return passthrough + list(latest.values())


def _neg(event_id: str) -> tuple:
    # Lower id wins ties: invert the ordering for the max comparison
    return tuple(-b for b in bytes.fromhex(event_id))
