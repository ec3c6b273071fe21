"""
Offers
Anonymous offers posted into a group channel.

Every offer gets its own secret. The secret derives the offer's identity
(which signs the offer and reads interest signals) and its id:

  secret → SHA-256(secret)            = offer private key
  secret → SHA-256(secret + "-offer-id") = offer id

The creator's real key never signs anything that belongs to the offer.
Whoever holds the secret can manage the offer from any device.

  kind 30402, d = <offerId>, tags: e=<channelId> (root), t=<group tag>,
                                   expiration=<unix seconds>
  content: group-encrypted {"title", "content"}

Lifecycle, tracked locally in OfferSession:

  open → partner_selected → notified → completed | cancelled
  open → cancelled (withdrawn or expired without a partner)
"""

import hashlib
import json
import logging
import time
from dataclasses import dataclass, field
from enum import Enum

from shroud.config import GROUP_TAG
from shroud.errors import DecryptionFailure, InvalidTransition, ValidationFailure
from shroud.events import Event, EventKind, Filter, deletion_event, sign_event
from shroud.group import Group
from shroud.keys import Identity, derive_from_secret, normalize_pubkey, validate_offer_secret
from shroud.logs import short

logger = logging.getLogger(__name__)

DEFAULT_TTL_HOURS = 24


class OfferState(str, Enum):
    OPEN = "open"
    PARTNER_SELECTED = "partner_selected"
    NOTIFIED = "notified"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


_TRANSITIONS = {
    OfferState.OPEN: {OfferState.PARTNER_SELECTED, OfferState.CANCELLED},
    OfferState.PARTNER_SELECTED: {OfferState.NOTIFIED, OfferState.COMPLETED, OfferState.CANCELLED},
    OfferState.NOTIFIED: {OfferState.COMPLETED, OfferState.CANCELLED},
    OfferState.COMPLETED: set(),
    OfferState.CANCELLED: set(),
}


def derive_offer_id(secret: str) -> str:
    """Deterministic offer id for an offer secret."""
    return hashlib.sha256(f"{secret}-offer-id".encode("utf-8")).hexdigest()


@dataclass
class OfferSession:
    """
    An offer as its owner sees it.

    Args:
        offer_id: Derived offer id.
        identity: Offer identity derived from the secret.
        secret: The offer secret.
        creator_pubkey: The creator's real public key.
        title: Human-readable title, used in rejection notices.
        state: Current lifecycle state.
    """

    offer_id: str
    identity: Identity
    secret: str = field(repr=False)
    creator_pubkey: str
    title: str = ""
    state: OfferState = OfferState.OPEN
    event: Event | None = None

    @classmethod
    def from_secret(cls, secret: str, creator_pubkey: str, title: str = "") -> "OfferSession":
        """Rebuild an offer session from its secret."""
        if not validate_offer_secret(secret):
            raise ValidationFailure("Offer secret must be 64 hex characters", field="secret")
        secret = secret.lower()
        return cls(
            offer_id=derive_offer_id(secret),
            identity=derive_from_secret(secret),
            secret=secret,
            creator_pubkey=normalize_pubkey(creator_pubkey),
            title=title,
        )

    @property
    def pubkey(self) -> str:
        return self.identity.public_key

    def can_transition(self, new_state: OfferState) -> bool:
        return OfferState(new_state) in _TRANSITIONS[self.state]

    def transition(self, new_state: OfferState):
        """
        Move to ``new_state``.

        Raises:
            InvalidTransition: the move is not allowed from the current state.
        """
        new_state = OfferState(new_state)
        if new_state not in _TRANSITIONS[self.state]:
            raise InvalidTransition(self.state.value, new_state.value)
        logger.debug("Offer %s: %s -> %s", short(self.offer_id), self.state.value, new_state.value)
        self.state = new_state


@dataclass(frozen=True)
class Offer:
    """An offer as any group member reads it."""

    offer_id: str
    pubkey: str
    title: str
    content: str
    created_at: int
    expires_at: int | None
    event: Event

    @classmethod
    def from_event(cls, event: Event, group: Group) -> "Offer":
        """
        Decrypt and parse an offer event.

        Raises:
            DecryptionFailure: not readable with this group key.
            ValidationFailure: readable but malformed.
        """
        if event.kind != EventKind.OFFER or not event.d_tag:
            raise ValidationFailure("Not an offer", field="kind", value=event.kind)
        try:
            data = json.loads(group.decrypt(event.content))
        except ValueError as e:
            raise ValidationFailure("Offer content is not JSON", field="content") from e
        if not isinstance(data, dict) or not isinstance(data.get("content", ""), str):
            raise ValidationFailure("Offer content must be an object", field="content")
        return cls(
            offer_id=event.d_tag,
            pubkey=event.pubkey,
            title=str(data.get("title", "")),
            content=data.get("content", ""),
            created_at=event.created_at,
            expires_at=event.expiration,
            event=event,
        )

    def is_expired(self, now: int | None = None) -> bool:
        return is_expired(self.event, now)

    def remaining_time(self, now: int | None = None) -> int | None:
        return remaining_time(self.event, now)


def expiration_tag(hours: float = DEFAULT_TTL_HOURS, now: int | None = None) -> list[str]:
    now = int(time.time()) if now is None else now
    return ["expiration", str(now + int(hours * 3600))]


def is_expired(event: Event, now: int | None = None) -> bool:
    """True once the event's expiration time has passed. No tag, never expires."""
    expires_at = event.expiration
    if expires_at is None:
        return False
    now = int(time.time()) if now is None else now
    return now >= expires_at


def remaining_time(event: Event, now: int | None = None) -> int | None:
    """Seconds until expiration (never negative), or None without a tag."""
    expires_at = event.expiration
    if expires_at is None:
        return None
    now = int(time.time()) if now is None else now
    return max(0, expires_at - now)


def format_remaining(seconds: int | None) -> str:
    """Render remaining time as ``"23h 45m"`` or ``"12m"``."""
    if seconds is None:
        return "no expiry"
    if seconds <= 0:
        return "expired"
    hours, rest = divmod(seconds, 3600)
    minutes = rest // 60
    if hours:
        return f"{hours}h {minutes}m"
    return f"{minutes}m"


async def create_offer(
    pool,
    group: Group,
    secret: str,
    content: str,
    creator_pubkey: str,
    title: str = "",
    ttl_hours: float = DEFAULT_TTL_HOURS,
    group_tag: str = GROUP_TAG,
) -> OfferSession:
    """
    Publish an offer signed by its own identity.

    Args:
        pool: RelayPool to publish to.
        group: Group the offer is posted in.
        secret: Offer secret (see :func:`shroud.keys.generate_secret`).
        content: Offer text.
        creator_pubkey: The creator's real key; kept locally, never published.
        title: Short title.
        ttl_hours: Hours until the offer expires.

    Returns:
        An open OfferSession.
    """
    session = OfferSession.from_secret(secret, creator_pubkey, title)
    body = group.encrypt(json.dumps({"title": title, "content": content}))
    session.event = sign_event(
        session.identity,
        EventKind.OFFER,
        body,
        [
            ["d", session.offer_id],
            ["e", group.channel_id, "", "root"],
            ["t", group_tag],
            expiration_tag(ttl_hours),
        ],
    )
    await pool.publish(session.event)
    logger.info("Offer %s published by %s", short(session.offer_id), short(session.pubkey))
    return session


async def fetch_offers(pool, group: Group, include_expired: bool = False, limit: int | None = None) -> list[Offer]:
    """
    Read every offer in the group's channel.

    Offers that do not decrypt with the group key are skipped.

    Returns:
        Offers, newest first.
    """
    events = await pool.query(
        Filter(kinds=[EventKind.OFFER], tags={"e": [group.channel_id]}, limit=limit)
    )
    offers = []
    for event in events:
        try:
            offer = Offer.from_event(event, group)
        except (DecryptionFailure, ValidationFailure) as e:
            logger.debug("Skipping offer %s: %s", short(event.id), e.message)
            continue
        if include_expired or not offer.is_expired():
            offers.append(offer)
    offers.sort(key=lambda o: o.created_at, reverse=True)
    return offers


async def fetch_offer(pool, group: Group, offer_id: str) -> Offer | None:
    """One offer by id, or None."""
    events = await pool.query(Filter(kinds=[EventKind.OFFER], tags={"d": [offer_id]}))
    for event in events:
        try:
            return Offer.from_event(event, group)
        except (DecryptionFailure, ValidationFailure):
            continue
    return None


async def delete_offer(pool, event: Event, identity: Identity, reason: str = "Offer withdrawn") -> Event:
    """Ask relays to drop an offer. Only the offer identity can."""
    if identity.public_key != event.pubkey:
        raise ValidationFailure("Only the offer identity can delete an offer", field="identity")
    deletion = deletion_event(event, identity, reason)
    await pool.publish(deletion)
    logger.info("Offer %s deleted", short(event.d_tag))
    return deletion


async def fetch_offer_author(pool, group: Group, offer_id: str) -> str | None:
    """
    The key that publishes offer ``offer_id``, or None.

    Anyone in the group can publish an offer under the same id. When
    readable copies come from more than one key the author is ambiguous
    and None is returned; callers that already know the offer key should
    pass it instead of asking relays.
    """
    events = await pool.query(Filter(kinds=[EventKind.OFFER], tags={"d": [offer_id]}))
    authors = set()
    for event in events:
        try:
            authors.add(Offer.from_event(event, group).pubkey)
        except (DecryptionFailure, ValidationFailure):
            continue
    if len(authors) > 1:
        logger.warning("Offer %s is published by %d different keys", short(offer_id), len(authors))
        return None
    return authors.pop() if authors else None


async def has_active_offer(pool, group: Group, pubkeys=None) -> bool:
    """
    True if the channel holds an offer that has not expired.

    Args:
        pubkeys: Only count offers signed by one of these offer keys.
    """
    offers = await fetch_offers(pool, group)
    if pubkeys is None:
        return bool(offers)
    keys = {normalize_pubkey(k) for k in pubkeys}
    return any(offer.pubkey in keys for offer in offers)
