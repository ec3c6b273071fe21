"""
Deals
The record two parties share once an offer owner has picked a partner.

  kind 30081, d = "deal-<offerId>", tags: e=<offerId>, t=<group tag>
  content: group-encrypted JSON
  {offerId, buyerPubkey, sellerPubkey, offerPubkey, status, createdAt, updatedAt}

Participants are inside the ciphertext, never in tags. The first version
is signed by the offer's key; later status changes are re-signed by
whichever participant makes them. Readers anchor on the earliest version
signed by the key that publishes the offer, never on the offer key the
ciphertext names, and accept later versions only from its participants.

Status: active → completed | cancelled. Both outcomes are final.
"""

import hashlib
import json
import logging
import time
from dataclasses import dataclass, replace
from enum import Enum

from shroud.config import GROUP_TAG
from shroud.errors import DecryptionFailure, InvalidTransition, ValidationFailure
from shroud.events import Event, EventKind, Filter, sign_event
from shroud.group import Group
from shroud.keys import Identity, normalize_pubkey
from shroud.logs import short
from shroud.offers import fetch_offer_author

logger = logging.getLogger(__name__)


class DealStatus(str, Enum):
    ACTIVE = "active"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


_TRANSITIONS = {
    DealStatus.ACTIVE: {DealStatus.COMPLETED, DealStatus.CANCELLED},
    DealStatus.COMPLETED: set(),
    DealStatus.CANCELLED: set(),
}


@dataclass(frozen=True)
class Deal:
    id: str
    offer_id: str
    buyer_pubkey: str
    seller_pubkey: str
    offer_pubkey: str
    status: DealStatus
    created_at: int
    updated_at: int | None = None

    @classmethod
    def from_event(cls, event: Event, group: Group) -> "Deal":
        """
        Decrypt and parse a deal event.

        Raises:
            DecryptionFailure: not readable with this group key.
            ValidationFailure: readable but malformed.
        """
        if event.kind != EventKind.DEAL:
            raise ValidationFailure("Not a deal record", field="kind", value=event.kind)
        data = json.loads(group.decrypt(event.content)) if event.content else None
        if not isinstance(data, dict):
            raise ValidationFailure("Deal content must be an object", field="content")
        try:
            status = DealStatus(data.get("status"))
        except ValueError as e:
            raise ValidationFailure("Unknown deal status", field="status", value=data.get("status")) from e
        created_at = data.get("createdAt")
        updated_at = data.get("updatedAt")
        if not isinstance(created_at, int) or (updated_at is not None and not isinstance(updated_at, int)):
            raise ValidationFailure("Deal timestamps must be integers", field="createdAt")
        offer_id = data.get("offerId")
        if not isinstance(offer_id, str) or event.d_tag != deal_d_tag(offer_id):
            raise ValidationFailure("Deal offerId does not match its address", field="offerId")
        return cls(
            id=event.d_tag,
            offer_id=offer_id,
            buyer_pubkey=normalize_pubkey(data.get("buyerPubkey", "")),
            seller_pubkey=normalize_pubkey(data.get("sellerPubkey", "")),
            offer_pubkey=normalize_pubkey(data.get("offerPubkey", "")),
            status=status,
            created_at=created_at,
            updated_at=updated_at,
        )

    def to_content(self) -> str:
        return json.dumps({
            "offerId": self.offer_id,
            "buyerPubkey": self.buyer_pubkey,
            "sellerPubkey": self.seller_pubkey,
            "offerPubkey": self.offer_pubkey,
            "status": self.status.value,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        })

    @property
    def version(self) -> int:
        return self.updated_at or self.created_at

    @property
    def authorized(self) -> set[str]:
        """Keys allowed to sign versions of this deal."""
        return {self.buyer_pubkey, self.seller_pubkey, self.offer_pubkey}


def deal_d_tag(offer_id: str) -> str:
    return f"deal-{offer_id}"


def generate_room_id(secret: str, pubkey_a: str, pubkey_b: str, offer_id: str) -> str:
    """
    Deterministic room id for a pair of participants and an offer.

    Both parties compute the same id regardless of argument order.
    """
    first, second = sorted([normalize_pubkey(pubkey_a), normalize_pubkey(pubkey_b)])
    return hashlib.sha256(f"{secret}:{first}:{second}:{offer_id}".encode("utf-8")).hexdigest()[:32]


def is_participant(deal: Deal, pubkey: str) -> bool:
    return normalize_pubkey(pubkey) in (deal.buyer_pubkey, deal.seller_pubkey)


def is_seller(deal: Deal, pubkey: str) -> bool:
    return normalize_pubkey(pubkey) == deal.seller_pubkey


def partner_of(deal: Deal, pubkey: str) -> str | None:
    """The other participant, or None if ``pubkey`` is not in the deal."""
    pubkey = normalize_pubkey(pubkey)
    if pubkey == deal.buyer_pubkey:
        return deal.seller_pubkey
    if pubkey == deal.seller_pubkey:
        return deal.buyer_pubkey
    return None


def _publishable(deal: Deal, signer: Identity, group: Group, group_tag: str) -> Event:
    return sign_event(
        signer,
        EventKind.DEAL,
        group.encrypt(deal.to_content()),
        [["d", deal.id], ["e", deal.offer_id, "", "reply"], ["t", group_tag]],
        created_at=deal.version,
    )


async def create_deal(
    pool,
    group: Group,
    offer_id: str,
    buyer_pubkey: str,
    seller_pubkey: str,
    signer: Identity,
    group_tag: str = GROUP_TAG,
) -> Deal:
    """
    Publish the first version of a deal, signed by the offer's key.

    Args:
        pool: RelayPool to publish to.
        group: Group whose key encrypts the record.
        offer_id: The offer the deal closes.
        buyer_pubkey: The selected responder.
        seller_pubkey: The offer creator's real key.
        signer: The offer's identity.
    """
    deal = Deal(
        id=deal_d_tag(offer_id),
        offer_id=offer_id,
        buyer_pubkey=normalize_pubkey(buyer_pubkey),
        seller_pubkey=normalize_pubkey(seller_pubkey),
        offer_pubkey=signer.public_key,
        status=DealStatus.ACTIVE,
        created_at=int(time.time()),
    )
    await pool.publish(_publishable(deal, signer, group, group_tag))
    logger.info("Deal for offer %s created", short(offer_id))
    return deal


def _parse_all(events: list[Event], group: Group) -> list[tuple[Deal, Event]]:
    parsed = []
    for event in events:
        try:
            parsed.append((Deal.from_event(event, group), event))
        except (DecryptionFailure, ValidationFailure, ValueError) as e:
            logger.debug("Skipping deal record %s: %s", short(event.id), e)
    return parsed


def resolve_deal(records: list[tuple[Deal, Event]], offer_pubkey: str) -> Deal | None:
    """
    Pick the current version of one deal from every copy seen.

    The anchor is the earliest version signed by ``offer_pubkey``, the key
    that publishes the offer. The offer key named inside the ciphertext
    only has to agree with it. Later versions count only if they keep the
    anchor's parties and are signed by one of them.
    """
    offer_pubkey = normalize_pubkey(offer_pubkey)
    anchors = [
        (deal, event) for deal, event in records
        if event.pubkey == offer_pubkey and deal.offer_pubkey == offer_pubkey
    ]
    if not anchors:
        return None
    anchor, _ = min(anchors, key=lambda pair: (pair[1].created_at, pair[1].id))

    valid = [
        deal for deal, event in records
        if (deal.buyer_pubkey, deal.seller_pubkey, deal.offer_pubkey)
        == (anchor.buyer_pubkey, anchor.seller_pubkey, anchor.offer_pubkey)
        and event.pubkey in anchor.authorized
    ]
    return max(valid, key=lambda d: (d.version, d.status != DealStatus.ACTIVE))


async def load_deal(pool, group: Group, offer_id: str, offer_pubkey: str | None = None) -> Deal | None:
    """
    Current version of the deal for an offer, or None.

    Args:
        offer_pubkey: Key that publishes the offer. Looked up from the
            offer event when omitted; no deal is returned if that lookup
            is ambiguous or the offer is gone.
    """
    if offer_pubkey is None:
        offer_pubkey = await fetch_offer_author(pool, group, offer_id)
        if offer_pubkey is None:
            logger.info("No unique offer key for %s; cannot anchor its deal", short(offer_id))
            return None
    events = await pool.query(Filter(kinds=[EventKind.DEAL], tags={"d": [deal_d_tag(offer_id)]}))
    return resolve_deal(_parse_all(events, group), offer_pubkey)


async def load_my_deals(
    pool,
    group: Group,
    pubkey: str,
    group_tag: str = GROUP_TAG,
    offer_keys: dict[str, str] | None = None,
) -> list[Deal]:
    """
    Every deal in the group that ``pubkey`` takes part in, newest first.

    Args:
        offer_keys: Known offer keys by offer id. Offers missing from it
            are looked up on relays.
    """
    pubkey = normalize_pubkey(pubkey)
    offer_keys = offer_keys or {}
    events = await pool.query(Filter(kinds=[EventKind.DEAL], tags={"t": [group_tag]}))

    by_offer: dict[str, list[tuple[Deal, Event]]] = {}
    for deal, event in _parse_all(events, group):
        by_offer.setdefault(deal.offer_id, []).append((deal, event))

    deals = []
    for offer_id, records in by_offer.items():
        if not any(is_participant(deal, pubkey) for deal, _ in records):
            continue
        offer_pubkey = offer_keys.get(offer_id) or await fetch_offer_author(pool, group, offer_id)
        if offer_pubkey is None:
            logger.info("No unique offer key for %s; skipping its deal", short(offer_id))
            continue
        deal = resolve_deal(records, offer_pubkey)
        if deal is not None and is_participant(deal, pubkey):
            deals.append(deal)
    deals.sort(key=lambda d: d.created_at, reverse=True)
    return deals


async def update_deal_status(
    pool,
    group: Group,
    offer_id: str,
    status: DealStatus,
    signer: Identity,
    offer_pubkey: str | None = None,
    group_tag: str = GROUP_TAG,
) -> Deal:
    """
    Move a deal to a final status and publish the new version.

    Raises:
        ValidationFailure: no deal exists, or ``signer`` is not a party to it.
        InvalidTransition: the deal is already completed or cancelled.
    """
    status = DealStatus(status)
    current = await load_deal(pool, group, offer_id, offer_pubkey)
    if current is None:
        raise ValidationFailure("No deal exists for this offer", field="offer_id", value=offer_id)
    if status not in _TRANSITIONS[current.status]:
        raise InvalidTransition(current.status.value, status.value)
    if signer.public_key not in current.authorized:
        raise ValidationFailure("Only deal participants may change its status", field="signer")

    updated = replace(current, status=status, updated_at=max(int(time.time()), current.version + 1))
    await pool.publish(_publishable(updated, signer, group, group_tag))
    logger.info("Deal for offer %s is now %s", short(offer_id), status.value)
    return updated
