"""
Interest Signals
Responders tell an offer's owner "I'm interested" without telling anyone else.

Each signal is published by a fresh single-use key, so two signals from
the same responder cannot be linked on the wire. The payload, readable
only by the offer's key, names the responder's real key and carries the
single-use private key as a ``retractionKey``: whoever may read the
signal may also withdraw it.

  kind 30078, d = "interest-<offerId>-<ephemeralPubkey>"
  tags: e=<offerId> (reply), t=bitcoin-interest, t=<group tag>
  content: NIP-44 to the offer key
  {offerId, realPubkey, timestamp, message, displayName, retractionKey}

There is deliberately no ``p`` tag: the offer key is not named either.
"""

import json
import logging
import time
from dataclasses import dataclass

from shroud import nip44
from shroud.config import GROUP_TAG, INTEREST_TAG
from shroud.errors import DecryptionFailure, ValidationFailure
from shroud.events import Event, EventKind, Filter, deletion_event, sign_event
from shroud.keys import Identity, generate_random, normalize_pubkey, parse_private_key
from shroud.logs import short

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class InterestSignal:
    """The decrypted payload of an interest signal."""

    offer_id: str
    real_pubkey: str
    timestamp: int
    message: str = ""
    display_name: str = ""

    @classmethod
    def from_payload(cls, data: dict) -> "InterestSignal":
        if not isinstance(data, dict):
            raise ValidationFailure("Interest payload must be an object", field="content")
        offer_id = data.get("offerId")
        timestamp = data.get("timestamp")
        if not isinstance(offer_id, str) or not offer_id:
            raise ValidationFailure("Interest payload has no offerId", field="offerId")
        if not isinstance(timestamp, int) or isinstance(timestamp, bool):
            raise ValidationFailure("Interest timestamp must be an integer", field="timestamp")
        message = data.get("message") or ""
        display_name = data.get("displayName") or ""
        if not isinstance(message, str) or not isinstance(display_name, str):
            raise ValidationFailure("Interest message fields must be strings", field="message")
        return cls(
            offer_id=offer_id,
            real_pubkey=normalize_pubkey(data.get("realPubkey", "")),
            timestamp=timestamp,
            message=message,
            display_name=display_name,
        )


@dataclass(frozen=True)
class DecryptedSignal:
    """An interest signal as seen by the offer owner."""

    signal: InterestSignal
    event: Event
    retraction_key: Identity | None = None

    @property
    def event_id(self) -> str:
        return self.event.id

    @property
    def ephemeral_pubkey(self) -> str:
        return self.event.pubkey

    @property
    def real_pubkey(self) -> str:
        return self.signal.real_pubkey

    @property
    def created_at(self) -> int:
        return self.event.created_at


@dataclass(frozen=True)
class SubmittedInterest:
    """What a responder must keep to retract a signal later."""

    offer_id: str
    event: Event
    ephemeral: Identity
    offer_pubkey: str = ""

    @property
    def store_name(self) -> str:
        """Secret store entry for this signal; one per signal, never per offer."""
        return interest_store_name(self.offer_id, self.ephemeral.public_key)

    def to_store(self) -> str:
        return json.dumps({
            "key": self.ephemeral.private_hex,
            "event": self.event.to_dict(),
            "offer": self.offer_pubkey,
        })

    @classmethod
    def from_store(cls, offer_id: str, value: str) -> "SubmittedInterest":
        data = json.loads(value)
        return cls(
            offer_id=offer_id,
            event=Event.from_dict(data["event"]),
            ephemeral=Identity.from_hex(data["key"]),
            offer_pubkey=data.get("offer", ""),
        )


def interest_d_tag(offer_id: str, ephemeral_pubkey: str) -> str:
    return f"interest-{offer_id}-{ephemeral_pubkey}"


def interest_store_name(offer_id: str, ephemeral_pubkey: str) -> str:
    return f"{offer_id}.{ephemeral_pubkey[:16]}"


async def submit_interest(
    pool,
    offer_id: str,
    offer_pubkey: str,
    responder: Identity,
    message: str = "",
    display_name: str = "",
    group_tag: str = GROUP_TAG,
    interest_tag: str = INTEREST_TAG,
) -> SubmittedInterest:
    """
    Publish an interest signal for an offer.

    Args:
        pool: RelayPool to publish to.
        offer_id: The offer being answered.
        offer_pubkey: The offer's (ephemeral) public key; only it can read the signal.
        responder: The responder's real identity; it never signs the signal.
        message: Optional note to the offer owner.
        display_name: Optional name to show the offer owner.

    Returns:
        The published event and the single-use identity that signed it.
    """
    offer_pubkey = normalize_pubkey(offer_pubkey)
    ephemeral = generate_random()
    payload = {
        "offerId": offer_id,
        "realPubkey": responder.public_key,
        "timestamp": int(time.time()),
        "message": message,
        "displayName": display_name,
        "retractionKey": ephemeral.private_hex,
    }
    content = nip44.encrypt(json.dumps(payload), nip44.conversation_key(ephemeral.private_key, offer_pubkey))
    event = sign_event(
        ephemeral,
        EventKind.INTEREST,
        content,
        [
            ["d", interest_d_tag(offer_id, ephemeral.public_key)],
            ["e", offer_id, "", "reply"],
            ["t", interest_tag],
            ["t", group_tag],
        ],
    )
    await pool.publish(event)
    logger.info("Interest in offer %s sent via %s", short(offer_id), short(ephemeral.public_key))
    return SubmittedInterest(offer_id=offer_id, event=event, ephemeral=ephemeral, offer_pubkey=offer_pubkey)


def decrypt_signal(event: Event, offer_identity: Identity, offer_id: str | None = None) -> DecryptedSignal:
    """
    Open one interest signal with the offer's key.

    Raises:
        DecryptionFailure: wrong key, tampered, malformed, or for another offer.
    """
    if event.kind != EventKind.INTEREST:
        raise DecryptionFailure(f"Not an interest signal (kind {event.kind})")
    try:
        plaintext = nip44.decrypt(event.content, nip44.conversation_key(offer_identity.private_key, event.pubkey))
        data = json.loads(plaintext)
        signal = InterestSignal.from_payload(data)
    except (ValueError, ValidationFailure) as e:
        raise DecryptionFailure(f"Malformed interest signal: {e}") from e
    if offer_id is not None and signal.offer_id != offer_id:
        raise DecryptionFailure("Interest signal names a different offer")

    retraction_key = None
    raw_key = data.get("retractionKey")
    if isinstance(raw_key, str):
        try:
            candidate = Identity.from_private_key(parse_private_key(raw_key))
        except ValidationFailure:
            candidate = None
        # Only usable if it really is the key that signed the event
        if candidate is not None and candidate.public_key == event.pubkey:
            retraction_key = candidate

    return DecryptedSignal(signal=signal, event=event, retraction_key=retraction_key)


async def list_interests(
    pool,
    offer_id: str,
    offer_identity: Identity,
    interest_tag: str = INTEREST_TAG,
) -> list[DecryptedSignal]:
    """
    Fetch and decrypt every interest signal for an offer.

    Signals that fail to decrypt are skipped individually.

    Returns:
        Decrypted signals, newest first.
    """
    events = await pool.query(
        Filter(kinds=[EventKind.INTEREST], tags={"e": [offer_id], "t": [interest_tag]})
    )
    signals = []
    skipped = 0
    for event in events:
        try:
            signals.append(decrypt_signal(event, offer_identity, offer_id))
        except DecryptionFailure as e:
            skipped += 1
            logger.debug("Skipping interest %s: %s", short(event.id), e.message)

    if skipped:
        logger.info("Skipped %d unreadable interest signals for %s", skipped, short(offer_id))
    signals.sort(key=lambda s: s.created_at, reverse=True)
    return signals


async def count_interests(pool, offer_id: str, interest_tag: str = INTEREST_TAG) -> int:
    """Number of signals for an offer, without decrypting anything."""
    events = await pool.query(
        Filter(kinds=[EventKind.INTEREST], tags={"e": [offer_id], "t": [interest_tag]})
    )
    return len(events)


async def retract_interest(pool, event: Event, signer: Identity, reason: str = ""):
    """
    Publish a deletion request for an interest signal.

    ``signer`` must be the key that signed the signal, or relays ignore it.
    """
    if signer.public_key != event.pubkey:
        logger.warning("Retraction of %s signed by a different key; relays may ignore it", short(event.id))
    deletion = deletion_event(event, signer, reason)
    await pool.publish(deletion)
    logger.debug("Retracted interest %s", short(event.id))
    return deletion
