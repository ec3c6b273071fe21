"""
Gift Wrap
Three-layer onion messages that hide who is talking to whom.

  Rumor     — the real message, unsigned, authored by the real sender.
              Carries an ``auth`` tag: HMAC over the rumor keyed with the
              conversation key of (sender, recipient). Only the recipient
              can check it, and it is not a signature anyone else can verify.
  Seal      — the rumor encrypted to the recipient, signed by a
              single-use key.
  Gift wrap — the seal encrypted to the recipient, signed by a second
              single-use key, tagged only with the recipient.

Relays and observers see a gift wrap from a key that never appears again,
addressed to the recipient, at a timestamp randomized into the past.
Nothing on the wire names the sender.
"""

import json
import logging
import secrets
import time
from dataclasses import dataclass, field

from cryptography.hazmat.primitives import constant_time, hashes, hmac

from shroud import nip44
from shroud.errors import DecryptionFailure, ValidationFailure
from shroud.events import Event, EventKind, EventVerifier, Filter, SchnorrVerifier, sign_event
from shroud.keys import Identity, generate_random, normalize_pubkey
from shroud.logs import short

logger = logging.getLogger(__name__)

# Seal and gift wrap timestamps are pushed up to two days into the past
TIMESTAMP_JITTER = 2 * 24 * 60 * 60
AUTH_TAG = "auth"


@dataclass
class UnwrappedMessage:
    """A decrypted direct message and its authenticated sender."""

    content: str
    sender: str
    created_at: int
    kind: int
    tags: list[list[str]] = field(default_factory=list)
    wrap_id: str = ""

    def tag(self, name: str) -> str | None:
        for t in self.tags:
            if len(t) > 1 and t[0] == name:
                return t[1]
        return None


def _jitter(now: int) -> int:
    return now - secrets.randbelow(TIMESTAMP_JITTER)


def _sender_proof(conv_key: bytes, pubkey: str, created_at: int, kind: int, tags: list, content: str) -> str:
    h = hmac.HMAC(conv_key, hashes.SHA256())
    h.update(json.dumps([pubkey, created_at, kind, tags, content], separators=(",", ":")).encode("utf-8"))
    return h.finalize().hex()


def wrap(
    content: str,
    recipient_pubkey: str,
    sender: Identity,
    kind: int = EventKind.DIRECT_MESSAGE,
    extra_tags: list[list[str]] | None = None,
) -> Event:
    """
    Build a gift-wrapped message.

    Args:
        content: Message text.
        recipient_pubkey: Recipient key, hex or npub.
        sender: The sender's real identity. Its key never signs anything here.
        kind: Rumor kind; lets receivers tell message types apart.
        extra_tags: Additional rumor tags (hidden inside the wrap).

    Returns:
        The signed gift wrap. Only this event is published.
    """
    recipient = normalize_pubkey(recipient_pubkey)
    now = int(time.time())

    tags = [["p", recipient]] + [list(t) for t in (extra_tags or [])]
    proof = _sender_proof(
        nip44.conversation_key(sender.private_key, recipient),
        sender.public_key, now, int(kind), tags, content,
    )
    rumor = Event(
        pubkey=sender.public_key,
        created_at=now,
        kind=int(kind),
        tags=tags + [[AUTH_TAG, proof]],
        content=content,
    )

    seal_key = generate_random()
    seal = sign_event(
        seal_key,
        EventKind.SEAL,
        nip44.encrypt(rumor.to_json(), nip44.conversation_key(seal_key.private_key, recipient)),
        [],
        created_at=_jitter(now),
    )

    wrap_key = generate_random()
    gift = sign_event(
        wrap_key,
        EventKind.GIFT_WRAP,
        nip44.encrypt(seal.to_json(), nip44.conversation_key(wrap_key.private_key, recipient)),
        [["p", recipient]],
        created_at=_jitter(now),
    )
    logger.debug("Wrapped kind %d for %s as %s", kind, short(recipient), short(gift.id))
    return gift


def _open_layer(event: Event, recipient: Identity) -> Event:
    try:
        plaintext = nip44.decrypt(event.content, nip44.conversation_key(recipient.private_key, event.pubkey))
        return Event.from_json(plaintext)
    except ValidationFailure as e:
        raise DecryptionFailure(f"Malformed inner event: {e.message}") from e


def unwrap(gift: Event, recipient: Identity, verifier: EventVerifier | None = None) -> UnwrappedMessage:
    """
    Open a gift wrap addressed to ``recipient``.

    Raises:
        DecryptionFailure: not addressed to the recipient, tampered, or the
            embedded sender cannot be authenticated.
    """
    verifier = verifier or SchnorrVerifier()
    if gift.kind != EventKind.GIFT_WRAP:
        raise DecryptionFailure(f"Not a gift wrap (kind {gift.kind})")

    seal = _open_layer(gift, recipient)
    if seal.kind != EventKind.SEAL or not verifier.verify(seal):
        raise DecryptionFailure("Seal is not a validly signed seal")

    rumor = _open_layer(seal, recipient)
    if recipient.public_key not in rumor.tag_values("p"):
        raise DecryptionFailure("Message is not addressed to this recipient")

    proofs = rumor.tag_values(AUTH_TAG)
    if len(proofs) != 1:
        raise DecryptionFailure("Message carries no sender proof")
    tags = [t for t in rumor.tags if not (t and t[0] == AUTH_TAG)]
    try:
        expected = _sender_proof(
            nip44.conversation_key(recipient.private_key, rumor.pubkey),
            rumor.pubkey, rumor.created_at, rumor.kind, tags, rumor.content,
        )
    except ValidationFailure as e:
        raise DecryptionFailure("Embedded sender key is invalid") from e
    if not constant_time.bytes_eq(expected.encode(), proofs[0].encode()):
        raise DecryptionFailure("Sender proof does not match")

    return UnwrappedMessage(
        content=rumor.content,
        sender=rumor.pubkey,
        created_at=rumor.created_at,
        kind=rumor.kind,
        tags=tags,
        wrap_id=gift.id,
    )


def unwrap_all(
    events: list[Event], recipient: Identity, verifier: EventVerifier | None = None
) -> tuple[list[UnwrappedMessage], int]:
    """
    Unwrap a batch, skipping anything that will not open.

    Returns:
        (messages, skipped_count)
    """
    messages = []
    skipped = 0
    for event in events:
        try:
            messages.append(unwrap(event, recipient, verifier))
        except DecryptionFailure as e:
            skipped += 1
            logger.debug("Skipping gift wrap %s: %s", short(event.id), e.message)
    return messages, skipped


async def send_direct_message(
    pool,
    sender: Identity,
    recipient_pubkey: str,
    content: str,
    kind: int = EventKind.DIRECT_MESSAGE,
    extra_tags: list[list[str]] | None = None,
):
    """Wrap a message and publish the gift wrap to every relay."""
    gift = wrap(content, recipient_pubkey, sender, kind=kind, extra_tags=extra_tags)
    return await pool.publish(gift)


async def fetch_direct_messages(
    pool,
    recipient: Identity,
    since: int | None = None,
    kind: int | None = None,
) -> list[UnwrappedMessage]:
    """
    Fetch and open every gift wrap addressed to ``recipient``.

    Args:
        pool: RelayPool to query.
        recipient: The reader's identity.
        since: Only messages written at or after this time.
        kind: Only rumors of this kind.

    Returns:
        Messages, newest first.
    """
    wrap_since = None if since is None else max(0, since - TIMESTAMP_JITTER)
    events = await pool.query(Filter(kinds=[EventKind.GIFT_WRAP], tags={"p": [recipient.public_key]}, since=wrap_since))
    messages, skipped = unwrap_all(events, recipient, pool.verifier)
    if skipped:
        logger.info("Skipped %d gift wraps that did not open for %s", skipped, short(recipient.public_key))

    messages = [
        m for m in messages
        if (kind is None or m.kind == kind) and (since is None or m.created_at >= since)
    ]
    messages.sort(key=lambda m: m.created_at, reverse=True)
    return messages
