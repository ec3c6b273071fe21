"""
Whitelist Gate
Deny-by-default membership for a group channel, replicated over relays.

The whitelist is a single addressable record per (admin, channel):

  kind 30000, d = "bitcoin-group-whitelist:<channel_id>"
  content = {"pubkeys": [...], "updated_at": n, "admin_pubkey": ..., "channel_id": ...}

Every save replaces the whole member list. Relays may hold different
versions; readers ask every relay and believe the copy with the greatest
``updated_at``. Only records signed by the admin count. With no record
at all, nobody is allowed.

Adding or removing one member is read-modify-write and not atomic: two
administrators editing at once can lose an update.
"""

import json
import logging
import time
from dataclasses import dataclass

from shroud.config import GROUP_TAG, WHITELIST_D_TAG
from shroud.errors import ValidationFailure
from shroud.events import Event, EventKind, Filter, sign_event
from shroud.keys import Identity, normalize_pubkey
from shroud.logs import short

logger = logging.getLogger(__name__)


def whitelist_d_tag(channel_id: str) -> str:
    return f"{WHITELIST_D_TAG}:{channel_id}"


@dataclass(frozen=True)
class WhitelistRecord:
    """One version of a channel's member list."""

    members: frozenset[str]
    updated_at: int
    admin_pubkey: str
    channel_id: str
    event_id: str = ""

    @classmethod
    def from_event(cls, event: Event) -> "WhitelistRecord":
        """
        Parse a whitelist event.

        Raises:
            ValidationFailure: wrong kind, malformed content, or a content
                admin that differs from the signer.
        """
        if event.kind != EventKind.WHITELIST or not event.d_tag.startswith(WHITELIST_D_TAG):
            raise ValidationFailure("Not a whitelist record", field="kind", value=event.kind)
        try:
            data = json.loads(event.content)
        except ValueError as e:
            raise ValidationFailure("Whitelist content is not JSON", field="content") from e
        if not isinstance(data, dict):
            raise ValidationFailure("Whitelist content must be an object", field="content")

        pubkeys = data.get("pubkeys")
        updated_at = data.get("updated_at")
        admin = data.get("admin_pubkey", event.pubkey)
        if not isinstance(pubkeys, list):
            raise ValidationFailure("Whitelist pubkeys must be a list", field="pubkeys")
        if not isinstance(updated_at, int) or isinstance(updated_at, bool):
            raise ValidationFailure("Whitelist updated_at must be an integer", field="updated_at")
        if normalize_pubkey(admin) != event.pubkey:
            raise ValidationFailure("Whitelist admin does not match signer", field="admin_pubkey", value=admin)

        members = set()
        for pubkey in pubkeys:
            try:
                members.add(normalize_pubkey(pubkey))
            except ValidationFailure:
                logger.warning("Whitelist %s lists an unreadable key, skipping it", short(event.id))

        channel_id = data.get("channel_id") or event.d_tag.partition(":")[2]
        return cls(
            members=frozenset(members),
            updated_at=updated_at,
            admin_pubkey=event.pubkey,
            channel_id=channel_id,
            event_id=event.id,
        )

    def to_content(self) -> str:
        return json.dumps({
            "pubkeys": sorted(self.members),
            "updated_at": self.updated_at,
            "admin_pubkey": self.admin_pubkey,
            "channel_id": self.channel_id,
        })

    def allows(self, pubkey: str) -> bool:
        return is_allowed(pubkey, self)


def is_allowed(pubkey: str, record: WhitelistRecord | None) -> bool:
    """
    Membership check. No record means deny.

    Keys are compared in canonical hex, so npub and mixed-case hex match.
    Unparseable keys are denied.
    """
    if record is None:
        return False
    try:
        return normalize_pubkey(pubkey) in record.members
    except ValidationFailure:
        return False


def _newer(a: WhitelistRecord, b: WhitelistRecord) -> bool:
    return (a.updated_at, a.event_id) > (b.updated_at, b.event_id)


async def load_whitelist(pool, admin_pubkey: str, channel_id: str) -> WhitelistRecord | None:
    """
    Fetch the authoritative whitelist for a channel.

    Every relay is asked independently; the valid admin-signed copy with the
    greatest ``updated_at`` wins regardless of which relay answered first.

    Returns:
        The newest record, or None if no relay holds one.
    """
    admin = normalize_pubkey(admin_pubkey)
    query = Filter(kinds=[EventKind.WHITELIST], authors=[admin], tags={"d": [whitelist_d_tag(channel_id)]})
    per_relay = await pool.query_each(query)

    best = None
    for url, events in per_relay.items():
        for event in events:
            if event.pubkey != admin:
                continue
            try:
                record = WhitelistRecord.from_event(event)
            except ValidationFailure as e:
                logger.debug("Ignoring malformed whitelist %s from %s: %s", short(event.id), url, e.message)
                continue
            if best is None or _newer(record, best):
                best = record

    if best is None:
        logger.info("No whitelist found for channel %s", short(channel_id))
    else:
        logger.debug("Whitelist for %s: %d members, updated %d", short(channel_id), len(best.members), best.updated_at)
    return best


async def save_whitelist(
    pool,
    members,
    admin: Identity,
    channel_id: str,
    updated_at: int | None = None,
    group_tag: str = GROUP_TAG,
) -> WhitelistRecord:
    """
    Replace a channel's whitelist with ``members``.

    Args:
        pool: RelayPool to publish to.
        members: Public keys, hex or npub.
        admin: Signing identity; readers only trust this key.
        channel_id: Channel the list governs.
        updated_at: Version timestamp; defaults to now.
        group_tag: Topic tag for the record.

    Returns:
        The record as published.
    """
    updated_at = int(time.time()) if updated_at is None else int(updated_at)
    record = WhitelistRecord(
        members=frozenset(normalize_pubkey(m) for m in members),
        updated_at=updated_at,
        admin_pubkey=admin.public_key,
        channel_id=channel_id,
    )
    event = sign_event(
        admin,
        EventKind.WHITELIST,
        record.to_content(),
        [["d", whitelist_d_tag(channel_id)], ["t", group_tag]],
        created_at=updated_at,
    )
    await pool.publish(event)
    logger.info("Saved whitelist for %s with %d members", short(channel_id), len(record.members))
    return WhitelistRecord(record.members, updated_at, admin.public_key, channel_id, event.id)


async def add_member(pool, pubkey: str, admin: Identity, channel_id: str) -> WhitelistRecord:
    """Re-fetch the whitelist, add one member, and save it back."""
    pubkey = normalize_pubkey(pubkey)
    current = await load_whitelist(pool, admin.public_key, channel_id)
    members = set(current.members) if current else set()
    members.add(pubkey)
    return await save_whitelist(pool, members, admin, channel_id, updated_at=_next_version(current))


async def remove_member(pool, pubkey: str, admin: Identity, channel_id: str) -> WhitelistRecord:
    """Re-fetch the whitelist, drop one member, and save it back."""
    pubkey = normalize_pubkey(pubkey)
    current = await load_whitelist(pool, admin.public_key, channel_id)
    members = set(current.members) if current else set()
    members.discard(pubkey)
    return await save_whitelist(pool, members, admin, channel_id, updated_at=_next_version(current))


def _next_version(current: WhitelistRecord | None) -> int:
    # Never go backwards, even with a skewed clock or a same-second edit
    now = int(time.time())
    if current is None:
        return now
    return max(now, current.updated_at + 1)


async def set_private_chat_whitelist(
    pool,
    creator_pubkey: str,
    offer_pubkey: str,
    responder_pubkey: str,
    admin: Identity,
    channel_id: str,
) -> WhitelistRecord:
    """
    Collapse a channel's membership to the participants of one deal.

    Members become exactly: the offer creator's real key, the offer's
    ephemeral key, and the selected responder's key.
    """
    members = {creator_pubkey, offer_pubkey, responder_pubkey}
    return await save_whitelist(pool, members, admin, channel_id)
