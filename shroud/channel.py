"""
Group Channel
Encrypted chat for everyone holding the group secret.

  kind 1, tags: e=<channelId> (root), t=<group tag>
  content: group-encrypted text

Anyone can post to a channel id, so readers drop what does not decrypt
and, given a whitelist, what was not written by a member.
"""

import logging
from dataclasses import dataclass, field

from shroud.config import GROUP_TAG
from shroud.errors import DecryptionFailure
from shroud.events import Event, EventKind, Filter, sign_event
from shroud.group import Group
from shroud.keys import Identity
from shroud.logs import short
from shroud.whitelist import WhitelistRecord, is_allowed

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class GroupMessage:
    id: str
    author: str
    content: str
    created_at: int


@dataclass
class GroupFeed:
    """Readable messages plus counts of what was dropped."""

    messages: list[GroupMessage] = field(default_factory=list)
    skipped: int = 0
    blocked: int = 0


async def send_group_message(
    pool,
    group: Group,
    identity: Identity,
    content: str,
    group_tag: str = GROUP_TAG,
) -> GroupMessage:
    """Encrypt and publish a message to the group channel."""
    event = sign_event(
        identity,
        EventKind.GROUP_MESSAGE,
        group.encrypt(content),
        [["e", group.channel_id, "", "root"], ["t", group_tag]],
    )
    await pool.publish(event)
    logger.debug("Group message %s sent to %s", short(event.id), short(group.channel_id))
    return GroupMessage(event.id, event.pubkey, content, event.created_at)


def read_group_message(event: Event, group: Group) -> GroupMessage:
    """Decrypt one channel event. Raises DecryptionFailure."""
    return GroupMessage(event.id, event.pubkey, group.decrypt(event.content), event.created_at)


async def fetch_group_messages(
    pool,
    group: Group,
    since: int | None = None,
    limit: int = 100,
    whitelist: WhitelistRecord | None = None,
) -> GroupFeed:
    """
    Read the group channel.

    Args:
        pool: RelayPool to query.
        group: Group whose key decrypts the channel.
        since: Only messages at or after this time.
        limit: Maximum events to fetch.
        whitelist: When given, messages from non-members are dropped.

    Returns:
        GroupFeed with messages oldest first.
    """
    events = await pool.query(
        Filter(kinds=[EventKind.GROUP_MESSAGE], tags={"e": [group.channel_id]}, since=since, limit=limit)
    )
    feed = GroupFeed()
    for event in events:
        if whitelist is not None and not is_allowed(event.pubkey, whitelist):
            feed.blocked += 1
            continue
        try:
            feed.messages.append(read_group_message(event, group))
        except DecryptionFailure:
            feed.skipped += 1

    if feed.skipped or feed.blocked:
        logger.info("Channel %s: %d unreadable, %d from non-members",
                    short(group.channel_id), feed.skipped, feed.blocked)
    feed.messages.sort(key=lambda m: m.created_at)
    return feed
