"""
Group Config
The public record that tells members who administers a group.

  kind 30000, d = "bitcoin-group-config:<channel_id>"
  tags: relay=<url>, admin=<pubkey>, secret_hash=<channel_id>, t=<group tag>
  content = {"relay", "admin_pubkey", "secret_hash", "created_at", "updated_at"}

``secret_hash`` is the group's channel id, never a fresh SHA-256 of the
secret: in legacy mode that hash is the group key itself.

Members read the admin from here to find the whitelist. Only copies whose
admin is their signer count. Anyone may publish under the same address,
so when more than one key has, the admin is ambiguous and nothing is
returned unless the caller says which admin to expect.
"""

import json
import logging
import re
import time
from dataclasses import asdict, dataclass

from shroud.config import GROUP_CONFIG_D_TAG, GROUP_TAG
from shroud.errors import ValidationFailure
from shroud.events import Event, EventKind, Filter, sign_event
from shroud.group import Group
from shroud.keys import Identity, normalize_pubkey
from shroud.logs import short
from shroud.validation import validate_relay_url

logger = logging.getLogger(__name__)

_HEX64 = re.compile(r"^[0-9a-f]{64}$")


def group_config_d_tag(channel_id: str) -> str:
    return f"{GROUP_CONFIG_D_TAG}:{channel_id}"


@dataclass(frozen=True)
class GroupConfig:
    relay: str
    admin_pubkey: str
    secret_hash: str
    created_at: int
    updated_at: int
    event_id: str = ""

    @classmethod
    def from_event(cls, event: Event) -> "GroupConfig":
        """
        Parse a group config event.

        Raises:
            ValidationFailure: malformed, for another address, or naming an
                admin other than its signer.
        """
        prefix = f"{GROUP_CONFIG_D_TAG}:"
        if event.kind != EventKind.GROUP_CONFIG or not event.d_tag.startswith(prefix):
            raise ValidationFailure("Not a group config", field="kind", value=event.kind)
        try:
            data = json.loads(event.content)
        except ValueError as e:
            raise ValidationFailure("Group config is not JSON", field="content") from e
        if not isinstance(data, dict):
            raise ValidationFailure("Group config must be an object", field="content")

        secret_hash = data.get("secret_hash")
        if not isinstance(secret_hash, str) or not _HEX64.match(secret_hash):
            raise ValidationFailure("Group config secret_hash must be 64 hex", field="secret_hash")
        if event.d_tag != prefix + secret_hash:
            raise ValidationFailure("Group config does not match its address", field="secret_hash")
        if normalize_pubkey(data.get("admin_pubkey", "")) != event.pubkey:
            raise ValidationFailure("Group config admin does not match signer", field="admin_pubkey")
        for name in ("created_at", "updated_at"):
            value = data.get(name)
            if not isinstance(value, int) or isinstance(value, bool) or value <= 0:
                raise ValidationFailure(f"Group config {name} must be a positive integer", field=name)

        return cls(
            relay=validate_relay_url(data.get("relay", "")),
            admin_pubkey=event.pubkey,
            secret_hash=secret_hash,
            created_at=data["created_at"],
            updated_at=data["updated_at"],
            event_id=event.id,
        )

    def to_content(self) -> str:
        data = asdict(self)
        del data["event_id"]
        return json.dumps(data)


async def save_group_config(
    pool,
    group: Group,
    admin: Identity,
    relay: str,
    created_at: int | None = None,
    group_tag: str = GROUP_TAG,
) -> GroupConfig:
    """
    Publish the group's config with ``admin`` as its administrator.

    Args:
        pool: RelayPool to publish to.
        group: The group being described.
        admin: Administrator; signs the record.
        relay: Relay members should use.
        created_at: When the group was first set up; now when omitted.
    """
    now = int(time.time())
    config = GroupConfig(
        relay=validate_relay_url(relay),
        admin_pubkey=admin.public_key,
        secret_hash=group.channel_id,
        created_at=created_at or now,
        updated_at=now,
    )
    event = sign_event(
        admin,
        EventKind.GROUP_CONFIG,
        config.to_content(),
        [
            ["d", group_config_d_tag(group.channel_id)],
            ["relay", config.relay],
            ["admin", config.admin_pubkey],
            ["secret_hash", config.secret_hash],
            ["t", group_tag],
        ],
        created_at=now,
    )
    await pool.publish(event)
    logger.info("Group config for %s saved by %s", short(group.channel_id), short(admin.public_key))
    return GroupConfig(**{**asdict(config), "event_id": event.id})


async def load_group_config(pool, channel_id: str, admin_pubkey: str | None = None) -> GroupConfig | None:
    """
    Fetch a group's config.

    Every relay is asked; the newest valid copy wins.

    Args:
        admin_pubkey: Only accept configs from this admin. Without it, a
            group whose config comes from more than one key yields None.
    """
    admin = normalize_pubkey(admin_pubkey) if admin_pubkey is not None else None
    query = Filter(
        kinds=[EventKind.GROUP_CONFIG],
        authors=[admin] if admin else None,
        tags={"d": [group_config_d_tag(channel_id)]},
    )

    configs = []
    for url, events in (await pool.query_each(query)).items():
        for event in events:
            try:
                configs.append(GroupConfig.from_event(event))
            except ValidationFailure as e:
                logger.debug("Ignoring group config %s from %s: %s", short(event.id), url, e.message)

    if admin is not None:
        configs = [c for c in configs if c.admin_pubkey == admin]
    admins = {c.admin_pubkey for c in configs}
    if len(admins) > 1:
        logger.warning("Group %s has configs from %d different keys", short(channel_id), len(admins))
        return None
    if not configs:
        return None
    return max(configs, key=lambda c: (c.updated_at, c.event_id))


async def load_group_admin(pool, channel_id: str) -> str | None:
    """The group administrator's key, or None if unknown or contested."""
    config = await load_group_config(pool, channel_id)
    return config.admin_pubkey if config else None
