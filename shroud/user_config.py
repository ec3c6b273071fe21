"""
User Config
A user's own settings, kept on relays and readable only by that user.

  kind 30078, d = "bitcoin-swap-user-config", tags: encrypted=giftwrap
  content = a gift wrap addressed to the user, serialized as JSON
  rumor   = {is_group_admin, admin_pubkey, group_secret, invite_link,
             relay, created_at, updated_at}

The outer record is signed by the user's real key so every save replaces
the last one and the user can delete it. The settings themselves are
sealed like a direct message to self.
"""

import json
import logging
import time
from dataclasses import asdict, dataclass

from shroud.config import USER_CONFIG_D_TAG
from shroud.errors import DecryptionFailure, ValidationFailure
from shroud.events import Event, EventKind, Filter, deletion_event, sign_event
from shroud.giftwrap import unwrap, wrap
from shroud.keys import Identity
from shroud.logs import short

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class UserConfig:
    is_group_admin: bool
    admin_pubkey: str
    group_secret: str
    relay: str
    invite_link: str = ""
    created_at: int = 0
    updated_at: int = 0

    @classmethod
    def from_dict(cls, data: dict) -> "UserConfig":
        if not isinstance(data, dict):
            raise ValidationFailure("User config must be an object", field="content")
        if not isinstance(data.get("is_group_admin"), bool):
            raise ValidationFailure("is_group_admin must be a boolean", field="is_group_admin")
        for name in ("admin_pubkey", "group_secret", "relay"):
            if not isinstance(data.get(name), str):
                raise ValidationFailure(f"User config {name} must be a string", field=name)
        return cls(
            is_group_admin=data["is_group_admin"],
            admin_pubkey=data["admin_pubkey"],
            group_secret=data["group_secret"],
            relay=data["relay"],
            invite_link=str(data.get("invite_link") or ""),
            created_at=int(data.get("created_at") or 0),
            updated_at=int(data.get("updated_at") or 0),
        )

    def to_dict(self) -> dict:
        return asdict(self)


def _query(identity: Identity) -> Filter:
    return Filter(kinds=[EventKind.APP_DATA], authors=[identity.public_key], tags={"d": [USER_CONFIG_D_TAG]})


async def _latest(pool, identity: Identity) -> Event | None:
    events = [e for e in await pool.query(_query(identity)) if e.pubkey == identity.public_key]
    return max(events, key=lambda e: (e.created_at, e.id)) if events else None


async def save_user_config(pool, identity: Identity, config: UserConfig) -> UserConfig:
    """Store ``config`` for ``identity``, replacing any earlier copy."""
    previous = await _latest(pool, identity)
    now = int(time.time())
    if previous is not None:
        # Same-second saves must still replace
        now = max(now, previous.created_at + 1)
    stored = UserConfig(**{**config.to_dict(), "created_at": config.created_at or now, "updated_at": now})
    gift = wrap(json.dumps(stored.to_dict()), identity.public_key, identity)
    event = sign_event(
        identity,
        EventKind.APP_DATA,
        gift.to_json(),
        [["d", USER_CONFIG_D_TAG], ["encrypted", "giftwrap"]],
        created_at=now,
    )
    await pool.publish(event)
    logger.info("User config saved for %s", short(identity.public_key))
    return stored


async def load_user_config(pool, identity: Identity) -> UserConfig | None:
    """
    The newest stored config for ``identity``, or None if there is none.

    Raises:
        DecryptionFailure: a config exists but does not open with this key.
    """
    event = await _latest(pool, identity)
    if event is None:
        return None
    try:
        message = unwrap(Event.from_json(event.content), identity, pool.verifier)
        config = UserConfig.from_dict(json.loads(message.content))
    except (ValidationFailure, ValueError) as e:
        raise DecryptionFailure("Stored user config could not be read") from e
    if message.sender != identity.public_key:
        raise DecryptionFailure("Stored user config was not written by its owner")
    return config


async def delete_user_config(pool, identity: Identity) -> bool:
    """Ask relays to drop the stored config. Returns False if there was none."""
    event = await _latest(pool, identity)
    if event is None:
        return False
    await pool.publish(deletion_event(event, identity, "User config deleted"))
    logger.info("User config deleted for %s", short(identity.public_key))
    return True


async def has_user_config(pool, identity: Identity) -> bool:
    """True if a config is stored and opens with this key."""
    try:
        return await load_user_config(pool, identity) is not None
    except DecryptionFailure:
        return False
