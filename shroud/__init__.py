"""
Shroud — Anonymous Trading over Public Relays
A privacy engine for posting offers and picking partners on an open relay network.

Shroud layers several protections on top of a public event relay:
1. Group cipher — everything in a channel is encrypted to the group secret
2. Unlinkable identities — offers and interest signals each use their own key
3. Gift wraps — direct messages whose sender appears nowhere on the wire
4. Padding and jitter — notifications all look alike and arrive at random times
5. Whitelist — deny-by-default membership replicated across relays

Usage:
    from shroud import Shroud, generate_random
    async with Shroud(generate_random()) as client:
        client.join_group("my-group-secret")
        await client.send_group_message("hello")
"""

from shroud.client import Shroud
from shroud.config import ShroudConfig
from shroud.errors import (
    DecryptionFailure,
    InvalidTransition,
    NetworkFailure,
    ShroudError,
    ValidationFailure,
)
from shroud.events import Event, EventKind, Filter, SchnorrVerifier
from shroud.giftwrap import unwrap, wrap
from shroud.group import Group
from shroud.group_config import GroupConfig
from shroud.keys import Identity, derive_from_secret, generate_random, generate_secret
from shroud.logs import configure_logging
from shroud.offers import OfferSession, OfferState
from shroud.padding import pad_message, random_delay, remove_padding
from shroud.relays import MemoryRelay, RelayPool, WebSocketRelay
from shroud.selection import SelectionProtocol, SelectionResult
from shroud.session import EncryptedFileSecretStore, MemorySecretStore, SecretStore
from shroud.user_config import UserConfig
from shroud.whitelist import WhitelistRecord, is_allowed

__version__ = "0.1.0"
__all__ = [
    "Shroud",
    "ShroudConfig",
    "ShroudError",
    "DecryptionFailure",
    "InvalidTransition",
    "NetworkFailure",
    "ValidationFailure",
    "Event",
    "EventKind",
    "Filter",
    "SchnorrVerifier",
    "wrap",
    "unwrap",
    "Group",
    "GroupConfig",
    "Identity",
    "derive_from_secret",
    "generate_random",
    "generate_secret",
    "configure_logging",
    "OfferSession",
    "OfferState",
    "pad_message",
    "remove_padding",
    "random_delay",
    "MemoryRelay",
    "RelayPool",
    "WebSocketRelay",
    "SelectionProtocol",
    "SelectionResult",
    "EncryptedFileSecretStore",
    "MemorySecretStore",
    "SecretStore",
    "UserConfig",
    "WhitelistRecord",
    "is_allowed",
]
