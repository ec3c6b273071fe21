"""
Shroud — The Client
One object per user session, wiring every privacy layer together.

Flow for an offer owner:
1. Join the group (derive key and channel id from the shared secret)
2. Create an offer under a fresh offer secret (stored in the SecretStore)
3. Read interest signals addressed to the offer key
4. Select a partner: rejections, retractions, deal, padded notifications

Flow for a responder:
1. Join the same group, read offers
2. Submit interest from a single-use key (kept in the SecretStore)
3. Receive a rejection or a partner notification, both gift-wrapped

The group admin is read from the group's public config record; it decides
whose whitelist is notified when an offer closes.

The client owns its relay pool and its secret store. Nothing is shared
between clients in the same process.
"""

import logging

from shroud.channel import GroupFeed, GroupMessage, fetch_group_messages, send_group_message
from shroud.config import ShroudConfig
from shroud.deals import Deal, DealStatus, load_my_deals, update_deal_status
from shroud.errors import ValidationFailure
from shroud.giftwrap import UnwrappedMessage, fetch_direct_messages, send_direct_message
from shroud.group import Group, validate_group_secret
from shroud.group_config import GroupConfig, load_group_config, save_group_config
from shroud.interest import (
    DecryptedSignal,
    SubmittedInterest,
    count_interests,
    list_interests,
    retract_interest,
    submit_interest,
)
from shroud.invitations import (
    ChatAcceptance,
    ChatInvitation,
    accept_chat_invitation,
    create_chat_invitation,
    fetch_chat_invitations,
    is_invitation_accepted,
)
from shroud.keys import Identity, derive_from_secret, generate_secret, normalize_pubkey
from shroud.logs import short
from shroud.offers import Offer, OfferSession, create_offer, fetch_offers, has_active_offer
from shroud.relays import RelayPool, connector_for
from shroud.selection import (
    DealNotification,
    RejectionMessage,
    RejectionReason,
    RejectionSummary,
    SelectionProtocol,
    SelectionResult,
    load_notifications,
    load_rejections,
)
from shroud.session import SCOPE_INTEREST, SCOPE_OFFER, MemorySecretStore, SecretStore
from shroud.user_config import (
    UserConfig,
    delete_user_config,
    has_user_config,
    load_user_config,
    save_user_config,
)
from shroud.validation import RateLimiter
from shroud.whitelist import (
    WhitelistRecord,
    add_member,
    load_whitelist,
    remove_member,
    save_whitelist,
)

logger = logging.getLogger(__name__)


def build_pool(config: ShroudConfig) -> RelayPool:
    """A relay pool for the configured relays."""
    limiter = None
    if config.rate_limit_requests:
        limiter = RateLimiter(config.rate_limit_requests, config.rate_limit_window)
    return RelayPool(
        [connector_for(url, timeout=config.query_timeout) for url in config.relays],
        timeout=max(config.query_timeout, config.publish_timeout),
        rate_limiter=limiter,
    )


class Shroud:
    """
    Privacy-preserving trading client.

    Args:
        identity: The user's real identity.
        config: Settings; defaults apply when omitted.
        pool: Relay pool; built from ``config.relays`` when omitted.
        store: Secret store; volatile in-memory store when omitted.
    """

    def __init__(
        self,
        identity: Identity,
        config: ShroudConfig | None = None,
        pool: RelayPool | None = None,
        store: SecretStore | None = None,
    ):
        self.identity = identity
        self.config = (config or ShroudConfig()).validate()
        self.pool = pool or build_pool(self.config)
        self.store = store or MemorySecretStore()
        self.group: Group | None = None
        self.group_admin: str | None = None
        self._group_secret: str | None = None
        self.selection: SelectionProtocol | None = None
        self.sessions: dict[str, OfferSession] = {}

        # Stats
        self.offers_created = 0
        self.interests_sent = 0
        self.selections_made = 0
        self.messages_sent = 0

    @classmethod
    def from_key(cls, private_key: str, **kwargs) -> "Shroud":
        """Client for a hex or nsec private key."""
        return cls(Identity.from_hex(private_key), **kwargs)

    async def __aenter__(self) -> "Shroud":
        return self

    async def __aexit__(self, *exc):
        await self.close()

    async def close(self):
        await self.pool.close()

    # --- group ---

    def join_group(self, secret: str, admin_pubkey: str | None = None) -> Group:
        """
        Derive the group key and channel id; later calls act in this group.

        Args:
            secret: The shared group secret.
            admin_pubkey: The group admin when already known (from an
                invite or a saved user config); read from relays otherwise.
        """
        secret = validate_group_secret(secret)
        self.group = Group.from_secret(secret, legacy=self.config.legacy_key_derivation)
        self._group_secret = secret
        self.group_admin = normalize_pubkey(admin_pubkey) if admin_pubkey else None
        self.selection = SelectionProtocol(self.pool, self.group, self.config)
        logger.info("Joined channel %s", short(self.group.channel_id))
        return self.group

    def _require_group(self) -> Group:
        if self.group is None:
            raise ValidationFailure("Join a group before using group operations", field="group")
        return self.group

    async def create_group(self, secret: str, members=(), relay: str | None = None) -> GroupConfig:
        """
        Set up a new group with this client as its admin.

        Publishes the group config and a whitelist holding this client and
        ``members``.
        """
        group = self.join_group(secret, admin_pubkey=self.identity.public_key)
        config = await save_group_config(self.pool, group, self.identity, relay or self.config.relays[0],
                                         group_tag=self.config.group_tag)
        await self.save_whitelist([self.identity.public_key, *members])
        return config

    async def load_group_config(self) -> GroupConfig | None:
        return await load_group_config(self.pool, self._require_group().channel_id, self.group_admin)

    async def load_group_admin(self) -> str | None:
        """The group admin's key, read from relays once and then cached."""
        if self.group_admin is None:
            config = await load_group_config(self.pool, self._require_group().channel_id)
            if config is not None:
                self.group_admin = config.admin_pubkey
        return self.group_admin

    async def send_group_message(self, content: str) -> GroupMessage:
        message = await send_group_message(self.pool, self._require_group(), self.identity, content,
                                           self.config.group_tag)
        self.messages_sent += 1
        return message

    async def fetch_group_messages(self, since: int | None = None, limit: int = 100,
                                   whitelist: WhitelistRecord | None = None) -> GroupFeed:
        return await fetch_group_messages(self.pool, self._require_group(), since, limit, whitelist)

    # --- whitelist ---

    async def load_whitelist(self, admin_pubkey: str | None = None,
                             channel_id: str | None = None) -> WhitelistRecord | None:
        """The group whitelist; the admin is looked up when not given."""
        admin = admin_pubkey or await self.load_group_admin()
        if admin is None:
            return None
        return await load_whitelist(self.pool, admin, channel_id or self._require_group().channel_id)

    async def save_whitelist(self, members, channel_id: str | None = None) -> WhitelistRecord:
        """Replace the whitelist, signed by this client's identity as admin."""
        return await save_whitelist(self.pool, members, self.identity,
                                    channel_id or self._require_group().channel_id,
                                    group_tag=self.config.group_tag)

    async def add_member(self, pubkey: str, channel_id: str | None = None) -> WhitelistRecord:
        return await add_member(self.pool, pubkey, self.identity, channel_id or self._require_group().channel_id)

    async def remove_member(self, pubkey: str, channel_id: str | None = None) -> WhitelistRecord:
        return await remove_member(self.pool, pubkey, self.identity, channel_id or self._require_group().channel_id)

    # --- offers (owner side) ---

    async def create_offer(self, content: str, title: str = "", secret: str | None = None,
                           ttl_hours: float | None = None) -> OfferSession:
        """
        Publish an offer under its own identity.

        The offer secret is kept in the secret store so the offer can be
        resumed with :meth:`resume_offer`.
        """
        secret = secret or generate_secret()
        session = await create_offer(
            self.pool, self._require_group(), secret, content, self.identity.public_key, title,
            self.config.offer_ttl_hours if ttl_hours is None else ttl_hours,
            self.config.group_tag,
        )
        self.store.set(SCOPE_OFFER, session.offer_id, secret)
        self.sessions[session.offer_id] = session
        self.offers_created += 1
        return session

    def resume_offer(self, offer_id: str, title: str = "") -> OfferSession:
        """Rebuild a session for an offer created earlier from its stored secret."""
        if offer_id in self.sessions:
            return self.sessions[offer_id]
        secret = self.store.get(SCOPE_OFFER, offer_id)
        if secret is None:
            raise ValidationFailure("No stored secret for this offer", field="offer_id", value=offer_id)
        session = OfferSession.from_secret(secret, self.identity.public_key, title)
        self.sessions[offer_id] = session
        return session

    async def fetch_offers(self, include_expired: bool = False) -> list[Offer]:
        return await fetch_offers(self.pool, self._require_group(), include_expired)

    async def has_active_offer(self) -> bool:
        """True if one of this client's offers is still live on relays."""
        keys = [derive_from_secret(self.store.get(SCOPE_OFFER, offer_id)).public_key
                for offer_id in self.store.keys(SCOPE_OFFER)]
        if not keys:
            return False
        return await has_active_offer(self.pool, self._require_group(), keys)

    async def list_interests(self, session: OfferSession) -> list[DecryptedSignal]:
        return await list_interests(self.pool, session.offer_id, session.identity, self.config.interest_tag)

    async def count_interests(self, offer_id: str) -> int:
        return await count_interests(self.pool, offer_id, self.config.interest_tag)

    async def select_partner(self, session: OfferSession, selected_pubkey: str,
                             signals: list[DecryptedSignal] | None = None,
                             whitelist_admin: str | None = None) -> SelectionResult:
        """
        Close an offer in favour of one responder.

        Args:
            session: The open offer.
            selected_pubkey: Real key of the chosen responder.
            signals: Decrypted signals; fetched when omitted.
            whitelist_admin: Admin of the group whitelist whose members get
                notified. Taken from the group config when omitted, and
                this client's own key only if the group has no config.
        """
        self._require_group()
        if signals is None:
            signals = await self.list_interests(session)
        admin = whitelist_admin or await self.load_group_admin() or self.identity.public_key
        whitelist = await load_whitelist(self.pool, admin, self.group.channel_id)
        if whitelist is None:
            logger.warning("No whitelist from %s; only the two partners will be notified", short(admin))
        result = await self.selection.select_partner(session, selected_pubkey, signals, whitelist)
        self.selections_made += 1
        return result

    async def reject_all_interests(self, session: OfferSession, signals: list[DecryptedSignal] | None = None,
                                   reason: RejectionReason = RejectionReason.OFFER_CLOSED) -> RejectionSummary:
        self._require_group()
        if signals is None:
            signals = await self.list_interests(session)
        return await self.selection.reject_all_interests(session, signals, reason)

    async def expire_offer(self, session: OfferSession) -> RejectionSummary:
        self._require_group()
        return await self.selection.expire_offer(session)

    async def invite_to_chat(self, session: OfferSession, pubkey: str, message: str | None = None) -> ChatInvitation:
        """Invite one responder to chat before selecting a partner."""
        kwargs = {"message": message} if message else {}
        invitation = await create_chat_invitation(self.pool, session, pubkey,
                                                  padding_target=self.config.padding_target, **kwargs)
        self.messages_sent += 1
        return invitation

    async def is_invitation_accepted(self, session: OfferSession, invitation: ChatInvitation,
                                     invited_pubkey: str) -> bool:
        return await is_invitation_accepted(self.pool, session.identity, invitation, invited_pubkey)

    # --- interest (responder side) ---

    async def submit_interest(self, offer: Offer, message: str = "", display_name: str = "") -> SubmittedInterest:
        """Signal interest in an offer from a single-use key and keep that key."""
        submitted = await submit_interest(
            self.pool, offer.offer_id, offer.pubkey, self.identity, message, display_name,
            self.config.group_tag, self.config.interest_tag,
        )
        self.store.set(SCOPE_INTEREST, submitted.store_name, submitted.to_store())
        self.interests_sent += 1
        return submitted

    def _stored_interests(self, offer_id: str) -> list[tuple[str, SubmittedInterest]]:
        """Every kept signal for an offer, one entry per signal."""
        found = []
        for name in self.store.keys(SCOPE_INTEREST):
            if name.partition(".")[0] != offer_id:
                continue
            value = self.store.get(SCOPE_INTEREST, name)
            if value is not None:
                found.append((name, SubmittedInterest.from_store(offer_id, value)))
        return found

    def has_shown_interest(self, offer_id: str) -> bool:
        return bool(self._stored_interests(offer_id))

    async def retract_interest(self, offer_id: str, reason: str = "withdrawn") -> bool:
        """
        Withdraw every signal submitted for an offer.

        Each single-use key is discarded once its retraction is published.

        Returns:
            False if there is no stored signal for the offer.
        """
        stored = self._stored_interests(offer_id)
        for name, submitted in stored:
            await retract_interest(self.pool, submitted.event, submitted.ephemeral, reason)
            self.store.delete(SCOPE_INTEREST, name)
        return bool(stored)

    async def load_rejections(self, since: int | None = None) -> list[RejectionMessage]:
        return await load_rejections(self.pool, self.identity, since)

    async def load_notifications(self, since: int | None = None) -> list[DealNotification]:
        return await load_notifications(self.pool, self.identity, since)

    async def fetch_chat_invitations(self, since: int | None = None) -> list[ChatInvitation]:
        return await fetch_chat_invitations(self.pool, self.identity, since)

    async def accept_chat_invitation(self, invitation: ChatInvitation) -> ChatAcceptance:
        acceptance = await accept_chat_invitation(self.pool, invitation, self.identity, self.config.padding_target)
        self.messages_sent += 1
        return acceptance

    # --- direct messages ---

    async def send_direct_message(self, recipient_pubkey: str, content: str):
        result = await send_direct_message(self.pool, self.identity, normalize_pubkey(recipient_pubkey), content)
        self.messages_sent += 1
        return result

    async def fetch_direct_messages(self, since: int | None = None) -> list[UnwrappedMessage]:
        return await fetch_direct_messages(self.pool, self.identity, since=since)

    # --- deals ---

    async def _offer_keys(self) -> dict[str, str]:
        """
        Offer keys this client has good reason to trust, by offer id.

        Own offer secrets win over the offers this client answered, which
        win over the authenticated senders of partner notifications.
        """
        keys = {}
        for note in await self.load_notifications():
            if note.is_partner and note.offer_pubkey:
                keys.setdefault(note.offer_id, note.offer_pubkey)
        for name in self.store.keys(SCOPE_INTEREST):
            value = self.store.get(SCOPE_INTEREST, name)
            offer_id = name.partition(".")[0]
            if value is not None:
                submitted = SubmittedInterest.from_store(offer_id, value)
                if submitted.offer_pubkey:
                    keys[offer_id] = submitted.offer_pubkey
        for offer_id in self.store.keys(SCOPE_OFFER):
            keys[offer_id] = derive_from_secret(self.store.get(SCOPE_OFFER, offer_id)).public_key
        for offer_id, session in self.sessions.items():
            keys[offer_id] = session.pubkey
        return keys

    async def load_my_deals(self) -> list[Deal]:
        return await load_my_deals(self.pool, self._require_group(), self.identity.public_key,
                                   self.config.group_tag, offer_keys=await self._offer_keys())

    async def update_deal_status(self, offer_id: str, status: DealStatus) -> Deal:
        offer_pubkey = (await self._offer_keys()).get(offer_id)
        return await update_deal_status(self.pool, self._require_group(), offer_id, status, self.identity,
                                        offer_pubkey=offer_pubkey, group_tag=self.config.group_tag)

    # --- user config ---

    async def save_user_config(self, invite_link: str = "", relay: str | None = None) -> UserConfig:
        """
        Keep this session's group settings on relays, readable only by this key.

        Raises:
            ValidationFailure: no group has been joined with its secret.
        """
        if self.group is None or not self._group_secret:
            raise ValidationFailure("Join a group before saving its settings", field="group")
        admin = await self.load_group_admin() or ""
        config = UserConfig(
            is_group_admin=admin == self.identity.public_key,
            admin_pubkey=admin,
            group_secret=self._group_secret,
            relay=relay or self.config.relays[0],
            invite_link=invite_link,
        )
        return await save_user_config(self.pool, self.identity, config)

    async def load_user_config(self) -> UserConfig | None:
        return await load_user_config(self.pool, self.identity)

    async def delete_user_config(self) -> bool:
        return await delete_user_config(self.pool, self.identity)

    async def has_user_config(self) -> bool:
        return await has_user_config(self.pool, self.identity)

    async def restore_group(self) -> Group | None:
        """Rejoin the group named in the saved user config, if any."""
        config = await self.load_user_config()
        if config is None:
            return None
        return self.join_group(config.group_secret, admin_pubkey=config.admin_pubkey or None)

    def stats(self) -> dict:
        """Get operational statistics."""
        return {
            "pubkey": self.identity.public_key,
            "channel_id": self.group.channel_id if self.group else None,
            "group_admin": self.group_admin,
            "offers_created": self.offers_created,
            "interests_sent": self.interests_sent,
            "selections_made": self.selections_made,
            "messages_sent": self.messages_sent,
            "pool": self.pool.get_status(),
        }
