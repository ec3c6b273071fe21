"""
Selection Protocol
How an offer owner picks one responder without exposing the choice.

Select partner:
  1. Every responder not chosen gets a gift-wrapped rejection, and their
     interest signal is retracted.
  2. The offer moves to partner_selected. The chosen responder's signal is
     retracted, the deal record and room id are created, and the room's
     whitelist collapses to the two parties plus the offer key.
  3. Every member of the group whitelist gets a notification padded to the
     same size, each sent after its own random delay. Partners learn the
     room id and each other's key; everyone else learns only that the
     offer closed. On the wire all of them look alike.
  4. Once every notification has resolved, the offer is notified.

Retractions are signed by the single-use key that signed each signal; the
offer owner reads that key out of the signal's encrypted payload.

Failures for one recipient never abort the rest. They are collected into
the result's ``errors``.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field, replace
from enum import Enum

from shroud.config import ShroudConfig
from shroud.deals import Deal, create_deal, generate_room_id
from shroud.dispatch import DelayedDispatch, DispatchOutcome
from shroud.errors import InvalidTransition, ShroudError, ValidationFailure
from shroud.events import EventKind
from shroud.giftwrap import fetch_direct_messages, send_direct_message
from shroud.group import Group
from shroud.interest import DecryptedSignal, list_interests, retract_interest
from shroud.keys import Identity, normalize_pubkey
from shroud.logs import short
from shroud.offers import OfferSession, OfferState, delete_offer, fetch_offer
from shroud.padding import pad_message, remove_padding, target_size_for
from shroud.whitelist import WhitelistRecord, set_private_chat_whitelist

logger = logging.getLogger(__name__)

REJECTION_TYPE = "offer_rejection"
NOTIFICATION_TYPE = "deal_finalized"


class RejectionReason(str, Enum):
    SELECTED_OTHER = "selected_other"
    OFFER_CLOSED = "offer_closed"


@dataclass(frozen=True)
class RejectionMessage:
    offer_id: str
    offer_title: str
    reason: RejectionReason
    timestamp: int

    def to_dict(self) -> dict:
        return {
            "type": REJECTION_TYPE,
            "offerId": self.offer_id,
            "offerTitle": self.offer_title,
            "reason": self.reason.value,
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "RejectionMessage":
        if not isinstance(data, dict) or data.get("type") != REJECTION_TYPE:
            raise ValidationFailure("Not a rejection message", field="type")
        try:
            reason = RejectionReason(data.get("reason"))
        except ValueError as e:
            raise ValidationFailure("Unknown rejection reason", field="reason", value=data.get("reason")) from e
        if not isinstance(data.get("offerId"), str) or not isinstance(data.get("timestamp"), int):
            raise ValidationFailure("Rejection is missing offerId or timestamp", field="offerId")
        return cls(
            offer_id=data["offerId"],
            offer_title=str(data.get("offerTitle", "")),
            reason=reason,
            timestamp=data["timestamp"],
        )


@dataclass(frozen=True)
class DealNotification:
    """What each whitelist member learns when an offer closes."""

    offer_id: str
    role: str
    message: str
    timestamp: int
    room_id: str | None = None
    partner_pubkey: str | None = None
    # Authenticated sender of the notification, never read from its content
    offer_pubkey: str | None = None

    @property
    def is_partner(self) -> bool:
        return self.role == "partner"

    def to_dict(self) -> dict:
        return {
            "type": NOTIFICATION_TYPE,
            "offerId": self.offer_id,
            "role": self.role,
            "roomId": self.room_id,
            "partnerPubkey": self.partner_pubkey,
            "message": self.message,
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "DealNotification":
        if not isinstance(data, dict) or data.get("type") != NOTIFICATION_TYPE:
            raise ValidationFailure("Not a deal notification", field="type")
        if data.get("role") not in ("partner", "observer") or not isinstance(data.get("offerId"), str):
            raise ValidationFailure("Malformed deal notification", field="role", value=data.get("role"))
        if not isinstance(data.get("timestamp"), int):
            raise ValidationFailure("Deal notification timestamp must be an integer", field="timestamp")
        return cls(
            offer_id=data["offerId"],
            role=data["role"],
            message=str(data.get("message", "")),
            timestamp=data["timestamp"],
            room_id=data.get("roomId"),
            partner_pubkey=data.get("partnerPubkey"),
        )


@dataclass
class SelectionError:
    pubkey: str
    stage: str
    error: str


@dataclass
class SelectionResult:
    selected_pubkey: str
    rejected_pubkeys: list[str] = field(default_factory=list)
    deal: Deal | None = None
    room_id: str | None = None
    notifications: list[DispatchOutcome] = field(default_factory=list)
    errors: list[SelectionError] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors


@dataclass
class RejectionSummary:
    sent: int = 0
    failed: int = 0
    errors: list[SelectionError] = field(default_factory=list)


def _unique_responders(signals: list[DecryptedSignal]) -> list[str]:
    seen = []
    for s in signals:
        if s.real_pubkey not in seen:
            seen.append(s.real_pubkey)
    return seen


class SelectionProtocol:
    """
    Drives an offer from open to closed.

    Assumes a single owner per offer. Two owners selecting concurrently
    both succeed and produce conflicting deals.

    Args:
        pool: RelayPool for every publish and query.
        group: Group the offer lives in.
        config: Padding, delay and tag settings.
    """

    def __init__(self, pool, group: Group, config: ShroudConfig | None = None):
        self.pool = pool
        self.group = group
        self.config = config or ShroudConfig()

    async def send_rejection(self, session: OfferSession, recipient_pubkey: str,
                             reason: RejectionReason = RejectionReason.SELECTED_OTHER):
        """Gift-wrap a rejection from the offer identity to one responder."""
        now = int(time.time())
        message = RejectionMessage(session.offer_id, session.title, RejectionReason(reason), now)
        expires = now + int(self.config.rejection_ttl_hours * 3600)
        return await send_direct_message(
            self.pool,
            session.identity,
            recipient_pubkey,
            pad_message(message.to_dict(), self.config.padding_target),
            kind=EventKind.REJECTION,
            extra_tags=[["e", session.offer_id], ["expiration", str(expires)]],
        )

    async def _retract(self, session: OfferSession, signal: DecryptedSignal, reason: str,
                       errors: list[SelectionError]) -> bool:
        signer = signal.retraction_key
        if signer is None:
            # Relays will not honour this; it only marks intent
            logger.warning("Signal %s has no usable retraction key; signing with the offer key",
                           short(signal.event_id))
            signer = session.identity
        try:
            await retract_interest(self.pool, signal.event, signer, reason)
            return True
        except ShroudError as e:
            errors.append(SelectionError(signal.real_pubkey, "retraction", e.message))
            return False

    async def _reject_responder(self, session: OfferSession, pubkey: str, signals: list[DecryptedSignal],
                                reason: RejectionReason, errors: list[SelectionError]) -> bool:
        sent = True
        try:
            await self.send_rejection(session, pubkey, reason)
        except ShroudError as e:
            errors.append(SelectionError(pubkey, "rejection", e.message))
            sent = False
        for signal in signals:
            if signal.real_pubkey == pubkey:
                await self._retract(session, signal, reason.value, errors)
        return sent

    async def select_partner(
        self,
        session: OfferSession,
        selected_pubkey: str,
        signals: list[DecryptedSignal],
        whitelist: WhitelistRecord | None = None,
    ) -> SelectionResult:
        """
        Pick one responder and close the offer for everyone else.

        Args:
            session: Open offer owned by the caller.
            selected_pubkey: Real key of the chosen responder.
            signals: Decrypted interest signals for the offer.
            whitelist: Current group whitelist; its members are notified.

        Returns:
            SelectionResult with the deal, the room id and any collected errors.

        Raises:
            InvalidTransition: the offer is not open.
            ValidationFailure: the chosen responder has no signal.
        """
        if not session.can_transition(OfferState.PARTNER_SELECTED):
            raise InvalidTransition(session.state.value, OfferState.PARTNER_SELECTED.value)
        selected = normalize_pubkey(selected_pubkey)
        chosen = [s for s in signals if s.real_pubkey == selected]
        if not chosen:
            raise ValidationFailure("Selected responder has not shown interest", field="selected_pubkey",
                                    value=selected)

        result = SelectionResult(selected_pubkey=selected)
        others = [pk for pk in _unique_responders(signals) if pk != selected]
        logger.info("Offer %s: selecting %s, rejecting %d", short(session.offer_id), short(selected), len(others))

        await asyncio.gather(*(
            self._reject_responder(session, pk, signals, RejectionReason.SELECTED_OTHER, result.errors)
            for pk in others
        ))
        result.rejected_pubkeys = others

        session.transition(OfferState.PARTNER_SELECTED)
        for signal in chosen:
            await self._retract(session, signal, "selected", result.errors)

        result.room_id = generate_room_id(session.secret, session.creator_pubkey, selected, session.offer_id)
        try:
            result.deal = await create_deal(
                self.pool, self.group, session.offer_id, selected, session.creator_pubkey,
                session.identity, self.config.group_tag,
            )
        except ShroudError as e:
            result.errors.append(SelectionError(selected, "deal", e.message))

        try:
            await set_private_chat_whitelist(
                self.pool, session.creator_pubkey, session.pubkey, selected, session.identity, result.room_id,
            )
        except ShroudError as e:
            result.errors.append(SelectionError(selected, "whitelist", e.message))

        result.notifications = await self._notify(session, selected, result.room_id, whitelist, result.errors)
        session.transition(OfferState.NOTIFIED)
        logger.info("Offer %s closed: %d errors", short(session.offer_id), len(result.errors))
        return result

    def _notifications(self, session: OfferSession, selected: str, room_id: str,
                       whitelist: WhitelistRecord | None) -> dict[str, DealNotification]:
        recipients = set(whitelist.members) if whitelist else set()
        recipients |= {selected, session.creator_pubkey}
        partners = {selected: session.creator_pubkey, session.creator_pubkey: selected}

        now = int(time.time())
        notes = {}
        for pubkey in sorted(recipients):
            if pubkey in partners:
                notes[pubkey] = DealNotification(
                    offer_id=session.offer_id,
                    role="partner",
                    message="Your deal is confirmed. Open the deal room to continue.",
                    timestamp=now,
                    room_id=room_id,
                    partner_pubkey=partners[pubkey],
                )
            else:
                notes[pubkey] = DealNotification(
                    offer_id=session.offer_id,
                    role="observer",
                    message="This offer has been closed.",
                    timestamp=now,
                )
        return notes

    async def _notify(self, session: OfferSession, selected: str, room_id: str,
                      whitelist: WhitelistRecord | None, errors: list[SelectionError]) -> list[DispatchOutcome]:
        notes = self._notifications(session, selected, room_id, whitelist)
        target = target_size_for([n.to_dict() for n in notes.values()], self.config.padding_target)

        dispatch = DelayedDispatch(self.config.notification_max_delay)
        for pubkey, note in notes.items():
            text = pad_message(note.to_dict(), target)
            dispatch.add(pubkey, lambda pubkey=pubkey, text=text: send_direct_message(
                self.pool, session.identity, pubkey, text,
            ))

        outcomes = await dispatch.flush()
        for outcome in outcomes:
            if not outcome.ok:
                errors.append(SelectionError(outcome.label, "notification", outcome.error))
        return outcomes

    async def reject_all_interests(
        self,
        session: OfferSession,
        signals: list[DecryptedSignal],
        reason: RejectionReason = RejectionReason.OFFER_CLOSED,
    ) -> RejectionSummary:
        """
        Reject every responder and retract every signal; the offer is cancelled.

        Raises:
            InvalidTransition: the offer is already completed or cancelled.
        """
        if not session.can_transition(OfferState.CANCELLED):
            raise InvalidTransition(session.state.value, OfferState.CANCELLED.value)

        summary = RejectionSummary()
        outcomes = await asyncio.gather(*(
            self._reject_responder(session, pk, signals, RejectionReason(reason), summary.errors)
            for pk in _unique_responders(signals)
        ))
        summary.sent = sum(1 for ok in outcomes if ok)
        summary.failed = len(outcomes) - summary.sent
        session.transition(OfferState.CANCELLED)
        logger.info("Offer %s cancelled: %d rejections sent, %d failed",
                    short(session.offer_id), summary.sent, summary.failed)
        return summary

    async def expire_offer(self, session: OfferSession,
                           signals: list[DecryptedSignal] | None = None) -> RejectionSummary:
        """
        Clean up an offer that ran out of time.

        Rejects every responder, retracts their signals, then deletes the offer.
        """
        if signals is None:
            signals = await list_interests(self.pool, session.offer_id, session.identity, self.config.interest_tag)
        summary = await self.reject_all_interests(session, signals, RejectionReason.OFFER_CLOSED)

        event = session.event
        if event is None:
            offer = await fetch_offer(self.pool, self.group, session.offer_id)
            event = offer.event if offer else None
        if event is not None:
            try:
                await delete_offer(self.pool, event, session.identity, "Offer expired")
            except ShroudError as e:
                summary.errors.append(SelectionError(session.pubkey, "deletion", e.message))
        return summary


def _parse_padded(text: str):
    try:
        return remove_padding(text)
    except ValueError:
        return None


async def load_rejections(pool, identity: Identity, since: int | None = None) -> list[RejectionMessage]:
    """Rejections addressed to ``identity`` that have not expired, newest first."""
    now = int(time.time())
    rejections = []
    for message in await fetch_direct_messages(pool, identity, since=since, kind=EventKind.REJECTION):
        expires = message.tag("expiration")
        if expires is not None and expires.isdigit() and int(expires) <= now:
            continue
        try:
            rejections.append(RejectionMessage.from_dict(_parse_padded(message.content)))
        except ValidationFailure as e:
            logger.debug("Skipping malformed rejection %s: %s", short(message.wrap_id), e.message)
    return rejections


async def has_received_rejection(pool, identity: Identity, offer_id: str) -> bool:
    return any(r.offer_id == offer_id for r in await load_rejections(pool, identity))


async def load_notifications(pool, identity: Identity, since: int | None = None) -> list[DealNotification]:
    """Deal notifications addressed to ``identity``, newest first."""
    notes = []
    for message in await fetch_direct_messages(pool, identity, since=since, kind=EventKind.DIRECT_MESSAGE):
        data = _parse_padded(message.content)
        if not isinstance(data, dict) or data.get("type") != NOTIFICATION_TYPE:
            continue
        try:
            notes.append(replace(DealNotification.from_dict(data), offer_pubkey=message.sender))
        except ValidationFailure as e:
            logger.debug("Skipping malformed notification %s: %s", short(message.wrap_id), e.message)
    return notes
