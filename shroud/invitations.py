"""
Chat Invitations
An offer owner asks one responder to talk before picking a partner.

Both directions travel as gift-wrapped messages padded like deal
notifications, so on the wire they cannot be told apart from them:

  offer key → responder : {"type": "chat_invitation", invitationId, offerId,
                            offerTitle, message, timestamp}
  responder → offer key : {"type": "chat_acceptance", invitationId, offerId,
                            timestamp}

Nothing public ties the offer to the responder. The invitation id is
random; the acceptance names it so the owner can match the two.
"""

import logging
import secrets
import time
from dataclasses import dataclass

from shroud.errors import ValidationFailure
from shroud.events import EventKind
from shroud.giftwrap import fetch_direct_messages, send_direct_message
from shroud.keys import Identity, normalize_pubkey
from shroud.logs import short
from shroud.offers import OfferSession
from shroud.padding import pad_message, remove_padding

logger = logging.getLogger(__name__)

INVITATION_TYPE = "chat_invitation"
ACCEPTANCE_TYPE = "chat_acceptance"

DEFAULT_MESSAGE = "The offer owner would like to chat with you."


@dataclass(frozen=True)
class ChatInvitation:
    invitation_id: str
    offer_id: str
    offer_title: str
    message: str
    timestamp: int
    offer_pubkey: str = ""  # authenticated sender

    def to_dict(self) -> dict:
        return {
            "type": INVITATION_TYPE,
            "invitationId": self.invitation_id,
            "offerId": self.offer_id,
            "offerTitle": self.offer_title,
            "message": self.message,
            "timestamp": self.timestamp,
        }


@dataclass(frozen=True)
class ChatAcceptance:
    invitation_id: str
    offer_id: str
    timestamp: int
    responder_pubkey: str = ""  # authenticated sender

    def to_dict(self) -> dict:
        return {
            "type": ACCEPTANCE_TYPE,
            "invitationId": self.invitation_id,
            "offerId": self.offer_id,
            "timestamp": self.timestamp,
        }


def _read(content: str, expected_type: str) -> dict | None:
    try:
        data = remove_padding(content)
    except ValueError:
        return None
    if not isinstance(data, dict) or data.get("type") != expected_type:
        return None
    if not isinstance(data.get("invitationId"), str) or not isinstance(data.get("offerId"), str):
        return None
    if not isinstance(data.get("timestamp"), int):
        return None
    return data


async def create_chat_invitation(
    pool,
    session: OfferSession,
    invited_pubkey: str,
    message: str = DEFAULT_MESSAGE,
    padding_target: int = 500,
) -> ChatInvitation:
    """Invite a responder to chat, sent from the offer's key."""
    invitation = ChatInvitation(
        invitation_id=secrets.token_hex(16),
        offer_id=session.offer_id,
        offer_title=session.title,
        message=message,
        timestamp=int(time.time()),
        offer_pubkey=session.pubkey,
    )
    await send_direct_message(
        pool, session.identity, normalize_pubkey(invited_pubkey),
        pad_message(invitation.to_dict(), padding_target),
    )
    logger.info("Chat invitation %s sent for offer %s", short(invitation.invitation_id), short(session.offer_id))
    return invitation


async def fetch_chat_invitations(pool, identity: Identity, since: int | None = None) -> list[ChatInvitation]:
    """Invitations addressed to ``identity``, newest first."""
    invitations = []
    for message in await fetch_direct_messages(pool, identity, since=since, kind=EventKind.DIRECT_MESSAGE):
        data = _read(message.content, INVITATION_TYPE)
        if data is None:
            continue
        invitations.append(ChatInvitation(
            invitation_id=data["invitationId"],
            offer_id=data["offerId"],
            offer_title=str(data.get("offerTitle", "")),
            message=str(data.get("message", "")),
            timestamp=data["timestamp"],
            offer_pubkey=message.sender,
        ))
    return invitations


async def accept_chat_invitation(
    pool,
    invitation: ChatInvitation,
    responder: Identity,
    padding_target: int = 500,
) -> ChatAcceptance:
    """Tell the offer's key that ``responder`` accepts the invitation."""
    if not invitation.offer_pubkey:
        raise ValidationFailure("Invitation has no sender to answer", field="offer_pubkey")
    acceptance = ChatAcceptance(
        invitation_id=invitation.invitation_id,
        offer_id=invitation.offer_id,
        timestamp=int(time.time()),
        responder_pubkey=responder.public_key,
    )
    await send_direct_message(
        pool, responder, invitation.offer_pubkey, pad_message(acceptance.to_dict(), padding_target),
    )
    logger.info("Chat invitation %s accepted", short(invitation.invitation_id))
    return acceptance


async def load_chat_acceptances(pool, offer_identity: Identity, since: int | None = None) -> list[ChatAcceptance]:
    """Acceptances addressed to an offer's key, newest first."""
    acceptances = []
    for message in await fetch_direct_messages(pool, offer_identity, since=since, kind=EventKind.DIRECT_MESSAGE):
        data = _read(message.content, ACCEPTANCE_TYPE)
        if data is None:
            continue
        acceptances.append(ChatAcceptance(
            invitation_id=data["invitationId"],
            offer_id=data["offerId"],
            timestamp=data["timestamp"],
            responder_pubkey=message.sender,
        ))
    return acceptances


async def is_invitation_accepted(pool, offer_identity: Identity, invitation: ChatInvitation,
                                 invited_pubkey: str) -> bool:
    """True once ``invited_pubkey`` itself has accepted ``invitation``."""
    invited = normalize_pubkey(invited_pubkey)
    return any(
        a.invitation_id == invitation.invitation_id and a.responder_pubkey == invited
        for a in await load_chat_acceptances(pool, offer_identity)
    )
