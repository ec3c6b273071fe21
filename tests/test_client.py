"""
Shroud — Client Tests
Two clients trading through one in-process relay.
"""

import asyncio
import json
import sys
from dataclasses import replace
from pathlib import Path

# Add parent to path for local development
sys.path.insert(0, str(Path(__file__).parent.parent))

import pytest

from shroud import Shroud, ShroudConfig
from shroud.config import USER_CONFIG_D_TAG
from shroud.deals import DealStatus
from shroud.errors import DecryptionFailure, ValidationFailure
from shroud.events import EventKind, sign_event
from shroud.giftwrap import wrap
from shroud.keys import generate_random
from shroud.offers import has_active_offer
from shroud.relays import MemoryRelay, RelayPool
from shroud.session import SCOPE_INTEREST, SCOPE_OFFER
from shroud.user_config import has_user_config, load_user_config

GROUP_SECRET = "trading-circle-01"


def _config():
    return ShroudConfig(notification_max_delay=0, rate_limit_requests=0)


def _client(relay, identity=None, store=None):
    return Shroud(identity or generate_random(), _config(), RelayPool([relay]), store)


def test_group_required():
    print("Testing group requirement...", end=" ")
    client = _client(MemoryRelay())
    with pytest.raises(ValidationFailure):
        asyncio.run(client.fetch_offers())
    with pytest.raises(ValidationFailure):
        client.join_group("short")
    group = client.join_group(GROUP_SECRET)
    assert client.stats()["channel_id"] == group.channel_id
    print("PASS")


def test_group_chat_with_whitelist():
    print("Testing group chat...", end=" ")
    relay = MemoryRelay()
    alice, bob, eve = _client(relay), _client(relay), _client(relay)
    for client in (alice, bob):
        client.join_group(GROUP_SECRET)
    eve.join_group("a-different-group-secret")

    async def scenario():
        await alice.send_group_message("gm")
        await bob.send_group_message("hello from bob")
        open_feed = await bob.fetch_group_messages()
        whitelist = await alice.save_whitelist([alice.identity.npub])
        gated = await alice.fetch_group_messages(whitelist=whitelist)
        eves_feed = await eve.fetch_group_messages()
        return open_feed, gated, eves_feed

    open_feed, gated, eves_feed = asyncio.run(scenario())
    assert sorted(m.content for m in open_feed.messages) == ["gm", "hello from bob"]
    assert [m.content for m in gated.messages] == ["gm"]
    assert gated.blocked == 1
    assert eves_feed.messages == []
    print("PASS")


def test_interest_submit_and_retract():
    print("Testing interest via client...", end=" ")
    relay = MemoryRelay()
    seller, buyer = _client(relay), _client(relay)
    for client in (seller, buyer):
        client.join_group(GROUP_SECRET)

    async def scenario():
        session = await seller.create_offer("Selling 0.1 BTC", title="0.1 BTC")
        offers = await buyer.fetch_offers()
        submitted = await buyer.submit_interest(offers[0], message="still available?", display_name="b")
        shown = buyer.has_shown_interest(session.offer_id)
        signals = await seller.list_interests(session)
        counted = await seller.count_interests(session.offer_id)
        retracted = await buyer.retract_interest(session.offer_id)
        after = await seller.list_interests(session)
        again = await buyer.retract_interest(session.offer_id)
        return session, offers, submitted, shown, signals, counted, retracted, after, again

    session, offers, submitted, shown, signals, counted, retracted, after, again = asyncio.run(scenario())
    assert [o.offer_id for o in offers] == [session.offer_id]
    assert offers[0].title == "0.1 BTC" and offers[0].content == "Selling 0.1 BTC"
    assert shown
    assert len(signals) == 1 and counted == 1
    assert signals[0].real_pubkey == buyer.identity.public_key
    assert signals[0].signal.message == "still available?"
    assert signals[0].ephemeral_pubkey == submitted.ephemeral.public_key
    assert retracted and not again
    assert after == []
    assert not buyer.has_shown_interest(session.offer_id)
    print("PASS")


def test_full_trade_through_clients():
    print("Testing full trade...", end=" ")
    relay = MemoryRelay()
    seller, buyer, other = _client(relay), _client(relay), _client(relay)
    for client in (seller, buyer, other):
        client.join_group(GROUP_SECRET)

    async def scenario():
        await seller.save_whitelist([c.identity.public_key for c in (seller, buyer, other)])
        session = await seller.create_offer("Buying 0.05 BTC", title="0.05 BTC")
        offer = (await buyer.fetch_offers())[0]
        await buyer.submit_interest(offer)
        await other.submit_interest(offer)

        result = await seller.select_partner(session, buyer.identity.public_key)
        buyer_notes = await buyer.load_notifications()
        other_notes = await other.load_notifications()
        other_rejections = await other.load_rejections()
        deals = await buyer.load_my_deals()
        done = await buyer.update_deal_status(session.offer_id, DealStatus.COMPLETED)
        seller_deals = await seller.load_my_deals()
        return session, result, buyer_notes, other_notes, other_rejections, deals, done, seller_deals

    session, result, buyer_notes, other_notes, other_rejections, deals, done, seller_deals = asyncio.run(scenario())
    assert result.ok, result.errors
    assert result.rejected_pubkeys == [other.identity.public_key]
    assert buyer_notes[0].room_id == result.room_id
    assert buyer_notes[0].partner_pubkey == seller.identity.public_key
    assert other_notes[0].role == "observer"
    assert len(other_rejections) == 1
    assert [d.offer_id for d in deals] == [session.offer_id]
    assert done.status == DealStatus.COMPLETED
    assert seller_deals[0].status == DealStatus.COMPLETED
    assert seller.stats()["selections_made"] == 1
    print("PASS")


def test_resume_offer_from_store():
    relay = MemoryRelay()
    identity = generate_random()
    first = _client(relay, identity)
    first.join_group(GROUP_SECRET)

    session = asyncio.run(first.create_offer("Selling", title="t"))
    assert first.store.get(SCOPE_OFFER, session.offer_id) == session.secret

    second = _client(relay, identity, store=first.store)
    second.join_group(GROUP_SECRET)
    resumed = second.resume_offer(session.offer_id, title="t")
    assert resumed.pubkey == session.pubkey
    with pytest.raises(ValidationFailure):
        second.resume_offer("0" * 64)


def test_direct_messages_and_context_manager():
    relay = MemoryRelay()
    alice_key, bob_key = generate_random(), generate_random()

    async def scenario():
        async with _client(relay, alice_key) as alice, _client(relay, bob_key) as bob:
            await bob.send_direct_message(alice_key.npub, "psst")
            inbox = await alice.fetch_direct_messages()
            return inbox, bob.stats()

    inbox, bob_stats = asyncio.run(scenario())
    assert [(m.content, m.sender) for m in inbox] == [("psst", bob_key.public_key)]
    assert bob_stats["messages_sent"] == 1
    assert all(e.pubkey != bob_key.public_key for e in relay.stored())


def test_from_key():
    identity = generate_random()
    client = Shroud.from_key(identity.nsec, config=_config(), pool=RelayPool([MemoryRelay()]))
    assert client.identity.public_key == identity.public_key

def test_every_signal_for_an_offer_is_retracted():
    print("Testing repeated interest retraction...", end=" ")
    relay = MemoryRelay()
    seller, buyer = _client(relay), _client(relay)
    for client in (seller, buyer):
        client.join_group(GROUP_SECRET)

    async def scenario():
        session = await seller.create_offer("Selling 0.2 BTC", title="0.2 BTC")
        offer = (await buyer.fetch_offers())[0]
        first = await buyer.submit_interest(offer, message="first")
        second = await buyer.submit_interest(offer, message="second")
        before = await seller.count_interests(session.offer_id)
        retracted = await buyer.retract_interest(session.offer_id)
        after = await seller.list_interests(session)
        again = await buyer.retract_interest(session.offer_id)
        return first, second, before, retracted, after, again

    first, second, before, retracted, after, again = asyncio.run(scenario())
    assert first.store_name != second.store_name
    assert before == 2
    assert retracted and not again
    assert after == []
    assert relay.stored(EventKind.INTEREST) == []
    assert {d.pubkey for d in relay.stored(EventKind.DELETION)} == {first.ephemeral.public_key,
                                                                    second.ephemeral.public_key}
    assert buyer.store.keys(SCOPE_INTEREST) == []
    print("PASS")


def test_group_admin_comes_from_group_config():
    """A member who is not the admin still notifies the admin's whitelist."""
    print("Testing group admin discovery...", end=" ")
    relay = MemoryRelay()
    admin, seller, buyer, observer = _client(relay), _client(relay), _client(relay), _client(relay)
    members = [c.identity.public_key for c in (seller, buyer, observer)]

    async def scenario():
        config = await admin.create_group(GROUP_SECRET, members=members)
        for client in (seller, buyer, observer):
            client.join_group(GROUP_SECRET)
        found = await seller.load_group_admin()

        session = await seller.create_offer("Selling 0.3 BTC", title="0.3 BTC")
        await buyer.submit_interest((await buyer.fetch_offers())[0])
        result = await seller.select_partner(session, buyer.identity.public_key)
        return config, found, result, await observer.load_notifications(), await admin.load_notifications()

    config, found, result, observer_notes, admin_notes = asyncio.run(scenario())
    assert config.admin_pubkey == admin.identity.public_key
    assert config.secret_hash == admin.group.channel_id
    assert found == admin.identity.public_key
    assert seller.stats()["group_admin"] == admin.identity.public_key
    assert result.ok, result.errors
    assert len(result.notifications) == 4
    assert [n.role for n in observer_notes] == ["observer"]
    assert [n.role for n in admin_notes] == ["observer"]
    print("PASS")


def test_contested_group_config_needs_known_admin():
    relay = MemoryRelay()
    admin, mallory = _client(relay), _client(relay)

    async def scenario():
        await admin.create_group(GROUP_SECRET)
        await mallory.create_group(GROUP_SECRET)

        newcomer = _client(relay)
        newcomer.join_group(GROUP_SECRET)
        unknown = await newcomer.load_group_admin()

        invited = _client(relay)
        invited.join_group(GROUP_SECRET, admin_pubkey=admin.identity.npub)
        named = await invited.load_group_admin()
        config = await invited.load_group_config()
        whitelist = await invited.load_whitelist()
        return unknown, named, config, whitelist

    unknown, named, config, whitelist = asyncio.run(scenario())
    assert unknown is None
    assert named == admin.identity.public_key
    assert config.admin_pubkey == admin.identity.public_key
    assert whitelist.members == {admin.identity.public_key}


def test_user_config_round_trip():
    print("Testing user config...", end=" ")
    relay = MemoryRelay()
    identity = generate_random()
    client, stranger = _client(relay, identity), _client(relay)

    async def scenario():
        with pytest.raises(ValidationFailure):
            await client.save_user_config()
        missing = await client.has_user_config()
        await client.create_group(GROUP_SECRET)
        await client.save_user_config(invite_link="first")
        saved = await client.save_user_config(invite_link="second")
        loaded = await client.load_user_config()
        strangers = await stranger.has_user_config()

        restored = _client(relay, identity)
        group = await restored.restore_group()

        deleted = await client.delete_user_config()
        gone = await client.has_user_config()
        return missing, saved, loaded, strangers, restored, group, deleted, gone

    missing, saved, loaded, strangers, restored, group, deleted, gone = asyncio.run(scenario())
    assert not missing
    assert loaded == saved
    assert loaded.invite_link == "second"
    assert loaded.is_group_admin and loaded.admin_pubkey == identity.public_key
    assert loaded.group_secret == GROUP_SECRET
    assert not strangers
    assert group.channel_id == client.group.channel_id
    assert restored.group_admin == identity.public_key
    assert deleted and not gone
    for event in relay.stored(EventKind.APP_DATA):
        assert GROUP_SECRET not in event.content
    print("PASS")


def test_user_config_sealed_to_another_key():
    relay = MemoryRelay()
    pool = RelayPool([relay])
    owner, other = generate_random(), generate_random()
    misaddressed = wrap(json.dumps({"is_group_admin": False}), other.public_key, owner)
    event = sign_event(owner, EventKind.APP_DATA, misaddressed.to_json(),
                       [["d", USER_CONFIG_D_TAG], ["encrypted", "giftwrap"]])

    async def scenario():
        await pool.publish(event)
        with pytest.raises(DecryptionFailure):
            await load_user_config(pool, owner)
        return await has_user_config(pool, owner)

    assert asyncio.run(scenario()) is False


def test_chat_invitation_flow():
    print("Testing chat invitations...", end=" ")
    relay = MemoryRelay()
    seller, buyer, other = _client(relay), _client(relay), _client(relay)
    for client in (seller, buyer, other):
        client.join_group(GROUP_SECRET)

    async def scenario():
        session = await seller.create_offer("Selling 0.4 BTC", title="0.4 BTC")
        await buyer.submit_interest((await buyer.fetch_offers())[0])
        invitation = await seller.invite_to_chat(session, buyer.identity.public_key, "Shall we talk?")
        received = await buyer.fetch_chat_invitations()
        pending = await seller.is_invitation_accepted(session, invitation, buyer.identity.public_key)
        await buyer.accept_chat_invitation(received[0])
        accepted = await seller.is_invitation_accepted(session, invitation, buyer.identity.public_key)
        by_other = await seller.is_invitation_accepted(session, invitation, other.identity.public_key)
        return session, invitation, received, pending, accepted, by_other, \
            await other.fetch_chat_invitations(), await buyer.load_notifications()

    session, invitation, received, pending, accepted, by_other, others, notes = asyncio.run(scenario())
    assert [i.invitation_id for i in received] == [invitation.invitation_id]
    assert received[0].offer_pubkey == session.pubkey
    assert received[0].offer_id == session.offer_id
    assert received[0].message == "Shall we talk?"
    assert received[0].offer_title == "0.4 BTC"
    assert not pending and accepted and not by_other
    assert others == [] and notes == []
    assert all(e.pubkey != seller.identity.public_key for e in relay.stored())

    unsigned = replace(invitation, offer_pubkey="")
    with pytest.raises(ValidationFailure):
        asyncio.run(buyer.accept_chat_invitation(unsigned))
    print("PASS")


def test_has_active_offer():
    relay = MemoryRelay()
    seller, buyer = _client(relay), _client(relay)
    for client in (seller, buyer):
        client.join_group(GROUP_SECRET)

    async def scenario():
        before = await seller.has_active_offer()
        await seller.create_offer("stale", ttl_hours=0)
        stale_only = await seller.has_active_offer()
        await seller.create_offer("fresh")
        return before, stale_only, await seller.has_active_offer(), await buyer.has_active_offer(), \
            await has_active_offer(seller.pool, seller.group)

    before, stale_only, live, buyers, anyone = asyncio.run(scenario())
    assert not before and not stale_only
    assert live and anyone
    assert not buyers



def main():
    """Run all tests."""
    print("Shroud Client Tests")
    print("=" * 40)

    tests = [
        test_group_required,
        test_group_chat_with_whitelist,
        test_interest_submit_and_retract,
        test_full_trade_through_clients,
        test_resume_offer_from_store,
        test_direct_messages_and_context_manager,
        test_from_key,
        test_every_signal_for_an_offer_is_retracted,
        test_group_admin_comes_from_group_config,
        test_contested_group_config_needs_known_admin,
        test_user_config_round_trip,
        test_user_config_sealed_to_another_key,
        test_chat_invitation_flow,
        test_has_active_offer,
    ]

    passed = 0
    failed = 0
    for test in tests:
        try:
            test()
            passed += 1
        except Exception as e:
            print(f"FAIL: {test.__name__}: {e}")
            failed += 1

    print()
    print(f"Results: {passed} passed, {failed} failed")
    return failed == 0


if __name__ == "__main__":
    success = main()
    sys.exit(0 if success else 1)
