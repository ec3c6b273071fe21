"""
Shroud — Basic Usage Example

Walks one anonymous trade through an in-process relay:
a seller posts an offer, two buyers signal interest, the seller picks one.
Swap the MemoryRelay for real relays (the default config) to go live.
"""

import asyncio
import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).parent.parent))

from shroud import MemoryRelay, RelayPool, Shroud, ShroudConfig, configure_logging, generate_random


GROUP_SECRET = "example-trading-circle"


async def main():
    configure_logging("WARNING")

    print("=" * 50)
    print("  Shroud — Anonymous Offers over Public Relays")
    print("=" * 50)

    # One relay shared by everyone; each client still owns its pool
    relay = MemoryRelay()
    config = ShroudConfig(notification_max_delay=2)

    def client():
        return Shroud(generate_random(), config, RelayPool([relay]))

    seller, alice, bob = client(), client(), client()
    for c in (seller, alice, bob):
        c.join_group(GROUP_SECRET)

    # The seller admits everyone to the group whitelist
    await seller.save_whitelist([c.identity.public_key for c in (seller, alice, bob)])

    # Offer: signed by a key derived from its own secret, not the seller's
    session = await seller.create_offer("0.01 BTC for cash, meet in town", title="0.01 BTC")
    print(f"\nOffer {session.offer_id[:16]}... published by {session.pubkey[:16]}...")
    print(f"Seller's real key {seller.identity.public_key[:16]}... never signed it")

    # Buyers answer from single-use keys
    offer = (await alice.fetch_offers())[0]
    await alice.submit_interest(offer, message="Can do tomorrow")
    await bob.submit_interest(offer, message="Today works for me")

    signals = await seller.list_interests(session)
    print(f"\n{len(signals)} interest signals:")
    for s in signals:
        print(f"  via {s.ephemeral_pubkey[:16]}... from {s.real_pubkey[:16]}...: {s.signal.message}")

    # Pick alice; bob is rejected and everyone is notified with random delays
    print("\nSelecting a partner (notifications trickle out over a few seconds)...")
    result = await seller.select_partner(session, alice.identity.public_key, signals)
    print(f"  Deal room: {result.room_id}")
    print(f"  Rejected:  {[pk[:16] for pk in result.rejected_pubkeys]}")
    print(f"  Errors:    {len(result.errors)}")

    for name, c in (("alice", alice), ("bob", bob)):
        notes = await c.load_notifications()
        rejections = await c.load_rejections()
        role = notes[0].role if notes else "none"
        print(f"  {name}: notification role={role}, rejections={len(rejections)}")

    # What an observer of the relay sees
    signers = {e.pubkey for e in relay.stored()}
    print(f"\nDistinct signing keys on the relay: {len(signers)}")
    print(f"Alice's key among them: {alice.identity.public_key in signers}")

    for c in (seller, alice, bob):
        await c.close()


if __name__ == "__main__":
    asyncio.run(main())
