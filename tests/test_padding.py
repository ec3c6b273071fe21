"""
Shroud — Padding and Dispatch Tests
"""

import asyncio
import json
import sys
from pathlib import Path

# Add parent to path for local development
sys.path.insert(0, str(Path(__file__).parent.parent))

from shroud.dispatch import DelayedDispatch
from shroud.padding import (
    BUCKET_SIZES,
    PADDING_FIELD,
    pad_message,
    random_delay,
    remove_padding,
    target_size_for,
)


PARTNER = {
    "type": "deal_finalized",
    "offerId": "a" * 64,
    "role": "partner",
    "roomId": "b" * 32,
    "partnerPubkey": "c" * 64,
    "timestamp": 1700000000,
}
OBSERVER = {
    "type": "deal_finalized",
    "offerId": "a" * 64,
    "role": "observer",
    "timestamp": 1700000000,
}


def test_partner_and_observer_pad_to_same_size():
    """The two notification shapes are indistinguishable by length."""
    print("Testing equal padded lengths...", end=" ")
    partner = pad_message(PARTNER, 500)
    observer = pad_message(OBSERVER, 500)
    assert len(partner) == len(observer) == 500
    assert len(partner.encode("utf-8")) == 500
    print("PASS")


def test_remove_padding_restores_message():
    print("Testing padding removal...", end=" ")
    restored = remove_padding(pad_message(OBSERVER, 500))
    assert restored == OBSERVER
    assert PADDING_FIELD not in restored
    print("PASS")


def test_oversized_message_gets_empty_filler():
    big = {"note": "x" * 600}
    padded = pad_message(big, 500)
    assert len(padded) > 500
    assert json.loads(padded)[PADDING_FIELD] == ""
    assert remove_padding(padded) == big


def test_target_size_for_anonymity_set():
    print("Testing padding target selection...", end=" ")
    assert target_size_for([PARTNER, OBSERVER], 500) == 500
    assert target_size_for([], 500) == 500

    big = {"note": "x" * 700}
    target = target_size_for([PARTNER, big], 500)
    assert target in BUCKET_SIZES and target >= len(pad_message(big, 0))
    assert len(pad_message(PARTNER, target)) == len(pad_message(big, target)) == target
    print("PASS")


def test_random_delay_bounds():
    """A thousand draws land in [0, 30] seconds, spread evenly."""
    print("Testing random delay bounds...", end=" ")
    draws = [random_delay(30) for _ in range(1000)]
    assert all(0 <= d <= 30 for d in draws)
    assert len(set(draws)) > 1

    # Uniform: mean near 15, each third of the range drawn about a third of the time
    assert abs(sum(draws) / len(draws) - 15) < 1.5
    thirds = [sum(1 for d in draws if low <= d < low + 10) for low in (0, 10, 20)]
    assert all(count > 250 for count in thirds), thirds
    assert random_delay(0) == 0.0
    print("PASS")


def test_dispatch_runs_every_item():
    print("Testing delayed dispatch...", end=" ")
    sent = []

    async def scenario():
        dispatch = DelayedDispatch(max_delay=0)
        for label in ["one", "two", "three"]:
            async def send(label=label):
                sent.append(label)
            dispatch.add(label, send)
        assert dispatch.size == 3
        outcomes = await dispatch.flush()
        assert dispatch.size == 0
        return outcomes

    outcomes = asyncio.run(scenario())
    assert sorted(sent) == ["one", "three", "two"]
    assert all(o.ok for o in outcomes)
    print("PASS")


def test_dispatch_isolates_failures():
    """One failing send does not stop the others."""
    sent = []

    async def scenario():
        dispatch = DelayedDispatch(max_delay=0.01)

        async def good():
            sent.append("good")

        async def bad():
            raise ConnectionError("relay down")

        dispatch.add("good", good)
        dispatch.add("bad", bad)
        return await dispatch.flush()

    outcomes = {o.label: o for o in asyncio.run(scenario())}
    assert sent == ["good"]
    assert outcomes["good"].ok
    assert outcomes["bad"].error == "relay down"
    assert 0 <= outcomes["bad"].delay <= 0.01


def main():
    """Run all tests."""
    print("Shroud Padding Tests")
    print("=" * 40)

    tests = [
        test_partner_and_observer_pad_to_same_size,
        test_remove_padding_restores_message,
        test_oversized_message_gets_empty_filler,
        test_target_size_for_anonymity_set,
        test_random_delay_bounds,
        test_dispatch_runs_every_item,
        test_dispatch_isolates_failures,
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
