"""
In-memory relay connector.
A relay that lives inside the process. For tests and local demos only.

It follows the parts of the relay protocol the engine depends on:
  - signatures are checked on publish
  - addressable kinds keep only the newest event per (kind, author, d-tag)
  - deletion requests remove targets only when the same author signed both
  - queries return newest first and honour ``limit``

Faults can be injected to exercise partial-failure paths.
"""

import asyncio
import logging

from shroud.events import Event, EventKind, EventVerifier, Filter, SchnorrVerifier, is_addressable
from shroud.logs import short
from shroud.relays.base import PublishAck, RelayConnector

logger = logging.getLogger(__name__)


class MemoryRelay(RelayConnector):
    """
    Process-local relay.

    Args:
        url: Name used in reports; never dialled.
        verifier: Signature check applied on publish.
        latency: Seconds to sleep before answering (for timeout tests).
    """

    def __init__(self, url: str = "memory://relay", verifier: EventVerifier | None = None, latency: float = 0.0):
        self.url = url
        self.verifier = verifier or SchnorrVerifier()
        self.latency = latency
        self.fail_publish = False
        self.fail_query = False
        self._events: dict[str, Event] = {}
        self._deleted: set[str] = set()
        self.published: list[Event] = []

    async def _wait(self):
        if self.latency:
            await asyncio.sleep(self.latency)

    async def publish(self, event: Event) -> PublishAck:
        await self._wait()
        if self.fail_publish:
            raise ConnectionError(f"{self.url} unreachable")
        self.published.append(event)

        if not self.verifier.verify(event):
            return PublishAck(self.url, False, "invalid: bad signature")
        if event.id in self._deleted:
            return PublishAck(self.url, False, "blocked: event was deleted")
        if event.id in self._events:
            return PublishAck(self.url, True, "duplicate: already have this event")

        if is_addressable(event.kind):
            for stored in list(self._events.values()):
                if stored.kind == event.kind and stored.coordinate == event.coordinate:
                    if stored.created_at > event.created_at:
                        return PublishAck(self.url, False, "duplicate: have a newer version")
                    del self._events[stored.id]

        if event.kind == EventKind.DELETION:
            self._apply_deletion(event)

        self._events[event.id] = event
        logger.debug("%s stored kind %d %s", self.url, event.kind, short(event.id))
        return PublishAck(self.url, True)

    def _apply_deletion(self, deletion: Event):
        for target_id in deletion.tag_values("e"):
            target = self._events.get(target_id)
            if target is None or target.pubkey != deletion.pubkey:
                continue
            del self._events[target_id]
            self._deleted.add(target_id)

        for coordinate in deletion.tag_values("a"):
            parts = coordinate.split(":", 2)
            if len(parts) != 3 or parts[1] != deletion.pubkey:
                continue
            for stored in list(self._events.values()):
                if stored.coordinate == coordinate and stored.created_at <= deletion.created_at:
                    del self._events[stored.id]
                    self._deleted.add(stored.id)

    async def query(self, filter: Filter) -> list[Event]:
        await self._wait()
        if self.fail_query:
            raise ConnectionError(f"{self.url} unreachable")
        matched = [e for e in self._events.values() if filter.matches(e)]
        matched.sort(key=lambda e: e.created_at, reverse=True)
        if filter.limit is not None:
            matched = matched[:filter.limit]
        return matched

    def stored(self, kind: int | None = None) -> list[Event]:
        """Events currently held, optionally of one kind."""
        return [e for e in self._events.values() if kind is None or e.kind == kind]

    def get_info(self) -> dict:
        return {
            "url": self.url,
            "transport": "memory",
            "events": len(self._events),
            "deleted": len(self._deleted),
        }
