"""
Relay Pool
Fan every publish and query out to a set of relays.

  publish — send to every relay concurrently; succeed if at least one
            relay accepts, raise NetworkFailure only if none does.
  query   — ask every relay concurrently; merge, drop events whose
            signature does not verify, deduplicate by id, and keep only
            the newest version of each addressable record.

Each relay call is bounded by ``timeout``. A relay that times out or
errors is recorded as a failure for that call and otherwise ignored.

A pool belongs to one client. There is no shared module-level pool.
"""

import asyncio
import logging
from dataclasses import dataclass, field

from shroud.errors import NetworkFailure, ValidationFailure
from shroud.events import Event, EventVerifier, Filter, SchnorrVerifier, newest_per_address
from shroud.logs import short
from shroud.relays.base import RelayConnector
from shroud.validation import RateLimiter

logger = logging.getLogger(__name__)


@dataclass
class PublishResult:
    """Which relays took an event and which did not."""

    event: Event
    accepted: list[str] = field(default_factory=list)
    failures: dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return bool(self.accepted)


class RelayPool:
    """
    A client's view of its relays.

    Args:
        connectors: Relay connectors to fan out to.
        timeout: Per-relay seconds for one publish or query.
        verifier: Signature check applied to every queried event.
        rate_limiter: Optional per-author publish limit.
    """

    def __init__(
        self,
        connectors: list[RelayConnector],
        timeout: float = 5.0,
        verifier: EventVerifier | None = None,
        rate_limiter: RateLimiter | None = None,
    ):
        if not connectors:
            raise ValidationFailure("A relay pool needs at least one relay", field="relays")
        self.connectors = list(connectors)
        self.timeout = timeout
        self.verifier = verifier or SchnorrVerifier()
        self.rate_limiter = rate_limiter

    @property
    def urls(self) -> list[str]:
        return [c.url for c in self.connectors]

    async def _publish_one(self, connector: RelayConnector, event: Event):
        return await asyncio.wait_for(connector.publish(event), timeout=self.timeout)

    async def publish(self, event: Event) -> PublishResult:
        """
        Publish a signed event to every relay.

        Returns:
            PublishResult listing accepting and failing relays.

        Raises:
            ValidationFailure: the author exceeded the publish rate limit.
            NetworkFailure: no relay accepted the event.
        """
        if self.rate_limiter is not None and not self.rate_limiter.is_allowed(event.pubkey):
            raise ValidationFailure(
                "Publish rate limit exceeded, try again shortly", field="pubkey", value=short(event.pubkey)
            )

        outcomes = await asyncio.gather(
            *(self._publish_one(c, event) for c in self.connectors),
            return_exceptions=True,
        )

        result = PublishResult(event=event)
        for connector, outcome in zip(self.connectors, outcomes):
            if isinstance(outcome, BaseException):
                result.failures[connector.url] = _describe(outcome)
            elif outcome.accepted:
                result.accepted.append(connector.url)
            else:
                result.failures[connector.url] = outcome.message or "rejected"

        if not result.accepted:
            logger.error("Publish of kind %d %s failed on every relay", event.kind, short(event.id))
            raise NetworkFailure(f"No relay accepted event {short(event.id)}", result.failures)
        if result.failures:
            logger.warning(
                "Kind %d %s accepted by %d/%d relays",
                event.kind, short(event.id), len(result.accepted), len(self.connectors),
            )
        else:
            logger.debug("Kind %d %s accepted by all relays", event.kind, short(event.id))
        return result

    async def _query_one(self, connector: RelayConnector, filter: Filter) -> list[Event]:
        events = await asyncio.wait_for(connector.query(filter), timeout=self.timeout)
        return [e for e in events if self._verified(e, connector.url)]

    def _verified(self, event: Event, url: str) -> bool:
        if self.verifier.verify(event):
            return True
        logger.debug("Dropping unverifiable event %s from %s", short(event.id), url)
        return False

    async def query_each(self, filter: Filter) -> dict[str, list[Event]]:
        """
        Query every relay and keep results per relay.

        Used where divergent copies must be compared (whitelist records).

        Raises:
            NetworkFailure: every relay failed.
        """
        outcomes = await asyncio.gather(
            *(self._query_one(c, filter) for c in self.connectors),
            return_exceptions=True,
        )

        results: dict[str, list[Event]] = {}
        failures: dict[str, str] = {}
        for connector, outcome in zip(self.connectors, outcomes):
            if isinstance(outcome, BaseException):
                failures[connector.url] = _describe(outcome)
            else:
                results[connector.url] = outcome

        if not results:
            raise NetworkFailure("Every relay failed to answer the query", failures)
        if failures:
            logger.warning("Query answered by %d/%d relays", len(results), len(self.connectors))
        return results

    async def query(self, filter: Filter) -> list[Event]:
        """
        Query every relay and merge the answers.

        Returns:
            Unique, verified events, newest first. Addressable records are
            collapsed to their newest version.
        """
        per_relay = await self.query_each(filter)

        unique: dict[str, Event] = {}
        for events in per_relay.values():
            for event in events:
                unique.setdefault(event.id, event)

        merged = newest_per_address(list(unique.values()))
        merged.sort(key=lambda e: e.created_at, reverse=True)
        if filter.limit is not None:
            merged = merged[:filter.limit]
        return merged

    async def close(self):
        await asyncio.gather(*(c.close() for c in self.connectors), return_exceptions=True)

    def get_status(self) -> dict:
        return {
            "timeout": self.timeout,
            "relays": [c.get_info() for c in self.connectors],
        }


def _describe(error: BaseException) -> str:
    if isinstance(error, (TimeoutError, asyncio.TimeoutError)):
        return "timeout"
    return str(error) or error.__class__.__name__
