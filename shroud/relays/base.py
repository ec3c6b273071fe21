"""
Base class for all relay connectors.
Every relay transport implements this interface.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass

from shroud.events import Event, Filter


@dataclass
class PublishAck:
    """A relay's answer to a publish."""

    relay: str
    accepted: bool
    message: str = ""


class RelayConnector(ABC):
    """Abstract base class for relay connectors."""

    url: str

    @abstractmethod
    async def publish(self, event: Event) -> PublishAck:
        """
        Send a signed event to the relay.

        Args:
            event: The event to store.

        Returns:
            The relay's acknowledgement. Transport errors raise.
        """

    @abstractmethod
    async def query(self, filter: Filter) -> list[Event]:
        """
        Fetch stored events matching a filter.

        Args:
            filter: Subscription filter.

        Returns:
            Matching events, in relay order. Transport errors raise.
        """

    async def close(self):
        """Release any transport resources."""

    def get_info(self) -> dict:
        """Metadata about this relay connector."""
        return {"url": self.url, "transport": self.__class__.__name__}
