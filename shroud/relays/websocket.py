"""
WebSocket relay connector.
Speaks the NIP-01 relay protocol over ``websockets``.

Each operation opens its own connection:
  publish → ["EVENT", event]          ← ["OK", id, accepted, message]
  query   → ["REQ", sub, filter]      ← ["EVENT", sub, event]* ["EOSE", sub]
            ["CLOSE", sub]

Connection-per-operation keeps concurrent queries independent and leaves
no sockets behind when a caller abandons an operation.
"""

import asyncio
import json
import logging
import uuid

import websockets
from websockets.exceptions import WebSocketException

from shroud.errors import ValidationFailure
from shroud.events import Event, Filter
from shroud.logs import short
from shroud.relays.base import PublishAck, RelayConnector
from shroud.validation import validate_relay_url

logger = logging.getLogger(__name__)

OPEN_TIMEOUT = 5.0


class WebSocketRelay(RelayConnector):
    """
    A remote relay.

    Args:
        url: ``ws://`` or ``wss://`` relay address.
        timeout: Seconds to wait for OK / EOSE once connected.
    """

    def __init__(self, url: str, timeout: float = 10.0):
        self.url = validate_relay_url(url)
        self.timeout = timeout

    async def publish(self, event: Event) -> PublishAck:
        try:
            async with websockets.connect(self.url, open_timeout=OPEN_TIMEOUT) as ws:
                await ws.send(json.dumps(["EVENT", event.to_dict()], ensure_ascii=False))

                loop = asyncio.get_running_loop()
                deadline = loop.time() + self.timeout
                while True:
                    remaining = deadline - loop.time()
                    if remaining <= 0:
                        raise TimeoutError(f"{self.url} did not acknowledge {short(event.id)}")
                    raw = await asyncio.wait_for(ws.recv(), timeout=remaining)
                    msg = _parse_frame(raw)
                    # ["OK", event_id, accepted, message?]
                    if msg and msg[0] == "OK" and len(msg) >= 3 and msg[1] == event.id:
                        note = msg[3] if len(msg) > 3 else ""
                        return PublishAck(self.url, bool(msg[2]), str(note))
                    if msg and msg[0] == "NOTICE":
                        logger.debug("%s notice: %s", self.url, msg[1:])
        except (TimeoutError, asyncio.TimeoutError):
            # TimeoutError is an OSError; keep the real cause
            raise
        except (OSError, WebSocketException) as e:
            raise ConnectionError(f"Cannot connect to relay {self.url}: {e}") from e

    async def query(self, filter: Filter) -> list[Event]:
        sub_id = uuid.uuid4().hex[:12]
        events: list[Event] = []

        try:
            async with websockets.connect(self.url, open_timeout=OPEN_TIMEOUT) as ws:
                await ws.send(json.dumps(["REQ", sub_id, filter.to_dict()]))

                loop = asyncio.get_running_loop()
                deadline = loop.time() + self.timeout
                while True:
                    remaining = deadline - loop.time()
                    if remaining <= 0:
                        logger.debug("%s: no EOSE before deadline, returning %d events", self.url, len(events))
                        break
                    try:
                        raw = await asyncio.wait_for(ws.recv(), timeout=remaining)
                    except asyncio.TimeoutError:
                        break

                    msg = _parse_frame(raw)
                    if not msg or len(msg) < 2 or msg[1] != sub_id:
                        continue
                    if msg[0] == "EVENT" and len(msg) >= 3:
                        try:
                            events.append(Event.from_dict(msg[2]))
                        except ValidationFailure as e:
                            logger.debug("%s sent malformed event: %s", self.url, e.message)
                    elif msg[0] == "EOSE":
                        break
                    elif msg[0] == "CLOSED":
                        logger.debug("%s closed subscription: %s", self.url, msg[2:] if len(msg) > 2 else "")
                        break

                await ws.send(json.dumps(["CLOSE", sub_id]))
        except (TimeoutError, asyncio.TimeoutError):
            # TimeoutError is an OSError; keep the real cause
            raise
        except (OSError, WebSocketException) as e:
            raise ConnectionError(f"Cannot connect to relay {self.url}: {e}") from e

        return events

    def get_info(self) -> dict:
        return {"url": self.url, "transport": "websocket", "timeout": self.timeout}


def _parse_frame(raw) -> list | None:
    try:
        msg = json.loads(raw)
    except (TypeError, ValueError):
        return None
    if not isinstance(msg, list) or not msg:
        return None
    return msg
