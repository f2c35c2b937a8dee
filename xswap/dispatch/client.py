"""
WebSocket dispatch client (resolver side).

Keeps a connection to the relayer hub alive with an explicit state machine:

    DISCONNECTED -> CONNECTING -> CONNECTED
                         |            |
                         v            v
                    BACKING_OFF <-----+
                         |
                         +-> CONNECTING ...   (or STOPPED once attempts run out)

Delays follow ReconnectPolicy (capped exponential backoff); a successful
connection resets the attempt counter. Events published while disconnected are
queued and flushed on the next connection.
"""

import json
import asyncio
import logging
from enum import Enum
from typing import Awaitable, Callable, List, Optional, Sequence

import websockets
from websockets.exceptions import WebSocketException

from ..config import ReconnectPolicy
from .events import Event, to_message, from_message, TOPIC_NEW_ORDERS

log = logging.getLogger(__name__)

EventHandler = Callable[[Event], Awaitable[None]]


class ConnectionState(Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    BACKING_OFF = "backing_off"
    STOPPED = "stopped"


# Allowed transitions of the reconnect state machine
TRANSITIONS = {
    ConnectionState.DISCONNECTED: {ConnectionState.CONNECTING, ConnectionState.STOPPED},
    ConnectionState.CONNECTING: {ConnectionState.CONNECTED, ConnectionState.BACKING_OFF,
                                 ConnectionState.STOPPED},
    ConnectionState.CONNECTED: {ConnectionState.BACKING_OFF, ConnectionState.STOPPED},
    ConnectionState.BACKING_OFF: {ConnectionState.CONNECTING, ConnectionState.STOPPED},
    ConnectionState.STOPPED: set(),
}


class DispatchClient:
    """Resilient subscriber/publisher over the relayer's WebSocket hub."""

    def __init__(self, url: str, on_event: EventHandler,
                 policy: Optional[ReconnectPolicy] = None,
                 topics: Sequence[str] = (TOPIC_NEW_ORDERS,),
                 connect=None, sleep=None):
        self.url = url
        self.on_event = on_event
        self.policy = policy or ReconnectPolicy()
        self.topics = tuple(topics)
        self._connect = connect or websockets.connect
        self._sleep = sleep or asyncio.sleep
        self.state = ConnectionState.DISCONNECTED
        self.history: List[ConnectionState] = [self.state]
        self.attempt = 0
        self._ws = None
        self._closing: Optional[asyncio.Task] = None
        self._pending: List[str] = []

    def _transition(self, new_state: ConnectionState):
        if new_state not in TRANSITIONS[self.state]:
            raise RuntimeError(f"Invalid transition {self.state.value} -> {new_state.value}")
        log.debug(f"Dispatch client {self.state.value} -> {new_state.value}")
        self.state = new_state
        self.history.append(new_state)

    def stop(self):
        """Stop consuming. An open connection is closed so run() returns."""
        if self.state != ConnectionState.STOPPED:
            self._transition(ConnectionState.STOPPED)
        if self._ws is not None and self._closing is None:
            self._closing = asyncio.get_running_loop().create_task(self._ws.close())

    async def publish(self, topic: str, event: Event):
        """Send an event to the hub, queueing it while disconnected."""
        message = json.dumps(to_message(event))
        if self._ws is not None and self.state == ConnectionState.CONNECTED:
            try:
                await self._ws.send(message)
                return
            except (OSError, WebSocketException) as exc:
                log.warning(f"Publish failed, queued for reconnect: {exc}")
        self._pending.append(message)

    async def run(self):
        """Connect and consume events until stopped or attempts run out."""
        while self.state != ConnectionState.STOPPED:
            self._transition(ConnectionState.CONNECTING)
            try:
                async with self._connect(self.url, ping_interval=20, ping_timeout=20,
                                         max_size=2 ** 20) as ws:
                    await self._on_connected(ws)
                    async for raw in ws:
                        await self._handle(raw)
                        if self.state == ConnectionState.STOPPED:
                            break
            except asyncio.CancelledError:
                self._ws = None
                self.stop()
                raise
            except (OSError, asyncio.TimeoutError, WebSocketException) as exc:
                log.warning(f"Dispatch connection lost: {exc}")
            finally:
                self._ws = None

            if self.state == ConnectionState.STOPPED:
                break

            self.attempt += 1
            if self.policy.max_attempts and self.attempt > self.policy.max_attempts:
                log.error(f"Giving up on {self.url} after {self.policy.max_attempts} attempts")
                self.stop()
                break

            delay = self.policy.delay(self.attempt)
            self._transition(ConnectionState.BACKING_OFF)
            log.info(f"Reconnecting to {self.url} in {delay:.1f}s (attempt {self.attempt})")
            await self._sleep(delay)

    async def _on_connected(self, ws):
        self._transition(ConnectionState.CONNECTED)
        self.attempt = 0
        self._ws = ws
        self._closing = None
        log.info(f"Connected to dispatch hub {self.url}")
        for topic in self.topics:
            await ws.send(json.dumps({"action": "subscribe", "topic": topic}))
        pending, self._pending = self._pending, []
        for message in pending:
            await ws.send(message)

    async def _handle(self, raw):
        try:
            message = json.loads(raw)
        except (json.JSONDecodeError, TypeError):
            log.debug("Discarding malformed dispatch payload")
            return
        if not isinstance(message, dict) or "event" not in message:
            return   # control replies
        try:
            event = from_message(message)
        except ValueError as e:
            log.warning(f"Discarding dispatch message: {e}")
            return
        await self.on_event(event)
