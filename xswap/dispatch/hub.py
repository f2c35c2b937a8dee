"""
WebSocket hub (relayer side).

Bridges the relayer's local channel to remote resolver workers:
- events published locally are pushed to every socket subscribed to the topic
- events sent by a socket (terminal settlement reports) are published locally

Client control messages:
    {"action": "subscribe", "topic": "orders.new"}
    {"action": "unsubscribe", "topic": "orders.new"}
    "ping" -> "pong"
"""

import json
import asyncio
import logging
from typing import Dict, Set, List

from fastapi import WebSocket, WebSocketDisconnect

from .channel import DispatchChannel, Subscription
from .events import Event, to_message, from_message, TOPIC_NEW_ORDERS, TOPIC_SETTLEMENTS

log = logging.getLogger(__name__)


class WebSocketHub:
    """Fan-out of channel events to WebSocket clients."""

    def __init__(self, channel: DispatchChannel,
                 topics=(TOPIC_NEW_ORDERS, TOPIC_SETTLEMENTS)):
        self.channel = channel
        self.topics = tuple(topics)
        self.clients: Dict[WebSocket, Set[str]] = {}
        self._subscriptions: List[Subscription] = []
        self._tasks: List[asyncio.Task] = []

    async def start(self):
        for topic in self.topics:
            subscription = self.channel.subscribe(topic)
            self._subscriptions.append(subscription)
            self._tasks.append(asyncio.create_task(self._forward(subscription)))
        log.info(f"WebSocket hub forwarding {', '.join(self.topics)}")

    async def stop(self):
        for subscription in self._subscriptions:
            subscription.close()
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._subscriptions.clear()
        self._tasks.clear()

    async def _forward(self, subscription: Subscription):
        async for event in subscription:
            await self.broadcast(event)

    async def broadcast(self, event: Event) -> int:
        """Send `event` to subscribed clients. Returns the number reached."""
        if not self.clients:
            return 0

        message = json.dumps(to_message(event, public=True))
        sent = 0
        disconnected = []
        for ws, topics in list(self.clients.items()):
            if event.TOPIC not in topics:
                continue
            try:
                await ws.send_text(message)
                sent += 1
            except (WebSocketDisconnect, RuntimeError):
                disconnected.append(ws)

        for ws in disconnected:
            self.clients.pop(ws, None)
        return sent

    async def serve(self, websocket: WebSocket):
        """Handle one client connection until it disconnects."""
        await websocket.accept()
        self.clients[websocket] = {TOPIC_NEW_ORDERS}
        log.info(f"WebSocket client connected ({len(self.clients)} total)")
        try:
            while True:
                text = await websocket.receive_text()
                reply = await self.handle_message(websocket, text)
                if reply is not None:
                    await websocket.send_text(reply)
        except WebSocketDisconnect:
            log.info("WebSocket client disconnected")
        finally:
            self.clients.pop(websocket, None)

    async def handle_message(self, websocket: WebSocket, text: str):
        """Process one client message. Returns the reply text, if any."""
        if text == "ping":
            return "pong"

        try:
            message = json.loads(text)
        except json.JSONDecodeError:
            return json.dumps({"error": "malformed JSON"})
        if not isinstance(message, dict):
            return json.dumps({"error": "expected an object"})

        action = message.get("action")
        if action in ("subscribe", "unsubscribe"):
            topic = message.get("topic")
            if topic not in self.topics:
                return json.dumps({"error": f"unknown topic {topic!r}"})
            topics = self.clients.setdefault(websocket, set())
            if action == "subscribe":
                topics.add(topic)
            else:
                topics.discard(topic)
            return json.dumps({"action": action, "topic": topic, "ok": True})

        try:
            event = from_message(message)
        except ValueError as e:
            return json.dumps({"error": str(e)})
        if event.TOPIC != TOPIC_SETTLEMENTS:
            return json.dumps({"error": f"clients may not publish {event.EVENT}"})
        await self.channel.publish(event.TOPIC, event)
        return None
