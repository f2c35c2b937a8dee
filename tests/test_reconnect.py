#!/usr/bin/env python3
"""
Dispatch client reconnect tests

1. Capped exponential backoff between attempts
2. A successful connection resets the attempt counter
3. Events published while disconnected are flushed on reconnect
4. Only the declared state transitions are possible
5. stop() ends delivery and closes the open connection
"""

import sys
import os
import json
import asyncio
import unittest
from unittest.mock import AsyncMock

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from xswap.config import ReconnectPolicy
from xswap.core import OrderSettlementStatus, SettlementPhase
from xswap.dispatch.client import DispatchClient, ConnectionState
from xswap.dispatch.events import NewOrder, OrderFailed, to_message, TOPIC_SETTLEMENTS

NEW_ORDER = json.dumps(to_message(NewOrder(order={"order_id": "0x01", "src_chain_id": 1},
                                           signature="0x99")))


class FakeSocket:
    """Connection that yields scripted messages, then closes (or idles until closed)."""

    def __init__(self, messages=(), hold_open=False):
        self.messages = list(messages)
        self.hold_open = hold_open
        self.sent = []
        self.closed = asyncio.Event()

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False

    async def send(self, message):
        self.sent.append(json.loads(message))

    def __aiter__(self):
        return self._iterate()

    async def close(self):
        self.closed.set()

    async def _iterate(self):
        for message in self.messages:
            if self.closed.is_set():
                return
            yield message
        if self.hold_open:
            await self.closed.wait()


class ScriptedConnect:
    """Stand-in for websockets.connect that replays a script of outcomes."""

    def __init__(self, script):
        self.script = list(script)
        self.calls = 0

    def __call__(self, url, **kwargs):
        self.calls += 1
        outcome = self.script.pop(0) if self.script else OSError("refused")
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


class TestReconnect(unittest.IsolatedAsyncioTestCase):

    def setUp(self):
        self.sleeps = []
        self.on_event = AsyncMock()

    async def _sleep(self, delay):
        self.sleeps.append(delay)

    def client(self, script, **policy):
        connect = ScriptedConnect(script)
        client = DispatchClient("ws://relayer/ws", self.on_event,
                                policy=ReconnectPolicy(**policy),
                                connect=connect, sleep=self._sleep)
        return client, connect

    async def test_backoff_doubles_and_caps(self):
        client, connect = self.client([], max_delay=5.0, max_attempts=5)
        await client.run()
        self.assertEqual(self.sleeps, [1.0, 2.0, 4.0, 5.0, 5.0])
        self.assertEqual(connect.calls, 6)
        self.assertEqual(client.state, ConnectionState.STOPPED)

    async def test_success_resets_attempts(self):
        socket = FakeSocket([NEW_ORDER, "pong", "not json"])
        client, _ = self.client([OSError("down"), OSError("down"), socket], max_attempts=2)
        await client.run()

        self.assertEqual(self.sleeps, [1.0, 2.0, 1.0, 2.0])
        self.on_event.assert_awaited_once()
        self.assertIsInstance(self.on_event.call_args.args[0], NewOrder)
        self.assertEqual(socket.sent[0], {"action": "subscribe", "topic": "orders.new"})
        self.assertIn(ConnectionState.CONNECTED, client.history)

    async def test_pending_events_flushed(self):
        socket = FakeSocket()
        client, _ = self.client([socket], max_attempts=1)
        status = OrderSettlementStatus(order_id="0x01", phase=SettlementPhase.FAILED)
        await client.publish(TOPIC_SETTLEMENTS, OrderFailed(status))
        await client.run()

        self.assertEqual(socket.sent[0]["action"], "subscribe")
        self.assertEqual(socket.sent[1]["event"], "orderFailed")

    async def test_stop_from_handler(self):
        socket = FakeSocket([NEW_ORDER, NEW_ORDER.replace("0x01", "0x02")], hold_open=True)
        client, connect = self.client([socket])
        self.on_event.side_effect = lambda event: client.stop()
        await asyncio.wait_for(client.run(), timeout=1)
        self.assertEqual(self.on_event.await_count, 1)
        self.assertEqual(self.on_event.await_args.args[0].order["order_id"], "0x01")
        self.assertEqual(connect.calls, 1)
        self.assertEqual(self.sleeps, [])
        self.assertEqual(client.state, ConnectionState.STOPPED)

    async def test_stop_closes_idle_connection(self):
        socket = FakeSocket(hold_open=True)
        client, connect = self.client([socket])
        task = asyncio.create_task(client.run())
        while client.state != ConnectionState.CONNECTED:
            await asyncio.sleep(0)
        client.stop()
        await asyncio.wait_for(task, timeout=1)
        self.assertTrue(socket.closed.is_set())
        self.assertEqual(connect.calls, 1)
        self.assertEqual(client.state, ConnectionState.STOPPED)

    def test_invalid_transition(self):
        client, _ = self.client([])
        with self.assertRaises(RuntimeError):
            client._transition(ConnectionState.CONNECTED)

    def test_policy_delays(self):
        policy = ReconnectPolicy(initial_delay=0.5, max_delay=3.0, multiplier=3.0)
        self.assertEqual([policy.delay(n) for n in range(1, 5)], [0.5, 1.5, 3.0, 3.0])


if __name__ == "__main__":
    unittest.main(verbosity=2)
