"""
Resolver Worker for xswap.

Consumes NewOrder events and runs settlements for the orders it accepts.

Specialization is a list of (predicate, handler) pairs: the first predicate
that accepts an event picks the handler. Typical resolvers register one pair
per source chain they fund from.

Each accepted order runs as its own task; duplicate deliveries of an order
id that is in flight or among the last `history_size` finished ones are
dropped. Older results are forgotten; a stale redelivery loses its claim at
the relayer. Terminal statuses are published back on the dispatch
channel for the relayer to record.
"""

import asyncio
import logging
from collections import OrderedDict
from typing import Callable, Awaitable, Dict, List, Optional, Tuple, Set

from ..core import OrderSettlementStatus
from ..dispatch.events import Event, NewOrder, terminal_event
from ..order import Order
from .orchestrator import SettlementOrchestrator

log = logging.getLogger(__name__)

Predicate = Callable[[NewOrder], bool]
Handler = Callable[[NewOrder], Awaitable[Optional[OrderSettlementStatus]]]

HISTORY_SIZE = 1024


class ResolverWorker:
    """Event-driven resolver."""

    def __init__(self, name: str, orchestrator: SettlementOrchestrator, publisher,
                 history_size: int = HISTORY_SIZE):
        self.name = name
        self.orchestrator = orchestrator
        self.publisher = publisher      # anything with `async publish(topic, event)`
        self.handlers: List[Tuple[Predicate, Handler]] = []
        self.history_size = history_size
        # Finished order id -> terminal status (None for a lost claim or crash), oldest first
        self.results: Dict[str, Optional[OrderSettlementStatus]] = OrderedDict()
        self._active: Set[str] = set()
        self._tasks: Set[asyncio.Task] = set()

    def register(self, predicate: Predicate, handler: Optional[Handler] = None):
        """Add a (predicate, handler) pair; the default handler settles the order."""
        self.handlers.append((predicate, handler or self.settle))

    def accept_src_chain(self, chain_id: int, handler: Optional[Handler] = None):
        self.register(lambda event: event.src_chain_id == chain_id, handler)

    # =========================================================================
    # Events
    # =========================================================================

    def _match(self, event: NewOrder) -> Optional[Handler]:
        for predicate, handler in self.handlers:
            try:
                if predicate(event):
                    return handler
            except (KeyError, TypeError, ValueError) as e:
                log.warning(f"[{self.name}] predicate rejected malformed order: {e}")
        return None

    async def on_event(self, event: Event) -> bool:
        """Handle one dispatched event. Returns True if a settlement was started."""
        if not isinstance(event, NewOrder):
            return False

        order_id = event.order_id.lower()
        if order_id in self._active or order_id in self.results:
            log.info(f"[{self.name}] duplicate delivery of {order_id[:18]}..., ignored")
            return False

        handler = self._match(event)
        if handler is None:
            log.debug(f"[{self.name}] no handler for {order_id[:18]}... "
                      f"(src chain {event.order.get('src_chain_id')})")
            return False

        self._active.add(order_id)
        task = asyncio.create_task(self._run(order_id, handler, event))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return True

    def _finish(self, order_id: str, status: Optional[OrderSettlementStatus]):
        self._active.discard(order_id)
        self.results[order_id] = status
        while len(self.results) > self.history_size:
            self.results.popitem(last=False)

    async def _run(self, order_id: str, handler: Handler, event: NewOrder):
        try:
            status = await handler(event)
        except Exception:
            log.exception(f"[{self.name}] handler crashed for {order_id[:18]}...")
            self._finish(order_id, None)
            return

        self._finish(order_id, status)
        if status is None:
            return
        outcome = terminal_event(status)
        await self.publisher.publish(outcome.TOPIC, outcome)

    async def settle(self, event: NewOrder) -> Optional[OrderSettlementStatus]:
        """Default handler: rebuild the order and run the orchestrator."""
        try:
            order = Order.from_dict(event.order)
        except ValueError as e:
            log.error(f"[{self.name}] rejecting malformed order {event.order_id[:18]}...: {e}")
            return None
        return await self.orchestrator.settle(order, event.signature)

    async def run(self, subscription):
        """Consume a local channel subscription until it closes."""
        log.info(f"[{self.name}] worker started")
        async for event in subscription:
            await self.on_event(event)

    async def drain(self):
        """Wait for every in-flight settlement."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
