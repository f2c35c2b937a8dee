"""
Relayer Service for xswap.

Owns everything that must be decided in exactly one place:
- order intake (proxy minting, commitment, persistence, secret custody)
- dispatch of maker-confirmed orders to resolvers
- the PENDING -> FILLING claim
- secret disclosure, gated on both escrows being reported by the owner
- recording terminal statuses reported by resolvers
- the stale-settlement watchdog

Store mutations are serialized behind one asyncio.Lock.
"""

import time
import asyncio
import logging
from dataclasses import replace
from typing import Optional, Dict, Any, List

from ..config import RelayerConfig
from ..core import (
    OrderSettlementStatus, SettlementPhase, SettlementStep, TimeLockSchedule, ZERO_ADDRESS,
)
from ..dispatch.channel import DispatchChannel
from ..dispatch.events import (
    NewOrder, OrderFilled, OrderFailed, TOPIC_NEW_ORDERS, TOPIC_SETTLEMENTS,
)
from ..errors import OrderNotFound, SecretUnavailable, SettlementAbandoned
from ..hashlock import normalize_secret, to_hex, from_hex
from ..order import Order, build_order
from ..registry import AddressRegistry
from ..store import KeyValueStore, JSONStore, OrderStatusStore

log = logging.getLogger(__name__)

ORDERS = "orders"
# r || s || v
SIGNATURE_LENGTH = 65


class RelayerService:
    """Order book, secret custodian and settlement ledger."""

    def __init__(self, store: KeyValueStore, channel: DispatchChannel,
                 config: Optional[RelayerConfig] = None,
                 secret_store: Optional[KeyValueStore] = None,
                 clock=time.time):
        self.config = config or RelayerConfig(db_path=None)
        self.store = store
        self.channel = channel
        # Secrets never share a file with orders and statuses
        self.secrets = secret_store or JSONStore(self.config.secrets_path)
        self.registry = AddressRegistry(store)
        self.statuses = OrderStatusStore(store)
        self.clock = clock
        self._lock = asyncio.Lock()
        self._tasks: List[asyncio.Task] = []
        self._subscription = None

    # =========================================================================
    # Orders
    # =========================================================================

    async def submit_order(self, maker: str, receiver: str, maker_asset: str,
                           taker_asset: str, making_amount: int, taking_amount: int,
                           src_chain_id: int, dst_chain_id: int, secret,
                           time_locks: Optional[TimeLockSchedule] = None) -> Dict[str, Any]:
        """
        Create an order committing to the maker's secret.

        Ledger-B identities (maker on a Ledger-B source, receiver on a
        Ledger-B destination) are replaced by their EVM proxies, minted on
        first use.

        Returns:
            {"order": ..., "typed_data": ..., "commitment": ...}
        """
        if not secret:
            raise ValueError("Secret required")
        proxy_maker = int(src_chain_id) in self.config.proxy_chain_ids
        proxy_receiver = int(dst_chain_id) in self.config.proxy_chain_ids
        if (proxy_maker and not maker) or (proxy_receiver and not receiver):
            raise ValueError("Maker and receiver identities required")

        # Proxied identities are minted only once the rest of the order is valid
        order = build_order(
            maker=ZERO_ADDRESS if proxy_maker else maker,
            receiver=ZERO_ADDRESS if proxy_receiver else receiver,
            maker_asset=maker_asset,
            taker_asset=taker_asset,
            making_amount=int(making_amount),
            taking_amount=int(taking_amount),
            src_chain_id=int(src_chain_id),
            dst_chain_id=int(dst_chain_id),
            secret=secret,
            time_locks=time_locks,
            verifying_contract=self.config.verifying_contract,
            hash_families=self.config.hash_families,
        )

        async with self._lock:
            if proxy_maker:
                order = replace(order, maker=self.registry.get_or_mint(maker))
            if proxy_receiver:
                order = replace(order, receiver=self.registry.get_or_mint(receiver))

            order_id = order.order_id
            record = order.to_dict()
            record.update({"signature": None, "created_at": int(self.clock())})
            if not self.store.put_if_absent(f"order:{order_id}", record):
                raise ValueError(f"Order {order_id} already exists")
            self.store.append_to_list(ORDERS, {
                "order_id": order_id,
                "maker": maker,
                "order_maker": order.maker,
                "created_at": record["created_at"],
            })
            self.secrets.put(f"secret:{order_id}", {
                "secret": to_hex(normalize_secret(secret)),
                "commitment": order.commitment,
                "disclosed_to": None,
                "disclosed_at": None,
            })

        log.info(f"Order {order_id[:18]}... created: {order.making_amount} "
                 f"{src_chain_id} -> {order.taking_amount} {dst_chain_id}")
        return {
            "order": order.to_dict(),
            "typed_data": order.typed_data(),
            "commitment": order.commitment,
        }

    def get_order(self, order_id: str) -> Order:
        record = self.store.get(f"order:{order_id.lower()}")
        if record is None:
            raise OrderNotFound(f"Unknown order {order_id}")
        return Order.from_dict(record)

    async def confirm_order(self, order_id: str, signature: str) -> Dict[str, Any]:
        """
        Accept the maker's signature and dispatch the order.

        Idempotent: an order already tracked is not dispatched again.
        """
        if not signature or not signature.startswith("0x"):
            raise ValueError("Signature must be 0x-hex")
        try:
            raw = from_hex(signature)
        except ValueError:
            raise ValueError("Signature must be 0x-hex")
        if len(raw) != SIGNATURE_LENGTH:
            raise ValueError(f"Signature must be {SIGNATURE_LENGTH} bytes, got {len(raw)}")

        order = self.get_order(order_id)
        order_id = order.order_id
        async with self._lock:
            created = self.statuses.create(order_id, order.src_chain_id, order.maker)
            if created:
                record = self.store.get(f"order:{order_id.lower()}")
                record["signature"] = signature
                self.store.put(f"order:{order_id.lower()}", record)

        if not created:
            status = self.statuses.get(order_id)
            log.info(f"Order {order_id[:18]}... already dispatched ({status.phase.value})")
            return {"order_id": order_id, "dispatched": False, "phase": status.phase.value}

        delivered = await self.channel.publish(
            TOPIC_NEW_ORDERS, NewOrder(order=order.to_dict(), signature=signature))
        log.info(f"Order {order_id[:18]}... dispatched to {delivered} subscriber(s)")
        return {"order_id": order_id, "dispatched": True, "phase": SettlementPhase.PENDING.value}

    def get_settlement_status(self, order_id: str) -> OrderSettlementStatus:
        status = self.statuses.get(order_id)
        if status is None:
            raise OrderNotFound(f"No settlement status for {order_id}")
        return status

    def list_orders(self, maker: Optional[str] = None) -> List[Dict[str, Any]]:
        """Order history, newest first, optionally filtered by maker identity."""
        entries = self.store.list(ORDERS)
        if maker:
            key = maker.lower()
            entries = [e for e in entries
                       if e["maker"].lower() == key or e["order_maker"].lower() == key]
        history = []
        for entry in sorted(entries, key=lambda e: e["created_at"], reverse=True):
            record = self.store.get(f"order:{entry['order_id']}")
            status = self.statuses.get(entry["order_id"])
            record.pop("signature", None)
            history.append({
                "order": record,
                "maker_identity": entry["maker"],
                "status": status.to_dict() if status else None,
            })
        return history

    # =========================================================================
    # Resolver-facing
    # =========================================================================

    def lookup_identity(self, identity: str) -> Optional[str]:
        return self.registry.lookup(identity)

    async def claim_order(self, order_id: str, resolver: str) -> Optional[str]:
        """Claim a PENDING order. Returns the claim token, or None if lost."""
        if not resolver:
            raise ValueError("Resolver name required")
        async with self._lock:
            if self.statuses.get(order_id) is None:
                raise OrderNotFound(f"No settlement status for {order_id}")
            return self.statuses.claim(order_id, resolver)

    async def reveal_secret(self, order_id: str, resolver: str, claim_token: Optional[str],
                            src_escrow_ref: str, dst_escrow_ref: str,
                            src_escrow_tx: Optional[str] = None,
                            dst_escrow_tx: Optional[str] = None) -> str:
        """
        Disclose the order's secret to its owning resolver.

        Refused (SecretUnavailable) unless the caller presents the claim token
        of the FILLING order and both escrow references are reported. Later
        calls return the same secret.
        """
        async with self._lock:
            status = self.statuses.get(order_id)
            if status is None:
                raise OrderNotFound(f"No settlement status for {order_id}")
            if not self.statuses.is_owner(order_id, resolver, claim_token):
                raise SecretUnavailable(
                    f"{resolver} does not own a settlement in flight for {order_id[:18]}..."
                )
            if not src_escrow_ref or not dst_escrow_ref:
                raise SecretUnavailable("Both escrows must be reported before disclosure")

            record = self.secrets.get(f"secret:{status.order_id.lower()}")
            if record is None:
                raise SecretUnavailable(f"No secret held for {order_id[:18]}...")

            status.src_escrow_ref = src_escrow_ref
            status.dst_escrow_ref = dst_escrow_ref
            status.src_escrow_tx = src_escrow_tx or status.src_escrow_tx
            status.dst_escrow_tx = dst_escrow_tx or status.dst_escrow_tx
            status.step = SettlementStep.REVEALING_SECRET_AND_WITHDRAWING_DESTINATION
            status.claim_token = claim_token
            self.statuses.record_progress(status)

            if record["disclosed_to"]:
                log.info(f"Secret for {order_id[:18]}... already disclosed to "
                         f"{record['disclosed_to']}, returning it again")
            else:
                record["disclosed_to"] = resolver
                record["disclosed_at"] = int(self.clock())
                self.secrets.put(f"secret:{status.order_id.lower()}", record)
                log.info(f"Secret {record['secret'][:10]}... disclosed to {resolver} "
                         f"for {order_id[:18]}...")
            return record["secret"]

    # =========================================================================
    # Settlement events
    # =========================================================================

    async def handle_settlement(self, event) -> bool:
        """Record a terminal status reported by the owning resolver."""
        if not isinstance(event, (OrderFilled, OrderFailed)):
            return False
        reported = event.status
        async with self._lock:
            current = self.statuses.get(reported.order_id)
            if current is None or current.phase.is_terminal:
                return False
            if isinstance(event, OrderFilled) and not reported.tx_refs_complete:
                log.warning(f"Filled report for {reported.order_id[:18]}... lacks tx refs, ignored")
                return False
            recorded = self.statuses.finish(reported)
        if recorded:
            log.info(f"Order {reported.order_id[:18]}... {reported.phase.value}"
                     + (f" [{reported.error_code}]" if reported.error_code else ""))
        return recorded

    async def check_stale(self) -> List[str]:
        """Watchdog: fail settlements stuck in FILLING beyond settlement_timeout."""
        now = int(self.clock())
        timeout = self.config.settlement_timeout
        abandoned = []
        async with self._lock:
            for status in self.statuses.all():
                if status.phase != SettlementPhase.FILLING:
                    continue
                elapsed = now - status.updated_at
                if elapsed < timeout:
                    continue
                detail = (f"Stuck in {status.step.value} for {elapsed}s "
                          f"(timeout={timeout}s); escrows recover via cancellation")
                log.warning(f"Settlement watchdog: {status.order_id[:18]}... {detail}")
                if self.statuses.abandon(status.order_id, SettlementAbandoned.code, detail):
                    abandoned.append(status.order_id)

        for order_id in abandoned:
            await self.channel.publish(TOPIC_SETTLEMENTS, OrderFailed(self.statuses.get(order_id)))
        return abandoned

    async def _settlement_listener(self, subscription):
        async for event in subscription:
            await self.handle_settlement(event)

    async def _watchdog(self):
        while True:
            await asyncio.sleep(self.config.watchdog_interval)
            try:
                await self.check_stale()
            except OSError as e:
                log.error(f"Watchdog error: {e}")

    async def start(self):
        self._subscription = self.channel.subscribe(TOPIC_SETTLEMENTS)
        self._tasks = [
            asyncio.create_task(self._settlement_listener(self._subscription)),
            asyncio.create_task(self._watchdog()),
        ]
        log.info("Relayer started")

    async def stop(self):
        if self._subscription:
            self._subscription.close()
            self._subscription = None
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        log.info("Relayer stopped")
