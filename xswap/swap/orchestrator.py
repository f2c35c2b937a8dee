"""
Settlement Orchestrator for xswap.

Drives one order through the cross-chain settlement state machine:

1. Resolve the counterpart identity (registry proxy -> Ledger-B address)
2. Claim the order at the relayer (PENDING -> FILLING, lost claim = skip)
3. Deploy the source escrow (maker's funds, resolver is recipient)
4. Wait for source confirmation
5. Deploy the destination escrow (resolver's funds, maker's receiver)
6. Wait for destination confirmation
7. Obtain the secret and withdraw the destination escrow to the receiver
8. Claim the source escrow for the resolver
9. FILLED with four tx refs, or FAILED with the error code and every ref so far

Ordering rules:
- destination funding never precedes source confirmation
- the secret is never revealed before destination confirmation
- withdrawals wait out each escrow's finality lock

Nothing in here retries; a failure is recorded and the run ends.
"""

import time
import asyncio
import logging
from dataclasses import dataclass
from typing import Optional, Dict, Callable, Awaitable, List

from ..chains.base import ChainAdapter, ConfirmationOutcome, ConfirmationStatus, EscrowImmutables
from ..core import (
    EscrowRole, OrderSettlementStatus, SettlementPhase, SettlementStep,
    CONFIRMATION_TIMEOUT,
)
from ..errors import (
    SettlementError, UnmappedIdentity, ConfirmationTimeout, SubmissionFailed,
)
from ..order import Order
from .link import RelayerLink

log = logging.getLogger(__name__)

INTERNAL_ERROR = "InternalError"

# Forward order of the state machine; FAILED is reachable from any state
STEP_ORDER: List[SettlementStep] = [
    SettlementStep.IDLE,
    SettlementStep.LOCATING_COUNTERPART_IDENTITY,
    SettlementStep.FUNDING_SOURCE_ESCROW,
    SettlementStep.AWAITING_SOURCE_CONFIRMATION,
    SettlementStep.FUNDING_DESTINATION_ESCROW,
    SettlementStep.AWAITING_DESTINATION_CONFIRMATION,
    SettlementStep.REVEALING_SECRET_AND_WITHDRAWING_DESTINATION,
    SettlementStep.CLAIMING_SOURCE_ESCROW,
    SettlementStep.SETTLED,
]


@dataclass
class Counterparts:
    """Chain-native identities the escrows are built for."""
    src_maker: str          # depositor of the source escrow
    dst_recipient: str      # receiver of the destination escrow


class SettlementOrchestrator:
    """Runs settlements for one resolver."""

    def __init__(self, adapters: Dict[int, ChainAdapter], link: RelayerLink,
                 resolver: str, confirmation_timeout: float = CONFIRMATION_TIMEOUT,
                 clock: Callable[[], float] = time.time,
                 sleep: Callable[[float], Awaitable[None]] = asyncio.sleep):
        self.adapters = adapters
        self.link = link
        self.resolver = resolver
        self.confirmation_timeout = confirmation_timeout
        self.clock = clock
        self.sleep = sleep

    def supports(self, order: Order) -> bool:
        return order.src_chain_id in self.adapters and order.dst_chain_id in self.adapters

    # =========================================================================
    # Steps
    # =========================================================================

    def _enter(self, status: OrderSettlementStatus, step: SettlementStep):
        if STEP_ORDER.index(step) <= STEP_ORDER.index(status.step):
            raise RuntimeError(f"Step {step.value} re-entered after {status.step.value}")
        status.step = step
        status.updated_at = int(self.clock())
        log.info(f"[{status.order_id[:18]}...] -> {step.value}")

    async def _resolve_counterparts(self, order: Order, src: ChainAdapter,
                                    dst: ChainAdapter) -> Counterparts:
        src_maker = order.maker
        dst_recipient = order.receiver
        if src.uses_proxy_identity:
            src_maker = await self.link.lookup(order.maker)
            if not src_maker:
                raise UnmappedIdentity(f"No Ledger-B identity for maker proxy {order.maker}")
        if dst.uses_proxy_identity:
            dst_recipient = await self.link.lookup(order.receiver)
            if not dst_recipient:
                raise UnmappedIdentity(f"No Ledger-B identity for receiver proxy {order.receiver}")
        return Counterparts(src_maker=src_maker, dst_recipient=dst_recipient)

    async def _confirm(self, adapter: ChainAdapter, tx_ref: str, what: str) -> ConfirmationOutcome:
        outcome = await adapter.wait_for_confirmation(tx_ref, self.confirmation_timeout)
        if outcome.status == ConfirmationStatus.TIMED_OUT:
            raise ConfirmationTimeout(
                f"{what} {tx_ref} not confirmed within {self.confirmation_timeout}s"
            )
        if outcome.status == ConfirmationStatus.REVERTED:
            raise SubmissionFailed(f"{what} {tx_ref} reverted in block {outcome.block_ref}")
        return outcome

    async def _wait_until(self, target: float, what: str):
        delay = target - self.clock()
        if delay > 0:
            log.info(f"Waiting {delay:.0f}s for {what} finality lock")
            await self.sleep(delay)

    # =========================================================================
    # Run
    # =========================================================================

    async def settle(self, order: Order, signature: str) -> Optional[OrderSettlementStatus]:
        """
        Settle `order`.

        Returns the terminal status, or None if another resolver owns the
        order (lost claim). Raises ValueError if this resolver has no adapter
        for one of the order's chains.
        """
        if not self.supports(order):
            raise ValueError(
                f"No adapter for chain pair {order.src_chain_id} -> {order.dst_chain_id}"
            )
        src = self.adapters[order.src_chain_id]
        dst = self.adapters[order.dst_chain_id]
        order_id = order.order_id
        status = OrderSettlementStatus(
            order_id=order_id,
            src_chain_id=order.src_chain_id,
            maker=order.maker,
            resolver=self.resolver,
        )

        # Identity lookup touches no chain; a failure is recorded only once
        # the order is ours.
        self._enter(status, SettlementStep.LOCATING_COUNTERPART_IDENTITY)
        lookup_error: Optional[SettlementError] = None
        counterparts = None
        try:
            counterparts = await self._resolve_counterparts(order, src, dst)
        except UnmappedIdentity as e:
            lookup_error = e

        claim_token = await self.link.claim(order_id, self.resolver)
        if not claim_token:
            log.info(f"Order {order_id[:18]}... owned by another resolver, skipping")
            return None
        status.phase = SettlementPhase.FILLING
        status.claim_token = claim_token

        try:
            if lookup_error:
                raise lookup_error
            await self._run(order, signature, src, dst, counterparts, status)
            status.phase = SettlementPhase.FILLED
            log.info(f"Order {order_id[:18]}... settled: "
                     f"src={status.src_claim_tx} dst={status.dst_claim_tx}")
        except SettlementError as e:
            self._fail(status, e.code, e.detail)
        except Exception as e:
            log.exception(f"Unexpected error settling {order_id[:18]}...")
            self._fail(status, INTERNAL_ERROR, f"{type(e).__name__}: {e}")
        finally:
            status.updated_at = int(self.clock())
        return status

    def _fail(self, status: OrderSettlementStatus, code: str, detail: str):
        reached = status.step.value
        status.phase = SettlementPhase.FAILED
        status.step = SettlementStep.FAILED
        status.error_code = code
        status.error_detail = f"{reached}: {detail}"
        log.error(f"Order {status.order_id[:18]}... failed at {reached}: [{code}] {detail}")

    async def _run(self, order: Order, signature: str, src: ChainAdapter,
                   dst: ChainAdapter, counterparts: Counterparts,
                   status: OrderSettlementStatus):
        locks = order.time_locks

        # Source escrow
        self._enter(status, SettlementStep.FUNDING_SOURCE_ESCROW)
        src_deploy = await src.deploy_escrow(EscrowRole.SRC, EscrowImmutables(
            order_id=order.order_id,
            maker=counterparts.src_maker,
            recipient=src.account,
            asset=order.maker_asset,
            amount=order.making_amount,
            commitment=order.commitment,
            time_locks=locks,
            authorization=signature,
        ))
        status.src_escrow_tx = src_deploy.tx_ref
        status.src_escrow_ref = src_deploy.escrow_ref

        self._enter(status, SettlementStep.AWAITING_SOURCE_CONFIRMATION)
        outcome = await self._confirm(src, src_deploy.tx_ref, "Source escrow")
        src_deployed_at = outcome.timestamp or src_deploy.confirmed_at or self.clock()

        # Destination escrow
        self._enter(status, SettlementStep.FUNDING_DESTINATION_ESCROW)
        dst_deploy = await dst.deploy_escrow(EscrowRole.DST, EscrowImmutables(
            order_id=order.order_id,
            maker=dst.account,
            recipient=counterparts.dst_recipient,
            asset=order.taker_asset,
            amount=order.taking_amount,
            commitment=order.commitment,
            time_locks=locks,
        ))
        status.dst_escrow_tx = dst_deploy.tx_ref
        status.dst_escrow_ref = dst_deploy.escrow_ref

        self._enter(status, SettlementStep.AWAITING_DESTINATION_CONFIRMATION)
        outcome = await self._confirm(dst, dst_deploy.tx_ref, "Destination escrow")
        dst_deployed_at = outcome.timestamp or dst_deploy.confirmed_at or self.clock()

        # Reveal: irrevocable from here on
        self._enter(status, SettlementStep.REVEALING_SECRET_AND_WITHDRAWING_DESTINATION)
        secret = await self.link.reveal_secret(
            order.order_id, self.resolver, status.claim_token,
            status.src_escrow_ref, status.dst_escrow_ref,
            src_escrow_tx=status.src_escrow_tx, dst_escrow_tx=status.dst_escrow_tx,
        )
        await self._wait_until(dst_deployed_at + locks.dst_withdrawal, "destination")
        status.dst_claim_tx = await dst.withdraw(
            EscrowRole.DST, status.dst_escrow_ref, secret, order.commitment)
        await self._confirm(dst, status.dst_claim_tx, "Destination withdrawal")

        # Claim source
        self._enter(status, SettlementStep.CLAIMING_SOURCE_ESCROW)
        await self._wait_until(src_deployed_at + locks.src_withdrawal, "source")
        status.src_claim_tx = await src.withdraw(
            EscrowRole.SRC, status.src_escrow_ref, secret, order.commitment)
        await self._confirm(src, status.src_claim_tx, "Source claim")

        self._enter(status, SettlementStep.SETTLED)
