"""
Chain adapter contract.

Both ledgers expose the same escrow capabilities to the orchestrator. Every
method is a coroutine; each network call is a suspension point.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, List

from ..core import EscrowRole, TimeLockSchedule


class ConfirmationStatus(Enum):
    CONFIRMED = "confirmed"
    REVERTED = "reverted"
    TIMED_OUT = "timed_out"


@dataclass
class ConfirmationOutcome:
    """Result of waiting for a transaction. Reverts are data, not exceptions."""
    status: ConfirmationStatus
    block_ref: Optional[str] = None
    timestamp: Optional[int] = None

    @property
    def confirmed(self) -> bool:
        return self.status == ConfirmationStatus.CONFIRMED


@dataclass
class EscrowImmutables:
    """Everything an escrow commits to at deployment."""
    order_id: str
    maker: str                  # depositor on src, refund target
    recipient: str              # who may withdraw with the secret
    asset: str                  # token address / coin type
    amount: int
    commitment: str             # 0x-hex bytes32
    time_locks: TimeLockSchedule = field(default_factory=TimeLockSchedule)
    authorization: Optional[str] = None     # maker's order signature (src only)


@dataclass
class EscrowDeployment:
    tx_ref: str
    escrow_ref: str
    confirmed_at: Optional[int] = None


class ChainAdapter(ABC):
    """Escrow operations on one ledger."""

    chain_id: int = 0
    # Identities on this ledger appear in orders as registry proxies
    uses_proxy_identity: bool = False

    @property
    @abstractmethod
    def account(self) -> str:
        """Address of the resolver's funding account on this chain."""

    @abstractmethod
    async def deploy_escrow(self, role: EscrowRole,
                            immutables: EscrowImmutables) -> EscrowDeployment:
        ...

    @abstractmethod
    async def withdraw(self, role: EscrowRole, escrow_ref: str,
                       secret, commitment: str) -> str:
        ...

    @abstractmethod
    async def cancel(self, role: EscrowRole, escrow_ref: str) -> str:
        ...

    @abstractmethod
    async def query_balance(self, account: str, asset_type: str) -> int:
        ...

    @abstractmethod
    async def find_fundable_assets(self, owner: str, asset_type: str,
                                   min_amount: int = 0) -> List[str]:
        ...

    @abstractmethod
    async def wait_for_confirmation(self, tx_ref: str,
                                    timeout: float) -> ConfirmationOutcome:
        ...

    async def close(self):
        pass
