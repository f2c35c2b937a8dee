"""
Core types and constants for xswap.
"""

import time
from enum import Enum
from dataclasses import dataclass, field, asdict
from typing import Optional, Dict, Any


# =============================================================================
# Chains
# =============================================================================

# Testnet chain ids (Sepolia + Ledger-B placeholder id)
ETH_CHAIN_ID = 11155111
SUI_CHAIN_ID = 8453

UINT_40_MAX = 2 ** 40 - 1
ZERO_ADDRESS = "0x" + "0" * 40


class EscrowRole(Enum):
    """Which side of the swap an escrow sits on."""
    SRC = "src"     # Maker's funds, claimed by the resolver
    DST = "dst"     # Resolver's funds, claimed for the maker's receiver


# =============================================================================
# Settlement lifecycle
# =============================================================================

class SettlementPhase(Enum):
    """Order status as seen by makers and the relayer."""
    PENDING = "pending"     # Dispatched, no resolver yet
    FILLING = "filling"     # Claimed by exactly one resolver
    FILLED = "filled"       # All four transactions landed
    FAILED = "failed"       # Terminal, see error_code

    @property
    def is_terminal(self) -> bool:
        return self in (SettlementPhase.FILLED, SettlementPhase.FAILED)


class SettlementStep(Enum):
    """Orchestrator state machine.

    IDLE -> LOCATING_COUNTERPART_IDENTITY -> FUNDING_SOURCE_ESCROW
      -> AWAITING_SOURCE_CONFIRMATION -> FUNDING_DESTINATION_ESCROW
      -> AWAITING_DESTINATION_CONFIRMATION
      -> REVEALING_SECRET_AND_WITHDRAWING_DESTINATION
      -> CLAIMING_SOURCE_ESCROW -> SETTLED
    Any state may fall into FAILED.
    """
    IDLE = "idle"
    LOCATING_COUNTERPART_IDENTITY = "locating_counterpart_identity"
    FUNDING_SOURCE_ESCROW = "funding_source_escrow"
    AWAITING_SOURCE_CONFIRMATION = "awaiting_source_confirmation"
    FUNDING_DESTINATION_ESCROW = "funding_destination_escrow"
    AWAITING_DESTINATION_CONFIRMATION = "awaiting_destination_confirmation"
    REVEALING_SECRET_AND_WITHDRAWING_DESTINATION = "revealing_secret_and_withdrawing_destination"
    CLAIMING_SOURCE_ESCROW = "claiming_source_escrow"
    SETTLED = "settled"
    FAILED = "failed"


# Steps after which an on-chain commitment may exist; never re-entered.
COMMITTED_STEPS = (
    SettlementStep.AWAITING_SOURCE_CONFIRMATION,
    SettlementStep.FUNDING_DESTINATION_ESCROW,
    SettlementStep.AWAITING_DESTINATION_CONFIRMATION,
    SettlementStep.REVEALING_SECRET_AND_WITHDRAWING_DESTINATION,
    SettlementStep.CLAIMING_SOURCE_ESCROW,
    SettlementStep.SETTLED,
)


# =============================================================================
# Time locks
# =============================================================================

@dataclass(frozen=True)
class TimeLockSchedule:
    """Escrow stage offsets in seconds, relative to escrow deployment.

    Defaults are the testnet deployment values.
    """
    src_withdrawal: int = 10            # finality lock
    src_public_withdrawal: int = 120
    src_cancellation: int = 121
    src_public_cancellation: int = 122
    dst_withdrawal: int = 10            # finality lock
    dst_public_withdrawal: int = 100
    dst_cancellation: int = 101

    def validate(self) -> bool:
        """Check stage ordering on each side and the cross-side cascade.

        Source: withdrawal < public withdrawal < cancellation < public cancellation
        Destination: withdrawal < public withdrawal < cancellation
        Cascade: T_dst_cancel < T_src_cancel (resolver still claims source
        after the destination reveal)

        Returns True if valid, raises ValueError if not.
        """
        src = (self.src_withdrawal, self.src_public_withdrawal,
               self.src_cancellation, self.src_public_cancellation)
        dst = (self.dst_withdrawal, self.dst_public_withdrawal, self.dst_cancellation)

        if min(src + dst) < 0:
            raise ValueError(f"Time lock offsets must be non-negative: {self}")
        if not all(a < b for a, b in zip(src, src[1:])):
            raise ValueError(
                f"Source stages out of order: withdrawal={src[0]}s, "
                f"public_withdrawal={src[1]}s, cancellation={src[2]}s, "
                f"public_cancellation={src[3]}s"
            )
        if not all(a < b for a, b in zip(dst, dst[1:])):
            raise ValueError(
                f"Destination stages out of order: withdrawal={dst[0]}s, "
                f"public_withdrawal={dst[1]}s, cancellation={dst[2]}s"
            )
        if self.dst_cancellation >= self.src_cancellation:
            raise ValueError(
                f"Time lock cascade violated: T_dst_cancel={self.dst_cancellation}s "
                f"must be < T_src_cancel={self.src_cancellation}s"
            )
        return True

    def withdrawal_offset(self, role: EscrowRole) -> int:
        return self.src_withdrawal if role == EscrowRole.SRC else self.dst_withdrawal

    def cancellation_offset(self, role: EscrowRole) -> int:
        return self.src_cancellation if role == EscrowRole.SRC else self.dst_cancellation

    def to_dict(self) -> Dict[str, int]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TimeLockSchedule":
        return cls(**{k: int(v) for k, v in data.items()})


# =============================================================================
# Settlement status
# =============================================================================

@dataclass
class OrderSettlementStatus:
    """Current settlement state of one order."""
    order_id: str
    phase: SettlementPhase = SettlementPhase.PENDING
    step: SettlementStep = SettlementStep.IDLE
    src_chain_id: int = 0
    maker: str = ""

    # Transaction references
    src_escrow_tx: Optional[str] = None
    dst_escrow_tx: Optional[str] = None
    src_claim_tx: Optional[str] = None
    dst_claim_tx: Optional[str] = None

    # Escrow references (EVM escrow id / Sui object id)
    src_escrow_ref: Optional[str] = None
    dst_escrow_ref: Optional[str] = None

    # Error info
    error_code: Optional[str] = None
    error_detail: Optional[str] = None

    resolver: Optional[str] = None
    # Secret handed to the claiming resolver; never part of the public record
    claim_token: Optional[str] = None
    created_at: int = field(default_factory=lambda: int(time.time()))
    updated_at: int = field(default_factory=lambda: int(time.time()))

    @property
    def tx_refs_complete(self) -> bool:
        return all((self.src_escrow_tx, self.dst_escrow_tx,
                    self.src_claim_tx, self.dst_claim_tx))

    def to_dict(self, include_token: bool = False) -> Dict[str, Any]:
        data = {
            "order_id": self.order_id,
            "phase": self.phase.value,
            "step": self.step.value,
            "src_chain_id": self.src_chain_id,
            "maker": self.maker,
            "src_escrow_tx": self.src_escrow_tx,
            "dst_escrow_tx": self.dst_escrow_tx,
            "src_claim_tx": self.src_claim_tx,
            "dst_claim_tx": self.dst_claim_tx,
            "src_escrow_ref": self.src_escrow_ref,
            "dst_escrow_ref": self.dst_escrow_ref,
            "error_code": self.error_code,
            "error_detail": self.error_detail,
            "resolver": self.resolver,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }
        if include_token and self.claim_token:
            data["claim_token"] = self.claim_token
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "OrderSettlementStatus":
        values = dict(data)
        values["phase"] = SettlementPhase(values.get("phase", "pending"))
        values["step"] = SettlementStep(values.get("step", "idle"))
        return cls(**values)


# =============================================================================
# Defaults
# =============================================================================

# Bounded wait per confirmation attempt (seconds)
CONFIRMATION_TIMEOUT = 120

# Relayer watchdog: max time an order may stay in FILLING
SETTLEMENT_TIMEOUT = 1800

# 0.001 ETH safety deposit per escrow (testnet factory)
SAFETY_DEPOSIT_WEI = 10 ** 15
