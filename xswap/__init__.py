"""
xswap - Cross-Chain Hash-Lock Settlement Relayer

Atomic swaps between an EVM chain and a Sui-style ledger. A relayer takes
maker orders and custodies their secrets; resolvers fund an escrow on each
chain and release both once the secret is revealed.

Usage:
    from xswap import RelayerService, JSONStore, LocalDispatchChannel

    relayer = RelayerService(JSONStore("relayer.json"), LocalDispatchChannel())
    created = await relayer.submit_order(maker, receiver, maker_asset, taker_asset,
                                         1_000_000, 1_500_000,
                                         ETH_CHAIN_ID, SUI_CHAIN_ID, secret)
    await relayer.confirm_order(created["order"]["order_id"], signature)
"""

from .core import (
    EscrowRole,
    SettlementPhase,
    SettlementStep,
    TimeLockSchedule,
    OrderSettlementStatus,
    ETH_CHAIN_ID,
    SUI_CHAIN_ID,
)
from .errors import (
    SettlementError,
    UnmappedIdentity,
    InsufficientFunds,
    SubmissionFailed,
    ConfirmationTimeout,
    InvalidSecret,
    EscrowExpired,
    EscrowNotFound,
    SecretUnavailable,
    SettlementAbandoned,
    ConfigError,
    OrderNotFound,
)
from .hashlock import HashLock, generate_secret, normalize_secret
from .order import Order, build_order
from .registry import AddressRegistry
from .store import KeyValueStore, JSONStore, OrderStatusStore
from .dispatch import DispatchChannel, LocalDispatchChannel, DispatchClient
from .swap import SettlementOrchestrator, ResolverWorker, RelayerService

__version__ = "0.1.0"
__all__ = [
    # Core types
    "EscrowRole",
    "SettlementPhase",
    "SettlementStep",
    "TimeLockSchedule",
    "OrderSettlementStatus",
    "ETH_CHAIN_ID",
    "SUI_CHAIN_ID",
    # Errors
    "SettlementError",
    "UnmappedIdentity",
    "InsufficientFunds",
    "SubmissionFailed",
    "ConfirmationTimeout",
    "InvalidSecret",
    "EscrowExpired",
    "EscrowNotFound",
    "SecretUnavailable",
    "SettlementAbandoned",
    "ConfigError",
    "OrderNotFound",
    # Primitives
    "HashLock",
    "generate_secret",
    "normalize_secret",
    "Order",
    "build_order",
    # Storage
    "AddressRegistry",
    "KeyValueStore",
    "JSONStore",
    "OrderStatusStore",
    # Services
    "DispatchChannel",
    "LocalDispatchChannel",
    "DispatchClient",
    "SettlementOrchestrator",
    "ResolverWorker",
    "RelayerService",
]
