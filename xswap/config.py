"""
Configuration for xswap services.

Every config is a plain dataclass with defaults matching the testnet
deployment and a `from_env()` constructor. Missing required values raise
ConfigError before anything touches a chain.
"""

import os
import logging
from dataclasses import dataclass, field
from typing import Optional, Dict

from .core import (
    ETH_CHAIN_ID, SUI_CHAIN_ID, ZERO_ADDRESS,
    CONFIRMATION_TIMEOUT, SETTLEMENT_TIMEOUT, SAFETY_DEPOSIT_WEI,
)
from .errors import ConfigError

log = logging.getLogger(__name__)


def _env(name: str, default: Optional[str] = None, required: bool = False) -> Optional[str]:
    value = os.environ.get(name, default)
    if required and not value:
        raise ConfigError(f"{name} is not set")
    return value


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigError(f"{name} must be an integer, got {raw!r}")


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError:
        raise ConfigError(f"{name} must be a number, got {raw!r}")


def _hash_families(raw: Optional[str]) -> Dict[int, str]:
    """Parse "8453=sha256,11155111=keccak256"."""
    families = {}
    if not raw:
        return families
    for item in raw.split(","):
        item = item.strip()
        if not item:
            continue
        try:
            chain, family = item.split("=", 1)
            families[int(chain)] = family.strip()
        except ValueError:
            raise ConfigError(f"Bad hash family entry: {item!r}")
    return families


def _chain_ids(name: str, default: tuple) -> tuple:
    raw = os.environ.get(name)
    if not raw:
        return default
    try:
        return tuple(int(c) for c in raw.split(",") if c.strip())
    except ValueError:
        raise ConfigError(f"{name} must be comma-separated chain ids, got {raw!r}")


# =============================================================================
# Chains
# =============================================================================

@dataclass
class EVMConfig:
    """EVM chain configuration."""
    rpc_url: str = "https://ethereum-sepolia-rpc.publicnode.com"
    chain_id: int = ETH_CHAIN_ID
    escrow_factory: str = ZERO_ADDRESS
    private_key: str = ""               # resolver signing key
    safety_deposit: int = SAFETY_DEPOSIT_WEI
    gas_limit: int = 400000
    gas_price_multiplier: float = 1.1
    poll_interval: float = 2.0          # receipt retry after a node error

    def __post_init__(self):
        if not self.rpc_url:
            raise ConfigError("EVM rpc_url is required")
        if self.private_key and not self.private_key.startswith("0x"):
            self.private_key = "0x" + self.private_key

    @classmethod
    def from_env(cls, require_key: bool = True) -> "EVMConfig":
        return cls(
            rpc_url=_env("XSWAP_EVM_RPC_URL", cls.rpc_url),
            chain_id=_env_int("XSWAP_EVM_CHAIN_ID", ETH_CHAIN_ID),
            escrow_factory=_env("XSWAP_EVM_ESCROW_FACTORY", ZERO_ADDRESS),
            private_key=_env("XSWAP_EVM_PRIVATE_KEY", "", required=require_key),
            safety_deposit=_env_int("XSWAP_EVM_SAFETY_DEPOSIT", SAFETY_DEPOSIT_WEI),
            gas_limit=_env_int("XSWAP_EVM_GAS_LIMIT", 400000),
            gas_price_multiplier=_env_float("XSWAP_EVM_GAS_MULTIPLIER", 1.1),
            poll_interval=_env_float("XSWAP_EVM_POLL_INTERVAL", 2.0),
        )


@dataclass
class SuiConfig:
    """Ledger-B (Sui) configuration."""
    rpc_url: str = "https://fullnode.testnet.sui.io:443"
    chain_id: int = SUI_CHAIN_ID
    package_id: str = ""                # escrow Move package
    registry_object_id: str = ""        # shared escrow registry object
    module: str = "swap_v3"
    private_key: str = ""               # Ed25519 seed, 0x-hex
    gas_budget: int = 50_000_000
    coin_type: str = "0x2::sui::SUI"
    poll_interval: float = 1.0

    def __post_init__(self):
        if not self.rpc_url:
            raise ConfigError("Sui rpc_url is required")

    @classmethod
    def from_env(cls, require_key: bool = True) -> "SuiConfig":
        return cls(
            rpc_url=_env("XSWAP_SUI_RPC_URL", cls.rpc_url),
            chain_id=_env_int("XSWAP_SUI_CHAIN_ID", SUI_CHAIN_ID),
            package_id=_env("XSWAP_SUI_PACKAGE_ID", "", required=require_key),
            registry_object_id=_env("XSWAP_SUI_REGISTRY_ID", "", required=require_key),
            module=_env("XSWAP_SUI_MODULE", "swap_v3"),
            private_key=_env("XSWAP_SUI_PRIVATE_KEY", "", required=require_key),
            gas_budget=_env_int("XSWAP_SUI_GAS_BUDGET", 50_000_000),
            coin_type=_env("XSWAP_SUI_COIN_TYPE", "0x2::sui::SUI"),
            poll_interval=_env_float("XSWAP_SUI_POLL_INTERVAL", 1.0),
        )


# =============================================================================
# Services
# =============================================================================

@dataclass
class RelayerConfig:
    """Relayer service configuration."""
    host: str = "0.0.0.0"
    port: int = 8080
    db_path: Optional[str] = "~/.xswap/relayer.json"
    secrets_path: Optional[str] = None  # None = secrets kept in memory only
    settlement_timeout: int = SETTLEMENT_TIMEOUT
    watchdog_interval: int = 60
    verifying_contract: str = ZERO_ADDRESS
    hash_families: Dict[int, str] = field(default_factory=dict)
    proxy_chain_ids: tuple = (SUI_CHAIN_ID,)   # chains whose identities need EVM proxies

    def __post_init__(self):
        if self.settlement_timeout <= 0:
            raise ConfigError("settlement_timeout must be positive")

    @classmethod
    def from_env(cls) -> "RelayerConfig":
        return cls(
            host=_env("XSWAP_RELAYER_HOST", "0.0.0.0"),
            port=_env_int("XSWAP_RELAYER_PORT", 8080),
            db_path=_env("XSWAP_RELAYER_DB", "~/.xswap/relayer.json") or None,
            secrets_path=_env("XSWAP_RELAYER_SECRETS_DB") or None,
            settlement_timeout=_env_int("XSWAP_SETTLEMENT_TIMEOUT", SETTLEMENT_TIMEOUT),
            watchdog_interval=_env_int("XSWAP_WATCHDOG_INTERVAL", 60),
            verifying_contract=_env("XSWAP_VERIFYING_CONTRACT", ZERO_ADDRESS),
            hash_families=_hash_families(_env("XSWAP_HASH_FAMILIES")),
            proxy_chain_ids=_chain_ids("XSWAP_PROXY_CHAINS", (SUI_CHAIN_ID,)),
        )


@dataclass
class ReconnectPolicy:
    """Capped exponential backoff for the dispatch client."""
    initial_delay: float = 1.0
    max_delay: float = 30.0
    multiplier: float = 2.0
    max_attempts: int = 0               # 0 = retry forever

    def __post_init__(self):
        if self.initial_delay <= 0 or self.max_delay < self.initial_delay:
            raise ConfigError("Reconnect delays must satisfy 0 < initial <= max")
        if self.multiplier < 1:
            raise ConfigError("Reconnect multiplier must be >= 1")

    def delay(self, attempt: int) -> float:
        """Delay before reconnect attempt `attempt` (1-based)."""
        return min(self.max_delay, self.initial_delay * self.multiplier ** max(attempt - 1, 0))

    @classmethod
    def from_env(cls) -> "ReconnectPolicy":
        return cls(
            initial_delay=_env_float("XSWAP_RECONNECT_INITIAL", 1.0),
            max_delay=_env_float("XSWAP_RECONNECT_MAX", 30.0),
            multiplier=_env_float("XSWAP_RECONNECT_MULTIPLIER", 2.0),
            max_attempts=_env_int("XSWAP_RECONNECT_ATTEMPTS", 0),
        )


@dataclass
class ResolverConfig:
    """Resolver worker configuration."""
    name: str = "resolver"
    relayer_url: str = "http://127.0.0.1:8080"
    ws_url: str = "ws://127.0.0.1:8080/ws"
    src_chain_ids: tuple = (ETH_CHAIN_ID,)
    confirmation_timeout: int = CONFIRMATION_TIMEOUT
    reconnect: ReconnectPolicy = field(default_factory=ReconnectPolicy)

    def __post_init__(self):
        if not self.relayer_url:
            raise ConfigError("relayer_url is required")
        if not self.src_chain_ids:
            raise ConfigError("Resolver must accept at least one source chain")

    @classmethod
    def from_env(cls) -> "ResolverConfig":
        return cls(
            name=_env("XSWAP_RESOLVER_NAME", "resolver"),
            relayer_url=_env("XSWAP_RELAYER_URL", "http://127.0.0.1:8080"),
            ws_url=_env("XSWAP_RELAYER_WS_URL", "ws://127.0.0.1:8080/ws"),
            src_chain_ids=_chain_ids("XSWAP_RESOLVER_SRC_CHAINS", (ETH_CHAIN_ID,)),
            confirmation_timeout=_env_int("XSWAP_CONFIRMATION_TIMEOUT", CONFIRMATION_TIMEOUT),
            reconnect=ReconnectPolicy.from_env(),
        )
