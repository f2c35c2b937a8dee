"""Chain adapters for xswap."""

from .base import (
    ChainAdapter,
    ConfirmationOutcome,
    ConfirmationStatus,
    EscrowDeployment,
    EscrowImmutables,
)
from .evm import EVMAdapter, escrow_id
from .sui import SuiAdapter, SuiSigner

__all__ = [
    "ChainAdapter",
    "ConfirmationOutcome",
    "ConfirmationStatus",
    "EscrowDeployment",
    "EscrowImmutables",
    "EVMAdapter",
    "escrow_id",
    "SuiAdapter",
    "SuiSigner",
]
