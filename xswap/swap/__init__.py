"""
Settlement coordination for xswap.

Relayer service, resolver worker and the orchestrator that settles one order
across two chains.
"""

from .orchestrator import SettlementOrchestrator
from .worker import ResolverWorker
from .relayer import RelayerService
from .link import RelayerLink, LocalRelayerLink, HttpRelayerLink

__all__ = [
    "SettlementOrchestrator",
    "ResolverWorker",
    "RelayerService",
    "RelayerLink",
    "LocalRelayerLink",
    "HttpRelayerLink",
]
