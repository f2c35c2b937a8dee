"""
Address mapping registry.

Maps a Ledger-B identity to the EVM proxy address that stands in for it inside
orders. Mappings are minted lazily on first use, are 1:1 and never change.
"""

import logging
import threading
from dataclasses import dataclass
from typing import Optional, Dict

from eth_account import Account

from .store import KeyValueStore

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class AddressMapping:
    foreign_identity: str
    proxy_identity: str

    def to_dict(self) -> Dict[str, str]:
        return {"foreign_identity": self.foreign_identity,
                "proxy_identity": self.proxy_identity}


def _norm(identity: str) -> str:
    # EVM-style hex is case-insensitive; Sui addresses are lowercase hex anyway
    return identity.strip().lower()


class AddressRegistry:
    """Ledger-B identity <-> EVM proxy address, persisted in a KeyValueStore list."""

    COLLECTION = "addressMappings"

    def __init__(self, store: KeyValueStore):
        self.store = store
        self._lock = threading.Lock()

    def _mappings(self):
        for record in self.store.list(self.COLLECTION):
            yield AddressMapping(record["foreign_identity"], record["proxy_identity"])

    def lookup(self, identity: str) -> Optional[str]:
        """Return the other side of the mapping containing `identity`, or None."""
        key = _norm(identity)
        for mapping in self._mappings():
            if _norm(mapping.foreign_identity) == key:
                return mapping.proxy_identity
            if _norm(mapping.proxy_identity) == key:
                return mapping.foreign_identity
        return None

    def get_or_mint(self, foreign_identity: str) -> str:
        """Proxy address for `foreign_identity`, minting a fresh one on first use."""
        if not foreign_identity:
            raise ValueError("Foreign identity required")

        with self._lock:
            key = _norm(foreign_identity)
            for mapping in self._mappings():
                if _norm(mapping.foreign_identity) == key:
                    return mapping.proxy_identity
                if _norm(mapping.proxy_identity) == key:
                    raise ValueError(f"{foreign_identity} is already a proxy identity")

            taken = {_norm(m.proxy_identity) for m in self._mappings()}
            proxy = Account.create().address
            while _norm(proxy) in taken:
                proxy = Account.create().address

            mapping = AddressMapping(foreign_identity, proxy)
            self.store.append_to_list(self.COLLECTION, mapping.to_dict())
            log.info(f"Minted proxy {proxy} for {foreign_identity[:18]}...")
            return proxy
