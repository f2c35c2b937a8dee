"""
Relayer link: the resolver's view of the relayer.

Three calls, each owned by the relayer process so that claims and secret
disclosure stay serialized in one place:
- lookup(identity): other side of an address mapping
- claim(order_id, resolver): PENDING -> FILLING compare-and-set, returns the claim token
- reveal_secret(...): secret disclosure, gated on the claim token and both escrows

LocalRelayerLink calls a RelayerService in the same process;
HttpRelayerLink talks to a remote relayer over its HTTP routes.
"""

import logging
from abc import ABC, abstractmethod
from typing import Optional

import httpx

from ..errors import SecretUnavailable

log = logging.getLogger(__name__)


class RelayerLink(ABC):

    @abstractmethod
    async def lookup(self, identity: str) -> Optional[str]:
        ...

    @abstractmethod
    async def claim(self, order_id: str, resolver: str) -> Optional[str]:
        """Claim token, or None if another resolver owns the order."""

    @abstractmethod
    async def reveal_secret(self, order_id: str, resolver: str, claim_token: str,
                            src_escrow_ref: str, dst_escrow_ref: str,
                            src_escrow_tx: Optional[str] = None,
                            dst_escrow_tx: Optional[str] = None) -> str:
        """Secret for `order_id`. Raises SecretUnavailable when refused."""

    async def close(self):
        pass


class LocalRelayerLink(RelayerLink):
    """In-process link to a RelayerService."""

    def __init__(self, relayer):
        self.relayer = relayer

    async def lookup(self, identity: str) -> Optional[str]:
        return self.relayer.lookup_identity(identity)

    async def claim(self, order_id: str, resolver: str) -> Optional[str]:
        return await self.relayer.claim_order(order_id, resolver)

    async def reveal_secret(self, order_id, resolver, claim_token, src_escrow_ref, dst_escrow_ref,
                            src_escrow_tx=None, dst_escrow_tx=None) -> str:
        return await self.relayer.reveal_secret(
            order_id, resolver, claim_token, src_escrow_ref, dst_escrow_ref,
            src_escrow_tx=src_escrow_tx, dst_escrow_tx=dst_escrow_tx,
        )


class HttpRelayerLink(RelayerLink):
    """Link to a remote relayer over HTTP."""

    def __init__(self, base_url: str, client: Optional[httpx.AsyncClient] = None):
        self.base_url = base_url.rstrip("/")
        self.client = client or httpx.AsyncClient(timeout=30.0)

    async def close(self):
        await self.client.aclose()

    async def lookup(self, identity: str) -> Optional[str]:
        response = await self.client.get(f"{self.base_url}/relayer/mappings/{identity}")
        if response.status_code == 404:
            return None
        response.raise_for_status()
        return response.json().get("mapped")

    async def claim(self, order_id: str, resolver: str) -> Optional[str]:
        response = await self.client.post(
            f"{self.base_url}/relayer/orders/{order_id}/claim",
            json={"resolver": resolver},
        )
        if response.status_code in (404, 409):
            log.info(f"Claim of {order_id[:18]}... refused ({response.status_code})")
            return None
        response.raise_for_status()
        return response.json().get("claim_token")

    async def reveal_secret(self, order_id, resolver, claim_token, src_escrow_ref, dst_escrow_ref,
                            src_escrow_tx=None, dst_escrow_tx=None) -> str:
        try:
            response = await self.client.post(
                f"{self.base_url}/relayer/orders/{order_id}/secret",
                json={
                    "resolver": resolver,
                    "claim_token": claim_token,
                    "src_escrow_ref": src_escrow_ref,
                    "dst_escrow_ref": dst_escrow_ref,
                    "src_escrow_tx": src_escrow_tx,
                    "dst_escrow_tx": dst_escrow_tx,
                },
            )
        except httpx.HTTPError as e:
            raise SecretUnavailable(f"Relayer unreachable: {e}")
        if response.status_code != 200:
            detail = response.json().get("detail", "") if response.content else ""
            raise SecretUnavailable(f"Relayer refused disclosure ({response.status_code}): {detail}")
        return response.json()["secret"]
