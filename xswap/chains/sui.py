"""
Ledger-B (Sui) chain adapter.

Builds Move calls against the escrow package through the fullnode JSON-RPC
(unsafe_moveCall), signs them locally with an Ed25519 key and executes them
with sui_executeTransactionBlock. All RPC goes through httpx.AsyncClient.

Escrow package entry points (module `swap_v3` by default):
- fund_src_escrow<T>(registry, order_hash, maker, taker, amount, secret_hash,
  withdrawal_ms, cancellation_ms, signature, clock)
- fund_dst_escrow<T>(registry, &mut Coin<T>, amount, receiver, secret_hash,
  withdrawal_ms, cancellation_ms, order_hash, clock)
- claim_funds<T>(escrow, secret, clock)
- cancel_swap<T>(escrow, clock)
"""

import time
import base64
import asyncio
import hashlib
import logging
from typing import Optional, Dict, Any, List

import httpx
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey
from cryptography.hazmat.primitives.serialization import Encoding, PublicFormat

from ..config import SuiConfig
from ..core import EscrowRole
from ..errors import (
    ConfigError, InsufficientFunds, SubmissionFailed,
    EscrowNotFound, EscrowExpired,
)
from ..hashlock import HashLock, KECCAK256, from_hex, normalize_secret
from .base import (
    ChainAdapter, ConfirmationOutcome, ConfirmationStatus,
    EscrowDeployment, EscrowImmutables,
)

log = logging.getLogger(__name__)

CLOCK_OBJECT_ID = "0x6"

# Signature scheme flag and intent prefix for transaction data
ED25519_FLAG = 0x00
TRANSACTION_INTENT = bytes([0, 0, 0])


class SuiRPCError(Exception):
    """JSON-RPC level error from the fullnode."""

    def __init__(self, method: str, error: Any):
        super().__init__(f"{method}: {error}")
        self.method = method
        self.error = error


# =============================================================================
# Signing
# =============================================================================

class SuiSigner:
    """Ed25519 signer producing Sui serialized signatures."""

    def __init__(self, private_key: str):
        seed = self._decode_key(private_key)
        self._key = Ed25519PrivateKey.from_private_bytes(seed)
        self.public_key = self._key.public_key().public_bytes(Encoding.Raw, PublicFormat.Raw)
        self.address = "0x" + hashlib.blake2b(
            bytes([ED25519_FLAG]) + self.public_key, digest_size=32
        ).hexdigest()

    @staticmethod
    def _decode_key(private_key: str) -> bytes:
        """Accept a 0x-hex seed or a base64 keystore entry (flag || seed)."""
        if not private_key:
            raise ConfigError("Sui private key is required")
        try:
            if private_key.startswith("0x"):
                raw = bytes.fromhex(private_key[2:])
            else:
                raw = base64.b64decode(private_key, validate=True)
        except ValueError:
            raise ConfigError("Sui private key must be 0x-hex or base64")
        if len(raw) == 33 and raw[0] == ED25519_FLAG:
            raw = raw[1:]
        if len(raw) != 32:
            raise ConfigError(f"Sui private key must be 32 bytes, got {len(raw)}")
        return raw

    def sign_transaction(self, tx_bytes_b64: str) -> str:
        """Serialized signature (base64) over blake2b-256(intent || tx_bytes)."""
        tx_bytes = base64.b64decode(tx_bytes_b64)
        digest = hashlib.blake2b(TRANSACTION_INTENT + tx_bytes, digest_size=32).digest()
        signature = self._key.sign(digest)
        return base64.b64encode(bytes([ED25519_FLAG]) + signature + self.public_key).decode()


# =============================================================================
# Adapter
# =============================================================================

class SuiAdapter(ChainAdapter):
    """Escrow package client for the Sui ledger."""

    uses_proxy_identity = True

    def __init__(self, config: SuiConfig, signer: Optional[SuiSigner] = None,
                 client: Optional[httpx.AsyncClient] = None,
                 hash_family: str = KECCAK256):
        if not config.package_id or not config.registry_object_id:
            raise ConfigError("Sui package_id and registry_object_id are required")
        self.config = config
        self.chain_id = config.chain_id
        self.signer = signer or SuiSigner(config.private_key)
        self.client = client or httpx.AsyncClient(timeout=30.0)
        self.hashlock = HashLock(hash_family)
        self._request_id = 0
        # Coin objects are owned state; one transaction at a time per signer
        self._send_lock = asyncio.Lock()

    @property
    def account(self) -> str:
        return self.signer.address

    async def close(self):
        await self.client.aclose()

    async def _rpc(self, method: str, params: List = None) -> Any:
        """Make a JSON-RPC call to the fullnode."""
        self._request_id += 1
        payload = {
            "jsonrpc": "2.0",
            "id": self._request_id,
            "method": method,
            "params": params or [],
        }
        response = await self.client.post(self.config.rpc_url, json=payload)
        response.raise_for_status()
        data = response.json()
        if "error" in data:
            raise SuiRPCError(method, data["error"])
        return data.get("result")

    async def _read(self, method: str, params: List, label: str) -> Any:
        """Read-only RPC; fullnode or transport failures surface as SubmissionFailed."""
        try:
            return await self._rpc(method, params)
        except (SuiRPCError, httpx.HTTPError, ValueError) as e:
            raise SubmissionFailed(f"{label} failed: {e}")

    # =========================================================================
    # Transactions
    # =========================================================================

    async def _execute(self, function: str, arguments: List,
                       label: str) -> Dict[str, Any]:
        """Build, sign and execute one Move call. Returns the execution result."""
        try:
            async with self._send_lock:
                built = await self._rpc("unsafe_moveCall", [
                    self.signer.address,
                    self.config.package_id,
                    self.config.module,
                    function,
                    [self.config.coin_type],
                    arguments,
                    None,
                    str(self.config.gas_budget),
                ])
                tx_bytes = built["txBytes"]
                signature = self.signer.sign_transaction(tx_bytes)
                result = await self._rpc("sui_executeTransactionBlock", [
                    tx_bytes,
                    [signature],
                    {"showEffects": True, "showObjectChanges": True},
                    "WaitForLocalExecution",
                ])
        except (SuiRPCError, httpx.HTTPError, KeyError, ValueError) as e:
            raise SubmissionFailed(f"{label} submission failed: {e}")

        digest = result.get("digest")
        status = (result.get("effects") or {}).get("status") or {}
        log.info(f"{label} TX: {digest}")
        if status.get("status") != "success":
            raise SubmissionFailed(f"{label} {digest} aborted: {status.get('error')}")
        return result

    @staticmethod
    def _created_escrow(result: Dict[str, Any]) -> Optional[str]:
        for change in result.get("objectChanges") or []:
            object_type = change.get("objectType", "")
            if change.get("type") == "created" and ("Escrow" in object_type or "Order" in object_type):
                return change["objectId"]
        return None

    async def _load_escrow(self, escrow_ref: str) -> Dict[str, Any]:
        try:
            result = await self._rpc("sui_getObject", [escrow_ref, {"showContent": True}])
        except SuiRPCError as e:
            raise EscrowNotFound(f"No escrow {escrow_ref}: {e}")
        except (httpx.HTTPError, ValueError) as e:
            raise SubmissionFailed(f"Escrow lookup {escrow_ref} failed: {e}")
        content = (result or {}).get("data", {}).get("content") or {}
        if "fields" not in content:
            raise EscrowNotFound(f"No escrow {escrow_ref}")
        return content["fields"]

    # =========================================================================
    # ChainAdapter
    # =========================================================================

    async def deploy_escrow(self, role: EscrowRole,
                            immutables: EscrowImmutables) -> EscrowDeployment:
        imm = immutables
        locks = imm.time_locks
        withdrawal_ms = str(locks.withdrawal_offset(role) * 1000)
        cancellation_ms = str(locks.cancellation_offset(role) * 1000)
        secret_hash = list(from_hex(imm.commitment))
        order_hash = list(from_hex(imm.order_id))

        if role == EscrowRole.SRC:
            if not imm.authorization:
                raise SubmissionFailed("Source escrow requires the maker's order signature")
            balance = await self.query_balance(imm.maker, self.config.coin_type)
            if balance < imm.amount:
                raise InsufficientFunds(f"Maker {imm.maker[:18]}... holds {balance} < {imm.amount}")
            function = "fund_src_escrow"
            arguments = [
                self.config.registry_object_id,
                order_hash,
                imm.maker,
                imm.recipient,
                str(imm.amount),
                secret_hash,
                withdrawal_ms,
                cancellation_ms,
                list(from_hex(imm.authorization)),
                CLOCK_OBJECT_ID,
            ]
        else:
            coin_type = self.config.coin_type
            coins = await self.find_fundable_assets(self.signer.address, coin_type, imm.amount)
            if not coins:
                raise InsufficientFunds(
                    f"No {coin_type} coin of {self.signer.address[:18]}... covers {imm.amount}"
                )
            function = "fund_dst_escrow"
            arguments = [
                self.config.registry_object_id,
                coins[0],
                str(imm.amount),
                imm.recipient,
                secret_hash,
                withdrawal_ms,
                cancellation_ms,
                order_hash,
                CLOCK_OBJECT_ID,
            ]

        log.info(f"Funding {role.value} escrow for {imm.order_id[:18]}... amount={imm.amount}")
        result = await self._execute(function, arguments, label=f"Fund {role.value}")
        escrow_ref = self._created_escrow(result)
        if not escrow_ref:
            raise SubmissionFailed(f"Fund {role.value} {result.get('digest')} created no escrow object")
        timestamp = result.get("timestampMs")
        return EscrowDeployment(
            tx_ref=result["digest"],
            escrow_ref=escrow_ref,
            confirmed_at=int(timestamp) // 1000 if timestamp else None,
        )

    async def withdraw(self, role: EscrowRole, escrow_ref: str,
                       secret, commitment: str) -> str:
        self.hashlock.require(secret, commitment)
        fields = await self._load_escrow(escrow_ref)
        deadline_ms = int(fields.get("cancellation_at") or 0)
        if deadline_ms and time.time() * 1000 >= deadline_ms:
            raise EscrowExpired(f"Escrow {escrow_ref} passed its cancellation time")
        result = await self._execute("claim_funds", [
            escrow_ref,
            list(normalize_secret(secret)),
            CLOCK_OBJECT_ID,
        ], label=f"Claim {role.value}")
        return result["digest"]

    async def cancel(self, role: EscrowRole, escrow_ref: str) -> str:
        await self._load_escrow(escrow_ref)
        result = await self._execute("cancel_swap", [escrow_ref, CLOCK_OBJECT_ID],
                                     label=f"Cancel {role.value}")
        return result["digest"]

    async def query_balance(self, account: str, asset_type: str) -> int:
        result = await self._read("suix_getBalance", [account, asset_type], "Balance read")
        return int(result.get("totalBalance", 0))

    async def find_fundable_assets(self, owner: str, asset_type: str,
                                   min_amount: int = 0) -> List[str]:
        """Coin object ids of `owner` holding at least `min_amount`, largest first."""
        coins = []
        cursor = None
        while True:
            page = await self._read("suix_getCoins", [owner, asset_type, cursor, None],
                                    "Coin lookup")
            for coin in page.get("data", []):
                balance = int(coin["balance"])
                if balance > 0 and balance >= min_amount:
                    coins.append((balance, coin["coinObjectId"]))
            if not page.get("hasNextPage"):
                break
            cursor = page.get("nextCursor")
        coins.sort(key=lambda c: c[0], reverse=True)
        return [object_id for _, object_id in coins]

    async def wait_for_confirmation(self, tx_ref: str,
                                    timeout: float) -> ConfirmationOutcome:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while True:
            try:
                result = await self._rpc("sui_getTransactionBlock",
                                         [tx_ref, {"showEffects": True}])
            except SuiRPCError:
                result = None   # not yet indexed
            except (httpx.HTTPError, ValueError) as e:
                log.warning(f"Poll for {tx_ref} failed, retrying: {e}")
                result = None

            if result and result.get("effects"):
                status = result["effects"].get("status", {})
                checkpoint = result.get("checkpoint")
                timestamp = result.get("timestampMs")
                if status.get("status") == "success":
                    return ConfirmationOutcome(
                        ConfirmationStatus.CONFIRMED,
                        block_ref=str(checkpoint) if checkpoint is not None else None,
                        timestamp=int(timestamp) // 1000 if timestamp else None,
                    )
                log.warning(f"TX {tx_ref} failed: {status.get('error')}")
                return ConfirmationOutcome(ConfirmationStatus.REVERTED,
                                           block_ref=str(checkpoint) if checkpoint else None)

            if loop.time() >= deadline:
                log.warning(f"TX {tx_ref} not confirmed within {timeout}s")
                return ConfirmationOutcome(ConfirmationStatus.TIMED_OUT)
            await asyncio.sleep(self.config.poll_interval)
