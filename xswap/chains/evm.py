"""
EVM chain adapter.

Talks to the escrow factory contract through web3.py and signs locally with an
eth_account key. web3's HTTP client is synchronous, so every RPC runs in a
worker thread via asyncio.to_thread.

Escrow ids are deterministic: keccak256(order_id || role), so the resolver
knows the escrow reference before the deployment transaction is mined.
"""

import time
import asyncio
import logging
import threading
from typing import Any, Callable, Optional, Dict, List

from web3 import Web3
from web3.exceptions import TimeExhausted, ContractLogicError, Web3Exception
from eth_account import Account

from ..config import EVMConfig
from ..core import EscrowRole, ZERO_ADDRESS
from ..errors import (
    ConfigError, InsufficientFunds, SubmissionFailed,
    EscrowNotFound, EscrowExpired,
)
from ..hashlock import HashLock, KECCAK256, from_hex, to_hex, normalize_secret
from ..order import pack_time_locks
from .base import (
    ChainAdapter, ConfirmationOutcome, ConfirmationStatus,
    EscrowDeployment, EscrowImmutables,
)

log = logging.getLogger(__name__)

# Node / transport failures (requests errors are OSError subclasses)
NODE_ERRORS = (Web3Exception, ValueError, ConnectionError, OSError)

# Escrow states reported by getEscrow()
ESCROW_ACTIVE = 1
ESCROW_WITHDRAWN = 2
ESCROW_CANCELLED = 3

# Escrow factory ABI (minimal - only functions we use)
ESCROW_FACTORY_ABI = [
    {
        "name": "deploySrc",
        "type": "function",
        "stateMutability": "payable",
        "inputs": [
            {"name": "escrowId", "type": "bytes32"},
            {"name": "orderHash", "type": "bytes32"},
            {"name": "maker", "type": "address"},
            {"name": "taker", "type": "address"},
            {"name": "token", "type": "address"},
            {"name": "amount", "type": "uint256"},
            {"name": "hashlock", "type": "bytes32"},
            {"name": "timelocks", "type": "uint256"},
            {"name": "signature", "type": "bytes"}
        ],
        "outputs": []
    },
    {
        "name": "deployDst",
        "type": "function",
        "stateMutability": "payable",
        "inputs": [
            {"name": "escrowId", "type": "bytes32"},
            {"name": "orderHash", "type": "bytes32"},
            {"name": "receiver", "type": "address"},
            {"name": "token", "type": "address"},
            {"name": "amount", "type": "uint256"},
            {"name": "hashlock", "type": "bytes32"},
            {"name": "timelocks", "type": "uint256"}
        ],
        "outputs": []
    },
    {
        "name": "withdraw",
        "type": "function",
        "inputs": [
            {"name": "escrowId", "type": "bytes32"},
            {"name": "secret", "type": "bytes"}
        ],
        "outputs": []
    },
    {
        "name": "cancel",
        "type": "function",
        "inputs": [{"name": "escrowId", "type": "bytes32"}],
        "outputs": []
    },
    {
        "name": "getEscrow",
        "type": "function",
        "stateMutability": "view",
        "inputs": [{"name": "escrowId", "type": "bytes32"}],
        "outputs": [
            {"name": "depositor", "type": "address"},
            {"name": "recipient", "type": "address"},
            {"name": "token", "type": "address"},
            {"name": "amount", "type": "uint256"},
            {"name": "hashlock", "type": "bytes32"},
            {"name": "deployedAt", "type": "uint256"},
            {"name": "withdrawalAt", "type": "uint256"},
            {"name": "cancellationAt", "type": "uint256"},
            {"name": "state", "type": "uint8"}
        ]
    }
]

ERC20_ABI = [
    {
        "name": "balanceOf",
        "type": "function",
        "stateMutability": "view",
        "inputs": [{"name": "owner", "type": "address"}],
        "outputs": [{"name": "", "type": "uint256"}]
    },
    {
        "name": "approve",
        "type": "function",
        "inputs": [
            {"name": "spender", "type": "address"},
            {"name": "amount", "type": "uint256"}
        ],
        "outputs": [{"name": "", "type": "bool"}]
    },
    {
        "name": "allowance",
        "type": "function",
        "stateMutability": "view",
        "inputs": [
            {"name": "owner", "type": "address"},
            {"name": "spender", "type": "address"}
        ],
        "outputs": [{"name": "", "type": "uint256"}]
    }
]

MAX_UINT256 = 2 ** 256 - 1


def escrow_id(order_id: str, role: EscrowRole) -> str:
    """Deterministic escrow id for one side of an order."""
    return Web3.to_hex(Web3.keccak(primitive=from_hex(order_id) + role.value.encode()))


def is_native(asset: str) -> bool:
    return asset.lower() == ZERO_ADDRESS


class EVMAdapter(ChainAdapter):
    """Escrow factory client for one EVM chain."""

    def __init__(self, config: EVMConfig, w3: Optional[Web3] = None,
                 hash_family: str = KECCAK256):
        if not config.private_key:
            raise ConfigError("EVM private key is required for the resolver")
        self.config = config
        self.chain_id = config.chain_id
        self.w3 = w3 or Web3(Web3.HTTPProvider(config.rpc_url))
        self._account = Account.from_key(config.private_key)
        self.hashlock = HashLock(hash_family)
        self.factory = self.w3.eth.contract(
            address=Web3.to_checksum_address(config.escrow_factory),
            abi=ESCROW_FACTORY_ABI,
        )
        # Serializes nonce allocation across concurrent settlements
        self._send_lock = threading.Lock()

    @property
    def account(self) -> str:
        return self._account.address

    def _token(self, asset: str):
        return self.w3.eth.contract(address=Web3.to_checksum_address(asset), abi=ERC20_ABI)

    # =========================================================================
    # Transactions
    # =========================================================================

    def _send(self, fn, value: int = 0, label: str = "tx") -> str:
        """Sign and broadcast a contract call. Runs in a worker thread."""
        try:
            with self._send_lock:
                sender = self._account.address
                nonce = self.w3.eth.get_transaction_count(sender, "pending")
                gas_price = int(self.w3.eth.gas_price * self.config.gas_price_multiplier)
                tx = fn.build_transaction({
                    "from": sender,
                    "nonce": nonce,
                    "value": value,
                    "gas": self.config.gas_limit,
                    "gasPrice": gas_price,
                    "chainId": self.chain_id,
                })
                signed = self._account.sign_transaction(tx)
                tx_hash = self.w3.eth.send_raw_transaction(signed.raw_transaction)
        except ContractLogicError as e:
            raise SubmissionFailed(f"{label} rejected by contract: {e}")
        except NODE_ERRORS as e:
            raise SubmissionFailed(f"{label} submission failed: {e}")

        tx_ref = Web3.to_hex(tx_hash)
        log.info(f"{label} TX: {tx_ref}")
        return tx_ref

    def _read(self, label: str, call: Callable[[], Any]) -> Any:
        """Run a chain read; node failures surface as SubmissionFailed."""
        try:
            return call()
        except NODE_ERRORS as e:
            raise SubmissionFailed(f"{label} failed: {e}")

    def _ensure_allowance(self, asset: str, amount: int):
        token = self._token(asset)
        spender = self.factory.address
        current = self._read(
            "Allowance read", token.functions.allowance(self._account.address, spender).call)
        if current >= amount:
            return
        log.info(f"Current allowance: {current}, approving max amount")
        tx_ref = self._send(token.functions.approve(spender, MAX_UINT256), label="Approve")
        receipt = self._read(
            "Approval receipt", lambda: self.w3.eth.wait_for_transaction_receipt(tx_ref, timeout=60))
        if receipt["status"] != 1:
            raise SubmissionFailed(f"Approval {tx_ref} reverted")

    def _deploy(self, role: EscrowRole, imm: EscrowImmutables) -> EscrowDeployment:
        eid = escrow_id(imm.order_id, role)
        asset = Web3.to_checksum_address(imm.asset)
        args = dict(
            escrow_id=from_hex(eid),
            order_hash=from_hex(imm.order_id),
            hashlock=from_hex(imm.commitment),
            timelocks=pack_time_locks(imm.time_locks),
        )
        value = self.config.safety_deposit

        if role == EscrowRole.SRC:
            # Maker's funds, pulled by the factory under the maker's signature
            if not imm.authorization:
                raise SubmissionFailed("Source escrow requires the maker's order signature")
            if self._balance(imm.maker, imm.asset) < imm.amount:
                raise InsufficientFunds(f"Maker {imm.maker} holds less than {imm.amount} of {asset}")
            fn = self.factory.functions.deploySrc(
                args["escrow_id"], args["order_hash"],
                Web3.to_checksum_address(imm.maker),
                Web3.to_checksum_address(imm.recipient),
                asset, imm.amount, args["hashlock"], args["timelocks"],
                from_hex(imm.authorization),
            )
        else:
            if self._balance(self._account.address, imm.asset) < imm.amount:
                raise InsufficientFunds(f"Resolver holds less than {imm.amount} of {asset}")
            if is_native(imm.asset):
                value += imm.amount
            else:
                self._ensure_allowance(imm.asset, imm.amount)
            fn = self.factory.functions.deployDst(
                args["escrow_id"], args["order_hash"],
                Web3.to_checksum_address(imm.recipient),
                asset, imm.amount, args["hashlock"], args["timelocks"],
            )

        log.info(f"Deploying {role.value} escrow {eid[:18]}... "
                 f"amount={imm.amount} recipient={imm.recipient[:10]}...")
        tx_ref = self._send(fn, value=value, label=f"Deploy {role.value}")
        return EscrowDeployment(tx_ref=tx_ref, escrow_ref=eid)

    def _load_escrow(self, escrow_ref: str) -> Dict:
        fields = self._read(
            "Escrow lookup", self.factory.functions.getEscrow(from_hex(escrow_ref)).call)
        (depositor, recipient, token, amount, hashlock,
         deployed_at, withdrawal_at, cancellation_at, state) = fields
        if int(depositor, 16) == 0:
            raise EscrowNotFound(f"No escrow {escrow_ref}")
        return {
            "depositor": depositor,
            "recipient": recipient,
            "token": token,
            "amount": amount,
            "hashlock": to_hex(hashlock),
            "deployed_at": deployed_at,
            "withdrawal_at": withdrawal_at,
            "cancellation_at": cancellation_at,
            "state": state,
        }

    def _withdraw(self, role: EscrowRole, escrow_ref: str, secret: bytes) -> str:
        escrow = self._load_escrow(escrow_ref)
        if escrow["state"] != ESCROW_ACTIVE:
            raise EscrowNotFound(f"Escrow {escrow_ref} is no longer active (state={escrow['state']})")
        if escrow["cancellation_at"] and int(time.time()) >= escrow["cancellation_at"]:
            raise EscrowExpired(f"Escrow {escrow_ref} passed its cancellation time")
        fn = self.factory.functions.withdraw(from_hex(escrow_ref), secret)
        return self._send(fn, label=f"Withdraw {role.value}")

    def _cancel(self, role: EscrowRole, escrow_ref: str) -> str:
        escrow = self._load_escrow(escrow_ref)
        if escrow["state"] != ESCROW_ACTIVE:
            raise EscrowNotFound(f"Escrow {escrow_ref} is no longer active (state={escrow['state']})")
        return self._send(self.factory.functions.cancel(from_hex(escrow_ref)),
                          label=f"Cancel {role.value}")

    def _balance(self, account: str, asset_type: str) -> int:
        owner = Web3.to_checksum_address(account)
        if is_native(asset_type):
            return self._read("Balance read", lambda: self.w3.eth.get_balance(owner))
        return self._read("Balance read", self._token(asset_type).functions.balanceOf(owner).call)

    def _wait(self, tx_ref: str, timeout: float) -> ConfirmationOutcome:
        deadline = time.monotonic() + timeout
        while True:
            remaining = deadline - time.monotonic()
            try:
                receipt = self.w3.eth.wait_for_transaction_receipt(
                    tx_ref, timeout=max(remaining, 0.1))
                break
            except TimeExhausted:
                log.warning(f"TX {tx_ref[:18]}... not mined within {timeout}s")
                return ConfirmationOutcome(ConfirmationStatus.TIMED_OUT)
            except NODE_ERRORS as e:
                if remaining <= self.config.poll_interval:
                    log.warning(f"TX {tx_ref[:18]}... unconfirmed at deadline, last error: {e}")
                    return ConfirmationOutcome(ConfirmationStatus.TIMED_OUT)
                log.warning(f"Receipt poll for {tx_ref[:18]}... failed, retrying: {e}")
                time.sleep(self.config.poll_interval)

        block_ref = str(receipt["blockNumber"])
        if receipt["status"] != 1:
            log.warning(f"TX {tx_ref[:18]}... reverted in block {block_ref}")
            return ConfirmationOutcome(ConfirmationStatus.REVERTED, block_ref=block_ref)

        # Receipt decides the outcome; the block timestamp is best effort
        timestamp = None
        try:
            timestamp = int(self.w3.eth.get_block(receipt["blockNumber"])["timestamp"])
        except NODE_ERRORS as e:
            log.warning(f"Block {block_ref} timestamp unavailable: {e}")
        return ConfirmationOutcome(
            ConfirmationStatus.CONFIRMED,
            block_ref=block_ref,
            timestamp=timestamp,
        )

    # =========================================================================
    # ChainAdapter
    # =========================================================================

    async def deploy_escrow(self, role: EscrowRole,
                            immutables: EscrowImmutables) -> EscrowDeployment:
        return await asyncio.to_thread(self._deploy, role, immutables)

    async def withdraw(self, role: EscrowRole, escrow_ref: str,
                       secret, commitment: str) -> str:
        self.hashlock.require(secret, commitment)
        return await asyncio.to_thread(self._withdraw, role, escrow_ref,
                                       normalize_secret(secret))

    async def cancel(self, role: EscrowRole, escrow_ref: str) -> str:
        return await asyncio.to_thread(self._cancel, role, escrow_ref)

    async def query_balance(self, account: str, asset_type: str) -> int:
        return await asyncio.to_thread(self._balance, account, asset_type)

    async def find_fundable_assets(self, owner: str, asset_type: str,
                                   min_amount: int = 0) -> List[str]:
        balance = await self.query_balance(owner, asset_type)
        if balance > 0 and balance >= min_amount:
            return [Web3.to_checksum_address(asset_type)]
        return []

    async def wait_for_confirmation(self, tx_ref: str,
                                    timeout: float) -> ConfirmationOutcome:
        return await asyncio.to_thread(self._wait, tx_ref, timeout)
