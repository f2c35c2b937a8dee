"""
Cross-chain order model.

An order is an EIP-712 struct signed by the maker on the source chain's
domain. Its EIP-712 digest is the order id: every status record, escrow id
and dispatch event is keyed by it.

Ledger-B identities never appear in an order directly. The order format only
understands EVM addresses, so the Ledger-B side is represented by a proxy
address from the address registry.
"""

import secrets
import logging
from dataclasses import dataclass, field
from typing import Optional, Dict, Any, List

from eth_abi import encode
from web3 import Web3

from .core import TimeLockSchedule, UINT_40_MAX, ZERO_ADDRESS
from .hashlock import HashLock, to_hex, from_hex

log = logging.getLogger(__name__)

DOMAIN_NAME = "xswap Cross-Chain Order"
DOMAIN_VERSION = "1"

ORDER_FIELDS: List[Dict[str, str]] = [
    {"name": "salt", "type": "uint256"},
    {"name": "maker", "type": "address"},
    {"name": "receiver", "type": "address"},
    {"name": "makerAsset", "type": "address"},
    {"name": "takerAsset", "type": "address"},
    {"name": "makingAmount", "type": "uint256"},
    {"name": "takingAmount", "type": "uint256"},
    {"name": "srcChainId", "type": "uint256"},
    {"name": "dstChainId", "type": "uint256"},
    {"name": "hashlock", "type": "bytes32"},
    {"name": "timeLocks", "type": "uint256"},
    {"name": "nonce", "type": "uint256"},
]

DOMAIN_FIELDS: List[Dict[str, str]] = [
    {"name": "name", "type": "string"},
    {"name": "version", "type": "string"},
    {"name": "chainId", "type": "uint256"},
    {"name": "verifyingContract", "type": "address"},
]


def _type_string(name: str, fields: List[Dict[str, str]]) -> str:
    return f"{name}({','.join(f['type'] + ' ' + f['name'] for f in fields)})"


def _keccak(data: bytes) -> bytes:
    return bytes(Web3.keccak(primitive=data))


ORDER_TYPEHASH = _keccak(_type_string("Order", ORDER_FIELDS).encode())
DOMAIN_TYPEHASH = _keccak(_type_string("EIP712Domain", DOMAIN_FIELDS).encode())


def pack_time_locks(schedule: TimeLockSchedule) -> int:
    """Pack the seven 32-bit stage offsets into one uint256 (stage 0 lowest)."""
    stages = [
        schedule.src_withdrawal,
        schedule.src_public_withdrawal,
        schedule.src_cancellation,
        schedule.src_public_cancellation,
        schedule.dst_withdrawal,
        schedule.dst_public_withdrawal,
        schedule.dst_cancellation,
    ]
    packed = 0
    for i, offset in enumerate(stages):
        if not 0 <= offset < 2 ** 32:
            raise ValueError(f"Time lock stage {i} out of range: {offset}")
        packed |= offset << (32 * i)
    return packed


def checksum(address: str) -> str:
    """Checksummed EVM address. Raises ValueError for anything else."""
    if not Web3.is_address(address):
        raise ValueError(f"Not an EVM address: {address}")
    return Web3.to_checksum_address(address)


@dataclass
class Order:
    """Cross-chain swap order. Immutable once its id has been taken."""
    maker: str
    receiver: str
    maker_asset: str
    taker_asset: str
    making_amount: int
    taking_amount: int
    src_chain_id: int
    dst_chain_id: int
    commitment: str                 # 0x-hex bytes32
    time_locks: TimeLockSchedule = field(default_factory=TimeLockSchedule)
    nonce: int = 0
    salt: int = 0
    verifying_contract: str = ZERO_ADDRESS

    def __post_init__(self):
        self.maker = checksum(self.maker)
        self.receiver = checksum(self.receiver)
        self.maker_asset = checksum(self.maker_asset)
        self.taker_asset = checksum(self.taker_asset)
        self.verifying_contract = checksum(self.verifying_contract)
        self.making_amount = int(self.making_amount)
        self.taking_amount = int(self.taking_amount)
        self.src_chain_id = int(self.src_chain_id)
        self.dst_chain_id = int(self.dst_chain_id)
        self.nonce = int(self.nonce)
        self.salt = int(self.salt)

        if self.making_amount <= 0 or self.taking_amount <= 0:
            raise ValueError("Order amounts must be positive")
        if self.src_chain_id == self.dst_chain_id:
            raise ValueError("Source and destination chain must differ")
        if not 0 <= self.nonce <= UINT_40_MAX:
            raise ValueError(f"Nonce out of range: {self.nonce}")
        if len(from_hex(self.commitment)) != 32:
            raise ValueError("Commitment must be 32 bytes")
        self.commitment = to_hex(from_hex(self.commitment))
        self.time_locks.validate()

    # -------------------------------------------------------------------------
    # Hashing
    # -------------------------------------------------------------------------

    def _message_values(self) -> List[Any]:
        return [
            self.salt,
            self.maker,
            self.receiver,
            self.maker_asset,
            self.taker_asset,
            self.making_amount,
            self.taking_amount,
            self.src_chain_id,
            self.dst_chain_id,
            from_hex(self.commitment),
            pack_time_locks(self.time_locks),
            self.nonce,
        ]

    def domain_separator(self) -> bytes:
        return _keccak(encode(
            ["bytes32", "bytes32", "bytes32", "uint256", "address"],
            [
                DOMAIN_TYPEHASH,
                _keccak(DOMAIN_NAME.encode()),
                _keccak(DOMAIN_VERSION.encode()),
                self.src_chain_id,
                self.verifying_contract,
            ],
        ))

    def struct_hash(self) -> bytes:
        types = ["bytes32"] + [f["type"] for f in ORDER_FIELDS]
        return _keccak(encode(types, [ORDER_TYPEHASH] + self._message_values()))

    @property
    def order_id(self) -> str:
        """EIP-712 digest of the order (0x-hex)."""
        digest = _keccak(b"\x19\x01" + self.domain_separator() + self.struct_hash())
        return to_hex(digest)

    def typed_data(self) -> Dict[str, Any]:
        """EIP-712 payload the maker signs to authorize the source escrow."""
        message = {}
        for f, value in zip(ORDER_FIELDS, self._message_values()):
            if f["type"] == "uint256":
                message[f["name"]] = str(value)
            elif f["type"] == "bytes32":
                message[f["name"]] = to_hex(value)
            else:
                message[f["name"]] = value
        return {
            "types": {"EIP712Domain": DOMAIN_FIELDS, "Order": ORDER_FIELDS},
            "primaryType": "Order",
            "domain": {
                "name": DOMAIN_NAME,
                "version": DOMAIN_VERSION,
                "chainId": self.src_chain_id,
                "verifyingContract": self.verifying_contract,
            },
            "message": message,
        }

    # -------------------------------------------------------------------------
    # Serialization
    # -------------------------------------------------------------------------

    def to_dict(self) -> Dict[str, Any]:
        """JSON-safe form; integers rendered as decimal strings."""
        return {
            "order_id": self.order_id,
            "maker": self.maker,
            "receiver": self.receiver,
            "maker_asset": self.maker_asset,
            "taker_asset": self.taker_asset,
            "making_amount": str(self.making_amount),
            "taking_amount": str(self.taking_amount),
            "src_chain_id": self.src_chain_id,
            "dst_chain_id": self.dst_chain_id,
            "commitment": self.commitment,
            "time_locks": self.time_locks.to_dict(),
            "nonce": str(self.nonce),
            "salt": str(self.salt),
            "verifying_contract": self.verifying_contract,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Order":
        """Rebuild an order; a supplied order_id must match the recomputed one."""
        try:
            order = cls(
                maker=data["maker"],
                receiver=data["receiver"],
                maker_asset=data["maker_asset"],
                taker_asset=data["taker_asset"],
                making_amount=int(data["making_amount"]),
                taking_amount=int(data["taking_amount"]),
                src_chain_id=int(data["src_chain_id"]),
                dst_chain_id=int(data["dst_chain_id"]),
                commitment=data["commitment"],
                time_locks=TimeLockSchedule.from_dict(data.get("time_locks") or {}),
                nonce=int(data.get("nonce", 0)),
                salt=int(data.get("salt", 0)),
                verifying_contract=data.get("verifying_contract", ZERO_ADDRESS),
            )
        except KeyError as e:
            raise ValueError(f"Order is missing field {e}")

        claimed = data.get("order_id")
        if claimed and claimed.lower() != order.order_id.lower():
            raise ValueError(f"Order id mismatch: {claimed} != {order.order_id}")
        return order


def build_order(maker: str, receiver: str, maker_asset: str, taker_asset: str,
                making_amount: int, taking_amount: int,
                src_chain_id: int, dst_chain_id: int, secret,
                time_locks: TimeLockSchedule = None,
                verifying_contract: str = ZERO_ADDRESS,
                hash_families: Optional[Dict[int, str]] = None) -> Order:
    """
    Build a fresh order committing to `secret`.

    The commitment uses the source chain's hash family; the destination chain
    must use the same family since both escrows share the commitment.
    """
    src_lock = HashLock.for_chain(src_chain_id, hash_families)
    dst_lock = HashLock.for_chain(dst_chain_id, hash_families)
    if src_lock != dst_lock:
        raise ValueError(
            f"Incompatible hash-lock conventions: chain {src_chain_id} uses "
            f"{src_lock.family}, chain {dst_chain_id} uses {dst_lock.family}"
        )

    return Order(
        maker=maker,
        receiver=receiver,
        maker_asset=maker_asset,
        taker_asset=taker_asset,
        making_amount=making_amount,
        taking_amount=taking_amount,
        src_chain_id=src_chain_id,
        dst_chain_id=dst_chain_id,
        commitment=to_hex(src_lock.commit(secret)),
        time_locks=time_locks or TimeLockSchedule(),
        nonce=secrets.randbelow(UINT_40_MAX + 1),
        salt=secrets.randbits(64),
        verifying_contract=verifying_contract,
    )
