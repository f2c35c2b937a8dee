"""
Hash-lock primitive for xswap escrows.

Commitments bind an escrow to a secret without revealing it:
- EVM escrow contracts hash with keccak256
- Ledger-B escrow packages hash with keccak256 (default Sui package) or
  sha256 (configurable per deployment)

Both escrows of one order share a single commitment, so an order is only
valid when both of its chains use the same family.
"""

import hashlib
import hmac
import secrets
import logging
from typing import Optional, Dict, Union

from web3 import Web3

from .core import ETH_CHAIN_ID, SUI_CHAIN_ID
from .errors import InvalidSecret

log = logging.getLogger(__name__)

KECCAK256 = "keccak256"
SHA256 = "sha256"

# Hash family per chain id (testnet escrow packages)
DEFAULT_CHAIN_FAMILIES: Dict[int, str] = {
    ETH_CHAIN_ID: KECCAK256,
    SUI_CHAIN_ID: KECCAK256,
}

SecretLike = Union[bytes, str]


def normalize_secret(secret: SecretLike) -> bytes:
    """
    Convert a maker-supplied secret to bytes.

    0x-prefixed hex is decoded; any other text is UTF-8 encoded, which is
    how makers submit secrets to the relayer API.
    """
    if isinstance(secret, (bytes, bytearray)):
        return bytes(secret)
    if secret.startswith("0x"):
        try:
            return bytes.fromhex(secret[2:])
        except ValueError:
            pass
    return secret.encode("utf-8")


def to_hex(data: bytes) -> str:
    return "0x" + bytes(data).hex()


def from_hex(value: Union[str, bytes]) -> bytes:
    if isinstance(value, (bytes, bytearray)):
        return bytes(value)
    return bytes.fromhex(value[2:] if value.startswith("0x") else value)


class HashLock:
    """One-way commitment family (keccak256 or sha256)."""

    def __init__(self, family: str = KECCAK256):
        if family not in (KECCAK256, SHA256):
            raise ValueError(f"Unsupported hash family: {family}")
        self.family = family

    @classmethod
    def for_chain(cls, chain_id: int,
                  overrides: Optional[Dict[int, str]] = None) -> "HashLock":
        """Hash family the escrow contract on `chain_id` expects."""
        families = dict(DEFAULT_CHAIN_FAMILIES)
        if overrides:
            families.update(overrides)
        if chain_id not in families:
            raise ValueError(f"No hash-lock convention for chain {chain_id}")
        return cls(families[chain_id])

    def commit(self, secret: SecretLike) -> bytes:
        """32-byte commitment of `secret`."""
        data = normalize_secret(secret)
        if self.family == SHA256:
            return hashlib.sha256(data).digest()
        return bytes(Web3.keccak(primitive=data))

    def verify(self, secret: SecretLike, commitment: Union[str, bytes]) -> bool:
        """True if `secret` hashes to `commitment`. Malformed input is False."""
        try:
            expected = from_hex(commitment)
            actual = self.commit(secret)
        except (ValueError, TypeError):
            return False
        return hmac.compare_digest(actual, expected)

    def require(self, secret: SecretLike, commitment: Union[str, bytes]):
        """Raise InvalidSecret unless `secret` opens `commitment`."""
        if not self.verify(secret, commitment):
            shown = commitment if isinstance(commitment, str) else to_hex(commitment)
            raise InvalidSecret(f"Secret does not match commitment {shown[:18]}...")

    def __eq__(self, other) -> bool:
        return isinstance(other, HashLock) and other.family == self.family

    def __repr__(self) -> str:
        return f"HashLock({self.family!r})"


def generate_secret(family: str = KECCAK256) -> tuple[str, str]:
    """
    Generate a random secret and its commitment.

    Returns:
        (secret_hex, commitment_hex), both 0x-prefixed
    """
    secret = secrets.token_bytes(32)
    return to_hex(secret), to_hex(HashLock(family).commit(secret))
