"""
Persistence for the relayer.

KeyValueStore is the persistence interface the relayer depends on. JSONStore
implements it as a single JSON document rewritten atomically (temp file + rename) on every mutation, so a crash leaves either
the old or the new state on disk. Without a path it is memory-only.

OrderStatusStore keeps the settlement status of every order on top of it and
owns the one cross-worker race in the system: the PENDING -> FILLING claim is
a compare-and-set at the store level.
"""

import os
import copy
import hmac
import json
import time
import secrets
import logging
import tempfile
import threading
from abc import ABC, abstractmethod
from typing import Optional, Dict, Any, List

from .core import OrderSettlementStatus, SettlementPhase, SettlementStep

log = logging.getLogger(__name__)


class KeyValueStore(ABC):
    """Record store with append-only lists. Every method is atomic."""

    @abstractmethod
    def get(self, key: str) -> Optional[Dict[str, Any]]:
        ...

    @abstractmethod
    def put(self, key: str, record: Dict[str, Any]):
        ...

    @abstractmethod
    def keys(self, prefix: str = "") -> List[str]:
        ...

    @abstractmethod
    def put_if_absent(self, key: str, record: Dict[str, Any]) -> bool:
        ...

    @abstractmethod
    def compare_and_set(self, key: str, expected: Dict[str, Any],
                        updates: Dict[str, Any]) -> bool:
        ...

    @abstractmethod
    def append_to_list(self, collection: str, record: Dict[str, Any]):
        ...

    @abstractmethod
    def list(self, collection: str) -> List[Dict[str, Any]]:
        ...


class JSONStore(KeyValueStore):
    """Durable key-value store with append-only lists."""

    def __init__(self, path: Optional[str] = None):
        self.path = os.path.expanduser(path) if path else None
        self._lock = threading.Lock()
        self._data: Dict[str, Dict[str, Any]] = {"records": {}, "lists": {}}
        self._load()

    # -------------------------------------------------------------------------
    # Disk
    # -------------------------------------------------------------------------

    def _load(self):
        if not self.path or not os.path.exists(self.path):
            return
        with open(self.path, "r") as f:
            data = json.load(f)
        self._data["records"] = data.get("records", {})
        self._data["lists"] = data.get("lists", {})
        log.info(f"Loaded {len(self._data['records'])} records from {self.path}")

    def _flush(self):
        if not self.path:
            return
        directory = os.path.dirname(self.path) or "."
        os.makedirs(directory, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=directory, prefix=".xswap-", suffix=".json")
        try:
            with os.fdopen(fd, "w") as f:
                json.dump(self._data, f, indent=2)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, self.path)
        except BaseException:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise

    # -------------------------------------------------------------------------
    # Records
    # -------------------------------------------------------------------------

    def get(self, key: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            record = self._data["records"].get(key)
            return copy.deepcopy(record) if record is not None else None

    def put(self, key: str, record: Dict[str, Any]):
        with self._lock:
            self._data["records"][key] = copy.deepcopy(record)
            self._flush()

    def keys(self, prefix: str = "") -> List[str]:
        with self._lock:
            return [k for k in self._data["records"] if k.startswith(prefix)]

    def put_if_absent(self, key: str, record: Dict[str, Any]) -> bool:
        """Store `record` unless `key` exists. Returns True if stored."""
        with self._lock:
            if key in self._data["records"]:
                return False
            self._data["records"][key] = copy.deepcopy(record)
            self._flush()
            return True

    def compare_and_set(self, key: str, expected: Dict[str, Any],
                        updates: Dict[str, Any]) -> bool:
        """
        Apply `updates` to record `key` only if every field in `expected`
        currently holds the expected value. Atomic with respect to every other
        mutation of this store.
        """
        with self._lock:
            record = self._data["records"].get(key)
            if record is None:
                return False
            if any(record.get(k) != v for k, v in expected.items()):
                return False
            record.update(copy.deepcopy(updates))
            self._flush()
            return True

    # -------------------------------------------------------------------------
    # Lists
    # -------------------------------------------------------------------------

    def append_to_list(self, collection: str, record: Dict[str, Any]):
        with self._lock:
            self._data["lists"].setdefault(collection, []).append(copy.deepcopy(record))
            self._flush()

    def list(self, collection: str) -> List[Dict[str, Any]]:
        with self._lock:
            return copy.deepcopy(self._data["lists"].get(collection, []))


class OrderStatusStore:
    """
    Settlement status per order id.

    A successful claim hands the resolver a random claim token. The token is
    kept in the stored record only: get() and all() return the public status,
    and every later write for the in-flight order must present it.
    """

    PREFIX = "status:"
    TOKEN_FIELD = "claim_token"

    def __init__(self, store: KeyValueStore):
        self.store = store

    def _key(self, order_id: str) -> str:
        return self.PREFIX + order_id.lower()

    def _public(self, record: Optional[Dict[str, Any]]) -> Optional[OrderSettlementStatus]:
        if not record:
            return None
        record.pop(self.TOKEN_FIELD, None)
        return OrderSettlementStatus.from_dict(record)

    def create(self, order_id: str, src_chain_id: int = 0, maker: str = "") -> bool:
        """Create the PENDING status. Returns False if the order is already tracked."""
        status = OrderSettlementStatus(order_id=order_id, src_chain_id=src_chain_id, maker=maker)
        created = self.store.put_if_absent(self._key(order_id), status.to_dict())
        if created:
            log.info(f"Order {order_id[:18]}... pending")
        return created

    def get(self, order_id: str) -> Optional[OrderSettlementStatus]:
        return self._public(self.store.get(self._key(order_id)))

    def claim(self, order_id: str, resolver: str) -> Optional[str]:
        """
        PENDING -> FILLING for exactly one resolver.

        Returns the claim token, or None if another resolver owns the order
        (or it is unknown / already terminal); the caller must skip it.
        """
        token = secrets.token_hex(16)
        claimed = self.store.compare_and_set(
            self._key(order_id),
            expected={"phase": SettlementPhase.PENDING.value},
            updates={
                "phase": SettlementPhase.FILLING.value,
                "resolver": resolver,
                self.TOKEN_FIELD: token,
                "updated_at": int(time.time()),
            },
        )
        if claimed:
            log.info(f"Order {order_id[:18]}... claimed by {resolver}")
            return token
        log.info(f"Order {order_id[:18]}... claim by {resolver} rejected")
        return None

    def is_owner(self, order_id: str, resolver: str, claim_token: Optional[str]) -> bool:
        """True if `resolver` holds the claim on the FILLING order."""
        record = self.store.get(self._key(order_id))
        if not record or not claim_token:
            return False
        return (record.get("phase") == SettlementPhase.FILLING.value
                and record.get("resolver") == resolver
                and hmac.compare_digest(str(record.get(self.TOKEN_FIELD) or ""), claim_token))

    def record_progress(self, status: OrderSettlementStatus) -> bool:
        """Store in-flight refs reported by the owning resolver."""
        return self._write_if_owner(status, terminal=False)

    def finish(self, status: OrderSettlementStatus) -> bool:
        """
        Store a terminal status reported by the owning resolver.

        Ignored unless the order is FILLING under `status.resolver` and
        `status.claim_token` matches; terminal states never change again.
        """
        if not status.phase.is_terminal:
            raise ValueError(f"Not a terminal phase: {status.phase.value}")
        return self._write_if_owner(status, terminal=True)

    def _write_if_owner(self, status: OrderSettlementStatus, terminal: bool) -> bool:
        if not status.claim_token:
            log.warning(f"Ignored status update for {status.order_id[:18]}... "
                        f"from {status.resolver} (no claim token)")
            return False
        record = status.to_dict()
        record["updated_at"] = int(time.time())
        for preserved in ("created_at", "src_chain_id", "maker"):
            record.pop(preserved, None)
        if not terminal:
            record["phase"] = SettlementPhase.FILLING.value
        written = self.store.compare_and_set(
            self._key(status.order_id),
            expected={
                "phase": SettlementPhase.FILLING.value,
                "resolver": status.resolver,
                self.TOKEN_FIELD: status.claim_token,
            },
            updates=record,
        )
        if not written:
            log.warning(f"Ignored status update for {status.order_id[:18]}... "
                        f"from {status.resolver} (not the owner)")
        return written

    def abandon(self, order_id: str, error_code: str, detail: str) -> bool:
        """FILLING -> FAILED without the resolver (watchdog)."""
        return self.store.compare_and_set(
            self._key(order_id),
            expected={"phase": SettlementPhase.FILLING.value},
            updates={
                "phase": SettlementPhase.FAILED.value,
                "step": SettlementStep.FAILED.value,
                "error_code": error_code,
                "error_detail": detail,
                "updated_at": int(time.time()),
            },
        )

    def all(self) -> List[OrderSettlementStatus]:
        statuses = []
        for key in self.store.keys(self.PREFIX):
            status = self._public(self.store.get(key))
            if status:
                statuses.append(status)
        return statuses
