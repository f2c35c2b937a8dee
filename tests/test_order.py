#!/usr/bin/env python3
"""
Order model tests

1. Order id is the EIP-712 digest and is stable across serialization
2. Tampered payloads are rejected
3. Hash-lock family compatibility between chains
4. Time lock schedule validation and packing
"""

import sys
import os
import unittest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from xswap.core import ETH_CHAIN_ID, SUI_CHAIN_ID, ZERO_ADDRESS, TimeLockSchedule
from xswap.hashlock import HashLock, SHA256
from xswap.order import Order, build_order, pack_time_locks

MAKER = "0x" + "11" * 20
RECEIVER = "0x" + "22" * 20
TOKEN = "0x" + "33" * 20
SECRET = "0x" + "ab" * 32


def make_order(**overrides) -> Order:
    params = dict(
        maker=MAKER,
        receiver=RECEIVER,
        maker_asset=TOKEN,
        taker_asset=ZERO_ADDRESS,
        making_amount=1_000_000,
        taking_amount=2_000_000,
        src_chain_id=ETH_CHAIN_ID,
        dst_chain_id=SUI_CHAIN_ID,
        secret=SECRET,
    )
    params.update(overrides)
    return build_order(**params)


class TestOrderId(unittest.TestCase):

    def test_commitment_matches_secret(self):
        order = make_order()
        self.assertTrue(HashLock().verify(SECRET, order.commitment))

    def test_round_trip_keeps_id(self):
        order = make_order()
        restored = Order.from_dict(order.to_dict())
        self.assertEqual(restored.order_id, order.order_id)
        self.assertEqual(restored.time_locks, order.time_locks)

    def test_id_depends_on_nonce(self):
        order = make_order()
        data = order.to_dict()
        data.pop("order_id")
        data["nonce"] = str(int(data["nonce"]) + 1)
        self.assertNotEqual(Order.from_dict(data).order_id, order.order_id)

    def test_tampered_amount_rejected(self):
        data = make_order().to_dict()
        data["taking_amount"] = "1"
        with self.assertRaises(ValueError):
            Order.from_dict(data)

    def test_missing_field_rejected(self):
        data = make_order().to_dict()
        del data["maker"]
        with self.assertRaises(ValueError):
            Order.from_dict(data)

    def test_typed_data_domain_is_source_chain(self):
        typed = make_order().typed_data()
        self.assertEqual(typed["primaryType"], "Order")
        self.assertEqual(typed["domain"]["chainId"], ETH_CHAIN_ID)
        self.assertEqual(typed["message"]["makingAmount"], "1000000")


class TestOrderValidation(unittest.TestCase):

    def test_same_chain_rejected(self):
        with self.assertRaises(ValueError):
            make_order(dst_chain_id=ETH_CHAIN_ID)

    def test_zero_amount_rejected(self):
        with self.assertRaises(ValueError):
            make_order(making_amount=0)

    def test_non_evm_maker_rejected(self):
        with self.assertRaises(ValueError):
            make_order(maker="0x" + "ab" * 32)

    def test_incompatible_hash_families(self):
        with self.assertRaises(ValueError) as ctx:
            make_order(hash_families={SUI_CHAIN_ID: SHA256})
        self.assertIn("Incompatible", str(ctx.exception))

    def test_shared_sha256_family(self):
        order = make_order(hash_families={ETH_CHAIN_ID: SHA256, SUI_CHAIN_ID: SHA256})
        self.assertTrue(HashLock(SHA256).verify(SECRET, order.commitment))


class TestTimeLocks(unittest.TestCase):

    def test_default_schedule_valid(self):
        self.assertTrue(TimeLockSchedule().validate())

    def test_cascade_violation(self):
        with self.assertRaises(ValueError):
            TimeLockSchedule(dst_public_withdrawal=110, dst_cancellation=130).validate()

    def test_stage_order_violation(self):
        with self.assertRaises(ValueError):
            TimeLockSchedule(src_withdrawal=200).validate()

    def test_invalid_schedule_blocks_order(self):
        with self.assertRaises(ValueError):
            make_order(time_locks=TimeLockSchedule(dst_withdrawal=150))

    def test_packing(self):
        packed = pack_time_locks(TimeLockSchedule())
        self.assertEqual(packed & 0xFFFFFFFF, 10)
        self.assertEqual((packed >> 64) & 0xFFFFFFFF, 121)
        self.assertEqual(packed >> (32 * 6), 101)


if __name__ == "__main__":
    unittest.main(verbosity=2)
