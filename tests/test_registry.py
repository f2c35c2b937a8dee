#!/usr/bin/env python3
"""
Address registry tests

1. Proxies are minted once per foreign identity and reused
2. Lookup works from either side, case-insensitively
3. Proxy identities are never remapped
"""

import sys
import os
import tempfile
import unittest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from web3 import Web3

from xswap.registry import AddressRegistry
from xswap.store import JSONStore

SUI_ALICE = "0x" + "a1" * 32
SUI_BOB = "0x" + "b2" * 32


class TestAddressRegistry(unittest.TestCase):

    def setUp(self):
        self.registry = AddressRegistry(JSONStore())

    def test_mint_is_evm_address(self):
        proxy = self.registry.get_or_mint(SUI_ALICE)
        self.assertTrue(Web3.is_checksum_address(proxy))

    def test_reuse(self):
        first = self.registry.get_or_mint(SUI_ALICE)
        self.assertEqual(self.registry.get_or_mint(SUI_ALICE.upper().replace("0X", "0x")), first)
        self.assertEqual(len(self.registry.store.list(AddressRegistry.COLLECTION)), 1)

    def test_distinct_identities_distinct_proxies(self):
        self.assertNotEqual(self.registry.get_or_mint(SUI_ALICE),
                            self.registry.get_or_mint(SUI_BOB))

    def test_lookup_both_directions(self):
        proxy = self.registry.get_or_mint(SUI_ALICE)
        self.assertEqual(self.registry.lookup(SUI_ALICE), proxy)
        self.assertEqual(self.registry.lookup(proxy.lower()), SUI_ALICE)

    def test_unknown_identity(self):
        self.assertIsNone(self.registry.lookup(SUI_BOB))

    def test_proxy_cannot_be_remapped(self):
        proxy = self.registry.get_or_mint(SUI_ALICE)
        with self.assertRaises(ValueError):
            self.registry.get_or_mint(proxy)

    def test_empty_identity(self):
        with self.assertRaises(ValueError):
            self.registry.get_or_mint("")

    def test_mappings_persist(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = os.path.join(tmp, "relayer.json")
            proxy = AddressRegistry(JSONStore(path)).get_or_mint(SUI_ALICE)
            self.assertEqual(AddressRegistry(JSONStore(path)).lookup(proxy), SUI_ALICE)


if __name__ == "__main__":
    unittest.main(verbosity=2)
