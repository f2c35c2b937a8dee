#!/usr/bin/env python3
"""
Configuration and CLI tests
"""

import sys
import os
import io
import json
import unittest
from unittest.mock import patch

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from xswap.cli import main
from xswap.config import (
    EVMConfig, SuiConfig, RelayerConfig, ReconnectPolicy, ResolverConfig, _hash_families,
)
from xswap.core import ETH_CHAIN_ID, SUI_CHAIN_ID
from xswap.errors import ConfigError
from xswap.hashlock import HashLock, SHA256


class TestConfig(unittest.TestCase):

    def test_hash_families(self):
        self.assertEqual(_hash_families("8453=sha256, 11155111=keccak256"),
                         {8453: "sha256", 11155111: "keccak256"})
        self.assertEqual(_hash_families(None), {})
        with self.assertRaises(ConfigError):
            _hash_families("8453")

    def test_evm_key_prefixed(self):
        self.assertEqual(EVMConfig(private_key="ab" * 32).private_key, "0x" + "ab" * 32)

    @patch.dict(os.environ, {"XSWAP_EVM_RPC_URL": "http://node:8545"}, clear=True)
    def test_evm_key_required(self):
        with self.assertRaises(ConfigError):
            EVMConfig.from_env()
        self.assertEqual(EVMConfig.from_env(require_key=False).rpc_url, "http://node:8545")

    @patch.dict(os.environ, {"XSWAP_SUI_GAS_BUDGET": "lots"}, clear=True)
    def test_bad_integer(self):
        with self.assertRaises(ConfigError):
            SuiConfig.from_env(require_key=False)

    @patch.dict(os.environ, {
        "XSWAP_RELAYER_PORT": "9000",
        "XSWAP_RELAYER_DB": "",
        "XSWAP_HASH_FAMILIES": "8453=sha256",
        "XSWAP_PROXY_CHAINS": "8453,10",
    }, clear=True)
    def test_relayer_from_env(self):
        config = RelayerConfig.from_env()
        self.assertEqual(config.port, 9000)
        self.assertIsNone(config.db_path)
        self.assertEqual(config.hash_families, {SUI_CHAIN_ID: SHA256})
        self.assertEqual(config.proxy_chain_ids, (SUI_CHAIN_ID, 10))

    def test_relayer_timeout_positive(self):
        with self.assertRaises(ConfigError):
            RelayerConfig(settlement_timeout=0)

    def test_reconnect_bounds(self):
        with self.assertRaises(ConfigError):
            ReconnectPolicy(initial_delay=5, max_delay=1)
        with self.assertRaises(ConfigError):
            ReconnectPolicy(multiplier=0.5)

    @patch.dict(os.environ, {"XSWAP_RESOLVER_SRC_CHAINS": "8453,11155111"}, clear=True)
    def test_resolver_from_env(self):
        config = ResolverConfig.from_env()
        self.assertEqual(config.src_chain_ids, (SUI_CHAIN_ID, ETH_CHAIN_ID))
        self.assertEqual(config.reconnect.max_delay, 30.0)


class TestCLI(unittest.TestCase):

    def test_secret(self):
        with patch("sys.stdout", new_callable=io.StringIO) as out:
            main(["secret", "--family", "sha256"])
        body = json.loads(out.getvalue())
        self.assertTrue(HashLock(SHA256).verify(body["secret"], body["commitment"]))

    def test_no_command(self):
        with patch("sys.stdout", new_callable=io.StringIO):
            with self.assertRaises(SystemExit):
                main([])

    @patch.dict(os.environ, {}, clear=True)
    def test_resolver_without_keys(self):
        with patch("sys.stdout", new_callable=io.StringIO) as out:
            with self.assertRaises(SystemExit) as ctx:
                main(["resolver"])
        self.assertEqual(ctx.exception.code, 2)
        self.assertIn("ERROR", out.getvalue())


if __name__ == "__main__":
    unittest.main(verbosity=2)
