#!/usr/bin/env python3
"""
EVM adapter tests (web3 mocked)

1. Deterministic escrow ids
2. Funding checks and transaction building
3. Withdraw verifies the secret locally before anything is sent
4. Receipt outcomes map to confirmation statuses
5. Node failures surface as SubmissionFailed; receipt polling rides them out
"""

import sys
import os
import time
import unittest
from unittest.mock import MagicMock

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from web3.exceptions import TimeExhausted, ContractLogicError, Web3Exception

from xswap.chains.base import ConfirmationStatus, EscrowImmutables
from xswap.chains.evm import EVMAdapter, escrow_id, MAX_UINT256, ESCROW_ACTIVE, ESCROW_WITHDRAWN
from xswap.config import EVMConfig
from xswap.core import EscrowRole, ZERO_ADDRESS
from xswap.errors import (
    ConfigError, EscrowExpired, EscrowNotFound, InsufficientFunds, InvalidSecret, SubmissionFailed,
)
from xswap.hashlock import HashLock, to_hex

FACTORY = "0x" + "fa" * 20
RESOLVER = "0x" + "44" * 20
MAKER = "0x" + "11" * 20
TOKEN = "0x" + "33" * 20
ORDER_ID = "0x" + "aa" * 32
SECRET = b"\x5e" * 32
COMMITMENT = to_hex(HashLock().commit(SECRET))
TX_HASH = b"\x12" * 32


def immutables(asset=ZERO_ADDRESS, amount=1000, authorization=None):
    return EscrowImmutables(order_id=ORDER_ID, maker=MAKER, recipient=RESOLVER,
                            asset=asset, amount=amount, commitment=COMMITMENT,
                            authorization=authorization)


class EVMAdapterCase(unittest.IsolatedAsyncioTestCase):

    def setUp(self):
        self.w3 = MagicMock()
        self.w3.eth.get_transaction_count.return_value = 7
        self.w3.eth.gas_price = 10 ** 9
        self.w3.eth.send_raw_transaction.return_value = TX_HASH
        self.w3.eth.get_balance.return_value = 10 ** 18
        self.config = EVMConfig(rpc_url="http://localhost:8545", escrow_factory=FACTORY,
                                private_key="0x" + "11" * 32, safety_deposit=100,
                                poll_interval=0.01)
        self.adapter = EVMAdapter(self.config, w3=self.w3)
        self.adapter._account = MagicMock(address=RESOLVER)
        self.adapter._account.sign_transaction.return_value = MagicMock(raw_transaction=b"raw")
        self.factory = self.adapter.factory
        self.factory.address = FACTORY

    def escrow_state(self, state=ESCROW_ACTIVE, cancellation_at=None):
        cancellation_at = cancellation_at if cancellation_at is not None else int(time.time()) + 600
        self.factory.functions.getEscrow.return_value.call.return_value = (
            MAKER, RESOLVER, ZERO_ADDRESS, 1000, bytes.fromhex(COMMITMENT[2:]),
            0, 0, cancellation_at, state,
        )

    def built_tx(self, fn):
        return fn.return_value.build_transaction.call_args.args[0]


class TestEscrowId(unittest.TestCase):

    def test_deterministic_per_role(self):
        self.assertEqual(escrow_id(ORDER_ID, EscrowRole.SRC), escrow_id(ORDER_ID, EscrowRole.SRC))
        self.assertNotEqual(escrow_id(ORDER_ID, EscrowRole.SRC), escrow_id(ORDER_ID, EscrowRole.DST))
        self.assertEqual(len(escrow_id(ORDER_ID, EscrowRole.DST)), 66)

    def test_key_required(self):
        with self.assertRaises(ConfigError):
            EVMAdapter(EVMConfig(escrow_factory=FACTORY), w3=MagicMock())


class TestDeploy(EVMAdapterCase):

    async def test_destination_native(self):
        deployment = await self.adapter.deploy_escrow(EscrowRole.DST, immutables())
        self.assertEqual(deployment.tx_ref, "0x" + "12" * 32)
        self.assertEqual(deployment.escrow_ref, escrow_id(ORDER_ID, EscrowRole.DST))

        tx = self.built_tx(self.factory.functions.deployDst)
        self.assertEqual(tx["value"], 100 + 1000)
        self.assertEqual(tx["nonce"], 7)
        self.assertEqual(tx["gasPrice"], int(10 ** 9 * 1.1))
        self.assertEqual(tx["chainId"], self.config.chain_id)
        self.w3.eth.send_raw_transaction.assert_called_once_with(b"raw")

    async def test_destination_token_approves_factory(self):
        token = self.w3.eth.contract.return_value
        token.functions.balanceOf.return_value.call.return_value = 5000
        token.functions.allowance.return_value.call.return_value = 0
        self.w3.eth.wait_for_transaction_receipt.return_value = {"status": 1}

        await self.adapter.deploy_escrow(EscrowRole.DST, immutables(asset=TOKEN))
        token.functions.approve.assert_called_once_with(FACTORY, MAX_UINT256)
        self.assertEqual(self.built_tx(self.factory.functions.deployDst)["value"], 100)
        self.assertEqual(self.w3.eth.send_raw_transaction.call_count, 2)

    async def test_destination_insufficient(self):
        self.w3.eth.get_balance.return_value = 10
        with self.assertRaises(InsufficientFunds):
            await self.adapter.deploy_escrow(EscrowRole.DST, immutables())
        self.w3.eth.send_raw_transaction.assert_not_called()

    async def test_source_requires_signature(self):
        with self.assertRaises(SubmissionFailed):
            await self.adapter.deploy_escrow(EscrowRole.SRC, immutables())

    async def test_source_passes_signature(self):
        signature = "0x" + "99" * 65
        await self.adapter.deploy_escrow(EscrowRole.SRC, immutables(authorization=signature))
        args = self.factory.functions.deploySrc.call_args.args
        self.assertEqual(args[-1], bytes.fromhex("99" * 65))
        self.assertEqual(args[2].lower(), MAKER)

    async def test_contract_rejection(self):
        self.factory.functions.deployDst.return_value.build_transaction.side_effect = \
            ContractLogicError("execution reverted")
        with self.assertRaises(SubmissionFailed):
            await self.adapter.deploy_escrow(EscrowRole.DST, immutables())


class TestWithdraw(EVMAdapterCase):

    async def test_wrong_secret_sends_nothing(self):
        with self.assertRaises(InvalidSecret):
            await self.adapter.withdraw(EscrowRole.DST, "0x" + "bb" * 32, b"wrong", COMMITMENT)
        self.factory.functions.getEscrow.assert_not_called()
        self.w3.eth.send_raw_transaction.assert_not_called()

    async def test_withdraw(self):
        self.escrow_state()
        escrow_ref = "0x" + "bb" * 32
        tx_ref = await self.adapter.withdraw(EscrowRole.DST, escrow_ref, to_hex(SECRET), COMMITMENT)
        self.assertEqual(tx_ref, "0x" + "12" * 32)
        self.factory.functions.withdraw.assert_called_once_with(bytes.fromhex("bb" * 32), SECRET)

    async def test_withdrawn_escrow(self):
        self.escrow_state(state=ESCROW_WITHDRAWN)
        with self.assertRaises(EscrowNotFound):
            await self.adapter.withdraw(EscrowRole.DST, "0x" + "bb" * 32, SECRET, COMMITMENT)

    async def test_missing_escrow(self):
        self.factory.functions.getEscrow.return_value.call.return_value = (
            ZERO_ADDRESS, ZERO_ADDRESS, ZERO_ADDRESS, 0, b"\x00" * 32, 0, 0, 0, 0)
        with self.assertRaises(EscrowNotFound):
            await self.adapter.withdraw(EscrowRole.SRC, "0x" + "bb" * 32, SECRET, COMMITMENT)

    async def test_expired_escrow(self):
        self.escrow_state(cancellation_at=int(time.time()) - 1)
        with self.assertRaises(EscrowExpired):
            await self.adapter.withdraw(EscrowRole.SRC, "0x" + "bb" * 32, SECRET, COMMITMENT)
        self.w3.eth.send_raw_transaction.assert_not_called()

    async def test_cancel(self):
        self.escrow_state()
        await self.adapter.cancel(EscrowRole.SRC, "0x" + "bb" * 32)
        self.factory.functions.cancel.assert_called_once_with(bytes.fromhex("bb" * 32))


class TestConfirmation(EVMAdapterCase):

    async def test_confirmed(self):
        self.w3.eth.wait_for_transaction_receipt.return_value = {"status": 1, "blockNumber": 42}
        self.w3.eth.get_block.return_value = {"timestamp": 1700000000}
        outcome = await self.adapter.wait_for_confirmation("0x12", 5)
        self.assertTrue(outcome.confirmed)
        self.assertEqual(outcome.block_ref, "42")
        self.assertEqual(outcome.timestamp, 1700000000)

    async def test_reverted(self):
        self.w3.eth.wait_for_transaction_receipt.return_value = {"status": 0, "blockNumber": 42}
        outcome = await self.adapter.wait_for_confirmation("0x12", 5)
        self.assertEqual(outcome.status, ConfirmationStatus.REVERTED)

    async def test_timed_out(self):
        self.w3.eth.wait_for_transaction_receipt.side_effect = TimeExhausted("slow")
        outcome = await self.adapter.wait_for_confirmation("0x12", 5)
        self.assertEqual(outcome.status, ConfirmationStatus.TIMED_OUT)

    async def test_receipt_retried_after_node_error(self):
        self.w3.eth.wait_for_transaction_receipt.side_effect = [
            ConnectionError("connection refused"), {"status": 1, "blockNumber": 42}]
        self.w3.eth.get_block.side_effect = OSError("connection reset")
        outcome = await self.adapter.wait_for_confirmation("0x12", 5)
        self.assertTrue(outcome.confirmed)
        self.assertIsNone(outcome.timestamp)
        self.assertEqual(self.w3.eth.wait_for_transaction_receipt.call_count, 2)

    async def test_unreachable_node_times_out(self):
        self.w3.eth.wait_for_transaction_receipt.side_effect = ConnectionError("down")
        outcome = await self.adapter.wait_for_confirmation("0x12", 0.05)
        self.assertEqual(outcome.status, ConfirmationStatus.TIMED_OUT)


class TestNodeFailures(EVMAdapterCase):

    async def test_balance_read(self):
        self.w3.eth.get_balance.side_effect = ConnectionError("connection refused")
        with self.assertRaises(SubmissionFailed):
            await self.adapter.deploy_escrow(EscrowRole.DST, immutables())
        self.w3.eth.send_raw_transaction.assert_not_called()

    async def test_allowance_read(self):
        token = self.w3.eth.contract.return_value
        token.functions.balanceOf.return_value.call.return_value = 5000
        token.functions.allowance.return_value.call.side_effect = Web3Exception("rpc error")
        with self.assertRaises(SubmissionFailed):
            await self.adapter.deploy_escrow(EscrowRole.DST, immutables(asset=TOKEN))
        self.w3.eth.send_raw_transaction.assert_not_called()

    async def test_escrow_lookup(self):
        self.factory.functions.getEscrow.return_value.call.side_effect = OSError("reset")
        with self.assertRaises(SubmissionFailed):
            await self.adapter.withdraw(EscrowRole.DST, "0x" + "bb" * 32, SECRET, COMMITMENT)
        self.w3.eth.send_raw_transaction.assert_not_called()


if __name__ == "__main__":
    unittest.main(verbosity=2)
