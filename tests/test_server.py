#!/usr/bin/env python3
"""
Relayer HTTP / WebSocket API tests (FastAPI TestClient)
"""

import sys
import os
import unittest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from fastapi.testclient import TestClient

from server import create_app
from xswap.config import RelayerConfig
from xswap.core import ETH_CHAIN_ID, SUI_CHAIN_ID, ZERO_ADDRESS
from xswap.dispatch.channel import LocalDispatchChannel
from xswap.store import JSONStore
from xswap.swap.relayer import RelayerService

EVM_MAKER = "0x" + "11" * 20
TOKEN = "0x" + "33" * 20
SUI_RECEIVER = "0x" + "ab" * 32
SECRET = "0x" + "5e" * 32
SIGNATURE = "0x" + "99" * 65
UNKNOWN = "0x" + "00" * 32

ORDER_REQUEST = {
    "maker": EVM_MAKER,
    "receiver": SUI_RECEIVER,
    "makerAsset": TOKEN,
    "takerAsset": ZERO_ADDRESS,
    "makingAmount": "1000000",
    "takingAmount": 2000000,
    "srcChainId": ETH_CHAIN_ID,
    "dstChainId": SUI_CHAIN_ID,
    "secret": SECRET,
}


class TestRelayerAPI(unittest.TestCase):

    def setUp(self):
        self.relayer = RelayerService(JSONStore(), LocalDispatchChannel(),
                                      RelayerConfig(db_path=None))
        self.client = TestClient(create_app(relayer=self.relayer))
        self.client.__enter__()

    def tearDown(self):
        self.client.__exit__(None, None, None)

    def create(self, **overrides):
        response = self.client.post("/relayer/createOrder", json={**ORDER_REQUEST, **overrides})
        self.assertEqual(response.status_code, 200, response.text)
        return response.json()

    def submitted(self):
        order_id = self.create()["order"]["order_id"]
        response = self.client.post("/relayer/submitOrder",
                                    json={"orderHash": order_id, "signature": SIGNATURE})
        self.assertEqual(response.status_code, 200, response.text)
        return order_id

    # ---------------------------------------------------------------------
    # Maker
    # ---------------------------------------------------------------------

    def test_health(self):
        body = self.client.get("/health").json()
        self.assertEqual(body["status"], "ok")
        self.assertEqual(body["orders"]["pending"], 0)

    def test_create_order(self):
        body = self.create()
        self.assertTrue(body["success"])
        self.assertEqual(body["typed_data"]["primaryType"], "Order")
        order = body["order"]
        self.assertEqual(order["commitment"], body["commitment"])
        self.assertNotEqual(order["receiver"].lower(), SUI_RECEIVER)
        mapping = self.client.get(f"/relayer/mappings/{order['receiver']}")
        self.assertEqual(mapping.json()["mapped"], SUI_RECEIVER)

    def test_create_order_rejects_same_chain(self):
        response = self.client.post("/relayer/createOrder",
                                    json={**ORDER_REQUEST, "dstChainId": ETH_CHAIN_ID})
        self.assertEqual(response.status_code, 400)

    def test_create_order_bad_time_locks(self):
        response = self.client.post("/relayer/createOrder",
                                    json={**ORDER_REQUEST, "timeLocks": {"dst_cancellation": 500}})
        self.assertEqual(response.status_code, 400)

    def test_submit_order(self):
        order_id = self.submitted()
        status = self.client.get("/relayer/checkOrderStatus", params={"orderHash": order_id})
        self.assertEqual(status.json()["status"], "pending")

        again = self.client.post("/relayer/submitOrder",
                                 json={"orderHash": order_id, "signature": SIGNATURE})
        self.assertFalse(again.json()["dispatched"])

    def test_submit_errors(self):
        unknown = self.client.post("/relayer/submitOrder",
                                   json={"orderHash": UNKNOWN, "signature": SIGNATURE})
        self.assertEqual(unknown.status_code, 404)
        order_id = self.create()["order"]["order_id"]
        bad = self.client.post("/relayer/submitOrder",
                               json={"orderHash": order_id, "signature": "nope"})
        self.assertEqual(bad.status_code, 400)
        empty = self.client.post("/relayer/submitOrder",
                                 json={"orderHash": order_id, "signature": "0x"})
        self.assertEqual(empty.status_code, 400)

    def test_check_status_errors(self):
        self.assertEqual(self.client.get("/relayer/checkOrderStatus").status_code, 400)
        missing = self.client.get("/relayer/checkOrderStatus", params={"orderHash": UNKNOWN})
        self.assertEqual(missing.status_code, 404)

    def test_order_history(self):
        order_id = self.submitted()
        body = self.client.get("/relayer/orders", params={"maker": EVM_MAKER}).json()
        self.assertEqual(body["count"], 1)
        self.assertEqual(body["orders"][0]["status"]["phase"], "pending")

        detail = self.client.get(f"/relayer/orders/{order_id}").json()
        self.assertEqual(detail["order"]["order_id"], order_id)
        self.assertEqual(self.client.get(f"/relayer/orders/{UNKNOWN}").status_code, 404)

    # ---------------------------------------------------------------------
    # Resolver
    # ---------------------------------------------------------------------

    def test_claim_once(self):
        order_id = self.submitted()
        first = self.client.post(f"/relayer/orders/{order_id}/claim", json={"resolver": "alice"})
        self.assertTrue(first.json()["claimed"])
        self.assertEqual(len(first.json()["claim_token"]), 32)
        second = self.client.post(f"/relayer/orders/{order_id}/claim", json={"resolver": "bob"})
        self.assertEqual(second.status_code, 409)
        unknown = self.client.post(f"/relayer/orders/{UNKNOWN}/claim", json={"resolver": "bob"})
        self.assertEqual(unknown.status_code, 404)

        status = self.client.get("/relayer/checkOrderStatus", params={"orderHash": order_id})
        self.assertEqual(status.json()["status"], "filling")
        self.assertNotIn("claim_token", status.json()["settlement"])

    def test_secret_gating(self):
        order_id = self.submitted()
        url = f"/relayer/orders/{order_id}/secret"
        self.assertEqual(self.client.post(url, json={"resolver": "alice"}).status_code, 403)

        claim = self.client.post(f"/relayer/orders/{order_id}/claim", json={"resolver": "alice"})
        token = claim.json()["claim_token"]
        partial = self.client.post(url, json={"resolver": "alice", "claim_token": token,
                                              "src_escrow_ref": "0x1"})
        self.assertEqual(partial.status_code, 403)
        other = self.client.post(url, json={"resolver": "bob", "claim_token": token,
                                            "src_escrow_ref": "0x1", "dst_escrow_ref": "0x2"})
        self.assertEqual(other.status_code, 403)
        tokenless = self.client.post(url, json={"resolver": "alice", "src_escrow_ref": "0x1",
                                                "dst_escrow_ref": "0x2"})
        self.assertEqual(tokenless.status_code, 403)

        granted = self.client.post(url, json={"resolver": "alice", "claim_token": token,
                                              "src_escrow_ref": "0x1", "dst_escrow_ref": "0x2"})
        self.assertEqual(granted.status_code, 200)
        self.assertEqual(granted.json()["secret"], SECRET)

    def test_unknown_mapping(self):
        self.assertEqual(self.client.get(f"/relayer/mappings/{SUI_RECEIVER}").status_code, 404)

    # ---------------------------------------------------------------------
    # WebSocket
    # ---------------------------------------------------------------------

    def test_ws_receives_new_orders(self):
        with self.client.websocket_connect("/ws") as ws:
            ws.send_text("ping")
            self.assertEqual(ws.receive_text(), "pong")
            order_id = self.submitted()
            message = ws.receive_json()
        self.assertEqual(message["event"], "newOrder")
        self.assertEqual(message["data"]["order"]["order_id"], order_id)


if __name__ == "__main__":
    unittest.main(verbosity=2)
