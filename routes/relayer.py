"""
Relayer HTTP endpoints.

Maker-facing:
    POST /relayer/createOrder          build an order, custody the secret
    POST /relayer/submitOrder          attach the maker signature, dispatch
    GET  /relayer/checkOrderStatus     settlement status by order hash
    GET  /relayer/orders               order history (?maker=)
    GET  /relayer/orders/{order_id}    order + status

Resolver-facing:
    POST /relayer/orders/{order_id}/claim
    POST /relayer/orders/{order_id}/secret
    GET  /relayer/mappings/{identity}

The RelayerService instance lives on app.state.relayer (set by server.py).
"""

import logging
from typing import Optional, Dict, Union

from fastapi import APIRouter, HTTPException, Query, Request
from pydantic import BaseModel

from xswap.core import TimeLockSchedule
from xswap.errors import OrderNotFound, SecretUnavailable
from xswap.swap.relayer import RelayerService

log = logging.getLogger(__name__)

router = APIRouter(prefix="/relayer")


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------

class CreateOrderRequest(BaseModel):
    maker: str
    receiver: str
    makerAsset: str
    takerAsset: str
    makingAmount: Union[int, str]
    takingAmount: Union[int, str]
    srcChainId: int
    dstChainId: int
    secret: str
    timeLocks: Optional[Dict[str, int]] = None


class SubmitOrderRequest(BaseModel):
    orderHash: str
    signature: str


class ClaimRequest(BaseModel):
    resolver: str


class SecretRequest(BaseModel):
    resolver: str
    claim_token: Optional[str] = None
    src_escrow_ref: Optional[str] = None
    dst_escrow_ref: Optional[str] = None
    src_escrow_tx: Optional[str] = None
    dst_escrow_tx: Optional[str] = None


def _relayer(request: Request) -> RelayerService:
    return request.app.state.relayer


# ---------------------------------------------------------------------------
# Maker endpoints
# ---------------------------------------------------------------------------

@router.post("/createOrder")
async def create_order(req: CreateOrderRequest, request: Request):
    """Build an order for the maker to sign."""
    relayer = _relayer(request)
    try:
        time_locks = TimeLockSchedule.from_dict(req.timeLocks) if req.timeLocks else None
        created = await relayer.submit_order(
            maker=req.maker,
            receiver=req.receiver,
            maker_asset=req.makerAsset,
            taker_asset=req.takerAsset,
            making_amount=int(req.makingAmount),
            taking_amount=int(req.takingAmount),
            src_chain_id=req.srcChainId,
            dst_chain_id=req.dstChainId,
            secret=req.secret,
            time_locks=time_locks,
        )
    except (ValueError, TypeError) as e:
        raise HTTPException(400, f"Failed to create order: {e}")
    return {"success": True, **created}


@router.post("/submitOrder")
async def submit_order(req: SubmitOrderRequest, request: Request):
    """Attach the maker's signature and broadcast the order to resolvers."""
    relayer = _relayer(request)
    try:
        ack = await relayer.confirm_order(req.orderHash, req.signature)
    except OrderNotFound as e:
        raise HTTPException(404, str(e))
    except ValueError as e:
        raise HTTPException(400, str(e))
    return {"success": True, "message": "Order submitted successfully", **ack}


@router.get("/checkOrderStatus")
async def check_order_status(request: Request, orderHash: str = Query(None)):
    if not orderHash:
        raise HTTPException(400, "Invalid or missing orderHash query parameter")
    try:
        status = _relayer(request).get_settlement_status(orderHash)
    except OrderNotFound:
        raise HTTPException(404, "Order not found")
    return {"orderHash": status.order_id, "status": status.phase.value,
            "settlement": status.to_dict()}


@router.get("/orders")
async def list_orders(request: Request, maker: Optional[str] = None):
    orders = _relayer(request).list_orders(maker)
    return {"count": len(orders), "orders": orders}


@router.get("/orders/{order_id}")
async def get_order(order_id: str, request: Request):
    relayer = _relayer(request)
    try:
        order = relayer.get_order(order_id)
    except OrderNotFound as e:
        raise HTTPException(404, str(e))
    status = relayer.statuses.get(order.order_id)
    return {"order": order.to_dict(), "status": status.to_dict() if status else None}


# ---------------------------------------------------------------------------
# Resolver endpoints
# ---------------------------------------------------------------------------

@router.post("/orders/{order_id}/claim")
async def claim_order(order_id: str, req: ClaimRequest, request: Request):
    try:
        claim_token = await _relayer(request).claim_order(order_id, req.resolver)
    except OrderNotFound as e:
        raise HTTPException(404, str(e))
    except ValueError as e:
        raise HTTPException(400, str(e))
    if not claim_token:
        raise HTTPException(409, f"Order {order_id} is not pending")
    return {"claimed": True, "order_id": order_id, "resolver": req.resolver,
            "claim_token": claim_token}


@router.post("/orders/{order_id}/secret")
async def reveal_secret(order_id: str, req: SecretRequest, request: Request):
    try:
        secret = await _relayer(request).reveal_secret(
            order_id, req.resolver, req.claim_token, req.src_escrow_ref, req.dst_escrow_ref,
            src_escrow_tx=req.src_escrow_tx, dst_escrow_tx=req.dst_escrow_tx,
        )
    except OrderNotFound as e:
        raise HTTPException(404, str(e))
    except SecretUnavailable as e:
        raise HTTPException(403, e.detail)
    return {"order_id": order_id, "secret": secret}


@router.get("/mappings/{identity}")
async def get_mapping(identity: str, request: Request):
    mapped = _relayer(request).lookup_identity(identity)
    if mapped is None:
        raise HTTPException(404, f"No mapping for {identity}")
    return {"identity": identity, "mapped": mapped}
