#!/usr/bin/env python3
"""
xswap Relayer Server
Cross-chain hash-lock settlement between an EVM chain and a Sui-style ledger.

Endpoints:
  GET  /health                          - Health check
  POST /relayer/createOrder             - Build order, custody secret
  POST /relayer/submitOrder             - Attach signature, dispatch to resolvers
  GET  /relayer/checkOrderStatus        - Settlement status (?orderHash=)
  GET  /relayer/orders                  - Order history (?maker=)
  GET  /relayer/orders/{id}             - Order + status
  POST /relayer/orders/{id}/claim       - Resolver claim (409 if lost)
  POST /relayer/orders/{id}/secret      - Secret disclosure (403 until escrows reported)
  GET  /relayer/mappings/{identity}     - Address mapping lookup
  WS   /ws                              - Order dispatch hub
"""

import os
import time
import logging
from typing import Optional

from fastapi import FastAPI, WebSocket
from fastapi.middleware.cors import CORSMiddleware

from routes.relayer import router as relayer_router
from xswap import __version__
from xswap.config import RelayerConfig
from xswap.core import SettlementPhase
from xswap.dispatch.channel import LocalDispatchChannel
from xswap.dispatch.hub import WebSocketHub
from xswap.store import JSONStore
from xswap.swap.relayer import RelayerService

# =============================================================================
# LOGGING
# =============================================================================

logging.basicConfig(
    level=os.environ.get("XSWAP_LOG_LEVEL", "INFO").upper(),
    format='%(asctime)s [%(levelname)s] %(name)s: %(message)s'
)
log = logging.getLogger(__name__)


# =============================================================================
# APP SETUP
# =============================================================================

def build_relayer(config: RelayerConfig) -> RelayerService:
    """Relayer wired to its JSON stores and a fresh local channel."""
    return RelayerService(
        store=JSONStore(config.db_path),
        channel=LocalDispatchChannel(),
        config=config,
    )


def create_app(relayer: Optional[RelayerService] = None,
               config: Optional[RelayerConfig] = None) -> FastAPI:
    """
    Build the FastAPI app.

    Without an explicit relayer, one is built from the environment on startup.
    """
    app = FastAPI(
        title="xswap relayer",
        description="Cross-chain hash-lock settlement relayer",
        version=__version__,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.state.relayer = relayer
    app.state.hub = None
    app.include_router(relayer_router)

    @app.get("/health")
    async def health():
        """Health check."""
        service: RelayerService = app.state.relayer
        statuses = service.statuses.all() if service else []
        by_phase = {phase.value: 0 for phase in SettlementPhase}
        for status in statuses:
            by_phase[status.phase.value] += 1
        hub = app.state.hub
        return {
            "status": "ok",
            "version": __version__,
            "timestamp": int(time.time()),
            "orders": by_phase,
            "resolvers_connected": len(hub.clients) if hub else 0,
        }

    @app.websocket("/ws")
    async def dispatch_ws(websocket: WebSocket):
        """Order dispatch for remote resolvers."""
        await app.state.hub.serve(websocket)

    # =========================================================================
    # FASTAPI STARTUP/SHUTDOWN EVENTS
    # =========================================================================

    @app.on_event("startup")
    async def startup_event():
        """Initialize relayer, hub and background tasks."""
        if app.state.relayer is None:
            app.state.relayer = build_relayer(config or RelayerConfig.from_env())
        service: RelayerService = app.state.relayer

        app.state.hub = WebSocketHub(service.channel)
        await app.state.hub.start()
        await service.start()
        log.info(f"Relayer ready ({len(service.statuses.all())} orders tracked)")

    @app.on_event("shutdown")
    async def shutdown_event():
        """Cleanup on shutdown."""
        if app.state.hub:
            await app.state.hub.stop()
        if app.state.relayer:
            await app.state.relayer.stop()
        log.info("Relayer stopped")

    return app


app = create_app()


# =============================================================================
# MAIN
# =============================================================================

if __name__ == "__main__":
    import uvicorn
    relayer_config = RelayerConfig.from_env()
    log.info(f"Starting xswap relayer on port {relayer_config.port}")
    log.info(f"Docs: http://{relayer_config.host}:{relayer_config.port}/docs")
    uvicorn.run(create_app(config=relayer_config),
                host=relayer_config.host, port=relayer_config.port)
