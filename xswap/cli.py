"""
xswap command line.

    xswap relayer                  run the relayer HTTP/WebSocket server
    xswap resolver                 run a resolver worker against a relayer
    xswap status <order_id>        print an order's settlement status
    xswap cancel <chain> <role> <escrow_ref>
                                   refund an escrow after its deadline
    xswap secret                   generate a random secret and commitment

Configuration comes from XSWAP_* environment variables (see xswap.config).
"""

import os
import sys
import json
import asyncio
import logging
import argparse

import httpx

from .chains.evm import EVMAdapter
from .chains.sui import SuiAdapter
from .config import EVMConfig, SuiConfig, RelayerConfig, ResolverConfig
from .core import EscrowRole
from .dispatch.client import DispatchClient
from .errors import ConfigError, SettlementError
from .hashlock import generate_secret, KECCAK256, SHA256
from .swap.link import HttpRelayerLink
from .swap.orchestrator import SettlementOrchestrator
from .swap.worker import ResolverWorker

log = logging.getLogger(__name__)


def build_adapters(hash_families=None):
    """EVM and Sui adapters from the environment, keyed by chain id."""
    families = hash_families or {}
    evm_config = EVMConfig.from_env()
    sui_config = SuiConfig.from_env()
    evm = EVMAdapter(evm_config, hash_family=families.get(evm_config.chain_id, KECCAK256))
    sui = SuiAdapter(sui_config, hash_family=families.get(sui_config.chain_id, KECCAK256))
    return {evm.chain_id: evm, sui.chain_id: sui}


# =============================================================================
# Commands
# =============================================================================

def cmd_relayer(args):
    import uvicorn
    from server import create_app

    config = RelayerConfig.from_env()
    if args.port:
        config.port = args.port
    log.info(f"Starting xswap relayer on {config.host}:{config.port}")
    uvicorn.run(create_app(config=config), host=config.host, port=config.port)


async def run_resolver(config: ResolverConfig):
    adapters = build_adapters(RelayerConfig.from_env().hash_families)
    link = HttpRelayerLink(config.relayer_url)
    orchestrator = SettlementOrchestrator(
        adapters, link, resolver=config.name,
        confirmation_timeout=config.confirmation_timeout,
    )

    async def on_event(event):
        await worker.on_event(event)

    client = DispatchClient(config.ws_url, on_event, policy=config.reconnect)
    worker = ResolverWorker(config.name, orchestrator, publisher=client)
    for chain_id in config.src_chain_ids:
        if chain_id not in adapters:
            raise ConfigError(f"No adapter configured for source chain {chain_id}")
        worker.accept_src_chain(chain_id)

    log.info(f"Resolver {config.name} accepting source chains {list(config.src_chain_ids)}")
    try:
        await client.run()
    finally:
        await worker.drain()
        await link.close()
        for adapter in adapters.values():
            await adapter.close()


def cmd_resolver(args):
    config = ResolverConfig.from_env()
    if args.name:
        config.name = args.name
    asyncio.run(run_resolver(config))


def cmd_status(args):
    response = httpx.get(f"{args.relayer_url.rstrip('/')}/relayer/checkOrderStatus",
                         params={"orderHash": args.order_id}, timeout=10.0)
    if response.status_code == 404:
        print(f"Order {args.order_id} not found")
        sys.exit(1)
    response.raise_for_status()
    print(json.dumps(response.json(), indent=2))


async def run_cancel(chain_id: int, role: EscrowRole, escrow_ref: str) -> str:
    adapters = build_adapters()
    if chain_id not in adapters:
        raise ConfigError(f"No adapter configured for chain {chain_id}")
    try:
        return await adapters[chain_id].cancel(role, escrow_ref)
    finally:
        for adapter in adapters.values():
            await adapter.close()


def cmd_cancel(args):
    try:
        tx_ref = asyncio.run(run_cancel(args.chain_id, EscrowRole(args.role), args.escrow_ref))
    except SettlementError as e:
        print(f"ERROR: [{e.code}] {e.detail}")
        sys.exit(1)
    print(f"Cancel TX: {tx_ref}")


def cmd_secret(args):
    secret, commitment = generate_secret(args.family)
    print(json.dumps({"secret": secret, "commitment": commitment, "family": args.family}, indent=2))


# =============================================================================
# MAIN
# =============================================================================

def main(argv=None):
    parser = argparse.ArgumentParser(
        description="xswap: cross-chain hash-lock settlement relayer and resolver"
    )
    sub = parser.add_subparsers(dest="command")

    p = sub.add_parser("relayer", help="Run the relayer server")
    p.add_argument("--port", type=int, help="Override XSWAP_RELAYER_PORT")
    p.set_defaults(func=cmd_relayer)

    p = sub.add_parser("resolver", help="Run a resolver worker")
    p.add_argument("--name", type=str, help="Override XSWAP_RESOLVER_NAME")
    p.set_defaults(func=cmd_resolver)

    p = sub.add_parser("status", help="Show an order's settlement status")
    p.add_argument("order_id", type=str)
    p.add_argument("--relayer-url", type=str,
                   default=os.environ.get("XSWAP_RELAYER_URL", "http://127.0.0.1:8080"))
    p.set_defaults(func=cmd_status)

    p = sub.add_parser("cancel", help="Refund an escrow after its cancellation time")
    p.add_argument("chain_id", type=int)
    p.add_argument("role", choices=[r.value for r in EscrowRole])
    p.add_argument("escrow_ref", type=str)
    p.set_defaults(func=cmd_cancel)

    p = sub.add_parser("secret", help="Generate a secret and its commitment")
    p.add_argument("--family", choices=[KECCAK256, SHA256], default=KECCAK256)
    p.set_defaults(func=cmd_secret)

    args = parser.parse_args(argv)

    logging.basicConfig(
        level=os.environ.get("XSWAP_LOG_LEVEL", "INFO").upper(),
        format='%(asctime)s [%(levelname)s] %(name)s: %(message)s'
    )

    if not getattr(args, "func", None):
        parser.print_help()
        sys.exit(1)

    try:
        args.func(args)
    except ConfigError as e:
        print(f"ERROR: {e}")
        sys.exit(2)


if __name__ == "__main__":
    main()
