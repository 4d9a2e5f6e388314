#!/usr/bin/env python3

import argparse
import asyncio
import logging
import os
import signal
import sys

from bridge_relayer.checkpoint import CheckpointStore
from bridge_relayer.ledger import Ledger
from bridge_relayer.models import EventStatus
from bridge_relayer.relayer import BridgeRelayer
from bridge_relayer.utils.state_store import StateStore

# Set up root logger
logger = logging.getLogger(__name__)


def print_status(db_path: str) -> int:
    """Print checkpoints, ledger counts and every event needing attention."""
    if not os.path.exists(db_path):
        print(f"No state database at {db_path}")
        return 1

    store = StateStore(db_path)
    ledger = Ledger(store)

    print("\n=== Bridge Relayer Status ===")
    print("\n[Checkpoints]")
    for checkpoint in CheckpointStore(store).all():
        print(f"  chain {checkpoint.chain_id}: block {checkpoint.last_processed_block} ({checkpoint.updated_at})")

    print("\n[Ledger]")
    for status, count in ledger.counts().items():
        print(f"  {status}: {count}")

    in_flight = ledger.records(EventStatus.SUBMITTING) + ledger.records(EventStatus.SUBMITTED)
    if in_flight:
        print("\n[In Flight]")
        for record in in_flight:
            print(f"  {record.event_id} {record.status.value} tx={record.unlock_tx_hash} owner={record.owner}")

    failed = ledger.records(EventStatus.FAILED)
    if failed:
        print("\n[Failed - manual intervention required]")
        for record in failed:
            print(f"  {record.event_id} attempts={record.attempts}: {record.last_error}")
    print("=============================\n")
    return 0


async def main():
    """Main entry point for the Bridge Relayer."""
    # Parse command line arguments
    parser = argparse.ArgumentParser(description="Bridge Relayer")
    parser.add_argument(
        "--local",
        action="store_true",
        default=False,
        help="Sign with PRIVATE_KEY instead of a ROFL-derived key"
    )
    parser.add_argument(
        "--once",
        action="store_true",
        default=False,
        help="Run a single relay cycle per source chain and exit"
    )
    parser.add_argument(
        "--status",
        action="store_true",
        default=False,
        help="Print checkpoints, ledger counts and failed events, then exit"
    )
    args = parser.parse_args()

    if args.status:
        sys.exit(print_status(os.environ.get("STATE_DB_PATH", "relayer_state.db")))

    logger.info(f"Starting in {'LOCAL' if args.local else 'ROFL'} mode")

    try:
        # Create relayer using factory method
        relayer = await BridgeRelayer.from_env(local_mode=args.local)

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, relayer.stop)

        await relayer.run(once=args.once)
    except ValueError as e:
        logger.error(f"Configuration error: {e}")
        logger.error("Required environment variables:")
        logger.error("  - CHAINS: Comma separated chain names (e.g., ethereum,zksync)")
        logger.error("  - <NAME>_RPC_URL: RPC endpoint for each chain")
        logger.error("  - <NAME>_BRIDGE_ADDRESS: Bridge contract address on each chain")
        logger.error("  - ROUTES: source:destination pairs (optional for exactly two chains)")
        if args.local:
            logger.error("  - PRIVATE_KEY: Private key for signing unlock transactions")
        sys.exit(1)
    except KeyboardInterrupt:
        logger.info("Received interrupt signal, shutting down...")
        if 'relayer' in locals():
            relayer.stop()
    except Exception as e:
        logger.error(f"Unexpected error: {e}", exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    asyncio.run(main())
