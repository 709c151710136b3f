#!/usr/bin/env python3
"""Transfer Reconciliation Script.

Re-queries receipts for transfers stuck in PROCESSING after a
confirmation timeout and settles them as COMPLETED or FAILED.

Usage:
    python scripts/reconcile.py [--transfer ID] [--dry-run]

Options:
    --transfer  Only reconcile one transfer (default: all PROCESSING)
    --dry-run   Show receipts without changing any transfer
"""

import argparse
import asyncio
import logging

from dotenv import load_dotenv

from feerelay.config import get_settings
from feerelay.errors import FeeRelayError
from feerelay.ledger.database import close_db, get_session_factory, init_db
from feerelay.services import create_services

load_dotenv()

logging.basicConfig(level=logging.INFO, format="%(asctime)s - %(levelname)s - %(message)s")
logger = logging.getLogger(__name__)


async def reconcile_transfer(services, transfer, dry_run: bool) -> str:
    """Reconcile one transfer and return its resulting status."""
    if dry_run:
        outcome = await services.relay.reconcile(transfer.tx_hash)
        if outcome is None:
            return "UNCONFIRMED"
        return "WOULD COMPLETE" if outcome.success else f"WOULD FAIL ({outcome.failure_reason})"

    updated = await services.transfers.reconcile_transfer(transfer.id)
    return updated.status


async def main():
    parser = argparse.ArgumentParser(description="Transfer Reconciliation")
    parser.add_argument("--transfer", type=str, help="Only reconcile this transfer id")
    parser.add_argument("--dry-run", action="store_true", help="Show what would be done")

    args = parser.parse_args()

    await init_db()
    services = create_services(get_settings(), session_factory=get_session_factory())

    logger.info("=" * 60)
    logger.info("TRANSFER RECONCILIATION")
    logger.info("=" * 60)

    if args.dry_run:
        logger.info("DRY RUN MODE - No changes will be made")

    results = []
    try:
        if services.relay is None:
            logger.error("FEE_PAYER_PRIVATE_KEY not set - cannot query the relay")
            return results

        if args.transfer:
            transfers = [await services.transfers.get_transfer(args.transfer)]
        else:
            transfers = await services.transfers.list_processing()
        logger.info(f"{len(transfers)} transfer(s) to check")

        for transfer in transfers:
            if not transfer.tx_hash:
                results.append((transfer.id, "NO TX HASH"))
                continue
            try:
                status = await reconcile_transfer(services, transfer, args.dry_run)
            except FeeRelayError as e:
                status = f"ERROR {e.code}: {e.message}"
            results.append((transfer.id, status))
    finally:
        await services.close()
        await close_db()

    # Summary
    logger.info("=" * 60)
    logger.info("SUMMARY")
    logger.info("=" * 60)

    for transfer_id, status in results:
        logger.info(f"{transfer_id}: {status}")

    return results


if __name__ == "__main__":
    asyncio.run(main())
